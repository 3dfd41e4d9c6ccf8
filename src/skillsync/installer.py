from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol, Sequence, Union

from .client import (
    DEFAULT_API_URL,
    DEFAULT_TIMEOUT_S,
    GitHostHTTPError,
    GitHubClient,
    RemoteEntry,
    SkillsyncError,
    log_auth_hints,
)
from .config import SourceSpec
from .integrity import compute_skill_integrity, integrity_matches
from .local_skills import CuratedSkills, LocalSkills, check_skill_path, is_safe_skill_name
from .source_parser import ParsedSource, normalize_source_key, parse_source
from .sources_lock import LockedSkill, LockedSource, LockStore, SourcesLock

logger = logging.getLogger(__name__)

MAX_FILE_SIZE = 10 * 1024 * 1024  # 10 MiB
FETCH_CONCURRENCY = 10


class UnsupportedHostError(SkillsyncError):
    pass


class FrozenInstallError(SkillsyncError):
    def __init__(self, detail: str) -> None:
        super().__init__(f"Frozen install failed: {detail}")


class FrozenLockMissingError(FrozenInstallError):
    def __init__(self, missing: Sequence[str]) -> None:
        self.missing = tuple(missing)
        super().__init__(
            "lockfile is missing entries for: " + ", ".join(self.missing)
            + ". Run 'skillsync install' without --frozen to update the lockfile."
        )


class FrozenIntegrityError(FrozenInstallError):
    def __init__(self, *, skill: str, source: str, expected: str, actual: str) -> None:
        self.skill = skill
        self.source = source
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Integrity mismatch for skill {skill!r} from {source}: expected {expected}, got {actual}."
        )


class GitHostClient(Protocol):
    def get_default_branch(self, owner: str, repo: str) -> str:
        ...

    def resolve_ref_to_sha(self, owner: str, repo: str, ref: str) -> str:
        ...

    def list_directory(self, owner: str, repo: str, path: str, ref: str | None = None) -> list[RemoteEntry]:
        ...

    def get_file_content(self, owner: str, repo: str, path: str, ref: str | None = None) -> bytes:
        ...


@dataclass(frozen=True)
class FetchResult:
    fetched_skill_count: int
    sources_processed: int


@dataclass(frozen=True)
class SourceFetched:
    key: str
    fetched: tuple[str, ...]


@dataclass(frozen=True)
class SourceSkipped:
    key: str


@dataclass(frozen=True)
class SourceFailed:
    key: str
    error: Exception


SourceOutcome = Union[SourceFetched, SourceSkipped, SourceFailed]


@dataclass
class _Run:
    client: GitHostClient
    lock: SourcesLock
    local: LocalSkills
    curated: CuratedSkills
    frozen: bool
    update_sources: bool
    claimed: set[str] = field(default_factory=set)


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _on_disk(run: _Run, name: str) -> bool:
    # A locked name shadowed by a local skill is satisfied by the local copy.
    return run.curated.exists(name) or run.local.shadows(name)


def _list_files(client: GitHostClient, parsed: ParsedSource, path: str, ref: str) -> list[RemoteEntry]:
    files: list[RemoteEntry] = []
    for entry in client.list_directory(parsed.owner, parsed.repo, path, ref):
        if entry.type == "file":
            files.append(entry)
        elif entry.type == "dir":
            files.extend(_list_files(client, parsed, entry.path, ref))
    return files


def _download_skill(client: GitHostClient, parsed: ParsedSource, skill: RemoteEntry, ref: str) -> list[tuple[str, bytes]]:
    prefix = skill.path.rstrip("/") + "/"
    wanted: list[tuple[str, RemoteEntry]] = []
    for entry in _list_files(client, parsed, skill.path, ref):
        if not entry.path.startswith(prefix):
            raise SkillsyncError(f"Remote file {entry.path!r} is outside skill directory {skill.path!r}")
        rel_path = entry.path[len(prefix) :]
        check_skill_path(skill.name, rel_path)
        if entry.size > MAX_FILE_SIZE:
            logger.warning(
                'Skipping file "%s" (%.2fMB exceeds %dMB limit).',
                entry.path,
                entry.size / 1024 / 1024,
                MAX_FILE_SIZE // (1024 * 1024),
            )
            continue
        wanted.append((rel_path, entry))

    def _read(item: tuple[str, RemoteEntry]) -> tuple[str, bytes]:
        rel_path, entry = item
        return rel_path, client.get_file_content(parsed.owner, parsed.repo, entry.path, ref)

    with ThreadPoolExecutor(max_workers=FETCH_CONCURRENCY) as pool:
        return list(pool.map(_read, wanted))


def _list_skills(run: _Run, parsed: ParsedSource, key: str, ref: str) -> list[RemoteEntry]:
    try:
        entries = run.client.list_directory(parsed.owner, parsed.repo, parsed.skills_path, ref)
    except GitHostHTTPError as e:
        if e.status_code != 404:
            raise
        logger.warning("No %s/ directory found in %s. Skipping.", parsed.skills_path, key)
        return []
    return [e for e in entries if e.type == "dir"]


def _keep_installed(run: _Run, key: str, locked: LockedSource | None, installed: dict[str, LockedSkill]) -> set[str]:
    """
    Reconcile skills already swapped into the cache when their source fails partway.

    Returns the names that stay on disk. With a lock entry to carry forward, their new
    digests are merged into it so the cache never holds content the lock does not describe.
    Without one they are removed again, and the next run fetches the source from scratch.
    """
    if not installed:
        return set()
    if run.frozen:
        # Frozen content was verified against the lock before it was written.
        return set(installed)
    if locked is None:
        for name in installed:
            run.curated.remove(name)
        return set()
    run.lock.sources[key] = replace(locked, skills={**locked.skills, **installed})
    logger.warning("Recorded %d skill(s) installed from %s before it failed.", len(installed), key)
    return set(installed)


def _fetch_source(run: _Run, declared: SourceSpec, key: str, locked: LockedSource | None) -> list[str]:
    parsed = parse_source(declared.source)
    if parsed.provider != "github":
        raise UnsupportedHostError(f"{parsed.provider} sources are not yet supported.")

    missing_locked: set[str] | None = None
    if run.frozen:
        # Frozen installs never re-resolve the ref.
        if locked is None:
            raise FrozenLockMissingError([declared.source])
        ref = locked.resolved_ref
        missing_locked = {name for name in locked.skills if not _on_disk(run, name)}
        run.claimed.update(name for name in locked.skills if name not in missing_locked)
        logger.debug("Using locked ref for %s: %s", key, ref)
    else:
        requested = parsed.ref or run.client.get_default_branch(parsed.owner, parsed.repo)
        ref = run.client.resolve_ref_to_sha(parsed.owner, parsed.repo, requested)
        logger.debug('Resolved %s ref "%s" to %s', key, requested, ref)

    prior = dict(locked.skills) if locked else {}
    skills: dict[str, LockedSkill] = {}
    staged: list[tuple[str, list[tuple[str, bytes]], str]] = []
    claimed_here: list[str] = []
    fetched: list[str] = []

    try:
        # Nothing touches the cache until every skill of the source is downloaded and verified.
        for entry in _list_skills(run, parsed, key, ref):
            name = entry.name
            if not is_safe_skill_name(name):
                logger.warning('Skipping skill with invalid name "%s" from %s.', name, key)
                continue
            if not declared.allows(name):
                continue
            if missing_locked is not None and name not in missing_locked:
                continue
            if run.local.shadows(name):
                logger.debug('Skipping remote skill "%s" from %s: local skill takes precedence.', name, key)
                if name in prior:
                    skills[name] = prior[name]
                continue
            if name in run.claimed:
                logger.warning('Skipping duplicate skill "%s" from %s: already provided by another source.', name, key)
                continue
            run.claimed.add(name)
            claimed_here.append(name)

            files = _download_skill(run.client, parsed, entry, ref)
            integrity = compute_skill_integrity(files)
            previous = prior.get(name)
            if previous is not None and not integrity_matches(previous.integrity, integrity):
                if run.frozen:
                    raise FrozenIntegrityError(skill=name, source=key, expected=previous.integrity, actual=integrity)
                logger.warning(
                    'Integrity mismatch for skill "%s" from %s: expected %s, got %s. Accepting the new content.',
                    name,
                    key,
                    previous.integrity,
                    integrity,
                )
            staged.append((name, files, integrity))

        for name, files, integrity in staged:
            run.curated.install(name, files)
            skills[name] = LockedSkill(integrity=integrity)
            fetched.append(name)
            logger.debug('Fetched skill "%s" from %s', name, key)
    except Exception:
        kept = _keep_installed(run, key, locked, {name: skills[name] for name in fetched})
        run.claimed.difference_update(name for name in claimed_here if name not in kept)
        raise

    if missing_locked:
        for name in sorted(missing_locked - set(fetched)):
            logger.warning('Locked skill "%s" is no longer offered by %s.', name, key)

    if not run.frozen:
        resolved_at = _now()
        if locked is not None and locked.resolved_ref == ref and locked.skills == skills:
            resolved_at = locked.resolved_at or resolved_at
        run.lock.sources[key] = LockedSource(
            resolved_ref=ref,
            skills=skills,
            requested_ref=parsed.ref,
            resolved_at=resolved_at,
        )

    logger.info("Fetched %d skill(s) from %s: %s", len(fetched), key, ", ".join(fetched) or "(none)")
    return fetched


def _process_source(run: _Run, declared: SourceSpec) -> SourceOutcome:
    key = normalize_source_key(declared.source)
    locked = run.lock.sources.get(key)

    if locked is not None and not run.update_sources and all(_on_disk(run, n) for n in locked.skills):
        run.claimed.update(locked.skills)
        logger.debug("All locked skills for %s are present, skipping fetch.", key)
        return SourceSkipped(key=key)

    try:
        return SourceFetched(key=key, fetched=tuple(_fetch_source(run, declared, key, locked)))
    except FrozenInstallError:
        raise
    except GitHostHTTPError as e:
        logger.error('Failed to fetch source "%s".', declared.source)
        log_auth_hints(e)
        return SourceFailed(key=key, error=e)
    except Exception as e:  # noqa: BLE001 - one source must not abort the others
        logger.error('Failed to fetch source "%s": %s', declared.source, e)
        return SourceFailed(key=key, error=e)


def resolve_and_fetch_sources(
    sources: Sequence[SourceSpec],
    base_dir: Path,
    *,
    skip_sources: bool = False,
    update_sources: bool = False,
    frozen: bool = False,
    token: str | None = None,
    client: GitHostClient | None = None,
    api_url: str = DEFAULT_API_URL,
    timeout_s: float = DEFAULT_TIMEOUT_S,
) -> FetchResult:
    """
    Fetch remote skills declared by ``sources`` into the curated cache and update the lockfile.

    Failures are isolated per source and only reflected in the returned counts and logs.
    Frozen mode raises ``FrozenLockMissingError`` when a source has no lock entry (before any
    network access) and ``FrozenIntegrityError`` when fetched content drifts from the lock.

    When no ``client`` is given, ``api_url`` must be an https URL; anything else is a
    configuration error raised as ``SkillsyncError`` before any source is touched.
    """
    if not sources:
        return FetchResult(fetched_skill_count=0, sources_processed=0)
    if skip_sources:
        logger.info("Skipping source fetching (--skip-sources).")
        return FetchResult(fetched_skill_count=0, sources_processed=0)
    if frozen and update_sources:
        logger.warning("Ignoring --update in frozen mode.")
        update_sources = False

    base_dir = Path(base_dir)
    store = LockStore(base_dir)
    on_disk = store.read()
    lock = SourcesLock() if update_sources else on_disk.copy()

    if frozen:
        missing = [s.source for s in sources if normalize_source_key(s.source) not in lock.sources]
        if missing:
            raise FrozenLockMissingError(missing)

    owned: GitHubClient | None = None
    if client is None:
        owned = client = GitHubClient(api_url=api_url, token=GitHubClient.resolve_token(token), timeout_s=timeout_s)

    run = _Run(
        client=client,
        lock=lock,
        local=LocalSkills(base_dir),
        curated=CuratedSkills(base_dir),
        frozen=frozen,
        update_sources=update_sources,
    )
    outcomes: list[SourceOutcome] = []
    try:
        for declared in sources:
            outcomes.append(_process_source(run, declared))
    finally:
        if owned is not None:
            owned.close()

    if not frozen:
        for key in lock.prune({normalize_source_key(s.source) for s in sources}):
            logger.debug("Pruned stale lockfile entry: %s", key)
        if lock.dumps() != on_disk.dumps():
            store.write(lock)
        else:
            logger.debug("Lockfile unchanged, skipping write.")

    fetched = sum(len(o.fetched) for o in outcomes if isinstance(o, SourceFetched))
    return FetchResult(fetched_skill_count=fetched, sources_processed=len(outcomes))
