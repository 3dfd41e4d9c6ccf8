from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from .source_parser import normalize_source_key

logger = logging.getLogger(__name__)

LOCK_FILENAME = "skillsync.lock"
LOCKFILE_VERSION = 1


@dataclass(frozen=True)
class LockedSkill:
    integrity: str


@dataclass(frozen=True)
class LockedSource:
    resolved_ref: str
    skills: dict[str, LockedSkill] = field(default_factory=dict)
    requested_ref: str | None = None
    resolved_at: str | None = None

    def skill_names(self) -> list[str]:
        return list(self.skills)


@dataclass
class SourcesLock:
    lockfile_version: int = LOCKFILE_VERSION
    sources: dict[str, LockedSource] = field(default_factory=dict)

    def get(self, source: str) -> LockedSource | None:
        return self.sources.get(normalize_source_key(source))

    def set(self, source: str, entry: LockedSource) -> None:
        self.sources[normalize_source_key(source)] = entry

    def prune(self, keep_keys: set[str]) -> list[str]:
        stale = [key for key in self.sources if key not in keep_keys]
        for key in stale:
            del self.sources[key]
        return stale

    def copy(self) -> "SourcesLock":
        return SourcesLock(
            lockfile_version=self.lockfile_version,
            sources={k: replace(v, skills=dict(v.skills)) for k, v in self.sources.items()},
        )

    def to_json(self) -> dict[str, Any]:
        sources: dict[str, Any] = {}
        for key in sorted(self.sources):
            entry = self.sources[key]
            item: dict[str, Any] = {
                "resolvedRef": entry.resolved_ref,
                "skills": {name: {"integrity": entry.skills[name].integrity} for name in sorted(entry.skills)},
            }
            if entry.requested_ref:
                item["requestedRef"] = entry.requested_ref
            if entry.resolved_at:
                item["resolvedAt"] = entry.resolved_at
            sources[key] = item
        return {"lockfileVersion": self.lockfile_version, "sources": sources}

    def dumps(self) -> str:
        return json.dumps(self.to_json(), indent=2, sort_keys=True) + "\n"


def _optional_str(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def _parse_current(raw: dict[str, Any]) -> SourcesLock | None:
    version = raw.get("lockfileVersion")
    sources_raw = raw.get("sources")
    if not isinstance(version, int) or not isinstance(sources_raw, dict):
        return None

    lock = SourcesLock(lockfile_version=version)
    for key, entry in sources_raw.items():
        if not isinstance(key, str) or not isinstance(entry, dict):
            return None
        resolved_ref = entry.get("resolvedRef")
        skills_raw = entry.get("skills")
        if not isinstance(resolved_ref, str) or not isinstance(skills_raw, dict):
            return None
        skills: dict[str, LockedSkill] = {}
        for name, skill in skills_raw.items():
            if not isinstance(skill, dict) or not isinstance(skill.get("integrity"), str):
                return None
            skills[name] = LockedSkill(integrity=skill["integrity"])
        lock.set(
            key,
            LockedSource(
                resolved_ref=resolved_ref,
                skills=skills,
                requested_ref=_optional_str(entry.get("requestedRef")),
                resolved_at=_optional_str(entry.get("resolvedAt")),
            ),
        )
    return lock


def _parse_legacy(raw: dict[str, Any]) -> SourcesLock | None:
    # Pre-versioned format: skills were a plain list of names, without integrity.
    if "lockfileVersion" in raw:
        return None
    sources_raw = raw.get("sources")
    if not isinstance(sources_raw, dict):
        return None

    lock = SourcesLock()
    for key, entry in sources_raw.items():
        if not isinstance(entry, dict):
            return None
        resolved_ref = entry.get("resolvedRef")
        names = entry.get("skills")
        if not isinstance(resolved_ref, str) or not isinstance(names, list):
            return None
        if not all(isinstance(n, str) for n in names):
            return None
        lock.set(key, LockedSource(resolved_ref=resolved_ref, skills={n: LockedSkill(integrity="") for n in names}))
    logger.info(
        "Migrated legacy sources lockfile to version %d. Run 'skillsync install --update' to record integrity hashes.",
        LOCKFILE_VERSION,
    )
    return lock


class LockStore:
    def __init__(self, base_dir: Path) -> None:
        self.path = base_dir / LOCK_FILENAME

    def read(self) -> SourcesLock:
        if not self.path.exists():
            logger.debug("No sources lockfile found, starting fresh.")
            return SourcesLock()

        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.warning("Failed to read sources lockfile (%s): %s. Starting fresh.", LOCK_FILENAME, e)
            return SourcesLock()

        if isinstance(raw, dict):
            lock = _parse_current(raw) or _parse_legacy(raw)
            if lock is not None:
                return lock

        logger.warning("Invalid sources lockfile format (%s). Starting fresh.", LOCK_FILENAME)
        return SourcesLock()

    def write(self, lock: SourcesLock) -> Path:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(lock.dumps(), encoding="utf-8")
        tmp.replace(self.path)
        logger.debug("Wrote sources lockfile to %s", self.path)
        return self.path
