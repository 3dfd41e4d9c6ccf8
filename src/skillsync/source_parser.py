from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import urlsplit

from .client import SkillsyncError

PROVIDERS = ("github", "gitlab")
DEFAULT_SKILLS_PATH = "skills"

_HOSTS = {
    "github.com": "github",
    "www.github.com": "github",
    "gitlab.com": "gitlab",
    "www.gitlab.com": "gitlab",
}


class SourceParseError(SkillsyncError):
    pass


@dataclass(frozen=True)
class ParsedSource:
    provider: str
    owner: str
    repo: str
    ref: str | None = None
    path: str | None = None

    @property
    def skills_path(self) -> str:
        return self.path or DEFAULT_SKILLS_PATH

    @property
    def key(self) -> str:
        key = f"{self.owner}/{self.repo}".lower()
        if self.provider != "github":
            key = f"{self.provider}:{key}"
        if self.ref:
            key += f"@{self.ref}"
        if self.path:
            key += f":{self.path}"
        return key


def _strip_repo(repo: str) -> str:
    repo = repo.rstrip("/")
    if repo.endswith(".git"):
        repo = repo[: -len(".git")]
    return repo


def _parse_url(source: str) -> ParsedSource:
    parts = urlsplit(source)
    host = (parts.hostname or "").lower()
    provider = _HOSTS.get(host)
    if provider is None:
        raise SourceParseError(
            f"Unknown Git provider for host: {host or '<none>'}. Supported providers: {', '.join(PROVIDERS)}"
        )

    segments = [s for s in parts.path.split("/") if s]
    if len(segments) < 2:
        raise SourceParseError(f"Invalid {provider} URL: {source}. Expected format: https://{host}/owner/repo")

    owner = segments[0]
    repo = _strip_repo(segments[1])
    if not repo:
        raise SourceParseError(f"Invalid {provider} URL: {source}. Both owner and repo are required.")

    ref: str | None = None
    path: str | None = None
    # /tree/<ref>/<path...> and /blob/<ref>/<path...>
    if len(segments) > 3 and segments[2] in ("tree", "blob"):
        ref = segments[3]
        if len(segments) > 4:
            path = "/".join(segments[4:])
    return ParsedSource(provider=provider, owner=owner, repo=repo, ref=ref, path=path)


def _parse_shorthand(source: str, *, provider: str, original: str) -> ParsedSource:
    remaining = source.strip()
    ref: str | None = None
    path: str | None = None

    colon = remaining.find(":")
    if colon != -1:
        path = remaining[colon + 1 :].strip("/")
        if not path:
            raise SourceParseError(f'Invalid source: {original}. Path cannot be empty after ":".')
        remaining = remaining[:colon]

    at = remaining.find("@")
    if at != -1:
        ref = remaining[at + 1 :]
        if not ref:
            raise SourceParseError(f'Invalid source: {original}. Ref cannot be empty after "@".')
        remaining = remaining[:at]

    if "/" not in remaining:
        raise SourceParseError(
            f"Invalid source: {original}. Expected format: owner/repo, owner/repo@ref, or owner/repo:path"
        )
    owner, repo = remaining.split("/", 1)
    owner = owner.strip()
    repo = _strip_repo(repo.strip())
    if not owner or not repo:
        raise SourceParseError(f"Invalid source: {original}. Both owner and repo are required.")
    if "/" in repo:
        raise SourceParseError(f"Invalid source: {original}. Expected exactly one '/' between owner and repo.")
    return ParsedSource(provider=provider, owner=owner, repo=repo, ref=ref, path=path)


def parse_source(source: str) -> ParsedSource:
    """
    Parse a source identifier.

    Accepted forms:
        https://github.com/owner/repo[/tree/<ref>/<path>]
        github:owner/repo, gitlab:owner/repo
        owner/repo[@ref][:path]  (GitHub)
    """
    raw = source.strip()
    if raw.startswith(("http://", "https://")):
        return _parse_url(raw)

    prefix, sep, rest = raw.partition(":")
    if sep and prefix in PROVIDERS:
        return _parse_shorthand(rest, provider=prefix, original=source)
    return _parse_shorthand(raw, provider="github", original=source)


def normalize_source_key(source: str) -> str:
    """Canonical lock key for a source; unparseable identifiers are kept verbatim."""
    try:
        return parse_source(source).key
    except SourceParseError:
        return source.strip()
