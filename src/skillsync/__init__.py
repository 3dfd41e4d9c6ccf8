from ._version import __version__
from .client import GitHostHTTPError, GitHubClient, SkillsyncError
from .config import SourceSpec
from .installer import (
    FetchResult,
    FrozenInstallError,
    FrozenIntegrityError,
    FrozenLockMissingError,
    resolve_and_fetch_sources,
)

__all__ = [
    "__version__",
    "FetchResult",
    "FrozenInstallError",
    "FrozenIntegrityError",
    "FrozenLockMissingError",
    "GitHostHTTPError",
    "GitHubClient",
    "SkillsyncError",
    "SourceSpec",
    "resolve_and_fetch_sources",
]
