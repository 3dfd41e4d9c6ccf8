from __future__ import annotations

import hashlib
from collections.abc import Iterable

INTEGRITY_ALGORITHM = "sha256"


def _posix(path: str) -> str:
    return path.replace("\\", "/").lstrip("/")


def compute_skill_integrity(files: Iterable[tuple[str, bytes]]) -> str:
    """
    Digest of a skill's file set as ``sha256-<hex>``.

    Files are sorted by their POSIX relative path, then each contributes
    ``path NUL content NUL``. File modes are not part of the digest.
    """
    digest = hashlib.sha256()
    for path, content in sorted(((_posix(p), c) for p, c in files), key=lambda item: item[0]):
        digest.update(path.encode("utf-8"))
        digest.update(b"\0")
        digest.update(content)
        digest.update(b"\0")
    return f"{INTEGRITY_ALGORITHM}-{digest.hexdigest()}"


def integrity_matches(expected: str | None, actual: str) -> bool:
    # An empty or missing value means nothing was recorded (legacy locks).
    if not expected:
        return True
    return expected == actual
