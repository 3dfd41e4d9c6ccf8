from __future__ import annotations

import logging
import os
import re
import shutil
import tempfile
from pathlib import Path, PurePosixPath, PureWindowsPath

from .client import SkillsyncError

logger = logging.getLogger(__name__)

SKILLS_RELATIVE_DIR = Path(".skillsync") / "skills"
CURATED_DIRNAME = ".curated"
CURATED_RELATIVE_DIR = SKILLS_RELATIVE_DIR / CURATED_DIRNAME

_SAFE_NAME_RE = re.compile(r"^[A-Za-z0-9._-]+$")


def is_safe_skill_name(name: str) -> bool:
    """A bare directory name: no separators, no traversal, nothing hidden."""
    if not name or ".." in name or "/" in name or "\\" in name:
        return False
    if name.startswith("."):
        return False
    return bool(_SAFE_NAME_RE.match(name))


class LocalSkills:
    """Skills authored in the project itself. They always take precedence over fetched ones."""

    def __init__(self, base_dir: Path) -> None:
        self.skills_dir = base_dir / SKILLS_RELATIVE_DIR
        self._names: frozenset[str] | None = None

    @property
    def names(self) -> frozenset[str]:
        if self._names is None:
            self._names = frozenset(self._scan())
        return self._names

    def _scan(self) -> list[str]:
        if not self.skills_dir.is_dir():
            return []
        return sorted(p.name for p in self.skills_dir.iterdir() if p.is_dir() and p.name != CURATED_DIRNAME)

    def shadows(self, name: str) -> bool:
        return name in self.names


class CuratedSkills:
    """The cache of fetched skills, one directory per skill name."""

    def __init__(self, base_dir: Path) -> None:
        self.root = base_dir / CURATED_RELATIVE_DIR

    def skill_dir(self, name: str) -> Path:
        if not is_safe_skill_name(name):
            raise SkillsyncError(f"Invalid skill name: {name!r}")
        return self.root / name

    def exists(self, name: str) -> bool:
        return is_safe_skill_name(name) and self.skill_dir(name).is_dir()

    def remove(self, name: str) -> bool:
        # Only ever one skill; the shared root may hold skills from other sources.
        skill_dir = self.skill_dir(name)
        if not skill_dir.exists():
            return False
        shutil.rmtree(skill_dir)
        logger.debug("Removed curated skill directory %s", skill_dir)
        return True

    def install(self, name: str, files: list[tuple[str, bytes]]) -> Path:
        """
        Replace the cached copy of ``name`` with ``files``.

        Every path is checked before anything is written. The new copy is built in a
        scratch directory and swapped in, so a failure leaves the previous copy intact.
        """
        dest = self.skill_dir(name)
        for rel_path, _ in files:
            check_skill_path(name, rel_path)

        self.root.mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryDirectory(prefix=f".{name}-", dir=self.root) as td:
            staged = Path(td) / name
            _write_tree(staged, name, files)

            backup = dest.with_name(f".{name}.backup")
            if backup.exists():
                shutil.rmtree(backup, ignore_errors=True)
            had_existing = dest.exists()
            if had_existing:
                dest.rename(backup)

            try:
                staged.rename(dest)
            except Exception:
                if had_existing and backup.exists():
                    backup.rename(dest)
                raise
            finally:
                if backup.exists():
                    shutil.rmtree(backup, ignore_errors=True)
        return dest


def check_skill_path(name: str, rel_path: str) -> None:
    """Reject a file path that would land outside the skill's own directory."""
    posix = rel_path.replace("\\", "/")
    if not posix or posix.startswith("/") or os.path.isabs(rel_path) or PureWindowsPath(rel_path).drive:
        raise SkillsyncError(f"Skill {name!r} contains an absolute path entry: {rel_path!r}")
    if ".." in PurePosixPath(posix).parts:
        raise SkillsyncError(f"Skill {name!r} contains an invalid path entry: {rel_path!r}")


def _write_tree(dest: Path, name: str, files: list[tuple[str, bytes]]) -> None:
    dest.mkdir(parents=True, exist_ok=True)
    base = dest.resolve()
    for rel_path, content in files:
        target = (dest / rel_path.replace("\\", "/")).resolve()
        if not str(target).startswith(str(base) + os.sep):
            raise SkillsyncError(f"Skill {name!r} contains an invalid path entry: {rel_path!r}")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content)
