from __future__ import annotations

import json
import os
import stat
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from platformdirs import user_config_path

from .client import DEFAULT_API_URL, DEFAULT_TIMEOUT_S, GitHubClient, SkillsyncError

PROJECT_CONFIG_FILENAME = "skillsync.json"


@dataclass(frozen=True)
class Config:
    api_url: str = DEFAULT_API_URL
    token: str | None = None
    timeout_s: float = DEFAULT_TIMEOUT_S


@dataclass(frozen=True)
class SourceSpec:
    source: str
    skills: tuple[str, ...] | None = None  # None means every skill the source offers

    def allows(self, name: str) -> bool:
        return self.skills is None or name in self.skills


@dataclass(frozen=True)
class ProjectConfig:
    path: Path
    sources: tuple[SourceSpec, ...] = ()


def config_path(path_override: str | Path | None = None) -> Path:
    if path_override is not None:
        return Path(path_override).expanduser()
    if env := os.getenv("SKILLSYNC_CONFIG_PATH"):
        return Path(env).expanduser()
    return user_config_path("skillsync") / "config.json"


def load_config(path_override: str | Path | None = None) -> Config:
    path = config_path(path_override)
    if not path.exists():
        return Config()

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise SkillsyncError(f"Could not read user config {path}: {e}. Fix or delete the file.") from e
    if not isinstance(raw, dict):
        raise SkillsyncError(f"User config {path} must contain a JSON object.")

    cfg = Config()
    api_url = raw.get("api_url", cfg.api_url)
    token = raw.get("token", cfg.token)
    timeout_s = raw.get("timeout_s", cfg.timeout_s)
    if not isinstance(api_url, str) or not api_url:
        raise SkillsyncError(f"'api_url' in {path} must be a non-empty string.")
    if token is not None and not isinstance(token, str):
        raise SkillsyncError(f"'token' in {path} must be a string.")
    if isinstance(timeout_s, bool) or not isinstance(timeout_s, (int, float)) or timeout_s <= 0:
        raise SkillsyncError(f"'timeout_s' in {path} must be a positive number.")
    return Config(api_url=api_url, token=token or None, timeout_s=float(timeout_s))


def save_config(cfg: Config, path_override: str | Path | None = None) -> Path:
    path = config_path(path_override)
    path.parent.mkdir(parents=True, exist_ok=True)

    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(asdict(cfg), indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp.replace(path)

    # Best-effort permissions hardening (the file may hold a token).
    try:
        os.chmod(path, stat.S_IRUSR | stat.S_IWUSR)
    except OSError:
        pass

    return path


def merge_config(
    base: Config,
    *,
    api_url: str | None = None,
    token: str | None = None,
    timeout_s: float | None = None,
) -> Config:
    # Explicit values beat the environment, which beats the saved config.
    api_url_final = api_url or os.getenv("SKILLSYNC_API_URL") or base.api_url
    token_final = GitHubClient.resolve_token(token) or base.token

    timeout_raw: Any = timeout_s if timeout_s is not None else os.getenv("SKILLSYNC_TIMEOUT_S") or base.timeout_s
    try:
        timeout_final = float(timeout_raw)
    except (TypeError, ValueError):
        timeout_final = base.timeout_s

    return Config(api_url=api_url_final, token=token_final, timeout_s=timeout_final)


def redact_token(token: str | None) -> str | None:
    if not token:
        return token
    if len(token) <= 10:
        return token[:2] + "..." + token[-2:]
    return token[:6] + "..." + token[-4:]


def _parse_source_entry(raw: Any, *, index: int) -> SourceSpec:
    if isinstance(raw, str):
        raw = {"source": raw}
    if not isinstance(raw, dict):
        raise SkillsyncError(f"sources[{index}] must be an object with a 'source' field.")

    source = raw.get("source")
    if not isinstance(source, str) or not source.strip():
        raise SkillsyncError(f"sources[{index}].source must be a non-empty string.")

    skills_raw = raw.get("skills")
    if skills_raw is None:
        return SourceSpec(source=source.strip())
    if not isinstance(skills_raw, list) or not all(isinstance(s, str) for s in skills_raw):
        raise SkillsyncError(f"sources[{index}].skills must be a list of skill names.")

    names = tuple(dict.fromkeys(s.strip() for s in skills_raw if s.strip()))
    if "*" in names:
        return SourceSpec(source=source.strip())
    return SourceSpec(source=source.strip(), skills=names)


def load_project_config(base_dir: Path, path: str | Path | None = None) -> ProjectConfig:
    config_file = Path(path).expanduser() if path is not None else base_dir / PROJECT_CONFIG_FILENAME
    if not config_file.exists():
        return ProjectConfig(path=config_file)

    try:
        raw = json.loads(config_file.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise SkillsyncError(f"Could not read project config {config_file}: {e}") from e
    if not isinstance(raw, dict):
        raise SkillsyncError(f"Project config {config_file} must contain a JSON object.")

    sources_raw = raw.get("sources", [])
    if not isinstance(sources_raw, list):
        raise SkillsyncError(f"'sources' in {config_file} must be a list.")

    sources = tuple(_parse_source_entry(item, index=i) for i, item in enumerate(sources_raw))
    return ProjectConfig(path=config_file, sources=sources)
