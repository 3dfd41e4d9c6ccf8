from __future__ import annotations

import base64
import json
import logging
import os
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

import httpx

from ._version import __version__

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.github.com"
DEFAULT_TIMEOUT_S = 30.0
GITHUB_API_VERSION = "2022-11-28"
ENTRY_TYPES = ("file", "dir", "symlink", "submodule")


class SkillsyncError(RuntimeError):
    pass


@dataclass(frozen=True)
class GitHostHTTPError(SkillsyncError):
    status_code: int
    body: str

    def __str__(self) -> str:
        message = _extract_message(self.body) or f"HTTP {self.status_code}"
        if self.status_code == 401:
            return f"Authentication failed: {message}. Check your GitHub token."
        if self.status_code == 403:
            if "rate limit" in message.lower():
                return f"GitHub API rate limit exceeded: {message}"
            return f"Access forbidden: {message}. Check repository permissions."
        if self.status_code == 404:
            return f"Not found: {message}"
        if self.status_code == 422:
            return f"Invalid request: {message}"
        return f"GitHub API error (HTTP {self.status_code}): {message}"


@dataclass(frozen=True)
class RemoteEntry:
    name: str
    path: str
    type: str
    size: int = 0


def _extract_message(body: str) -> str | None:
    try:
        obj = json.loads(body)
    except json.JSONDecodeError:
        text = body.strip()
        return text or None
    if isinstance(obj, dict) and isinstance(obj.get("message"), str):
        return obj["message"]
    return None


def _parse_entry(raw: Any) -> RemoteEntry | None:
    if not isinstance(raw, dict):
        return None
    name = raw.get("name")
    path = raw.get("path")
    kind = raw.get("type")
    if not isinstance(name, str) or not isinstance(path, str) or kind not in ENTRY_TYPES:
        return None
    size = raw.get("size")
    return RemoteEntry(name=name, path=path, type=kind, size=size if isinstance(size, int) else 0)


def log_auth_hints(error: GitHostHTTPError) -> None:
    logger.error("GitHub API error: %s", error)
    if error.status_code in (401, 403):
        logger.info("Tip: set GITHUB_TOKEN or GH_TOKEN for private repositories or higher rate limits.")
        logger.info("Tip: with the GitHub CLI, run `GITHUB_TOKEN=$(gh auth token) skillsync install`.")


class GitHubClient:
    """
    Minimal GitHub REST client covering what source installs need:
    default branch lookup, ref resolution, directory listing and raw file reads.
    """

    def __init__(
        self,
        *,
        api_url: str = DEFAULT_API_URL,
        token: str | None = None,
        timeout_s: float = DEFAULT_TIMEOUT_S,
    ) -> None:
        if not api_url.startswith("https://"):
            raise SkillsyncError(f"GitHub API base URL must use HTTPS: {api_url}")
        self.api_url = api_url.rstrip("/")
        self.token = token
        self.timeout_s = timeout_s
        self._http = httpx.Client(timeout=timeout_s, follow_redirects=True)

    @staticmethod
    def resolve_token(explicit_token: str | None = None) -> str | None:
        if explicit_token:
            return explicit_token
        return os.getenv("GITHUB_TOKEN") or os.getenv("GH_TOKEN") or None

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "GitHubClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def request(
        self,
        *,
        path: str,
        params: dict[str, Any] | None = None,
        accept: str = "application/vnd.github+json",
    ) -> httpx.Response:
        if not path.startswith("/"):
            path = "/" + path
        headers = {
            "Accept": accept,
            "X-GitHub-Api-Version": GITHUB_API_VERSION,
            "User-Agent": f"skillsync/{__version__}",
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        try:
            resp = self._http.get(f"{self.api_url}{path}", params=params, headers=headers)
        except httpx.HTTPError as e:
            raise SkillsyncError(f"Request failed: {e}") from e

        if resp.status_code >= 400:
            raise GitHostHTTPError(resp.status_code, resp.text)
        return resp

    def _repo_path(self, owner: str, repo: str) -> str:
        return f"/repos/{quote(owner, safe='')}/{quote(repo, safe='')}"

    def _contents_path(self, owner: str, repo: str, path: str) -> str:
        return f"{self._repo_path(owner, repo)}/contents/{quote(path.strip('/'), safe='/')}"

    def get_default_branch(self, owner: str, repo: str) -> str:
        data = self.request(path=self._repo_path(owner, repo)).json()
        branch = data.get("default_branch") if isinstance(data, dict) else None
        if not isinstance(branch, str) or not branch:
            raise SkillsyncError(f"Invalid repository info response for {owner}/{repo}: missing default_branch")
        return branch

    def resolve_ref_to_sha(self, owner: str, repo: str, ref: str) -> str:
        path = f"{self._repo_path(owner, repo)}/commits/{quote(ref, safe='')}"
        data = self.request(path=path).json()
        sha = data.get("sha") if isinstance(data, dict) else None
        if not isinstance(sha, str) or not sha:
            raise SkillsyncError(f"Could not resolve ref {ref!r} for {owner}/{repo}")
        return sha

    def list_directory(self, owner: str, repo: str, path: str, ref: str | None = None) -> list[RemoteEntry]:
        params = {"ref": ref} if ref else None
        data = self.request(path=self._contents_path(owner, repo, path), params=params).json()
        # The contents API answers with a single object for files.
        if not isinstance(data, list):
            raise SkillsyncError(f'Path "{path}" is not a directory')
        entries: list[RemoteEntry] = []
        for item in data:
            entry = _parse_entry(item)
            if entry is not None:
                entries.append(entry)
        return entries

    def get_file_content(self, owner: str, repo: str, path: str, ref: str | None = None) -> bytes:
        params = {"ref": ref} if ref else None
        resp = self.request(
            path=self._contents_path(owner, repo, path),
            params=params,
            accept="application/vnd.github.raw",
        )
        ctype = resp.headers.get("content-type", "")
        if "application/json" not in ctype:
            return resp.content
        try:
            data = resp.json()
        except ValueError:
            return resp.content
        if isinstance(data, dict) and data.get("encoding") == "base64" and isinstance(data.get("content"), str):
            return base64.b64decode(data["content"])
        if isinstance(data, list):
            raise SkillsyncError(f'Path "{path}" is a directory, not a file')
        return resp.content
