from __future__ import annotations

import argparse
import json
import logging
import sys
import textwrap
from pathlib import Path

from ._version import __version__
from .client import SkillsyncError
from .config import Config, config_path, load_config, load_project_config, merge_config, redact_token, save_config
from .installer import resolve_and_fetch_sources


class _LevelFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        return f"{record.levelname.lower()}: {record.getMessage()}"


def _configure_logging(*, verbose: bool = False, silent: bool = False) -> None:
    level = logging.INFO
    if verbose:
        level = logging.DEBUG
    if silent:
        level = logging.ERROR

    root = logging.getLogger("skillsync")
    for handler in list(root.handlers):
        root.removeHandler(handler)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(_LevelFormatter())
    root.addHandler(handler)
    root.setLevel(level)
    root.propagate = False


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="skillsync",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Install skills from remote Git sources into the project's curated skill cache.",
        epilog=textwrap.dedent(
            """\
            Environment variables:
              GITHUB_TOKEN, GH_TOKEN, SKILLSYNC_API_URL, SKILLSYNC_TIMEOUT_S, SKILLSYNC_CONFIG_PATH
            """
        ),
    )
    p.add_argument("--version", action="version", version=f"skillsync {__version__}")

    sub = p.add_subparsers(dest="cmd", required=True)

    # config
    cfg = sub.add_parser("config", help="Manage user config")
    cfg_sub = cfg.add_subparsers(dest="subcmd", required=True)
    cfg_sub.add_parser("path", help="Print config path")
    cfg_sub.add_parser("show", help="Show config (token redacted)")

    cfg_set = cfg_sub.add_parser("set", help="Set config fields")
    cfg_set.add_argument("--api-url", help="GitHub API base URL (must be https)")
    cfg_set.add_argument("--token", help="GitHub token")
    cfg_set.add_argument("--timeout-s", type=float)

    # install
    install = sub.add_parser("install", aliases=["i"], help="Fetch skills declared in the project config")
    install.add_argument("--base-dir", default=".", help="Project directory (default: current directory)")
    install.add_argument("--config", dest="config_file", help="Project config file (default: <base-dir>/skillsync.json)")
    install.add_argument("--update", action="store_true", help="Re-resolve every source, ignoring the lockfile")
    install.add_argument(
        "--frozen",
        action="store_true",
        help="Fail if the lockfile does not cover every source; never resolve refs or write the lockfile",
    )
    install.add_argument("--skip-sources", action="store_true", help="Do not fetch anything")
    install.add_argument("--token", help="GitHub token (overrides env/config)")
    install.add_argument("--api-url", help="GitHub API base URL")
    install.add_argument("--timeout-s", type=float, help="HTTP timeout in seconds")
    verbosity = install.add_mutually_exclusive_group()
    verbosity.add_argument("-v", "--verbose", action="store_true")
    verbosity.add_argument("-s", "--silent", action="store_true")

    return p


def _require_https(api_url: str) -> None:
    if not api_url.startswith("https://"):
        raise SkillsyncError(f"GitHub API base URL must use HTTPS: {api_url}")


def cmd_config(args: argparse.Namespace) -> int:
    if args.subcmd == "path":
        print(str(config_path()))
        return 0

    if args.subcmd == "show":
        cfg = load_config()
        d = cfg.__dict__.copy()
        d["token"] = redact_token(cfg.token)
        print(json.dumps(d, indent=2, sort_keys=True))
        return 0

    if args.subcmd == "set":
        cfg = load_config()
        new_cfg = Config(
            api_url=args.api_url or cfg.api_url,
            token=args.token if args.token is not None else cfg.token,
            timeout_s=args.timeout_s if args.timeout_s is not None else cfg.timeout_s,
        )
        _require_https(new_cfg.api_url)
        path = save_config(new_cfg)
        print(f"Saved: {path}")
        return 0

    raise AssertionError("unreachable")


def cmd_install(args: argparse.Namespace) -> int:
    _configure_logging(verbose=args.verbose, silent=args.silent)
    log = logging.getLogger("skillsync.cli")

    base_dir = Path(args.base_dir).expanduser().resolve()
    project = load_project_config(base_dir, args.config_file)
    if not project.sources:
        log.warning("No sources defined in configuration. Nothing to install.")
        return 0

    cfg = merge_config(load_config(), api_url=args.api_url, token=args.token, timeout_s=args.timeout_s)
    _require_https(cfg.api_url)
    result = resolve_and_fetch_sources(
        project.sources,
        base_dir,
        skip_sources=args.skip_sources,
        update_sources=args.update,
        frozen=args.frozen,
        token=cfg.token,
        api_url=cfg.api_url,
        timeout_s=cfg.timeout_s,
    )

    if result.fetched_skill_count > 0:
        print(f"Installed {result.fetched_skill_count} skill(s) from {result.sources_processed} source(s).")
    else:
        print(f"All skills up to date ({result.sources_processed} source(s) checked).")
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        if args.cmd == "config":
            return cmd_config(args)
        if args.cmd in ("install", "i"):
            return cmd_install(args)
        raise AssertionError("unreachable")
    except SkillsyncError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
