import io
import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from skillsync.cli import build_parser, main
from skillsync.config import Config, SourceSpec
from skillsync.installer import FetchResult, FrozenLockMissingError


def _project(td: str, sources: list) -> str:
    (Path(td) / "skillsync.json").write_text(json.dumps({"sources": sources}), encoding="utf-8")
    return td


class TestInstallCommand(unittest.TestCase):
    def test_parser_accepts_alias_and_flags(self) -> None:
        args = build_parser().parse_args(["i", "--frozen", "--update", "-v"])
        self.assertEqual(args.cmd, "i")
        self.assertTrue(args.frozen)
        self.assertTrue(args.update)
        self.assertTrue(args.verbose)

    def test_verbose_and_silent_are_exclusive(self) -> None:
        with patch("sys.stderr", new=io.StringIO()):
            with self.assertRaises(SystemExit):
                build_parser().parse_args(["install", "-v", "-s"])

    def test_no_sources_warns_and_succeeds(self) -> None:
        with (
            tempfile.TemporaryDirectory() as td,
            patch("skillsync.cli.resolve_and_fetch_sources") as fetch,
            patch("sys.stderr", new=io.StringIO()) as stderr,
            patch("sys.stdout", new=io.StringIO()),
        ):
            rc = main(["install", "--base-dir", td])

        self.assertEqual(rc, 0)
        fetch.assert_not_called()
        self.assertIn("warning: No sources defined in configuration. Nothing to install.", stderr.getvalue())

    def test_reports_installed_skills(self) -> None:
        with (
            tempfile.TemporaryDirectory() as td,
            patch.dict(os.environ, {}, clear=True),
            patch("skillsync.cli.load_config", return_value=Config()),
            patch("skillsync.cli.resolve_and_fetch_sources", return_value=FetchResult(3, 2)) as fetch,
            patch("sys.stderr", new=io.StringIO()),
            patch("sys.stdout", new=io.StringIO()) as stdout,
        ):
            _project(td, ["org/repo", {"source": "org/other", "skills": ["a"]}])
            rc = main(["install", "--base-dir", td, "--update", "--token", "tok_cli"])

        self.assertEqual(rc, 0)
        self.assertIn("Installed 3 skill(s) from 2 source(s).", stdout.getvalue())
        sources = fetch.call_args.args[0]
        self.assertEqual(sources, (SourceSpec("org/repo"), SourceSpec("org/other", skills=("a",))))
        self.assertEqual(fetch.call_args.kwargs["token"], "tok_cli")
        self.assertTrue(fetch.call_args.kwargs["update_sources"])
        self.assertFalse(fetch.call_args.kwargs["frozen"])

    def test_reports_up_to_date(self) -> None:
        with (
            tempfile.TemporaryDirectory() as td,
            patch("skillsync.cli.load_config", return_value=Config()),
            patch("skillsync.cli.resolve_and_fetch_sources", return_value=FetchResult(0, 1)),
            patch("sys.stderr", new=io.StringIO()),
            patch("sys.stdout", new=io.StringIO()) as stdout,
        ):
            _project(td, ["org/repo"])
            rc = main(["install", "--base-dir", td])

        self.assertEqual(rc, 0)
        self.assertIn("All skills up to date (1 source(s) checked).", stdout.getvalue())

    def test_frozen_failure_exits_nonzero(self) -> None:
        with (
            tempfile.TemporaryDirectory() as td,
            patch("skillsync.cli.load_config", return_value=Config()),
            patch(
                "skillsync.cli.resolve_and_fetch_sources",
                side_effect=FrozenLockMissingError(["org/repo"]),
            ),
            patch("sys.stderr", new=io.StringIO()) as stderr,
            patch("sys.stdout", new=io.StringIO()),
        ):
            _project(td, ["org/repo"])
            rc = main(["install", "--base-dir", td, "--frozen"])

        self.assertEqual(rc, 1)
        self.assertIn("error: Frozen install failed: lockfile is missing entries for: org/repo", stderr.getvalue())

    def test_invalid_project_config_exits_nonzero(self) -> None:
        with (
            tempfile.TemporaryDirectory() as td,
            patch("sys.stderr", new=io.StringIO()) as stderr,
            patch("sys.stdout", new=io.StringIO()),
        ):
            (Path(td) / "skillsync.json").write_text('{"sources": "org/repo"}', encoding="utf-8")
            rc = main(["install", "--base-dir", td])

        self.assertEqual(rc, 1)
        self.assertIn("error:", stderr.getvalue())

    def test_plain_http_api_url_is_rejected_before_fetching(self) -> None:
        with (
            tempfile.TemporaryDirectory() as td,
            patch.dict(os.environ, {}, clear=True),
            patch("skillsync.cli.load_config", return_value=Config()),
            patch("skillsync.cli.resolve_and_fetch_sources") as fetch,
            patch("sys.stderr", new=io.StringIO()) as stderr,
            patch("sys.stdout", new=io.StringIO()),
        ):
            _project(td, ["org/repo"])
            rc = main(["install", "--base-dir", td, "--api-url", "http://api.github.com"])

        self.assertEqual(rc, 1)
        fetch.assert_not_called()
        self.assertIn("error: GitHub API base URL must use HTTPS", stderr.getvalue())

    def test_corrupt_user_config_exits_nonzero(self) -> None:
        with (
            tempfile.TemporaryDirectory() as td,
            patch.dict(os.environ, {"SKILLSYNC_CONFIG_PATH": str(Path(td) / "config.json")}),
            patch("skillsync.cli.resolve_and_fetch_sources") as fetch,
            patch("sys.stderr", new=io.StringIO()) as stderr,
            patch("sys.stdout", new=io.StringIO()),
        ):
            (Path(td) / "config.json").write_text("{broken", encoding="utf-8")
            _project(td, ["org/repo"])
            rc = main(["install", "--base-dir", td])

        self.assertEqual(rc, 1)
        fetch.assert_not_called()
        self.assertIn("error: Could not read user config", stderr.getvalue())


class TestConfigCommand(unittest.TestCase):
    def test_set_rejects_plain_http(self) -> None:
        with (
            tempfile.TemporaryDirectory() as td,
            patch.dict(os.environ, {"SKILLSYNC_CONFIG_PATH": str(Path(td) / "config.json")}),
            patch("sys.stderr", new=io.StringIO()) as stderr,
            patch("sys.stdout", new=io.StringIO()),
        ):
            rc = main(["config", "set", "--api-url", "http://api.github.com"])
            saved = (Path(td) / "config.json").exists()

        self.assertEqual(rc, 1)
        self.assertFalse(saved)
        self.assertIn("must use HTTPS", stderr.getvalue())

    def test_show_redacts_token(self) -> None:
        with (
            tempfile.TemporaryDirectory() as td,
            patch.dict(os.environ, {"SKILLSYNC_CONFIG_PATH": str(Path(td) / "config.json")}),
            patch("sys.stdout", new=io.StringIO()) as stdout,
        ):
            self.assertEqual(main(["config", "set", "--token", "ghp_abcdefghijkl"]), 0)
            self.assertEqual(main(["config", "show"]), 0)

        shown = json.loads(stdout.getvalue().split("\n", 1)[1])
        self.assertEqual(shown["token"], "ghp_ab...ijkl")


if __name__ == "__main__":
    unittest.main()
