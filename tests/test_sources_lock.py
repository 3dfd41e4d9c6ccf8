import json
import tempfile
import unittest
from pathlib import Path

from skillsync.sources_lock import LockedSkill, LockedSource, LockStore, SourcesLock


class TestLockStore(unittest.TestCase):
    def test_missing_file_reads_as_empty_lock(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            lock = LockStore(Path(td)).read()
        self.assertEqual(lock.lockfile_version, 1)
        self.assertEqual(lock.sources, {})

    def test_write_then_read(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            store = LockStore(Path(td))
            lock = SourcesLock()
            lock.set(
                "https://github.com/org/repo",
                LockedSource(
                    resolved_ref="abc123",
                    skills={"my-skill": LockedSkill(integrity="sha256-x")},
                    requested_ref="main",
                    resolved_at="2026-01-01T00:00:00Z",
                ),
            )
            path = store.write(lock)
            raw = json.loads(path.read_text(encoding="utf-8"))
            leftovers = [p.name for p in Path(td).iterdir()]
            again = store.read()

        self.assertEqual(path.name, "skillsync.lock")
        self.assertEqual(leftovers, ["skillsync.lock"])
        self.assertEqual(
            raw,
            {
                "lockfileVersion": 1,
                "sources": {
                    "org/repo": {
                        "resolvedRef": "abc123",
                        "requestedRef": "main",
                        "resolvedAt": "2026-01-01T00:00:00Z",
                        "skills": {"my-skill": {"integrity": "sha256-x"}},
                    }
                },
            },
        )
        self.assertEqual(again.get("org/repo"), lock.get("org/repo"))

    def test_optional_fields_are_omitted(self) -> None:
        lock = SourcesLock(sources={"org/repo": LockedSource(resolved_ref="abc")})
        self.assertEqual(lock.to_json()["sources"]["org/repo"], {"resolvedRef": "abc", "skills": {}})

    def test_keys_are_normalized_on_read(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            (Path(td) / "skillsync.lock").write_text(
                json.dumps(
                    {
                        "lockfileVersion": 1,
                        "sources": {"https://github.com/Org/Repo.git": {"resolvedRef": "abc", "skills": {}}},
                    }
                ),
                encoding="utf-8",
            )
            lock = LockStore(Path(td)).read()
        self.assertEqual(list(lock.sources), ["org/repo"])

    def test_legacy_format_is_migrated(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            (Path(td) / "skillsync.lock").write_text(
                json.dumps({"sources": {"org/repo": {"resolvedRef": "abc", "skills": ["a", "b"]}}}),
                encoding="utf-8",
            )
            with self.assertLogs("skillsync.sources_lock", level="INFO") as logs:
                lock = LockStore(Path(td)).read()

        entry = lock.get("org/repo")
        self.assertIsNotNone(entry)
        assert entry is not None
        self.assertEqual(entry.resolved_ref, "abc")
        self.assertEqual(entry.skills, {"a": LockedSkill(integrity=""), "b": LockedSkill(integrity="")})
        self.assertTrue(any("Migrated legacy" in line for line in logs.output))

    def test_invalid_json_starts_fresh_with_warning(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            (Path(td) / "skillsync.lock").write_text("{not json", encoding="utf-8")
            with self.assertLogs("skillsync.sources_lock", level="WARNING"):
                lock = LockStore(Path(td)).read()
        self.assertEqual(lock.sources, {})

    def test_invalid_shape_starts_fresh_with_warning(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            (Path(td) / "skillsync.lock").write_text(
                json.dumps({"lockfileVersion": 1, "sources": {"org/repo": {"skills": {}}}}),
                encoding="utf-8",
            )
            with self.assertLogs("skillsync.sources_lock", level="WARNING"):
                lock = LockStore(Path(td)).read()
        self.assertEqual(lock.sources, {})


class TestSourcesLock(unittest.TestCase):
    def test_prune_returns_removed_keys(self) -> None:
        lock = SourcesLock(
            sources={
                "org/keep": LockedSource(resolved_ref="a"),
                "org/drop": LockedSource(resolved_ref="b"),
            }
        )
        removed = lock.prune({"org/keep"})
        self.assertEqual(removed, ["org/drop"])
        self.assertEqual(list(lock.sources), ["org/keep"])

    def test_copy_is_independent(self) -> None:
        lock = SourcesLock(sources={"org/repo": LockedSource(resolved_ref="a", skills={"x": LockedSkill("sha256-x")})})
        clone = lock.copy()
        clone.sources["org/repo"].skills["y"] = LockedSkill("sha256-y")
        clone.sources["org/other"] = LockedSource(resolved_ref="b")

        self.assertEqual(list(lock.sources["org/repo"].skills), ["x"])
        self.assertNotIn("org/other", lock.sources)

    def test_dumps_is_stable(self) -> None:
        a = SourcesLock(sources={"b/b": LockedSource("2"), "a/a": LockedSource("1")})
        b = SourcesLock(sources={"a/a": LockedSource("1"), "b/b": LockedSource("2")})
        self.assertEqual(a.dumps(), b.dumps())
        self.assertTrue(a.dumps().endswith("\n"))


if __name__ == "__main__":
    unittest.main()
