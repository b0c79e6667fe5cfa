#!/usr/bin/env python3
"""Tests for the background activity log and its query filters."""

import json
import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

# Ensure bin/ is importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "bin"))

from activity import ActivityLog


class TestActivityLog(unittest.TestCase):
    def setUp(self):
        self.log = ActivityLog(None)

    def tearDown(self):
        self.log.close()

    def _seed(self):
        stamps = [f"2026-03-01T10:00:0{i}Z" for i in range(5)]
        with patch("activity.utc_now_iso", side_effect=stamps):
            self.log.log("alice", "tree.created", {"title": "T"}, tree_id="t1")
            self.log.log("alice", "url.scraped", {"url": "https://a.example"}, tree_id="t1")
            self.log.log("bob", "tree.created", {}, tree_id="t9")
            self.log.log("alice", "url.removed", {}, tree_id="t1", conversation_id="c1")
            self.log.log("alice", "message.sent", {}, tree_id="t2", conversation_id="c2")

    def test_newest_first_per_user(self):
        self._seed()
        page = self.log.entries("alice")
        self.assertEqual([e["action"] for e in page["entries"]],
                         ["message.sent", "url.removed", "url.scraped", "tree.created"])
        self.assertFalse(page["hasMore"])

    def test_limit_and_has_more(self):
        self._seed()
        page = self.log.entries("alice", limit=2)
        self.assertEqual(len(page["entries"]), 2)
        self.assertTrue(page["hasMore"])

    def test_action_prefix(self):
        self._seed()
        page = self.log.entries("alice", action="url.")
        self.assertEqual([e["action"] for e in page["entries"]], ["url.removed", "url.scraped"])

    def test_before_and_scope_filters(self):
        self._seed()
        older = self.log.entries("alice", before="2026-03-01T10:00:03Z")
        self.assertEqual([e["action"] for e in older["entries"]], ["url.scraped", "tree.created"])
        by_tree = self.log.entries("alice", tree_id="t1")
        self.assertEqual(len(by_tree["entries"]), 3)
        by_conv = self.log.entries("alice", conversation_id="c2")
        self.assertEqual([e["action"] for e in by_conv["entries"]], ["message.sent"])

    def test_limit_clamped(self):
        self._seed()
        self.assertEqual(len(self.log.entries("alice", limit=0)["entries"]), 1)
        self.assertEqual(len(self.log.entries("alice", limit=10_000)["entries"]), 4)


class TestActivityFile(unittest.TestCase):
    def test_records_appended_to_file(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "logs" / "activity.jsonl"
            log = ActivityLog(path)
            log.log("alice", "file.added", {"name": "a.txt"}, tree_id="t1")
            log.flush()
            lines = path.read_text(encoding="utf-8").splitlines()
            self.assertEqual(len(lines), 1)
            rec = json.loads(lines[0])
            self.assertEqual((rec["userId"], rec["action"], rec["treeId"]), ("alice", "file.added", "t1"))
            self.assertIsNone(rec["conversationId"])
            log.close()

    def test_write_failure_does_not_raise(self):
        with tempfile.TemporaryDirectory() as tmp:
            blocker = Path(tmp) / "not_a_dir"
            blocker.write_text("x", encoding="utf-8")
            log = ActivityLog(blocker / "activity.jsonl")
            log.log("alice", "tree.created")
            log.flush()
            self.assertEqual(log.entries("alice")["entries"], [])
            log.close()

    def test_log_after_close_is_dropped(self):
        log = ActivityLog(None)
        log.close()
        log.log("alice", "tree.created")


if __name__ == "__main__":
    unittest.main()
