#!/usr/bin/env python3
"""Tests for the conversation tree mirror and its three-column window."""

import sys
import unittest
from pathlib import Path

# Ensure bin/ is importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "bin"))

from tree import ConversationTree


def _make_tree():
    """root -> a -> (b, c); root -> d"""
    view = ConversationTree()
    view.load({
        "id": "t1",
        "conversations": [
            {"id": "root", "parentId": None, "title": "Root"},
            {"id": "a", "parentId": "root", "title": "A"},
            {"id": "b", "parentId": "a", "title": "B"},
            {"id": "c", "parentId": "a", "title": "C"},
            {"id": "d", "parentId": "root", "title": "D"},
        ],
    })
    return view


def _kinds(view):
    return [(c["kind"], c["node"]["id"]) for c in view.visible_columns()]


class TestColumns(unittest.TestCase):
    def test_root_has_no_ancestor(self):
        view = _make_tree()
        self.assertEqual(view.active_id, "root")
        self.assertEqual(_kinds(view), [("active", "root"), ("sibling", "a")])

    def test_middle_node_has_three_columns(self):
        view = _make_tree()
        view.set_active("a")
        self.assertEqual(_kinds(view), [("ancestor", "root"), ("active", "a"), ("sibling", "b")])

    def test_leaf_has_no_sibling(self):
        view = _make_tree()
        view.set_active("b")
        self.assertEqual(_kinds(view), [("ancestor", "a"), ("active", "b")])

    def test_unknown_active_ignored(self):
        view = _make_tree()
        view.set_active("nope")
        self.assertEqual(view.active_id, "root")

    def test_never_more_than_three(self):
        view = _make_tree()
        for cid in list(view.nodes):
            view.set_active(cid)
            self.assertLessEqual(len(view.visible_columns()), 3)

    def test_reload_same_tree_keeps_active(self):
        view = _make_tree()
        view.set_active("c")
        view.load({"id": "t1", "conversations": [
            {"id": "root", "parentId": None}, {"id": "a", "parentId": "root"},
            {"id": "c", "parentId": "a"}]})
        self.assertEqual(view.active_id, "c")
        view.load({"id": "t2", "conversations": [{"id": "r2", "parentId": None}]})
        self.assertEqual(view.active_id, "r2")


class TestCloseAndDelete(unittest.TestCase):
    def test_closed_child_skipped_as_sibling(self):
        view = _make_tree()
        view.set_active("a")
        view.close("b")
        self.assertEqual(_kinds(view)[-1], ("sibling", "c"))
        self.assertEqual(view.active_id, "a")

    def test_close_active_moves_to_parent(self):
        view = _make_tree()
        view.set_active("b")
        view.close("b")
        self.assertEqual(view.active_id, "a")
        self.assertIsNotNone(view.nodes["b"]["closedAt"])

    def test_reopen_activates(self):
        view = _make_tree()
        view.close("d")
        view.reopen("d")
        self.assertEqual(view.active_id, "d")
        self.assertIsNone(view.nodes["d"]["closedAt"])

    def test_soft_delete_removes_subtree(self):
        view = _make_tree()
        view.set_active("b")
        view.soft_delete("a")
        self.assertEqual(view.active_id, "root")
        for cid in ("a", "b", "c"):
            self.assertNotIn(cid, view.nodes)
        self.assertEqual([c["id"] for c in view.nodes["root"]["children"]], ["d"])
        self.assertEqual(_kinds(view), [("active", "root"), ("sibling", "d")])

    def test_soft_delete_unknown_is_noop(self):
        view = _make_tree()
        view.soft_delete("zzz")
        self.assertEqual(len(view.nodes), 5)

    def test_add_and_update_node(self):
        view = _make_tree()
        view.add_node({"id": "e", "parentId": "d", "title": "E"})
        view.set_active("d")
        self.assertEqual(_kinds(view)[-1], ("sibling", "e"))
        view.update_node("e", {"title": "Renamed", "id": "ignored"})
        self.assertEqual(view.nodes["e"]["title"], "Renamed")
        self.assertEqual(view.nodes["e"]["id"], "e")


class TestStreamingOverlay(unittest.TestCase):
    def test_success_flushes_synthetic_message(self):
        view = _make_tree()
        view.start_streaming("a")
        view.append_chunk("He")
        view.append_chunk("llo")
        self.assertEqual(view.snapshot()["streaming"]["content"], "Hello")
        view.finish_streaming(usage={"inputTokens": 3, "outputTokens": 2})
        msg = view.messages["a"][-1]
        self.assertTrue(msg["id"].startswith("streaming-"))
        self.assertEqual((msg["role"], msg["content"], msg["outputTokens"]), ("assistant", "Hello", 2))
        self.assertFalse(view.streaming)
        self.assertIsNone(view.streaming_id)

    def test_error_keeps_target(self):
        view = _make_tree()
        view.start_streaming("a")
        view.finish_streaming(error="LLM error occurred")
        self.assertEqual(view.streaming_id, "a")
        self.assertEqual(view.streaming_error, "LLM error occurred")
        self.assertNotIn("a", view.messages)

    def test_snapshot_shape(self):
        view = _make_tree()
        view.set_active("a")
        snap = view.snapshot()
        self.assertEqual(snap["rootId"], "root")
        self.assertEqual(snap["nodes"]["a"]["childIds"], ["b", "c"])
        self.assertNotIn("children", snap["nodes"]["a"])
        self.assertEqual([c["id"] for c in snap["columns"]], ["root", "a", "b"])


if __name__ == "__main__":
    unittest.main()
