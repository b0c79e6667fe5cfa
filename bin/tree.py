"""Conversation tree mirror: navigation state for one loaded tree.

Holds copies of the persisted conversation records (never the records
themselves) plus derived indices:
  - id -> node map, where each node dict carries a materialized ``children`` list
  - root id and active id
  - per-conversation message lists
  - the streaming overlay (target id, accumulated text, error)

The Store remains authoritative; this mirror can always be rebuilt with load().
"""

from __future__ import annotations

import threading
import time
from typing import Any, Dict, List, Optional

from records import utc_now_iso


class ConversationTree:
    """Session-side mirror of one tree with a three-column sliding window."""

    def __init__(self):
        self._lock = threading.RLock()
        self.reset()

    def reset(self) -> None:
        with self._lock:
            self.tree_id: Optional[str] = None
            self.root_id: Optional[str] = None
            self.active_id: Optional[str] = None
            self.nodes: Dict[str, Dict[str, Any]] = {}
            self.messages: Dict[str, List[Dict[str, Any]]] = {}
            self.streaming = False
            self.streaming_id: Optional[str] = None
            self.streaming_content = ""
            self.streaming_error: Optional[str] = None

    # ------------------------------------------------------------------
    # Structure
    # ------------------------------------------------------------------
    def load(self, tree: Dict[str, Any]) -> None:
        """Rebuild the node map from ``tree["conversations"]`` (a flat list).

        Reloading the same tree keeps the active node; loading a different
        tree starts from a clean mirror.
        """
        with self._lock:
            if self.tree_id is not None and tree.get("id") != self.tree_id:
                self.reset()
            self.tree_id = tree.get("id")
            convs = tree.get("conversations") or []
            self.nodes = {c["id"]: {**c, "children": []} for c in convs}
            self.root_id = None
            for conv in convs:
                node = self.nodes[conv["id"]]
                parent_id = conv.get("parentId")
                if not parent_id:
                    self.root_id = node["id"]
                elif parent_id in self.nodes:
                    self.nodes[parent_id]["children"].append(node)
            if self.active_id is None and self.root_id is not None:
                self.active_id = self.root_id

    def set_active(self, conversation_id: str) -> None:
        with self._lock:
            if conversation_id in self.nodes:
                self.active_id = conversation_id

    def add_node(self, conv: Dict[str, Any]) -> None:
        with self._lock:
            node = {**conv, "children": []}
            self.nodes[node["id"]] = node
            parent_id = node.get("parentId")
            if parent_id and parent_id in self.nodes:
                self.nodes[parent_id]["children"].append(node)
            if not parent_id:
                self.root_id = node["id"]

    def update_node(self, conversation_id: str, updates: Dict[str, Any]) -> None:
        with self._lock:
            node = self.nodes.get(conversation_id)
            if node is not None:
                node.update({k: v for k, v in updates.items() if k not in ("id", "children")})

    def _navigate_from(self, node: Dict[str, Any]) -> None:
        parent_id = node.get("parentId")
        if parent_id and parent_id in self.nodes:
            self.active_id = parent_id
        else:
            self.active_id = self.root_id

    def close(self, conversation_id: str) -> None:
        """Hide a node from navigation; it stays in the map for overviews."""
        with self._lock:
            node = self.nodes.get(conversation_id)
            if node is None:
                return
            node["closedAt"] = utc_now_iso()
            if self.active_id == conversation_id:
                self._navigate_from(node)

    def reopen(self, conversation_id: str) -> None:
        with self._lock:
            node = self.nodes.get(conversation_id)
            if node is None:
                return
            node["closedAt"] = None
            self.active_id = conversation_id

    def soft_delete(self, conversation_id: str) -> None:
        """Tombstone a node and drop its whole subtree from further tree operations."""
        with self._lock:
            node = self.nodes.get(conversation_id)
            if node is None:
                return
            node["deletedAt"] = utc_now_iso()
            parent = self.nodes.get(node.get("parentId") or "")
            if parent is not None:
                parent["children"] = [c for c in parent["children"] if c["id"] != conversation_id]

            subtree = []
            stack = [node]
            while stack:
                current = stack.pop()
                subtree.append(current["id"])
                stack.extend(current["children"])
            if self.active_id in subtree:
                self._navigate_from(node)
            for cid in subtree:
                self.nodes.pop(cid, None)
            if self.root_id in subtree:
                self.root_id = None
                if self.active_id in subtree:
                    self.active_id = None

    # ------------------------------------------------------------------
    # Navigation window
    # ------------------------------------------------------------------
    def visible_columns(self) -> List[Dict[str, Any]]:
        """At most [ancestor, active, sibling] for the active node.

        ancestor: the active node's immediate parent.
        sibling:  its first child that is neither deleted nor closed.
        """
        with self._lock:
            active = self.nodes.get(self.active_id or "")
            if active is None:
                return []
            columns = []
            parent = self.nodes.get(active.get("parentId") or "")
            if parent is not None:
                columns.append({"kind": "ancestor", "node": parent})
            columns.append({"kind": "active", "node": active})
            sibling = next(
                (c for c in active["children"]
                 if c["id"] in self.nodes and not c.get("deletedAt") and not c.get("closedAt")),
                None,
            )
            if sibling is not None:
                columns.append({"kind": "sibling", "node": sibling})
            return columns

    # ------------------------------------------------------------------
    # Messages and streaming overlay
    # ------------------------------------------------------------------
    def set_messages(self, conversation_id: str, messages: List[Dict[str, Any]]) -> None:
        with self._lock:
            self.messages[conversation_id] = list(messages)

    def add_message(self, conversation_id: str, message: Dict[str, Any]) -> None:
        with self._lock:
            self.messages.setdefault(conversation_id, []).append(message)

    def start_streaming(self, conversation_id: str) -> None:
        with self._lock:
            self.streaming_id = conversation_id
            self.streaming_content = ""
            self.streaming = True
            self.streaming_error = None

    def append_chunk(self, text: str) -> None:
        with self._lock:
            self.streaming_content += text

    def finish_streaming(self, usage: Optional[Dict[str, int]] = None,
                         error: Optional[str] = None) -> None:
        """Flush accumulated text as a synthetic assistant message (if any).

        On error the target id is kept so the failure can be attributed.
        """
        with self._lock:
            if self.streaming_id and self.streaming_content:
                usage = usage or {}
                self.messages.setdefault(self.streaming_id, []).append({
                    "id": f"streaming-{int(time.time() * 1000)}",
                    "conversationId": self.streaming_id,
                    "role": "assistant",
                    "content": self.streaming_content,
                    "attachments": [],
                    "fetchedUrls": [],
                    "inputTokens": usage.get("inputTokens"),
                    "outputTokens": usage.get("outputTokens"),
                    "createdAt": utc_now_iso(),
                })
            if not error:
                self.streaming_id = None
            self.streaming_content = ""
            self.streaming = False
            self.streaming_error = error

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------
    def snapshot(self) -> Dict[str, Any]:
        """JSON-ready view: nodes with child ids, visible columns, overlay."""
        with self._lock:
            nodes = {
                cid: {**{k: v for k, v in node.items() if k != "children"},
                      "childIds": [c["id"] for c in node["children"]]}
                for cid, node in self.nodes.items()
            }
            return {
                "treeId": self.tree_id,
                "rootId": self.root_id,
                "activeId": self.active_id,
                "nodes": nodes,
                "columns": [{"kind": c["kind"], "id": c["node"]["id"], "title": c["node"].get("title", "")}
                            for c in self.visible_columns()],
                "streaming": {
                    "active": self.streaming,
                    "conversationId": self.streaming_id,
                    "content": self.streaming_content,
                    "error": self.streaming_error,
                },
            }
