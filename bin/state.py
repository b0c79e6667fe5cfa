"""Dendro state management: the persisted arena of trees, conversations and messages.

  - JSONL serialization of typed records (header/tree/conversation/message/project_file)
  - Atomic whole-file rewrites after every mutation
  - Ownership checks (foreign ids look exactly like missing ids)
  - Ancestor-chain traversal and deepest-first cascade deletion
  - Summary cache, context URL and one-shot fetchedUrls updates

Children are never stored: they are derived from each conversation's
parent_id, so removing a node can never leave a dangling child pointer.
"""

from __future__ import annotations

import json
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from records import (
    VERBOSITIES,
    Attachment,
    ContextUrl,
    Conversation,
    Message,
    NotFoundError,
    ProjectFile,
    Tree,
    ValidationError,
    new_id,
    utc_now_iso,
)


STATE_VERSION = 1  # Current JSONL record grammar version.


# ---------------------------------------------------------------------------
# JSONL I/O
# ---------------------------------------------------------------------------
def records_to_jsonl(records: Iterable[dict]) -> str:
    """Serialize typed records, one JSON object per line."""
    return "".join(json.dumps(rec, ensure_ascii=False) + "\n" for rec in records)


def jsonl_to_records(text: str) -> List[dict]:
    """Parse JSONL text into typed records, skipping blank or malformed lines."""
    out = []
    for line in text.split("\n"):
        line = line.strip()
        if not line:
            continue
        try:
            obj = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(obj, dict) and obj.get("type"):
            out.append(obj)
    return out


def atomic_write_jsonl(path: Path, records: Iterable[dict], *, reject_symlinks: bool = False) -> None:
    """Write records to a .jsonl file atomically."""
    if reject_symlinks and path.exists() and path.is_symlink():
        raise ValidationError("Refusing to write symlink state file")

    path.parent.mkdir(parents=True, exist_ok=True)
    content = records_to_jsonl(records)

    fd, tmp_name = tempfile.mkstemp(prefix=path.name + ".", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp:
            tmp.write(content)
            tmp.flush()
            os.fsync(tmp.fileno())
        os.replace(tmp_name, str(path))
    finally:
        if os.path.exists(tmp_name):
            os.remove(tmp_name)


def _typed(kind: str, payload: dict) -> dict:
    record = {"type": kind}
    record.update(payload)
    return record


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------
class Store:
    """Thread-safe arena of Dendro records, optionally backed by a JSONL file.

    Every public mutation runs under one re-entrant lock and rewrites the
    file before returning, so a persisted user message survives any later
    provider failure.  ``Store(None)`` keeps everything in memory.
    """

    def __init__(self, path: Path | None = None, *, reject_symlinks: bool = True):
        self.path = path
        self.reject_symlinks = reject_symlinks
        self._lock = threading.RLock()
        self._trees: Dict[str, Tree] = {}
        self._conversations: Dict[str, Conversation] = {}
        self._messages: Dict[str, List[Message]] = {}
        self._message_index: Dict[str, Message] = {}
        self._files: Dict[str, ProjectFile] = {}
        if path is not None and path.exists():
            self._load()

    # -- persistence --------------------------------------------------------
    def _load(self) -> None:
        if self.reject_symlinks and self.path.is_symlink():
            raise ValidationError("State file cannot be a symlink")
        for rec in jsonl_to_records(self.path.read_text(encoding="utf-8")):
            kind = rec.pop("type")
            if kind == "tree":
                tree = Tree.from_dict(rec)
                self._trees[tree.id] = tree
            elif kind == "conversation":
                conv = Conversation.from_dict(rec)
                self._conversations[conv.id] = conv
                self._messages.setdefault(conv.id, [])
            elif kind == "message":
                msg = Message.from_dict(rec)
                self._messages.setdefault(msg.conversation_id, []).append(msg)
                self._message_index[msg.id] = msg
            elif kind == "project_file":
                pf = ProjectFile.from_dict(rec)
                self._files[pf.id] = pf

    def _records(self) -> List[dict]:
        records = [{"type": "header", "version": STATE_VERSION, "time": utc_now_iso()}]
        records.extend(_typed("tree", t.to_dict()) for t in self._trees.values())
        records.extend(_typed("conversation", c.to_dict()) for c in self._conversations.values())
        for msgs in self._messages.values():
            records.extend(_typed("message", m.to_dict()) for m in msgs)
        records.extend(_typed("project_file", f.to_dict()) for f in self._files.values())
        return records

    def _save(self) -> None:
        if self.path is None:
            return
        atomic_write_jsonl(self.path, self._records(), reject_symlinks=self.reject_symlinks)

    # -- trees --------------------------------------------------------------
    def create_tree(self, user_id: str, title: str, model: str,
                    verbosity: str = "detailed") -> tuple:
        """Create a tree together with its root conversation."""
        title = (title or "").strip()
        if not title:
            raise ValidationError("Title required")
        _check_verbosity(verbosity)
        with self._lock:
            tree = Tree(id=new_id(), user_id=user_id, title=title)
            root = Conversation(id=new_id(), tree_id=tree.id, parent_id=None,
                                title=title, model=model, verbosity=verbosity)
            self._trees[tree.id] = tree
            self._conversations[root.id] = root
            self._messages[root.id] = []
            self._save()
            return tree, root

    def list_trees(self, user_id: str) -> List[Tree]:
        """Live trees owned by *user_id*: pinned first, then newest first."""
        with self._lock:
            mine = [t for t in self._trees.values() if t.user_id == user_id and not t.deleted_at]
        # reversed() so equal timestamps keep newest-inserted first
        newest = sorted(reversed(mine), key=lambda t: t.created_at, reverse=True)
        return sorted(newest, key=lambda t: t.pinned_at is None)

    def get_tree(self, user_id: str, tree_id: str) -> Tree:
        tree = self._trees.get(tree_id)
        if tree is None or tree.user_id != user_id:
            raise NotFoundError("Tree not found")
        return tree

    def tree(self, tree_id: str) -> Tree:
        """Unchecked lookup for internal callers that already verified ownership."""
        tree = self._trees.get(tree_id)
        if tree is None:
            raise NotFoundError("Tree not found")
        return tree

    def tree_conversations(self, tree_id: str) -> List[Conversation]:
        with self._lock:
            return [c for c in self._conversations.values() if c.tree_id == tree_id]

    def root_conversation(self, tree_id: str) -> Optional[Conversation]:
        return next((c for c in self.tree_conversations(tree_id) if c.parent_id is None), None)

    def update_tree(self, user_id: str, tree_id: str, fields: Dict[str, Any]) -> Tree:
        """Apply title / pinned_at / deleted_at changes."""
        with self._lock:
            tree = self.get_tree(user_id, tree_id)
            if "title" in fields:
                title = str(fields["title"] or "").strip()
                if not title:
                    raise ValidationError("Title cannot be empty")
                tree.title = title
            if "pinned_at" in fields:
                tree.pinned_at = fields["pinned_at"]
            if "deleted_at" in fields:
                tree.deleted_at = fields["deleted_at"]
            self._save()
            return tree

    def delete_tree(self, user_id: str, tree_id: str) -> None:
        """Cascade: messages, then conversations, then project files, then the tree."""
        with self._lock:
            self.get_tree(user_id, tree_id)
            conv_ids = [c.id for c in self.tree_conversations(tree_id)]
            for cid in conv_ids:
                for msg in self._messages.pop(cid, []):
                    self._message_index.pop(msg.id, None)
            for cid in conv_ids:
                self._conversations.pop(cid, None)
            for fid in [f.id for f in self._files.values() if f.tree_id == tree_id]:
                del self._files[fid]
            del self._trees[tree_id]
            self._save()

    # -- conversations ------------------------------------------------------
    def get_conversation(self, user_id: str, conversation_id: str) -> Conversation:
        conv = self._conversations.get(conversation_id)
        if conv is None:
            raise NotFoundError("Conversation not found")
        tree = self._trees.get(conv.tree_id)
        if tree is None or tree.user_id != user_id:
            raise NotFoundError("Conversation not found")
        return conv

    def conversation(self, conversation_id: str) -> Conversation:
        """Unchecked lookup for internal callers that already verified ownership."""
        conv = self._conversations.get(conversation_id)
        if conv is None:
            raise NotFoundError("Conversation not found")
        return conv

    def children(self, conversation_id: str) -> List[Conversation]:
        with self._lock:
            return [c for c in self._conversations.values() if c.parent_id == conversation_id]

    def ancestor_chain(self, conversation_id: str) -> List[Conversation]:
        """Return conversations from root to *conversation_id* (inclusive)."""
        chain: List[Conversation] = []
        seen = set()
        current = self._conversations.get(conversation_id)
        while current is not None and current.id not in seen:
            seen.add(current.id)
            chain.append(current)
            current = self._conversations.get(current.parent_id) if current.parent_id else None
        chain.reverse()
        return chain

    def create_conversation(
        self,
        user_id: str,
        tree_id: str,
        title: str,
        model: str,
        verbosity: str = "normal",
        *,
        parent_id: str | None = None,
        branch_text: str | None = None,
        branch_message_id: str | None = None,
        branch_summary: str | None = None,
    ) -> Conversation:
        """Create a conversation, validating its parent and branch anchor."""
        title = (title or "").strip()
        if not title:
            raise ValidationError("treeId and title required")
        _check_verbosity(verbosity)
        with self._lock:
            self.get_tree(user_id, tree_id)
            if parent_id:
                parent = self.get_conversation(user_id, parent_id)
                if parent.tree_id != tree_id:
                    raise ValidationError("Parent conversation belongs to another tree")
            elif branch_message_id or branch_text:
                raise ValidationError("Branch fields require a parent conversation")
            if branch_message_id:
                owner = self._message_index.get(branch_message_id)
                lineage = {c.id for c in self.ancestor_chain(parent_id)}
                if owner is None or owner.conversation_id not in lineage:
                    raise ValidationError("branchMessageId is not in the parent's ancestor chain")
            conv = Conversation(
                id=new_id(),
                tree_id=tree_id,
                parent_id=parent_id or None,
                title=title,
                model=model,
                verbosity=verbosity,
                branch_text=branch_text or None,
                branch_message_id=branch_message_id or None,
                branch_summary=branch_summary or None,
            )
            self._conversations[conv.id] = conv
            self._messages[conv.id] = []
            self._save()
            return conv

    def update_conversation(self, user_id: str, conversation_id: str,
                            fields: Dict[str, Any]) -> Conversation:
        """Apply title / model / verbosity / closed_at / deleted_at changes."""
        with self._lock:
            conv = self.get_conversation(user_id, conversation_id)
            if "title" in fields:
                title = str(fields["title"] or "").strip()
                if not title:
                    raise ValidationError("Title cannot be empty")
                conv.title = title
            if "model" in fields and fields["model"]:
                conv.model = str(fields["model"])
            if "verbosity" in fields:
                _check_verbosity(fields["verbosity"])
                conv.verbosity = fields["verbosity"]
            if "closed_at" in fields:
                conv.closed_at = fields["closed_at"]
            if "deleted_at" in fields:
                # Descendants share the tombstone; a restore only revives
                # the ones that were hidden by this same tombstone.
                previous, conv.deleted_at = conv.deleted_at, fields["deleted_at"]
                for child in self._descendants(conv.id):
                    if conv.deleted_at and child.deleted_at is None:
                        child.deleted_at = conv.deleted_at
                    elif not conv.deleted_at and previous and child.deleted_at == previous:
                        child.deleted_at = None
            self._save()
            return conv

    def _descendants(self, conversation_id: str) -> List[Conversation]:
        found: List[Conversation] = []
        pending = [conversation_id]
        while pending:
            for child in self.children(pending.pop()):
                found.append(child)
                pending.append(child.id)
        return found

    def delete_conversation(self, user_id: str, conversation_id: str) -> List[str]:
        """Remove a conversation and its descendants, deepest first.

        Returns the removed ids in deletion order.
        """
        with self._lock:
            self.get_conversation(user_id, conversation_id)
            order: List[str] = []

            def _collect(cid: str) -> None:
                for child in self.children(cid):
                    _collect(child.id)
                order.append(cid)

            _collect(conversation_id)
            for cid in order:
                for msg in self._messages.pop(cid, []):
                    self._message_index.pop(msg.id, None)
                self._conversations.pop(cid, None)
            self._save()
            return order

    def cache_summary(self, conversation_id: str, message_id: str, summary: str) -> None:
        with self._lock:
            conv = self.conversation(conversation_id)
            conv.summary_cache[message_id] = summary
            self._save()

    def latest_conversation(self, user_id: str) -> Optional[Conversation]:
        """Most recently created live conversation across the user's trees."""
        with self._lock:
            owned = {t.id for t in self._trees.values() if t.user_id == user_id and not t.deleted_at}
            convs = [c for c in self._conversations.values()
                     if c.tree_id in owned and not c.deleted_at]
        if not convs:
            return None
        return max(enumerate(convs), key=lambda pair: (pair[1].created_at, pair[0]))[1]

    # -- context URLs -------------------------------------------------------
    def add_tree_context_url(self, user_id: str, tree_id: str, url: str, content: str) -> Tree:
        with self._lock:
            tree = self.get_tree(user_id, tree_id)
            tree.context_urls = _upsert_url(tree.context_urls, url, content)
            self._save()
            return tree

    def remove_tree_context_url(self, user_id: str, tree_id: str, url: str) -> Tree:
        with self._lock:
            tree = self.get_tree(user_id, tree_id)
            tree.context_urls = [c for c in tree.context_urls if c.url != url]
            self._save()
            return tree

    def add_conversation_context_url(self, user_id: str, conversation_id: str,
                                     url: str, content: str) -> Conversation:
        with self._lock:
            conv = self.get_conversation(user_id, conversation_id)
            conv.context_urls = _upsert_url(conv.context_urls, url, content)
            self._save()
            return conv

    def remove_conversation_context_url(self, user_id: str, conversation_id: str,
                                        url: str) -> Conversation:
        with self._lock:
            conv = self.get_conversation(user_id, conversation_id)
            conv.context_urls = [c for c in conv.context_urls if c.url != url]
            self._save()
            return conv

    # -- messages -----------------------------------------------------------
    def add_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        *,
        attachments: List[Attachment] | None = None,
        input_tokens: int | None = None,
        output_tokens: int | None = None,
    ) -> Message:
        """Append a message (metadata only for attachments) and persist it."""
        with self._lock:
            self.conversation(conversation_id)
            msg = Message(
                id=new_id(),
                conversation_id=conversation_id,
                role=role,
                content=content,
                attachments=list(attachments or []),
                input_tokens=input_tokens if role == "assistant" else None,
                output_tokens=output_tokens if role == "assistant" else None,
            )
            self._messages.setdefault(conversation_id, []).append(msg)
            self._message_index[msg.id] = msg
            self._save()
            return msg

    def list_messages(self, conversation_id: str) -> List[Message]:
        with self._lock:
            return list(self._messages.get(conversation_id, []))

    def get_message(self, message_id: str) -> Optional[Message]:
        return self._message_index.get(message_id)

    def set_fetched_urls(self, message_id: str, urls: List[str]) -> Message:
        """Record successfully fetched URLs; allowed once per message."""
        with self._lock:
            msg = self._message_index.get(message_id)
            if msg is None:
                raise NotFoundError("Message not found")
            if msg.fetched_urls:
                raise ValidationError("fetchedUrls already recorded for this message")
            msg.fetched_urls = list(urls)
            self._save()
            return msg

    # -- project files ------------------------------------------------------
    def add_project_file(self, user_id: str, tree_id: str, name: str, content: str) -> ProjectFile:
        name = (name or "").strip()
        if not name or not isinstance(content, str):
            raise ValidationError("name and content required")
        with self._lock:
            self.get_tree(user_id, tree_id)
            pf = ProjectFile(id=new_id(), tree_id=tree_id, name=name, content=content)
            self._files[pf.id] = pf
            self._save()
            return pf

    def list_project_files(self, tree_id: str) -> List[ProjectFile]:
        with self._lock:
            return [f for f in self._files.values() if f.tree_id == tree_id]

    def delete_project_file(self, user_id: str, tree_id: str, file_id: str) -> None:
        with self._lock:
            self.get_tree(user_id, tree_id)
            pf = self._files.get(file_id)
            if pf is None or pf.tree_id != tree_id:
                raise NotFoundError("File not found")
            del self._files[file_id]
            self._save()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _check_verbosity(value: Any) -> None:
    if value not in VERBOSITIES:
        raise ValidationError(f"verbosity must be one of {', '.join(VERBOSITIES)}")


def _upsert_url(existing: List[ContextUrl], url: str, content: str) -> List[ContextUrl]:
    """Replace any entry for *url*, appending the fresh scrape."""
    kept = [c for c in existing if c.url != url]
    kept.append(ContextUrl(url=url, content=content))
    return kept
