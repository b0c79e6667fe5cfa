"""Dendro records: data model, error taxonomy, id and timestamp helpers.

Foundational module shared by every other component:
  - Tree / Conversation / Message / ProjectFile / ContextUrl dataclasses
    with camelCase JSON round-tripping (to_dict / from_dict)
  - Usage accounting for assistant turns
  - DendroError hierarchy mapped onto HTTP statuses by the Flask app
  - UTC timestamp and opaque id helpers

Dependency: stdlib only (no imports from config, state, or providers).
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


VERBOSITIES = ("concise", "normal", "detailed")
ROLES = ("system", "user", "assistant")


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------
class DendroError(Exception):
    """Base class for errors the HTTP layer knows how to report."""

    status = 500


class ValidationError(DendroError, ValueError):
    """Bad input shape or size; raised before anything is persisted."""

    status = 400


class NotFoundError(DendroError, LookupError):
    """Entity missing, or owned by someone else (reported identically)."""

    status = 404


class BusyError(DendroError):
    """A turn is already streaming into this conversation."""

    status = 409


class ProviderConfigurationError(DendroError):
    """Backend credentials are absent."""

    status = 503


class ProviderRequestError(DendroError):
    """Backend call failed or answered with a non-success status."""

    status = 502

    def __init__(self, message: str, upstream_status: int | None = None):
        super().__init__(message)
        self.upstream_status = upstream_status


# ---------------------------------------------------------------------------
# Id / timestamp helpers
# ---------------------------------------------------------------------------
def utc_now_iso() -> str:
    """Return the current UTC timestamp in canonical ISO-8601 Zulu format."""
    return datetime.now(timezone.utc).replace(microsecond=0).strftime("%Y-%m-%dT%H:%M:%SZ")


def new_id() -> str:
    """Opaque random identifier for any record."""
    return uuid.uuid4().hex


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------
@dataclass
class Usage:
    """Token accounting reported by a provider (zero when unreported)."""
    input_tokens: int = 0
    output_tokens: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {"inputTokens": self.input_tokens, "outputTokens": self.output_tokens}


@dataclass
class ContextUrl:
    """A web page scraped once and kept as background context."""
    url: str
    content: str
    scraped_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {"url": self.url, "content": self.content, "scrapedAt": self.scraped_at}

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "ContextUrl":
        return cls(
            url=str(raw.get("url", "")),
            content=str(raw.get("content", "")),
            scraped_at=str(raw.get("scrapedAt") or utc_now_iso()),
        )


@dataclass
class Attachment:
    """Attachment metadata; file bytes are never kept past the request."""
    filename: str
    size: int
    mime_type: str = "text/plain"

    def to_dict(self) -> Dict[str, Any]:
        return {"filename": self.filename, "size": self.size, "mimeType": self.mime_type}

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Attachment":
        return cls(
            filename=str(raw.get("filename", "")),
            size=int(raw.get("size") or 0),
            mime_type=str(raw.get("mimeType") or "text/plain"),
        )


@dataclass
class Tree:
    """Top-level container of one branching conversation."""
    id: str
    user_id: str
    title: str
    created_at: str = field(default_factory=utc_now_iso)
    deleted_at: Optional[str] = None
    pinned_at: Optional[str] = None
    context_urls: List[ContextUrl] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "title": self.title,
            "createdAt": self.created_at,
            "deletedAt": self.deleted_at,
            "pinnedAt": self.pinned_at,
            "contextUrls": [c.to_dict() for c in self.context_urls],
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Tree":
        return cls(
            id=str(raw["id"]),
            user_id=str(raw.get("userId", "")),
            title=str(raw.get("title", "")),
            created_at=str(raw.get("createdAt") or utc_now_iso()),
            deleted_at=raw.get("deletedAt"),
            pinned_at=raw.get("pinnedAt"),
            context_urls=[ContextUrl.from_dict(c) for c in raw.get("contextUrls") or []],
        )


@dataclass
class Conversation:
    """One node of a tree.

    Branch fields (branch_message_id, branch_text, branch_summary) are set
    together at creation time and never change afterwards.  Children are
    derived from parent_id by whoever holds the arena; they are not stored.
    """
    id: str
    tree_id: str
    parent_id: Optional[str]
    title: str
    model: str
    verbosity: str = "normal"
    branch_text: Optional[str] = None
    branch_message_id: Optional[str] = None
    branch_summary: Optional[str] = None
    context_urls: List[ContextUrl] = field(default_factory=list)
    summary_cache: Dict[str, str] = field(default_factory=dict)
    closed_at: Optional[str] = None
    deleted_at: Optional[str] = None
    created_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "treeId": self.tree_id,
            "parentId": self.parent_id,
            "title": self.title,
            "model": self.model,
            "verbosity": self.verbosity,
            "branchText": self.branch_text,
            "branchMessageId": self.branch_message_id,
            "branchSummary": self.branch_summary,
            "contextUrls": [c.to_dict() for c in self.context_urls],
            "summaryCache": dict(self.summary_cache),
            "closedAt": self.closed_at,
            "deletedAt": self.deleted_at,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Conversation":
        return cls(
            id=str(raw["id"]),
            tree_id=str(raw.get("treeId", "")),
            parent_id=raw.get("parentId"),
            title=str(raw.get("title", "")),
            model=str(raw.get("model", "")),
            verbosity=raw.get("verbosity") if raw.get("verbosity") in VERBOSITIES else "normal",
            branch_text=raw.get("branchText"),
            branch_message_id=raw.get("branchMessageId"),
            branch_summary=raw.get("branchSummary"),
            context_urls=[ContextUrl.from_dict(c) for c in raw.get("contextUrls") or []],
            summary_cache=dict(raw.get("summaryCache") or {}),
            closed_at=raw.get("closedAt"),
            deleted_at=raw.get("deletedAt"),
            created_at=str(raw.get("createdAt") or utc_now_iso()),
        )


@dataclass
class Message:
    """One immutable turn entry (fetched_urls may be written once)."""
    id: str
    conversation_id: str
    role: str
    content: str
    attachments: List[Attachment] = field(default_factory=list)
    fetched_urls: List[str] = field(default_factory=list)
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    created_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "id": self.id,
            "conversationId": self.conversation_id,
            "role": self.role,
            "content": self.content,
            "attachments": [a.to_dict() for a in self.attachments],
            "fetchedUrls": list(self.fetched_urls),
            "createdAt": self.created_at,
        }
        if self.role == "assistant":
            out["inputTokens"] = self.input_tokens
            out["outputTokens"] = self.output_tokens
        return out

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Message":
        return cls(
            id=str(raw["id"]),
            conversation_id=str(raw.get("conversationId", "")),
            role=str(raw.get("role", "user")),
            content=str(raw.get("content", "")),
            attachments=[Attachment.from_dict(a) for a in raw.get("attachments") or []],
            fetched_urls=[str(u) for u in raw.get("fetchedUrls") or []],
            input_tokens=raw.get("inputTokens"),
            output_tokens=raw.get("outputTokens"),
            created_at=str(raw.get("createdAt") or utc_now_iso()),
        )


@dataclass
class ProjectFile:
    """A named text file visible to every conversation of its tree."""
    id: str
    tree_id: str
    name: str
    content: str
    created_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "treeId": self.tree_id,
            "name": self.name,
            "content": self.content,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "ProjectFile":
        return cls(
            id=str(raw["id"]),
            tree_id=str(raw.get("treeId", "")),
            name=str(raw.get("name", "")),
            content=str(raw.get("content", "")),
            created_at=str(raw.get("createdAt") or utc_now_iso()),
        )
