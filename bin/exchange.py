"""Streaming message exchange: one user turn from validation to persisted reply.

    Idle -> UserMessagePersisted -> ContextBuilt -> Streaming -> Finalized(success|error)

prepare() runs eagerly inside the request: validation, the per-conversation
in-flight guard, persisting the user message, URL resolution and context
assembly.  The returned PreparedTurn is then either streamed (TurnStream,
an iterable of event dicts) or run to completion (MessageExchange.run).

The user message is never rolled back; the assistant message is written
only when the provider finished cleanly and the consumer was still there.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional

import config as config_mod
from context import build_context
from records import Attachment, BusyError, Conversation, Message, ValidationError
from urlfetch import extract_urls, fetch_many


GENERIC_ERROR = "LLM error occurred"


# ---------------------------------------------------------------------------
# In-flight guard
# ---------------------------------------------------------------------------
class InFlightGuard:
    """At most one streaming turn per conversation."""

    def __init__(self):
        self._lock = threading.Lock()
        self._active: set = set()

    def acquire(self, conversation_id: str) -> None:
        with self._lock:
            if conversation_id in self._active:
                raise BusyError("A response is already streaming in this conversation")
            self._active.add(conversation_id)

    def release(self, conversation_id: str) -> None:
        with self._lock:
            self._active.discard(conversation_id)

    def is_active(self, conversation_id: str) -> bool:
        with self._lock:
            return conversation_id in self._active


# ---------------------------------------------------------------------------
# Turn state
# ---------------------------------------------------------------------------
@dataclass
class PreparedTurn:
    """Everything needed to call the model for one persisted user message."""
    user_id: str
    conversation: Conversation
    user_message: Message
    messages: List[Dict[str, str]]
    fetched_urls: Dict[str, str]
    provider: Any
    released: bool = field(default=False, repr=False)

    @property
    def model(self) -> str:
        return self.conversation.model


class MessageExchange:
    """Orchestrates turns against a Store, a ProviderRegistry and a URL fetcher."""

    def __init__(
        self,
        store,
        providers,
        *,
        fetch_fn: Callable[[str, bool], str] | None = None,
        activity=None,
        max_attachments: int = 5,
        max_attachment_bytes: int = 200 * 1024,
    ):
        self.store = store
        self.providers = providers
        self.fetch_fn = fetch_fn
        self.activity = activity
        self.max_attachments = max_attachments
        self.max_attachment_bytes = max_attachment_bytes
        self.guard = InFlightGuard()

    # -- validation ---------------------------------------------------------
    def validate(self, content: Any, attachments: Any = None, urls: Any = None) -> List[Dict[str, Any]]:
        """Check the turn's shape; return normalized attachments (with content)."""
        if not isinstance(content, str) or not content.strip():
            raise ValidationError("Message content required")
        if attachments is None:
            attachments = []
        if not isinstance(attachments, list):
            raise ValidationError("attachments must be a list")
        if len(attachments) > self.max_attachments:
            raise ValidationError(f"At most {self.max_attachments} attachments per message")
        files = []
        for raw in attachments:
            if not isinstance(raw, dict) or not isinstance(raw.get("filename"), str):
                raise ValidationError("Each attachment needs a filename")
            body = raw.get("content") or ""
            if not isinstance(body, str):
                raise ValidationError("Attachment content must be text")
            actual = len(body.encode("utf-8"))
            try:
                declared = int(raw.get("size") or 0)
            except (TypeError, ValueError):
                raise ValidationError("Attachment size must be a number")
            size = max(declared, actual)
            if size > self.max_attachment_bytes:
                raise ValidationError(
                    f"Attachment {raw['filename']} exceeds {self.max_attachment_bytes // 1024} KB")
            files.append({
                "filename": raw["filename"],
                "size": size,
                "mimeType": raw.get("mimeType") or "text/plain",
                "content": body,
            })
        if urls is not None and (not isinstance(urls, list)
                                 or not all(isinstance(u, str) for u in urls)):
            raise ValidationError("urls must be a list of strings")
        return files

    # -- phases -------------------------------------------------------------
    def prepare(
        self,
        user_id: str,
        conversation_id: str,
        content: Any,
        attachments: Any = None,
        urls: Any = None,
        *,
        prefs: Dict[str, Any] | None = None,
    ) -> PreparedTurn:
        """Validate, persist the user message, resolve URLs and build the context.

        Raises ValidationError / BusyError / NotFoundError /
        ProviderConfigurationError before anything is written.  On success the
        conversation stays marked in flight until the turn is finished or
        closed.
        """
        prefs = prefs or {}
        conv = self.store.get_conversation(user_id, conversation_id)
        files = self.validate(content, attachments, urls)
        provider = self.providers.for_model(conv.model)
        provider.ensure_configured()

        self.guard.acquire(conversation_id)
        try:
            user_msg = self.store.add_message(
                conversation_id, "user", content,
                attachments=[Attachment(f["filename"], f["size"], f["mimeType"]) for f in files],
            )
            targets = list(dict.fromkeys(extract_urls(content) + list(urls or [])))
            fetched = fetch_many(targets, bool(prefs.get("url_fetch_same_domain")), fetch_fn=self.fetch_fn)
            if fetched:
                self.store.set_fetched_urls(user_msg.id, list(fetched))
            messages = build_context(
                self.store,
                conversation_id,
                prefs.get("system_prompt", ""),
                conv.verbosity,
                fetched_urls=fetched,
                file_context=files,
            )
        except BaseException:
            self.guard.release(conversation_id)
            raise

        print(f"[Dendro] Turn: conversation={conversation_id}, model='{conv.model}', "
              f"context={len(messages)} messages, attachments={len(files)}, urls={len(fetched)}/{len(targets)}")
        if self.activity is not None:
            self.activity.log(user_id, "message.sent", {
                "messageId": user_msg.id,
                "contentLength": len(content),
                "attachments": [f["filename"] for f in files],
                "fetchedUrls": list(fetched),
                "model": conv.model,
            }, tree_id=conv.tree_id, conversation_id=conversation_id)

        return PreparedTurn(user_id, conv, user_msg, messages, fetched, provider)

    def release(self, turn: PreparedTurn) -> None:
        if not turn.released:
            turn.released = True
            self.guard.release(turn.conversation.id)

    def finalize(self, turn: PreparedTurn, text: str, usage) -> Message:
        """Persist the assistant reply with its usage counts."""
        msg = self.store.add_message(
            turn.conversation.id, "assistant", text,
            input_tokens=usage.input_tokens, output_tokens=usage.output_tokens,
        )
        print(f"[Dendro] Reply stored: conversation={turn.conversation.id}, chars={len(text)}, "
              f"tokens in/out={usage.input_tokens}/{usage.output_tokens}")
        return msg

    def run(self, turn: PreparedTurn) -> Dict[str, Any]:
        """Non-streaming path: same provider call, chunks accumulated, one result.

        Provider failures propagate (ProviderRequestError -> HTTP 502).
        """
        parts: List[str] = []
        try:
            usage = turn.provider.stream_chat(turn.messages, parts.append, turn.model)
            msg = self.finalize(turn, "".join(parts), usage)
        finally:
            self.release(turn)
        return {"content": msg.content, "messageId": msg.id, **usage.to_dict()}

    def stream(self, turn: PreparedTurn, listener=None) -> "TurnStream":
        return TurnStream(self, turn, listener)


# ---------------------------------------------------------------------------
# Event stream
# ---------------------------------------------------------------------------
class TurnStream:
    """Iterable of ``{"chunk"}`` events ending in ``{"done", ...}`` or ``{"error"}``.

    close() is the consumer hanging up: it cancels the upstream request,
    persists nothing for the assistant, and frees the conversation.
    *listener* (a ConversationTree) mirrors the stream into its overlay.
    """

    def __init__(self, exchange: MessageExchange, turn: PreparedTurn, listener=None):
        self.exchange = exchange
        self.turn = turn
        self.listener = listener
        self._upstream = None
        self._events: Optional[Iterator[Dict[str, Any]]] = None
        self._finished = False

    def __iter__(self) -> Iterator[Dict[str, Any]]:
        if self._events is None:
            self._events = self._run()
        return self._events

    def _run(self) -> Iterator[Dict[str, Any]]:
        turn = self.turn
        cid = turn.conversation.id
        if self.listener is not None:
            self.listener.start_streaming(cid)
        parts: List[str] = []
        try:
            try:
                self._upstream = turn.provider.open_stream(turn.messages, turn.model)
                for chunk in self._upstream:
                    parts.append(chunk)
                    if self.listener is not None:
                        self.listener.append_chunk(chunk)
                    yield {"chunk": chunk}
                usage = self._upstream.usage
                msg = self.exchange.finalize(turn, "".join(parts), usage)
            except Exception as exc:
                print(f"[Dendro] LLM streaming error: {exc}")
                self._finish(error=GENERIC_ERROR)
                yield {"error": GENERIC_ERROR}
                return
            self._finish(usage=usage.to_dict())
            yield {"done": True, "messageId": msg.id, **usage.to_dict()}
        finally:
            self.exchange.release(turn)

    def _finish(self, usage=None, error=None) -> None:
        if self._finished:
            return
        self._finished = True
        if self.listener is not None:
            self.listener.finish_streaming(usage=usage, error=error)

    def close(self) -> None:
        """Stop delivery and cancel the upstream generation."""
        if self._upstream is not None:
            self._upstream.close()
        if self._events is not None:
            self._events.close()
        if not self._finished and self.listener is not None and self._events is not None:
            self._finish(error="cancelled")
        self.exchange.release(self.turn)
        if config_mod.DEBUG_MODE:
            print(f"[DEBUG] Turn stream closed: conversation={self.turn.conversation.id}")
