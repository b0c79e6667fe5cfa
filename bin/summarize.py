"""Branch summarization: freeze a parent's context into a summary + suggested title.

The summary for an anchor depends only on the (immutable) messages up to
and including that anchor, so it is cached per anchor message id on the
conversation.  The title depends on the selected text and is never cached.
"""

from __future__ import annotations

import concurrent.futures
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from config import DEFAULT_MODEL
from records import Conversation, ValidationError


TITLE_PROMPT = (
    "Based on this selected text from a conversation, generate a short (3-6 word) "
    "branch title that captures what will be explored:\n\n"
    'Selected text: "{text}"\n\n'
    "Respond with ONLY the title, no quotes or punctuation."
)
TEXT_SUMMARY_PROMPT = "Summarize the following text concisely in 1-3 sentences:\n\n{text}"
DEFAULT_TITLE = "New Branch"
TEXT_SUMMARY_LIMIT = 4000


@dataclass
class BranchSummary:
    summary: str
    suggested_title: str
    cached: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"summary": self.summary, "suggestedTitle": self.suggested_title, "cached": self.cached}


def fallback_title(selected_text: Optional[str]) -> str:
    return (selected_text or "")[:50] or DEFAULT_TITLE


class BranchSummarizer:
    """Summaries and branch creation on top of a Store and a ProviderRegistry."""

    def __init__(self, store, providers, activity=None):
        self.store = store
        self.providers = providers
        self.activity = activity

    # -- helpers ------------------------------------------------------------
    def collect_messages(self, conversation_id: str,
                         anchor_message_id: Optional[str] = None) -> List[Dict[str, str]]:
        """Messages from the root down to *conversation_id*.

        The target's own list is cut after the anchor message when the
        anchor belongs to it.
        """
        chain = self.store.ancestor_chain(conversation_id)
        out: List[Dict[str, str]] = []
        for i, conv in enumerate(chain):
            msgs = self.store.list_messages(conv.id)
            if i == len(chain) - 1 and anchor_message_id:
                idx = next((j for j, m in enumerate(msgs) if m.id == anchor_message_id), None)
                if idx is not None:
                    msgs = msgs[: idx + 1]
            out.extend({"role": m.role, "content": m.content} for m in msgs)
        return out

    def _generate_title(self, provider, selected_text: Optional[str], model: str) -> str:
        if not selected_text:
            return DEFAULT_TITLE
        prompt = TITLE_PROMPT.format(text=selected_text[:200])
        parts: List[str] = []
        try:
            provider.stream_chat([{"role": "user", "content": prompt}], parts.append, model)
        except Exception as exc:
            print(f"[Dendro] Title generation failed (using fallback): {exc}")
            return fallback_title(selected_text)
        return "".join(parts).strip()[:60] or fallback_title(selected_text)

    def _generate_summary(self, provider, messages: List[Dict[str, str]], model: str) -> str:
        try:
            return provider.summarize(messages, model)
        except Exception as exc:
            print(f"[Dendro] Summarize LLM error (using fallback): {exc}")
            return ""

    # -- operations ---------------------------------------------------------
    def summarize(
        self,
        user_id: str,
        conversation_id: str,
        anchor_message_id: Optional[str] = None,
        selected_text: Optional[str] = None,
    ) -> BranchSummary:
        """Summary of everything up to the anchor plus a suggested branch title."""
        conv = self.store.get_conversation(user_id, conversation_id)

        if anchor_message_id and anchor_message_id in conv.summary_cache:
            return BranchSummary(conv.summary_cache[anchor_message_id],
                                 fallback_title(selected_text), cached=True)

        messages = self.collect_messages(conversation_id, anchor_message_id)
        if not messages:
            return BranchSummary("", fallback_title(selected_text))

        provider = self.providers.for_model(conv.model)
        provider.ensure_configured()

        with concurrent.futures.ThreadPoolExecutor(max_workers=2) as executor:
            summary_future = executor.submit(self._generate_summary, provider, messages, conv.model)
            title_future = executor.submit(self._generate_title, provider, selected_text, conv.model)
            summary = summary_future.result()
            title = title_future.result()

        print(f"[Dendro] Summary prepared: conversation={conversation_id}, "
              f"messages={len(messages)}, chars={len(summary)}")
        if self.activity is not None:
            self.activity.log(user_id, "summary.prepared", {
                "conversationTitle": conv.title,
                "model": conv.model,
                "messageCount": len(messages),
                "cached": False,
            }, tree_id=conv.tree_id, conversation_id=conversation_id)

        if anchor_message_id and summary:
            self.store.cache_summary(conversation_id, anchor_message_id, summary)
        return BranchSummary(summary, title)

    def create_branch(
        self,
        user_id: str,
        parent_id: str,
        anchor_message_id: Optional[str],
        selected_text: Optional[str],
        *,
        model: Optional[str] = None,
        verbosity: Optional[str] = None,
        title: Optional[str] = None,
    ) -> Tuple[Conversation, BranchSummary]:
        """Summarize the parent at the anchor and create the child conversation."""
        parent = self.store.get_conversation(user_id, parent_id)
        if anchor_message_id:
            anchor = self.store.get_message(anchor_message_id)
            lineage = {c.id for c in self.store.ancestor_chain(parent_id)}
            if anchor is None or anchor.conversation_id not in lineage:
                raise ValidationError("branchMessageId is not in the parent's ancestor chain")

        summary = self.summarize(user_id, parent_id, anchor_message_id, selected_text)
        child = self.store.create_conversation(
            user_id,
            parent.tree_id,
            (title or "").strip() or summary.suggested_title,
            model or parent.model,
            verbosity or "normal",
            parent_id=parent.id,
            branch_text=selected_text,
            branch_message_id=anchor_message_id,
            branch_summary=summary.summary,
        )
        print(f"[Dendro] Branch created: {child.id} (parent={parent.id}, anchor={anchor_message_id})")
        if self.activity is not None:
            self.activity.log(user_id, "branch.created", {
                "title": child.title,
                "parentId": parent.id,
                "branchMessageId": anchor_message_id,
            }, tree_id=child.tree_id, conversation_id=child.id)
        return child, summary

    def summarize_text(self, user_id: str, text: Any) -> str:
        """1-3 sentence summary of arbitrary text with the user's latest model."""
        if not text or not isinstance(text, str):
            raise ValidationError("text required")
        latest = self.store.latest_conversation(user_id)
        model = latest.model if latest is not None else DEFAULT_MODEL
        provider = self.providers.for_model(model)
        prompt = TEXT_SUMMARY_PROMPT.format(text=text[:TEXT_SUMMARY_LIMIT])
        parts: List[str] = []
        provider.stream_chat([{"role": "user", "content": prompt}], parts.append, model)
        return "".join(parts).strip()
