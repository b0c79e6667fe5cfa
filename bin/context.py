"""Context assembly: the ordered role-tagged messages sent to a model for one node.

Order (each part only when non-empty):
  1. custom system prompt
  2. verbosity directive
  3. tree-scoped scraped URLs
  4. URLs fetched for this turn
  5. attachments of this turn, as language-fenced code blocks
  6. conversation-scoped scraped URLs
  7. project files of the owning tree
  8. branch framing: parent summary + synthetic user/assistant anchor pair
  9. the conversation's own messages, oldest first

Broad background comes first and the literal transcript last; the branch
framing always sits directly in front of the transcript it introduces.
"""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Any, Dict, Iterable, List, Mapping, Optional

import config as config_mod
from records import ContextUrl


VERBOSITY_INSTRUCTIONS: Dict[str, str] = {
    "concise": "Be concise. Keep responses short and direct — no unnecessary elaboration.",
    "normal": "",
    "detailed": "Be thorough. Provide detailed explanations with context and examples where helpful.",
}

BRANCH_SUMMARY_TEMPLATE = "Context from parent conversation:\n{summary}"
BRANCH_USER_TEMPLATE = 'I want to explore this part specifically: "{text}"'
BRANCH_ASSISTANT_REPLY = "I'll help you explore that. What would you like to know?"

_FENCE_LANGUAGES = {
    ".py": "python", ".js": "javascript", ".mjs": "javascript", ".ts": "typescript",
    ".tsx": "tsx", ".jsx": "jsx", ".json": "json", ".md": "markdown", ".html": "html",
    ".htm": "html", ".css": "css", ".sh": "bash", ".bash": "bash", ".yaml": "yaml",
    ".yml": "yaml", ".toml": "toml", ".ini": "ini", ".rs": "rust", ".go": "go",
    ".java": "java", ".kt": "kotlin", ".c": "c", ".h": "c", ".cpp": "cpp", ".hpp": "cpp",
    ".cs": "csharp", ".rb": "ruby", ".php": "php", ".sql": "sql", ".xml": "xml",
    ".csv": "csv", ".swift": "swift", ".vue": "vue",
}


def guess_language(filename: str, mime_type: str = "") -> str:
    """Best-effort fence tag for a file; "" when nothing fits."""
    lang = _FENCE_LANGUAGES.get(PurePosixPath(filename or "").suffix.lower())
    if lang:
        return lang
    if "json" in mime_type:
        return "json"
    if "html" in mime_type:
        return "html"
    return ""


def _url_blocks(heading: str, items: Iterable[tuple]) -> str:
    blocks = [f"[Source: {url}]\n{content}" for url, content in items if content]
    if not blocks:
        return ""
    return heading + "\n\n" + "\n\n".join(blocks)


def _attachment_blocks(files: Iterable[Mapping[str, Any]]) -> str:
    blocks = []
    for f in files:
        content = f.get("content") or ""
        if not content:
            continue
        name = f.get("filename", "attachment")
        lang = guess_language(name, f.get("mimeType", ""))
        blocks.append(f"File: {name}\n```{lang}\n{content}\n```")
    if not blocks:
        return ""
    return "Attached files:\n\n" + "\n\n".join(blocks)


def _project_file_blocks(files) -> str:
    blocks = [f"--- {pf.name} ---\n{pf.content}\n--- end of {pf.name} ---" for pf in files if pf.content]
    if not blocks:
        return ""
    return "Project files:\n\n" + "\n\n".join(blocks)


def _scraped(urls: List[ContextUrl]) -> List[tuple]:
    return [(c.url, c.content) for c in urls]


def build_context(
    store,
    conversation_id: str,
    system_prompt: str = "",
    verbosity: str = "normal",
    fetched_urls: Optional[Mapping[str, str]] = None,
    file_context: Optional[Iterable[Mapping[str, Any]]] = None,
) -> List[Dict[str, str]]:
    """Assemble the prompt for *conversation_id* from the store's current state."""
    conv = store.conversation(conversation_id)
    tree = store.tree(conv.tree_id)

    messages: List[Dict[str, str]] = []

    def _system(text: str) -> None:
        if text:
            messages.append({"role": "system", "content": text})

    _system((system_prompt or "").strip())
    _system(VERBOSITY_INSTRUCTIONS.get(verbosity, ""))
    _system(_url_blocks("Reference material from project URLs:", _scraped(tree.context_urls)))
    _system(_url_blocks("Content fetched from URLs in this message:", (fetched_urls or {}).items()))
    _system(_attachment_blocks(file_context or []))
    _system(_url_blocks("Reference material for this conversation:", _scraped(conv.context_urls)))
    _system(_project_file_blocks(store.list_project_files(conv.tree_id)))

    if conv.parent_id:
        if conv.branch_summary:
            _system(BRANCH_SUMMARY_TEMPLATE.format(summary=conv.branch_summary))
        if conv.branch_text:
            messages.append({"role": "user", "content": BRANCH_USER_TEMPLATE.format(text=conv.branch_text)})
            messages.append({"role": "assistant", "content": BRANCH_ASSISTANT_REPLY})

    for msg in store.list_messages(conversation_id):
        messages.append({"role": msg.role, "content": msg.content})

    if config_mod.DEBUG_MODE:
        print(f"[DEBUG] Context for {conversation_id}: {len(messages)} messages")
        for i, m in enumerate(messages):
            print(f"  [{i}] {m['role']}: {m['content'][:120]}{'...' if len(m['content']) > 120 else ''}")
    return messages
