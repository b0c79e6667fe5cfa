"""Model provider abstraction: one capability interface over Gemini and OpenRouter.

A model id is parsed once into a ModelRef (explicit ProviderKind + backend
model name); the ProviderRegistry hands back the provider for that kind.
Every provider offers:

    open_stream(messages, model)          -> ChatStream (closable chunk iterator)
    stream_chat(messages, on_chunk, model) -> Usage
    complete(messages, model)             -> str
    summarize(messages, model)            -> str

Messages are plain {"role", "content"} dicts with role in system/user/assistant.
Chunks are yielded in arrival order on the caller's thread.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple

import requests

import config as config_mod
from records import ProviderConfigurationError, ProviderRequestError, Usage


SUMMARY_PROMPT = (
    "Summarize the following conversation in 2-4 concise sentences, capturing the "
    "main topic and key insights. Be specific enough that someone could continue "
    "the conversation intelligently.\n\n"
)


# ---------------------------------------------------------------------------
# Model references
# ---------------------------------------------------------------------------
class ProviderKind(Enum):
    GEMINI = "gemini"
    OPENROUTER = "openrouter"


@dataclass(frozen=True)
class ModelRef:
    """A model id resolved to its backend family and backend-local name."""
    kind: ProviderKind
    name: str  # "" means the provider's default model

    @classmethod
    def parse(cls, model_id: str | None) -> "ModelRef":
        """``openrouter/<name>`` selects OpenRouter; anything else is Gemini."""
        model_id = (model_id or "").strip()
        if model_id.startswith("openrouter/"):
            return cls(ProviderKind.OPENROUTER, model_id[len("openrouter/"):])
        if model_id.startswith("google/"):
            model_id = model_id[len("google/"):]
        return cls(ProviderKind.GEMINI, model_id)


def _debug_messages(label: str, url: str, messages: List[Dict[str, str]]) -> None:
    print(f"[DEBUG] {label} → {url}")
    print(f"[DEBUG] {label} messages ({len(messages)}):")
    for i, m in enumerate(messages):
        content = m.get("content", "")
        print(f"  [{i}] {m.get('role')}: {content[:200]}{'...' if len(content) > 200 else ''}")


def transcript_text(messages: Iterable[Dict[str, str]]) -> str:
    """Render non-system messages as ``User: ...`` / ``Assistant: ...`` paragraphs."""
    return "\n\n".join(
        f"{'Assistant' if m['role'] == 'assistant' else 'User'}: {m['content']}"
        for m in messages
        if m.get("role") != "system"
    )


# ---------------------------------------------------------------------------
# Streams
# ---------------------------------------------------------------------------
class ChatStream:
    """Closable iterator over generated text; ``usage`` is final once exhausted."""

    def __init__(self, chunks: Iterable[str] = (), usage: Usage | None = None):
        self._chunks = chunks
        self.usage = usage or Usage()
        self.closed = False

    def __iter__(self) -> Iterator[str]:
        for chunk in self._chunks:
            if self.closed:
                return
            yield chunk

    def close(self) -> None:
        self.closed = True


FrameParser = Callable[[Dict[str, Any]], Tuple[str, Optional[Usage]]]


class SSEChatStream(ChatStream):
    """ChatStream over a streaming ``requests`` response carrying ``data:`` frames.

    Frames that are not JSON objects, or that the parser cannot read, are
    skipped.  Closing the stream closes the HTTP response, which cancels the
    upstream generation.
    """

    def __init__(self, response: requests.Response, parse_frame: FrameParser, label: str):
        super().__init__()
        self._response = response
        self._parse_frame = parse_frame
        self._label = label

    def __iter__(self) -> Iterator[str]:
        if self._response.encoding is None:
            self._response.encoding = "utf-8"
        try:
            for line in self._response.iter_lines(decode_unicode=True):
                if self.closed:
                    return
                if not line or not line.startswith("data:"):
                    continue
                data = line[5:].strip()
                if data == "[DONE]":
                    return
                try:
                    frame = json.loads(data)
                except json.JSONDecodeError:
                    continue
                if not isinstance(frame, dict):
                    continue
                if frame.get("error"):
                    err = frame["error"]
                    detail = err.get("message", "") if isinstance(err, dict) else str(err)
                    raise ProviderRequestError(f"{self._label} stream error: {detail[:200]}")
                try:
                    text, usage = self._parse_frame(frame)
                except (AttributeError, IndexError, KeyError, TypeError, ValueError):
                    continue
                if usage is not None:
                    self.usage = usage
                if text:
                    yield text
        except requests.RequestException as exc:
            if self.closed:
                return
            raise ProviderRequestError(f"{self._label} stream interrupted: {exc}") from exc
        finally:
            self._response.close()

    def close(self) -> None:
        if not self.closed:
            super().close()
            self._response.close()


# ---------------------------------------------------------------------------
# Provider base
# ---------------------------------------------------------------------------
class ChatProvider:
    """Capability interface shared by every backend family."""

    kind: ProviderKind
    label = "provider"
    key_env = ""

    def __init__(self, provider_cfg: Dict[str, Any] | None = None, timeout_s: float = 120.0):
        self.cfg = dict(provider_cfg or {})
        self.timeout_s = timeout_s

    # -- configuration ------------------------------------------------------
    @property
    def default_model(self) -> str:
        return self.cfg.get("default_model", "")

    def ensure_configured(self) -> str:
        """Return the API key or raise ProviderConfigurationError."""
        api_key = self.cfg.get("api_key", "")
        if not api_key:
            raise ProviderConfigurationError(f"{self.key_env} is not configured")
        return api_key

    def model_name(self, model: str | None) -> str:
        ref = ModelRef.parse(model) if model else None
        if ref is not None and ref.kind is self.kind and ref.name:
            return ref.name
        return self.default_model

    # -- backend hooks ------------------------------------------------------
    def open_stream(self, messages: List[Dict[str, str]], model: str | None = None) -> ChatStream:
        raise NotImplementedError

    def complete(self, messages: List[Dict[str, str]], model: str | None = None) -> str:
        raise NotImplementedError

    # -- capabilities -------------------------------------------------------
    def stream_chat(
        self,
        messages: List[Dict[str, str]],
        on_chunk: Callable[[str], None],
        model: str | None = None,
    ) -> Usage:
        """Deliver each chunk to *on_chunk* in order; return final usage."""
        stream = self.open_stream(messages, model)
        try:
            for chunk in stream:
                on_chunk(chunk)
        finally:
            stream.close()
        return stream.usage

    def summarize(self, messages: List[Dict[str, str]], model: str | None = None) -> str:
        """One complete (non-incremental) summary of a transcript."""
        prompt = SUMMARY_PROMPT + transcript_text(messages)
        return self.complete([{"role": "user", "content": prompt}], model).strip()

    # -- HTTP helper --------------------------------------------------------
    def _post(self, url: str, payload: Dict[str, Any], headers: Dict[str, str],
              *, stream: bool) -> requests.Response:
        try:
            resp = requests.post(url, json=payload, headers=headers,
                                 timeout=self.timeout_s, stream=stream)
        except requests.RequestException as exc:
            raise ProviderRequestError(f"{self.label} request failed: {exc}") from exc
        if resp.status_code >= 400:
            detail = resp.text[:200]
            resp.close()
            raise ProviderRequestError(f"{self.label} {resp.status_code}: {detail}",
                                       upstream_status=resp.status_code)
        return resp


# ---------------------------------------------------------------------------
# Gemini
# ---------------------------------------------------------------------------
def to_gemini_payload(messages: List[Dict[str, str]]) -> Dict[str, Any]:
    """System messages become systemInstruction; assistant maps to "model".

    Consecutive same-role turns are merged so the contents alternate.
    """
    system_text = "\n\n".join(m["content"] for m in messages if m["role"] == "system")
    contents: List[Dict[str, Any]] = []
    for m in messages:
        if m["role"] == "system":
            continue
        role = "model" if m["role"] == "assistant" else "user"
        if contents and contents[-1]["role"] == role:
            contents[-1]["parts"].append({"text": m["content"]})
        else:
            contents.append({"role": role, "parts": [{"text": m["content"]}]})
    if not contents:
        raise ProviderRequestError("No messages to send")
    payload: Dict[str, Any] = {"contents": contents}
    if system_text:
        payload["systemInstruction"] = {"parts": [{"text": system_text}]}
    return payload


def _gemini_frame(frame: Dict[str, Any]) -> Tuple[str, Optional[Usage]]:
    text = ""
    candidates = frame.get("candidates") or []
    if candidates:
        parts = (candidates[0].get("content") or {}).get("parts") or []
        text = "".join(p.get("text", "") for p in parts)
    usage = None
    meta = frame.get("usageMetadata")
    if isinstance(meta, dict):
        usage = Usage(int(meta.get("promptTokenCount") or 0),
                      int(meta.get("candidatesTokenCount") or 0))
    return text, usage


class GeminiProvider(ChatProvider):
    kind = ProviderKind.GEMINI
    label = "Gemini"
    key_env = "GEMINI_API_KEY"

    @property
    def default_model(self) -> str:
        return self.cfg.get("default_model") or "gemini-2.0-flash-lite"

    def _endpoint(self, model: str | None, method: str) -> str:
        base = self.cfg.get("url", "https://generativelanguage.googleapis.com/v1beta/models").rstrip("/")
        return f"{base}/{self.model_name(model)}:{method}"

    def open_stream(self, messages, model=None) -> ChatStream:
        api_key = self.ensure_configured()
        url = self._endpoint(model, "streamGenerateContent") + "?alt=sse"
        if config_mod.DEBUG_MODE:
            _debug_messages(self.label, url, messages)
        payload = to_gemini_payload(messages)
        headers = {"Content-Type": "application/json", "x-goog-api-key": api_key}
        resp = self._post(url, payload, headers, stream=True)
        return SSEChatStream(resp, _gemini_frame, self.label)

    def complete(self, messages, model=None) -> str:
        api_key = self.ensure_configured()
        url = self._endpoint(model, "generateContent")
        if config_mod.DEBUG_MODE:
            _debug_messages(self.label, url, messages)
        payload = to_gemini_payload(messages)
        headers = {"Content-Type": "application/json", "x-goog-api-key": api_key}
        resp = self._post(url, payload, headers, stream=False)
        try:
            text, _usage = _gemini_frame(resp.json())
        except (ValueError, AttributeError, TypeError) as exc:
            raise ProviderRequestError(f"Gemini returned malformed data: {exc}") from exc
        return text


# ---------------------------------------------------------------------------
# OpenRouter
# ---------------------------------------------------------------------------
def _openrouter_frame(frame: Dict[str, Any]) -> Tuple[str, Optional[Usage]]:
    text = ""
    choices = frame.get("choices") or []
    if choices:
        text = (choices[0].get("delta") or {}).get("content") or ""
    usage = None
    raw = frame.get("usage")
    if isinstance(raw, dict):
        usage = Usage(int(raw.get("prompt_tokens") or 0), int(raw.get("completion_tokens") or 0))
    return text, usage


class OpenRouterProvider(ChatProvider):
    kind = ProviderKind.OPENROUTER
    label = "OpenRouter"
    key_env = "OPENROUTER_API_KEY"

    @property
    def default_model(self) -> str:
        return self.cfg.get("default_model") or "openai/gpt-4o-mini"

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.ensure_configured()}",
            "Content-Type": "application/json",
            "HTTP-Referer": self.cfg.get("referer", "https://chat-tree.app"),
            "X-Title": self.cfg.get("app_title", "Chat Tree"),
        }

    def _url(self) -> str:
        return self.cfg.get("url", "https://openrouter.ai/api/v1").rstrip("/") + "/chat/completions"

    def open_stream(self, messages, model=None) -> ChatStream:
        headers = self._headers()
        url = self._url()
        if config_mod.DEBUG_MODE:
            _debug_messages(self.label, url, messages)
        payload = {
            "model": self.model_name(model),
            "messages": [{"role": m["role"], "content": m["content"]} for m in messages],
            "stream": True,
            "usage": {"include": True},
        }
        resp = self._post(url, payload, headers, stream=True)
        return SSEChatStream(resp, _openrouter_frame, self.label)

    def complete(self, messages, model=None) -> str:
        headers = self._headers()
        url = self._url()
        if config_mod.DEBUG_MODE:
            _debug_messages(self.label, url, messages)
        payload = {
            "model": self.model_name(model),
            "messages": [{"role": m["role"], "content": m["content"]} for m in messages],
            "stream": False,
        }
        resp = self._post(url, payload, headers, stream=False)
        try:
            choices = resp.json().get("choices") or [{}]
            return (choices[0].get("message") or {}).get("content") or ""
        except (ValueError, AttributeError, TypeError) as exc:
            raise ProviderRequestError(f"OpenRouter returned malformed data: {exc}") from exc


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------
_PROVIDER_CLASSES = {
    ProviderKind.GEMINI: GeminiProvider,
    ProviderKind.OPENROUTER: OpenRouterProvider,
}


class ProviderRegistry:
    """Providers resolved once per app from the config.yaml/env registry."""

    def __init__(
        self,
        provider_cfgs: Dict[str, Dict[str, Any]] | None = None,
        timeout_s: float = 120.0,
        overrides: Dict[ProviderKind, ChatProvider] | None = None,
    ):
        cfgs = provider_cfgs or {}
        self._providers: Dict[ProviderKind, ChatProvider] = {
            kind: cls(cfgs.get(kind.value, {}), timeout_s)
            for kind, cls in _PROVIDER_CLASSES.items()
        }
        self._providers.update(overrides or {})

    def get(self, kind: ProviderKind) -> ChatProvider:
        return self._providers[kind]

    def for_model(self, model_id: str | None) -> ChatProvider:
        return self._providers[ModelRef.parse(model_id).kind]

    def describe(self) -> List[Dict[str, Any]]:
        """Non-secret metadata for the UI model picker."""
        return [
            {
                "kind": kind.value,
                "name": p.cfg.get("name", kind.value),
                "defaultModel": p.default_model,
                "configured": bool(p.cfg.get("api_key")),
            }
            for kind, p in self._providers.items()
        ]
