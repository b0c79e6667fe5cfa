#!/usr/bin/env python3
"""Tests for the message exchange: persistence, URL fetching, streaming, cancellation."""

import sys
import unittest
from pathlib import Path

# Ensure bin/ is importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "bin"))

import config as config_mod
from exchange import GENERIC_ERROR, MessageExchange
from providers import ChatProvider, ChatStream, ProviderKind, ProviderRegistry
from records import (
    BusyError,
    NotFoundError,
    ProviderConfigurationError,
    ProviderRequestError,
    Usage,
    ValidationError,
)
from state import Store
from tree import ConversationTree


MODEL = "openrouter/test-model"


class ScriptedProvider(ChatProvider):
    """Streams fixed chunks; optionally fails after them."""

    kind = ProviderKind.OPENROUTER
    key_env = "OPENROUTER_API_KEY"

    def __init__(self, chunks=("Hi", " there"), usage=(10, 2), fail_after=False, api_key="k"):
        super().__init__({"api_key": api_key})
        self.chunks = list(chunks)
        self.usage = Usage(*usage)
        self.fail_after = fail_after
        self.calls = []
        self.streams = []

    def open_stream(self, messages, model=None):
        self.calls.append((list(messages), model))

        def _gen():
            for chunk in self.chunks:
                yield chunk
            if self.fail_after:
                raise ProviderRequestError("upstream went away", upstream_status=500)

        stream = ChatStream(_gen(), self.usage)
        self.streams.append(stream)
        return stream

    def complete(self, messages, model=None):
        return "summary"


def _make_exchange(provider=None, fetch_fn=None, **kwargs):
    store = Store(None)
    provider = provider or ScriptedProvider()
    registry = ProviderRegistry(overrides={ProviderKind.OPENROUTER: provider})
    exchange = MessageExchange(store, registry, fetch_fn=fetch_fn or (lambda url, follow: ""), **kwargs)
    tree, root = store.create_tree("alice", "Chat", MODEL, "normal")
    return exchange, store, provider, root


class TestExchange(unittest.TestCase):
    def setUp(self):
        self._saved_debug = config_mod.DEBUG_MODE
        config_mod.DEBUG_MODE = False

    def tearDown(self):
        config_mod.DEBUG_MODE = self._saved_debug

    def test_hello_hi_there(self):
        exchange, store, provider, root = _make_exchange()
        turn = exchange.prepare("alice", root.id, "Hello")
        events = list(exchange.stream(turn))

        self.assertEqual(events[:2], [{"chunk": "Hi"}, {"chunk": " there"}])
        done = events[-1]
        self.assertTrue(done["done"])
        self.assertEqual((done["inputTokens"], done["outputTokens"]), (10, 2))

        msgs = store.list_messages(root.id)
        self.assertEqual([(m.role, m.content) for m in msgs], [("user", "Hello"), ("assistant", "Hi there")])
        self.assertEqual(done["messageId"], msgs[1].id)
        self.assertEqual((msgs[1].input_tokens, msgs[1].output_tokens), (10, 2))
        sent, model = provider.calls[0]
        self.assertEqual(sent[-1], {"role": "user", "content": "Hello"})
        self.assertEqual(model, MODEL)
        self.assertFalse(exchange.guard.is_active(root.id))

    def test_run_accumulates(self):
        exchange, store, _, root = _make_exchange()
        result = exchange.run(exchange.prepare("alice", root.id, "Hello"))
        self.assertEqual(result["content"], "Hi there")
        self.assertEqual(store.get_message(result["messageId"]).role, "assistant")
        self.assertFalse(exchange.guard.is_active(root.id))

    def test_too_many_attachments_stores_nothing(self):
        exchange, store, provider, root = _make_exchange()
        files = [{"filename": f"f{i}.txt", "size": 10, "content": "x"} for i in range(6)]
        with self.assertRaises(ValidationError):
            exchange.prepare("alice", root.id, "look", files)
        self.assertEqual(store.list_messages(root.id), [])
        self.assertEqual(provider.calls, [])

    def test_oversized_attachment_uses_actual_size(self):
        exchange, store, _, root = _make_exchange(max_attachment_bytes=10)
        with self.assertRaises(ValidationError):
            exchange.prepare("alice", root.id, "look",
                             [{"filename": "a.txt", "size": 1, "content": "x" * 11}])
        self.assertEqual(store.list_messages(root.id), [])

    def test_attachment_metadata_persisted_content_in_prompt(self):
        exchange, store, provider, root = _make_exchange()
        turn = exchange.prepare("alice", root.id, "review this",
                                [{"filename": "app.py", "size": 0, "content": "print(1)"}])
        list(exchange.stream(turn))
        user_msg = store.list_messages(root.id)[0]
        self.assertEqual(user_msg.attachments[0].to_dict(),
                         {"filename": "app.py", "size": 8, "mimeType": "text/plain"})
        sent = provider.calls[0][0]
        self.assertTrue(any("```python\nprint(1)\n```" in m["content"] for m in sent))

    def test_partial_url_success(self):
        def fetch(url, follow):
            return "Page A body" if "a.example" in url else ""

        exchange, store, provider, root = _make_exchange(fetch_fn=fetch)
        turn = exchange.prepare("alice", root.id,
                                "compare https://a.example/x and https://b.example/y")
        self.assertEqual(turn.fetched_urls, {"https://a.example/x": "Page A body"})
        list(exchange.stream(turn))
        user_msg = store.list_messages(root.id)[0]
        self.assertEqual(user_msg.fetched_urls, ["https://a.example/x"])
        sent = provider.calls[0][0]
        fetched_block = next(m for m in sent if "Content fetched from URLs" in m["content"])
        self.assertIn("[Source: https://a.example/x]\nPage A body", fetched_block["content"])
        self.assertNotIn("b.example", fetched_block["content"])

    def test_explicit_urls_are_fetched(self):
        seen = []
        exchange, _, _, root = _make_exchange(fetch_fn=lambda url, follow: seen.append(url) or "")
        turn = exchange.prepare("alice", root.id, "no links here", urls=["https://c.example"])
        exchange.release(turn)
        self.assertEqual(seen, ["https://c.example"])

    def test_busy_conversation(self):
        exchange, store, _, root = _make_exchange()
        turn = exchange.prepare("alice", root.id, "first")
        with self.assertRaises(BusyError):
            exchange.prepare("alice", root.id, "second")
        self.assertEqual(len(store.list_messages(root.id)), 1)
        list(exchange.stream(turn))
        again = exchange.prepare("alice", root.id, "third")
        exchange.release(again)

    def test_stream_error_persists_no_reply(self):
        provider = ScriptedProvider(chunks=["partial"], fail_after=True)
        exchange, store, _, root = _make_exchange(provider)
        events = list(exchange.stream(exchange.prepare("alice", root.id, "Hello")))
        self.assertEqual(events, [{"chunk": "partial"}, {"error": GENERIC_ERROR}])
        self.assertEqual([m.role for m in store.list_messages(root.id)], ["user"])
        self.assertFalse(exchange.guard.is_active(root.id))

    def test_unconfigured_provider_writes_nothing(self):
        exchange, store, _, root = _make_exchange(ScriptedProvider(api_key=""))
        with self.assertRaises(ProviderConfigurationError):
            exchange.prepare("alice", root.id, "Hello")
        self.assertEqual(store.list_messages(root.id), [])
        self.assertFalse(exchange.guard.is_active(root.id))

    def test_foreign_conversation(self):
        exchange, _, _, root = _make_exchange()
        with self.assertRaises(NotFoundError):
            exchange.prepare("mallory", root.id, "Hello")

    def test_empty_content_rejected(self):
        exchange, _, _, root = _make_exchange()
        with self.assertRaises(ValidationError):
            exchange.prepare("alice", root.id, "   ")

    def test_cancel_mid_stream(self):
        provider = ScriptedProvider(chunks=["a", "b", "c"])
        exchange, store, _, root = _make_exchange(provider)
        view = ConversationTree()
        turn = exchange.prepare("alice", root.id, "Hello")
        stream = exchange.stream(turn, view)
        events = iter(stream)
        self.assertEqual(next(events), {"chunk": "a"})
        self.assertTrue(view.streaming)
        stream.close()

        self.assertTrue(provider.streams[0].closed)
        self.assertEqual([m.role for m in store.list_messages(root.id)], ["user"])
        self.assertFalse(exchange.guard.is_active(root.id))
        self.assertFalse(view.streaming)
        self.assertEqual(view.streaming_error, "cancelled")

    def test_listener_receives_overlay(self):
        exchange, _, _, root = _make_exchange()
        view = ConversationTree()
        list(exchange.stream(exchange.prepare("alice", root.id, "Hello"), view))
        self.assertFalse(view.streaming)
        self.assertIsNone(view.streaming_id)
        last = view.messages[root.id][-1]
        self.assertEqual(last["content"], "Hi there")
        self.assertEqual(last["inputTokens"], 10)


if __name__ == "__main__":
    unittest.main()
