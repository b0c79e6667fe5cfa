#!/usr/bin/env python3
"""Tests for model-id parsing, payload shaping and SSE stream parsing (HTTP mocked)."""

import json
import sys
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

import requests

# Ensure bin/ is importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "bin"))

from providers import (
    SUMMARY_PROMPT,
    GeminiProvider,
    ModelRef,
    OpenRouterProvider,
    ProviderKind,
    ProviderRegistry,
    to_gemini_payload,
    transcript_text,
)
from records import ProviderConfigurationError, ProviderRequestError


def _make_stream_response(lines, status=200):
    resp = MagicMock()
    resp.status_code = status
    resp.encoding = None
    resp.text = "error body"
    resp.iter_lines.return_value = iter(lines)
    return resp


def _or_frame(text=None, usage=None):
    frame = {"choices": [{"delta": {"content": text} if text is not None else {}}]}
    if usage:
        frame["usage"] = usage
    return "data: " + json.dumps(frame)


def _openrouter(**cfg):
    return OpenRouterProvider({"api_key": "sk-test", **cfg}, timeout_s=5)


class TestModelRef(unittest.TestCase):
    def test_openrouter_prefix(self):
        ref = ModelRef.parse("openrouter/deepseek/deepseek-chat-v3-0324")
        self.assertEqual(ref, ModelRef(ProviderKind.OPENROUTER, "deepseek/deepseek-chat-v3-0324"))

    def test_google_prefix_stripped(self):
        self.assertEqual(ModelRef.parse("google/gemini-2.0-flash"),
                         ModelRef(ProviderKind.GEMINI, "gemini-2.0-flash"))

    def test_bare_and_empty_ids_are_gemini(self):
        self.assertEqual(ModelRef.parse("gemini-2.0-flash").kind, ProviderKind.GEMINI)
        self.assertEqual(ModelRef.parse(None), ModelRef(ProviderKind.GEMINI, ""))

    def test_registry_routes_by_model(self):
        registry = ProviderRegistry({"openrouter": {"api_key": "k"}})
        self.assertIsInstance(registry.for_model("openrouter/x/y"), OpenRouterProvider)
        self.assertIsInstance(registry.for_model("google/gemini-2.0-flash"), GeminiProvider)
        described = {d["kind"]: d for d in registry.describe()}
        self.assertTrue(described["openrouter"]["configured"])
        self.assertFalse(described["gemini"]["configured"])
        self.assertNotIn("api_key", described["openrouter"])


class TestOpenRouterStreaming(unittest.TestCase):
    def test_chunks_and_usage(self):
        resp = _make_stream_response([
            ": OPENROUTER PROCESSING",
            _or_frame("Hi"),
            "",
            _or_frame(" there"),
            _or_frame(usage={"prompt_tokens": 10, "completion_tokens": 2}),
            "data: [DONE]",
            _or_frame("ignored after done"),
        ])
        chunks = []
        with patch("providers.requests.post", return_value=resp) as mock_post:
            usage = _openrouter().stream_chat([{"role": "user", "content": "Hello"}],
                                              chunks.append, "openrouter/openai/gpt-4o-mini")
        self.assertEqual(chunks, ["Hi", " there"])
        self.assertEqual((usage.input_tokens, usage.output_tokens), (10, 2))
        _, kwargs = mock_post.call_args
        self.assertTrue(kwargs["stream"])
        self.assertEqual(kwargs["json"]["model"], "openai/gpt-4o-mini")
        self.assertEqual(kwargs["json"]["usage"], {"include": True})
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer sk-test")
        self.assertEqual(kwargs["headers"]["X-Title"], "Chat Tree")
        resp.close.assert_called()

    def test_malformed_frames_skipped(self):
        resp = _make_stream_response([
            "data: {not json",
            "data: [1, 2, 3]",
            'data: {"choices": "nope"}',
            _or_frame("ok"),
        ])
        chunks = []
        with patch("providers.requests.post", return_value=resp):
            usage = _openrouter().stream_chat([{"role": "user", "content": "x"}], chunks.append)
        self.assertEqual(chunks, ["ok"])
        self.assertEqual((usage.input_tokens, usage.output_tokens), (0, 0))

    def test_error_frame_raises(self):
        resp = _make_stream_response([_or_frame("partial"), 'data: {"error": {"message": "overloaded"}}'])
        with patch("providers.requests.post", return_value=resp):
            with self.assertRaises(ProviderRequestError):
                _openrouter().stream_chat([{"role": "user", "content": "x"}], lambda c: None)

    def test_http_error_status(self):
        resp = _make_stream_response([], status=429)
        with patch("providers.requests.post", return_value=resp):
            with self.assertRaises(ProviderRequestError) as ctx:
                _openrouter().open_stream([{"role": "user", "content": "x"}])
        self.assertEqual(ctx.exception.upstream_status, 429)
        self.assertEqual(ctx.exception.status, 502)

    def test_connection_error(self):
        with patch("providers.requests.post", side_effect=requests.ConnectionError("refused")):
            with self.assertRaises(ProviderRequestError):
                _openrouter().open_stream([{"role": "user", "content": "x"}])

    def test_missing_key_is_configuration_error(self):
        with patch("providers.requests.post") as mock_post:
            with self.assertRaises(ProviderConfigurationError) as ctx:
                OpenRouterProvider({}).open_stream([{"role": "user", "content": "x"}])
        mock_post.assert_not_called()
        self.assertIn("OPENROUTER_API_KEY", str(ctx.exception))
        self.assertEqual(ctx.exception.status, 503)

    def test_close_stops_stream(self):
        resp = _make_stream_response([_or_frame("a"), _or_frame("b"), _or_frame("c")])
        with patch("providers.requests.post", return_value=resp):
            stream = _openrouter().open_stream([{"role": "user", "content": "x"}])
        got = []
        for chunk in stream:
            got.append(chunk)
            stream.close()
        self.assertEqual(got, ["a"])
        self.assertTrue(stream.closed)
        resp.close.assert_called()

    def test_summarize_uses_complete(self):
        resp = MagicMock(status_code=200)
        resp.json.return_value = {"choices": [{"message": {"content": "  A short summary.  "}}]}
        with patch("providers.requests.post", return_value=resp) as mock_post:
            summary = _openrouter().summarize([
                {"role": "system", "content": "be nice"},
                {"role": "user", "content": "What is X?"},
                {"role": "assistant", "content": "X is Y."},
            ])
        self.assertEqual(summary, "A short summary.")
        payload = mock_post.call_args[1]["json"]
        self.assertFalse(payload["stream"])
        prompt = payload["messages"][0]["content"]
        self.assertTrue(prompt.startswith(SUMMARY_PROMPT))
        self.assertIn("User: What is X?\n\nAssistant: X is Y.", prompt)
        self.assertNotIn("be nice", prompt)


class TestGemini(unittest.TestCase):
    def test_payload_shape(self):
        payload = to_gemini_payload([
            {"role": "system", "content": "sys one"},
            {"role": "system", "content": "sys two"},
            {"role": "user", "content": "a"},
            {"role": "user", "content": "b"},
            {"role": "assistant", "content": "c"},
        ])
        self.assertEqual(payload["systemInstruction"], {"parts": [{"text": "sys one\n\nsys two"}]})
        self.assertEqual(payload["contents"], [
            {"role": "user", "parts": [{"text": "a"}, {"text": "b"}]},
            {"role": "model", "parts": [{"text": "c"}]},
        ])

    def test_payload_without_turns_rejected(self):
        with self.assertRaises(ProviderRequestError):
            to_gemini_payload([{"role": "system", "content": "only system"}])

    def test_stream_url_and_frames(self):
        frames = [
            "data: " + json.dumps({"candidates": [{"content": {"parts": [{"text": "Hel"}]}}]}),
            "data: " + json.dumps({
                "candidates": [{"content": {"parts": [{"text": "lo"}]}}],
                "usageMetadata": {"promptTokenCount": 4, "candidatesTokenCount": 1},
            }),
        ]
        resp = _make_stream_response(frames)
        chunks = []
        provider = GeminiProvider({"api_key": "g-key", "url": "https://gemini.test/models"})
        with patch("providers.requests.post", return_value=resp) as mock_post:
            usage = provider.stream_chat([{"role": "user", "content": "hi"}], chunks.append,
                                         "google/gemini-2.0-flash")
        self.assertEqual("".join(chunks), "Hello")
        self.assertEqual((usage.input_tokens, usage.output_tokens), (4, 1))
        args, kwargs = mock_post.call_args
        self.assertEqual(args[0], "https://gemini.test/models/gemini-2.0-flash:streamGenerateContent?alt=sse")
        self.assertEqual(kwargs["headers"]["x-goog-api-key"], "g-key")

    def test_default_model_when_id_belongs_elsewhere(self):
        provider = GeminiProvider({"api_key": "g"})
        self.assertEqual(provider.model_name("openrouter/openai/gpt-4o-mini"), "gemini-2.0-flash-lite")


class TestTranscript(unittest.TestCase):
    def test_system_messages_excluded(self):
        text = transcript_text([
            {"role": "system", "content": "s"},
            {"role": "user", "content": "q"},
            {"role": "assistant", "content": "a"},
        ])
        self.assertEqual(text, "User: q\n\nAssistant: a")


if __name__ == "__main__":
    unittest.main()
