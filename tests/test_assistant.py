from __future__ import annotations

import json
import unittest
from types import SimpleNamespace
from typing import Any, Optional

import httpx
from openai import APIConnectionError, APIStatusError

from assistant import (
    UPSTREAM_URL,
    AssistantConfigError,
    AssistantRequestError,
    AssistantUpstreamError,
    IssueDraft,
    LlmRequest,
    MalformedDraftError,
    format_issue_markdown,
    generate_assistant_chat,
    generate_issue_draft,
    prepare_upstream_messages,
    proxy_llm_request,
)
from booking_config import BookingSettings
from diagnostics import DiagnosticsBuffer

SETTINGS = BookingSettings(openai_api_key="sk-test", assistant_enabled=True)


class _FakeCompletions:
    def __init__(self, content: str = "", exc: Optional[Exception] = None) -> None:
        self.content = content
        self.exc = exc
        self.calls: list[dict[str, Any]] = []

    def create(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        if self.exc is not None:
            raise self.exc
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=self.content))])


class _FakeClient:
    def __init__(self, completions: _FakeCompletions) -> None:
        self.chat = SimpleNamespace(completions=completions)
        self.api_keys: list[str] = []

    def factory(self, api_key: str) -> "_FakeClient":
        self.api_keys.append(api_key)
        return self


def _client(content: str = "", exc: Optional[Exception] = None) -> tuple[_FakeClient, _FakeCompletions]:
    completions = _FakeCompletions(content, exc)
    return _FakeClient(completions), completions


def _messages(n: int) -> tuple[dict[str, str], ...]:
    return tuple({"role": "user", "content": f"m{i}"} for i in range(n))


class TestPrepareUpstreamMessages(unittest.TestCase):
    def test_caps_messages_and_images(self) -> None:
        images = [f"data:image/png;base64,{i}" for i in range(5)]
        out = prepare_upstream_messages(_messages(15), images)
        self.assertEqual(len(out), 12)
        self.assertEqual(out[0]["content"], "m3")
        parts = out[-1]["content"]
        self.assertEqual(parts[0], {"type": "text", "text": "m14"})
        urls = [p["image_url"]["url"] for p in parts if p["type"] == "image_url"]
        self.assertEqual(urls, images[-3:])

    def test_accepts_image_mappings(self) -> None:
        out = prepare_upstream_messages(_messages(1), [{"dataUrl": "data:image/jpeg;base64,AA"}])
        self.assertEqual(out[0]["content"][1]["image_url"]["url"], "data:image/jpeg;base64,AA")

    def test_without_images_messages_are_unchanged(self) -> None:
        self.assertEqual(prepare_upstream_messages(_messages(2)), list(_messages(2)))


class TestProxyLlmRequest(unittest.TestCase):
    def test_forwards_with_defaults(self) -> None:
        client, completions = _client("hello")
        reply = proxy_llm_request(LlmRequest(messages=_messages(2)), SETTINGS, client_factory=client.factory)
        self.assertEqual(reply, "hello")
        self.assertEqual(client.api_keys, ["sk-test"])
        call = completions.calls[0]
        self.assertEqual(call["model"], "gpt-4o")
        self.assertEqual(call["temperature"], 0.3)
        self.assertNotIn("response_format", call)

    def test_json_mode_and_model_override(self) -> None:
        client, completions = _client("{}")
        proxy_llm_request(
            LlmRequest(messages=_messages(1), json_mode=True, model="gpt-4o-mini"),
            SETTINGS,
            client_factory=client.factory,
        )
        call = completions.calls[0]
        self.assertEqual(call["response_format"], {"type": "json_object"})
        self.assertEqual(call["model"], "gpt-4o-mini")

    def test_empty_messages_rejected(self) -> None:
        client, completions = _client("x")
        with self.assertRaises(AssistantRequestError):
            proxy_llm_request(LlmRequest(messages=()), SETTINGS, client_factory=client.factory)
        self.assertEqual(completions.calls, [])

    def test_missing_key_is_a_config_error(self) -> None:
        client, completions = _client("x")
        with self.assertRaises(AssistantConfigError) as ctx:
            proxy_llm_request(LlmRequest(messages=_messages(1)), BookingSettings(), client_factory=client.factory)
        self.assertIn("OPENAI_API_KEY", str(ctx.exception))
        self.assertEqual(completions.calls, [])

    def test_upstream_status_error_is_wrapped_and_recorded(self) -> None:
        response = httpx.Response(502, request=httpx.Request("POST", UPSTREAM_URL))
        exc = APIStatusError("bad gateway", response=response, body=None)
        client, _ = _client(exc=exc)
        diagnostics = DiagnosticsBuffer()
        with self.assertLogs("skydrift.assistant", level="ERROR"):
            with self.assertRaises(AssistantUpstreamError) as ctx:
                proxy_llm_request(
                    LlmRequest(messages=_messages(1)), SETTINGS, client_factory=client.factory, diagnostics=diagnostics
                )
        self.assertEqual(ctx.exception.status, 502)
        self.assertEqual(diagnostics.network[-1].status, 502)
        self.assertEqual(diagnostics.network[-1].url, UPSTREAM_URL)

    def test_connection_error_is_wrapped(self) -> None:
        exc = APIConnectionError(request=httpx.Request("POST", UPSTREAM_URL))
        client, _ = _client(exc=exc)
        with self.assertLogs("skydrift.assistant", level="ERROR"):
            with self.assertRaises(AssistantUpstreamError) as ctx:
                proxy_llm_request(LlmRequest(messages=_messages(1)), SETTINGS, client_factory=client.factory)
        self.assertIsNone(ctx.exception.status)

    def test_success_is_recorded(self) -> None:
        client, _ = _client("ok")
        diagnostics = DiagnosticsBuffer()
        proxy_llm_request(LlmRequest(messages=_messages(1)), SETTINGS, client_factory=client.factory, diagnostics=diagnostics)
        self.assertEqual(len(diagnostics.network), 1)
        self.assertEqual(diagnostics.network[0].method, "POST")
        self.assertEqual(diagnostics.network[0].status, 200)


class TestAssistantChat(unittest.TestCase):
    def test_chat_sends_system_history_and_context(self) -> None:
        client, completions = _client("  Try a date within 60 days.  ")
        history = [{"role": "user" if i % 2 == 0 else "assistant", "content": f"h{i}"} for i in range(10)]
        reply = generate_assistant_chat(
            user_message="Why can't I search?",
            context="Step: search",
            settings=SETTINGS,
            history=history,
            images=["data:image/png;base64,AA"],
            client_factory=client.factory,
        )
        self.assertEqual(reply, "Try a date within 60 days.")
        sent = completions.calls[0]["messages"]
        self.assertEqual(len(sent), 10)
        self.assertEqual(sent[0]["role"], "system")
        self.assertIn("BugScribe", sent[0]["content"])
        self.assertEqual(sent[1]["content"], "h2")
        last_parts = sent[-1]["content"]
        self.assertIn("Step: search", last_parts[0]["text"])
        self.assertIn("User: Why can't I search?", last_parts[0]["text"])
        self.assertEqual(last_parts[1]["type"], "image_url")


class TestIssueDraft(unittest.TestCase):
    def test_valid_draft(self) -> None:
        client, completions = _client(json.dumps({"title": " Search blocked ", "body": "## Summary\n- x"}))
        draft = generate_issue_draft(
            context="Step: search", details="date error", settings=SETTINGS, client_factory=client.factory
        )
        self.assertEqual(draft, IssueDraft(title="Search blocked", body="## Summary\n- x"))
        self.assertEqual(completions.calls[0]["response_format"], {"type": "json_object"})
        self.assertEqual(format_issue_markdown(draft), "# Search blocked\n\n## Summary\n- x\n")

    def test_json_wrapped_in_prose_is_accepted(self) -> None:
        client, _ = _client('Here you go: {"title": "T", "body": "B"} thanks')
        draft = generate_issue_draft(context="", details="", settings=SETTINGS, client_factory=client.factory)
        self.assertEqual(draft.title, "T")

    def test_non_json_draft_raises(self) -> None:
        client, _ = _client("Sorry, I cannot help with that.")
        with self.assertRaises(MalformedDraftError) as ctx:
            generate_issue_draft(context="", details="", settings=SETTINGS, client_factory=client.factory)
        self.assertEqual(str(ctx.exception), "LLM returned non-JSON draft.")

    def test_missing_fields_raise(self) -> None:
        for payload in ({"title": "T"}, {"title": "", "body": "B"}, {"title": "T", "body": 3}):
            client, _ = _client(json.dumps(payload))
            with self.assertRaises(MalformedDraftError) as ctx:
                generate_issue_draft(context="", details="", settings=SETTINGS, client_factory=client.factory)
            self.assertEqual(str(ctx.exception), "LLM draft missing title/body.")


if __name__ == "__main__":
    unittest.main()
