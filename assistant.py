from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Sequence, Union

from openai import APIError, APIStatusError, OpenAI

from booking_config import BookingSettings
from diagnostics import DiagnosticsBuffer

logger = logging.getLogger("skydrift.assistant")

MAX_FORWARDED_MESSAGES = 12
MAX_FORWARDED_IMAGES = 3
CHAT_HISTORY_WINDOW = 8
UPSTREAM_TEMPERATURE = 0.3
UPSTREAM_URL = "https://api.openai.com/v1/chat/completions"

ImageInput = Union[str, Mapping[str, Any]]
ClientFactory = Callable[[str], Any]


class AssistantError(RuntimeError):
    pass


class AssistantConfigError(AssistantError):
    pass


class AssistantRequestError(AssistantError):
    pass


class AssistantUpstreamError(AssistantError):
    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class MalformedDraftError(AssistantError):
    pass


@dataclass(frozen=True)
class LlmRequest:
    messages: tuple[Mapping[str, Any], ...]
    json_mode: bool = False
    model: Optional[str] = None
    images: tuple[ImageInput, ...] = ()


@dataclass(frozen=True)
class IssueDraft:
    title: str
    body: str


def _image_url(img: ImageInput) -> str:
    if isinstance(img, Mapping):
        return str(img.get("dataUrl") or img.get("data_url") or "")
    return str(img)


def prepare_upstream_messages(
    messages: Sequence[Mapping[str, Any]],
    images: Sequence[ImageInput] = (),
) -> list[dict[str, Any]]:
    """
    Keep the last 12 messages and attach up to the last 3 images to the final message as
    `image_url` content parts.
    """
    capped = [dict(m) for m in list(messages)[-MAX_FORWARDED_MESSAGES:]]
    image_inputs = [u for u in (_image_url(i) for i in list(images)[-MAX_FORWARDED_IMAGES:]) if u]
    if not capped or not image_inputs:
        return capped

    last = capped[-1]
    content = last.get("content")
    if isinstance(content, str):
        base: list[Any] = [{"type": "text", "text": content}]
    elif isinstance(content, list):
        base = list(content)
    else:
        base = [{"type": "text", "text": ""}]
    base.extend({"type": "image_url", "image_url": {"url": url}} for url in image_inputs)
    capped[-1] = {**last, "content": base}
    return capped


def _default_client_factory(api_key: str) -> Any:
    return OpenAI(api_key=api_key)


def proxy_llm_request(
    request: LlmRequest,
    settings: BookingSettings,
    *,
    client_factory: ClientFactory = _default_client_factory,
    diagnostics: Optional[DiagnosticsBuffer] = None,
) -> str:
    """
    Forward a chat request to the hosted model and return the reply text.

    Raises AssistantRequestError for an empty message list, AssistantConfigError when no API
    key is configured and AssistantUpstreamError for any upstream failure.
    """
    if not request.messages:
        raise AssistantRequestError("messages array is required")
    api_key = settings.openai_api_key.strip()
    if not api_key:
        raise AssistantConfigError("Missing OPENAI_API_KEY")

    model = (request.model or settings.assistant_model).strip()
    kwargs: dict[str, Any] = {
        "model": model,
        "temperature": UPSTREAM_TEMPERATURE,
        "messages": prepare_upstream_messages(request.messages, request.images),
    }
    if request.json_mode:
        kwargs["response_format"] = {"type": "json_object"}

    started = time.monotonic()

    def _record(status: int, error: str = "") -> None:
        if diagnostics is not None:
            elapsed_ms = int((time.monotonic() - started) * 1000)
            diagnostics.record_network("POST", UPSTREAM_URL, status, elapsed_ms, error=error)

    try:
        client = client_factory(api_key)
        resp = client.chat.completions.create(**kwargs)
    except APIStatusError as exc:
        _record(exc.status_code, error=str(exc.message))
        logger.error("Assistant upstream returned HTTP %s", exc.status_code)
        raise AssistantUpstreamError(str(exc.message) or f"LLM API error {exc.status_code}", exc.status_code) from exc
    except APIError as exc:
        _record(0, error=str(exc))
        logger.error("Assistant upstream request failed: %s", exc)
        raise AssistantUpstreamError(str(exc) or "LLM request failed") from exc

    _record(200)
    try:
        content = resp.choices[0].message.content or ""
    except (AttributeError, IndexError, TypeError):
        content = ""
    return content


_JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)


def _extract_json_object(text: str) -> Optional[dict[str, Any]]:
    """
    Extract and parse the first JSON object found in a string.
    """
    t = (text or "").strip()
    if not t:
        return None
    if t.startswith("{") and t.endswith("}"):
        try:
            parsed = json.loads(t)
        except ValueError:
            parsed = None
        if isinstance(parsed, dict):
            return parsed

    m = _JSON_OBJECT_RE.search(t)
    if not m:
        return None
    try:
        parsed = json.loads(m.group(0))
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


_CHAT_SYSTEM_PROMPT = " ".join(
    [
        "You are BugScribe Assistant. Respond in plain text only.",
        "Keep replies concise (<=60 words). No markdown. Friendly and direct.",
        "If images are provided, reason about the latest image first and describe the UI state seen there. "
        "Only reference visuals you actually see.",
    ]
)

_DRAFT_SYSTEM_PROMPT = " ".join(
    [
        "You create GitHub issue drafts.",
        'Respond ONLY as a JSON object: {"title":"...","body":"..."}',
        "Body should be Markdown with sections: Summary, Steps to Reproduce, Expected, Actual, Notes.",
        "Keep concise bullet points.",
        "If images are provided, prioritize the latest image to describe the current UI state "
        "and include concise visual observations.",
    ]
)


def generate_assistant_chat(
    *,
    user_message: str,
    context: str,
    settings: BookingSettings,
    history: Sequence[Mapping[str, Any]] = (),
    images: Sequence[ImageInput] = (),
    client_factory: ClientFactory = _default_client_factory,
    diagnostics: Optional[DiagnosticsBuffer] = None,
) -> str:
    context_block = "\n".join(
        [
            "Context:",
            context or "No additional context.",
            "",
            f"User: {user_message}",
        ]
    )
    messages = (
        {"role": "system", "content": _CHAT_SYSTEM_PROMPT},
        *[dict(m) for m in list(history)[-CHAT_HISTORY_WINDOW:]],
        {"role": "user", "content": context_block},
    )
    content = proxy_llm_request(
        LlmRequest(messages=messages, json_mode=False, images=tuple(images)),
        settings,
        client_factory=client_factory,
        diagnostics=diagnostics,
    )
    return (content or "").strip()


def generate_issue_draft(
    *,
    context: str,
    details: str,
    settings: BookingSettings,
    images: Sequence[ImageInput] = (),
    client_factory: ClientFactory = _default_client_factory,
    diagnostics: Optional[DiagnosticsBuffer] = None,
) -> IssueDraft:
    """
    Ask the model for a GitHub issue draft. The reply must be a JSON object with non-empty
    `title` and `body`, otherwise MalformedDraftError is raised.
    """
    user = "\n".join(
        [
            "Prepare an issue draft for the current flow.",
            f"Context: {context or 'none'}",
            f"Details: {details or 'none'}",
        ]
    )
    content = proxy_llm_request(
        LlmRequest(
            messages=({"role": "system", "content": _DRAFT_SYSTEM_PROMPT}, {"role": "user", "content": user}),
            json_mode=True,
            images=tuple(images),
        ),
        settings,
        client_factory=client_factory,
        diagnostics=diagnostics,
    )
    payload = _extract_json_object(content)
    if payload is None:
        raise MalformedDraftError("LLM returned non-JSON draft.")
    title = payload.get("title")
    body = payload.get("body")
    if not isinstance(title, str) or not isinstance(body, str) or not title.strip() or not body.strip():
        raise MalformedDraftError("LLM draft missing title/body.")
    return IssueDraft(title=title.strip(), body=body.strip())


def format_issue_markdown(draft: IssueDraft) -> str:
    return f"# {draft.title}\n\n{draft.body}\n"
