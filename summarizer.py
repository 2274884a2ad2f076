"""Summarizer adapter using DashScope text generation.

Each call receives the new transcript window plus the content of the prior
summary as carried-over context, and is asked for a single JSON object with
the structured summary fields.
"""

from __future__ import annotations

import json
import logging
import os
import re

from errors import AUTH_FAILED, PROVIDER_PROTOCOL_ERROR, SummarizationCallFailure, map_provider_exception
from models import SummaryFields

try:
    import dashscope
except Exception:  # pragma: no cover
    dashscope = None  # type: ignore

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You maintain a running summary of a live conversation. "
    "Reply with one JSON object with the keys content (string), key_points, "
    "decisions, action_items and quotes (arrays of strings). "
    "content must be a complete summary of everything so far."
)

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


def build_messages(transcript_window: str, prior_summary: str) -> list[dict]:
    parts = []
    if prior_summary:
        parts.append(f"Summary so far:\n{prior_summary}")
    parts.append(f"New transcript:\n{transcript_window}")
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": "\n\n".join(parts)},
    ]


def parse_summary_fields(text: str) -> SummaryFields:
    """Parse the model reply, tolerating code fences and missing lists."""
    cleaned = _FENCE.sub("", text.strip())
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError:
        start, end = cleaned.find("{"), cleaned.rfind("}")
        if start < 0 or end <= start:
            raise SummarizationCallFailure(
                "summary reply is not JSON", PROVIDER_PROTOCOL_ERROR
            ) from None
        try:
            data = json.loads(cleaned[start : end + 1])
        except json.JSONDecodeError as exc:
            raise SummarizationCallFailure(str(exc), PROVIDER_PROTOCOL_ERROR) from exc
    if not isinstance(data, dict):
        raise SummarizationCallFailure("summary reply is not an object", PROVIDER_PROTOCOL_ERROR)

    def _items(key: str) -> tuple[str, ...]:
        value = data.get(key) or []
        if isinstance(value, str):
            value = [value]
        return tuple(str(v).strip() for v in value if str(v).strip())

    return SummaryFields(
        content=str(data.get("content", "")).strip(),
        key_points=_items("key_points"),
        decisions=_items("decisions"),
        action_items=_items("action_items"),
        quotes=_items("quotes"),
    )


class DashscopeSummarizer:
    def __init__(
        self,
        api_key: str,
        model: str = "qwen-plus",
        request_timeout_s: float = 30.0,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._request_timeout_s = request_timeout_s

    def summarize(
        self,
        transcript_window: str,
        prior_summary: str,
        budget_hint: int,
    ) -> SummaryFields:
        if dashscope is None:
            raise SummarizationCallFailure(
                "dashscope is not installed", PROVIDER_PROTOCOL_ERROR, retryable=False
            )
        api_key = self._api_key or os.getenv("DASHSCOPE_API_KEY", "")
        if not api_key:
            raise SummarizationCallFailure("No API key configured", AUTH_FAILED, retryable=False)

        try:
            response = dashscope.Generation.call(
                api_key=api_key,
                model=self._model,
                messages=build_messages(transcript_window, prior_summary),
                result_format="message",
                max_tokens=budget_hint,
                timeout=self._request_timeout_s,
            )
        except Exception as exc:
            raise map_provider_exception(exc) from exc

        status = _get(response, "status_code", 200)
        if status != 200:
            message = f"{status} {_get(response, 'code', '')} {_get(response, 'message', '')}".strip()
            raise map_provider_exception(RuntimeError(message))

        text = self._extract_text(response)
        if not text:
            raise SummarizationCallFailure("empty summary reply", PROVIDER_PROTOCOL_ERROR)
        logger.debug("summary reply: %d chars", len(text))
        return parse_summary_fields(text)

    def _extract_text(self, response: object) -> str:
        """Pull assistant text from a dashscope generation response."""
        output = _get(response, "output", {}) or {}
        choices = _get(output, "choices", []) or []
        if choices:
            message = _get(choices[0], "message", {}) or {}
            content = _get(message, "content", "")
            if isinstance(content, list):
                return "".join(
                    str(part.get("text", "")) for part in content if isinstance(part, dict)
                )
            return str(content or "")
        return str(_get(output, "text", "") or "")


def _get(obj: object, key: str, default: object = None) -> object:
    if isinstance(obj, dict):
        return obj.get(key, default)
    return getattr(obj, key, default)
