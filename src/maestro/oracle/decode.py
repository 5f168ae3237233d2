"""Defensive decoding of structured oracle replies.

Oracle replies are free text that is expected to contain one JSON object,
possibly wrapped in prose or markdown code fences. Every consumer decodes
through :func:`decode_reply` so that a malformed reply degrades to a
documented default instead of raising.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable
from typing import Any, TypeVar

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

_FENCE_RE = re.compile(r"```[a-zA-Z0-9_-]*\n?|```")


class OracleDecodeError(ValueError):
    """Raised when an oracle reply does not contain a usable JSON object."""


def strip_code_fences(text: str) -> str:
    return _FENCE_RE.sub("", text).strip()


def _brace_span(text: str) -> str:
    start = text.find("{")
    end = text.rfind("}")
    if start < 0 or end <= start:
        raise OracleDecodeError("oracle reply contains no JSON object")
    return text[start : end + 1]


def extract_json_object(text: str | None) -> dict[str, Any]:
    if not text:
        raise OracleDecodeError("empty oracle reply")
    # Fences are stripped only as a second try; JSON strings may contain them.
    try:
        payload = json.loads(_brace_span(text))
    except json.JSONDecodeError:
        try:
            payload = json.loads(_brace_span(strip_code_fences(text)))
        except json.JSONDecodeError as exc:
            raise OracleDecodeError(f"oracle reply is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise OracleDecodeError("oracle reply JSON is not an object")
    return payload


def decode_reply(
    text: str | None,
    parse: Callable[[dict[str, Any]], T],
    default: T,
    *,
    label: str = "oracle reply",
) -> T:
    try:
        return parse(extract_json_object(text))
    except (OracleDecodeError, KeyError, TypeError, ValueError) as exc:
        LOGGER.debug("Falling back to default for %s: %s", label, exc)
        return default


def shorten(text: str, limit: int = 2000) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "\n...[TRUNCATED]"


def dumps_for_prompt(payload: Any, limit: int = 4000) -> str:
    return shorten(json.dumps(payload, ensure_ascii=False, indent=2, default=str), limit)
