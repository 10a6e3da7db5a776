"""JSON extraction from raw LLM output.

Model replies are treated as untrusted text that may wrap the payload in
thinking tags, markdown fences or commentary. The pipeline is:

1. **Sanitize**: strip thinking tags, markdown fences, whitespace
2. **Direct parse**: ``json.loads()`` on the cleaned text
3. **Balanced-bracket extraction**: scan for the first ``[…]`` / ``{…}``
4. **Failure**: ``ParseResult`` with ``data=None``

No regex is used for structural extraction.
"""
from __future__ import annotations

import json
import logging
import re
from typing import Any

logger = logging.getLogger(__name__)

_PAIRS = {"[": "]", "{": "}"}


def sanitize_llm_output(raw: str) -> str:
    """Remove ``<think>``-style blocks and markdown fences, then trim."""
    if not raw:
        return ""

    text = raw
    for tag in ("think", "reasoning", "thought"):
        text = re.sub(rf"<{tag}>.*?</{tag}>", "", text, flags=re.DOTALL | re.IGNORECASE)
    for tag in ("think", "reasoning", "thought"):
        text = re.sub(rf"<{tag}>.*$", "", text, flags=re.DOTALL | re.IGNORECASE)

    text = re.sub(r"```(?:json|JSON)?\s*\n?", "", text)
    return text.strip()


def extract_balanced(text: str, opener: str) -> str | None:
    """Return the first balanced substring starting at *opener*.

    Brackets inside JSON string literals are ignored. Returns ``None``
    when no balanced span exists.
    """
    closer = _PAIRS[opener]
    start = text.find(opener)
    if start == -1:
        return None

    depth = 0
    in_string = False
    escape_next = False

    for i in range(start, len(text)):
        ch = text[i]

        if escape_next:
            escape_next = False
            continue
        if ch == "\\":
            if in_string:
                escape_next = True
            continue
        if ch == '"':
            in_string = not in_string
            continue
        if in_string:
            continue

        if ch == opener:
            depth += 1
        elif ch == closer:
            depth -= 1
            if depth == 0:
                return text[start : i + 1]

    return None


class ParseResult:
    """Outcome of a parse call with diagnostic metadata."""

    __slots__ = ("data", "method", "raw_preview")

    def __init__(self, data: Any, method: str, raw_preview: str = ""):
        self.data = data
        self.method = method                # "direct" | "extraction" | "wrapped" | "failed"
        self.raw_preview = raw_preview

    @property
    def ok(self) -> bool:
        return self.data is not None


def _loads(text: str) -> Any:
    try:
        return json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return None


def parse_json_array(raw: str, wrapper_keys: tuple[str, ...] = ("answers", "results")) -> ParseResult:
    """Extract a JSON array of objects from *raw*.

    Accepts a bare array or an object wrapping the array under one of
    *wrapper_keys* (some models insist on returning an object).
    """
    raw_preview = (raw or "")[:300]
    sanitized = sanitize_llm_output(raw or "")

    def _unwrap(data: Any, method: str) -> ParseResult | None:
        if isinstance(data, list):
            return ParseResult(data, method, raw_preview)
        if isinstance(data, dict):
            for key in wrapper_keys:
                if isinstance(data.get(key), list):
                    return ParseResult(data[key], "wrapped", raw_preview)
        return None

    found = _unwrap(_loads(sanitized), "direct")
    if found:
        return found

    for opener in ("[", "{"):
        extracted = extract_balanced(sanitized, opener)
        if extracted:
            found = _unwrap(_loads(extracted), "extraction")
            if found:
                return found

    return ParseResult(None, "failed", raw_preview)
