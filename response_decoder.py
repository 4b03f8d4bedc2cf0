#!/usr/bin/env python3
"""
response_decoder.py

Tolerant JSON decoding of model replies.

Steps (each only if the previous one did not already give parseable text):
    1. strip ``` fences around the reply
    2. cut the greedy {...} span when the reply does not start with '{'
    3. json.loads
    4. repair pass, then json.loads again

The repair pass is heuristic. It rewrites single-quoted literals, so a value
such as "patient's" inside an otherwise single-quoted payload can come out
mangled. Valid JSON never reaches the repair pass.
"""

import json
import re
import logging
from typing import Any

logger = logging.getLogger("ResponseDecoder")

EXCERPT_CHARS = 500

_FENCE_RE = re.compile(r"^```[a-zA-Z]*\n?|```$")
_OBJECT_SPAN_RE = re.compile(r"\{.*\}", re.DOTALL)
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")
_BARE_KEY_RE = re.compile(r"([{,]\s*)([A-Za-z_][A-Za-z0-9_]*)(\s*:)")
_SINGLE_QUOTED_RE = re.compile(r"'([^'\\]*(?:\\.[^'\\]*)*)'")


class DecodeError(Exception):
    """Model output could not be coerced into JSON."""

    def __init__(self, context: str, message: str, excerpt: str = ""):
        self.context = context
        self.message = message
        self.excerpt = excerpt
        detail = f"{context}: {message}"
        if excerpt:
            detail += f"\nRaw (first {EXCERPT_CHARS} chars):\n{excerpt}"
        super().__init__(detail)


def strip_code_fences(text: str) -> str:
    """Remove a leading ```lang fence and a trailing ``` fence."""
    t = text.strip()
    if t.startswith("```"):
        t = _FENCE_RE.sub("", t)
    return t.strip()


def extract_object_span(text: str) -> str:
    """Return the first-'{'-to-last-'}' span, or the text itself."""
    if text.startswith("{"):
        return text
    match = _OBJECT_SPAN_RE.search(text)
    return match.group(0) if match else text


def repair_json_text(text: str) -> str:
    """Apply the common-malformation fixes in a fixed order."""
    t = text.replace("“", '"').replace("”", '"')
    t = t.replace("‘", "'").replace("’", "'")
    t = _TRAILING_COMMA_RE.sub(r"\1", t)
    t = _BARE_KEY_RE.sub(r'\1"\2"\3', t)
    t = _SINGLE_QUOTED_RE.sub(r'"\1"', t)
    return t


def decode_model_json(text: str, context: str = "model output") -> Any:
    """Parse a model reply into a JSON value or raise DecodeError."""
    label = context or "model output"
    if not isinstance(text, str) or not text.strip():
        raise DecodeError(label, "model returned empty output")

    candidate = extract_object_span(strip_code_fences(text))

    try:
        return json.loads(candidate)
    except json.JSONDecodeError:
        pass

    try:
        return json.loads(repair_json_text(candidate))
    except json.JSONDecodeError as e:
        excerpt = candidate[:EXCERPT_CHARS]
        logger.error(f"{label}: Model output was not valid JSON. Raw (first {EXCERPT_CHARS} chars):\n{excerpt}")
        raise DecodeError(label, f"model output was not valid JSON ({e})", excerpt) from e
