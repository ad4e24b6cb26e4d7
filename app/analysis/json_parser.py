"""Tolerant JSON parsing for model output.

Models wrap JSON in markdown fences, leave raw control characters inside
strings, forget commas between properties and add trailing commas. The
parser tries progressively more invasive recovery stages and gives up with
None rather than raising:

  1. direct parse
  2. strip ```json fences, sanitize control characters and bad escapes
  3. + comma repair
  4. brace-counted extraction of the first object + sanitize + repair
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

logger = logging.getLogger(__name__)

_FENCE = re.compile(r"```(?:json)?", re.IGNORECASE)
_VALID_ESCAPES = set('nrt"\\/bfu')

# (pattern, replacement) pairs applied in order
_REPAIRS: list[tuple[re.Pattern, str]] = [
    (re.compile(r'"\s*\n(\s*)"'), r'",\n\1"'),  # "value"\n "key"
    (re.compile(r"}\s*\n(\s*){"), r"},\n\1{"),  # }\n {
    (re.compile(r']\s*\n(\s*)"'), r'],\n\1"'),  # ]\n "key"
    (re.compile(r",(\s*[}\]])"), r"\1"),  # trailing commas
]


def sanitize_json(text: str) -> str:
    """Drop markdown fences, blank out control characters, escape stray backslashes."""
    text = _FENCE.sub("", text).strip()

    out: list[str] = []
    i = 0
    while i < len(text):
        char = text[i]
        if char == "\\" and i + 1 < len(text):
            nxt = text[i + 1]
            if nxt in _VALID_ESCAPES:
                out.append(char + nxt)
                i += 2
                continue
            out.append("\\\\")
            i += 1
            continue
        if ord(char) < 32 and char not in "\t\n\r":
            out.append(" ")
        else:
            out.append(char)
        i += 1
    return "".join(out)


def repair_json(text: str) -> str:
    """Insert missing commas between members and drop trailing ones."""
    for pattern, replacement in _REPAIRS:
        text = pattern.sub(replacement, text)
    return text


def extract_json_object(text: str) -> str | None:
    """Return the first balanced ``{...}`` block, respecting strings and escapes."""
    start = text.find("{")
    if start == -1:
        return None

    depth = 0
    in_string = False
    escape_next = False
    for i in range(start, len(text)):
        char = text[i]
        if escape_next:
            escape_next = False
            continue
        if char == "\\":
            escape_next = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start : i + 1]
    return None


def _loads(text: str) -> Any:
    # strict=False tolerates raw newlines/tabs inside string values
    return json.loads(text, strict=False)


def parse_model_json(text: str | None) -> Any:
    """Parse model output into JSON, or None when every stage fails."""
    if not text or not text.strip():
        return None

    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    sanitized = sanitize_json(text)
    try:
        return _loads(sanitized)
    except json.JSONDecodeError:
        pass

    try:
        return _loads(repair_json(sanitized))
    except json.JSONDecodeError:
        pass

    extracted = extract_json_object(text)
    if extracted is not None:
        try:
            return _loads(repair_json(sanitize_json(extracted)))
        except json.JSONDecodeError as e:
            logger.warning("JSON recovery failed (%d chars): %s; head=%r", len(text), e, text[:200])
            return None

    logger.warning("No JSON object found in model output (%d chars): head=%r", len(text), text[:200])
    return None
