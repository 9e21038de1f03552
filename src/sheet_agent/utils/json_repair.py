"""Lenient JSON parsing for planner output.

The parser tries a fixed, ordered set of repairs and stops at the first
one that yields valid JSON. Each applied repair is logged and reported back,
so a repaired parse never passes for a clean one.
"""

import json
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*(.*?)```", re.DOTALL)
_LABEL_RE = re.compile(r"^\s*(?:json|output|response|result|answer)\s*:\s*", re.IGNORECASE)
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")
_SMART_QUOTES = str.maketrans({"“": '"', "”": '"', "‘": "'", "’": "'"})


class JsonRepairError(ValueError):
    """No bounded repair produced valid JSON."""


@dataclass
class ParseResult:
    value: Any
    repairs: list[str] = field(default_factory=list)

    @property
    def repaired(self) -> bool:
        return bool(self.repairs)


def strip_code_fences(text: str) -> str:
    match = _FENCE_RE.search(text)
    if match:
        return match.group(1).strip()
    # An unterminated fence from a truncated response
    if text.lstrip().startswith("```"):
        return re.sub(r"^\s*```(?:json|JSON)?", "", text).strip()
    return text


def extract_balanced(text: str) -> str:
    """Return the first balanced {...} or [...] segment, or the open tail."""
    start = next((i for i, ch in enumerate(text) if ch in "{["), None)
    if start is None:
        return text
    stack: list[str] = []
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        ch = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in "{[":
            stack.append("}" if ch == "{" else "]")
        elif ch in "}]":
            if stack and stack[-1] == ch:
                stack.pop()
            if not stack:
                return text[start : index + 1]
    return text[start:]


def tidy(text: str) -> str:
    text = _LABEL_RE.sub("", text.translate(_SMART_QUOTES))
    return _TRAILING_COMMA_RE.sub(r"\1", text)


def single_to_double_quotes(text: str) -> str:
    if '"' in text:
        return text
    return text.replace("'", '"')


def close_truncated(text: str) -> str:
    """Close an unterminated string and any open brackets."""
    stack: list[str] = []
    in_string = False
    escaped = False
    for ch in text:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in "{[":
            stack.append("}" if ch == "{" else "]")
        elif ch in "}]" and stack:
            stack.pop()
    closed = text + ('"' if in_string else "")
    closed = re.sub(r"[,:]\s*$", "", closed.rstrip())
    return _TRAILING_COMMA_RE.sub(r"\1", closed + "".join(reversed(stack)))


_REPAIRS: tuple[tuple[str, Callable[[str], str]], ...] = (
    ("strip code fences", strip_code_fences),
    ("extract first JSON segment", extract_balanced),
    ("tidy labels and trailing commas", tidy),
    ("single to double quotes", single_to_double_quotes),
)


def _try_load(text: str) -> tuple[bool, Any]:
    try:
        return True, json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return False, None


def lenient_parse(text: str, truncated: bool = False) -> ParseResult:
    """Parse JSON, applying bounded repairs in order until one succeeds.

    Args:
        text: Raw model output
        truncated: The response was cut off, so open brackets may be closed

    Returns:
        Parsed value with the list of repairs applied

    Raises:
        JsonRepairError: If no repair yields valid JSON
    """
    ok, value = _try_load(text)
    if ok:
        return ParseResult(value)

    current = text
    applied: list[str] = []
    for name, repair in _REPAIRS:
        candidate = repair(current)
        if candidate == current:
            continue
        current = candidate
        applied.append(name)
        ok, value = _try_load(current)
        if ok:
            logger.warning(f"Planner JSON repaired: {', '.join(applied)}")
            return ParseResult(value, applied)

    if truncated or not _balanced(current):
        candidate = close_truncated(current)
        ok, value = _try_load(candidate)
        if ok:
            applied.append("close truncated brackets")
            logger.warning(f"Planner JSON repaired: {', '.join(applied)}")
            return ParseResult(value, applied)

    raise JsonRepairError(f"Could not parse planner output as JSON: {text[:200]!r}")


def _balanced(text: str) -> bool:
    return text.count("{") == text.count("}") and text.count("[") == text.count("]")
