"""Best-effort recovery of structured JSON from backend text output."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any

_FENCED_JSON = re.compile(r"```(?:json)?\s*(.*?)\s*```", re.DOTALL | re.IGNORECASE)
_CLOSERS = {"{": "}", "[": "]"}
_MAX_REPAIR_CANDIDATES = 64


class OutputParseError(ValueError):
    """Raised when no parsing tier recovers a JSON payload."""


@dataclass(slots=True, frozen=True)
class StructuredParse:
    """Recovered payload and the tier that produced it."""

    payload: Any
    strategy: str


def parse_structured_output(text: str) -> StructuredParse:
    """Parse `text` as JSON: strict, fenced, extracted, then truncation repair."""

    stripped = text.strip()
    if not stripped:
        raise OutputParseError("Output is empty.")

    direct = _try_load(stripped)
    if direct is not _MISSING:
        return StructuredParse(payload=direct, strategy="strict")

    fenced = _FENCED_JSON.search(stripped)
    if fenced is not None:
        payload = _try_load(fenced.group(1))
        if payload is not _MISSING:
            return StructuredParse(payload=payload, strategy="fenced")
        stripped = fenced.group(1).strip() or stripped

    start = _first_opening_bracket(stripped)
    if start is None:
        raise OutputParseError("No JSON object or array found in output.")

    end = stripped.rfind(_CLOSERS[stripped[start]])
    if end > start:
        payload = _try_load(stripped[start : end + 1])
        if payload is not _MISSING:
            return StructuredParse(payload=payload, strategy="extracted")

    repaired = _repair_truncated(stripped[start:])
    if repaired is not _MISSING:
        return StructuredParse(payload=repaired, strategy="truncation_repair")

    raise OutputParseError("Output is not valid JSON and could not be repaired.")


def try_parse_structured_output(text: str) -> StructuredParse | None:
    """Like `parse_structured_output` but return None instead of raising."""

    try:
        return parse_structured_output(text)
    except OutputParseError:
        return None


class _Missing:
    pass


_MISSING: Any = _Missing()


def _try_load(raw: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return _MISSING


def _first_opening_bracket(text: str) -> int | None:
    positions = [index for index in (text.find("{"), text.find("[")) if index != -1]
    if not positions:
        return None
    return min(positions)


def _repair_truncated(text: str) -> Any:  # noqa: C901
    """Close a JSON document cut off mid-stream, dropping the incomplete tail."""

    stack: list[str] = []
    in_string = False
    escaped = False
    cut_points: list[tuple[int, str]] = []

    for index, char in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in _CLOSERS:
            stack.append(_CLOSERS[char])
        elif char in "}]":
            if not stack or stack[-1] != char:
                break
            stack.pop()
            if not stack:
                return _try_load(text[: index + 1])
            cut_points.append((index + 1, "".join(reversed(stack))))
        elif char == "," and stack:
            cut_points.append((index, "".join(reversed(stack))))

    candidates: list[str] = []
    closing = "".join(reversed(stack))
    if in_string:
        tail = text[:-1] if escaped else text
        candidates.append(f'{tail}"{closing}')
    else:
        candidates.append(text.rstrip().rstrip(",") + closing)
    for cut, closers in reversed(cut_points[-_MAX_REPAIR_CANDIDATES:]):
        candidates.append(text[:cut].rstrip().rstrip(",") + closers)

    for candidate in candidates:
        payload = _try_load(candidate)
        if payload is not _MISSING:
            return payload
    return _MISSING
