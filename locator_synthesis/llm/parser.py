from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Union


@dataclass(frozen=True, slots=True)
class Parsed:
    items: list[Any]


@dataclass(frozen=True, slots=True)
class Malformed:
    raw_text: str
    reason: str


@dataclass(frozen=True, slots=True)
class Empty:
    pass


ParseResult = Union[Parsed, Malformed, Empty]


def parse_generation_output(raw: Any) -> ParseResult:
    """Normalizes a model answer into a list of items, wrapping a bare object."""

    if raw is None:
        return Empty()
    if isinstance(raw, list):
        return Parsed(list(raw))
    if isinstance(raw, dict):
        return Parsed([raw])
    if not isinstance(raw, str):
        return Malformed(repr(raw), f"Unexpected output type: {type(raw).__name__}")

    text = _strip_code_fence(raw.strip())
    if not text:
        return Empty()
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        return Malformed(raw, f"Output is not valid JSON: {exc}")
    if isinstance(payload, list):
        return Parsed(payload)
    if isinstance(payload, dict):
        return Parsed([payload])
    return Malformed(raw, f"Output decoded to {type(payload).__name__}, expected an array or object")


def dict_items(result: ParseResult) -> list[dict[str, Any]]:
    if isinstance(result, Parsed):
        return [item for item in result.items if isinstance(item, dict)]
    return []


def _strip_code_fence(text: str) -> str:
    if not text.startswith("```") or not text.endswith("```"):
        return text
    body = text[3:-3]
    first_newline = body.find("\n")
    if first_newline != -1 and body[:first_newline].strip().isalpha():
        body = body[first_newline + 1 :]
    return body.strip()
