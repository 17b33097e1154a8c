"""
Completion decoder - Normalize raw engine output into typed results

Responsibilities:
- Return plain-text completions unmodified
- Extract JSON from ```json fenced blocks, or parse the whole output as JSON
- Raise ResponseParseError when structured output is not valid JSON

No schema is enforced; structured results only need to be syntactically
valid JSON.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Optional, Union

import orjson

from errors import ResponseParseError
from models.request_queue import RequestMode

logger = logging.getLogger(__name__)

# Non-greedy so the first closing fence ends the block; DOTALL spans newlines
_JSON_FENCE = re.compile(r"```json(.*?)```", re.DOTALL)


@dataclass(frozen=True)
class StructuredResult:
    """Parsed JSON value from a structured-mode completion"""

    value: Any
    kind: str = "structured"


@dataclass(frozen=True)
class TextResult:
    """Unmodified text from a text-mode completion"""

    value: str
    kind: str = "text"


CompletionResult = Union[StructuredResult, TextResult]


def extract_fenced_json(raw: str) -> Optional[str]:
    """
    Return the trimmed body of the first ```json fenced block

    Returns:
        The block contents, or None when there is no block or it is blank
    """
    match = _JSON_FENCE.search(raw)
    if match is None:
        return None
    body = match.group(1).strip()
    return body or None


def _find_json_candidate(raw: str, model_id: str) -> str:
    """Locate the JSON text to parse: fenced block first, then the whole output."""
    candidate = extract_fenced_json(raw)
    if candidate is not None:
        return candidate

    try:
        return orjson.dumps(orjson.loads(raw)).decode("utf-8")
    except orjson.JSONDecodeError as exc:
        raise ResponseParseError(model_id, "JSON string not found", raw_output=raw) from exc


def decode_structured(raw: str, model_id: str = "n/a") -> StructuredResult:
    """
    Decode a structured-mode completion

    Args:
        raw: Raw engine output
        model_id: Model identifier for error reporting

    Returns:
        StructuredResult holding the parsed JSON value

    Raises:
        ResponseParseError: If no JSON can be extracted or it fails to parse
    """
    if not isinstance(raw, str):
        raise ResponseParseError(
            model_id, f"Engine returned {type(raw).__name__}, expected str"
        )

    candidate = _find_json_candidate(raw, model_id)

    try:
        parsed = orjson.loads(candidate)
    except orjson.JSONDecodeError as exc:
        raise ResponseParseError(model_id, f"Invalid JSON: {exc}", raw_output=raw) from exc

    if isinstance(parsed, dict) and "content" in parsed:
        logger.debug(f"AI: {parsed['content']}")
    return StructuredResult(value=parsed)


def decode_text(raw: str) -> TextResult:
    """Wrap a text-mode completion without modifying it."""
    logger.debug(f"AI: {raw}")
    return TextResult(value=raw)


def decode_completion(raw: str, mode: RequestMode, model_id: str = "n/a") -> CompletionResult:
    """
    Decode raw engine output according to the request mode

    Args:
        raw: Raw text produced by one engine completion call
        mode: RequestMode of the originating request
        model_id: Model identifier for error reporting

    Returns:
        StructuredResult for RequestMode.STRUCTURED, TextResult for RequestMode.TEXT

    Raises:
        ResponseParseError: Structured decoding failed
    """
    if mode is RequestMode.STRUCTURED:
        return decode_structured(raw, model_id)
    return decode_text(raw)


__all__ = [
    "StructuredResult",
    "TextResult",
    "CompletionResult",
    "extract_fenced_json",
    "decode_structured",
    "decode_text",
    "decode_completion",
]
