"""Robust JSON extraction from LLM responses.

Handles various LLM output formats including:
- Pure JSON
- Markdown code blocks (```json...``` or ```...```)
- JSON embedded in text
- Dict-to-list conversion when a list was expected
"""

import json
import re
from typing import Any

from utils.logging import get_logger

logger = get_logger(__name__)

_JSON_BLOCK = re.compile(r"```json\s*\n?(.*?)\n?```", re.DOTALL | re.IGNORECASE)
_GENERIC_BLOCK = re.compile(r"```\s*\n?(.*?)\n?```", re.DOTALL)
_EMBEDDED_ARRAY = re.compile(r"\[[^\]]*(?:\{[^\}]*\}[^\]]*)*\]", re.DOTALL)
_EMBEDDED_OBJECT = re.compile(r"\{[^{}]*(?:\{[^{}]*\}[^{}]*)*\}", re.DOTALL)


def _try_parse(text: str) -> Any | None:
    try:
        return json.loads(text)
    except (json.JSONDecodeError, RecursionError):
        return None


def _first_balanced_object(text: str) -> str | None:
    """Slice from the first '{' to its matching '}', honoring string literals."""
    start = text.find("{")
    if start == -1:
        return None
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
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
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start : index + 1]
    return None


def extract_json_from_response(
    response: str | None, context: str = "extraction", expect_list: bool = False
) -> Any | None:
    """Extract JSON from an LLM response using multiple strategies.

    Tries the following strategies in order:
    1. Parse as pure JSON
    2. Extract from ```json code blocks
    3. Extract from ``` code blocks (untyped)
    4. Balanced-brace scan for an embedded object (handles deep nesting)
    5. Regex fallback for embedded JSON arrays, then objects
    6. Dict-to-list conversion if expect_list=True and result is a dict

    Args:
        response: The raw LLM response text
        context: Context identifier for logging (e.g., "journal_insights")
        expect_list: If True, convert single dict to list [dict]

    Returns:
        Parsed JSON data (dict or list), or None if parsing fails
    """
    if not response:
        return None

    text = response.strip()
    result = _try_parse(text)

    if result is None:
        match = _JSON_BLOCK.search(text)
        if match:
            result = _try_parse(match.group(1).strip())
            if result is None:
                logger.debug(f"Failed to parse ```json block for {context}")

    if result is None:
        match = _GENERIC_BLOCK.search(text)
        if match:
            result = _try_parse(match.group(1).strip())

    if result is None:
        candidate = _first_balanced_object(text)
        if candidate:
            result = _try_parse(candidate)

    if result is None:
        for pattern in (_EMBEDDED_ARRAY, _EMBEDDED_OBJECT):
            match = pattern.search(text)
            if match:
                result = _try_parse(match.group(0))
                if result is not None:
                    break

    if result is None:
        logger.warning(
            f"Failed to extract JSON from response for {context}. "
            f"Response length: {len(text)}, "
            f"First 200 chars: {text[:200]!r}"
        )
        return None

    if expect_list and isinstance(result, dict):
        logger.info(f"Converting single dict to list for context: {context}")
        result = [result]
    elif expect_list and not isinstance(result, list):
        logger.warning(f"Expected list for context {context}, but got {type(result).__name__}")

    return result


def extract_json_or_default(response: str | None, default: Any, context: str = "extraction") -> Any:
    """Extract JSON from response, returning default on failure."""
    result = extract_json_from_response(response, context=context)
    if result is None:
        return default
    return result
