"""Canonical decoding of stored list-of-text fields.

The persistence layer and the AI extraction service both hand back "a list of
short text items" in several shapes. canonicalize() accepts all of them and
returns one ordered list of trimmed, non-empty strings:

- A list of strings (already canonical at the sequence level)
- A list of single characters (a serialized string that was split per char)
- A one-element list whose string is itself an encoded list
- A bracketed JSON-ish string, possibly escaped several times
- A plain comma-separated string
- A bare string
- None / empty

Decoding is total: it never raises and always terminates. Malformed input
degrades to the literal string or an empty list.
"""

import json
import re
from typing import Any

from utils.logging import get_logger

logger = get_logger(__name__)

# Upper bound on parse/unescape passes over a string value
MAX_UNWRAP_ATTEMPTS = 3

_LEADING_DOUBLE_QUOTES = re.compile(r'^"+|"+$')
_LEADING_SINGLE_QUOTES = re.compile(r"^'+|'+$")


def canonicalize(value: Any) -> list[str]:
    """Decode any stored representation of a text list into a CanonicalList.

    Items are preserved as literally extracted within one decode pass;
    case-insensitive dedup is the merger's job.

    Args:
        value: List, tuple, string, bytes, scalar or None

    Returns:
        Ordered list of trimmed, non-empty strings
    """
    if value is None:
        return []

    if isinstance(value, (list, tuple)):
        return _decode_sequence(value)

    if isinstance(value, (bytes, bytearray)):
        value = bytes(value).decode("utf-8", errors="replace")

    if isinstance(value, str):
        return _decode_string(value)

    if isinstance(value, dict):
        logger.debug(f"Ignoring mapping where a text list was expected: {value!r:.80}")
        return []

    # Numbers and booleans: a single literal item
    text = str(value).strip()
    return [text] if text else []


def is_char_exploded(items: list | tuple) -> bool:
    """True if every element is a one-character string (and there are 2+).

    This is the signature of a serialized string that was stored as a list
    of its characters.
    """
    return len(items) > 1 and all(isinstance(item, str) and len(item) == 1 for item in items)


def looks_encoded(text: str) -> bool:
    """True if a trimmed string looks like an encoded list.

    Matches `[...` as well as JSON-quoted forms such as `"[...` and
    `"\\"[...` produced by repeated serialization.
    """
    if text.startswith("["):
        return True
    return text.startswith('"') and text.lstrip('"\\').startswith("[")


def dequote(text: str) -> str:
    """Trim and strip runs of leading/trailing double, then single, quotes."""
    text = _LEADING_DOUBLE_QUOTES.sub("", text.strip())
    text = _LEADING_SINGLE_QUOTES.sub("", text)
    return text.strip()


def split_items(text: str) -> list[str]:
    """Split a comma-separated string, de-quoting each piece and dropping empties."""
    pieces = (dequote(piece) for piece in text.split(","))
    return [piece for piece in pieces if piece]


def _decode_sequence(items: list | tuple) -> list[str]:
    if is_char_exploded(items):
        joined = "".join(items)
        logger.debug(f"Repairing character-exploded list ({len(items)} chars)")
        return _decode_string(joined)

    if len(items) == 1 and isinstance(items[0], str) and looks_encoded(items[0].strip()):
        return _decode_string(items[0])

    return _reduce_items(items)


def _decode_string(text: str) -> list[str]:
    current = text.strip()

    for _ in range(MAX_UNWRAP_ATTEMPTS):
        if not looks_encoded(current):
            break
        try:
            parsed = json.loads(current)
        except (ValueError, RecursionError):
            unescaped = current.replace('\\"', '"').replace("\\\\", "\\")
            if unescaped == current:
                break
            current = unescaped
            continue

        if isinstance(parsed, list):
            return _reduce_items(parsed)
        if isinstance(parsed, str) and parsed.strip() != current:
            current = parsed.strip()
            continue
        break

    if current.startswith("[") and current.endswith("]"):
        return split_items(current[1:-1])

    if "," in current:
        return split_items(current)

    item = dequote(current)
    return [item] if item else []


def _reduce_items(items: list | tuple) -> list[str]:
    """Reduce decoded elements to text items, flattening nested lists."""
    result: list[str] = []
    for item in items:
        if item is None:
            continue
        if isinstance(item, str):
            text = item.strip()
        elif isinstance(item, (list, tuple)):
            result.extend(_reduce_items(item))
            continue
        elif isinstance(item, dict):
            logger.debug(f"Dropping mapping inside text list: {item!r:.80}")
            continue
        else:
            text = str(item).strip()
        if text:
            result.append(text)
    return result
