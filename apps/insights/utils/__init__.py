"""Shared utilities for the insight apply core."""

from utils.canonical_list import canonicalize
from utils.json_extraction import extract_json_from_response, extract_json_or_default
from utils.merge import merge, merge_fields, normalize_key
from utils.retry import calculate_backoff, retry_call

__all__ = [
    # Stored list decoding
    "canonicalize",
    # Case-insensitive merge
    "merge",
    "merge_fields",
    "normalize_key",
    # JSON extraction
    "extract_json_from_response",
    "extract_json_or_default",
    # Retry utilities
    "retry_call",
    "calculate_backoff",
]
