"""Case-insensitive, order-preserving merge of text lists.

merge() only prevents *new* duplicates: existing items are kept verbatim and
in order, incoming items are appended in their original relative order unless
an item with the same normalized key is already present. The first-seen
casing wins.
"""

from typing import Any, Iterable, Mapping

from utils.canonical_list import canonicalize


def normalize_key(item: str) -> str:
    """Comparison key for list items: trimmed and case-folded.

    Every case-insensitive comparison in the package goes through this
    function so a change (e.g. Unicode normalization) happens in one place.
    """
    return item.strip().casefold()


def merge(existing: Iterable[str], incoming: Iterable[str]) -> list[str]:
    """Merge incoming items into a copy of existing.

    Args:
        existing: Current CanonicalList (never modified)
        incoming: Candidate items

    Returns:
        New list: existing items, then newly admitted incoming items

    Example:
        >>> merge(["Coffee"], ["coffee", "Tea"])
        ['Coffee', 'Tea']
    """
    merged = list(existing)
    seen = {normalize_key(item) for item in merged}

    for item in incoming:
        trimmed = item.strip()
        if not trimmed:
            continue
        key = normalize_key(trimmed)
        if key in seen:
            continue
        seen.add(key)
        merged.append(trimmed)

    return merged


def merge_fields(
    existing: Mapping[str, Any],
    incoming: Mapping[str, Any],
    fields: Iterable[str],
) -> dict[str, list[str]]:
    """Merge several list fields of an entity at once.

    Both sides are canonicalized first, since either may come from storage
    that re-encodes arrays as strings.

    Args:
        existing: Current entity fields (raw stored values are fine)
        incoming: Suggested fields
        fields: Names of the list fields to merge

    Returns:
        Dict of field name -> merged CanonicalList
    """
    return {
        name: merge(canonicalize(existing.get(name)), canonicalize(incoming.get(name)))
        for name in fields
    }
