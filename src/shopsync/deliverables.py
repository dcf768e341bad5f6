"""Normalise the many payload shapes the catalog uses for deliverable lists.

The remote service answers a "list the deliverables of this variant" request
with whatever shape the endpoint happens to produce: a newline separated
string, an object wrapping such a string, an array of tokens or of
``{"value": ...}`` objects, and so on. :func:`parse_deliverables` tries an
ordered tuple of pure matchers and returns the result of the first one that
recognises the payload. The order is part of the compatibility contract with
the remote service and is covered by tests.

Every matcher drops empty and whitespace-only entries, which makes the parser
stable under re-joining: ``parse_deliverables(join_deliverables(items))``
returns ``items`` for any list the parser produced.
"""

from __future__ import annotations

from typing import Any, Callable, Iterable, List, Mapping, Optional, Sequence, Tuple


Matcher = Callable[[Any], Optional[List[str]]]


def _split_lines(text: str) -> List[str]:
    return [line for line in text.split("\n") if line.strip()]


def _stringify(item: Any) -> str:
    if isinstance(item, str):
        return item.strip()
    if isinstance(item, Mapping) and item.get("value"):
        return str(item["value"]).strip()
    return str(item).strip()


def _from_values(values: Iterable[Any]) -> List[str]:
    items: List[str] = []
    for value in values:
        if value is None:
            continue
        # A stringified value may itself span several lines.
        items.extend(_split_lines(_stringify(value)))
    return items


def _string_field(field: str) -> Matcher:
    def matcher(raw: Any) -> Optional[List[str]]:
        if isinstance(raw, Mapping):
            value = raw.get(field)
            if isinstance(value, str) and value:
                return _split_lines(value)
        return None

    matcher.__name__ = f"match_{field}_string"
    return matcher


def match_plain_string(raw: Any) -> Optional[List[str]]:
    """Newline separated text."""
    if isinstance(raw, str):
        return _split_lines(raw)
    return None


def match_array(raw: Any) -> Optional[List[str]]:
    """A bare array of tokens or ``{"value": token}`` objects."""
    if isinstance(raw, Sequence) and not isinstance(raw, (str, bytes)):
        return _from_values(raw)
    return None


def match_items_array(raw: Any) -> Optional[List[str]]:
    """An object whose ``items`` key holds an array."""
    if isinstance(raw, Mapping):
        items = raw.get("items")
        if isinstance(items, Sequence) and not isinstance(items, (str, bytes)):
            return _from_values(items)
    return None


def match_generic_object(raw: Any) -> Optional[List[str]]:
    """Last resort: every value of an object is one token."""
    if isinstance(raw, Mapping):
        return _from_values(raw.values())
    return None


DELIVERABLE_MATCHERS: Tuple[Matcher, ...] = (
    match_plain_string,
    _string_field("deliverables"),
    _string_field("content"),
    _string_field("data"),
    match_array,
    match_items_array,
    match_generic_object,
)


def parse_deliverables(raw: Any) -> List[str]:
    """Convert a remote deliverables payload into an ordered list of tokens.

    Args:
        raw (Any): Decoded response body. ``None`` is accepted and yields an
            empty list.

    Returns:
        list[str]: Tokens in remote order, without blank entries. Unknown
            scalar payloads (numbers, booleans) yield an empty list.
    """

    if raw is None:
        return []
    for matcher in DELIVERABLE_MATCHERS:
        items = matcher(raw)
        if items is not None:
            return items
    return []


def join_deliverables(items: Iterable[str]) -> str:
    """Render tokens in the newline separated form accepted by overwrite calls."""

    return "\n".join(items)


__all__ = [
    "DELIVERABLE_MATCHERS",
    "join_deliverables",
    "match_array",
    "match_generic_object",
    "match_items_array",
    "match_plain_string",
    "parse_deliverables",
]
