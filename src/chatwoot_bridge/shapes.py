"""Ordered extraction rules for the support desk's heterogeneous payloads.

Different Chatwoot deployments wrap the same resource under different keys
(``payload``, ``data.payload``, ``contact``, ``meta.payload`` ...). Each rule
below is a pure function from the raw decoded JSON to the unwrapped value or
``None``; rule tuples are evaluated in order and the first hit wins.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import Any

from .errors import UnrecognizedResponse

Rule = Callable[[Any], Any]


def _path(raw: Any, *keys: str) -> Any:
    current = raw
    for key in keys:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def _list_at(*keys: str) -> Rule:
    def rule(raw: Any) -> list[Any] | None:
        value = _path(raw, *keys) if keys else raw
        return value if isinstance(value, list) else None

    return rule


def _record_at(*keys: str) -> Rule:
    def rule(raw: Any) -> dict[str, Any] | None:
        value = _path(raw, *keys) if keys else raw
        if isinstance(value, dict) and value.get("id") is not None:
            return value
        return None

    return rule


def _scalar_at(*keys: str) -> Rule:
    def rule(raw: Any) -> Any:
        value = _path(raw, *keys)
        if value is None or value == "":
            return None
        return value

    return rule


CONVERSATION_LIST_RULES: tuple[Rule, ...] = (
    _list_at(),
    _list_at("data", "payload"),
    _list_at("payload"),
    _list_at("data"),
    _list_at("conversations"),
    _list_at("meta", "payload"),
)

CONTACT_LIST_RULES: tuple[Rule, ...] = (
    _list_at("payload"),
    _list_at("contacts"),
    _list_at("data"),
    _list_at("data", "payload"),
    _list_at(),
)

CONTACT_RULES: tuple[Rule, ...] = (
    _record_at("contact"),
    _record_at("payload", "contact"),
    _record_at("payload"),
    _record_at(),
)

CONVERSATION_RULES: tuple[Rule, ...] = (
    _record_at("conversation"),
    _record_at("payload", "conversation"),
    _record_at("payload"),
    _record_at(),
)

MESSAGE_RULES: tuple[Rule, ...] = (
    _record_at("message"),
    _record_at("payload", "message"),
    _record_at(),
)

INBOX_LIST_RULES: tuple[Rule, ...] = (
    _list_at("payload"),
    _list_at("data"),
    _list_at(),
)

# Where a conversation may carry the identity key it was created with.
SOURCE_TAG_RULES: tuple[Rule, ...] = (
    _scalar_at("source_id"),
    _scalar_at("contact_inbox", "source_id"),
    _scalar_at("additional_attributes", "source_id"),
    _scalar_at("meta", "sender", "additional_attributes", "source_id"),
)

# Where a conversation may reference its contact.
CONVERSATION_CONTACT_RULES: tuple[Rule, ...] = (
    _scalar_at("contact_id"),
    _scalar_at("contact", "id"),
    _scalar_at("meta", "sender", "id"),
)


def first_match(rules: Sequence[Rule], raw: Any) -> Any:
    """Return the value produced by the first matching rule, or None."""
    for rule in rules:
        value = rule(raw)
        if value is not None:
            return value
    return None


def extract(rules: Sequence[Rule], raw: Any, *, operation: str) -> Any:
    """Like :func:`first_match` but raise when no rule recognises the payload."""
    value = first_match(rules, raw)
    if value is None:
        raise UnrecognizedResponse(f"Unrecognized response shape for {operation}", operation=operation, payload=raw)
    return value


def source_tag_of(conversation: Any) -> str | None:
    value = first_match(SOURCE_TAG_RULES, conversation)
    return str(value) if value is not None else None


def contact_id_of(conversation: Any) -> int | None:
    value = first_match(CONVERSATION_CONTACT_RULES, conversation)
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None
