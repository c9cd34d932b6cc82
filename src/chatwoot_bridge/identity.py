"""Identity keys correlating a chat sender with its support-desk records."""

from __future__ import annotations

SOURCE_KIND = "telegram"
_SEPARATOR = "_"


def identity_key(sender_id: int | str, *, source_kind: str = SOURCE_KIND) -> str:
    """Return ``<source_kind>_<sender_id>`` for a chat sender."""
    sender = str(sender_id).strip()
    if not sender:
        raise ValueError("sender_id must be non-empty")
    return f"{source_kind}{_SEPARATOR}{sender}"


def sender_from_identity_key(key: str | None, *, source_kind: str = SOURCE_KIND) -> str | None:
    """Strip the source prefix, or return None when the key did not originate here."""
    if not key:
        return None
    prefix = f"{source_kind}{_SEPARATOR}"
    if not key.startswith(prefix):
        return None
    sender = key[len(prefix):]
    return sender or None
