"""
NIP-28 public chat channels (kinds 40, 41, 42).

A channel is identified by the id of its kind-40 creation event. Metadata
updates (41) and channel messages (42) reference it through their first
``e`` tag.
"""

from __future__ import annotations

from nostrsync.models.event import Event


_HEX_DIGITS = frozenset("0123456789abcdef")
_ID_LEN = 64


def referenced_channel_id(event: Event) -> str | None:
    """Return the channel id of a kind-41/42 event, or ``None`` when absent or invalid."""
    value = event.first_tag_value("e")
    if value is None:
        return None
    value = value.lower()
    if len(value) != _ID_LEN or not set(value) <= _HEX_DIGITS:
        return None
    return value
