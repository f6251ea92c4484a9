"""Subscription filters of the backend.

One builder per [SubscriptionType][nostrsync.models.constants.SubscriptionType].
Incremental queries start at
[since_with_skew()][nostrsync.services.backend.filters.since_with_skew]
of the newest stored timestamp of their category, so an event whose author's
clock ran slightly behind is still fetched.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from nostr_sdk import EventId, Filter, Kind, PublicKey, Timestamp

from nostrsync.models.constants import EventKind


if TYPE_CHECKING:
    from collections.abc import Iterable


def since_with_skew(last_stored: int | None, skew_margin: int) -> int:
    """Return ``max(0, last_stored - skew_margin)``; ``0`` when nothing is stored."""
    if last_stored is None:
        return 0
    return max(0, last_stored - skew_margin)


def _kind(kind: EventKind) -> Kind:
    return Kind(int(kind))


def contact_list_filters(own_pubkey: str, since: int) -> list[Filter]:
    return [
        Filter()
        .author(PublicKey.parse(own_pubkey))
        .kind(_kind(EventKind.CONTACT_LIST))
        .since(Timestamp.from_secs(since))
    ]


def contact_metadata_filters(pubkeys: Iterable[str]) -> list[Filter]:
    """Profile metadata of *pubkeys*; empty when there are none."""
    authors = [PublicKey.parse(pk) for pk in pubkeys]
    if not authors:
        return []
    return [Filter().authors(authors).kind(_kind(EventKind.METADATA))]


def user_metadata_filters(own_pubkey: str, since: int) -> list[Filter]:
    return [
        Filter()
        .author(PublicKey.parse(own_pubkey))
        .kind(_kind(EventKind.METADATA))
        .since(Timestamp.from_secs(since))
    ]


def message_filters(own_pubkey: str, since: int) -> list[Filter]:
    """DMs sent by the user and DMs addressed to the user."""
    own = PublicKey.parse(own_pubkey)
    dm = _kind(EventKind.ENCRYPTED_DIRECT_MESSAGE)
    start = Timestamp.from_secs(since)
    return [
        Filter().author(own).kind(dm).since(start),
        Filter().pubkey(own).kind(dm).since(start),
    ]


def channel_search_filters(limit: int, channel_id: str | None = None) -> list[Filter]:
    """Channel creations, optionally a single channel by id."""
    f = Filter().kind(_kind(EventKind.CHANNEL_CREATION)).limit(limit)
    if channel_id is not None:
        f = f.id(EventId.parse(channel_id))
    return [f]


def channel_details_filters(
    channel_id: str, metadata_limit: int, message_limit: int
) -> list[Filter]:
    """Metadata updates and messages of one channel."""
    channel = EventId.parse(channel_id)
    return [
        Filter().kind(_kind(EventKind.CHANNEL_METADATA)).event(channel).limit(metadata_limit),
        Filter().kind(_kind(EventKind.CHANNEL_MESSAGE)).event(channel).limit(message_limit),
    ]
