"""
Pytest configuration and shared fixtures for nostrsync tests.

Provides:
- Key pairs and codecs for the local user and a peer
- A signed-event factory
- ``FakeCache``: an in-memory stand-in for ``LocalCacheStore`` whose
  transactions roll back on error, for unit tests of the backend components
"""

from __future__ import annotations

import copy
import logging
from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import asynccontextmanager
from dataclasses import replace
from typing import Any

import pytest
from nostr_sdk import Keys

from nostrsync.core.exceptions import DatabaseError
from nostrsync.models import (
    ChannelCache,
    ChannelSubscription,
    ContactStatus,
    DbContact,
    DbMessage,
    Event,
    ImageKind,
    MessageConfirmation,
    MessageStatus,
    ProfileCache,
    RelayEntry,
    RelayResponse,
    StoredEvent,
)
from nostrsync.nips.codec import EventCodec


# Valid secp256k1 test keys (DO NOT USE IN PRODUCTION)
USER_HEX_KEY = (
    "67dea2ed018072d675f5415ecfaed7d2597555e202d85b3d65ea4e58d2d92ffa"  # pragma: allowlist secret
)
PEER_HEX_KEY = (
    "1b1c5a36b4e3e0bb0d5bd4bdb1a2d8b0d6f4c2f7d9c1a5b3e8f0a2c4d6e8f0a2"  # pragma: allowlist secret
)


# ============================================================================
# Logging Configuration
# ============================================================================


@pytest.fixture(scope="session", autouse=True)
def setup_logging() -> None:
    """Configure logging for tests."""
    logging.basicConfig(level=logging.DEBUG)


# ============================================================================
# Keys and Events
# ============================================================================


@pytest.fixture
def user_keys() -> Keys:
    return Keys.parse(USER_HEX_KEY)


@pytest.fixture
def peer_keys() -> Keys:
    return Keys.parse(PEER_HEX_KEY)


@pytest.fixture
def codec(user_keys: Keys) -> EventCodec:
    """Codec of the local user."""
    return EventCodec(user_keys)


@pytest.fixture
def peer_codec(peer_keys: Keys) -> EventCodec:
    """Codec of a second key, used to author incoming events."""
    return EventCodec(peer_keys)


@pytest.fixture
def user_pubkey(codec: EventCodec) -> str:
    return codec.public_key


@pytest.fixture
def peer_pubkey(peer_codec: EventCodec) -> str:
    return peer_codec.public_key


@pytest.fixture
def sign() -> Callable[..., Event]:
    """Factory signing an event with the given codec.

    ``sign(codec, kind, content="", tags=(), created_at=1700000000)``
    """

    def _sign(
        signer: EventCodec,
        kind: int,
        content: str = "",
        tags: Sequence[Sequence[str]] = (),
        created_at: int = 1700000000,
    ) -> Event:
        return signer.sign(kind, content, tags, created_at)

    return _sign


# ============================================================================
# In-memory cache
# ============================================================================


class FakeSession:
    """Mirror of ``CacheSession`` over ``FakeCache`` dictionaries."""

    def __init__(self, cache: FakeCache) -> None:
        self._c = cache

    def _check(self, name: str) -> None:
        self._c.calls.append(name)
        if name in self._c.fail_on:
            raise DatabaseError(f"{name} failed")

    # Events

    async def insert_event(
        self, event: Event, relay_url: str | None = None, confirmed_at: int | None = None
    ) -> bool:
        self._check("insert_event")
        if event.id in self._c.events:
            return False
        self._c.events[event.id] = StoredEvent(
            event=event, relay_url=relay_url, confirmed_at=confirmed_at
        )
        return True

    async def fetch_event(self, event_id: str) -> StoredEvent | None:
        self._check("fetch_event")
        return self._c.events.get(event_id)

    async def confirm_event(self, event_id: str, relay_url: str, confirmed_at: int) -> bool:
        self._check("confirm_event")
        stored = self._c.events.get(event_id)
        if stored is None or stored.confirmed_at is not None:
            return False
        self._c.events[event_id] = replace(stored, relay_url=relay_url, confirmed_at=confirmed_at)
        return True

    async def fetch_unconfirmed_events(self, author: str) -> list[Event]:
        self._check("fetch_unconfirmed_events")
        rows = [
            s.event
            for s in self._c.events.values()
            if s.event.pubkey == author and s.confirmed_at is None
        ]
        return sorted(rows, key=lambda e: (e.created_at, e.id))

    async def latest_event_timestamp(
        self, kind: int, author: str | None = None, exclude_id: str | None = None
    ) -> int | None:
        self._check("latest_event_timestamp")
        stamps = [
            s.event.created_at
            for s in self._c.events.values()
            if s.event.kind == kind
            and (author is None or s.event.pubkey == author)
            and s.event.id != exclude_id
        ]
        return max(stamps) if stamps else None

    async def delete_events_of_kind(self, kind: int, author: str, before: int) -> int:
        self._check("delete_events_of_kind")
        doomed = [
            i
            for i, s in self._c.events.items()
            if s.event.kind == kind and s.event.pubkey == author and s.event.created_at < before
        ]
        for event_id in doomed:
            del self._c.events[event_id]
        return len(doomed)

    async def fetch_channel_messages(self, channel_id: str, limit: int) -> list[Event]:
        self._check("fetch_channel_messages")
        rows = [
            s.event
            for s in self._c.events.values()
            if s.event.kind == 42 and channel_id in s.event.tag_values("e")
        ]
        recent = sorted(rows, key=lambda e: e.created_at, reverse=True)[:limit]
        return sorted(recent, key=lambda e: (e.created_at, e.id))

    # Relay responses

    async def insert_relay_response(self, response: RelayResponse) -> bool:
        self._check("insert_relay_response")
        key = (response.event_id, response.relay_url)
        if key in self._c.responses:
            return False
        self._c.responses[key] = response
        return True

    async def fetch_relay_responses(self, event_id: str) -> list[RelayResponse]:
        self._check("fetch_relay_responses")
        rows = [r for (eid, _), r in self._c.responses.items() if eid == event_id]
        return sorted(rows, key=lambda r: (r.created_at, r.relay_url))

    # Relays

    async def fetch_relays(self) -> list[RelayEntry]:
        self._check("fetch_relays")
        return [self._c.relays[url] for url in sorted(self._c.relays)]

    async def upsert_relay(self, entry: RelayEntry) -> None:
        self._check("upsert_relay")
        self._c.relays[entry.url] = RelayEntry(url=entry.url, read=entry.read, write=entry.write)

    async def delete_relay(self, url: str) -> bool:
        self._check("delete_relay")
        return self._c.relays.pop(url, None) is not None

    async def set_relay_read(self, url: str, read: bool) -> bool:  # noqa: FBT001
        self._check("set_relay_read")
        entry = self._c.relays.get(url)
        if entry is None:
            return False
        self._c.relays[url] = replace(entry, read=read)
        return True

    async def set_relay_write(self, url: str, write: bool) -> bool:  # noqa: FBT001
        self._check("set_relay_write")
        entry = self._c.relays.get(url)
        if entry is None:
            return False
        self._c.relays[url] = replace(entry, write=write)
        return True

    # Contacts

    async def fetch_contacts(self, status: ContactStatus | None = None) -> list[DbContact]:
        self._check("fetch_contacts")
        return [
            self._c.contacts[pk]
            for pk in sorted(self._c.contacts)
            if status is None or self._c.contacts[pk].status == status
        ]

    async def fetch_contact(self, pubkey: str) -> DbContact | None:
        self._check("fetch_contact")
        return self._c.contacts.get(pubkey)

    async def upsert_contact(self, contact: DbContact) -> None:
        self._check("upsert_contact")
        self._c.contacts[contact.pubkey] = contact

    async def insert_contact_if_missing(self, contact: DbContact) -> bool:
        self._check("insert_contact_if_missing")
        if contact.pubkey in self._c.contacts:
            return False
        self._c.contacts[contact.pubkey] = contact
        return True

    async def delete_contact(self, pubkey: str) -> bool:
        self._check("delete_contact")
        return self._c.contacts.pop(pubkey, None) is not None

    async def update_contact_last_message(
        self, pubkey: str, msg_id: int, created_at: int, *, increment_unseen: bool
    ) -> None:
        self._check("update_contact_last_message")
        contact = self._c.contacts.get(pubkey)
        if contact is None:
            return
        moved = contact.last_message_at is None or contact.last_message_at <= created_at
        self._c.contacts[pubkey] = replace(
            contact,
            unseen_count=contact.unseen_count + (1 if increment_unseen else 0),
            last_message_id=msg_id if moved else contact.last_message_id,
            last_message_at=created_at if moved else contact.last_message_at,
        )

    async def reset_unseen(self, pubkey: str) -> None:
        self._check("reset_unseen")
        contact = self._c.contacts.get(pubkey)
        if contact is not None:
            self._c.contacts[pubkey] = replace(contact, unseen_count=0)

    async def set_contact_image(self, pubkey: str, path: str | None) -> bool:
        self._check("set_contact_image")
        contact = self._c.contacts.get(pubkey)
        if contact is None:
            return False
        self._c.contacts[pubkey] = replace(contact, profile_image_ref=path)
        return True

    # Messages

    async def insert_message(self, message: DbMessage) -> int | None:
        self._check("insert_message")
        if any(m.event_id == message.event_id for m in self._c.messages.values()):
            return None
        msg_id = self._c.next_msg_id
        self._c.next_msg_id += 1
        self._c.messages[msg_id] = replace(message, msg_id=msg_id)
        return msg_id

    async def fetch_message_by_event(self, event_id: str) -> DbMessage | None:
        self._check("fetch_message_by_event")
        return next((m for m in self._c.messages.values() if m.event_id == event_id), None)

    async def confirm_message(self, event_id: str, relay_url: str, confirmed_at: int) -> bool:
        self._check("confirm_message")
        for msg_id, message in self._c.messages.items():
            if message.event_id == event_id and message.confirmation is None:
                self._c.messages[msg_id] = message.confirm(
                    MessageConfirmation(
                        confirmed_at=confirmed_at, relay_url=relay_url, event_id=event_id
                    )
                )
                return True
        return False

    async def fetch_chat(self, counterparty: str) -> list[DbMessage]:
        self._check("fetch_chat")
        rows = [m for m in self._c.messages.values() if m.counterparty == counterparty]
        return sorted(rows, key=lambda m: (m.created_at, m.msg_id))

    async def fetch_all_messages(self) -> list[DbMessage]:
        self._check("fetch_all_messages")
        return sorted(
            self._c.messages.values(), key=lambda m: (m.counterparty, m.created_at, m.msg_id)
        )

    async def mark_chat_seen(self, counterparty: str) -> int:
        self._check("mark_chat_seen")
        count = 0
        for msg_id, message in self._c.messages.items():
            if message.counterparty == counterparty and message.is_unseen:
                self._c.messages[msg_id] = message.advance(MessageStatus.SEEN)
                count += 1
        return count

    # Profiles

    async def fetch_profile(self, pubkey: str) -> ProfileCache | None:
        self._check("fetch_profile")
        return self._c.profiles.get(pubkey)

    async def fetch_profiles(self, pubkeys: list[str]) -> list[ProfileCache]:
        self._check("fetch_profiles")
        return [self._c.profiles[pk] for pk in pubkeys if pk in self._c.profiles]

    async def upsert_profile(self, profile: ProfileCache) -> bool:
        self._check("upsert_profile")
        existing = self._c.profiles.get(profile.pubkey)
        if existing is not None:
            if existing.updated_at >= profile.updated_at:
                return False
            profile = replace(
                profile,
                profile_image_path=existing.profile_image_path,
                banner_image_path=existing.banner_image_path,
            )
        self._c.profiles[profile.pubkey] = profile
        return True

    async def set_profile_image(self, pubkey: str, kind: ImageKind, path: str | None) -> bool:
        self._check("set_profile_image")
        if kind not in (ImageKind.PROFILE, ImageKind.BANNER):
            raise ValueError(f"profiles have no {kind} image")
        profile = self._c.profiles.get(pubkey)
        if profile is None:
            return False
        self._c.profiles[pubkey] = profile.with_image(kind, path)
        return True

    # Channels

    async def fetch_channel(self, channel_id: str) -> ChannelCache | None:
        self._check("fetch_channel")
        return self._c.channels.get(channel_id)

    async def upsert_channel(self, channel: ChannelCache) -> bool:
        self._check("upsert_channel")
        existing = self._c.channels.get(channel.channel_id)
        if existing is not None:
            if existing.updated_at > channel.updated_at:
                return False
            channel = replace(channel, image_path=existing.image_path)
        self._c.channels[channel.channel_id] = channel
        return True

    async def delete_channel(self, channel_id: str) -> bool:
        self._check("delete_channel")
        return self._c.channels.pop(channel_id, None) is not None

    async def set_channel_image(self, channel_id: str, path: str | None) -> bool:
        self._check("set_channel_image")
        channel = self._c.channels.get(channel_id)
        if channel is None:
            return False
        self._c.channels[channel_id] = channel.with_image(path)
        return True

    # Channel subscriptions

    async def subscribe_channel(self, channel_id: str, subscribed_at: int) -> ChannelSubscription:
        self._check("subscribe_channel")
        return self._c.subscriptions.setdefault(
            channel_id, ChannelSubscription(channel_id, subscribed_at)
        )

    async def unsubscribe_channel(self, channel_id: str) -> bool:
        self._check("unsubscribe_channel")
        return self._c.subscriptions.pop(channel_id, None) is not None

    async def fetch_subscribed_channels(self) -> list[ChannelSubscription]:
        self._check("fetch_subscribed_channels")
        rows = self._c.subscriptions.values()
        return sorted(rows, key=lambda s: (s.subscribed_at, s.channel_id))

    # User configuration

    async def fetch_clock_offset(self) -> int:
        self._check("fetch_clock_offset")
        return self._c.clock_offset_us

    async def store_clock_offset(self, offset_us: int) -> None:
        self._check("store_clock_offset")
        self._c.clock_offset_us = offset_us


_TABLES = (
    "events",
    "responses",
    "relays",
    "contacts",
    "messages",
    "profiles",
    "channels",
    "subscriptions",
)


class FakeCache:
    """In-memory ``LocalCacheStore``.

    ``transaction()`` snapshots every table and restores it when the block
    raises. Method names listed in ``fail_on`` raise ``DatabaseError``.
    """

    def __init__(self) -> None:
        self.events: dict[str, StoredEvent] = {}
        self.responses: dict[tuple[str, str], RelayResponse] = {}
        self.relays: dict[str, RelayEntry] = {}
        self.contacts: dict[str, DbContact] = {}
        self.messages: dict[int, DbMessage] = {}
        self.profiles: dict[str, ProfileCache] = {}
        self.channels: dict[str, ChannelCache] = {}
        self.subscriptions: dict[str, ChannelSubscription] = {}
        self.clock_offset_us = 0
        self.next_msg_id = 1
        self.fail_on: set[str] = set()
        self.calls: list[str] = []
        self.closed = False

    def _snapshot(self) -> dict[str, Any]:
        state = {name: copy.copy(getattr(self, name)) for name in _TABLES}
        state["clock_offset_us"] = self.clock_offset_us
        state["next_msg_id"] = self.next_msg_id
        return state

    def _restore(self, state: dict[str, Any]) -> None:
        for name, value in state.items():
            setattr(self, name, value)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[FakeSession]:
        yield FakeSession(self)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[FakeSession]:
        state = self._snapshot()
        try:
            yield FakeSession(self)
        except BaseException:
            self._restore(state)
            raise

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def cache() -> FakeCache:
    return FakeCache()


@pytest.fixture
def notifications() -> list[Any]:
    """Collects everything passed to the ``emit`` callback."""
    return []


@pytest.fixture
def emit(notifications: list[Any]) -> Callable[[Any], None]:
    return notifications.append
