"""Integration tests for LocalCacheStore against PostgreSQL.

Tests exercise the cache tables through CacheSession and the backend
components that write to them in one transaction.
"""

from __future__ import annotations

import json

import pytest

from nostrsync.models import (
    ChannelCache,
    ChannelMetadata,
    ChannelSubscription,
    ContactStatus,
    DbContact,
    EventKind,
    ImageKind,
    MessageStatus,
    OkMessage,
    ProfileCache,
    ProfileMetadata,
    RelayEntry,
    RelayResponse,
)
from nostrsync.services.backend.confirmation import ConfirmationReconciler
from nostrsync.services.backend.contacts import ContactListReconciler
from nostrsync.services.backend.messages import DirectMessageHandler
from nostrsync.services.backend.metadata import MetadataCache
from nostrsync.services.backend.pending import PendingEventStore
from nostrsync.utils.clock import ClockOffsetProvider


pytestmark = pytest.mark.integration

R1 = "wss://one.example.com"
R2 = "wss://two.example.com"
A = "a" * 64
B = "b" * 64


# ============================================================================
# Events
# ============================================================================


class TestEvents:
    """event table."""

    async def test_insert_and_fetch(self, store, codec, sign):
        event = sign(codec, EventKind.TEXT_NOTE, "hello", [["t", "nostr"]])
        async with store.session() as s:
            assert await s.insert_event(event) is True
            assert await s.insert_event(event) is False
            stored = await s.fetch_event(event.id)

        assert stored.event.id == event.id
        assert stored.event.content == "hello"
        assert stored.event.tag_values("t") == ["nostr"]
        assert stored.is_confirmed is False

    async def test_confirm_once(self, store, codec, sign):
        event = sign(codec, EventKind.TEXT_NOTE, "x")
        async with store.session() as s:
            await s.insert_event(event)
            assert await s.confirm_event(event.id, R1, 10) is True
            assert await s.confirm_event(event.id, R2, 20) is False
            stored = await s.fetch_event(event.id)
        assert (stored.relay_url, stored.confirmed_at) == (R1, 10)

    async def test_unconfirmed_oldest_first(self, store, codec, peer_codec, sign):
        newer = sign(codec, EventKind.TEXT_NOTE, "b", created_at=200)
        older = sign(codec, EventKind.TEXT_NOTE, "a", created_at=100)
        foreign = sign(peer_codec, EventKind.TEXT_NOTE, "c", created_at=50)
        async with store.session() as s:
            for event in (newer, older, foreign):
                await s.insert_event(event)
            await s.insert_event(sign(codec, EventKind.TEXT_NOTE, "d"), R1, 5)
            pending = await s.fetch_unconfirmed_events(codec.public_key)
        assert [e.id for e in pending] == [older.id, newer.id]

    async def test_latest_timestamp_and_delete(self, store, codec, sign):
        first = sign(codec, EventKind.CONTACT_LIST, "", created_at=100)
        second = sign(codec, EventKind.CONTACT_LIST, "", created_at=200)
        async with store.session() as s:
            await s.insert_event(first)
            await s.insert_event(second)
            kind = EventKind.CONTACT_LIST
            assert await s.latest_event_timestamp(kind, codec.public_key) == 200
            assert await s.latest_event_timestamp(kind, exclude_id=second.id) == 100
            assert await s.latest_event_timestamp(EventKind.METADATA) is None
            assert await s.delete_events_of_kind(kind, codec.public_key, before=100) == 0
            assert await s.delete_events_of_kind(kind, codec.public_key, before=200) == 1
            assert await s.fetch_event(first.id) is None
            assert await s.fetch_event(second.id) is not None

    async def test_channel_messages_by_tag(self, store, codec, sign):
        channel = "c" * 64
        messages = [
            sign(codec, EventKind.CHANNEL_MESSAGE, f"m{n}", [["e", channel]], created_at=n)
            for n in (1, 2, 3)
        ]
        other = sign(codec, EventKind.CHANNEL_MESSAGE, "x", [["e", "d" * 64]])
        async with store.session() as s:
            for event in [*messages, other]:
                await s.insert_event(event)
            recent = await s.fetch_channel_messages(channel, limit=2)
        assert [e.content for e in recent] == ["m2", "m3"]


# ============================================================================
# Relays, responses and user config
# ============================================================================


class TestRelaysAndResponses:
    """relay, relay_response and user_config tables."""

    async def test_relay_flags(self, store):
        async with store.session() as s:
            await s.upsert_relay(RelayEntry(R1))
            assert await s.set_relay_write(R1, False) is True
            assert await s.set_relay_read("wss://missing.example.com", False) is False
            relays = await s.fetch_relays()
            assert await s.delete_relay(R1) is True
            assert await s.fetch_relays() == []
        assert [(r.url, r.read, r.write) for r in relays] == [(R1, True, False)]

    async def test_response_per_relay(self, store, codec, sign):
        event = sign(codec, EventKind.TEXT_NOTE, "x")
        async with store.session() as s:
            assert await s.insert_relay_response(RelayResponse.ok(event.id, R1, 10)) is True
            assert await s.insert_relay_response(RelayResponse.ok(event.id, R1, 11)) is False
            await s.insert_relay_response(RelayResponse.error(event.id, R2, "blocked", 12))
            responses = await s.fetch_relay_responses(event.id)
        assert [(r.relay_url, r.message) for r in responses] == [(R1, ""), (R2, "blocked")]

    async def test_clock_offset(self, store):
        async with store.session() as s:
            assert await s.fetch_clock_offset() == 0
            await s.store_clock_offset(-1_500_000)
            assert await s.fetch_clock_offset() == -1_500_000


# ============================================================================
# Contacts and messages
# ============================================================================


class TestContactsAndMessages:
    """contact and message tables."""

    async def test_contact_upsert_and_filter(self, store):
        async with store.session() as s:
            await s.upsert_contact(DbContact(pubkey=A, petname="alice"))
            assert await s.insert_contact_if_missing(DbContact.unknown(A)) is False
            assert await s.insert_contact_if_missing(DbContact.unknown(B)) is True
            known = await s.fetch_contacts(ContactStatus.KNOWN)
            everyone = await s.fetch_contacts()
        assert [c.petname for c in known] == ["alice"]
        assert [c.pubkey for c in everyone] == [A, B]

    async def test_last_message_moves_forward(self, store):
        async with store.session() as s:
            await s.upsert_contact(DbContact(pubkey=A))
            await s.update_contact_last_message(A, 1, 200, increment_unseen=True)
            await s.update_contact_last_message(A, 2, 100, increment_unseen=True)
            contact = await s.fetch_contact(A)
        assert (contact.last_message_id, contact.last_message_at) == (1, 200)
        assert contact.unseen_count == 2

    async def test_dm_flow(self, store, codec, peer_codec, emit):
        handler = DirectMessageHandler(store, codec, emit)
        event = peer_codec.build_dm(codec.public_key, "ciao", 100)

        stored = await handler.on_event(event, R1, 101)
        assert stored is not None
        assert await handler.on_event(event, R2, 102) is None

        chat = await handler.open_chat(peer_codec.public_key)
        assert [(m.content, m.status) for m in chat] == [("ciao", MessageStatus.SEEN)]
        async with store.session() as s:
            contact = await s.fetch_contact(peer_codec.public_key)
        assert contact.status == ContactStatus.UNKNOWN
        assert contact.unseen_count == 0

    async def test_transaction_rolls_back(self, store, codec, sign):
        event = sign(codec, EventKind.TEXT_NOTE, "x")
        with pytest.raises(RuntimeError, match="abort"):
            async with store.transaction() as tx:
                await tx.insert_event(event)
                await tx.upsert_contact(DbContact(pubkey=A))
                raise RuntimeError("abort")
        async with store.session() as s:
            assert await s.fetch_event(event.id) is None
            assert await s.fetch_contact(A) is None


# ============================================================================
# Metadata caches
# ============================================================================


class TestMetadataCaches:
    """profile_meta_cache, channel_cache and subscribed_channel tables."""

    async def test_profile_newest_wins_and_keeps_image(self, store):
        newer = ProfileCache(A, 200, B, ProfileMetadata(name="new"))
        async with store.session() as s:
            assert await s.upsert_profile(ProfileCache(A, 100, B, ProfileMetadata(name="old")))
            assert await s.set_profile_image(A, ImageKind.PROFILE, "/img/a.png") is True
            assert await s.upsert_profile(newer) is True
            assert await s.upsert_profile(ProfileCache(A, 200, B, ProfileMetadata())) is False
            cached = await s.fetch_profile(A)
        assert cached.metadata.name == "new"
        assert cached.profile_image_path == "/img/a.png"

    async def test_profile_extra_fields_survive(self, store, peer_codec, sign, emit):
        metadata = MetadataCache(store, peer_codec, emit)
        content = json.dumps({"name": "bob", "pronouns": "they/them"})
        await metadata.apply_profile(sign(peer_codec, EventKind.METADATA, content))
        profile = await metadata.fetch_profile(peer_codec.public_key)
        assert profile.metadata.extra["pronouns"] == "they/them"

    async def test_channel_placeholder_then_creation(self, store):
        channel_id = "c" * 64
        placeholder = ChannelCache(channel_id, 50, ChannelMetadata(name="early"))
        created = ChannelCache(
            channel_id, 50, ChannelMetadata(name="room"), creator_pubkey=A, created_at=50
        )
        async with store.session() as s:
            assert await s.upsert_channel(placeholder) is True
            assert await s.upsert_channel(created) is True
            assert await s.upsert_channel(ChannelCache(channel_id, 10, ChannelMetadata())) is False
            cached = await s.fetch_channel(channel_id)
        assert cached.creator_pubkey == A
        assert cached.metadata.name == "room"

    async def test_profiles_in_one_batch(self, store):
        async with store.session() as s:
            await s.upsert_profile(ProfileCache(A, 100, B, ProfileMetadata(name="alice")))
            profiles = await s.fetch_profiles([A, B])
            assert await s.fetch_profiles([]) == []
        assert [p.pubkey for p in profiles] == [A]

    async def test_channel_subscriptions(self, store):
        first, second = "c" * 64, "d" * 64
        async with store.session() as s:
            assert await s.subscribe_channel(second, 200) == ChannelSubscription(second, 200)
            await s.subscribe_channel(first, 100)
            assert await s.subscribe_channel(second, 300) == ChannelSubscription(second, 200)
            listed = await s.fetch_subscribed_channels()
            assert await s.unsubscribe_channel(first) is True
            assert await s.unsubscribe_channel(first) is False
            remaining = await s.fetch_subscribed_channels()
        assert [c.channel_id for c in listed] == [first, second]
        assert remaining == [ChannelSubscription(second, 200)]


# ============================================================================
# Confirmation end to end
# ============================================================================


class TestConfirmation:
    """Own events confirmed through the real schema."""

    @pytest.fixture
    def components(self, store, codec, emit):
        pending = PendingEventStore()
        messages = DirectMessageHandler(store, codec, emit)
        reconciler = ConfirmationReconciler(
            store=store,
            pending=pending,
            codec=codec,
            clock=ClockOffsetProvider(time_source=lambda: 1700000500.0),
            messages=messages,
            contacts=ContactListReconciler(store, codec, emit),
            metadata=MetadataCache(store, codec, emit),
            emit=emit,
        )
        return pending, messages, reconciler

    async def test_dm_confirmed_by_first_relay(self, store, components, peer_pubkey):
        pending, messages, reconciler = components
        event, message = await messages.send(peer_pubkey, "hello", 1700000000)
        pending.insert(event, submitted_at=1700000000)

        await reconciler.on_ok(OkMessage(R1, event.id, True))
        await reconciler.on_ok(OkMessage(R2, event.id, True))

        async with store.session() as s:
            stored = await s.fetch_message_by_event(event.id)
            responses = await s.fetch_relay_responses(event.id)
            unconfirmed = await s.fetch_unconfirmed_events(event.pubkey)
        assert stored.msg_id == message.msg_id
        assert stored.status == MessageStatus.DELIVERED
        assert stored.confirmation.relay_url == R1
        assert {r.relay_url for r in responses} == {R1, R2}
        assert unconfirmed == []

    async def test_contact_list_confirmed(self, store, components, codec, sign):
        pending, _, reconciler = components
        event = sign(codec, EventKind.CONTACT_LIST, "", [["p", A, "", "alice"], ["p", B]])
        async with store.session() as s:
            await s.insert_event(event)
        pending.insert(event, submitted_at=event.created_at)

        await reconciler.on_echo(event, R1)

        async with store.session() as s:
            contacts = await s.fetch_contacts(ContactStatus.KNOWN)
            stored = await s.fetch_event(event.id)
        assert [(c.pubkey, c.petname) for c in contacts] == [(A, "alice"), (B, None)]
        assert stored.relay_url == R1

    async def test_older_profile_acknowledged_first(self, store, components, codec, sign):
        pending, _, reconciler = components
        older = sign(codec, EventKind.METADATA, '{"name": "a"}', created_at=100)
        newer = sign(codec, EventKind.METADATA, '{"name": "b"}', created_at=101)
        async with store.session() as s:
            for event in (older, newer):
                await s.insert_event(event)
                pending.insert(event, submitted_at=event.created_at)

        await reconciler.on_ok(OkMessage(R1, older.id, True))
        await reconciler.on_ok(OkMessage(R1, newer.id, True))

        async with store.session() as s:
            profile = await s.fetch_profile(codec.public_key)
            kept = await s.fetch_event(newer.id)
            dropped = await s.fetch_event(older.id)
        assert (profile.updated_at, profile.metadata.name) == (101, "b")
        assert kept.confirmed_at is not None
        assert dropped is None
