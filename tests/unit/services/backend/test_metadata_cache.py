"""
Unit tests for services.backend.metadata module.

Tests:
- Profiles: strictly newer wins, arrival order does not matter
- Profiles: invalid content raises MalformedEventError
- Profiles: image download requests and kept local files
- Channels: creation, creator-only updates, updates before creation
- Local images never move updated_at
"""

import json

import pytest

from nostrsync.core.exceptions import MalformedEventError
from nostrsync.models import DbContact, EventKind, ImageKind, UpdateOutcome
from nostrsync.services.backend.metadata import MetadataCache
from nostrsync.services.backend.notifications import (
    ChannelUpdated,
    ImageCacheChanged,
    ImageDownloadRequested,
    ProfileUpdated,
)


@pytest.fixture
def metadata(cache, codec, emit):
    return MetadataCache(cache, codec, emit)


@pytest.fixture
def profile_event(peer_codec, sign):
    """``profile_event(created_at, **fields)`` signed by the peer."""

    def _build(created_at, **fields):
        return sign(peer_codec, EventKind.METADATA, json.dumps(fields), created_at=created_at)

    return _build


# ============================================================================
# Profiles
# ============================================================================


class TestProfiles:
    """apply_profile()."""

    async def test_first_profile(self, metadata, cache, profile_event, peer_pubkey, notifications):
        event = profile_event(100, name="bob", picture="https://img.example.com/b.png")
        assert await metadata.apply_profile(event) == UpdateOutcome.UPDATED
        assert cache.profiles[peer_pubkey].metadata.name == "bob"
        assert isinstance(notifications[0], ProfileUpdated)
        assert notifications[0].is_user is False
        assert notifications[1] == ImageDownloadRequested(
            subject_id=peer_pubkey, url="https://img.example.com/b.png", kind=ImageKind.PROFILE
        )

    @pytest.mark.parametrize("order", [(0, 1), (1, 0)])
    async def test_newest_wins_in_any_order(
        self, metadata, cache, profile_event, peer_pubkey, order
    ):
        events = [profile_event(100, name="old"), profile_event(200, name="new")]
        for index in order:
            await metadata.apply_profile(events[index])
        cached = cache.profiles[peer_pubkey]
        assert cached.metadata.name == "new"
        assert cached.updated_at == 200
        assert set(cache.events) == {events[1].id}

    async def test_equal_timestamp_is_stale(self, metadata, profile_event):
        await metadata.apply_profile(profile_event(100, name="a"))
        assert await metadata.apply_profile(profile_event(100, name="b")) == UpdateOutcome.STALE

    async def test_unsent_newer_own_profile_survives(
        self, metadata, cache, codec, sign, user_pubkey
    ):
        unsent = sign(codec, EventKind.METADATA, '{"name": "new"}', created_at=200)
        async with cache.session() as s:
            await s.insert_event(unsent)

        # Same key, older profile written by another client
        older = sign(codec, EventKind.METADATA, '{"name": "old"}', created_at=100)
        assert await metadata.apply_profile(older, "wss://relay.example.com", 300) == (
            UpdateOutcome.STALE
        )
        assert set(cache.events) == {unsent.id}
        assert user_pubkey not in cache.profiles

    async def test_invalid_content(self, metadata, peer_codec, sign):
        event = sign(peer_codec, EventKind.METADATA, "[1, 2]")
        with pytest.raises(MalformedEventError):
            await metadata.apply_profile(event)

    async def test_own_profile_flag(self, metadata, codec, sign, notifications):
        await metadata.apply_profile(sign(codec, EventKind.METADATA, '{"name": "me"}'))
        assert notifications[0].is_user is True

    async def test_same_picture_keeps_local_file(
        self, metadata, cache, profile_event, peer_pubkey, notifications
    ):
        url = "https://img.example.com/b.png"
        await metadata.apply_profile(profile_event(100, picture=url))
        await metadata.attach_local_image(peer_pubkey, ImageKind.PROFILE, "/cache/b.png")
        notifications.clear()
        await metadata.apply_profile(profile_event(200, picture=url, name="bob"))
        assert cache.profiles[peer_pubkey].profile_image_path == "/cache/b.png"
        assert not any(isinstance(n, ImageDownloadRequested) for n in notifications)

    async def test_changed_picture_drops_local_file(
        self, metadata, cache, profile_event, peer_pubkey, notifications
    ):
        await metadata.apply_profile(profile_event(100, picture="https://img.example.com/1.png"))
        await metadata.attach_local_image(peer_pubkey, ImageKind.PROFILE, "/cache/1.png")
        notifications.clear()
        await metadata.apply_profile(profile_event(200, picture="https://img.example.com/2.png"))
        assert cache.profiles[peer_pubkey].profile_image_path is None
        requested = [n for n in notifications if isinstance(n, ImageDownloadRequested)]
        assert [n.url for n in requested] == ["https://img.example.com/2.png"]


class TestLocalImages:
    """attach_local_image() / clear_local_image()."""

    async def test_attach_does_not_move_updated_at(
        self, metadata, cache, profile_event, peer_pubkey, notifications
    ):
        await metadata.apply_profile(profile_event(100, name="bob"))
        assert await metadata.attach_local_image(peer_pubkey, ImageKind.BANNER, "/cache/x.png")
        assert cache.profiles[peer_pubkey].updated_at == 100
        assert notifications[-1] == ImageCacheChanged(
            subject_id=peer_pubkey, kind=ImageKind.BANNER, path="/cache/x.png"
        )
        # A metadata event older than the cached one is still stale
        assert await metadata.apply_profile(profile_event(99, name="x")) == UpdateOutcome.STALE

    async def test_unknown_subject(self, metadata, notifications):
        assert await metadata.attach_local_image("f" * 64, ImageKind.PROFILE, "/x") is False
        assert notifications == []

    async def test_profile_picture_mirrors_into_contact(self, metadata, cache, peer_pubkey):
        cache.contacts[peer_pubkey] = DbContact(pubkey=peer_pubkey)
        assert await metadata.attach_local_image(peer_pubkey, ImageKind.PROFILE, "/cache/p.png")
        assert cache.contacts[peer_pubkey].profile_image_ref == "/cache/p.png"
        await metadata.clear_local_image(peer_pubkey, ImageKind.PROFILE)
        assert cache.contacts[peer_pubkey].profile_image_ref is None


# ============================================================================
# Channels
# ============================================================================


class TestChannels:
    """apply_channel_creation() / apply_channel_metadata()."""

    async def test_creation(self, metadata, cache, peer_codec, peer_pubkey, sign, notifications):
        content = '{"name": "general"}'
        create = sign(peer_codec, EventKind.CHANNEL_CREATION, content, created_at=100)
        assert await metadata.apply_channel_creation(create) == UpdateOutcome.UPDATED
        channel = cache.channels[create.id]
        assert channel.creator_pubkey == peer_pubkey
        assert channel.metadata.name == "general"
        assert isinstance(notifications[0], ChannelUpdated)

    async def test_duplicate_creation_is_stale(self, metadata, peer_codec, sign):
        create = sign(peer_codec, EventKind.CHANNEL_CREATION, '{"name": "g"}', created_at=100)
        await metadata.apply_channel_creation(create)
        assert await metadata.apply_channel_creation(create) == UpdateOutcome.STALE

    async def test_update_from_creator(self, metadata, cache, peer_codec, sign):
        create = sign(peer_codec, EventKind.CHANNEL_CREATION, '{"name": "g"}', created_at=100)
        update = sign(
            peer_codec, EventKind.CHANNEL_METADATA, '{"name": "renamed"}', [["e", create.id]], 200
        )
        await metadata.apply_channel_creation(create)
        assert await metadata.apply_channel_metadata(update) == UpdateOutcome.UPDATED
        assert cache.channels[create.id].metadata.name == "renamed"
        assert cache.channels[create.id].updated_at == 200

    async def test_update_from_stranger_rejected(self, metadata, cache, peer_codec, codec, sign):
        create = sign(peer_codec, EventKind.CHANNEL_CREATION, '{"name": "g"}', created_at=100)
        hijack = sign(codec, EventKind.CHANNEL_METADATA, '{"name": "x"}', [["e", create.id]], 200)
        await metadata.apply_channel_creation(create)
        assert await metadata.apply_channel_metadata(hijack) == UpdateOutcome.STALE
        assert cache.channels[create.id].metadata.name == "g"

    async def test_update_before_creation(self, metadata, cache, peer_codec, peer_pubkey, sign):
        create = sign(peer_codec, EventKind.CHANNEL_CREATION, '{"name": "g"}', created_at=100)
        update = sign(
            peer_codec, EventKind.CHANNEL_METADATA, '{"name": "later"}', [["e", create.id]], 200
        )
        await metadata.apply_channel_metadata(update)
        assert cache.channels[create.id].creator_pubkey is None
        await metadata.apply_channel_creation(create)
        channel = cache.channels[create.id]
        assert channel.creator_pubkey == peer_pubkey
        assert channel.metadata.name == "later"

    async def test_early_update_by_stranger_is_discarded(
        self, metadata, cache, peer_codec, codec, sign
    ):
        create = sign(peer_codec, EventKind.CHANNEL_CREATION, '{"name": "g"}', created_at=100)
        hijack = sign(codec, EventKind.CHANNEL_METADATA, '{"name": "x"}', [["e", create.id]], 200)
        await metadata.apply_channel_metadata(hijack)
        await metadata.apply_channel_creation(create)
        assert cache.channels[create.id].metadata.name == "g"

    async def test_update_without_channel_reference(self, metadata, peer_codec, sign):
        update = sign(peer_codec, EventKind.CHANNEL_METADATA, '{"name": "x"}')
        with pytest.raises(MalformedEventError):
            await metadata.apply_channel_metadata(update)

    async def test_picture_requests_download(self, metadata, peer_codec, sign, notifications):
        content = '{"name": "g", "picture": "https://img.example.com/c.png"}'
        create = sign(peer_codec, EventKind.CHANNEL_CREATION, content, created_at=100)
        await metadata.apply_channel_creation(create)
        assert notifications[-1] == ImageDownloadRequested(
            subject_id=create.id, url="https://img.example.com/c.png", kind=ImageKind.CHANNEL
        )
