"""
Profile and channel metadata cache with "latest wins" merging.

Profile metadata (kind 0) and channel metadata (kinds 40 and 41, NIP-28)
are replaceable: a cached row is overwritten only by an event with a
strictly newer ``created_at``. Arrival order therefore never matters, and
replaying old events after a restart is harmless.

Channel rules:

- The creation event (kind 40) fixes the channel id (its event id), the
  creator and the initial metadata.
- Metadata updates (kind 41) reference the channel through their first
  ``e`` tag and are only accepted from the creator. When an update arrives
  before the creation, a placeholder row keeps it; the creation fills in
  the creator later and discards the update if somebody else wrote it.

Local image files are attached and cleared without touching ``updated_at``
or the metadata, so a downloaded picture never makes metadata look newer.
Whenever applied metadata references an image URL without a local file,
[ImageDownloadRequested][nostrsync.services.backend.notifications.ImageDownloadRequested]
is emitted for the external downloader.

See Also:
    [ProfileCache][nostrsync.models.metadata.ProfileCache],
    [ChannelCache][nostrsync.models.metadata.ChannelCache]: Cached rows.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from nostrsync.core.exceptions import MalformedEventError
from nostrsync.core.logger import Logger
from nostrsync.models.constants import EventKind, ImageKind, UpdateOutcome
from nostrsync.models.metadata import ChannelCache, ChannelMetadata, ProfileCache, ProfileMetadata
from nostrsync.nips.nip28 import referenced_channel_id

from .notifications import (
    ChannelUpdated,
    ImageCacheChanged,
    ImageDownloadRequested,
    Notification,
    NotificationSink,
    ProfileUpdated,
)


if TYPE_CHECKING:
    from nostrsync.core.store import CacheSession, LocalCacheStore
    from nostrsync.models.event import Event
    from nostrsync.nips.codec import EventCodec


_PROFILE_IMAGES = (ImageKind.PROFILE, ImageKind.BANNER)


def _parse_profile(event: Event) -> ProfileMetadata:
    try:
        return ProfileMetadata.from_json(event.content)
    except ValueError as e:
        raise MalformedEventError(f"invalid profile metadata: {e}", event_id=event.id) from e


def _parse_channel(event: Event) -> ChannelMetadata:
    try:
        return ChannelMetadata.from_json(event.content)
    except ValueError as e:
        raise MalformedEventError(f"invalid channel metadata: {e}", event_id=event.id) from e


class MetadataCache:
    """Applies metadata events and local image artifacts to the cache.

    Args:
        store: Cache holding ``profile_meta_cache`` and ``channel_cache``.
        codec: Identifies the local user's own profile.
        emit: Receives notifications after each committed change.
        logger: Logger of the owning service.
    """

    def __init__(
        self,
        store: LocalCacheStore,
        codec: EventCodec,
        emit: NotificationSink,
        logger: Logger | None = None,
    ) -> None:
        self._store = store
        self._codec = codec
        self._emit = emit
        self._logger = logger or Logger("backend.metadata")

    # -------------------------------------------------------------------------
    # Profiles
    # -------------------------------------------------------------------------

    async def apply_profile(
        self,
        event: Event,
        relay_url: str | None = None,
        confirmed_at: int | None = None,
    ) -> UpdateOutcome:
        """Apply a kind-0 event.

        Returns:
            ``UPDATED`` if the cache now holds this event's metadata,
            ``STALE`` if a newer or equal one was already cached.

        Raises:
            MalformedEventError: If the content is not a JSON object.
        """
        async with self._store.transaction() as tx:
            outcome, notifications = await self.apply_profile_in(tx, event, relay_url, confirmed_at)
        self._emit_all(notifications)
        return outcome

    async def apply_profile_in(
        self,
        tx: CacheSession,
        event: Event,
        relay_url: str | None = None,
        confirmed_at: int | None = None,
    ) -> tuple[UpdateOutcome, list[Notification]]:
        """Apply a kind-0 event inside the caller's transaction.

        Stale against both the cached profile and any newer stored kind-0 row
        by the same author, which may be an own update still awaiting a relay.
        """
        metadata = _parse_profile(event)
        latest = await tx.latest_event_timestamp(
            EventKind.METADATA, author=event.pubkey, exclude_id=event.id
        )
        if latest is not None and event.created_at <= latest:
            self._logger.debug(
                "profile_stale", pubkey=event.pubkey, created_at=event.created_at, latest=latest
            )
            return UpdateOutcome.STALE, []

        cached = await tx.fetch_profile(event.pubkey)
        if cached is not None and not cached.accepts(event.created_at):
            self._logger.debug(
                "profile_stale",
                pubkey=event.pubkey,
                created_at=event.created_at,
                cached_at=cached.updated_at,
            )
            return UpdateOutcome.STALE, []

        profile = ProfileCache(
            pubkey=event.pubkey,
            updated_at=event.created_at,
            event_id=event.id,
            metadata=metadata,
        )
        notifications: list[Notification] = []
        outdated: list[ImageKind] = []
        for kind in _PROFILE_IMAGES:
            url = metadata.image_url(kind)
            path = cached.image_path(kind) if cached is not None else None
            if path is not None and url == cached.metadata.image_url(kind):
                profile = profile.with_image(kind, path)
            elif path is not None:
                outdated.append(kind)
            if url and profile.image_path(kind) is None:
                notifications.append(
                    ImageDownloadRequested(subject_id=event.pubkey, url=url, kind=kind)
                )

        if not await tx.upsert_profile(profile):
            return UpdateOutcome.STALE, []
        for kind in outdated:
            await tx.set_profile_image(event.pubkey, kind, None)

        await tx.insert_event(event, relay_url, confirmed_at)
        await tx.delete_events_of_kind(EventKind.METADATA, event.pubkey, event.created_at)

        self._logger.debug("profile_updated", pubkey=event.pubkey, created_at=event.created_at)
        notifications.insert(
            0, ProfileUpdated(profile=profile, is_user=self._codec.is_own(event))
        )
        return UpdateOutcome.UPDATED, notifications

    async def fetch_profile(self, pubkey: str) -> ProfileCache | None:
        async with self._store.session() as s:
            return await s.fetch_profile(pubkey)

    # -------------------------------------------------------------------------
    # Channels
    # -------------------------------------------------------------------------

    async def apply_channel_creation(
        self, event: Event, relay_url: str | None = None, confirmed_at: int | None = None
    ) -> UpdateOutcome:
        """Apply a kind-40 event; its id becomes the channel id.

        Raises:
            MalformedEventError: If the content is not a JSON object.
        """
        metadata = _parse_channel(event)
        async with self._store.transaction() as tx:
            cached = await tx.fetch_channel(event.id)
            if cached is not None and cached.creator_pubkey is not None:
                return UpdateOutcome.STALE

            if cached is None:
                channel = ChannelCache(
                    channel_id=event.id,
                    updated_at=event.created_at,
                    metadata=metadata,
                    creator_pubkey=event.pubkey,
                    created_at=event.created_at,
                    event_id=event.id,
                )
            else:
                channel = cached.with_creation(event.pubkey, event.created_at)
                if not await self._update_is_from(tx, cached, event.pubkey):
                    # Metadata written by someone else goes, even if it looks newer
                    channel = channel.with_metadata(metadata, event.created_at, event.id)
                    await tx.delete_channel(event.id)

            if not await tx.upsert_channel(channel):
                return UpdateOutcome.STALE
            await tx.insert_event(event, relay_url, confirmed_at)

        self._logger.debug("channel_created", channel_id=event.id, creator=event.pubkey)
        self._emit_all(self._channel_notifications(channel))
        return UpdateOutcome.UPDATED

    async def apply_channel_metadata(
        self, event: Event, relay_url: str | None = None, confirmed_at: int | None = None
    ) -> UpdateOutcome:
        """Apply a kind-41 event to the channel named by its first ``e`` tag.

        Raises:
            MalformedEventError: If the channel reference or content is invalid.
        """
        channel_id = referenced_channel_id(event)
        if channel_id is None:
            raise MalformedEventError("channel metadata without channel id", event_id=event.id)
        metadata = _parse_channel(event)

        async with self._store.transaction() as tx:
            cached = await tx.fetch_channel(channel_id) or ChannelCache.placeholder(channel_id)
            if cached.creator_pubkey is not None and cached.creator_pubkey != event.pubkey:
                self._logger.warning(
                    "channel_metadata_rejected",
                    channel_id=channel_id,
                    author=event.pubkey,
                    creator=cached.creator_pubkey,
                )
                return UpdateOutcome.STALE
            if not cached.accepts(event.created_at):
                return UpdateOutcome.STALE

            channel = cached.with_metadata(metadata, event.created_at, event.id)
            if cached.image_path is not None and metadata.picture != cached.metadata.picture:
                channel = channel.with_image(None)
                await tx.set_channel_image(channel_id, None)
            if not await tx.upsert_channel(channel):
                return UpdateOutcome.STALE
            await tx.insert_event(event, relay_url, confirmed_at)

        self._logger.debug("channel_metadata_updated", channel_id=channel_id)
        self._emit_all(self._channel_notifications(channel))
        return UpdateOutcome.UPDATED

    async def fetch_channel(self, channel_id: str) -> ChannelCache | None:
        async with self._store.session() as s:
            return await s.fetch_channel(channel_id)

    @staticmethod
    async def _update_is_from(tx: CacheSession, cached: ChannelCache, author: str) -> bool:
        """Whether the metadata already cached for a channel was written by *author*."""
        if cached.event_id is None:
            return False
        stored = await tx.fetch_event(cached.event_id)
        return stored is not None and stored.event.pubkey == author

    @staticmethod
    def _channel_notifications(channel: ChannelCache) -> list[Notification]:
        notifications: list[Notification] = [ChannelUpdated(channel=channel)]
        if channel.metadata.picture and channel.image_path is None:
            notifications.append(
                ImageDownloadRequested(
                    subject_id=channel.channel_id,
                    url=channel.metadata.picture,
                    kind=ImageKind.CHANNEL,
                )
            )
        return notifications

    # -------------------------------------------------------------------------
    # Local images
    # -------------------------------------------------------------------------

    async def attach_local_image(self, subject_id: str, kind: ImageKind, path: str | None) -> bool:
        """Record (or with ``None`` forget) the local file of an image.

        Profile pictures are mirrored into the contact row so contact lists
        can render without joining the profile cache.

        Returns:
            ``True`` if a cached row was changed.
        """
        async with self._store.transaction() as tx:
            if kind == ImageKind.CHANNEL:
                changed = await tx.set_channel_image(subject_id, path)
            else:
                changed = await tx.set_profile_image(subject_id, kind, path)
                if kind == ImageKind.PROFILE:
                    changed = await tx.set_contact_image(subject_id, path) or changed

        if changed:
            self._emit(ImageCacheChanged(subject_id=subject_id, kind=kind, path=path))
        else:
            self._logger.debug("image_subject_unknown", subject_id=subject_id, kind=kind)
        return changed

    async def clear_local_image(self, subject_id: str, kind: ImageKind) -> bool:
        return await self.attach_local_image(subject_id, kind, None)

    def _emit_all(self, notifications: list[Notification]) -> None:
        for notification in notifications:
            self._emit(notification)
