"""
Lifecycle of events authored by the local user: pending to confirmed.

An own event is stored unconfirmed and held in the
[PendingEventStore][nostrsync.services.backend.pending.PendingEventStore]
before it is published. The first relay that acknowledges it (``OK true``)
or echoes it back in a subscription confirms it; confirmation is terminal.

"First confirmation wins" is enforced twice:

- ``PendingEventStore.take()`` hands the event to exactly one caller.
- The ``event`` row is updated only ``WHERE confirmed_at IS NULL``, so an
  event reloaded after a restart cannot be confirmed twice either.

The confirmation and its kind-specific effect (DM delivered, contact list
applied, profile cached) commit in one transaction. Later acknowledgements
only add ``relay_response`` rows.

See Also:
    [BackendCoordinator][nostrsync.services.backend.service.BackendCoordinator]:
        Routes ``OK`` messages and own-event echoes here.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from nostrsync.core.exceptions import DatabaseError
from nostrsync.core.logger import Logger
from nostrsync.models.constants import EventKind
from nostrsync.models.relay_response import RelayResponse

from .notifications import (
    ContactListConfirmed,
    EventConfirmed,
    MetadataConfirmed,
    Notification,
    NotificationSink,
    RelayResponseFailed,
)


if TYPE_CHECKING:
    from nostrsync.core.store import CacheSession, LocalCacheStore
    from nostrsync.models.event import Event
    from nostrsync.models.relay_message import OkMessage
    from nostrsync.nips.codec import EventCodec
    from nostrsync.utils.clock import ClockOffsetProvider

    from .contacts import ContactListReconciler
    from .messages import DirectMessageHandler
    from .metadata import MetadataCache
    from .pending import PendingEventStore


class ConfirmationReconciler:
    """Confirms own events from relay acknowledgements and echoes.

    Args:
        store: Cache holding the ``event`` and ``relay_response`` tables.
        pending: Own events awaiting their first confirmation.
        codec: Identifies own events.
        clock: Source of ``confirmed_at`` timestamps.
        messages: Applies DM confirmations.
        contacts: Applies own contact lists.
        metadata: Applies own profile metadata.
        emit: Receives notifications after each commit.
        logger: Logger of the owning service.
    """

    def __init__(  # noqa: PLR0913
        self,
        store: LocalCacheStore,
        pending: PendingEventStore,
        codec: EventCodec,
        clock: ClockOffsetProvider,
        messages: DirectMessageHandler,
        contacts: ContactListReconciler,
        metadata: MetadataCache,
        emit: NotificationSink,
        logger: Logger | None = None,
    ) -> None:
        self._store = store
        self._pending = pending
        self._codec = codec
        self._clock = clock
        self._messages = messages
        self._contacts = contacts
        self._metadata = metadata
        self._emit = emit
        self._logger = logger or Logger("backend.confirmation")

    async def on_ok(self, message: OkMessage) -> None:
        """Handle a relay's ``OK`` for one of our events.

        ``OK false`` is recorded as an error response and the event stays
        pending for the other relays. ``OK`` for ids we never authored is
        logged and ignored.
        """
        now = self._clock.now()
        if message.success:
            pending = self._pending.take(message.event_id)
            if pending is not None:
                await self._confirm(pending.event, message.relay_url, now, pending.submitted_at)
                return

        async with self._store.session() as s:
            stored = await s.fetch_event(message.event_id)
            if stored is None or not self._codec.is_own(stored.event):
                self._logger.debug(
                    "ok_for_unknown_event", event_id=message.event_id, relay=message.relay_url
                )
                return

            if not message.success:
                await s.insert_relay_response(
                    RelayResponse.error(message.event_id, message.relay_url, message.message, now)
                )
            elif stored.is_confirmed:
                await s.insert_relay_response(
                    RelayResponse.ok(message.event_id, message.relay_url, now, message.message)
                )
                return

        if not message.success:
            self._logger.warning(
                "event_rejected",
                event_id=message.event_id,
                relay=message.relay_url,
                reason=message.message,
            )
            self._emit(
                RelayResponseFailed(
                    event_id=message.event_id,
                    relay_url=message.relay_url,
                    message=message.message,
                )
            )
            return

        # Stored unconfirmed but no longer pending (cancelled): still confirm it
        await self._confirm(stored.event, message.relay_url, now)

    async def on_echo(self, event: Event, relay_url: str) -> bool:
        """Consume an own event seen in a subscription.

        Returns:
            ``True`` if the event was ours and stored (pending or not), so the
            echo counts as an acknowledgement. ``False`` means the caller
            should treat it as an ordinary incoming event.
        """
        if not self._codec.is_own(event):
            return False

        now = self._clock.now()
        pending = self._pending.take(event.id)
        if pending is not None:
            await self._confirm(pending.event, relay_url, now, pending.submitted_at)
            return True

        async with self._store.session() as s:
            stored = await s.fetch_event(event.id)
            if stored is None:
                return False
            if stored.is_confirmed:
                await s.insert_relay_response(RelayResponse.ok(event.id, relay_url, now))
                return True

        await self._confirm(stored.event, relay_url, now)
        return True

    async def _confirm(
        self,
        event: Event,
        relay_url: str,
        confirmed_at: int,
        submitted_at: int | None = None,
    ) -> None:
        try:
            async with self._store.transaction() as tx:
                first = await tx.confirm_event(event.id, relay_url, confirmed_at)
                await tx.insert_relay_response(RelayResponse.ok(event.id, relay_url, confirmed_at))
                notifications = (
                    await self._apply_kind(tx, event, relay_url, confirmed_at) if first else []
                )
        except DatabaseError:
            # Keep waiting for another acknowledgement
            if submitted_at is not None:
                self._pending.insert(event, submitted_at)
            raise

        if first:
            self._logger.info(
                "event_confirmed", event_id=event.id, kind=event.kind, relay=relay_url
            )
        for notification in notifications:
            self._emit(notification)

    async def _apply_kind(
        self, tx: CacheSession, event: Event, relay_url: str, confirmed_at: int
    ) -> list[Notification]:
        kind = EventKind.from_int(event.kind)

        if kind == EventKind.ENCRYPTED_DIRECT_MESSAGE:
            return [await self._messages.confirm_in(tx, event, relay_url, confirmed_at)]

        if kind == EventKind.CONTACT_LIST:
            _, notifications = await self._contacts.apply_in(tx, event, relay_url, confirmed_at)
            notifications.append(
                ContactListConfirmed(
                    event_id=event.id,
                    kind=event.kind,
                    relay_url=relay_url,
                    confirmed_at=confirmed_at,
                )
            )
            return notifications

        if kind == EventKind.METADATA:
            _, notifications = await self._metadata.apply_profile_in(
                tx, event, relay_url, confirmed_at
            )
            notifications.append(
                MetadataConfirmed(
                    event_id=event.id,
                    kind=event.kind,
                    relay_url=relay_url,
                    confirmed_at=confirmed_at,
                    is_user=True,
                )
            )
            return notifications

        return [
            EventConfirmed(
                event_id=event.id, kind=event.kind, relay_url=relay_url, confirmed_at=confirmed_at
            )
        ]
