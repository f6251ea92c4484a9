"""
Direct messages (kind 4, NIP-04): storage, confirmation and chat state.

A DM event is decrypted before anything is written, so an undecryptable
payload leaves no trace in the cache. Storing a message is one transaction
covering the event row, the relay response, the message row, the
counterparty's contact (created ``unknown`` for strangers) and its
last-message pointer and unseen counter. The unique ``message.event_hash``
turns duplicate deliveries from several relays into no-ops.

Messages a user sends to their own key are dropped: a chat with oneself has
no counterparty.

See Also:
    [DbMessage][nostrsync.models.message.DbMessage]: Message model and its
        monotonic status.
    [EventCodec.open_dm()][nostrsync.nips.codec.EventCodec.open_dm]: Decryption.
"""

from __future__ import annotations

from dataclasses import replace
from typing import TYPE_CHECKING

from nostrsync.core.logger import Logger
from nostrsync.models.constants import MessageStatus
from nostrsync.models.contact import DbContact
from nostrsync.models.message import DbMessage, MessageConfirmation
from nostrsync.models.relay_response import RelayResponse

from .commands import ChatInfo
from .notifications import (
    ContactCreated,
    MessageDelivered,
    MessagesSeen,
    NotificationSink,
    ReceivedDM,
)


if TYPE_CHECKING:
    from nostrsync.core.store import CacheSession, LocalCacheStore
    from nostrsync.models.event import Event
    from nostrsync.nips.codec import EventCodec


class DirectMessageHandler:
    """Turns kind-4 events into chat state.

    Args:
        store: Cache holding messages and contacts.
        codec: Decrypts and signs for the local user.
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
        self._logger = logger or Logger("backend.messages")

    # -------------------------------------------------------------------------
    # Incoming
    # -------------------------------------------------------------------------

    async def on_event(self, event: Event, relay_url: str, received_at: int) -> DbMessage | None:
        """Store a DM received from *relay_url*.

        Own DMs arrive here only when they were written by another client
        with the same key; they are stored already delivered.

        Returns:
            The stored message, or ``None`` for a self-message or duplicate.

        Raises:
            MalformedEventError: If an own DM has no recipient.
            DecryptionError: If the payload cannot be decrypted.
        """
        counterparty = self._codec.dm_counterparty(event)
        if counterparty == self._codec.public_key:
            self._logger.debug("self_message_dropped", event_id=event.id)
            return None
        plaintext = self._codec.decrypt_dm(counterparty, event.content)

        is_own = self._codec.is_own(event)
        message = DbMessage(
            event_id=event.id,
            counterparty=counterparty,
            is_own=is_own,
            created_at=event.created_at,
            content=plaintext,
            status=MessageStatus.DELIVERED,
            confirmation=MessageConfirmation(
                confirmed_at=received_at, relay_url=relay_url, event_id=event.id
            ),
        )

        async with self._store.transaction() as tx:
            if not await tx.insert_event(event, relay_url, received_at):
                return None
            await tx.insert_relay_response(RelayResponse.ok(event.id, relay_url, received_at))
            msg_id = await tx.insert_message(message)
            if msg_id is None:
                return None
            contact_created = await tx.insert_contact_if_missing(DbContact.unknown(counterparty))
            await tx.update_contact_last_message(
                counterparty, msg_id, event.created_at, increment_unseen=not is_own
            )
            contact = await tx.fetch_contact(counterparty) if contact_created else None

        stored = replace(message, msg_id=msg_id)
        if contact is not None:
            self._emit(ContactCreated(contact=contact))
        self._emit(ReceivedDM(message=stored, contact_created=contact_created))
        self._logger.debug("dm_stored", event_id=event.id, own=is_own, msg_id=msg_id)
        return stored

    # -------------------------------------------------------------------------
    # Outgoing
    # -------------------------------------------------------------------------

    async def send(
        self, recipient: str, plaintext: str, created_at: int
    ) -> tuple[Event, DbMessage]:
        """Sign a DM and store it pending, ready for publishing.

        Raises:
            ValueError: If *recipient* is not a valid key or is the local user.
        """
        if recipient == self._codec.public_key:
            raise ValueError("cannot send a direct message to oneself")
        event = self._codec.build_dm(recipient, plaintext, created_at)
        message = DbMessage(
            event_id=event.id,
            counterparty=recipient,
            is_own=True,
            created_at=event.created_at,
            content=plaintext,
        )

        async with self._store.transaction() as tx:
            await tx.insert_event(event)
            msg_id = await tx.insert_message(message)
            await tx.insert_contact_if_missing(DbContact.unknown(recipient))
            if msg_id is not None:
                await tx.update_contact_last_message(
                    recipient, msg_id, event.created_at, increment_unseen=False
                )

        self._logger.info("dm_pending", event_id=event.id, recipient=recipient)
        return event, replace(message, msg_id=msg_id)

    async def confirm_in(
        self, tx: CacheSession, event: Event, relay_url: str, confirmed_at: int
    ) -> MessageDelivered:
        """Advance an own message to ``DELIVERED`` inside the caller's transaction."""
        await tx.confirm_message(event.id, relay_url, confirmed_at)
        stored = await tx.fetch_message_by_event(event.id)
        counterparty = stored.counterparty if stored else self._codec.dm_counterparty(event)
        return MessageDelivered(
            event_id=event.id,
            kind=event.kind,
            relay_url=relay_url,
            confirmed_at=confirmed_at,
            counterparty=counterparty,
            msg_id=stored.msg_id if stored else None,
        )

    # -------------------------------------------------------------------------
    # Chats
    # -------------------------------------------------------------------------

    async def open_chat(self, counterparty: str) -> list[DbMessage]:
        """Return the chat with *counterparty* and mark its incoming messages seen."""
        async with self._store.transaction() as tx:
            messages = await tx.fetch_chat(counterparty)
            seen = await tx.mark_chat_seen(counterparty)
            await tx.reset_unseen(counterparty)

        if seen:
            self._emit(MessagesSeen(counterparty=counterparty, count=seen))
        return [m.advance(MessageStatus.SEEN) if m.is_unseen else m for m in messages]

    async def chat_info(self, counterparty: str) -> ChatInfo:
        async with self._store.session() as s:
            contact = await s.fetch_contact(counterparty)
            profile = await s.fetch_profile(counterparty)
            messages = await s.fetch_chat(counterparty)
        return ChatInfo(
            counterparty=counterparty,
            contact=contact,
            profile=profile,
            unseen_count=contact.unseen_count if contact else 0,
            message_count=len(messages),
            last_message_at=contact.last_message_at if contact else None,
        )
