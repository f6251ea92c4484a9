"""
Decrypted direct-message records.

A [DbMessage][nostrsync.models.message.DbMessage] is derived from exactly
one kind-4 [Event][nostrsync.models.event.Event] and shares its id. Its
status only ever moves forward (see
[MessageStatus][nostrsync.models.constants.MessageStatus]).
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import NamedTuple

from ._validation import (
    validate_hex,
    validate_instance,
    validate_str_no_null,
    validate_str_not_empty,
    validate_timestamp,
)
from .constants import MessageStatus


@dataclass(frozen=True, slots=True)
class MessageConfirmation:
    """Which relay first confirmed a locally authored message, and when.

    Attributes:
        confirmed_at: Clock-corrected local time of the first confirmation.
        relay_url: Relay whose acknowledgement or echo came first.
        event_id: Id of the confirmed event (same as the message's).
    """

    confirmed_at: int
    relay_url: str
    event_id: str

    def __post_init__(self) -> None:
        validate_timestamp(self.confirmed_at, "confirmed_at")
        validate_str_not_empty(self.relay_url, "relay_url")
        validate_hex(self.event_id, 64, "event_id")


class MessageDbParams(NamedTuple):
    """Positional parameters for inserting into the ``message`` table.

    ``msg_id`` is assigned by the database and therefore absent.
    """

    event_hash: bytes
    counterparty: bytes
    is_own: bool
    created_at: int
    content: str
    status: int
    confirmed_at: int | None
    relay_url: str | None


@dataclass(frozen=True, slots=True)
class DbMessage:
    """A decrypted direct message, ready for display.

    Attributes:
        event_id: Id of the kind-4 event the message came from.
        counterparty: The other party's public key (recipient if own).
        is_own: Whether the local user authored it.
        created_at: Author timestamp of the event.
        content: Decrypted plaintext. Never ciphertext or partial output.
        status: Current [MessageStatus][nostrsync.models.constants.MessageStatus].
        confirmation: First relay confirmation, for own messages.
        msg_id: Local row id, ``None`` until stored.
    """

    event_id: str
    counterparty: str
    is_own: bool
    created_at: int
    content: str
    status: MessageStatus = MessageStatus.PENDING
    confirmation: MessageConfirmation | None = None
    msg_id: int | None = None

    def __post_init__(self) -> None:
        validate_hex(self.event_id, 64, "event_id")
        validate_hex(self.counterparty, 64, "counterparty")
        validate_instance(self.is_own, bool, "is_own")
        validate_timestamp(self.created_at, "created_at")
        validate_str_no_null(self.content, "content")
        object.__setattr__(self, "status", MessageStatus(self.status))
        if self.confirmation is not None:
            validate_instance(self.confirmation, MessageConfirmation, "confirmation")
        if self.msg_id is not None:
            validate_instance(self.msg_id, int, "msg_id")

    @property
    def is_unseen(self) -> bool:
        """Whether this is an incoming message not yet shown to the user."""
        return not self.is_own and self.status < MessageStatus.SEEN

    def advance(self, status: MessageStatus) -> DbMessage:
        """Return a copy at *status* if that is later, else ``self`` unchanged."""
        if MessageStatus(status) <= self.status:
            return self
        return replace(self, status=MessageStatus(status))

    def confirm(self, confirmation: MessageConfirmation) -> DbMessage:
        """Record the first confirmation and advance to ``DELIVERED``.

        A message that already has a confirmation keeps it: the first relay
        wins.
        """
        if self.confirmation is not None:
            return self.advance(MessageStatus.DELIVERED)
        confirmed = replace(self, confirmation=confirmation)
        return confirmed.advance(MessageStatus.DELIVERED)

    def to_db_params(self) -> MessageDbParams:
        """Return positional parameters for the ``message`` table."""
        conf = self.confirmation
        return MessageDbParams(
            event_hash=bytes.fromhex(self.event_id),
            counterparty=bytes.fromhex(self.counterparty),
            is_own=self.is_own,
            created_at=self.created_at,
            content=self.content,
            status=int(self.status),
            confirmed_at=conf.confirmed_at if conf else None,
            relay_url=conf.relay_url if conf else None,
        )

    @classmethod
    def from_db_params(cls, params: MessageDbParams, msg_id: int | None = None) -> DbMessage:
        """Rebuild a message from a stored row."""
        event_id = params.event_hash.hex()
        confirmation = None
        if params.confirmed_at is not None and params.relay_url is not None:
            confirmation = MessageConfirmation(
                confirmed_at=params.confirmed_at,
                relay_url=params.relay_url,
                event_id=event_id,
            )
        return cls(
            event_id=event_id,
            counterparty=params.counterparty.hex(),
            is_own=params.is_own,
            created_at=params.created_at,
            content=params.content,
            status=MessageStatus(params.status),
            confirmation=confirmation,
            msg_id=msg_id,
        )
