"""
Contact rows of the local user.

A contact is keyed by public key. Contact-list events (NIP-02) replace the
set of [KNOWN][nostrsync.models.constants.ContactStatus] contacts as a whole;
DM traffic with a stranger creates an
[UNKNOWN][nostrsync.models.constants.ContactStatus] row so the conversation
has somewhere to hang its unseen counter.

See Also:
    [ContactListReconciler][nostrsync.services.backend.contacts.ContactListReconciler]:
        Applies contact-list events to these rows.
    [parse_contact_list()][nostrsync.nips.nip02.parse_contact_list]: Builds
        [DbContact][nostrsync.models.contact.DbContact] values from ``p`` tags.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import NamedTuple

from ._validation import (
    validate_hex,
    validate_instance,
    validate_optional_str,
    validate_optional_timestamp,
    validate_timestamp,
)
from .constants import ContactStatus


class ContactDbParams(NamedTuple):
    """Positional parameters for the ``contact`` table."""

    pubkey: bytes
    petname: str | None
    relay_hint: str | None
    profile_image_ref: str | None
    status: str
    unseen_count: int
    last_message_at: int | None
    last_message_id: int | None


@dataclass(frozen=True, slots=True)
class DbContact:
    """One contact of the local user.

    Attributes:
        pubkey: 64-char hex public key, the primary key.
        petname: Local nickname from the contact list, if any.
        relay_hint: Relay URL suggested by the contact list. Advisory only:
            never used to decide whether an event is accepted.
        profile_image_ref: Path of the downloaded profile picture, if any.
        status: Whether the contact is listed or only known from DMs.
        unseen_count: Incoming messages not yet shown to the user.
        last_message_at: ``created_at`` of the latest message in the chat.
        last_message_id: Local ``msg_id`` of that message.
    """

    pubkey: str
    petname: str | None = None
    relay_hint: str | None = None
    profile_image_ref: str | None = None
    status: ContactStatus = ContactStatus.KNOWN
    unseen_count: int = 0
    last_message_at: int | None = None
    last_message_id: int | None = None

    def __post_init__(self) -> None:
        validate_hex(self.pubkey, 64, "pubkey")
        validate_optional_str(self.petname, "petname")
        validate_optional_str(self.relay_hint, "relay_hint")
        validate_optional_str(self.profile_image_ref, "profile_image_ref")
        object.__setattr__(self, "status", ContactStatus(self.status))
        validate_timestamp(self.unseen_count, "unseen_count")
        validate_optional_timestamp(self.last_message_at, "last_message_at")
        if self.last_message_id is not None:
            validate_instance(self.last_message_id, int, "last_message_id")
        # Empty strings from tags mean "absent"
        if self.petname == "":
            object.__setattr__(self, "petname", None)
        if self.relay_hint == "":
            object.__setattr__(self, "relay_hint", None)

    @classmethod
    def unknown(cls, pubkey: str) -> DbContact:
        """Return a placeholder contact created by DM traffic."""
        return cls(pubkey=pubkey, status=ContactStatus.UNKNOWN)

    @property
    def is_known(self) -> bool:
        """Whether the contact belongs to the user's contact list."""
        return self.status == ContactStatus.KNOWN

    def same_list_fields(self, other: DbContact) -> bool:
        """Whether the fields carried by a contact list equal *other*'s."""
        return (
            self.petname == other.petname
            and self.relay_hint == other.relay_hint
            and self.status == other.status
        )

    def with_list_fields(self, petname: str | None, relay_hint: str | None) -> DbContact:
        """Return a copy with contact-list fields replaced and status KNOWN.

        Local-only fields (image reference, unseen counter, last message) are
        preserved.
        """
        return replace(self, petname=petname, relay_hint=relay_hint, status=ContactStatus.KNOWN)

    def to_db_params(self) -> ContactDbParams:
        """Return positional parameters for the ``contact`` table."""
        return ContactDbParams(
            pubkey=bytes.fromhex(self.pubkey),
            petname=self.petname,
            relay_hint=self.relay_hint,
            profile_image_ref=self.profile_image_ref,
            status=self.status.value,
            unseen_count=self.unseen_count,
            last_message_at=self.last_message_at,
            last_message_id=self.last_message_id,
        )

    @classmethod
    def from_db_params(cls, params: ContactDbParams) -> DbContact:
        """Rebuild a contact from a stored row."""
        return cls(
            pubkey=params.pubkey.hex(),
            petname=params.petname,
            relay_hint=params.relay_hint,
            profile_image_ref=params.profile_image_ref,
            status=ContactStatus(params.status),
            unseen_count=params.unseen_count,
            last_message_at=params.last_message_at,
            last_message_id=params.last_message_id,
        )
