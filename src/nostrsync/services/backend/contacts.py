"""
Contact-list reconciliation and local contact editing.

A contact list (kind 3, NIP-02) is a replaceable event: only the newest one
authored by the local key counts.
[ContactListReconciler][nostrsync.services.backend.contacts.ContactListReconciler]
applies such events to the ``contact`` table so that, whatever order the
lists arrive in, the stored known contacts always equal the newest list.

Applying a list is one transaction:

1. Compare with the newest stored kind-3 of the user (the incoming event
   itself excluded, since an own pending list is already stored).
2. Drop older kind-3 events and store the new one.
3. Diff against the stored known contacts: delete the absent ones, insert
   the new ones, update petname and relay hint of the kept ones.

Contacts with status ``unknown`` were created by DM traffic with strangers.
They are not part of any list and survive list replacement untouched,
unless the new list names them, in which case they become known.

Local edits (add, update, delete, import) only write the ``contact`` table;
the coordinator then signs and publishes the resulting list like any other
own event.

See Also:
    [parse_contact_list()][nostrsync.nips.nip02.parse_contact_list]: Tag parsing.
    [ConfirmationReconciler][nostrsync.services.backend.confirmation.ConfirmationReconciler]:
        Applies own lists through ``apply_in()`` on first confirmation.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from nostrsync.core.logger import Logger
from nostrsync.models.constants import ContactStatus, EventKind, UpdateOutcome
from nostrsync.models.contact import DbContact
from nostrsync.nips.nip02 import parse_contact_list

from .notifications import (
    ContactCreated,
    ContactDeleted,
    ContactListReplaced,
    ContactUpdated,
    Notification,
    NotificationSink,
)


if TYPE_CHECKING:
    from collections.abc import Iterable

    from nostrsync.core.store import CacheSession, LocalCacheStore
    from nostrsync.models.event import Event
    from nostrsync.nips.codec import EventCodec


class ContactListReconciler:
    """Keeps the ``contact`` table equal to the newest own contact list.

    Args:
        store: Cache the contacts live in.
        codec: Identifies the local user.
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
        self._logger = logger or Logger("backend.contacts")

    # -------------------------------------------------------------------------
    # Contact-list events
    # -------------------------------------------------------------------------

    async def apply(
        self,
        event: Event,
        relay_url: str | None = None,
        confirmed_at: int | None = None,
    ) -> UpdateOutcome:
        """Apply a contact list received from a relay.

        Lists authored by other keys are ignored (``STALE``, no writes).

        Returns:
            ``UPDATED`` if the list replaced the stored contacts.
        """
        if not self._codec.is_own(event):
            self._logger.debug("contact_list_ignored", event_id=event.id, author=event.pubkey)
            return UpdateOutcome.STALE

        async with self._store.transaction() as tx:
            outcome, notifications = await self.apply_in(tx, event, relay_url, confirmed_at)

        for notification in notifications:
            self._emit(notification)
        return outcome

    async def apply_in(
        self,
        tx: CacheSession,
        event: Event,
        relay_url: str | None = None,
        confirmed_at: int | None = None,
    ) -> tuple[UpdateOutcome, list[Notification]]:
        """Apply *event* inside the caller's transaction.

        Returns:
            The outcome and the notifications to emit once the caller commits.
        """
        latest = await tx.latest_event_timestamp(
            EventKind.CONTACT_LIST, author=event.pubkey, exclude_id=event.id
        )
        if latest is not None and event.created_at <= latest:
            self._logger.debug(
                "contact_list_stale", event_id=event.id, created_at=event.created_at, latest=latest
            )
            return UpdateOutcome.STALE, []

        await tx.delete_events_of_kind(EventKind.CONTACT_LIST, event.pubkey, event.created_at)
        await tx.insert_event(event, relay_url, confirmed_at)

        listed = [c for c in parse_contact_list(event) if c.pubkey != event.pubkey]
        notifications = await self._replace_known(tx, listed)
        notifications.append(
            ContactListReplaced(
                event_id=event.id, created_at=event.created_at, contact_count=len(listed)
            )
        )

        self._logger.info(
            "contact_list_applied",
            event_id=event.id,
            contacts=len(listed),
            changes=len(notifications) - 1,
        )
        return UpdateOutcome.UPDATED, notifications

    async def _replace_known(
        self, tx: CacheSession, listed: list[DbContact]
    ) -> list[Notification]:
        """Make the known contacts equal *listed*; unknown rows not listed stay."""
        current = {c.pubkey: c for c in await tx.fetch_contacts()}
        listed_keys = {c.pubkey for c in listed}
        notifications: list[Notification] = []

        for pubkey, contact in current.items():
            if contact.is_known and pubkey not in listed_keys:
                await tx.delete_contact(pubkey)
                notifications.append(ContactDeleted(pubkey=pubkey))

        for contact in listed:
            existing = current.get(contact.pubkey)
            if existing is None:
                await tx.upsert_contact(contact)
                notifications.append(ContactCreated(contact=contact))
                continue
            updated = existing.with_list_fields(contact.petname, contact.relay_hint)
            if not existing.same_list_fields(updated):
                await tx.upsert_contact(updated)
                notifications.append(ContactUpdated(contact=updated))

        return notifications

    # -------------------------------------------------------------------------
    # Local edits
    # -------------------------------------------------------------------------

    async def add_contact(self, contact: DbContact) -> DbContact:
        """Store *contact* as known, promoting an existing unknown row.

        Raises:
            ValueError: If *contact* is the local user.
        """
        self._reject_self(contact.pubkey)
        async with self._store.transaction() as tx:
            existing = await tx.fetch_contact(contact.pubkey)
            if existing is None:
                stored = DbContact(
                    pubkey=contact.pubkey,
                    petname=contact.petname,
                    relay_hint=contact.relay_hint,
                )
            else:
                stored = existing.with_list_fields(contact.petname, contact.relay_hint)
            await tx.upsert_contact(stored)

        if existing is None:
            self._emit(ContactCreated(contact=stored))
        else:
            self._emit(ContactUpdated(contact=stored))
        return stored

    async def update_contact(
        self, pubkey: str, petname: str | None, relay_hint: str | None
    ) -> DbContact:
        """Change petname and relay hint of a stored contact.

        Raises:
            KeyError: If no contact exists for *pubkey*.
        """
        async with self._store.transaction() as tx:
            existing = await tx.fetch_contact(pubkey)
            if existing is None:
                raise KeyError(f"no contact {pubkey}")
            updated = existing.with_list_fields(petname, relay_hint)
            await tx.upsert_contact(updated)

        self._emit(ContactUpdated(contact=updated))
        return updated

    async def delete_contact(self, pubkey: str) -> bool:
        """Remove a contact. Returns ``False`` if there was none."""
        async with self._store.session() as s:
            deleted = await s.delete_contact(pubkey)
        if deleted:
            self._emit(ContactDeleted(pubkey=pubkey))
        return deleted

    async def import_contacts(self, contacts: Iterable[DbContact], *, replace: bool) -> int:
        """Merge imported contacts in one transaction.

        Args:
            contacts: Contacts read from an export file.
            replace: Also delete known contacts absent from *contacts*.

        Returns:
            The number of imported contacts.
        """
        imported = {c.pubkey: c for c in contacts if c.pubkey != self._codec.public_key}
        notifications: list[Notification] = []

        async with self._store.transaction() as tx:
            current = {c.pubkey: c for c in await tx.fetch_contacts()}
            if replace:
                for pubkey, contact in current.items():
                    if contact.is_known and pubkey not in imported:
                        await tx.delete_contact(pubkey)
                        notifications.append(ContactDeleted(pubkey=pubkey))
            for contact in imported.values():
                existing = current.get(contact.pubkey)
                if existing is None:
                    stored = DbContact(
                        pubkey=contact.pubkey,
                        petname=contact.petname,
                        relay_hint=contact.relay_hint,
                    )
                    await tx.upsert_contact(stored)
                    notifications.append(ContactCreated(contact=stored))
                    continue
                updated = existing.with_list_fields(contact.petname, contact.relay_hint)
                if not existing.same_list_fields(updated):
                    await tx.upsert_contact(updated)
                    notifications.append(ContactUpdated(contact=updated))

        for notification in notifications:
            self._emit(notification)
        self._logger.info("contacts_imported", count=len(imported), replace=replace)
        return len(imported)

    async def known_contacts(self) -> list[DbContact]:
        """Return the contacts that make up the user's list."""
        async with self._store.session() as s:
            return await s.fetch_contacts(ContactStatus.KNOWN)

    def _reject_self(self, pubkey: str) -> None:
        if pubkey == self._codec.public_key:
            raise ValueError("cannot add the local user as a contact")
