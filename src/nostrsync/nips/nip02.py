"""
NIP-02 contact lists (kind 3).

Each ``p`` tag lists one followed key: ``["p", <pubkey>, <relay hint>,
<petname>]``; hint and petname are optional and may be empty strings.

Relay hints are kept as advisory data only. Nothing in the engine decides
where to read or whether to accept an event based on a hint.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from nostrsync.models.contact import DbContact
from nostrsync.models.event import Event


logger = logging.getLogger(__name__)

_HEX_DIGITS = frozenset("0123456789abcdef")
_PUBKEY_LEN = 64
_HINT_INDEX = 2
_PETNAME_INDEX = 3


def _is_pubkey(value: str) -> bool:
    return len(value) == _PUBKEY_LEN and set(value) <= _HEX_DIGITS


def parse_contact_list(event: Event) -> list[DbContact]:
    """Return the contacts listed in a kind-3 event, in tag order.

    Tags with an invalid public key are skipped; a key listed twice keeps
    its first entry. Returned contacts are ``KNOWN`` and carry no local
    fields.
    """
    contacts: list[DbContact] = []
    seen: set[str] = set()
    for tag in event.tags_named("p"):
        if len(tag) < 2:  # noqa: PLR2004
            continue
        pubkey = tag[1].lower()
        if not _is_pubkey(pubkey):
            logger.debug("contact_tag_skipped event=%s value=%r", event.id, tag[1][:80])
            continue
        if pubkey in seen:
            continue
        seen.add(pubkey)
        hint = tag[_HINT_INDEX] if len(tag) > _HINT_INDEX else None
        petname = tag[_PETNAME_INDEX] if len(tag) > _PETNAME_INDEX else None
        contacts.append(DbContact(pubkey=pubkey, petname=petname, relay_hint=hint))
    return contacts


def contact_list_tags(contacts: Iterable[DbContact]) -> list[list[str]]:
    """Return ``p`` tags for *contacts*, omitting trailing empty fields."""
    tags: list[list[str]] = []
    for contact in contacts:
        tag = ["p", contact.pubkey, contact.relay_hint or "", contact.petname or ""]
        while len(tag) > 2 and not tag[-1]:  # noqa: PLR2004
            tag.pop()
        tags.append(tag)
    return tags
