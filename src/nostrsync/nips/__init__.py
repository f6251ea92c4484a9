"""Protocol rules of the NIPs the engine speaks.

Pure functions over [Event][nostrsync.models.event.Event] plus the
[EventCodec][nostrsync.nips.codec.EventCodec], which binds them to the local
keys. Depends on [nostrsync.models][nostrsync.models] and ``nostr_sdk``.

Attributes:
    compute_event_id: NIP-01 canonical id.
    parse_contact_list: NIP-02 ``p`` tags to contacts.
    referenced_channel_id: NIP-28 channel reference of kinds 41/42.
    EventCodec: Sign, verify, encrypt and decrypt for the local user.
"""

from .codec import EventCodec
from .nip01 import compute_event_id, serialize_for_id, verify_event_id
from .nip02 import contact_list_tags, parse_contact_list
from .nip28 import referenced_channel_id


__all__ = [
    "EventCodec",
    "compute_event_id",
    "contact_list_tags",
    "parse_contact_list",
    "referenced_channel_id",
    "serialize_for_id",
    "verify_event_id",
]
