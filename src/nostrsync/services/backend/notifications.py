"""
Notifications emitted by the backend to the presentation layer.

Notifications are immutable facts about state that has already been
persisted: by the time a consumer sees ``MessageDelivered`` the message row
is committed. They are put on the coordinator's outbound queue in the order
the dispatch loop produced them.

Confirmation notifications share the
[EventConfirmed][nostrsync.services.backend.notifications.EventConfirmed]
base, so a consumer interested in "any own event confirmed" can match on
the base class while kind-specific consumers match the subclass. Exactly one
of them is emitted per event id.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from nostrsync.models.constants import ImageKind, RelayStatus
from nostrsync.models.contact import DbContact
from nostrsync.models.event import Event
from nostrsync.models.message import DbMessage
from nostrsync.models.metadata import ChannelCache, ProfileCache
from nostrsync.models.relay import RelayEntry


# ---------------------------------------------------------------------------
# Confirmation
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class EventConfirmed:
    """An own event was confirmed by its first relay."""

    event_id: str
    kind: int
    relay_url: str
    confirmed_at: int


@dataclass(frozen=True, slots=True)
class MessageDelivered(EventConfirmed):
    counterparty: str
    msg_id: int | None = None


@dataclass(frozen=True, slots=True)
class ContactListConfirmed(EventConfirmed):
    pass


@dataclass(frozen=True, slots=True)
class MetadataConfirmed(EventConfirmed):
    is_user: bool = True


@dataclass(frozen=True, slots=True)
class RelayResponseFailed:
    """A relay rejected an own event (``OK false``). The event stays pending."""

    event_id: str
    relay_url: str
    message: str


@dataclass(frozen=True, slots=True)
class PendingEventsAbandoned:
    """Own events given up on at shutdown or logout; still stored unconfirmed."""

    event_ids: tuple[str, ...]


# ---------------------------------------------------------------------------
# Contacts and messages
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ContactCreated:
    contact: DbContact


@dataclass(frozen=True, slots=True)
class ContactUpdated:
    contact: DbContact


@dataclass(frozen=True, slots=True)
class ContactDeleted:
    pubkey: str


@dataclass(frozen=True, slots=True)
class ContactListReplaced:
    """A newer contact list was applied; emitted after the per-contact changes."""

    event_id: str
    created_at: int
    contact_count: int


@dataclass(frozen=True, slots=True)
class ReceivedDM:
    """A direct message was stored (incoming, or own seen via another client)."""

    message: DbMessage
    contact_created: bool = False


@dataclass(frozen=True, slots=True)
class MessagesSeen:
    counterparty: str
    count: int


# ---------------------------------------------------------------------------
# Metadata and images
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ProfileUpdated:
    profile: ProfileCache
    is_user: bool = False


@dataclass(frozen=True, slots=True)
class ChannelUpdated:
    channel: ChannelCache


@dataclass(frozen=True, slots=True)
class ImageDownloadRequested:
    """Cached metadata references an image that has no local artifact yet."""

    subject_id: str
    url: str
    kind: ImageKind


@dataclass(frozen=True, slots=True)
class ImageCacheChanged:
    subject_id: str
    kind: ImageKind
    path: str | None


# ---------------------------------------------------------------------------
# Other events
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class TextNoteReceived:
    event: Event


@dataclass(frozen=True, slots=True)
class RelayRecommended:
    event: Event
    url: str


@dataclass(frozen=True, slots=True)
class ChannelMessageReceived:
    channel_id: str
    event: Event


@dataclass(frozen=True, slots=True)
class OtherKindEventInserted:
    """An event of a kind without dedicated handling was stored."""

    event: Event


# ---------------------------------------------------------------------------
# Relays and session
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class RelayStatusUpdated:
    relay_url: str
    status: RelayStatus
    error: str | None = None


@dataclass(frozen=True, slots=True)
class RelayListChanged:
    relays: tuple[RelayEntry, ...]


@dataclass(frozen=True, slots=True)
class RelayNotice:
    relay_url: str
    message: str


@dataclass(frozen=True, slots=True)
class SubscriptionExhausted:
    """A relay sent EOSE (or timed out) for one subscription."""

    relay_url: str
    subscription_id: str


@dataclass(frozen=True, slots=True)
class ClockOffsetChanged:
    offset_us: int


@dataclass(frozen=True, slots=True)
class CommandFailed:
    """A command could not be completed; the backend keeps running."""

    command: str
    error: str


Notification = (
    EventConfirmed
    | RelayResponseFailed
    | PendingEventsAbandoned
    | ContactCreated
    | ContactUpdated
    | ContactDeleted
    | ContactListReplaced
    | ReceivedDM
    | MessagesSeen
    | ProfileUpdated
    | ChannelUpdated
    | ImageDownloadRequested
    | ImageCacheChanged
    | TextNoteReceived
    | RelayRecommended
    | ChannelMessageReceived
    | OtherKindEventInserted
    | RelayStatusUpdated
    | RelayListChanged
    | RelayNotice
    | SubscriptionExhausted
    | ClockOffsetChanged
    | CommandFailed
)

NotificationSink = Callable[[Notification], None]
