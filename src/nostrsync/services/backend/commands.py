"""
Commands accepted from the presentation layer.

Every command is an immutable value submitted through
[BackendCoordinator.submit()][nostrsync.services.backend.service.BackendCoordinator.submit],
which returns an ``asyncio.Future`` resolved with the command's result once
the dispatch loop has processed it. Side effects are also announced as
notifications, so a UI may ignore the future entirely.

Results:

```text
FetchContacts            list[DbContact]
AddContact               DbContact
UpdateContact            DbContact
DeleteContact            bool                     (False if it did not exist)
FetchRelays              list[RelayEntry]
AddRelay                 RelayEntry
DeleteRelay              bool
ToggleRelayRead / ToggleRelayWrite                RelayEntry (after the toggle)
GetRelayStatusList       list[RelayEntry]         (with live status)
FetchMessages            list[DbMessage]          (marks incoming Seen)
FetchRelayResponses      list[RelayResponse]
FetchChatInfo            ChatInfo
GetUserProfileMeta       ProfileCache | None
FetchProfile             ProfileCache | None      (also queried on relays)
FetchContactProfiles     dict[str, ProfileCache]  (cached profiles of all contacts)
FetchChannelDetails      ChannelDetails           (also queried on relays)
SubscribeChannel         ChannelSubscription      (the existing one if already followed)
UnsubscribeChannel       bool
FetchSubscribedChannels  list[ChannelSubscription]
SendDM                   DbMessage                (pending)
UpdateUserProfileMeta    Event                    (pending kind 0)
SendContactListToRelays  Event                    (pending kind 3)
ExportMessages / ExportContacts / ImportContacts   int (rows)
CancelPendingEvent       bool
ImageDownloaded / RemoveFileFromCache             bool (a cache row changed)
everything else          None
```
"""

from __future__ import annotations

from dataclasses import dataclass, field

from nostrsync.models.constants import ImageKind
from nostrsync.models.contact import DbContact
from nostrsync.models.event import Event
from nostrsync.models.metadata import (
    ChannelCache,
    ChannelSubscription,
    ProfileCache,
    ProfileMetadata,
)


# ---------------------------------------------------------------------------
# Contacts
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class FetchContacts:
    pass


@dataclass(frozen=True, slots=True)
class AddContact:
    """Add a key to the contact list (or promote an unknown contact)."""

    pubkey: str
    petname: str | None = None
    relay_hint: str | None = None


@dataclass(frozen=True, slots=True)
class UpdateContact:
    pubkey: str
    petname: str | None = None
    relay_hint: str | None = None


@dataclass(frozen=True, slots=True)
class DeleteContact:
    pubkey: str


@dataclass(frozen=True, slots=True)
class ImportContacts:
    """Load contacts from a JSON export file.

    With ``replace`` the known contacts absent from the file are removed.
    """

    path: str
    replace: bool = False


@dataclass(frozen=True, slots=True)
class ExportContacts:
    path: str


@dataclass(frozen=True, slots=True)
class SendContactListToRelays:
    """Publish the current known contacts as a new kind-3 event."""


# ---------------------------------------------------------------------------
# Relays
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class FetchRelays:
    pass


@dataclass(frozen=True, slots=True)
class AddRelay:
    url: str
    read: bool = True
    write: bool = True


@dataclass(frozen=True, slots=True)
class DeleteRelay:
    url: str


@dataclass(frozen=True, slots=True)
class ToggleRelayRead:
    url: str


@dataclass(frozen=True, slots=True)
class ToggleRelayWrite:
    url: str


@dataclass(frozen=True, slots=True)
class GetRelayStatusList:
    pass


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class SendDM:
    recipient: str
    plaintext: str


@dataclass(frozen=True, slots=True)
class FetchMessages:
    """Open the chat with *counterparty*: return it and mark it seen."""

    counterparty: str


@dataclass(frozen=True, slots=True)
class FetchRelayResponses:
    event_id: str


@dataclass(frozen=True, slots=True)
class FetchChatInfo:
    counterparty: str


@dataclass(frozen=True, slots=True)
class ExportMessages:
    """Write messages to *path* as JSON; all chats when *counterparty* is ``None``."""

    path: str
    counterparty: str | None = None


# ---------------------------------------------------------------------------
# Profiles, channels and images
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class FetchContactProfiles:
    """Cached profiles of every contact, keyed by public key, in one query."""


@dataclass(frozen=True, slots=True)
class GetUserProfileMeta:
    pass


@dataclass(frozen=True, slots=True)
class UpdateUserProfileMeta:
    metadata: ProfileMetadata


@dataclass(frozen=True, slots=True)
class FetchProfile:
    pubkey: str


@dataclass(frozen=True, slots=True)
class SearchChannels:
    """Query read relays for channel creations, optionally one channel by id."""

    channel_id: str | None = None


@dataclass(frozen=True, slots=True)
class FetchChannelDetails:
    """Cached channel metadata and its newest stored messages."""

    channel_id: str


@dataclass(frozen=True, slots=True)
class SubscribeChannel:
    """Follow a channel; its messages are requested from the read relays."""

    channel_id: str


@dataclass(frozen=True, slots=True)
class UnsubscribeChannel:
    channel_id: str


@dataclass(frozen=True, slots=True)
class FetchSubscribedChannels:
    pass


@dataclass(frozen=True, slots=True)
class ImageDownloaded:
    """The image downloader stored an artifact for *subject_id*."""

    subject_id: str
    kind: ImageKind
    path: str


@dataclass(frozen=True, slots=True)
class RemoveFileFromCache:
    subject_id: str
    kind: ImageKind


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class SetClockOffset:
    """Apply and persist a clock offset measured by the NTP probe."""

    offset_us: int


@dataclass(frozen=True, slots=True)
class CancelPendingEvent:
    """Stop waiting for confirmation of an own event (it stays stored unconfirmed)."""

    event_id: str


@dataclass(frozen=True, slots=True)
class RequestSync:
    """Query every read relay for what changed since the last stored events."""


@dataclass(frozen=True, slots=True)
class Logout:
    """Abandon pending events and shut the backend down."""


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ChatInfo:
    """Header data of one conversation."""

    counterparty: str
    contact: DbContact | None
    profile: ProfileCache | None
    unseen_count: int = 0
    message_count: int = 0
    last_message_at: int | None = None


@dataclass(frozen=True, slots=True)
class ChannelDetails:
    """One channel as shown when it is opened."""

    channel_id: str
    channel: ChannelCache | None
    messages: list[Event] = field(default_factory=list)
    subscribed: bool = False


Command = (
    FetchContacts
    | AddContact
    | UpdateContact
    | DeleteContact
    | ImportContacts
    | ExportContacts
    | SendContactListToRelays
    | FetchRelays
    | AddRelay
    | DeleteRelay
    | ToggleRelayRead
    | ToggleRelayWrite
    | GetRelayStatusList
    | SendDM
    | FetchMessages
    | FetchRelayResponses
    | FetchChatInfo
    | ExportMessages
    | GetUserProfileMeta
    | UpdateUserProfileMeta
    | FetchContactProfiles
    | FetchProfile
    | SearchChannels
    | FetchChannelDetails
    | SubscribeChannel
    | UnsubscribeChannel
    | FetchSubscribedChannels
    | ImageDownloaded
    | RemoveFileFromCache
    | SetClockOffset
    | CancelPendingEvent
    | RequestSync
    | Logout
)

COMMAND_TYPES: tuple[type, ...] = Command.__args__  # type: ignore[attr-defined]
