"""Pure frozen dataclasses for the synchronization engine. Zero I/O.

See Also:
    [nostrsync.core.store][nostrsync.core.store]: Persists these models via
        their ``to_db_params()`` methods.
"""

from .constants import (
    ContactStatus,
    EventKind,
    ImageKind,
    MessageStatus,
    NetworkType,
    RelayStatus,
    ResponseStatus,
    ServiceName,
    SubscriptionType,
    UpdateOutcome,
)
from .contact import DbContact
from .event import Event, StoredEvent
from .message import DbMessage, MessageConfirmation
from .metadata import (
    ChannelCache,
    ChannelMetadata,
    ChannelSubscription,
    ProfileCache,
    ProfileMetadata,
)
from .relay import RelayEntry, RelayUrl
from .relay_message import (
    AuthMessage,
    CountMessage,
    EoseMessage,
    EventMessage,
    NoticeMessage,
    OkMessage,
    RelayMessage,
    RelayStatusChanged,
)
from .relay_response import RelayResponse


__all__ = [
    "AuthMessage",
    "ChannelCache",
    "ChannelMetadata",
    "ChannelSubscription",
    "ContactStatus",
    "CountMessage",
    "DbContact",
    "DbMessage",
    "EoseMessage",
    "Event",
    "EventKind",
    "EventMessage",
    "ImageKind",
    "MessageConfirmation",
    "MessageStatus",
    "NetworkType",
    "NoticeMessage",
    "OkMessage",
    "ProfileCache",
    "ProfileMetadata",
    "RelayEntry",
    "RelayMessage",
    "RelayResponse",
    "RelayStatus",
    "RelayStatusChanged",
    "RelayUrl",
    "ResponseStatus",
    "ServiceName",
    "StoredEvent",
    "SubscriptionType",
    "UpdateOutcome",
]
