"""Backend service: commands in, notifications out, one dispatch loop.

```text
 presentation ──submit(Command)──►┐
                                  │   inbox    ┌─► DirectMessageHandler
 RelayConnectionPool ─messages──► ├──────────► ├─► ContactListReconciler
   (one RelayWorker per relay)    │  dispatch  ├─► MetadataCache
                                  │            └─► ConfirmationReconciler
 presentation ◄── notifications ──┘                      │
                                                 LocalCacheStore
```

Attributes:
    BackendCoordinator: The service; see
        [service][nostrsync.services.backend.service].
    BackendConfig: Its configuration model.
    RelayConnectionPool: Per-relay workers feeding the inbox.
    PendingEventStore: Own events awaiting their first confirmation.
"""

from .commands import (
    COMMAND_TYPES,
    AddContact,
    AddRelay,
    CancelPendingEvent,
    ChannelDetails,
    ChatInfo,
    Command,
    DeleteContact,
    DeleteRelay,
    ExportContacts,
    ExportMessages,
    FetchChannelDetails,
    FetchChatInfo,
    FetchContactProfiles,
    FetchContacts,
    FetchMessages,
    FetchProfile,
    FetchRelayResponses,
    FetchRelays,
    FetchSubscribedChannels,
    GetRelayStatusList,
    GetUserProfileMeta,
    ImageDownloaded,
    ImportContacts,
    Logout,
    RemoveFileFromCache,
    RequestSync,
    SearchChannels,
    SendContactListToRelays,
    SendDM,
    SetClockOffset,
    SubscribeChannel,
    ToggleRelayRead,
    ToggleRelayWrite,
    UnsubscribeChannel,
    UpdateContact,
    UpdateUserProfileMeta,
)
from .configs import (
    BackendConfig,
    ChannelLimitsConfig,
    NotificationsConfig,
    RelayPoolConfig,
    SyncConfig,
)
from .pending import PendingEvent, PendingEventStore
from .relay_pool import RelayConnectionPool, RelayWorker
from .service import BackendCoordinator


__all__ = [
    "COMMAND_TYPES",
    "AddContact",
    "AddRelay",
    "BackendConfig",
    "BackendCoordinator",
    "CancelPendingEvent",
    "ChannelDetails",
    "ChannelLimitsConfig",
    "ChatInfo",
    "Command",
    "DeleteContact",
    "DeleteRelay",
    "ExportContacts",
    "ExportMessages",
    "FetchChannelDetails",
    "FetchChatInfo",
    "FetchContactProfiles",
    "FetchContacts",
    "FetchMessages",
    "FetchProfile",
    "FetchRelayResponses",
    "FetchRelays",
    "FetchSubscribedChannels",
    "GetRelayStatusList",
    "GetUserProfileMeta",
    "ImageDownloaded",
    "ImportContacts",
    "Logout",
    "NotificationsConfig",
    "PendingEvent",
    "PendingEventStore",
    "RelayConnectionPool",
    "RelayPoolConfig",
    "RelayWorker",
    "RemoveFileFromCache",
    "RequestSync",
    "SearchChannels",
    "SendContactListToRelays",
    "SendDM",
    "SetClockOffset",
    "SubscribeChannel",
    "SyncConfig",
    "ToggleRelayRead",
    "ToggleRelayWrite",
    "UnsubscribeChannel",
    "UpdateContact",
    "UpdateUserProfileMeta",
]
