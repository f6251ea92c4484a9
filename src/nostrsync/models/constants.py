"""Shared enumerations for the models layer.

Kept in one module so that models, services, and the SQL layer agree on the
integer and string values that end up in the database and in metric labels.

See Also:
    [Event][nostrsync.models.event.Event]: Carries an
        [EventKind][nostrsync.models.constants.EventKind]-compatible ``kind``.
    [DbMessage][nostrsync.models.message.DbMessage]: Uses
        [MessageStatus][nostrsync.models.constants.MessageStatus] for its
        monotonic lifecycle.
    [BackendCoordinator][nostrsync.services.backend.service.BackendCoordinator]:
        Dispatches on [EventKind][nostrsync.models.constants.EventKind].
"""

from __future__ import annotations

from enum import IntEnum, StrEnum


class EventKind(IntEnum):
    """Closed set of Nostr event kinds the engine handles explicitly.

    Every member must have a handler registered in the coordinator's kind
    dispatch table; the coordinator checks this at construction. Kinds that
    are not members are still stored, through the generic handler.

    Attributes:
        METADATA: NIP-01 kind 0, profile metadata JSON (replaceable).
        TEXT_NOTE: NIP-01 kind 1, short text note.
        RECOMMEND_RELAY: NIP-01 kind 2, relay recommendation (deprecated).
        CONTACT_LIST: NIP-02 kind 3, follow list with petnames and hints.
        ENCRYPTED_DIRECT_MESSAGE: NIP-04 kind 4, encrypted DM.
        CHANNEL_CREATION: NIP-28 kind 40, creates a public chat channel.
        CHANNEL_METADATA: NIP-28 kind 41, updates channel metadata.
        CHANNEL_MESSAGE: NIP-28 kind 42, message posted to a channel.
    """

    METADATA = 0
    TEXT_NOTE = 1
    RECOMMEND_RELAY = 2
    CONTACT_LIST = 3
    ENCRYPTED_DIRECT_MESSAGE = 4
    CHANNEL_CREATION = 40
    CHANNEL_METADATA = 41
    CHANNEL_MESSAGE = 42

    @classmethod
    def from_int(cls, value: int) -> EventKind | None:
        """Return the member for *value*, or ``None`` for kinds outside the set."""
        try:
            return cls(value)
        except ValueError:
            return None


class MessageStatus(IntEnum):
    """Lifecycle of a direct message, ordered so that ``>`` means "later".

    Transitions are monotonic: ``PENDING -> DELIVERED -> SEEN``. Applying an
    earlier status to a message already at a later one has no effect, both in
    [DbMessage.advance()][nostrsync.models.message.DbMessage.advance] and in
    the SQL guard of the store.

    Attributes:
        PENDING: Authored locally, not yet acknowledged by any relay.
        DELIVERED: Acknowledged or echoed by a relay, or received from one.
        SEEN: Incoming message displayed to the user.
    """

    PENDING = 1
    DELIVERED = 2
    SEEN = 3


class RelayStatus(StrEnum):
    """Connection status of one relay worker. Never persisted.

    Attributes:
        DISCONNECTED: No live connection (initial state, or after a failure).
        CONNECTING: A connection attempt is in progress.
        CONNECTED: The relay accepted the connection.
    """

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class ResponseStatus(StrEnum):
    """Outcome recorded in a [RelayResponse][nostrsync.models.relay_response.RelayResponse]."""

    OK = "ok"
    ERROR = "error"


class ContactStatus(StrEnum):
    """How a contact row came to exist.

    Attributes:
        KNOWN: Listed in the user's contact list (kind 3) or added by hand.
        UNKNOWN: Created implicitly because a DM arrived from or went to a
            key that is not in the contact list. Contact-list replacement
            never deletes these rows.
    """

    KNOWN = "known"
    UNKNOWN = "unknown"


class ImageKind(StrEnum):
    """Which image artifact of a cached subject an image path refers to."""

    PROFILE = "profile"
    BANNER = "banner"
    CHANNEL = "channel"


class UpdateOutcome(StrEnum):
    """Result of applying a remote metadata event to a cache row."""

    UPDATED = "updated"
    STALE = "stale"


class SubscriptionType(StrEnum):
    """Subscription identifiers attached to relay requests.

    The identifier comes back on every ``EVENT`` and ``EOSE`` so the
    coordinator can react to the end of a specific query (for example,
    requesting contact metadata once the contact list query is exhausted).
    """

    CONTACT_LIST = "contact_list"
    CONTACT_LIST_METADATA = "contact_list_metadata"
    USER_METADATA = "user_metadata"
    MESSAGES = "messages"
    CHANNEL_SEARCH = "channel_search"
    CHANNEL_DETAILS = "channel_details"


class NetworkType(StrEnum):
    """Network a relay URL belongs to, detected from its host.

    Attributes:
        CLEARNET: Public internet host, requires ``wss://``.
        TOR: ``.onion`` host, reached through the configured SOCKS5 proxy.
        I2P: ``.i2p`` host.
        LOKI: ``.loki`` host.
        LOCAL: Loopback or private address.
        UNKNOWN: Host that could not be classified.
    """

    CLEARNET = "clearnet"
    TOR = "tor"
    I2P = "i2p"
    LOKI = "loki"
    LOCAL = "local"
    UNKNOWN = "unknown"


class ServiceName(StrEnum):
    """Service identifiers used as logger names and metric labels."""

    BACKEND = "backend"
