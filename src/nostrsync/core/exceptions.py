"""Exception hierarchy for nostrsync.

Typed exceptions let the dispatch loop tell "drop this input and move on"
apart from "this command failed" without resorting to bare
``except Exception``, and let ``CancelledError`` pass through untouched.

```text
NostrSyncError (base, never raised directly)
├── ConfigurationError        bad YAML, missing env var, invalid settings
├── DatabaseError             local cache store failures
│   ├── ConnectionPoolError   transient: pool closed, connection lost
│   └── QueryError            permanent: bad SQL, unexpected constraint
├── ConnectivityError         relay unreachable
│   └── RelayTimeoutError     connect or request timed out
├── ProtocolError             remote data that cannot be used
│   ├── MalformedEventError   bad id, bad signature, bad metadata JSON
│   └── DecryptionError       DM payload cannot be decrypted
└── PublishingError           nothing could be sent to any write relay
```

See Also:
    [BackendCoordinator.submit()][nostrsync.services.backend.service.BackendCoordinator.submit]:
        The boundary where these are caught and turned into log lines or
        ``CommandFailed`` notifications.
"""

from __future__ import annotations


class NostrSyncError(Exception):
    """Base class of every nostrsync error."""


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class ConfigurationError(NostrSyncError):
    """Invalid or missing configuration (YAML, environment, CLI)."""


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


class DatabaseError(NostrSyncError):
    """Base for local cache store failures.

    Reported to the presentation layer as a backend problem for the affected
    command; the process keeps running.
    """


class ConnectionPoolError(DatabaseError):
    """Transient store error: the pool is closed or a connection dropped.

    Retrying after a backoff may succeed.
    """


class QueryError(DatabaseError):
    """Permanent store error: the statement itself is wrong.

    Also raised when a uniqueness guarantee the engine relies on turns out
    to be missing, which is a programming error rather than bad input.
    """


# ---------------------------------------------------------------------------
# Connectivity
# ---------------------------------------------------------------------------


class ConnectivityError(NostrSyncError):
    """A relay could not be reached or dropped the connection."""

    def __init__(self, message: str, relay_url: str | None = None) -> None:
        super().__init__(message)
        self.relay_url = relay_url


class RelayTimeoutError(ConnectivityError):
    """Connecting to or querying a relay took longer than allowed."""


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


class ProtocolError(NostrSyncError):
    """Remote data violates the protocol and cannot be used.

    Inputs raising this are dropped with a warning; processing of the next
    input continues.
    """


class MalformedEventError(ProtocolError):
    """An event or its payload is structurally invalid.

    Covers id mismatches, failed signatures, missing required tags and
    undecodable metadata JSON.
    """

    def __init__(self, message: str, event_id: str | None = None) -> None:
        super().__init__(message)
        self.event_id = event_id


class DecryptionError(ProtocolError):
    """A direct-message payload could not be decrypted.

    Raised for malformed ciphertext and for key mismatches alike. A message
    that fails to decrypt is never stored.
    """


# ---------------------------------------------------------------------------
# Publishing
# ---------------------------------------------------------------------------


class PublishingError(NostrSyncError):
    """An event could not be handed to any relay (for example, no write relays)."""
