"""
Inbound messages produced by relay workers.

Every message names the relay it came from, so the coordinator never has to
guess provenance. They are the only values that cross the fan-in queue from
[RelayConnectionPool][nostrsync.services.backend.relay_pool.RelayConnectionPool]
into the dispatch loop.
"""

from __future__ import annotations

from dataclasses import dataclass

from .constants import RelayStatus
from .event import Event


@dataclass(frozen=True, slots=True)
class EventMessage:
    """``EVENT``: a signature-verified event answering *subscription_id*."""

    relay_url: str
    subscription_id: str
    event: Event


@dataclass(frozen=True, slots=True)
class OkMessage:
    """``OK``: the relay's verdict on an event we published."""

    relay_url: str
    event_id: str
    success: bool
    message: str = ""


@dataclass(frozen=True, slots=True)
class EoseMessage:
    """``EOSE``: stored events for *subscription_id* are exhausted."""

    relay_url: str
    subscription_id: str


@dataclass(frozen=True, slots=True)
class NoticeMessage:
    """``NOTICE``: human-readable text from the relay."""

    relay_url: str
    message: str


@dataclass(frozen=True, slots=True)
class AuthMessage:
    """``AUTH``: NIP-42 challenge."""

    relay_url: str
    challenge: str


@dataclass(frozen=True, slots=True)
class CountMessage:
    """``COUNT``: NIP-45 count result."""

    relay_url: str
    subscription_id: str
    count: int


@dataclass(frozen=True, slots=True)
class RelayStatusChanged:
    """A relay worker's connection status changed."""

    relay_url: str
    status: RelayStatus
    error: str | None = None


RelayMessage = (
    EventMessage
    | OkMessage
    | EoseMessage
    | NoticeMessage
    | AuthMessage
    | CountMessage
    | RelayStatusChanged
)
