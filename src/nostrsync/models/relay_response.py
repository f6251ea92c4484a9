"""Per-relay outcome of a locally authored event."""

from __future__ import annotations

from dataclasses import dataclass
from typing import NamedTuple

from ._validation import (
    validate_hex,
    validate_str_no_null,
    validate_str_not_empty,
    validate_timestamp,
)
from .constants import ResponseStatus


class RelayResponseDbParams(NamedTuple):
    """Positional parameters for the ``relay_response`` table."""

    event_hash: bytes
    relay_url: str
    status: str
    message: str
    created_at: int


@dataclass(frozen=True, slots=True)
class RelayResponse:
    """What one relay answered for one event.

    The store keeps at most one row per ``(event_id, relay_url)``; later
    answers from the same relay for the same event are no-ops.

    Attributes:
        event_id: Hex id of the event.
        relay_url: Relay that answered.
        status: ``OK`` or ``ERROR``.
        message: Relay-supplied text (empty on success, reason on error).
        created_at: Local time the answer was recorded.
    """

    event_id: str
    relay_url: str
    status: ResponseStatus
    message: str = ""
    created_at: int = 0

    def __post_init__(self) -> None:
        validate_hex(self.event_id, 64, "event_id")
        validate_str_not_empty(self.relay_url, "relay_url")
        object.__setattr__(self, "status", ResponseStatus(self.status))
        validate_str_no_null(self.message, "message")
        validate_timestamp(self.created_at, "created_at")

    @classmethod
    def ok(cls, event_id: str, relay_url: str, created_at: int, message: str = "") -> RelayResponse:
        """Build a successful response."""
        return cls(event_id, relay_url, ResponseStatus.OK, message, created_at)

    @classmethod
    def error(cls, event_id: str, relay_url: str, message: str, created_at: int) -> RelayResponse:
        """Build a failed response carrying the relay's reason."""
        return cls(event_id, relay_url, ResponseStatus.ERROR, message, created_at)

    @property
    def is_ok(self) -> bool:
        return self.status == ResponseStatus.OK

    def to_db_params(self) -> RelayResponseDbParams:
        return RelayResponseDbParams(
            event_hash=bytes.fromhex(self.event_id),
            relay_url=self.relay_url,
            status=self.status.value,
            message=self.message,
            created_at=self.created_at,
        )

    @classmethod
    def from_db_params(cls, params: RelayResponseDbParams) -> RelayResponse:
        return cls(
            event_id=params.event_hash.hex(),
            relay_url=params.relay_url,
            status=ResponseStatus(params.status),
            message=params.message,
            created_at=params.created_at,
        )
