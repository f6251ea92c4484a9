"""
Immutable Nostr event value with database and wire serialization.

[Event][nostrsync.models.event.Event] is a plain frozen dataclass rather
than a wrapper around ``nostr_sdk.Event``: reconciliation code compares,
hashes and stores events constantly, and a pure-Python value keeps that
path free of FFI calls. Conversion to and from the SDK type happens only at
the relay boundary via
[from_nostr()][nostrsync.models.event.Event.from_nostr] and
[to_nostr()][nostrsync.models.event.Event.to_nostr].

The event id is the join key everywhere: pending store, relay responses,
message rows and the ``event`` table all refer to the same 64-char hex id.

See Also:
    [compute_event_id()][nostrsync.nips.nip01.compute_event_id]: Derives the
        id from the other fields.
    [StoredEvent][nostrsync.models.event.StoredEvent]: An event together with
        its local confirmation state.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, NamedTuple

from ._validation import (
    validate_hex,
    validate_instance,
    validate_optional_str,
    validate_optional_timestamp,
    validate_str_no_null,
    validate_timestamp,
)


if TYPE_CHECKING:
    from nostr_sdk import Event as NostrEvent


_MAX_KIND = 65535


class EventDbParams(NamedTuple):
    """Positional parameters for inserting a row into the ``event`` table.

    Attributes:
        event_hash: Event id as 32 raw bytes.
        pubkey: Author public key as 32 raw bytes.
        created_at: Unix timestamp chosen by the author.
        kind: Integer event kind.
        tags: JSON-encoded array of tag arrays.
        content: Raw content (still encrypted for kind 4).
        sig: Schnorr signature as 64 raw bytes.
    """

    event_hash: bytes
    pubkey: bytes
    created_at: int
    kind: int
    tags: str
    content: str
    sig: bytes


@dataclass(frozen=True, slots=True)
class Event:
    """Immutable signed Nostr event.

    Tags given as lists are normalized to tuples so instances are hashable
    and safe to share between tasks.

    Attributes:
        id: 64-char lowercase hex SHA-256 of the canonical serialization.
        pubkey: 64-char lowercase hex x-only author key.
        created_at: Unix timestamp in seconds, as claimed by the author.
        kind: Integer kind in ``0..65535``.
        tags: Tuple of tag tuples, e.g. ``(("p", "ab..", "wss://r"),)``.
        content: Content string; ciphertext for encrypted DMs.
        sig: 128-char lowercase hex Schnorr signature.

    Raises:
        TypeError: If a field has the wrong type.
        ValueError: If a hex field has the wrong length, the kind is out of
            range, or any string contains a null byte.

    Examples:
        ```python
        event = Event.from_json(raw_json)
        event.first_tag_value("p")   # first referenced pubkey, or None
        event.to_db_params().kind    # 4
        ```
    """

    id: str
    pubkey: str
    created_at: int
    kind: int
    tags: tuple[tuple[str, ...], ...]
    content: str
    sig: str = field(repr=False)

    def __post_init__(self) -> None:
        validate_hex(self.id, 64, "id")
        validate_hex(self.pubkey, 64, "pubkey")
        validate_hex(self.sig, 128, "sig")
        validate_timestamp(self.created_at, "created_at")
        validate_timestamp(self.kind, "kind")
        if self.kind > _MAX_KIND:
            raise ValueError(f"kind must be <= {_MAX_KIND}, got {self.kind}")
        validate_str_no_null(self.content, "content")

        validate_instance(self.tags, (list, tuple), "tags")
        normalized: list[tuple[str, ...]] = []
        for tag in self.tags:
            validate_instance(tag, (list, tuple), "tag")
            for value in tag:
                validate_str_no_null(value, "tag value")
            normalized.append(tuple(tag))
        object.__setattr__(self, "tags", tuple(normalized))

    # -------------------------------------------------------------------------
    # Tag helpers
    # -------------------------------------------------------------------------

    def tag_values(self, name: str) -> list[str]:
        """Return the first value of every tag named *name*, in order."""
        return [tag[1] for tag in self.tags if len(tag) >= 2 and tag[0] == name]  # noqa: PLR2004

    def first_tag_value(self, name: str) -> str | None:
        """Return the first value of the first tag named *name*, if any."""
        values = self.tag_values(name)
        return values[0] if values else None

    def tags_named(self, name: str) -> list[tuple[str, ...]]:
        """Return every full tag whose name is *name*."""
        return [tag for tag in self.tags if tag and tag[0] == name]

    @property
    def created_at_datetime(self) -> datetime | None:
        """``created_at`` as an aware UTC datetime, or ``None`` if unrepresentable."""
        try:
            return datetime.fromtimestamp(self.created_at, tz=UTC)
        except (OverflowError, OSError, ValueError):
            return None

    # -------------------------------------------------------------------------
    # Wire conversion
    # -------------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        """Return the NIP-01 JSON object representation."""
        return {
            "id": self.id,
            "pubkey": self.pubkey,
            "created_at": self.created_at,
            "kind": self.kind,
            "tags": [list(tag) for tag in self.tags],
            "content": self.content,
            "sig": self.sig,
        }

    def to_json(self) -> str:
        """Serialize to a NIP-01 JSON string."""
        return json.dumps(self.to_dict(), ensure_ascii=False)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Event:
        """Build an event from a NIP-01 JSON object.

        Raises:
            ValueError: If a required key is missing or a value is invalid.
            TypeError: If a value has the wrong type.
        """
        try:
            return cls(
                id=data["id"],
                pubkey=data["pubkey"],
                created_at=data["created_at"],
                kind=data["kind"],
                tags=data.get("tags", []),
                content=data.get("content", ""),
                sig=data["sig"],
            )
        except KeyError as e:
            raise ValueError(f"event JSON missing field {e}") from None

    @classmethod
    def from_json(cls, raw: str) -> Event:
        """Parse a NIP-01 JSON string.

        Raises:
            ValueError: If the string is not a valid event object.
        """
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ValueError(f"invalid event JSON: {e}") from None
        if not isinstance(data, dict):
            raise ValueError("event JSON must be an object")
        return cls.from_dict(data)

    @classmethod
    def from_nostr(cls, nostr_event: NostrEvent) -> Event:
        """Convert a ``nostr_sdk.Event`` received from a relay."""
        return cls(
            id=nostr_event.id().to_hex(),
            pubkey=nostr_event.author().to_hex(),
            created_at=nostr_event.created_at().as_secs(),
            kind=nostr_event.kind().as_u16(),
            tags=tuple(tuple(tag.as_vec()) for tag in nostr_event.tags().to_vec()),
            content=nostr_event.content(),
            sig=nostr_event.signature(),
        )

    def to_nostr(self) -> NostrEvent:
        """Convert to a ``nostr_sdk.Event`` for publishing or verification."""
        from nostr_sdk import Event as NostrEvent  # noqa: PLC0415

        return NostrEvent.from_json(self.to_json())

    # -------------------------------------------------------------------------
    # Database conversion
    # -------------------------------------------------------------------------

    def to_db_params(self) -> EventDbParams:
        """Return positional parameters for the ``event`` table."""
        return EventDbParams(
            event_hash=bytes.fromhex(self.id),
            pubkey=bytes.fromhex(self.pubkey),
            created_at=self.created_at,
            kind=self.kind,
            tags=json.dumps([list(tag) for tag in self.tags], ensure_ascii=False),
            content=self.content,
            sig=bytes.fromhex(self.sig),
        )

    @classmethod
    def from_db_params(cls, params: EventDbParams) -> Event:
        """Rebuild an event from a stored row."""
        tags = json.loads(params.tags) if isinstance(params.tags, str) else params.tags
        return cls(
            id=params.event_hash.hex(),
            pubkey=params.pubkey.hex(),
            created_at=params.created_at,
            kind=params.kind,
            tags=tags,
            content=params.content,
            sig=params.sig.hex(),
        )


@dataclass(frozen=True, slots=True)
class StoredEvent:
    """An [Event][nostrsync.models.event.Event] as persisted locally.

    Attributes:
        event: The immutable event.
        relay_url: Relay that confirmed or delivered it, ``None`` while pending.
        confirmed_at: Local (clock-corrected) time of the first confirmation,
            ``None`` while pending.
    """

    event: Event
    relay_url: str | None = None
    confirmed_at: int | None = None

    def __post_init__(self) -> None:
        validate_instance(self.event, Event, "event")
        validate_optional_str(self.relay_url, "relay_url")
        validate_optional_timestamp(self.confirmed_at, "confirmed_at")

    @property
    def is_confirmed(self) -> bool:
        """Whether any relay has acknowledged or echoed the event."""
        return self.confirmed_at is not None
