"""
NIP-01 event id derivation.

The id of an event is the SHA-256 of a compact JSON array:

```text
[0, <pubkey hex>, <created_at>, <kind>, <tags>, <content>]
```

serialized without whitespace, as UTF-8, with non-ASCII characters written
literally. The result is lowercase hex. Identical inputs always produce the
identical id on every platform, so the id can be recomputed to detect
tampering and used as the join key between local tables.

Examples:
    ```python
    compute_event_id(pubkey, 1700000000, 1, [["t", "nostr"]], "gm")
    verify_event_id(event)  # True when event.id matches its fields
    ```
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Sequence
from typing import TYPE_CHECKING


if TYPE_CHECKING:
    from nostrsync.models.event import Event


def serialize_for_id(
    pubkey: str,
    created_at: int,
    kind: int,
    tags: Sequence[Sequence[str]],
    content: str,
) -> bytes:
    """Return the canonical bytes hashed into the event id."""
    payload = [0, pubkey, created_at, kind, [list(tag) for tag in tags], content]
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def compute_event_id(
    pubkey: str,
    created_at: int,
    kind: int,
    tags: Sequence[Sequence[str]],
    content: str,
) -> str:
    """Return the 64-char lowercase hex id for the given event fields."""
    return hashlib.sha256(serialize_for_id(pubkey, created_at, kind, tags, content)).hexdigest()


def verify_event_id(event: Event) -> bool:
    """Whether ``event.id`` equals the id recomputed from its other fields."""
    expected = compute_event_id(
        event.pubkey, event.created_at, event.kind, event.tags, event.content
    )
    return expected == event.id
