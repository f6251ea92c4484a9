"""JSON export of chats and contacts, and contact import.

Export files are plain JSON objects so they can be read back by this
module or inspected by hand:

```json
{"version": 1, "contacts": [{"pubkey": "...", "petname": "alice", "relay_hint": null}]}
{"version": 1, "messages": [{"event_id": "...", "counterparty": "...", "status": "seen", ...}]}
```

Import also accepts a bare list of contact objects, or of plain pubkeys.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any

from nostrsync.models.contact import DbContact


if TYPE_CHECKING:
    from collections.abc import Iterable

    from nostrsync.models.message import DbMessage


logger = logging.getLogger(__name__)

EXPORT_VERSION = 1


def _message_to_dict(message: DbMessage) -> dict[str, Any]:
    conf = message.confirmation
    return {
        "msg_id": message.msg_id,
        "event_id": message.event_id,
        "counterparty": message.counterparty,
        "is_own": message.is_own,
        "created_at": message.created_at,
        "content": message.content,
        "status": message.status.name.lower(),
        "confirmed_at": conf.confirmed_at if conf else None,
        "relay_url": conf.relay_url if conf else None,
    }


def messages_to_json(messages: Iterable[DbMessage]) -> str:
    return json.dumps(
        {"version": EXPORT_VERSION, "messages": [_message_to_dict(m) for m in messages]},
        ensure_ascii=False,
        indent=2,
    )


def contacts_to_json(contacts: Iterable[DbContact]) -> str:
    return json.dumps(
        {
            "version": EXPORT_VERSION,
            "contacts": [
                {"pubkey": c.pubkey, "petname": c.petname, "relay_hint": c.relay_hint}
                for c in contacts
            ],
        },
        ensure_ascii=False,
        indent=2,
    )


def _contact_from_entry(entry: Any) -> DbContact:
    if isinstance(entry, str):
        return DbContact(pubkey=entry.lower())
    if not isinstance(entry, dict):
        raise TypeError(f"contact entry must be an object or a string, got {type(entry).__name__}")
    pubkey = entry.get("pubkey")
    if not isinstance(pubkey, str):
        raise TypeError("contact entry without pubkey")
    return DbContact(
        pubkey=pubkey.lower(),
        petname=entry.get("petname"),
        relay_hint=entry.get("relay_hint"),
    )


def contacts_from_json(raw: str) -> list[DbContact]:
    """Parse an exported contact file.

    Invalid entries are skipped and logged; duplicates keep the first entry.

    Raises:
        ValueError: If *raw* is not JSON or has no contact list.
    """
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"contact file is not valid JSON: {e}") from e

    entries = data.get("contacts") if isinstance(data, dict) else data
    if not isinstance(entries, list):
        raise ValueError("contact file holds no contact list")

    contacts: dict[str, DbContact] = {}
    for index, entry in enumerate(entries):
        try:
            contact = _contact_from_entry(entry)
        except (ValueError, TypeError) as e:
            logger.warning("contact_entry_skipped index=%s error=%s", index, e)
            continue
        contacts.setdefault(contact.pubkey, contact)
    return list(contacts.values())


async def write_text(path: str, text: str) -> None:
    """Write *text* to *path* (UTF-8) off the event loop."""
    await asyncio.to_thread(Path(path).write_text, text, encoding="utf-8")


async def read_text(path: str) -> str:
    """Read *path* (UTF-8) off the event loop.

    Raises:
        FileNotFoundError: If *path* does not exist.
    """
    return await asyncio.to_thread(Path(path).read_text, encoding="utf-8")
