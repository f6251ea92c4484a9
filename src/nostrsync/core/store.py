"""
Durable local cache: typed domain operations over the connection pool.

[LocalCacheStore][nostrsync.core.store.LocalCacheStore] owns a
[Pool][nostrsync.core.pool.Pool] and hands out
[CacheSession][nostrsync.core.store.CacheSession] objects:

- ``session()`` runs every statement in auto-commit mode on a pooled
  connection. Use it for reads and single-statement writes.
- ``transaction()`` pins one connection inside a transaction. Use it for
  every logical operation that touches more than one row or table, so that
  a crash or error never leaves the cache half-updated.

All SQL of the engine lives in ``CacheSession``; reconcilers never write SQL.
Every method takes and returns validated models from
[nostrsync.models][nostrsync.models].

Uniqueness the engine relies on is enforced by the schema
(``deployments/nostrsync/postgres/init``), and inserts report whether they
created a row, so duplicate delivery is detected from the insert itself:

```text
event            event_hash
relay_response   (event_hash, relay_url)
message          event_hash
contact          pubkey
profile_meta_cache  pubkey
channel_cache    channel_id
subscribed_channel  channel_id
```

Examples:
    ```python
    store = LocalCacheStore.from_yaml("config/store.yaml")

    async with store:
        async with store.transaction() as tx:
            if await tx.insert_event(event):
                await tx.insert_message(message)

        async with store.session() as s:
            relays = await s.fetch_relays()
    ```

See Also:
    [Pool][nostrsync.core.pool.Pool]: Connection management and retry.
    [BackendCoordinator][nostrsync.services.backend.service.BackendCoordinator]:
        The only writer.
"""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, Protocol

import asyncpg
from pydantic import BaseModel, Field, field_validator

from nostrsync.models import (
    ChannelCache,
    ChannelSubscription,
    ContactStatus,
    DbContact,
    DbMessage,
    Event,
    ImageKind,
    MessageStatus,
    ProfileCache,
    RelayEntry,
    RelayResponse,
    StoredEvent,
)
from nostrsync.models.contact import ContactDbParams
from nostrsync.models.event import EventDbParams
from nostrsync.models.message import MessageDbParams
from nostrsync.models.metadata import ChannelCacheDbParams, ProfileCacheDbParams
from nostrsync.models.relay import RelayEntryDbParams
from nostrsync.models.relay_response import RelayResponseDbParams

from .exceptions import ConnectionPoolError, QueryError
from .logger import Logger
from .pool import Pool, PoolConfig
from .yaml import load_yaml


if TYPE_CHECKING:
    from collections.abc import AsyncIterator


_MIN_TIMEOUT_SECONDS = 0.1

_EVENT_COLUMNS = "event_hash, pubkey, created_at, kind, tags, content, sig, relay_url, confirmed_at"
_MESSAGE_COLUMNS = (
    "msg_id, event_hash, counterparty, is_own, created_at, content, status, confirmed_at, relay_url"
)
_CONTACT_COLUMNS = (
    "pubkey, petname, relay_hint, profile_image_ref, status, unseen_count, "
    "last_message_at, last_message_id"
)
_PROFILE_COLUMNS = (
    "pubkey, updated_at, event_hash, metadata, profile_image_path, banner_image_path"
)
_CHANNEL_COLUMNS = (
    "channel_id, creator_pubkey, created_at, updated_at, event_hash, metadata, image_path"
)

_logger = Logger("store")


# ---------------------------------------------------------------------------
# Configuration Models
# ---------------------------------------------------------------------------


class StoreTimeoutsConfig(BaseModel):
    """Client-side statement timeouts in seconds (``None`` waits forever).

    ``transaction`` applies to each statement run inside ``transaction()``.
    """

    query: float | None = Field(default=30.0, description="Auto-commit statement timeout")
    transaction: float | None = Field(default=60.0, description="In-transaction statement timeout")

    @field_validator("query", "transaction", mode="after")
    @classmethod
    def validate_timeout(cls, v: float | None) -> float | None:
        if v is not None and v < _MIN_TIMEOUT_SECONDS:
            raise ValueError(
                f"Timeout must be None (infinite) or >= {_MIN_TIMEOUT_SECONDS} seconds"
            )
        return v


class StoreConfig(BaseModel):
    """Settings of [LocalCacheStore][nostrsync.core.store.LocalCacheStore]."""

    timeouts: StoreTimeoutsConfig = Field(default_factory=StoreTimeoutsConfig)


# ---------------------------------------------------------------------------
# Row conversion helpers
# ---------------------------------------------------------------------------


class _Executor(Protocol):
    async def fetch(self, query: str, *args: Any, timeout: float | None = None) -> Any: ...  # noqa: ASYNC109

    async def fetchrow(self, query: str, *args: Any, timeout: float | None = None) -> Any: ...  # noqa: ASYNC109

    async def fetchval(self, query: str, *args: Any, timeout: float | None = None) -> Any: ...  # noqa: ASYNC109

    async def execute(self, query: str, *args: Any, timeout: float | None = None) -> str: ...  # noqa: ASYNC109


def _affected_rows(status: str) -> int:
    """Return the row count of a command tag such as ``"UPDATE 3"``."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, AttributeError, IndexError):
        return 0


def _row_to_stored_event(row: Any) -> StoredEvent:
    event = Event.from_db_params(
        EventDbParams(
            event_hash=bytes(row["event_hash"]),
            pubkey=bytes(row["pubkey"]),
            created_at=row["created_at"],
            kind=row["kind"],
            tags=row["tags"],
            content=row["content"],
            sig=bytes(row["sig"]),
        )
    )
    return StoredEvent(event=event, relay_url=row["relay_url"], confirmed_at=row["confirmed_at"])


def _row_to_message(row: Any) -> DbMessage:
    return DbMessage.from_db_params(
        MessageDbParams(
            event_hash=bytes(row["event_hash"]),
            counterparty=bytes(row["counterparty"]),
            is_own=row["is_own"],
            created_at=row["created_at"],
            content=row["content"],
            status=row["status"],
            confirmed_at=row["confirmed_at"],
            relay_url=row["relay_url"],
        ),
        msg_id=row["msg_id"],
    )


def _row_to_contact(row: Any) -> DbContact:
    return DbContact.from_db_params(
        ContactDbParams(
            pubkey=bytes(row["pubkey"]),
            petname=row["petname"],
            relay_hint=row["relay_hint"],
            profile_image_ref=row["profile_image_ref"],
            status=row["status"],
            unseen_count=row["unseen_count"],
            last_message_at=row["last_message_at"],
            last_message_id=row["last_message_id"],
        )
    )


def _row_to_profile(row: Any) -> ProfileCache:
    return ProfileCache.from_db_params(
        ProfileCacheDbParams(
            pubkey=bytes(row["pubkey"]),
            updated_at=row["updated_at"],
            event_hash=bytes(row["event_hash"]),
            metadata=row["metadata"],
            profile_image_path=row["profile_image_path"],
            banner_image_path=row["banner_image_path"],
        )
    )


def _row_to_channel(row: Any) -> ChannelCache:
    return ChannelCache.from_db_params(
        ChannelCacheDbParams(
            channel_id=bytes(row["channel_id"]),
            creator_pubkey=bytes(row["creator_pubkey"]) if row["creator_pubkey"] else None,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            event_hash=bytes(row["event_hash"]) if row["event_hash"] else None,
            metadata=row["metadata"],
            image_path=row["image_path"],
        )
    )


def _row_to_subscription(row: Any) -> ChannelSubscription:
    return ChannelSubscription(
        channel_id=bytes(row["channel_id"]).hex(), subscribed_at=row["subscribed_at"]
    )


# ---------------------------------------------------------------------------
# CacheSession
# ---------------------------------------------------------------------------


class CacheSession:
    """Typed domain operations bound to one executor.

    The executor is either the [Pool][nostrsync.core.pool.Pool] (auto-commit)
    or a connection inside a transaction; ``CacheSession`` does not know
    which. Driver errors are translated: ``asyncpg.PostgresError`` becomes
    [QueryError][nostrsync.core.exceptions.QueryError] and
    ``asyncpg.InterfaceError`` becomes
    [ConnectionPoolError][nostrsync.core.exceptions.ConnectionPoolError].

    Note:
        Obtain instances from
        [LocalCacheStore.session()][nostrsync.core.store.LocalCacheStore.session]
        or
        [LocalCacheStore.transaction()][nostrsync.core.store.LocalCacheStore.transaction];
        do not keep them beyond the ``async with`` block.
    """

    def __init__(self, executor: _Executor, timeout: float | None = None) -> None:  # noqa: ASYNC109
        self._executor = executor
        self._timeout = timeout

    async def _run(self, method: str, query: str, *args: Any) -> Any:
        try:
            return await getattr(self._executor, method)(query, *args, timeout=self._timeout)
        except asyncpg.InterfaceError as e:
            raise ConnectionPoolError(f"connection lost during {method}: {e}") from e
        except asyncpg.PostgresError as e:
            raise QueryError(f"{type(e).__name__}: {e}") from e

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    async def insert_event(
        self,
        event: Event,
        relay_url: str | None = None,
        confirmed_at: int | None = None,
    ) -> bool:
        """Insert *event* unless its id is already stored.

        Args:
            event: Event to store.
            relay_url: Relay it arrived from, ``None`` for a pending own event.
            confirmed_at: Local receipt time; ``None`` marks it unconfirmed.

        Returns:
            ``True`` if a row was created, ``False`` for a duplicate.
        """
        p = event.to_db_params()
        inserted = await self._run(
            "fetchval",
            """
            INSERT INTO event (event_hash, pubkey, created_at, kind, tags, content, sig,
                               relay_url, confirmed_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            ON CONFLICT (event_hash) DO NOTHING
            RETURNING event_hash
            """,
            p.event_hash,
            p.pubkey,
            p.created_at,
            p.kind,
            p.tags,
            p.content,
            p.sig,
            relay_url,
            confirmed_at,
        )
        return inserted is not None

    async def fetch_event(self, event_id: str) -> StoredEvent | None:
        row = await self._run(
            "fetchrow",
            f"SELECT {_EVENT_COLUMNS} FROM event WHERE event_hash = $1",  # noqa: S608
            bytes.fromhex(event_id),
        )
        return _row_to_stored_event(row) if row else None

    async def confirm_event(self, event_id: str, relay_url: str, confirmed_at: int) -> bool:
        """Mark a stored event confirmed unless it already is.

        Returns:
            ``True`` only for the call that performed the confirmation.
        """
        status = await self._run(
            "execute",
            """
            UPDATE event
            SET relay_url = $2, confirmed_at = $3
            WHERE event_hash = $1 AND confirmed_at IS NULL
            """,
            bytes.fromhex(event_id),
            relay_url,
            confirmed_at,
        )
        return _affected_rows(status) > 0

    async def fetch_unconfirmed_events(self, author: str) -> list[Event]:
        """Return events of *author* never confirmed by any relay, oldest first."""
        rows = await self._run(
            "fetch",
            f"""
            SELECT {_EVENT_COLUMNS}
            FROM event
            WHERE pubkey = $1 AND confirmed_at IS NULL
            ORDER BY created_at ASC, event_hash ASC
            """,  # noqa: S608
            bytes.fromhex(author),
        )
        return [_row_to_stored_event(row).event for row in rows]

    async def latest_event_timestamp(
        self,
        kind: int,
        author: str | None = None,
        exclude_id: str | None = None,
    ) -> int | None:
        """Return the newest ``created_at`` stored for *kind*.

        Args:
            kind: Event kind.
            author: Restrict to this author.
            exclude_id: Ignore this event (the one being applied).

        Returns:
            The timestamp, or ``None`` when nothing matches.
        """
        return await self._run(
            "fetchval",
            """
            SELECT max(created_at)
            FROM event
            WHERE kind = $1
              AND ($2::bytea IS NULL OR pubkey = $2)
              AND ($3::bytea IS NULL OR event_hash <> $3)
            """,
            kind,
            bytes.fromhex(author) if author else None,
            bytes.fromhex(exclude_id) if exclude_id else None,
        )

    async def delete_events_of_kind(self, kind: int, author: str, before: int) -> int:
        """Delete *author*'s events of *kind* created strictly before *before*.

        Newer rows survive, including own events still waiting for a relay.

        Returns:
            The number of deleted rows.
        """
        status = await self._run(
            "execute",
            "DELETE FROM event WHERE kind = $1 AND pubkey = $2 AND created_at < $3",
            kind,
            bytes.fromhex(author),
            before,
        )
        return _affected_rows(status)

    async def fetch_channel_messages(self, channel_id: str, limit: int) -> list[Event]:
        """Return up to *limit* kind-42 events referencing *channel_id*, oldest first."""
        rows = await self._run(
            "fetch",
            f"""
            SELECT {_EVENT_COLUMNS}
            FROM (
                SELECT * FROM event
                WHERE kind = 42 AND tags @> $1::jsonb
                ORDER BY created_at DESC
                LIMIT $2
            ) recent
            ORDER BY created_at ASC, event_hash ASC
            """,  # noqa: S608
            json.dumps([["e", channel_id]]),
            limit,
        )
        return [_row_to_stored_event(row).event for row in rows]

    # -------------------------------------------------------------------------
    # Relay responses
    # -------------------------------------------------------------------------

    async def insert_relay_response(self, response: RelayResponse) -> bool:
        """Record one relay's answer. A second answer from the same relay is a no-op.

        Returns:
            ``True`` if the row was created.
        """
        p = response.to_db_params()
        inserted = await self._run(
            "fetchval",
            """
            INSERT INTO relay_response (event_hash, relay_url, status, message, created_at)
            VALUES ($1, $2, $3, $4, $5)
            ON CONFLICT (event_hash, relay_url) DO NOTHING
            RETURNING relay_url
            """,
            p.event_hash,
            p.relay_url,
            p.status,
            p.message,
            p.created_at,
        )
        return inserted is not None

    async def fetch_relay_responses(self, event_id: str) -> list[RelayResponse]:
        rows = await self._run(
            "fetch",
            """
            SELECT event_hash, relay_url, status, message, created_at
            FROM relay_response
            WHERE event_hash = $1
            ORDER BY created_at ASC, relay_url ASC
            """,
            bytes.fromhex(event_id),
        )
        return [
            RelayResponse.from_db_params(
                RelayResponseDbParams(
                    event_hash=bytes(row["event_hash"]),
                    relay_url=row["relay_url"],
                    status=row["status"],
                    message=row["message"],
                    created_at=row["created_at"],
                )
            )
            for row in rows
        ]

    # -------------------------------------------------------------------------
    # Relays
    # -------------------------------------------------------------------------

    async def fetch_relays(self) -> list[RelayEntry]:
        """Return the relay list. Rows with a URL that no longer validates are skipped."""
        rows = await self._run("fetch", "SELECT url, read, write FROM relay ORDER BY url ASC")
        entries: list[RelayEntry] = []
        for row in rows:
            try:
                entries.append(
                    RelayEntry.from_db_params(
                        RelayEntryDbParams(url=row["url"], read=row["read"], write=row["write"])
                    )
                )
            except (ValueError, TypeError) as e:
                _logger.warning("relay_row_skipped", url=row["url"], error=str(e))
        return entries

    async def upsert_relay(self, entry: RelayEntry) -> None:
        p = entry.to_db_params()
        await self._run(
            "execute",
            """
            INSERT INTO relay (url, read, write) VALUES ($1, $2, $3)
            ON CONFLICT (url) DO UPDATE SET read = EXCLUDED.read, write = EXCLUDED.write
            """,
            p.url,
            p.read,
            p.write,
        )

    async def delete_relay(self, url: str) -> bool:
        status = await self._run("execute", "DELETE FROM relay WHERE url = $1", url)
        return _affected_rows(status) > 0

    async def set_relay_read(self, url: str, read: bool) -> bool:  # noqa: FBT001
        status = await self._run("execute", "UPDATE relay SET read = $2 WHERE url = $1", url, read)
        return _affected_rows(status) > 0

    async def set_relay_write(self, url: str, write: bool) -> bool:  # noqa: FBT001
        status = await self._run(
            "execute", "UPDATE relay SET write = $2 WHERE url = $1", url, write
        )
        return _affected_rows(status) > 0

    # -------------------------------------------------------------------------
    # Contacts
    # -------------------------------------------------------------------------

    async def fetch_contacts(self, status: ContactStatus | None = None) -> list[DbContact]:
        """Return contacts, optionally only those with *status*, ordered by pubkey."""
        rows = await self._run(
            "fetch",
            f"""
            SELECT {_CONTACT_COLUMNS}
            FROM contact
            WHERE $1::text IS NULL OR status = $1
            ORDER BY pubkey ASC
            """,  # noqa: S608
            status.value if status is not None else None,
        )
        return [_row_to_contact(row) for row in rows]

    async def fetch_contact(self, pubkey: str) -> DbContact | None:
        row = await self._run(
            "fetchrow",
            f"SELECT {_CONTACT_COLUMNS} FROM contact WHERE pubkey = $1",  # noqa: S608
            bytes.fromhex(pubkey),
        )
        return _row_to_contact(row) if row else None

    async def upsert_contact(self, contact: DbContact) -> None:
        """Insert *contact* or replace every column of the existing row."""
        p = contact.to_db_params()
        await self._run(
            "execute",
            """
            INSERT INTO contact (pubkey, petname, relay_hint, profile_image_ref, status,
                                 unseen_count, last_message_at, last_message_id)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            ON CONFLICT (pubkey) DO UPDATE SET
                petname = EXCLUDED.petname,
                relay_hint = EXCLUDED.relay_hint,
                profile_image_ref = EXCLUDED.profile_image_ref,
                status = EXCLUDED.status,
                unseen_count = EXCLUDED.unseen_count,
                last_message_at = EXCLUDED.last_message_at,
                last_message_id = EXCLUDED.last_message_id
            """,
            *p,
        )

    async def insert_contact_if_missing(self, contact: DbContact) -> bool:
        """Insert *contact* only if no row exists for its pubkey.

        Returns:
            ``True`` if the row was created.
        """
        p = contact.to_db_params()
        inserted = await self._run(
            "fetchval",
            """
            INSERT INTO contact (pubkey, petname, relay_hint, profile_image_ref, status,
                                 unseen_count, last_message_at, last_message_id)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            ON CONFLICT (pubkey) DO NOTHING
            RETURNING pubkey
            """,
            *p,
        )
        return inserted is not None

    async def delete_contact(self, pubkey: str) -> bool:
        status = await self._run(
            "execute", "DELETE FROM contact WHERE pubkey = $1", bytes.fromhex(pubkey)
        )
        return _affected_rows(status) > 0

    async def update_contact_last_message(
        self,
        pubkey: str,
        msg_id: int,
        created_at: int,
        *,
        increment_unseen: bool,
    ) -> None:
        """Point the contact at a newly stored message.

        The last-message pointer only moves forward in ``created_at``; the
        unseen counter is incremented independently of that.
        """
        await self._run(
            "execute",
            """
            UPDATE contact SET
                unseen_count = unseen_count + $4,
                last_message_id = CASE
                    WHEN last_message_at IS NULL OR last_message_at <= $3 THEN $2
                    ELSE last_message_id END,
                last_message_at = CASE
                    WHEN last_message_at IS NULL OR last_message_at <= $3 THEN $3
                    ELSE last_message_at END
            WHERE pubkey = $1
            """,
            bytes.fromhex(pubkey),
            msg_id,
            created_at,
            1 if increment_unseen else 0,
        )

    async def reset_unseen(self, pubkey: str) -> None:
        await self._run(
            "execute",
            "UPDATE contact SET unseen_count = 0 WHERE pubkey = $1",
            bytes.fromhex(pubkey),
        )

    async def set_contact_image(self, pubkey: str, path: str | None) -> bool:
        status = await self._run(
            "execute",
            "UPDATE contact SET profile_image_ref = $2 WHERE pubkey = $1",
            bytes.fromhex(pubkey),
            path,
        )
        return _affected_rows(status) > 0

    # -------------------------------------------------------------------------
    # Messages
    # -------------------------------------------------------------------------

    async def insert_message(self, message: DbMessage) -> int | None:
        """Insert *message* unless one exists for its event.

        Returns:
            The new ``msg_id``, or ``None`` for a duplicate.
        """
        p = message.to_db_params()
        return await self._run(
            "fetchval",
            """
            INSERT INTO message (event_hash, counterparty, is_own, created_at, content, status,
                                 confirmed_at, relay_url)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            ON CONFLICT (event_hash) DO NOTHING
            RETURNING msg_id
            """,
            *p,
        )

    async def fetch_message_by_event(self, event_id: str) -> DbMessage | None:
        row = await self._run(
            "fetchrow",
            f"SELECT {_MESSAGE_COLUMNS} FROM message WHERE event_hash = $1",  # noqa: S608
            bytes.fromhex(event_id),
        )
        return _row_to_message(row) if row else None

    async def confirm_message(self, event_id: str, relay_url: str, confirmed_at: int) -> bool:
        """Record the first confirmation of an own message and advance it to ``DELIVERED``.

        Returns:
            ``True`` only when this call recorded the confirmation.
        """
        status = await self._run(
            "execute",
            """
            UPDATE message
            SET confirmed_at = $3, relay_url = $2, status = GREATEST(status, $4)
            WHERE event_hash = $1 AND confirmed_at IS NULL
            """,
            bytes.fromhex(event_id),
            relay_url,
            confirmed_at,
            int(MessageStatus.DELIVERED),
        )
        return _affected_rows(status) > 0

    async def fetch_chat(self, counterparty: str) -> list[DbMessage]:
        """Return the conversation with *counterparty* in display order.

        Ordered by ``created_at`` then ``msg_id``, so messages with equal or
        implausible timestamps fall back to the order they were stored in.
        """
        rows = await self._run(
            "fetch",
            f"""
            SELECT {_MESSAGE_COLUMNS}
            FROM message
            WHERE counterparty = $1
            ORDER BY created_at ASC, msg_id ASC
            """,  # noqa: S608
            bytes.fromhex(counterparty),
        )
        return [_row_to_message(row) for row in rows]

    async def fetch_all_messages(self) -> list[DbMessage]:
        rows = await self._run(
            "fetch",
            f"SELECT {_MESSAGE_COLUMNS} FROM message ORDER BY counterparty, created_at, msg_id",  # noqa: S608
        )
        return [_row_to_message(row) for row in rows]

    async def mark_chat_seen(self, counterparty: str) -> int:
        """Advance every incoming message of the chat to ``SEEN``. Returns the count."""
        status = await self._run(
            "execute",
            """
            UPDATE message SET status = $2
            WHERE counterparty = $1 AND is_own = FALSE AND status < $2
            """,
            bytes.fromhex(counterparty),
            int(MessageStatus.SEEN),
        )
        return _affected_rows(status)

    # -------------------------------------------------------------------------
    # Profile metadata cache
    # -------------------------------------------------------------------------

    async def fetch_profile(self, pubkey: str) -> ProfileCache | None:
        row = await self._run(
            "fetchrow",
            f"SELECT {_PROFILE_COLUMNS} FROM profile_meta_cache WHERE pubkey = $1",  # noqa: S608
            bytes.fromhex(pubkey),
        )
        return _row_to_profile(row) if row else None

    async def fetch_profiles(self, pubkeys: list[str]) -> list[ProfileCache]:
        if not pubkeys:
            return []
        rows = await self._run(
            "fetch",
            f"SELECT {_PROFILE_COLUMNS} FROM profile_meta_cache WHERE pubkey = ANY($1::bytea[])",  # noqa: S608
            [bytes.fromhex(pk) for pk in pubkeys],
        )
        return [_row_to_profile(row) for row in rows]

    async def upsert_profile(self, profile: ProfileCache) -> bool:
        """Write *profile* if it is strictly newer than the cached row.

        Local image paths of an existing row are kept.

        Returns:
            ``True`` if the row was inserted or replaced.
        """
        p = profile.to_db_params()
        written = await self._run(
            "fetchval",
            """
            INSERT INTO profile_meta_cache (pubkey, updated_at, event_hash, metadata,
                                            profile_image_path, banner_image_path)
            VALUES ($1, $2, $3, $4, $5, $6)
            ON CONFLICT (pubkey) DO UPDATE SET
                updated_at = EXCLUDED.updated_at,
                event_hash = EXCLUDED.event_hash,
                metadata = EXCLUDED.metadata
            WHERE profile_meta_cache.updated_at < EXCLUDED.updated_at
            RETURNING pubkey
            """,
            *p,
        )
        return written is not None

    async def set_profile_image(self, pubkey: str, kind: ImageKind, path: str | None) -> bool:
        """Attach (or clear, with ``None``) a local image file. ``updated_at`` is untouched."""
        if kind == ImageKind.PROFILE:
            query = "UPDATE profile_meta_cache SET profile_image_path = $2 WHERE pubkey = $1"
        elif kind == ImageKind.BANNER:
            query = "UPDATE profile_meta_cache SET banner_image_path = $2 WHERE pubkey = $1"
        else:
            raise ValueError(f"profiles have no {kind} image")
        status = await self._run("execute", query, bytes.fromhex(pubkey), path)
        return _affected_rows(status) > 0

    # -------------------------------------------------------------------------
    # Channel cache
    # -------------------------------------------------------------------------

    async def fetch_channel(self, channel_id: str) -> ChannelCache | None:
        row = await self._run(
            "fetchrow",
            f"SELECT {_CHANNEL_COLUMNS} FROM channel_cache WHERE channel_id = $1",  # noqa: S608
            bytes.fromhex(channel_id),
        )
        return _row_to_channel(row) if row else None

    async def upsert_channel(self, channel: ChannelCache) -> bool:
        """Write *channel* unless the cached row is newer.

        Equal ``updated_at`` is accepted so that a late creation event can
        fill in the creator of a row first written from a metadata update.
        The local image path of an existing row is kept.
        """
        p = channel.to_db_params()
        written = await self._run(
            "fetchval",
            """
            INSERT INTO channel_cache (channel_id, creator_pubkey, created_at, updated_at,
                                       event_hash, metadata, image_path)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            ON CONFLICT (channel_id) DO UPDATE SET
                creator_pubkey = EXCLUDED.creator_pubkey,
                created_at = EXCLUDED.created_at,
                updated_at = EXCLUDED.updated_at,
                event_hash = EXCLUDED.event_hash,
                metadata = EXCLUDED.metadata
            WHERE channel_cache.updated_at <= EXCLUDED.updated_at
            RETURNING channel_id
            """,
            *p,
        )
        return written is not None

    async def delete_channel(self, channel_id: str) -> bool:
        status = await self._run(
            "execute", "DELETE FROM channel_cache WHERE channel_id = $1", bytes.fromhex(channel_id)
        )
        return _affected_rows(status) > 0

    async def set_channel_image(self, channel_id: str, path: str | None) -> bool:
        status = await self._run(
            "execute",
            "UPDATE channel_cache SET image_path = $2 WHERE channel_id = $1",
            bytes.fromhex(channel_id),
            path,
        )
        return _affected_rows(status) > 0

    # -------------------------------------------------------------------------
    # Channel subscriptions
    # -------------------------------------------------------------------------

    async def subscribe_channel(self, channel_id: str, subscribed_at: int) -> ChannelSubscription:
        """Follow *channel_id*. An existing subscription keeps its original time."""
        row = await self._run(
            "fetchrow",
            """
            WITH inserted AS (
                INSERT INTO subscribed_channel (channel_id, subscribed_at)
                VALUES ($1, $2)
                ON CONFLICT (channel_id) DO NOTHING
                RETURNING channel_id, subscribed_at
            )
            SELECT channel_id, subscribed_at FROM inserted
            UNION ALL
            SELECT channel_id, subscribed_at FROM subscribed_channel WHERE channel_id = $1
            LIMIT 1
            """,
            bytes.fromhex(channel_id),
            subscribed_at,
        )
        return _row_to_subscription(row)

    async def unsubscribe_channel(self, channel_id: str) -> bool:
        status = await self._run(
            "execute",
            "DELETE FROM subscribed_channel WHERE channel_id = $1",
            bytes.fromhex(channel_id),
        )
        return _affected_rows(status) > 0

    async def fetch_subscribed_channels(self) -> list[ChannelSubscription]:
        """Return followed channels, oldest subscription first."""
        rows = await self._run(
            "fetch",
            """
            SELECT channel_id, subscribed_at
            FROM subscribed_channel
            ORDER BY subscribed_at ASC, channel_id ASC
            """,
        )
        return [_row_to_subscription(row) for row in rows]

    # -------------------------------------------------------------------------
    # User configuration
    # -------------------------------------------------------------------------

    async def fetch_clock_offset(self) -> int:
        """Return the stored clock offset in microseconds (``0`` if never set)."""
        value = await self._run("fetchval", "SELECT clock_offset_us FROM user_config WHERE id = 1")
        return int(value) if value is not None else 0

    async def store_clock_offset(self, offset_us: int) -> None:
        await self._run(
            "execute",
            """
            INSERT INTO user_config (id, clock_offset_us) VALUES (1, $1)
            ON CONFLICT (id) DO UPDATE SET clock_offset_us = EXCLUDED.clock_offset_us
            """,
            offset_us,
        )


# ---------------------------------------------------------------------------
# LocalCacheStore
# ---------------------------------------------------------------------------


class LocalCacheStore:
    """Facade over the cache database.

    Composes a private [Pool][nostrsync.core.pool.Pool]; callers only see
    [CacheSession][nostrsync.core.store.CacheSession] objects.

    Examples:
        ```python
        store = LocalCacheStore.from_dict({"pool": {"database": {"host": "db"}}})
        async with store:
            async with store.session() as s:
                offset = await s.fetch_clock_offset()
        ```
    """

    def __init__(self, pool: Pool | None = None, config: StoreConfig | None = None) -> None:
        self._pool = pool or Pool()
        self._config = config or StoreConfig()
        self._logger = _logger

    @property
    def config(self) -> StoreConfig:
        return self._config

    @property
    def pool_config(self) -> PoolConfig:
        return self._pool.config

    @property
    def is_connected(self) -> bool:
        return self._pool.is_connected

    @classmethod
    def from_yaml(cls, config_path: str) -> LocalCacheStore:
        """Build a disconnected store from YAML (``pool`` key plus store settings)."""
        return cls.from_dict(load_yaml(config_path))

    @classmethod
    def from_dict(cls, config_dict: dict[str, Any]) -> LocalCacheStore:
        """Build a disconnected store.

        The ``pool`` key configures the [Pool][nostrsync.core.pool.Pool]; the
        remaining keys are [StoreConfig][nostrsync.core.store.StoreConfig]
        fields.
        """
        pool = Pool.from_dict(config_dict["pool"]) if "pool" in config_dict else None
        store_dict = {k: v for k, v in config_dict.items() if k != "pool"}
        config = StoreConfig(**store_dict) if store_dict else None
        return cls(pool=pool, config=config)

    # -------------------------------------------------------------------------
    # Sessions
    # -------------------------------------------------------------------------

    @asynccontextmanager
    async def session(self) -> AsyncIterator[CacheSession]:
        """Yield a session whose statements each commit on their own."""
        yield CacheSession(self._pool, timeout=self._config.timeouts.query)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[CacheSession]:
        """Yield a session whose statements commit together.

        An exception leaving the block rolls back everything done through it.

        Raises:
            ConnectionPoolError: If the pool is not connected.
        """
        async with self._pool.transaction() as conn:
            yield CacheSession(conn, timeout=self._config.timeouts.transaction)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def connect(self) -> None:
        await self._pool.connect()

    async def close(self) -> None:
        """Close the pool. Safe to call more than once."""
        await self._pool.close()

    async def __aenter__(self) -> LocalCacheStore:
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    def __repr__(self) -> str:
        db = self._pool.config.database
        return (
            f"LocalCacheStore(host={db.host}, database={db.database}, "
            f"connected={self._pool.is_connected})"
        )
