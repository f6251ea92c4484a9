"""
Backend coordinator: the single owner of all client state.

[BackendCoordinator][nostrsync.services.backend.service.BackendCoordinator]
funnels two inputs through one serialized dispatch loop:

- commands from the presentation layer, submitted with
  [submit()][nostrsync.services.backend.service.BackendCoordinator.submit];
- relay messages put on the same inbox by the
  [RelayConnectionPool][nostrsync.services.backend.relay_pool.RelayConnectionPool].

Each inbox item is processed to completion before the next one, so the
reconcilers never race each other and need no locks. Results go back as
futures (commands) and as
[notifications][nostrsync.services.backend.notifications] on a bounded
outbound queue that drops its oldest entries when the consumer falls behind.

Dispatch is table driven: one handler per command type, per relay message
type and per [EventKind][nostrsync.models.constants.EventKind] member. The
tables are checked for completeness at construction; kinds outside the enum
go to a generic handler that just stores the event.

Lifecycle:

1. ``start()`` restores the clock offset, loads (or seeds) the relay list,
   starts the relay workers and the dispatch loop, and republishes own
   events that were stored but never confirmed.
2. ``run()`` performs one sync: it queries every read relay for what
   changed since the newest stored events and returns once all relays and
   the inbox are idle.
3. ``shutdown()`` stops the loop and the workers, reports the pending
   events it gives up on and closes the store. It is idempotent.

See Also:
    [BackendConfig][nostrsync.services.backend.configs.BackendConfig]:
        Configuration model for this service.
    [LocalCacheStore][nostrsync.core.store.LocalCacheStore]: Persistence.
    [EventCodec][nostrsync.nips.codec.EventCodec]: Signing and decryption.

Examples:
    ```python
    from nostrsync.core import LocalCacheStore
    from nostrsync.services.backend import BackendCoordinator, FetchContacts

    store = LocalCacheStore.from_yaml("config/store.yaml")
    backend = BackendCoordinator.from_yaml("config/services/backend.yaml", store=store)

    async with store:
        async with backend:
            await backend.run()
            contacts = await backend.submit(FetchContacts())
    ```
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, ClassVar

import asyncpg

from nostrsync.core.base_service import BaseService
from nostrsync.core.exceptions import (
    DatabaseError,
    MalformedEventError,
    NostrSyncError,
    ProtocolError,
    PublishingError,
)
from nostrsync.core.metrics import DISPATCH_DURATION_SECONDS
from nostrsync.models.constants import (
    ContactStatus,
    EventKind,
    RelayStatus,
    ServiceName,
    SubscriptionType,
    UpdateOutcome,
)
from nostrsync.models.contact import DbContact
from nostrsync.models.relay import RelayEntry, RelayUrl
from nostrsync.models.relay_message import (
    AuthMessage,
    CountMessage,
    EoseMessage,
    EventMessage,
    NoticeMessage,
    OkMessage,
    RelayStatusChanged,
)
from nostrsync.nips.codec import EventCodec
from nostrsync.nips.nip28 import referenced_channel_id
from nostrsync.utils.clock import ClockOffsetProvider

from . import exports, filters
from .commands import (
    COMMAND_TYPES,
    AddContact,
    AddRelay,
    CancelPendingEvent,
    ChannelDetails,
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
from .configs import BackendConfig
from .confirmation import ConfirmationReconciler
from .contacts import ContactListReconciler
from .messages import DirectMessageHandler
from .metadata import MetadataCache
from .notifications import (
    ChannelMessageReceived,
    ClockOffsetChanged,
    CommandFailed,
    Notification,
    OtherKindEventInserted,
    PendingEventsAbandoned,
    RelayListChanged,
    RelayNotice,
    RelayRecommended,
    RelayStatusUpdated,
    SubscriptionExhausted,
    TextNoteReceived,
)
from .pending import PendingEventStore
from .relay_pool import RelayConnectionPool


if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from nostrsync.core.store import LocalCacheStore
    from nostrsync.models.event import Event
    from nostrsync.models.message import DbMessage
    from nostrsync.models.metadata import ChannelSubscription, ProfileCache
    from nostrsync.models.relay_message import RelayMessage


_RELAY_MESSAGE_TYPES: tuple[type, ...] = (
    EventMessage,
    OkMessage,
    EoseMessage,
    NoticeMessage,
    AuthMessage,
    CountMessage,
    RelayStatusChanged,
)

# Failures of one inbox item that leave the coordinator usable
_ITEM_ERRORS: tuple[type[BaseException], ...] = (
    NostrSyncError,
    asyncpg.PostgresError,
    OSError,
    ValueError,
    KeyError,
    TypeError,
)


@dataclass(slots=True)
class _Submission:
    command: Command
    future: asyncio.Future[Any]


def _consume_exception(future: asyncio.Future[Any]) -> None:
    # Callers may ignore the future; failures are also sent as CommandFailed
    if not future.cancelled():
        future.exception()


def _subscription_type(subscription_id: str) -> str:
    return subscription_id.split(":", 1)[0]


class BackendCoordinator(BaseService[BackendConfig]):
    """Serialized dispatcher over the reconcilers, the store and the relays.

    Args:
        store: Local cache; closed by ``shutdown()``.
        config: Service configuration (keys, relays, sync, limits).
        clock: Clock-corrected time source; a fresh one by default.

    Note:
        All state is mutated from the dispatch loop only. Public coroutines
        other than ``submit()``, ``run()``, ``start()`` and ``shutdown()``
        are not meant to be called from outside it.

    See Also:
        [ConfirmationReconciler][nostrsync.services.backend.confirmation.ConfirmationReconciler],
        [ContactListReconciler][nostrsync.services.backend.contacts.ContactListReconciler],
        [MetadataCache][nostrsync.services.backend.metadata.MetadataCache],
        [DirectMessageHandler][nostrsync.services.backend.messages.DirectMessageHandler]:
            The components dispatched to.
    """

    SERVICE_NAME: ClassVar[ServiceName] = ServiceName.BACKEND
    CONFIG_CLASS: ClassVar[type[BackendConfig]] = BackendConfig

    def __init__(
        self,
        store: LocalCacheStore,
        config: BackendConfig | None = None,
        clock: ClockOffsetProvider | None = None,
    ) -> None:
        super().__init__(store=store, config=config or BackendConfig())
        keys = self._config.keys.keys

        self._codec = EventCodec(keys)
        self._clock = clock or ClockOffsetProvider()
        self._inbox: asyncio.Queue[Any] = asyncio.Queue()
        self._notifications: asyncio.Queue[Notification] = asyncio.Queue(
            maxsize=self._config.notifications.buffer_size
        )
        self._pending = PendingEventStore()
        self._relays = RelayConnectionPool(self._inbox, self._config.relays, keys, self._logger)

        self._messages = DirectMessageHandler(store, self._codec, self._emit, self._logger)
        self._contacts = ContactListReconciler(store, self._codec, self._emit, self._logger)
        self._metadata = MetadataCache(store, self._codec, self._emit, self._logger)
        self._confirmation = ConfirmationReconciler(
            store=store,
            pending=self._pending,
            codec=self._codec,
            clock=self._clock,
            messages=self._messages,
            contacts=self._contacts,
            metadata=self._metadata,
            emit=self._emit,
            logger=self._logger,
        )

        self._command_handlers: dict[type, Callable[[Any], Awaitable[Any]]] = {
            FetchContacts: self._on_fetch_contacts,
            AddContact: self._on_add_contact,
            UpdateContact: self._on_update_contact,
            DeleteContact: self._on_delete_contact,
            ImportContacts: self._on_import_contacts,
            ExportContacts: self._on_export_contacts,
            SendContactListToRelays: self._on_send_contact_list,
            FetchRelays: self._on_fetch_relays,
            AddRelay: self._on_add_relay,
            DeleteRelay: self._on_delete_relay,
            ToggleRelayRead: self._on_toggle_relay_read,
            ToggleRelayWrite: self._on_toggle_relay_write,
            GetRelayStatusList: self._on_get_relay_status_list,
            SendDM: self._on_send_dm,
            FetchMessages: self._on_fetch_messages,
            FetchRelayResponses: self._on_fetch_relay_responses,
            FetchChatInfo: self._on_fetch_chat_info,
            ExportMessages: self._on_export_messages,
            GetUserProfileMeta: self._on_get_user_profile_meta,
            UpdateUserProfileMeta: self._on_update_user_profile_meta,
            FetchContactProfiles: self._on_fetch_contact_profiles,
            FetchProfile: self._on_fetch_profile,
            SearchChannels: self._on_search_channels,
            FetchChannelDetails: self._on_fetch_channel_details,
            SubscribeChannel: self._on_subscribe_channel,
            UnsubscribeChannel: self._on_unsubscribe_channel,
            FetchSubscribedChannels: self._on_fetch_subscribed_channels,
            ImageDownloaded: self._on_image_downloaded,
            RemoveFileFromCache: self._on_remove_file_from_cache,
            SetClockOffset: self._on_set_clock_offset,
            CancelPendingEvent: self._on_cancel_pending_event,
            RequestSync: self._on_request_sync,
            Logout: self._on_logout,
        }
        self._relay_handlers: dict[type, Callable[[Any], Awaitable[None]]] = {
            EventMessage: self._on_event_message,
            OkMessage: self._confirmation.on_ok,
            EoseMessage: self._on_eose,
            NoticeMessage: self._on_notice,
            AuthMessage: self._on_auth,
            CountMessage: self._on_count,
            RelayStatusChanged: self._on_relay_status,
        }
        self._kind_handlers: dict[EventKind, Callable[[Event, str], Awaitable[None]]] = {
            EventKind.METADATA: self._on_metadata_event,
            EventKind.TEXT_NOTE: self._on_text_note,
            EventKind.RECOMMEND_RELAY: self._on_recommend_relay,
            EventKind.CONTACT_LIST: self._on_contact_list_event,
            EventKind.ENCRYPTED_DIRECT_MESSAGE: self._on_direct_message,
            EventKind.CHANNEL_CREATION: self._on_channel_creation,
            EventKind.CHANNEL_METADATA: self._on_channel_metadata,
            EventKind.CHANNEL_MESSAGE: self._on_channel_message,
        }
        self._check_dispatch_tables()

        self._dispatch_task: asyncio.Task[None] | None = None
        self._shutdown_task: asyncio.Task[None] | None = None
        self._closed = False

    def _check_dispatch_tables(self) -> None:
        """Fail fast when a command, relay message or kind has no handler."""
        missing = [t.__name__ for t in COMMAND_TYPES if t not in self._command_handlers]
        missing += [t.__name__ for t in _RELAY_MESSAGE_TYPES if t not in self._relay_handlers]
        missing += [k.name for k in EventKind if k not in self._kind_handlers]
        if missing:
            raise TypeError(f"no dispatch handler for: {', '.join(missing)}")

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    @property
    def public_key(self) -> str:
        return self._codec.public_key

    @property
    def notifications(self) -> asyncio.Queue[Notification]:
        """Outbound queue of [notifications][nostrsync.services.backend.notifications]."""
        return self._notifications

    @property
    def pending(self) -> PendingEventStore:
        return self._pending

    @property
    def relays(self) -> RelayConnectionPool:
        return self._relays

    @property
    def clock(self) -> ClockOffsetProvider:
        return self._clock

    def submit(self, command: Command) -> asyncio.Future[Any]:
        """Queue *command* for the dispatch loop.

        Returns:
            A future resolved with the command's result, or failed with the
            error that also produced a ``CommandFailed`` notification.

        Raises:
            TypeError: If *command* is not a known command type.
        """
        if type(command) not in self._command_handlers:
            raise TypeError(f"unknown command: {type(command).__name__}")
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        future.add_done_callback(_consume_exception)
        if self._closed:
            future.set_exception(PublishingError("backend is shut down"))
            return future
        self._inbox.put_nowait(_Submission(command=command, future=future))
        return future

    async def next_notification(self) -> Notification:
        return await self._notifications.get()

    def _emit(self, notification: Notification) -> None:
        if self._notifications.full():
            self._notifications.get_nowait()
            self.inc_counter("notifications_dropped")
            self._logger.warning("notification_dropped", size=self._notifications.maxsize)
        self._notifications.put_nowait(notification)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Restore state, connect the relays and start dispatching. Idempotent."""
        if self._dispatch_task is not None or self._closed:
            return

        async with self._store.session() as s:
            offset_us = await s.fetch_clock_offset()
            relays = await s.fetch_relays()
            if not relays:
                relays = [RelayEntry(url=url) for url in self._config.relays.default_relays]
                for entry in relays:
                    await s.upsert_relay(entry)
                self._logger.info("default_relays_seeded", count=len(relays))
            unconfirmed = await s.fetch_unconfirmed_events(self._codec.public_key)

        self._clock.set_offset(offset_us)
        for entry in relays:
            self._relays.add_relay(entry)
        self._dispatch_task = asyncio.create_task(self._dispatch_loop(), name="backend-dispatch")

        for event in unconfirmed:
            self._track_and_publish(event)

        self._logger.info(
            "backend_started",
            pubkey=self._codec.public_key,
            relays=len(relays),
            republished=len(unconfirmed),
            clock_offset_us=offset_us,
        )

    async def run(self) -> None:
        """Sync once with every read relay and return when everything settled."""
        await self.start()
        started = time.monotonic()
        await self.submit(RequestSync())
        await self.wait_until_idle()
        self.set_gauge("pending_events", len(self._pending))
        self._logger.info(
            "sync_completed",
            pending=len(self._pending),
            duration_s=round(time.monotonic() - started, 2),
        )

    async def wait_until_idle(self) -> None:
        """Wait until no relay operation is outstanding and the inbox is drained."""
        while True:
            await self._relays.wait_idle()
            await self._inbox.join()
            if self._relays.is_idle and self._inbox.empty():
                return

    async def shutdown(self) -> None:
        """Stop dispatching, close relays and store. A second call does nothing."""
        if self._closed:
            return
        self._closed = True
        self.request_shutdown()

        task, self._dispatch_task = self._dispatch_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        await self._relays.close()
        self._abandon_pending()
        self._cancel_queued_commands()
        await self._store.close()
        self._logger.info("backend_shut_down")

    def _abandon_pending(self) -> None:
        abandoned = self._pending.abandon_all()
        if abandoned:
            ids = tuple(p.id for p in abandoned)
            self._logger.warning("pending_events_abandoned", count=len(ids))
            self._emit(PendingEventsAbandoned(event_ids=ids))

    def _cancel_queued_commands(self) -> None:
        while not self._inbox.empty():
            item = self._inbox.get_nowait()
            if isinstance(item, _Submission) and not item.future.done():
                item.future.cancel()
            self._inbox.task_done()

    async def __aenter__(self) -> BackendCoordinator:
        await super().__aenter__()
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.shutdown()
        await super().__aexit__(exc_type, exc_val, exc_tb)

    # -------------------------------------------------------------------------
    # Dispatch loop
    # -------------------------------------------------------------------------

    async def _dispatch_loop(self) -> None:
        while True:
            item = await self._inbox.get()
            started = time.monotonic()
            try:
                if isinstance(item, _Submission):
                    label = type(item.command).__name__
                    await self._dispatch_command(item)
                else:
                    label = type(item).__name__
                    await self._dispatch_relay_message(item)
            finally:
                self._inbox.task_done()
            if self._config.metrics.enabled:
                DISPATCH_DURATION_SECONDS.labels(service=self.SERVICE_NAME, item=label).observe(
                    time.monotonic() - started
                )

    async def _dispatch_command(self, submission: _Submission) -> None:
        command = submission.command
        name = type(command).__name__
        handler = self._command_handlers[type(command)]
        try:
            result = await handler(command)
        except asyncio.CancelledError:
            submission.future.cancel()
            raise
        except _ITEM_ERRORS as e:
            self._fail_command(submission, name, e)
        except Exception as e:  # noqa: BLE001  # the loop must outlive any single command
            self._logger.exception("command_crashed", command=name)
            self._fail_command(submission, name, e)
        else:
            if not submission.future.done():
                submission.future.set_result(result)

    def _fail_command(self, submission: _Submission, name: str, error: Exception) -> None:
        self._logger.error(
            "command_failed", command=name, error=str(error), error_type=type(error).__name__
        )
        self.inc_counter(f"errors_{type(error).__name__}")
        self._emit(CommandFailed(command=name, error=str(error)))
        if not submission.future.done():
            submission.future.set_exception(error)

    async def _dispatch_relay_message(self, message: RelayMessage) -> None:
        handler = self._relay_handlers.get(type(message))
        if handler is None:
            self._logger.warning("relay_message_unhandled", type=type(message).__name__)
            return
        try:
            await handler(message)
        except (ProtocolError, ValueError, TypeError) as e:
            self.inc_counter("events_dropped")
            self._logger.warning(
                "relay_message_dropped",
                relay=message.relay_url,
                error=str(e),
                error_type=type(e).__name__,
            )
        except (DatabaseError, asyncpg.PostgresError, OSError) as e:
            self._logger.error(
                "relay_message_failed",
                relay=message.relay_url,
                error=str(e),
                error_type=type(e).__name__,
            )
        except Exception:  # noqa: BLE001  # the loop must outlive any single message
            self._logger.exception("relay_message_crashed", relay=message.relay_url)

    # -------------------------------------------------------------------------
    # Relay messages
    # -------------------------------------------------------------------------

    async def _on_event_message(self, message: EventMessage) -> None:
        event = message.event
        if await self._confirmation.on_echo(event, message.relay_url):
            return
        kind = EventKind.from_int(event.kind)
        handler = self._kind_handlers[kind] if kind is not None else self._on_other_kind
        await handler(event, message.relay_url)

    async def _on_eose(self, message: EoseMessage) -> None:
        self._emit(
            SubscriptionExhausted(
                relay_url=message.relay_url, subscription_id=message.subscription_id
            )
        )
        if _subscription_type(message.subscription_id) == SubscriptionType.CONTACT_LIST:
            await self._request_contact_metadata(relay_url=message.relay_url)

    async def _on_notice(self, message: NoticeMessage) -> None:
        self._logger.info("relay_notice", relay=message.relay_url, message=message.message)
        self._emit(RelayNotice(relay_url=message.relay_url, message=message.message))

    async def _on_auth(self, message: AuthMessage) -> None:
        self._logger.debug("relay_auth_requested", relay=message.relay_url)

    async def _on_count(self, message: CountMessage) -> None:
        self._logger.debug(
            "relay_count",
            relay=message.relay_url,
            subscription=message.subscription_id,
            count=message.count,
        )

    async def _on_relay_status(self, message: RelayStatusChanged) -> None:
        self._emit(
            RelayStatusUpdated(
                relay_url=message.relay_url, status=message.status, error=message.error
            )
        )
        if message.status == RelayStatus.CONNECTED:
            self.inc_counter("relay_connections")

    # -------------------------------------------------------------------------
    # Events by kind
    # -------------------------------------------------------------------------

    async def _insert_received(self, event: Event, relay_url: str) -> bool:
        async with self._store.session() as s:
            return await s.insert_event(event, relay_url, self._clock.now())

    async def _on_metadata_event(self, event: Event, relay_url: str) -> None:
        await self._metadata.apply_profile(event, relay_url, self._clock.now())

    async def _on_text_note(self, event: Event, relay_url: str) -> None:
        if await self._insert_received(event, relay_url):
            self._emit(TextNoteReceived(event=event))

    async def _on_recommend_relay(self, event: Event, relay_url: str) -> None:
        if await self._insert_received(event, relay_url):
            url = event.content.strip()
            self._logger.info("relay_recommended", url=url, author=event.pubkey)
            self._emit(RelayRecommended(event=event, url=url))

    async def _on_contact_list_event(self, event: Event, relay_url: str) -> None:
        outcome = await self._contacts.apply(event, relay_url, self._clock.now())
        if outcome == UpdateOutcome.UPDATED:
            await self._request_contact_metadata()

    async def _on_direct_message(self, event: Event, relay_url: str) -> None:
        await self._messages.on_event(event, relay_url, self._clock.now())

    async def _on_channel_creation(self, event: Event, relay_url: str) -> None:
        await self._metadata.apply_channel_creation(event, relay_url, self._clock.now())

    async def _on_channel_metadata(self, event: Event, relay_url: str) -> None:
        await self._metadata.apply_channel_metadata(event, relay_url, self._clock.now())

    async def _on_channel_message(self, event: Event, relay_url: str) -> None:
        channel_id = referenced_channel_id(event)
        if channel_id is None:
            raise MalformedEventError("channel message without channel id", event_id=event.id)
        if await self._insert_received(event, relay_url):
            self._emit(ChannelMessageReceived(channel_id=channel_id, event=event))

    async def _on_other_kind(self, event: Event, relay_url: str) -> None:
        if await self._insert_received(event, relay_url):
            self._logger.debug("other_kind_stored", kind=event.kind, event_id=event.id)
            self._emit(OtherKindEventInserted(event=event))

    # -------------------------------------------------------------------------
    # Publishing and queries
    # -------------------------------------------------------------------------

    def _track_and_publish(self, event: Event) -> None:
        """Hold *event* pending and queue it on the write relays.

        Without a write relay the event stays pending and stored; it is
        republished on the next start.
        """
        self._pending.insert(event, self._clock.now())
        try:
            self._relays.publish(event)
        except PublishingError as e:
            self._logger.warning("publish_deferred", event_id=event.id, error=str(e))

    async def _next_created_at(self, kind: EventKind) -> int:
        """Corrected now, but strictly after the newest own event of *kind*."""
        now = self._clock.now()
        async with self._store.session() as s:
            latest = await s.latest_event_timestamp(kind, author=self._codec.public_key)
        return now if latest is None else max(now, latest + 1)

    async def _publish_contact_list(self) -> Event:
        """Sign the known contacts as a new list that supersedes any pending one."""
        created_at = await self._next_created_at(EventKind.CONTACT_LIST)
        async with self._store.transaction() as tx:
            contacts = await tx.fetch_contacts(ContactStatus.KNOWN)
            event = self._codec.build_contact_list(contacts, created_at)
            await tx.delete_events_of_kind(
                EventKind.CONTACT_LIST, self._codec.public_key, event.created_at
            )
            await tx.insert_event(event)

        for event_id in self._pending.ids():
            pending = self._pending.get(event_id)
            if pending is not None and pending.event.kind == EventKind.CONTACT_LIST:
                self._pending.take(event_id)

        self._track_and_publish(event)
        self._logger.info("contact_list_published", event_id=event.id, contacts=len(contacts))
        return event

    def _request(
        self,
        subscription: SubscriptionType,
        query: list[Any],
        *,
        suffix: str | None = None,
        relay_url: str | None = None,
    ) -> list[str]:
        subscription_id = f"{subscription}:{suffix}" if suffix else str(subscription)
        return self._relays.request_events(
            query,
            subscription_id=subscription_id,
            timeout=self._config.sync.request_timeout,
            relay_url=relay_url,
        )

    async def _request_contact_metadata(self, relay_url: str | None = None) -> None:
        async with self._store.session() as s:
            contacts = await s.fetch_contacts(ContactStatus.KNOWN)
        query = filters.contact_metadata_filters(c.pubkey for c in contacts)
        self._request(SubscriptionType.CONTACT_LIST_METADATA, query, relay_url=relay_url)

    # -------------------------------------------------------------------------
    # Commands: contacts
    # -------------------------------------------------------------------------

    async def _on_fetch_contacts(self, _command: FetchContacts) -> list[DbContact]:
        async with self._store.session() as s:
            return await s.fetch_contacts()

    async def _on_add_contact(self, command: AddContact) -> DbContact:
        contact = await self._contacts.add_contact(
            DbContact(
                pubkey=command.pubkey.lower(),
                petname=command.petname,
                relay_hint=command.relay_hint,
            )
        )
        await self._publish_contact_list()
        return contact

    async def _on_update_contact(self, command: UpdateContact) -> DbContact:
        contact = await self._contacts.update_contact(
            command.pubkey.lower(), command.petname, command.relay_hint
        )
        await self._publish_contact_list()
        return contact

    async def _on_delete_contact(self, command: DeleteContact) -> bool:
        deleted = await self._contacts.delete_contact(command.pubkey.lower())
        if deleted:
            await self._publish_contact_list()
        return deleted

    async def _on_import_contacts(self, command: ImportContacts) -> int:
        contacts = exports.contacts_from_json(await exports.read_text(command.path))
        count = await self._contacts.import_contacts(contacts, replace=command.replace)
        await self._publish_contact_list()
        return count

    async def _on_export_contacts(self, command: ExportContacts) -> int:
        contacts = await self._contacts.known_contacts()
        await exports.write_text(command.path, exports.contacts_to_json(contacts))
        self._logger.info("contacts_exported", path=command.path, count=len(contacts))
        return len(contacts)

    async def _on_send_contact_list(self, _command: SendContactListToRelays) -> Event:
        return await self._publish_contact_list()

    # -------------------------------------------------------------------------
    # Commands: relays
    # -------------------------------------------------------------------------

    def _announce_relays(self) -> None:
        self._emit(RelayListChanged(relays=tuple(self._relays.status_list())))

    async def _on_fetch_relays(self, _command: FetchRelays) -> list[RelayEntry]:
        async with self._store.session() as s:
            return await s.fetch_relays()

    async def _on_add_relay(self, command: AddRelay) -> RelayEntry:
        entry = RelayEntry(url=RelayUrl(command.url).url, read=command.read, write=command.write)
        async with self._store.session() as s:
            await s.upsert_relay(entry)
        self._relays.add_relay(entry)
        self._announce_relays()
        return entry

    async def _on_delete_relay(self, command: DeleteRelay) -> bool:
        url = RelayUrl(command.url).url
        async with self._store.session() as s:
            deleted = await s.delete_relay(url)
        removed = await self._relays.remove_relay(url)
        if deleted or removed:
            self._announce_relays()
        return deleted

    async def _find_relay(self, url: str) -> RelayEntry:
        normalized = RelayUrl(url).url
        async with self._store.session() as s:
            for entry in await s.fetch_relays():
                if entry.url == normalized:
                    return entry
        raise KeyError(f"unknown relay {normalized}")

    async def _on_toggle_relay_read(self, command: ToggleRelayRead) -> RelayEntry:
        entry = await self._find_relay(command.url)
        async with self._store.session() as s:
            await s.set_relay_read(entry.url, not entry.read)
        self._relays.set_read(entry.url, not entry.read)
        self._announce_relays()
        return RelayEntry(url=entry.url, read=not entry.read, write=entry.write)

    async def _on_toggle_relay_write(self, command: ToggleRelayWrite) -> RelayEntry:
        entry = await self._find_relay(command.url)
        async with self._store.session() as s:
            await s.set_relay_write(entry.url, not entry.write)
        self._relays.set_write(entry.url, not entry.write)
        self._announce_relays()
        return RelayEntry(url=entry.url, read=entry.read, write=not entry.write)

    async def _on_get_relay_status_list(self, _command: GetRelayStatusList) -> list[RelayEntry]:
        return self._relays.status_list()

    # -------------------------------------------------------------------------
    # Commands: messages
    # -------------------------------------------------------------------------

    async def _on_send_dm(self, command: SendDM) -> DbMessage:
        event, message = await self._messages.send(
            command.recipient.lower(), command.plaintext, self._clock.now()
        )
        self._track_and_publish(event)
        return message

    async def _on_fetch_messages(self, command: FetchMessages) -> list[DbMessage]:
        return await self._messages.open_chat(command.counterparty.lower())

    async def _on_fetch_relay_responses(self, command: FetchRelayResponses) -> list[Any]:
        async with self._store.session() as s:
            return await s.fetch_relay_responses(command.event_id.lower())

    async def _on_fetch_chat_info(self, command: FetchChatInfo) -> Any:
        return await self._messages.chat_info(command.counterparty.lower())

    async def _on_export_messages(self, command: ExportMessages) -> int:
        async with self._store.session() as s:
            if command.counterparty is None:
                messages = await s.fetch_all_messages()
            else:
                messages = await s.fetch_chat(command.counterparty.lower())
        await exports.write_text(command.path, exports.messages_to_json(messages))
        self._logger.info("messages_exported", path=command.path, count=len(messages))
        return len(messages)

    # -------------------------------------------------------------------------
    # Commands: profiles, channels, images
    # -------------------------------------------------------------------------

    async def _on_get_user_profile_meta(self, _command: GetUserProfileMeta) -> Any:
        return await self._metadata.fetch_profile(self._codec.public_key)

    async def _on_update_user_profile_meta(self, command: UpdateUserProfileMeta) -> Event:
        created_at = await self._next_created_at(EventKind.METADATA)
        event = self._codec.build_metadata(command.metadata, created_at)
        async with self._store.session() as s:
            await s.insert_event(event)
        self._track_and_publish(event)
        return event

    async def _on_fetch_contact_profiles(
        self, _command: FetchContactProfiles
    ) -> dict[str, ProfileCache]:
        async with self._store.session() as s:
            contacts = await s.fetch_contacts()
            profiles = await s.fetch_profiles([c.pubkey for c in contacts])
        return {p.pubkey: p for p in profiles}

    async def _on_fetch_profile(self, command: FetchProfile) -> Any:
        pubkey = command.pubkey.lower()
        self._request(
            SubscriptionType.CONTACT_LIST_METADATA,
            filters.contact_metadata_filters([pubkey]),
            suffix=pubkey,
        )
        return await self._metadata.fetch_profile(pubkey)

    async def _on_search_channels(self, command: SearchChannels) -> None:
        self._request(
            SubscriptionType.CHANNEL_SEARCH,
            filters.channel_search_filters(self._config.channels.search_limit, command.channel_id),
            suffix=command.channel_id,
        )

    async def _on_fetch_channel_details(self, command: FetchChannelDetails) -> ChannelDetails:
        channel_id = command.channel_id.lower()
        self._request_channel_details(channel_id)
        channel = await self._metadata.fetch_channel(channel_id)
        async with self._store.session() as s:
            messages = await s.fetch_channel_messages(
                channel_id, self._config.channels.message_limit
            )
            subscribed = any(
                sub.channel_id == channel_id for sub in await s.fetch_subscribed_channels()
            )
        return ChannelDetails(
            channel_id=channel_id, channel=channel, messages=messages, subscribed=subscribed
        )

    async def _on_subscribe_channel(self, command: SubscribeChannel) -> ChannelSubscription:
        channel_id = command.channel_id.lower()
        async with self._store.session() as s:
            subscription = await s.subscribe_channel(channel_id, self._clock.now())
        self._logger.info("channel_subscribed", channel=channel_id)
        self._request_channel_details(channel_id)
        return subscription

    async def _on_unsubscribe_channel(self, command: UnsubscribeChannel) -> bool:
        channel_id = command.channel_id.lower()
        async with self._store.session() as s:
            removed = await s.unsubscribe_channel(channel_id)
        if removed:
            self._logger.info("channel_unsubscribed", channel=channel_id)
        return removed

    async def _on_fetch_subscribed_channels(
        self, _command: FetchSubscribedChannels
    ) -> list[ChannelSubscription]:
        async with self._store.session() as s:
            return await s.fetch_subscribed_channels()

    def _request_channel_details(self, channel_id: str) -> None:
        limits = self._config.channels
        self._request(
            SubscriptionType.CHANNEL_DETAILS,
            filters.channel_details_filters(
                channel_id, limits.metadata_limit, limits.message_limit
            ),
            suffix=channel_id,
        )

    async def _on_image_downloaded(self, command: ImageDownloaded) -> bool:
        return await self._metadata.attach_local_image(
            command.subject_id, command.kind, command.path
        )

    async def _on_remove_file_from_cache(self, command: RemoveFileFromCache) -> bool:
        return await self._metadata.clear_local_image(command.subject_id, command.kind)

    # -------------------------------------------------------------------------
    # Commands: session
    # -------------------------------------------------------------------------

    async def _on_set_clock_offset(self, command: SetClockOffset) -> None:
        self._clock.set_offset(command.offset_us)
        async with self._store.session() as s:
            await s.store_clock_offset(command.offset_us)
        self._logger.info("clock_offset_set", offset_us=command.offset_us)
        self._emit(ClockOffsetChanged(offset_us=command.offset_us))

    async def _on_cancel_pending_event(self, command: CancelPendingEvent) -> bool:
        return self._pending.take(command.event_id.lower()) is not None

    async def _on_request_sync(self, _command: RequestSync) -> None:
        own = self._codec.public_key
        margin = self._config.sync.skew_margin
        async with self._store.session() as s:
            contacts_at = await s.latest_event_timestamp(EventKind.CONTACT_LIST, author=own)
            metadata_at = await s.latest_event_timestamp(EventKind.METADATA, author=own)
            messages_at = await s.latest_event_timestamp(EventKind.ENCRYPTED_DIRECT_MESSAGE)
            channels = await s.fetch_subscribed_channels()

        self._request(
            SubscriptionType.CONTACT_LIST,
            filters.contact_list_filters(own, filters.since_with_skew(contacts_at, margin)),
        )
        self._request(
            SubscriptionType.USER_METADATA,
            filters.user_metadata_filters(own, filters.since_with_skew(metadata_at, margin)),
        )
        self._request(
            SubscriptionType.MESSAGES,
            filters.message_filters(own, filters.since_with_skew(messages_at, margin)),
        )
        await self._request_contact_metadata()
        for subscription in channels:
            self._request_channel_details(subscription.channel_id)
        self._logger.info(
            "sync_requested",
            contacts_since=contacts_at,
            metadata_since=metadata_at,
            messages_since=messages_at,
            channels=len(channels),
        )

    async def _on_logout(self, _command: Logout) -> None:
        self._logger.info("logout_requested")
        self._abandon_pending()
        self.request_shutdown()
        self._shutdown_task = asyncio.create_task(self.shutdown(), name="backend-shutdown")
