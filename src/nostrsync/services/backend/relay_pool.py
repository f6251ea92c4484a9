"""
Relay connections: one long-lived worker task per relay, one shared inbox.

Each [RelayWorker][nostrsync.services.backend.relay_pool.RelayWorker] owns a
``nostr_sdk.Client`` connected to exactly one relay and an outbox of
operations (queries and publishes). Every operation runs in its own subtask,
so a slow query never holds up a publish. Everything a relay says is put on
the shared inbox as a
[RelayMessage][nostrsync.models.relay_message.RelayMessage], in the order
that relay produced it; there is no ordering across relays.

Per-relay failures stay per-relay:

- A query that fails or times out still ends with an ``EoseMessage``.
- A publish that fails ends with ``OkMessage(success=False)``.
- While a relay is unreachable its queued operations fail at once, so
  [wait_idle()][nostrsync.services.backend.relay_pool.RelayConnectionPool.wait_idle]
  never waits on a dead relay.

Workers reconnect with exponential backoff and report every status change
as ``RelayStatusChanged``.

See Also:
    [connect_relay()][nostrsync.utils.protocol.connect_relay],
    [fetch_events()][nostrsync.utils.protocol.fetch_events],
    [send_event()][nostrsync.utils.protocol.send_event]: Client helpers.
    [RelayPoolConfig][nostrsync.services.backend.configs.RelayPoolConfig]:
        Timeouts, backoff and outbox size.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any

from nostr_sdk import NostrSdkError

from nostrsync.core.exceptions import ConnectivityError, PublishingError
from nostrsync.core.logger import Logger
from nostrsync.models.constants import RelayStatus
from nostrsync.models.relay import RelayEntry, RelayUrl
from nostrsync.models.relay_message import (
    EoseMessage,
    EventMessage,
    OkMessage,
    RelayStatusChanged,
)
from nostrsync.nips.codec import EventCodec
from nostrsync.utils.protocol import (
    connect_relay,
    fetch_events,
    is_relay_connected,
    send_event,
    shutdown_client,
)

from .configs import RelayPoolConfig


if TYPE_CHECKING:
    from collections.abc import Iterable

    from nostr_sdk import Client, Filter, Keys

    from nostrsync.models.event import Event


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class _FetchOp:
    filters: tuple[Filter, ...]
    subscription_id: str
    timeout: float
    reported: bool = False
    finished: bool = False


@dataclass(slots=True)
class _PublishOp:
    event: Event
    reported: bool = False
    finished: bool = False


_RelayOp = _FetchOp | _PublishOp


# ---------------------------------------------------------------------------
# RelayWorker
# ---------------------------------------------------------------------------


class RelayWorker:
    """Connection to one relay with its own outbox.

    Args:
        entry: Relay URL and read/write flags.
        inbox: Shared queue receiving everything this relay says.
        config: Connection and backoff settings.
        keys: Signer for the client, ``None`` for read-only use.
        logger: Logger of the owning pool.
    """

    def __init__(
        self,
        entry: RelayEntry,
        inbox: asyncio.Queue[Any],
        config: RelayPoolConfig,
        keys: Keys | None = None,
        logger: Logger | None = None,
    ) -> None:
        self._relay = RelayUrl(entry.url)
        self._entry = replace(entry, status=RelayStatus.DISCONNECTED)
        self._inbox = inbox
        self._config = config
        self._keys = keys
        self._logger = logger or Logger("backend.relay_pool")

        self._outbox: asyncio.Queue[_RelayOp] = asyncio.Queue(maxsize=config.outbox_size)
        self._task: asyncio.Task[None] | None = None
        self._inflight: dict[asyncio.Task[None], _RelayOp] = {}
        self._outstanding = 0
        self._idle = asyncio.Event()
        self._idle.set()
        self._lost = asyncio.Event()
        self._report_aborts = False

    @property
    def url(self) -> str:
        return self._relay.url

    @property
    def entry(self) -> RelayEntry:
        """Relay flags together with the live connection status."""
        return self._entry

    @property
    def status(self) -> RelayStatus:
        return self._entry.status

    @property
    def is_idle(self) -> bool:
        """Whether no operation is queued or running."""
        return self._outstanding == 0

    def set_read(self, read: bool) -> None:  # noqa: FBT001
        self._entry = replace(self._entry, read=read)

    def set_write(self, write: bool) -> None:  # noqa: FBT001
        self._entry = replace(self._entry, write=write)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        """Start the connection task. Calling it again has no effect."""
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"relay-worker:{self.url}")

    async def stop(self) -> None:
        """Cancel the connection task; queued and in-flight operations are dropped."""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def wait_idle(self) -> None:
        await self._idle.wait()

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def submit(self, op: _RelayOp) -> bool:
        """Queue *op*. A full outbox fails the operation immediately.

        Returns:
            ``True`` if the operation was queued.
        """
        try:
            self._outbox.put_nowait(op)
        except asyncio.QueueFull:
            self._logger.warning("outbox_full", relay=self.url, size=self._outbox.maxsize)
            self._report_failure(op, "outbox full")
            op.finished = True
            return False
        self._outstanding += 1
        self._idle.clear()
        return True

    def _deliver(self, message: Any) -> None:
        self._inbox.put_nowait(message)

    def _report_failure(self, op: _RelayOp, reason: str) -> None:
        if op.reported:
            return
        op.reported = True
        if isinstance(op, _FetchOp):
            self._logger.debug(
                "request_failed", relay=self.url, subscription=op.subscription_id, reason=reason
            )
            self._deliver(EoseMessage(relay_url=self.url, subscription_id=op.subscription_id))
        else:
            self._deliver(
                OkMessage(relay_url=self.url, event_id=op.event.id, success=False, message=reason)
            )

    def _finish(self, op: _RelayOp) -> None:
        if op.finished:
            return
        op.finished = True
        self._outstanding -= 1
        if self._outstanding <= 0:
            self._outstanding = 0
            self._idle.set()

    def _set_status(self, status: RelayStatus, error: str | None = None) -> None:
        if status == self._entry.status:
            return
        self._entry = self._entry.with_status(status)
        self._logger.debug("relay_status", relay=self.url, status=status, error=error)
        self._deliver(RelayStatusChanged(relay_url=self.url, status=status, error=error))

    # -------------------------------------------------------------------------
    # Connection loop
    # -------------------------------------------------------------------------

    async def _run(self) -> None:
        delay = self._config.reconnect_initial_delay
        try:
            while True:
                self._set_status(RelayStatus.CONNECTING)
                try:
                    client = await connect_relay(
                        self._relay,
                        keys=self._keys,
                        proxy_url=self._config.proxy_url,
                        timeout=self._config.connect_timeout,
                    )
                except (OSError, TimeoutError, ValueError, NostrSdkError) as e:
                    self._set_status(RelayStatus.DISCONNECTED, str(e))
                    self._logger.warning(
                        "relay_connect_failed", relay=self.url, error=str(e), retry_in=delay
                    )
                    await self._fail_queued_for(delay, f"relay unreachable: {e}")
                    delay = min(delay * 2, self._config.reconnect_max_delay)
                    continue

                delay = self._config.reconnect_initial_delay
                self._set_status(RelayStatus.CONNECTED)
                try:
                    await self._serve(client)
                except ConnectivityError as e:
                    self._set_status(RelayStatus.DISCONNECTED, str(e))
                    self._logger.warning("relay_connection_lost", relay=self.url)
                    await self._abort_inflight(report=True)
                finally:
                    await shutdown_client(client)
        finally:
            await self._abort_inflight(report=False)
            self._drop_queued()

    async def _serve(self, client: Client) -> None:
        """Run queued operations until the connection is found broken."""
        while True:
            try:
                op: _RelayOp | None = await asyncio.wait_for(
                    self._outbox.get(), timeout=self._config.health_check_interval
                )
            except TimeoutError:
                op = None

            if op is not None:
                task = asyncio.create_task(self._execute(client, op))
                self._inflight[task] = op
                task.add_done_callback(self._forget)

            if op is None or self._lost.is_set():
                self._lost.clear()
                if not await is_relay_connected(client, self.url):
                    raise ConnectivityError(f"connection lost: {self.url}", relay_url=self.url)

    def _forget(self, task: asyncio.Task[None]) -> None:
        self._inflight.pop(task, None)
        if not task.cancelled() and task.exception() is not None:
            self._logger.error(
                "relay_operation_crashed", relay=self.url, error=str(task.exception())
            )

    async def _execute(self, client: Client, op: _RelayOp) -> None:
        try:
            if isinstance(op, _FetchOp):
                await self._execute_fetch(client, op)
            else:
                await self._execute_publish(client, op)
        except asyncio.CancelledError:
            if self._report_aborts:
                self._report_failure(op, "connection lost")
            raise
        finally:
            self._finish(op)

    async def _execute_fetch(self, client: Client, op: _FetchOp) -> None:
        try:
            events = await fetch_events(client, op.filters, op.timeout)
        except (OSError, TimeoutError, NostrSdkError) as e:
            self._lost.set()
            self._report_failure(op, str(e))
            return

        for event in events:
            if not EventCodec.verify(event):
                self._logger.debug("event_rejected", relay=self.url, event_id=event.id)
                continue
            self._deliver(
                EventMessage(relay_url=self.url, subscription_id=op.subscription_id, event=event)
            )
        op.reported = True
        self._deliver(EoseMessage(relay_url=self.url, subscription_id=op.subscription_id))

    async def _execute_publish(self, client: Client, op: _PublishOp) -> None:
        try:
            accepted, reason = await send_event(client, op.event, self.url)
        except OSError as e:
            self._lost.set()
            self._report_failure(op, str(e))
            return
        op.reported = True
        self._deliver(
            OkMessage(relay_url=self.url, event_id=op.event.id, success=accepted, message=reason)
        )

    async def _abort_inflight(self, *, report: bool) -> None:
        tasks = list(self._inflight)
        if not tasks:
            return
        self._report_aborts = report
        try:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        finally:
            self._report_aborts = False

    async def _fail_queued_for(self, duration: float, reason: str) -> None:
        """Fail queued operations, and those arriving within *duration* seconds."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + duration
        self._fail_queued(reason)
        while (remaining := deadline - loop.time()) > 0:
            try:
                op = await asyncio.wait_for(self._outbox.get(), timeout=remaining)
            except TimeoutError:
                return
            self._report_failure(op, reason)
            self._finish(op)

    def _fail_queued(self, reason: str) -> None:
        while not self._outbox.empty():
            op = self._outbox.get_nowait()
            self._report_failure(op, reason)
            self._finish(op)

    def _drop_queued(self) -> None:
        while not self._outbox.empty():
            self._finish(self._outbox.get_nowait())

    def __repr__(self) -> str:
        return f"RelayWorker(url={self.url}, status={self.status}, outstanding={self._outstanding})"


# ---------------------------------------------------------------------------
# RelayConnectionPool
# ---------------------------------------------------------------------------


class RelayConnectionPool:
    """The set of relay workers feeding one inbox.

    Args:
        inbox: Queue shared with the dispatch loop.
        config: Settings applied to every worker.
        keys: Signer handed to each client.
        logger: Logger of the owning service.

    Examples:
        ```python
        inbox: asyncio.Queue = asyncio.Queue()
        pool = RelayConnectionPool(inbox, RelayPoolConfig())
        pool.add_relay(RelayEntry(url="wss://nos.lol"))
        pool.request_events(filters, subscription_id="messages", timeout=10)
        await pool.wait_idle()
        await pool.close()
        ```
    """

    def __init__(
        self,
        inbox: asyncio.Queue[Any],
        config: RelayPoolConfig | None = None,
        keys: Keys | None = None,
        logger: Logger | None = None,
    ) -> None:
        self._inbox = inbox
        self._config = config or RelayPoolConfig()
        self._keys = keys
        self._logger = logger or Logger("backend.relay_pool")
        self._workers: dict[str, RelayWorker] = {}
        self._closed = False

    # -------------------------------------------------------------------------
    # Relay set
    # -------------------------------------------------------------------------

    def add_relay(self, entry: RelayEntry) -> RelayWorker:
        """Start a worker for *entry*, or update the flags of the existing one.

        Raises:
            ConnectivityError: If the pool is closed.
        """
        if self._closed:
            raise ConnectivityError("relay pool is closed", relay_url=entry.url)
        worker = self._workers.get(entry.url)
        if worker is not None:
            worker.set_read(entry.read)
            worker.set_write(entry.write)
            return worker
        worker = RelayWorker(entry, self._inbox, self._config, self._keys, self._logger)
        self._workers[worker.url] = worker
        worker.start()
        self._logger.info("relay_added", relay=worker.url, read=entry.read, write=entry.write)
        return worker

    async def remove_relay(self, url: str) -> bool:
        """Stop and forget the worker of *url*; its in-flight operations are dropped."""
        worker = self._workers.pop(url, None)
        if worker is None:
            return False
        await worker.stop()
        self._logger.info("relay_removed", relay=url)
        return True

    def set_read(self, url: str, read: bool) -> bool:  # noqa: FBT001
        """Change the read flag for future queries. Returns ``False`` for unknown relays."""
        worker = self._workers.get(url)
        if worker is None:
            return False
        worker.set_read(read)
        return True

    def set_write(self, url: str, write: bool) -> bool:  # noqa: FBT001
        """Change the write flag for future publishes. Returns ``False`` for unknown relays."""
        worker = self._workers.get(url)
        if worker is None:
            return False
        worker.set_write(write)
        return True

    def status_list(self) -> list[RelayEntry]:
        return [w.entry for w in sorted(self._workers.values(), key=lambda w: w.url)]

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def request_events(
        self,
        filters: Iterable[Filter],
        *,
        subscription_id: str,
        timeout: float,  # noqa: ASYNC109
        relay_url: str | None = None,
    ) -> list[str]:
        """Query one relay, or every read relay, without waiting for results.

        Results arrive on the inbox as ``EventMessage`` items followed by one
        ``EoseMessage`` per relay.

        Returns:
            URLs of the relays the query was queued on.
        """
        query = tuple(filters)
        if not query:
            return []
        if relay_url is not None:
            worker = self._workers.get(relay_url)
            targets = [worker] if worker is not None else []
        else:
            targets = [w for w in self._workers.values() if w.entry.read]

        queued = [
            w.url
            for w in targets
            if w.submit(_FetchOp(filters=query, subscription_id=subscription_id, timeout=timeout))
        ]
        self._logger.debug("request_queued", subscription=subscription_id, relays=len(queued))
        return queued

    def publish(self, event: Event) -> list[str]:
        """Queue *event* on every write relay.

        Returns:
            URLs of the relays the event was queued on.

        Raises:
            PublishingError: If no write relay accepted the event.
        """
        queued = [
            w.url
            for w in self._workers.values()
            if w.entry.write and w.submit(_PublishOp(event=event))
        ]
        if not queued:
            raise PublishingError(f"no write relay available for event {event.id}")
        self._logger.debug("publish_queued", event_id=event.id, relays=len(queued))
        return queued

    @property
    def is_idle(self) -> bool:
        return all(w.is_idle for w in self._workers.values())

    async def wait_idle(self) -> None:
        """Wait until no relay has an operation queued or running."""
        while not self.is_idle:
            await asyncio.gather(*(w.wait_idle() for w in list(self._workers.values())))

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def close(self) -> None:
        """Stop every worker. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        workers = list(self._workers.values())
        self._workers.clear()
        await asyncio.gather(*(w.stop() for w in workers))
        self._logger.info("relay_pool_closed", relays=len(workers))

    @property
    def is_closed(self) -> bool:
        return self._closed

    def __contains__(self, url: object) -> bool:
        return url in self._workers

    def __len__(self) -> int:
        return len(self._workers)
