"""
Thin helpers over the ``nostr_sdk`` client.

Each [RelayWorker][nostrsync.services.backend.relay_pool.RelayWorker] owns
one ``nostr_sdk.Client`` connected to exactly one relay, so the helpers
here always speak to a single relay and report per-relay outcomes.

Attributes:
    create_client: Client factory with optional signer and SOCKS5 proxy.
    connect_relay: Connect a fresh client to one relay or raise.
    fetch_events: Run filters to EOSE and return verified events.
    send_event: Publish one signed event and return the relay's verdict.
    is_relay_connected: Whether the client still holds a live connection.
    shutdown_client: Best-effort client teardown.

Note:
    Overlay relays (Tor, I2P, Lokinet) are reached through the SOCKS5
    proxy; clearnet relays connect directly over TLS.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import socket
from datetime import timedelta
from ipaddress import AddressValueError, IPv4Address, IPv6Address
from typing import TYPE_CHECKING
from urllib.parse import urlparse

from nostr_sdk import (
    ClientBuilder,
    ClientOptions,
    Connection,
    ConnectionMode,
    ConnectionTarget,
    NostrSdkError,
    NostrSigner,
)
from nostr_sdk import RelayUrl as NostrRelayUrl

from nostrsync.models.event import Event
from nostrsync.models.relay import RelayUrl


if TYPE_CHECKING:
    from collections.abc import Iterable

    from nostr_sdk import Client, Filter, Keys


logger = logging.getLogger(__name__)

_DEFAULT_PROXY_PORT = 9050


async def _resolve_proxy_host(host: str) -> str:
    """Return *host* as a numeric IP; the SDK does not resolve proxy names."""
    bare = host.strip("[]")
    try:
        IPv4Address(bare)
    except (AddressValueError, ValueError):
        try:
            IPv6Address(bare)
        except (AddressValueError, ValueError):
            return await asyncio.to_thread(socket.gethostbyname, host)
    return bare


async def create_client(keys: Keys | None = None, proxy_url: str | None = None) -> Client:
    """Build an unconnected client.

    Args:
        keys: Signer keys, ``None`` for a read-only client.
        proxy_url: ``socks5://host:port`` used for overlay relays.
    """
    builder = ClientBuilder()
    if keys is not None:
        builder = builder.signer(NostrSigner.keys(keys))

    if proxy_url is not None:
        parsed = urlparse(proxy_url)
        host = await _resolve_proxy_host(parsed.hostname or "127.0.0.1")
        mode = ConnectionMode.PROXY(host, parsed.port or _DEFAULT_PROXY_PORT)
        conn = Connection().mode(mode).target(ConnectionTarget.ONION)
        builder = builder.opts(ClientOptions().connection(conn))

    return builder.build()


async def connect_relay(
    relay: RelayUrl,
    keys: Keys | None = None,
    proxy_url: str | None = None,
    timeout: float = 10.0,  # noqa: ASYNC109
) -> Client:
    """Connect a new client to *relay*.

    Returns:
        A connected client; the caller must shut it down.

    Raises:
        ValueError: If an overlay relay is requested without a proxy.
        TimeoutError: If an overlay connection is not up within *timeout*.
        OSError: If the relay refused or the handshake failed.
    """
    sdk_url = NostrRelayUrl.parse(relay.url)

    if relay.is_overlay:
        if proxy_url is None:
            raise ValueError(f"proxy_url required for {relay.network} relay: {relay.url}")
        client = await create_client(keys, proxy_url)
        await client.add_relay(sdk_url)
        await client.connect()
        await client.wait_for_connection(timedelta(seconds=timeout))
        sdk_relay = await client.relay(sdk_url)
        if not sdk_relay.is_connected():
            await shutdown_client(client)
            raise TimeoutError(f"Connection timeout: {relay.url}")
        return client

    client = await create_client(keys)
    await client.add_relay(sdk_url)
    output = await client.try_connect(timedelta(seconds=timeout))
    if sdk_url in output.success:
        logger.debug("relay_connected relay=%s", relay.url)
        return client

    error = output.failed.get(sdk_url, "Unknown error")
    await shutdown_client(client)
    raise OSError(f"Connection failed: {relay.url} ({error})")


async def fetch_events(
    client: Client,
    filters: Iterable[Filter],
    timeout: float,  # noqa: ASYNC109
) -> list[Event]:
    """Run each filter until EOSE (or *timeout*) and collect verified events.

    Events whose signature does not verify, or that cannot be converted,
    are dropped and logged at debug level. Duplicates across filters are
    removed.
    """
    collected: dict[str, Event] = {}
    for event_filter in filters:
        result = await client.fetch_events(event_filter, timedelta(seconds=timeout))
        for sdk_event in result.to_vec():
            try:
                if not sdk_event.verify():
                    logger.debug("event_signature_invalid id=%s", sdk_event.id().to_hex())
                    continue
                event = Event.from_nostr(sdk_event)
            except (NostrSdkError, ValueError, TypeError, OverflowError) as e:
                logger.debug("event_conversion_failed error=%s", e)
                continue
            collected.setdefault(event.id, event)
    return list(collected.values())


async def send_event(client: Client, event: Event, relay_url: str) -> tuple[bool, str]:
    """Publish *event* through *client* and return ``(accepted, message)``.

    Raises:
        OSError: If the SDK could not send at all.
    """
    sdk_url = NostrRelayUrl.parse(relay_url)
    try:
        output = await client.send_event(event.to_nostr())
    except NostrSdkError as e:
        raise OSError(f"send failed: {relay_url} ({e})") from e
    if sdk_url in output.success:
        return True, ""
    return False, output.failed.get(sdk_url, "Unknown error")


async def shutdown_client(client: Client) -> None:
    """Disconnect and release *client*, ignoring SDK teardown errors."""
    # The FFI layer can raise arbitrary exception types while tearing down
    with contextlib.suppress(Exception):
        await client.shutdown()


async def is_relay_connected(client: Client, relay_url: str) -> bool:
    """Return whether *client* still has a live connection to *relay_url*."""
    try:
        relay = await client.relay(NostrRelayUrl.parse(relay_url))
        return bool(relay.is_connected())
    except NostrSdkError as e:
        logger.debug("relay_state_unavailable relay=%s error=%s", relay_url, e)
        return False
