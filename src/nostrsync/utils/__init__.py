"""Helpers with I/O at the edges: keys from the environment, the corrected
clock, and the ``nostr_sdk`` client.

Attributes:
    KeysConfig: Pydantic model loading the local key pair from the environment.
    ClockOffsetProvider: Clock-corrected time for locally authored events.
    create_client, connect_relay, fetch_events, send_event: One-relay
        ``nostr_sdk`` client operations.
"""

from .clock import ClockOffsetProvider
from .keys import ENV_PRIVATE_KEY, KeysConfig, load_keys_from_env
from .protocol import (
    connect_relay,
    create_client,
    fetch_events,
    is_relay_connected,
    send_event,
    shutdown_client,
)


__all__ = [
    "ENV_PRIVATE_KEY",
    "ClockOffsetProvider",
    "KeysConfig",
    "connect_relay",
    "create_client",
    "fetch_events",
    "is_relay_connected",
    "load_keys_from_env",
    "send_event",
    "shutdown_client",
]
