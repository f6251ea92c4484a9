"""
Relay URL validation and the user's relay list entries.

[RelayUrl][nostrsync.models.relay.RelayUrl] normalizes a WebSocket URL and
detects its network from the host; [RelayEntry][nostrsync.models.relay.RelayEntry]
is one row of the user's relay list, carrying the read/write capability
flags and the session-only connection status.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from ipaddress import IPv4Network, IPv6Network, ip_address, ip_network
from typing import Any, ClassVar, NamedTuple

from rfc3986 import uri_reference
from rfc3986.exceptions import UnpermittedComponentError, ValidationError
from rfc3986.validators import Validator

from ._validation import validate_instance
from .constants import NetworkType, RelayStatus


@dataclass(frozen=True, slots=True)
class RelayUrl:
    """Validated, normalized relay URL.

    Clearnet hosts always get ``wss://``; overlay hosts (``.onion``,
    ``.i2p``, ``.loki``) get ``ws://`` since the overlay encrypts. Default
    ports, trailing slashes, query strings and fragments are not allowed to
    survive normalization, so two spellings of the same relay compare equal.

    Attributes:
        url: Normalized URL including scheme.
        network: Detected [NetworkType][nostrsync.models.constants.NetworkType].
        host: Hostname or IP (IPv6 without brackets).
        port: Explicit non-default port, or ``None``.
        path: Path without trailing slash, or ``None``.

    Raises:
        ValueError: If the URL is malformed, not ws/wss, local/private, or
            contains null bytes.

    Examples:
        ```python
        RelayUrl("WSS://Relay.Damus.io/").url   # 'wss://relay.damus.io'
        RelayUrl("ws://abc.onion").network      # NetworkType.TOR
        ```
    """

    raw_url: str = field(repr=False)

    url: str = field(init=False)
    network: NetworkType = field(init=False)
    host: str = field(init=False)
    port: int | None = field(init=False)
    path: str | None = field(init=False)

    _DEFAULT_PORTS: ClassVar[dict[str, int]] = {"ws": 80, "wss": 443}

    _OVERLAY_SUFFIXES: ClassVar[dict[str, NetworkType]] = {
        ".onion": NetworkType.TOR,
        ".i2p": NetworkType.I2P,
        ".loki": NetworkType.LOKI,
    }

    # Reserved ranges (IANA special-purpose registries)
    _LOCAL_NETWORKS: ClassVar[tuple[IPv4Network | IPv6Network, ...]] = (
        ip_network("0.0.0.0/8"),
        ip_network("10.0.0.0/8"),
        ip_network("100.64.0.0/10"),
        ip_network("127.0.0.0/8"),
        ip_network("169.254.0.0/16"),
        ip_network("172.16.0.0/12"),
        ip_network("192.0.0.0/24"),
        ip_network("192.0.2.0/24"),
        ip_network("192.168.0.0/16"),
        ip_network("198.18.0.0/15"),
        ip_network("224.0.0.0/4"),
        ip_network("240.0.0.0/4"),
        ip_network("::1/128"),
        ip_network("::/128"),
        ip_network("::ffff:0:0/96"),
        ip_network("fc00::/7"),
        ip_network("fe80::/10"),
        ip_network("ff00::/8"),
    )

    def __post_init__(self) -> None:
        validate_instance(self.raw_url, str, "raw_url")
        if "\x00" in self.raw_url:
            raise ValueError("relay URL contains null bytes")

        parts = self._parse(self.raw_url)
        if parts["network"] == NetworkType.LOCAL:
            raise ValueError(f"local relay addresses are not allowed: {parts['host']}")
        if parts["network"] == NetworkType.UNKNOWN:
            raise ValueError(f"invalid relay host: {parts['host']!r}")

        object.__setattr__(self, "url", parts["url"])
        object.__setattr__(self, "network", parts["network"])
        object.__setattr__(self, "host", parts["host"])
        object.__setattr__(self, "port", parts["port"])
        object.__setattr__(self, "path", parts["path"])

    def __str__(self) -> str:
        return self.url

    @property
    def is_overlay(self) -> bool:
        """Whether the relay is only reachable through an overlay proxy."""
        return self.network in (NetworkType.TOR, NetworkType.I2P, NetworkType.LOKI)

    @classmethod
    def detect_network(cls, host: str) -> NetworkType:
        """Classify *host* by overlay suffix, IP range, then DNS label syntax."""
        bare = host.lower().strip("[]")
        if not bare:
            return NetworkType.UNKNOWN

        for suffix, network in cls._OVERLAY_SUFFIXES.items():
            if bare.endswith(suffix):
                return network

        if bare in ("localhost", "localhost.localdomain"):
            return NetworkType.LOCAL

        try:
            address = ip_address(bare)
        except ValueError:
            pass
        else:
            if any(address in net for net in cls._LOCAL_NETWORKS):
                return NetworkType.LOCAL
            return NetworkType.CLEARNET

        labels = bare.split(".")
        if len(labels) < 2:  # noqa: PLR2004
            return NetworkType.UNKNOWN
        if all(label and not label.startswith("-") and not label.endswith("-") for label in labels):
            return NetworkType.CLEARNET
        return NetworkType.UNKNOWN

    @classmethod
    def _parse(cls, raw: str) -> dict[str, Any]:
        uri = uri_reference(raw.strip()).normalize()
        validator = (
            Validator()
            .require_presence_of("scheme", "host")
            .allow_schemes("ws", "wss")
            .check_validity_of("scheme", "host", "port", "path")
        )
        try:
            validator.validate(uri)
        except UnpermittedComponentError:
            raise ValueError("relay URL scheme must be ws or wss") from None
        except ValidationError as e:
            raise ValueError(f"invalid relay URL: {e}") from None

        if uri.query:
            raise ValueError("relay URL must not contain a query string")
        if uri.fragment:
            raise ValueError("relay URL must not contain a fragment")

        host = uri.host.strip("[]")
        network = cls.detect_network(host)
        scheme = "wss" if network == NetworkType.CLEARNET else "ws"

        path = uri.path or ""
        while "//" in path:
            path = path.replace("//", "/")
        path = path.rstrip("/") or None

        port = int(uri.port) if uri.port else None
        if port == cls._DEFAULT_PORTS[scheme]:
            port = None

        shown_host = f"[{host}]" if ":" in host else host
        authority = f"{shown_host}:{port}" if port else shown_host
        return {
            "url": f"{scheme}://{authority}{path or ''}",
            "network": network,
            "host": host,
            "port": port,
            "path": path,
        }


class RelayEntryDbParams(NamedTuple):
    """Positional parameters for the ``relay`` table."""

    url: str
    read: bool
    write: bool


@dataclass(frozen=True, slots=True)
class RelayEntry:
    """One relay of the user's relay list.

    Only ``url``, ``read`` and ``write`` are persisted; ``status`` reflects
    the live [RelayWorker][nostrsync.services.backend.relay_pool.RelayWorker]
    and resets to ``DISCONNECTED`` on every start.

    Attributes:
        url: Normalized relay URL (see [RelayUrl][nostrsync.models.relay.RelayUrl]).
        read: Queries are sent to this relay.
        write: Locally authored events are published to this relay.
        status: Current connection status.
    """

    url: str
    read: bool = True
    write: bool = True
    status: RelayStatus = RelayStatus.DISCONNECTED

    def __post_init__(self) -> None:
        validate_instance(self.read, bool, "read")
        validate_instance(self.write, bool, "write")
        object.__setattr__(self, "url", RelayUrl(self.url).url)
        object.__setattr__(self, "status", RelayStatus(self.status))

    def with_status(self, status: RelayStatus) -> RelayEntry:
        """Return a copy carrying *status*."""
        return replace(self, status=status)

    def to_db_params(self) -> RelayEntryDbParams:
        """Return positional parameters for the ``relay`` table."""
        return RelayEntryDbParams(url=self.url, read=self.read, write=self.write)

    @classmethod
    def from_db_params(cls, params: RelayEntryDbParams) -> RelayEntry:
        """Rebuild an entry from a stored row (status starts disconnected)."""
        return cls(url=params.url, read=params.read, write=params.write)
