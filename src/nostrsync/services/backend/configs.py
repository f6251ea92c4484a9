"""Backend service configuration models.

See Also:
    [BackendCoordinator][nostrsync.services.backend.service.BackendCoordinator]:
        The service that consumes these configurations.
    [BaseServiceConfig][nostrsync.core.base_service.BaseServiceConfig]:
        Provides ``interval``, ``max_consecutive_failures`` and ``metrics``.
"""

from __future__ import annotations

from pydantic import BaseModel, Field, field_validator, model_validator

from nostrsync.core.base_service import BaseServiceConfig
from nostrsync.models.relay import RelayUrl
from nostrsync.utils.keys import KeysConfig


DEFAULT_RELAYS: tuple[str, ...] = (
    "wss://relay.damus.io",
    "wss://nos.lol",
    "wss://relay.nostr.band",
)


class RelayPoolConfig(BaseModel):
    """Relay connection settings.

    Attributes:
        default_relays: Seeded into the relay list when it is empty on start.
        connect_timeout: Seconds allowed for one connection attempt.
        reconnect_initial_delay: First reconnect delay, doubled per failure.
        reconnect_max_delay: Upper bound of the reconnect delay.
        proxy_url: SOCKS5 proxy for overlay relays (``.onion`` etc).
        outbox_size: Queued operations per relay; further ones fail at once.
        health_check_interval: Idle seconds between connection checks.
    """

    default_relays: list[str] = Field(default_factory=lambda: list(DEFAULT_RELAYS))
    connect_timeout: float = Field(default=10.0, ge=0.5, le=120.0)
    reconnect_initial_delay: float = Field(default=1.0, ge=0.1, le=60.0)
    reconnect_max_delay: float = Field(default=60.0, ge=0.1, le=3600.0)
    proxy_url: str | None = Field(default=None, description="socks5://host:port")
    outbox_size: int = Field(default=256, ge=1, le=100_000)
    health_check_interval: float = Field(default=30.0, ge=1.0, le=3600.0)

    @field_validator("default_relays", mode="after")
    @classmethod
    def normalize_relays(cls, v: list[str]) -> list[str]:
        """Normalize every URL, drop duplicates, keep order."""
        normalized: list[str] = []
        for raw in v:
            url = RelayUrl(raw).url
            if url not in normalized:
                normalized.append(url)
        return normalized

    @model_validator(mode="after")
    def validate_delays(self) -> RelayPoolConfig:
        if self.reconnect_max_delay < self.reconnect_initial_delay:
            raise ValueError("reconnect_max_delay must be >= reconnect_initial_delay")
        return self


class SyncConfig(BaseModel):
    """Query behaviour.

    Attributes:
        request_timeout: Seconds a relay query may take before it is
            considered exhausted. The connection stays open.
        skew_margin: Seconds subtracted from the newest stored timestamp of a
            category when computing ``since``, to tolerate clock skew.
    """

    request_timeout: float = Field(default=10.0, ge=0.5, le=300.0)
    skew_margin: int = Field(default=600, ge=0, le=86_400)


class ChannelLimitsConfig(BaseModel):
    """Result limits of channel queries."""

    search_limit: int = Field(default=10, ge=1, le=1000)
    metadata_limit: int = Field(default=10, ge=1, le=1000)
    message_limit: int = Field(default=1000, ge=1, le=10_000)


class NotificationsConfig(BaseModel):
    """Outbound notification queue.

    When the consumer falls behind by ``buffer_size`` notifications the
    oldest are dropped, so the dispatch loop never blocks on a slow UI.
    """

    buffer_size: int = Field(default=10_000, ge=1, le=1_000_000)


class BackendConfig(BaseServiceConfig):
    """Backend service configuration.

    See Also:
        [KeysConfig][nostrsync.utils.keys.KeysConfig]: Local key pair.
    """

    keys: KeysConfig = Field(default_factory=lambda: KeysConfig.model_validate({}))
    relays: RelayPoolConfig = Field(default_factory=RelayPoolConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    channels: ChannelLimitsConfig = Field(default_factory=ChannelLimitsConfig)
    notifications: NotificationsConfig = Field(default_factory=NotificationsConfig)
