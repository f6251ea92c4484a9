"""
Profile (kind 0) and channel (kind 40/41) metadata, and their cache rows.

Remote metadata is attacker-controlled JSON. Parsing is strict about shape
(the payload must be a JSON object) and lenient about content: known string
fields are extracted, non-string values for them are ignored, and every
other key is kept in ``extra`` after sanitization so that re-publishing the
user's own profile does not lose fields written by other clients.

Cache rows follow one rule: a metadata event overwrites the row only if its
``created_at`` is strictly greater than the row's ``updated_at``. Local image
paths are attached separately and never move ``updated_at``.

See Also:
    [MetadataCache][nostrsync.services.backend.metadata.MetadataCache]:
        Applies that rule and hands image URLs to the downloader.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, NamedTuple

from ._validation import (
    deep_freeze,
    sanitize_data,
    thaw,
    validate_hex,
    validate_mapping,
    validate_optional_str,
    validate_optional_timestamp,
    validate_timestamp,
)
from .constants import ImageKind


def _parse_json_object(raw: str, name: str) -> dict[str, Any]:
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, RecursionError) as e:
        raise ValueError(f"{name} is not valid JSON: {e}") from None
    if not isinstance(data, dict):
        raise ValueError(f"{name} must be a JSON object")
    cleaned = sanitize_data(data, name)
    return cleaned if isinstance(cleaned, dict) else {}


def _pick_str(data: dict[str, Any], key: str) -> str | None:
    value = data.pop(key, None)
    return value if isinstance(value, str) and value else None


# ---------------------------------------------------------------------------
# Metadata payloads
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ProfileMetadata:
    """Parsed NIP-01 kind-0 content.

    Attributes:
        name: Short handle.
        display_name: Human-friendly name.
        about: Free-form biography.
        picture: Profile picture URL.
        banner: Banner image URL.
        website: Personal site URL.
        nip05: NIP-05 identifier.
        lud16: Lightning address.
        extra: Every other key of the original object, sanitized and frozen.
    """

    name: str | None = None
    display_name: str | None = None
    about: str | None = None
    picture: str | None = None
    banner: str | None = None
    website: str | None = None
    nip05: str | None = None
    lud16: str | None = None
    extra: MappingProxyType[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    _FIELDS = ("name", "display_name", "about", "picture", "banner", "website", "nip05", "lud16")

    def __post_init__(self) -> None:
        for name in self._FIELDS:
            validate_optional_str(getattr(self, name), name)
        validate_mapping(self.extra, "extra")
        frozen = deep_freeze(sanitize_data(dict(self.extra), "extra") or {})
        object.__setattr__(self, "extra", frozen)

    @classmethod
    def from_json(cls, raw: str) -> ProfileMetadata:
        """Parse kind-0 content.

        Raises:
            ValueError: If *raw* is not a JSON object or holds null bytes.
        """
        data = _parse_json_object(raw, "profile metadata")
        known = {name: _pick_str(data, name) for name in cls._FIELDS}
        # Some clients still write the deprecated "displayName"
        if known["display_name"] is None:
            known["display_name"] = _pick_str(data, "displayName")
        return cls(**known, extra=MappingProxyType(data))

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON object to publish, known fields winning over ``extra``."""
        result = thaw(self.extra)
        for name in self._FIELDS:
            value = getattr(self, name)
            if value is not None:
                result[name] = value
        return result

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, sort_keys=True)

    def image_url(self, kind: ImageKind) -> str | None:
        """Return the URL for *kind* (``PROFILE`` or ``BANNER``)."""
        if kind == ImageKind.PROFILE:
            return self.picture
        if kind == ImageKind.BANNER:
            return self.banner
        return None


@dataclass(frozen=True, slots=True)
class ChannelMetadata:
    """Parsed NIP-28 kind-40/41 content (``name``, ``about``, ``picture``)."""

    name: str | None = None
    about: str | None = None
    picture: str | None = None
    extra: MappingProxyType[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    _FIELDS = ("name", "about", "picture")

    def __post_init__(self) -> None:
        for name in self._FIELDS:
            validate_optional_str(getattr(self, name), name)
        validate_mapping(self.extra, "extra")
        frozen = deep_freeze(sanitize_data(dict(self.extra), "extra") or {})
        object.__setattr__(self, "extra", frozen)

    @classmethod
    def from_json(cls, raw: str) -> ChannelMetadata:
        """Parse kind-40/41 content.

        Raises:
            ValueError: If *raw* is not a JSON object or holds null bytes.
        """
        data = _parse_json_object(raw, "channel metadata")
        known = {name: _pick_str(data, name) for name in cls._FIELDS}
        return cls(**known, extra=MappingProxyType(data))

    def to_dict(self) -> dict[str, Any]:
        result = thaw(self.extra)
        for name in self._FIELDS:
            value = getattr(self, name)
            if value is not None:
                result[name] = value
        return result

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, sort_keys=True)


# ---------------------------------------------------------------------------
# Cache rows
# ---------------------------------------------------------------------------


class ProfileCacheDbParams(NamedTuple):
    """Positional parameters for the ``profile_meta_cache`` table."""

    pubkey: bytes
    updated_at: int
    event_hash: bytes
    metadata: str
    profile_image_path: str | None
    banner_image_path: str | None


@dataclass(frozen=True, slots=True)
class ProfileCache:
    """Cached profile metadata of one public key.

    Attributes:
        pubkey: Subject public key (hex).
        updated_at: ``created_at`` of the event the metadata came from.
        event_id: Id of that event.
        metadata: Parsed profile.
        profile_image_path: Local file of the downloaded picture.
        banner_image_path: Local file of the downloaded banner.
    """

    pubkey: str
    updated_at: int
    event_id: str
    metadata: ProfileMetadata
    profile_image_path: str | None = None
    banner_image_path: str | None = None

    def __post_init__(self) -> None:
        validate_hex(self.pubkey, 64, "pubkey")
        validate_timestamp(self.updated_at, "updated_at")
        validate_hex(self.event_id, 64, "event_id")
        if not isinstance(self.metadata, ProfileMetadata):
            raise TypeError(
                f"metadata must be a ProfileMetadata, got {type(self.metadata).__name__}"
            )
        validate_optional_str(self.profile_image_path, "profile_image_path")
        validate_optional_str(self.banner_image_path, "banner_image_path")

    def accepts(self, created_at: int) -> bool:
        """Whether an event created at *created_at* would overwrite this row."""
        return created_at > self.updated_at

    def image_path(self, kind: ImageKind) -> str | None:
        if kind == ImageKind.PROFILE:
            return self.profile_image_path
        if kind == ImageKind.BANNER:
            return self.banner_image_path
        return None

    def with_image(self, kind: ImageKind, path: str | None) -> ProfileCache:
        """Return a copy with the artifact for *kind* set (``updated_at`` untouched)."""
        if kind == ImageKind.PROFILE:
            return replace(self, profile_image_path=path)
        if kind == ImageKind.BANNER:
            return replace(self, banner_image_path=path)
        raise ValueError(f"profiles have no {kind} image")

    def to_db_params(self) -> ProfileCacheDbParams:
        return ProfileCacheDbParams(
            pubkey=bytes.fromhex(self.pubkey),
            updated_at=self.updated_at,
            event_hash=bytes.fromhex(self.event_id),
            metadata=self.metadata.to_json(),
            profile_image_path=self.profile_image_path,
            banner_image_path=self.banner_image_path,
        )

    @classmethod
    def from_db_params(cls, params: ProfileCacheDbParams) -> ProfileCache:
        raw = params.metadata if isinstance(params.metadata, str) else json.dumps(params.metadata)
        return cls(
            pubkey=params.pubkey.hex(),
            updated_at=params.updated_at,
            event_id=params.event_hash.hex(),
            metadata=ProfileMetadata.from_json(raw),
            profile_image_path=params.profile_image_path,
            banner_image_path=params.banner_image_path,
        )


class ChannelCacheDbParams(NamedTuple):
    """Positional parameters for the ``channel_cache`` table."""

    channel_id: bytes
    creator_pubkey: bytes | None
    created_at: int | None
    updated_at: int
    event_hash: bytes | None
    metadata: str
    image_path: str | None


@dataclass(frozen=True, slots=True)
class ChannelCache:
    """Cached metadata of one NIP-28 channel.

    A row can exist before its creation event is seen: a kind-41 update that
    arrives first creates a placeholder with ``creator_pubkey`` and
    ``created_at`` unset, filled in when the kind-40 event shows up.

    Attributes:
        channel_id: Id of the kind-40 creation event (hex).
        creator_pubkey: Author of the creation event, once known.
        created_at: Timestamp of the creation event, once known.
        updated_at: ``created_at`` of the event the metadata came from,
            ``0`` for an empty placeholder.
        event_id: Id of that event.
        metadata: Parsed channel metadata.
        image_path: Local file of the downloaded channel picture.
    """

    channel_id: str
    updated_at: int
    metadata: ChannelMetadata
    creator_pubkey: str | None = None
    created_at: int | None = None
    event_id: str | None = None
    image_path: str | None = None

    def __post_init__(self) -> None:
        validate_hex(self.channel_id, 64, "channel_id")
        validate_timestamp(self.updated_at, "updated_at")
        if not isinstance(self.metadata, ChannelMetadata):
            raise TypeError(
                f"metadata must be a ChannelMetadata, got {type(self.metadata).__name__}"
            )
        if self.creator_pubkey is not None:
            validate_hex(self.creator_pubkey, 64, "creator_pubkey")
        validate_optional_timestamp(self.created_at, "created_at")
        if self.event_id is not None:
            validate_hex(self.event_id, 64, "event_id")
        validate_optional_str(self.image_path, "image_path")

    @classmethod
    def placeholder(cls, channel_id: str) -> ChannelCache:
        """Return an empty row for a channel known only by id."""
        return cls(channel_id=channel_id, updated_at=0, metadata=ChannelMetadata())

    def accepts(self, created_at: int) -> bool:
        """Whether an event created at *created_at* would overwrite the metadata."""
        return self.event_id is None or created_at > self.updated_at

    def with_creation(self, creator_pubkey: str, created_at: int) -> ChannelCache:
        """Return a copy that records who created the channel and when."""
        return replace(self, creator_pubkey=creator_pubkey, created_at=created_at)

    def with_metadata(
        self, metadata: ChannelMetadata, updated_at: int, event_id: str
    ) -> ChannelCache:
        return replace(self, metadata=metadata, updated_at=updated_at, event_id=event_id)

    def with_image(self, path: str | None) -> ChannelCache:
        return replace(self, image_path=path)

    def to_db_params(self) -> ChannelCacheDbParams:
        return ChannelCacheDbParams(
            channel_id=bytes.fromhex(self.channel_id),
            creator_pubkey=bytes.fromhex(self.creator_pubkey) if self.creator_pubkey else None,
            created_at=self.created_at,
            updated_at=self.updated_at,
            event_hash=bytes.fromhex(self.event_id) if self.event_id else None,
            metadata=self.metadata.to_json(),
            image_path=self.image_path,
        )

    @classmethod
    def from_db_params(cls, params: ChannelCacheDbParams) -> ChannelCache:
        raw = params.metadata if isinstance(params.metadata, str) else json.dumps(params.metadata)
        return cls(
            channel_id=params.channel_id.hex(),
            creator_pubkey=params.creator_pubkey.hex() if params.creator_pubkey else None,
            created_at=params.created_at,
            updated_at=params.updated_at,
            event_id=params.event_hash.hex() if params.event_hash else None,
            metadata=ChannelMetadata.from_json(raw),
            image_path=params.image_path,
        )


@dataclass(frozen=True, slots=True)
class ChannelSubscription:
    """A channel the user follows, with the corrected time it was followed."""

    channel_id: str
    subscribed_at: int

    def __post_init__(self) -> None:
        validate_hex(self.channel_id, 64, "channel_id")
        validate_timestamp(self.subscribed_at, "subscribed_at")
