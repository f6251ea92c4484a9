r"""nostrsync -- Event synchronization and local-consistency engine for Nostr clients.

A single backend service owns the local PostgreSQL cache of one user: it
fetches contact lists, profiles, direct messages and public channels from
relays, reconciles them with what is stored, and tracks the events the user
publishes until a relay confirms them.

Imports flow strictly downward:

```text
              services         Backend coordinator, reconcilers, relay pool
             /   |   \
          core  nips  utils    Store, logging, metrics / event codec / clock, keys
             \   |   /
              models           Frozen dataclasses (zero I/O)
```

Attributes:
    models: Events, contacts, messages, relays, cached metadata.
    core: Connection pool, cache store, base service, exceptions, logging,
        metrics.
    nips: Event id computation, NIP-02 contact lists, NIP-04 encryption,
        NIP-28 channel references.
    utils: Key loading, clock offset, relay client helpers.
    services: The backend coordinator and its components.

Note:
    Top-level imports (``from nostrsync import BackendCoordinator``) are
    resolved lazily on first access.
"""

import importlib
from importlib.metadata import version as _get_version


__version__ = _get_version("nostrsync")

__all__ = [
    "BackendConfig",
    "BackendCoordinator",
    "BaseService",
    "DbContact",
    "DbMessage",
    "Event",
    "EventCodec",
    "EventKind",
    "LocalCacheStore",
    "Logger",
    "RelayEntry",
    "StoreConfig",
]

_LAZY_IMPORTS: dict[str, tuple[str, str]] = {
    "BaseService": ("nostrsync.core", "BaseService"),
    "LocalCacheStore": ("nostrsync.core", "LocalCacheStore"),
    "Logger": ("nostrsync.core", "Logger"),
    "StoreConfig": ("nostrsync.core", "StoreConfig"),
    "DbContact": ("nostrsync.models", "DbContact"),
    "DbMessage": ("nostrsync.models", "DbMessage"),
    "Event": ("nostrsync.models", "Event"),
    "EventKind": ("nostrsync.models", "EventKind"),
    "RelayEntry": ("nostrsync.models", "RelayEntry"),
    "EventCodec": ("nostrsync.nips", "EventCodec"),
    "BackendConfig": ("nostrsync.services", "BackendConfig"),
    "BackendCoordinator": ("nostrsync.services", "BackendCoordinator"),
}


def __getattr__(name: str) -> object:
    if name in _LAZY_IMPORTS:
        module_path, attr_name = _LAZY_IMPORTS[name]
        module = importlib.import_module(module_path)
        value = getattr(module, attr_name)
        globals()[name] = value
        return value
    raise AttributeError(f"module 'nostrsync' has no attribute {name!r}")


def __dir__() -> list[str]:
    return __all__
