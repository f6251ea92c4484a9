"""Services of nostrsync.

Services are the top layer, depending on [nostrsync.core][nostrsync.core],
[nostrsync.nips][nostrsync.nips], [nostrsync.utils][nostrsync.utils] and
[nostrsync.models][nostrsync.models]. Each extends
[BaseService][nostrsync.core.base_service.BaseService].

Attributes:
    BackendCoordinator: Owner of the local cache; serializes commands and
        relay messages through one dispatch loop.

See Also:
    [backend][nostrsync.services.backend]: The coordinator and its
        components.
"""

from .backend import BackendConfig, BackendCoordinator


__all__ = [
    "BackendConfig",
    "BackendCoordinator",
]
