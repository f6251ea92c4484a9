"""
Locally authored events waiting for their first relay confirmation.

See Also:
    [ConfirmationReconciler][nostrsync.services.backend.confirmation.ConfirmationReconciler]:
        The only consumer of ``take()``.
"""

from __future__ import annotations

from dataclasses import dataclass

from nostrsync.models.event import Event


@dataclass(frozen=True, slots=True)
class PendingEvent:
    """An own event that no relay has confirmed yet.

    Attributes:
        event: The signed event.
        submitted_at: Clock-corrected time it was handed to the relay pool.
    """

    event: Event
    submitted_at: int

    @property
    def id(self) -> str:
        return self.event.id


class PendingEventStore:
    """In-memory map of pending own events keyed by event id.

    Ownership is handed out exactly once: ``take()`` removes the entry, so
    of several concurrent acknowledgements only the first one finds it.
    Only the coordinator's dispatch loop touches this object.
    """

    def __init__(self) -> None:
        self._events: dict[str, PendingEvent] = {}

    def insert(self, event: Event, submitted_at: int) -> PendingEvent:
        """Track *event*. Inserting an id that is already tracked keeps the original."""
        existing = self._events.get(event.id)
        if existing is not None:
            return existing
        pending = PendingEvent(event=event, submitted_at=submitted_at)
        self._events[event.id] = pending
        return pending

    def take(self, event_id: str) -> PendingEvent | None:
        """Remove and return the entry for *event_id*; ``None`` if absent or already taken."""
        return self._events.pop(event_id, None)

    def get(self, event_id: str) -> PendingEvent | None:
        return self._events.get(event_id)

    def abandon_all(self) -> list[PendingEvent]:
        """Remove every entry and return them in insertion order."""
        drained = list(self._events.values())
        self._events.clear()
        return drained

    def ids(self) -> list[str]:
        return list(self._events)

    def __contains__(self, event_id: object) -> bool:
        return event_id in self._events

    def __len__(self) -> int:
        return len(self._events)
