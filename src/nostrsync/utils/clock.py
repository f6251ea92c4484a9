"""
Clock-corrected time for locally authored events.

Relays and peers compare ``created_at`` values, so an event signed on a
machine whose clock is off can be rejected or lose "latest wins" races. The
engine never measures the skew itself: an external NTP probe supplies an
offset (microseconds to add to the local clock), which is persisted in the
store and restored on start.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable


logger = logging.getLogger(__name__)

_US_PER_SECOND = 1_000_000


class ClockOffsetProvider:
    """Wall clock plus a fixed offset.

    Args:
        offset_us: Microseconds to add to the local clock.
        time_source: Returns the local wall clock in seconds (``time.time``).

    Examples:
        ```python
        clock = ClockOffsetProvider(offset_us=-1_500_000)
        clock.now()          # local time minus 1.5 s, whole seconds
        ```
    """

    def __init__(
        self,
        offset_us: int = 0,
        time_source: Callable[[], float] = time.time,
    ) -> None:
        self._offset_us = int(offset_us)
        self._time_source = time_source

    @property
    def offset_us(self) -> int:
        return self._offset_us

    def set_offset(self, offset_us: int) -> None:
        """Replace the offset. Affects timestamps produced from now on."""
        if offset_us != self._offset_us:
            logger.info("clock_offset_changed old_us=%s new_us=%s", self._offset_us, offset_us)
        self._offset_us = int(offset_us)

    def set_from_network_time(self, network_time: float) -> int:
        """Derive the offset from a trusted time reading (seconds) and apply it.

        Returns:
            The new offset in microseconds.
        """
        offset = round((network_time - self._time_source()) * _US_PER_SECOND)
        self.set_offset(offset)
        return offset

    def now_precise(self) -> float:
        """Corrected time in fractional seconds."""
        return self._time_source() + self._offset_us / _US_PER_SECOND

    def now(self) -> int:
        """Corrected Unix time in whole seconds, never negative."""
        return max(0, int(self.now_precise()))
