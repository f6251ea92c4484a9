"""
Unit tests for utils.clock module.

Tests:
- ClockOffsetProvider.now() applies the offset and never goes negative
- set_offset() / set_from_network_time()
"""

from nostrsync.utils.clock import ClockOffsetProvider


class TestClockOffsetProvider:
    """Offset arithmetic against a fixed time source."""

    def test_zero_offset(self):
        clock = ClockOffsetProvider(time_source=lambda: 1000.7)
        assert clock.now() == 1000
        assert clock.now_precise() == 1000.7

    def test_negative_offset(self):
        clock = ClockOffsetProvider(offset_us=-1_500_000, time_source=lambda: 1000.0)
        assert clock.now() == 998

    def test_never_negative(self):
        clock = ClockOffsetProvider(offset_us=-10_000_000, time_source=lambda: 5.0)
        assert clock.now() == 0

    def test_set_offset(self):
        clock = ClockOffsetProvider(time_source=lambda: 100.0)
        clock.set_offset(3_000_000)
        assert clock.offset_us == 3_000_000
        assert clock.now() == 103

    def test_set_from_network_time(self):
        clock = ClockOffsetProvider(time_source=lambda: 100.0)
        assert clock.set_from_network_time(102.25) == 2_250_000
        assert clock.offset_us == 2_250_000
