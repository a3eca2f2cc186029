"""
Tests for host capacity arithmetic
==================================
"""

from lease_plane.capacity import Bounded, Unbounded, effective_capacity, headroom
from lease_plane.panel.base import Host


class TestEffectiveCapacity:

    def test_no_overallocation(self):
        assert effective_capacity(1000, 0) == Bounded(1000)

    def test_percentage_overallocation(self):
        assert effective_capacity(1000, 20) == Bounded(1200)

    def test_floors_fractional_capacity(self):
        assert effective_capacity(1001, 10) == Bounded(1101)

    def test_minus_one_is_unbounded(self):
        assert isinstance(effective_capacity(1000, -1), Unbounded)

    def test_other_negative_values_count_as_zero(self):
        assert effective_capacity(1000, -5) == Bounded(1000)


class TestHeadroom:

    def test_overallocated_host_headroom(self):
        """1000MB at 20% with 1100MB used leaves 100MB."""
        free = headroom(1000, 20, 1100)
        assert free == Bounded(100)
        assert not free.fits(512)
        assert free.fits(100)

    def test_exhausted_host_has_no_room(self):
        free = headroom(1000, 0, 1000)
        assert free == Bounded(0)
        assert not free.fits(1)

    def test_unbounded_ignores_usage(self):
        free = headroom(1000, -1, 10_000_000)
        assert isinstance(free, Unbounded)
        assert free.fits(10_000_000)

    def test_string_forms(self):
        assert str(Bounded(512)) == "512MB"
        assert str(Unbounded()) == "unlimited"


class TestHost:

    def test_free_memory_and_disk_use_separate_policies(self):
        host = Host(
            id=1, name="node-a",
            memory_limit=1000, disk_limit=5000,
            memory_overalloc=-1, disk_overalloc=0,
            memory_used=4000, disk_used=1000,
        )
        assert isinstance(host.free_memory, Unbounded)
        assert host.free_disk == Bounded(4000)
