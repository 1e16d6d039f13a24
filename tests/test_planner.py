"""
Planner Tests for the XEX setup relocation engine.

Covers the first-fit allocator, fixed-slot reuse, pool precedence,
extension and the invariants every plan has to keep (disjoint
placements, nothing inside a protected range).
"""
import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest
from xex_setup.address_space import AddressSpace, FixedSlot, ProtectedRange, derive_fixed_slots
from xex_setup.layout import PoolRegion, RegionLayout
from xex_setup.planner import PlanConfig, plan_placements
from xex_setup.segments import RegionKind, Segment, align_up, carve_out, try_allocate

BASE = 0x80000000


def _layout(pools=(), protected=(), ceiling=350):
    space = AddressSpace(BASE, protected)
    slots = (FixedSlot("A", 0, 100), FixedSlot("B", 100, 50), FixedSlot("C", 150, 200))
    ptrs = {"A": (0x1000,), "B": (0x1004,), "C": (0x1008,)}
    return RegionLayout("test", space, slots, ptrs, tuple(pools), ceiling, ("A", "B", "C"))


def _assert_disjoint(placements):
    spans = sorted((p.offset, p.end, p.name) for p in placements)
    for (s1, e1, n1), (s2, e2, n2) in zip(spans, spans[1:]):
        assert e1 <= s2, f"{n1} [0x{s1:X},0x{e1:X}) overlaps {n2} [0x{s2:X},0x{e2:X})"


class TestSegments:
    """First-fit allocation over a free list."""

    def test_align_up(self):
        assert align_up(0, 0x10) == 0
        assert align_up(1, 0x10) == 0x10
        assert align_up(0x10, 0x10) == 0x10
        assert align_up(7, 1) == 7

    def test_first_fit_not_best_fit(self):
        """The first segment that can hold the size wins, even if a later one is tighter."""
        segs = [Segment(0, 100, RegionKind.LOW_POOL), Segment(200, 220, RegionKind.OVERFLOW_POOL)]
        assert try_allocate(segs, 20) == (0, RegionKind.LOW_POOL)
        assert segs[0] == Segment(20, 100, RegionKind.LOW_POOL)

    def test_alignment_padding_stays_free(self):
        segs = [Segment(3, 100, RegionKind.LOW_POOL)]
        off, _ = try_allocate(segs, 0x10, 0x10)
        assert off == 0x10
        assert segs == [Segment(3, 0x10, RegionKind.LOW_POOL), Segment(0x20, 100, RegionKind.LOW_POOL)]

    def test_nothing_fits(self):
        segs = [Segment(0, 10, RegionKind.LOW_POOL)]
        assert try_allocate(segs, 11) is None
        assert segs == [Segment(0, 10, RegionKind.LOW_POOL)]

    def test_carve_out_splits_segment(self):
        segs = [Segment(0, 100, RegionKind.LOW_POOL), Segment(200, 300, RegionKind.OVERFLOW_POOL)]
        carve_out(segs, 40, 60)
        assert Segment(0, 40, RegionKind.LOW_POOL) in segs
        assert Segment(60, 100, RegionKind.LOW_POOL) in segs
        assert segs[-1] == Segment(60, 100, RegionKind.LOW_POOL)

    def test_carve_out_whole_segment(self):
        segs = [Segment(0, 100, RegionKind.LOW_POOL)]
        carve_out(segs, 0, 100)
        assert segs == []


class TestFixedSlots:
    """Fixed-slot reuse and capacity derivation."""

    def test_scenario_slots_first(self):
        """A and B keep their slots; C is larger than its slot and has no pool."""
        layout = _layout()
        plan = plan_placements(layout, {"A": 90, "B": 40, "C": 210}, ["A", "B", "C"],
                               PlanConfig(), 0x2000)
        a, b = plan.placement("A"), plan.placement("B")
        assert a.offset == 0 and a.kind is RegionKind.FIXED_SLOT and not a.relocated
        assert b.offset == 100 and b.va == BASE + 100 and not b.relocated
        assert plan.placement("C") is None
        assert plan.not_placed == ["C"]
        assert not plan.complete
        assert "WARN: C did not fit." in "\n".join(plan.trace)

    def test_derive_capacities_use_every_boundary(self):
        slots = derive_fixed_slots([("A", 0), ("C", 150)], [0, 100, 150], 350)
        assert slots[0] == FixedSlot("A", 0, 100)
        assert slots[1] == FixedSlot("C", 150, 200)

    def test_unknown_and_zero_size_are_skipped(self):
        plan = plan_placements(_layout(), {"A": 0, "Z": 10}, ["A", "Z"], PlanConfig(), 0x2000)
        assert plan.placements == []
        assert plan.not_placed == []

    def test_force_relocate_all_respects_always_fixed(self):
        layout = _layout(pools=[PoolRegion(0x400, 0x800, RegionKind.LOW_POOL)])
        plan = plan_placements(layout, {"A": 90, "B": 40}, ["A", "B"],
                               PlanConfig(force_relocate_all=True), 0x2000, always_fixed=["A"])
        assert plan.placement("A").kind is RegionKind.FIXED_SLOT
        b = plan.placement("B")
        assert b.kind is RegionKind.LOW_POOL
        assert b.relocated and b.va == BASE + 0x400

    def test_oversized_always_fixed_item_is_not_relocated(self):
        layout = _layout(pools=[PoolRegion(0x400, 0x800, RegionKind.LOW_POOL)])
        plan = plan_placements(layout, {"A": 150, "B": 40}, ["A", "B"], PlanConfig(), 0x2000,
                               always_fixed=["A"])
        assert plan.placement("A") is None
        assert plan.not_placed == ["A"]
        assert plan.placement("B").kind is RegionKind.FIXED_SLOT


class TestPools:
    """Pool precedence and extension."""

    def test_pool_takes_oversized_item(self):
        layout = _layout(pools=[PoolRegion(0x200, 0x300, RegionKind.LOW_POOL)])
        plan = plan_placements(layout, {"A": 90, "B": 40, "C": 210}, ["A", "B", "C"],
                               PlanConfig(), 0x2000)
        c = plan.placement("C")
        assert c.offset == 0x200 and c.kind is RegionKind.LOW_POOL and c.relocated
        assert plan.complete

    def test_compacted_tail_comes_first(self):
        layout = _layout(pools=[PoolRegion(0x200, 0x300, RegionKind.LOW_POOL)])
        plan = plan_placements(layout, {"C": 210}, ["C"], PlanConfig(), 0x2000,
                               extra_pool=[(0x600, 0x700)])
        assert plan.placement("C").kind is RegionKind.COMPACTED_TAIL
        assert plan.placement("C").offset == 0x600

    def test_overflow_pool_needs_permission(self):
        layout = _layout(pools=[PoolRegion(0x200, 0x300, RegionKind.OVERFLOW_POOL)])
        sizes = {"C": 210}
        assert plan_placements(layout, sizes, ["C"], PlanConfig(), 0x2000).not_placed == ["C"]
        plan = plan_placements(layout, sizes, ["C"], PlanConfig(allow_overflow_pool=True), 0x2000)
        assert plan.placement("C").kind is RegionKind.OVERFLOW_POOL

    def test_extended_tail_va_follows_extension_base(self):
        plan = plan_placements(_layout(), {"C": 210}, ["C"], PlanConfig(allow_extend=True),
                               0x2008, extension_base_va=0x90000000)
        c = plan.placement("C")
        assert c.kind is RegionKind.EXTENDED_TAIL
        assert c.offset == 0x2010
        assert c.va == 0x90000008

    def test_extensions_never_overlap(self):
        layout = RegionLayout("ext", AddressSpace(BASE), (), {"X": (0,), "Y": (4,)}, (), 0,
                              ("X", "Y"))
        plan = plan_placements(layout, {"X": 0x18000, "Y": 0x18000}, ["X", "Y"],
                               PlanConfig(allow_extend=True), 0x1000)
        assert plan.complete
        _assert_disjoint(plan.placements)

    def test_priority_order_decides_who_fits(self):
        layout = _layout(pools=[PoolRegion(0x400, 0x500, RegionKind.LOW_POOL)])
        plan = plan_placements(layout, {"A": 0xC0, "B": 0xC0}, ["B", "A"],
                               PlanConfig(force_relocate_all=True), 0x2000)
        assert plan.names() == ["A"]
        assert plan.not_placed == ["B"]


class TestPlanInvariants:
    """Properties that hold for any input."""

    @pytest.mark.parametrize("sizes", [
        {"A": 90, "B": 40, "C": 210},
        {"A": 120, "B": 60, "C": 10},
        {"A": 1, "B": 50, "C": 200},
        {"A": 300, "B": 300, "C": 300},
        {"A": 99, "B": 51, "C": 199},
    ])
    @pytest.mark.parametrize("force", [False, True])
    def test_placements_are_disjoint(self, sizes, force):
        """Pools overlap the slot area; fixed placements must be carved out of them."""
        layout = _layout(pools=[PoolRegion(0, 350, RegionKind.LOW_POOL),
                                PoolRegion(0x400, 0x600, RegionKind.LOW_POOL)])
        plan = plan_placements(layout, sizes, list(sizes), PlanConfig(force_relocate_all=force),
                               0x2000)
        _assert_disjoint(plan.placements)
        assert sorted(plan.names() + plan.not_placed) == sorted(sizes)

    @pytest.mark.parametrize("size", [8, 0x30, 0x50, 0x100])
    def test_no_placement_in_protected_range(self, size):
        guard = ProtectedRange(0x420, 0x440, "ro")
        layout = _layout(pools=[PoolRegion(0x400, 0x600, RegionKind.LOW_POOL)], protected=[guard])
        sizes = {"A": size, "B": size, "C": size}
        plan = plan_placements(layout, sizes, list(sizes), PlanConfig(force_relocate_all=True),
                               0x2000)
        for p in plan.placements:
            assert not guard.intersects(p.offset, p.end), p

    def test_fixed_slot_inside_protected_range_is_not_reused(self):
        guard = ProtectedRange(0, 0x20, "ro")
        layout = _layout(pools=[PoolRegion(0x400, 0x600, RegionKind.LOW_POOL)], protected=[guard])
        plan = plan_placements(layout, {"A": 10}, ["A"], PlanConfig(), 0x2000)
        assert plan.placement("A").kind is RegionKind.LOW_POOL
