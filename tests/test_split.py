"""
Split Planner Tests.

Two-image planning: longest complete prefix first, the rest second, and
the pinned item always travelling with its anchor.
"""
import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from xex_setup.address_space import AddressSpace, derive_fixed_slots
from xex_setup.layout import PoolRegion, RegionLayout
from xex_setup.planner import PlanConfig
from xex_setup.segments import RegionKind
from xex_setup.split_planner import plan_split


def _layout(order, pool_size=150):
    starts = [(name, i * 100) for i, name in enumerate(order)]
    slots = derive_fixed_slots(starts, [s for _, s in starts], len(order) * 100)
    ptrs = {name: (0x2000 + 4 * i,) for i, name in enumerate(order)}
    pools = (PoolRegion(0x1000, 0x1000 + pool_size, RegionKind.LOW_POOL),)
    return RegionLayout("split", AddressSpace(0x82000000), slots, ptrs, pools,
                        len(order) * 100, tuple(order))


class TestSplitPoint:
    """Where the prefix scan stops."""

    def test_prefix_then_remainder(self):
        layout = _layout(["A", "B", "C", "D"])
        sizes = {"A": 50, "B": 150, "C": 150, "D": 50}
        split = plan_split(layout, sizes, PlanConfig(), 0x3000)
        assert split.split_count == 2
        assert split.first.names() == ["A", "B"]
        assert sorted(split.second.names()) == ["C", "D"]
        assert split.remaining == ["C", "D"]
        assert split.not_placed == []
        assert any("SPLIT POINT" in line for line in split.first.trace)

    def test_everything_fits_in_one_image(self):
        layout = _layout(["A", "B"])
        split = plan_split(layout, {"A": 10, "B": 10}, PlanConfig(), 0x3000)
        assert split.split_count == 2
        assert split.remaining == []
        assert split.second.placements == []

    def test_items_that_fit_nowhere_are_reported(self):
        layout = _layout(["A", "B"])
        split = plan_split(layout, {"A": 10, "B": 5000}, PlanConfig(), 0x3000)
        assert split.first.names() == ["A"]
        assert split.not_placed == ["B"]
        assert split.first.not_placed == ["B"]
        assert split.second.not_placed == ["B"]
        assert any("Not placed in either image" in line for line in split.first.trace)


class TestPinnedItem:
    """The pinned item follows its anchor."""

    def test_pinned_joins_anchor_in_first_image(self):
        layout = _layout(["A", "Cradle", "Cuba", "B"])
        sizes = {"A": 50, "Cradle": 50, "Cuba": 50, "B": 500}
        split = plan_split(layout, sizes, PlanConfig(), 0x3000, pinned="Cuba", anchor="Cradle")
        assert "Cuba" in split.first.names()
        assert split.first.placement("Cuba").kind is RegionKind.FIXED_SLOT
        assert "Cuba" not in split.remaining
        assert split.not_placed == ["B"]

    def test_pinned_moves_with_anchor_to_second_image(self):
        layout = _layout(["A", "B", "Cradle", "Cuba"])
        sizes = {"A": 50, "B": 500, "Cradle": 50, "Cuba": 50}
        split = plan_split(layout, sizes, PlanConfig(), 0x3000, pinned="Cuba", anchor="Cradle")
        assert split.first.names() == ["A"]
        assert split.remaining == ["B", "Cradle", "Cuba"]
        assert "Cuba" in split.second.names()
        assert "Cradle" in split.second.names()
        assert split.not_placed == ["B"]

    def test_pinned_keeps_its_slot_under_forced_relocation(self):
        layout = _layout(["A", "Cradle", "Cuba"], pool_size=400)
        sizes = {"A": 50, "Cradle": 50, "Cuba": 50}
        split = plan_split(layout, sizes, PlanConfig(force_relocate_all=True), 0x3000,
                           pinned="Cuba", anchor="Cradle")
        cuba = split.first.placement("Cuba")
        assert cuba.kind is RegionKind.FIXED_SLOT
        assert not cuba.relocated
        assert split.first.placement("Cradle").kind is RegionKind.LOW_POOL

    def test_oversized_pinned_is_never_relocated(self):
        layout = _layout(["A", "Cradle", "Cuba"], pool_size=400)
        sizes = {"A": 50, "Cradle": 50, "Cuba": 150}
        split = plan_split(layout, sizes, PlanConfig(), 0x3000, pinned="Cuba", anchor="Cradle")
        assert split.first.placement("Cuba") is None
        assert split.second.placement("Cuba") is None
        assert split.not_placed == ["Cuba"]
