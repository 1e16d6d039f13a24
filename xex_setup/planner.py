"""
Placement planner - decide where every item goes.

How a plan is built:
  1. Drop candidates the layout has no pointer for, or with size <= 0.
  2. Always-fixed items go to their own slot first, or stay unplaced.
  3. Unless force_relocate_all, every other item tries its own fixed slot,
     in priority order. Reusing the slot means the item keeps its VA and
     needs no re-render.
  4. Accepted fixed placements are carved out of the free-segment list.
     Protected ranges are carved out of the pools before any allocation.
  5. Remaining items are allocated first-fit from the pools, in priority
     order, pass after pass while a pass still places something:
        compacted tail -> low / secondary pool -> overflow pool
     and, when extension is allowed, from a freshly synthesised
     extended-tail segment at the image's logical end.
  6. Whatever is left is returned as not_placed. That is a normal outcome.

Greedy and order dependent: a different priority order can give a
different (and not necessarily larger) set of placed items. Priority is
policy, chosen by the caller.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Mapping, Optional, Sequence, Tuple

from .layout import Item, RegionLayout
from .segments import RegionKind, Segment, align_up, carve_out, try_allocate

__all__ = ['Placement', 'PlanConfig', 'PlanResult', 'plan_placements']

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Placement:
    """Where one item goes.

    ``relocated`` is True iff ``va`` differs from the item's original
    fixed-slot VA; it gates both re-rendering and back-pointer fixup.
    """
    item: Item
    offset: int
    va: int
    size: int
    kind: RegionKind
    relocated: bool

    @property
    def name(self) -> str:
        return self.item.name

    @property
    def end(self) -> int:
        return self.offset + self.size


@dataclass(frozen=True)
class PlanConfig:
    """Planner switches."""
    allow_overflow_pool: bool = False
    allow_extend: bool = False
    force_relocate_all: bool = False
    align: int = 0x10
    extend_chunk: int = 0x10000


@dataclass
class PlanResult:
    placements: List[Placement] = field(default_factory=list)
    trace: List[str] = field(default_factory=list)
    not_placed: List[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.not_placed

    def placement(self, name: str) -> Optional[Placement]:
        return next((p for p in self.placements if p.name == name), None)

    def names(self) -> List[str]:
        return [p.name for p in self.placements]


def _initial_segments(layout: RegionLayout, config: PlanConfig,
                      extra_pool: Sequence[Tuple[int, int]]) -> List[Segment]:
    segs: List[Segment] = []
    for start, end in extra_pool:
        if end > start:
            segs.append(Segment(start, end, RegionKind.COMPACTED_TAIL))
    for pool in layout.pools:
        if pool.kind is RegionKind.OVERFLOW_POOL and not config.allow_overflow_pool:
            continue
        if pool.end > pool.start:
            segs.append(Segment(pool.start, pool.end, pool.kind))
    for pr in layout.address_space.protected:
        carve_out(segs, pr.start, pr.end)
    return segs


def _try_fixed(layout: RegionLayout, item: Item) -> Optional[Placement]:
    slot = layout.slot(item.name)
    if slot is None:
        return None
    if item.size > slot.capacity or slot.offset + item.size > layout.ceiling:
        return None
    if layout.address_space.protected_hit(slot.offset, slot.offset + item.size):
        return None
    return Placement(item, slot.offset, layout.address_space.va(slot.offset),
                     item.size, RegionKind.FIXED_SLOT, False)


def plan_placements(layout: RegionLayout,
                    sizes: Mapping[str, int],
                    candidates: Iterable[str],
                    config: PlanConfig,
                    image_length: int,
                    *,
                    extra_pool: Sequence[Tuple[int, int]] = (),
                    always_fixed: Iterable[str] = (),
                    extension_base_va: Optional[int] = None) -> PlanResult:
    """
    Plan placements for ``candidates`` inside ``layout``.

    Args:
        layout: static description of the placement domain
        sizes: item name -> size in bytes of its rendered blob
        candidates: names to place (order is irrelevant; priority order wins)
        config: planner switches
        image_length: current image length, start of any extended tail
        extra_pool: freed ranges (e.g. a compacted region's tail), used first
        always_fixed: names that must keep their slot even when
                      force_relocate_all is set
        extension_base_va: VA the host format maps appended data to

    Returns:
        PlanResult with placements, a readable trace and the not-placed list
    """
    result = PlanResult()
    trace = result.trace
    trace.append(f"=== {layout.name.upper()} PATCH PLAN ===")

    segs = _initial_segments(layout, config, extra_pool)
    remaining: List[Item] = []
    for name in layout.ordered(candidates):
        if name in layout.excluded:
            continue
        size = sizes.get(name, 0)
        item = layout.item(name, size)
        if item is None or size <= 0:
            trace.append(f"  SKIP: {name} (no pointer offset or size {size})")
            continue
        remaining.append(item)

    # always-fixed items never move: their own slot or not at all
    fixed_first = set(always_fixed)
    stuck: List[str] = []
    for item in [it for it in remaining if it.name in fixed_first]:
        p = _try_fixed(layout, item)
        if p is not None:
            result.placements.append(p)
        else:
            trace.append(f"  WARN: always-fixed {item.name} does not fit its slot")
            stuck.append(item.name)
        remaining.remove(item)

    if not config.force_relocate_all:
        for item in list(remaining):
            p = _try_fixed(layout, item)
            if p is not None:
                result.placements.append(p)
                remaining.remove(item)

    for p in result.placements:
        carve_out(segs, p.offset, p.end)

    logical_end = image_length
    progress = True
    while progress and remaining:
        progress = False
        for item in list(remaining):
            hit = try_allocate(segs, item.size, config.align)
            if hit is None and config.allow_extend:
                tail_start = align_up(logical_end, config.align)
                tail_end = align_up(tail_start + max(item.size, config.extend_chunk), 0x10)
                segs.append(Segment(tail_start, tail_end, RegionKind.EXTENDED_TAIL))
                logical_end = tail_end
                trace.append(f"  EXTEND: +0x{tail_end - tail_start:X} bytes at 0x{tail_start:X} for {item.name}")
                hit = try_allocate(segs, item.size, config.align)
            if hit is None:
                continue
            offset, kind = hit
            if kind is RegionKind.EXTENDED_TAIL and extension_base_va is not None:
                va = (extension_base_va + (offset - image_length)) & 0xFFFFFFFF
            else:
                va = layout.address_space.va(offset)
            relocated = va != layout.original_va(item.name)
            result.placements.append(Placement(item, offset, va, item.size, kind, relocated))
            remaining.remove(item)
            progress = True

    result.not_placed = stuck + [it.name for it in remaining]

    for p in result.placements:
        flag = ", relocated" if p.relocated else ""
        trace.append(f"  {p.name:<14} -> 0x{p.offset:08X}  VA 0x{p.va:08X}  "
                     f"size 0x{p.size:X}  ({p.kind.value}{flag})")
    for name in result.not_placed:
        trace.append(f"  WARN: {name} did not fit.")
    log.debug("%s plan: %d placed, %d not placed", layout.name,
              len(result.placements), len(result.not_placed))
    return result
