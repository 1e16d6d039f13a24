"""
Split planner - share the levels between two output images.

When one image cannot hold every level, image #1 gets the longest prefix
of the priority order that plans completely, image #2 gets the rest.

The scan goes k = 1, 2, 3 ... and stops at the first k whose plan leaves
something unplaced. It assumes that success is monotone in k, which a
first-fit allocator does not strictly guarantee; a larger k might still
succeed after a failure. The scan does not look past the first failure.

Pinned item: one level (Cuba) can never be re-rendered for a new address
and is only reachable through another level (Cradle). It is planned in
image #1 only when its anchor is part of the candidate prefix; otherwise
it is left out of image #1 entirely, its slot becomes ordinary free
space there, and it is handed to image #2. In either image it keeps its
own fixed slot, even under force_relocate_all.

Items that fit in neither image are listed in both plans' not_placed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Mapping, Optional, Sequence, Tuple

from .layout import RegionLayout
from .planner import PlanConfig, PlanResult, plan_placements

__all__ = ['SplitPlan', 'plan_split']

log = logging.getLogger(__name__)


@dataclass
class SplitPlan:
    first: PlanResult
    second: PlanResult
    split_count: int = 0
    remaining: List[str] = field(default_factory=list)

    @property
    def not_placed(self) -> List[str]:
        """Items neither image could hold (also in ``first.not_placed``)."""
        return list(self.second.not_placed)


def plan_split(layout: RegionLayout,
               sizes: Mapping[str, int],
               config: PlanConfig,
               image_length: int,
               *,
               pinned: Optional[str] = None,
               anchor: Optional[str] = None,
               candidates: Optional[Iterable[str]] = None,
               extra_pool: Sequence[Tuple[int, int]] = (),
               always_fixed: Iterable[str] = (),
               extension_base_va: Optional[int] = None) -> SplitPlan:
    """
    Plan two images: the best complete prefix, then the remainder.

    Args:
        layout: placement domain
        sizes: item name -> blob size
        config: planner switches (shared by both images)
        image_length: length of the input image
        pinned: item that must stay in its fixed slot and follow ``anchor``
        anchor: item whose image the pinned item has to share
        candidates: restrict to these names (default: every sized item)
    """
    always_fixed = tuple(always_fixed) + ((pinned,) if pinned else ())
    pool =set(candidates) if candidates is not None else set(sizes)
    all_items = [n for n in layout.ordered(pool) if sizes.get(n, 0) > 0]
    has_pinned = pinned is not None and pinned in all_items
    split_items = [n for n in all_items if n != pinned]

    def _plan(names: List[str]) -> PlanResult:
        return plan_placements(layout, sizes, names, config, image_length,
                               extra_pool=extra_pool, always_fixed=always_fixed,
                               extension_base_va=extension_base_va)

    best = 0
    best_plan = PlanResult(trace=[f"=== {layout.name.upper()} PATCH PLAN ==="])
    for count in range(1, len(split_items) + 1):
        names = split_items[:count]
        if has_pinned and anchor in names:
            names = names + [pinned]
        plan = _plan(names)
        if plan.not_placed:
            log.debug("split scan: %d items fail (%s)", count, ", ".join(plan.not_placed))
            break
        best, best_plan = count, plan

    remaining = split_items[best:]
    if has_pinned and anchor not in split_items[:best]:
        remaining.append(pinned)
    if remaining:
        best_plan.trace.append("")
        best_plan.trace.append(f"=== SPLIT POINT: image #1 has {best} items. "
                               f"image #2 has {len(remaining)}. ===")

    second = _plan(remaining)
    if second.not_placed:
        best_plan.not_placed.extend(n for n in second.not_placed if n not in best_plan.not_placed)
        best_plan.trace.append(f"Not placed in either image: {', '.join(second.not_placed)}")
    log.info("split plan: %d items in image #1, %d in image #2, %d not placed",
             len(best_plan.placements), len(second.placements), len(second.not_placed))
    return SplitPlan(best_plan, second, best, remaining)
