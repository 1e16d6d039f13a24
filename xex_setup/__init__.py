"""
xex_setup - Setup Relocation Engine for GoldenEye XBLA
=======================================================
Places externally converted level setup blobs into fixed slots and free
pools of a GoldenEye 007 XBLA XEX image, rewrites every pointer that
refers to them, and keeps the menu, briefing and image tables in step.

Pipeline (each stage is a plain function over bytes and can be used alone):
    ┌───────────┐    ┌───────────┐    ┌───────────┐    ┌───────────┐    ┌──────────┐
    │ Compactor │───>│  Planner  │───>│ Renderer  │───>│   Apply   │───>│ Metadata │
    │ (MP tail) │    │ (offsets) │    │ (new VAs) │    │  (bytes)  │    │  (menus) │
    └───────────┘    └───────────┘    └───────────┘    └───────────┘    └──────────┘

    - address_space.py:  offset <-> VA, protected ranges
    - segments.py:       first-fit allocator over free ranges
    - planner.py:        fixed slot first, then pools, then extended tail
    - split_planner.py:  share the levels between two images
    - apply.py:          write blobs, pointers, back-pointers, mirrors
    - metadata_sync.py:  menu / briefing / image table resynchronisation
    - compactor.py:      squeeze unused MP setups out, fix BG pointers
    - xex_extender.py:   grow the XEX2 last block
    - goldeneye.py:      the retail layout tables
"""

from __future__ import annotations

import logging
from typing import Iterable, Mapping, Optional, Tuple

__version__ = "0.4.0"
__author__ = "KingAI"

from .errors import (
    XexSetupError, LayoutError, ProtectedRangeError, ExtensionError,
    ExtensionDisabledError, CompactionError, RenderError,
)
from .address_space import AddressSpace, FixedSlot, ProtectedRange, derive_fixed_slots
from .segments import RegionKind, Segment, align_up, carve_out, overlaps, try_allocate
from .layout import Item, PoolRegion, RegionLayout
from .planner import Placement, PlanConfig, PlanResult, plan_placements
from .split_planner import SplitPlan, plan_split
from .back_pointer import find_back_pointer, fix_back_pointer
from .apply import ApplyJob, ApplyReport, ApplyResult, apply_jobs, apply_placements, apply_split
from .metadata_sync import MetadataLayout, SyncReport, synchronize_metadata
from .compactor import Block, PointerTable, compact_region, fix_pointer_table
from .xex_extender import XexExtender, analyze
from .renderer import SetupConvRenderer, StaticRenderer
from .config import Manifest, PatchConfig, load_manifest
from . import goldeneye

log = logging.getLogger(__name__)


def _extension_base(image: bytes, config: PatchConfig, plan_cfg: PlanConfig,
                    notes: list) -> Tuple[PlanConfig, Optional[XexExtender], Optional[int]]:
    if not config.allow_extend:
        return plan_cfg, None, None
    extender = XexExtender(config.extension_method)
    try:
        return plan_cfg, extender, extender.base_va(image)
    except ExtensionError as e:
        notes.append(f"  NOTE: extension disabled ({e})")
        log.warning("extension disabled: %s", e)
        disabled = PlanConfig(plan_cfg.allow_overflow_pool, False, plan_cfg.force_relocate_all,
                              plan_cfg.align, plan_cfg.extend_chunk)
        return disabled, None, None


def patch_image(image: bytes,
                blobs: Mapping[str, bytes],
                config: Optional[PatchConfig] = None,
                *,
                stan_blobs: Optional[Mapping[str, bytes]] = None,
                sizes: Optional[Mapping[str, int]] = None,
                renderer=None,
                desired_order: Optional[Iterable[str]] = None):
    """Plan and apply SP setups (and optionally STAN blobs) to a GoldenEye XEX.

    Full pipeline: [compact MP] -> plan SP -> plan STAN -> apply -> metadata.

    Args:
        image: input XEX bytes (not modified).
        blobs: level name -> setup blob rendered for its original VA.
        config: PatchConfig (defaults when None).
        stan_blobs: level name -> clipping blob; planned only in STAN space.
        sizes: per-level size overrides for planning.
        renderer: re-renders relocated setups for their new VA.
        desired_order: custom menu order.

    Returns:
        (ApplyResult, sp PlanResult, stan PlanResult or None)
    """
    config = config or PatchConfig()
    notes = []
    extra_pool = ()
    if config.compact_mp:
        comp = compact_region(image, goldeneye.MP_BLOCKS, goldeneye.MP_REGION_START,
                              goldeneye.MP_REGION_END, goldeneye.MP_DEFAULT_REMOVE,
                              goldeneye.ADDRESS_SPACE)
        fix = fix_pointer_table(comp.image, goldeneye.MP_BLOCKS, comp.layout,
                                goldeneye.LEVEL_ID_TABLE, goldeneye.ADDRESS_SPACE)
        notes.extend(comp.report + fix.lines)
        image = bytes(comp.image)
        extra_pool = (comp.freed,)

    plan_cfg, extender, base_va = _extension_base(image, config, config.plan_config(), notes)
    sp_sizes = {n: len(b) for n, b in blobs.items()}
    sp_sizes.update(sizes or {})
    sp_plan = plan_placements(goldeneye.SP_LAYOUT, sp_sizes, sp_sizes, plan_cfg, len(image),
                              extra_pool=extra_pool, always_fixed=(goldeneye.PINNED,),
                              extension_base_va=base_va)
    sp_plan.trace.extend(notes)
    jobs = [ApplyJob(goldeneye.SP_LAYOUT, sp_plan.placements, blobs, renderer,
                     extra_pool=extra_pool)]

    stan_plan = None
    if stan_blobs:
        stan_extra = ()
        if extra_pool:
            start, end = extra_pool[0]
            used = max((p.end for p in sp_plan.placements
                        if p.kind is RegionKind.COMPACTED_TAIL), default=start)
            stan_extra = ((align_up(used, plan_cfg.align), end),)
        stan_cfg = PlanConfig(False, False, plan_cfg.force_relocate_all, plan_cfg.align,
                              plan_cfg.extend_chunk)
        # only levels whose setup is being written get a STAN blob
        candidates = [n for n in stan_blobs if sp_plan.placement(n) is not None]
        stan_plan = plan_placements(goldeneye.STAN_LAYOUT, {n: len(b) for n, b in stan_blobs.items()},
                                    candidates, stan_cfg, len(image), extra_pool=stan_extra)
        jobs.append(ApplyJob(goldeneye.STAN_LAYOUT, stan_plan.placements, stan_blobs,
                             mirrors=goldeneye.STAN_MIRRORS, extra_pool=stan_extra))

    result = apply_jobs(image, jobs, allow_extend=plan_cfg.allow_extend, extender=extender,
                        metadata=goldeneye.MENU_METADATA, desired_order=desired_order)
    return result, sp_plan, stan_plan
