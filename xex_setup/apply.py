"""
Apply engine - turn a plan into bytes.

The caller's image is never touched; everything happens on a private
bytearray copy which is returned in the ApplyResult.

Per run:
  1. Grow the copy if any placement ends past the current length
     (only when extension is allowed, otherwise ExtensionDisabledError).
  2. For every placement of every job: fetch the blob, check the write
     against the protected ranges, write it, point every pointer field
     of the item at the new VA, and repair the blob's self-reference
     when it moved.
  3. Copy pointer mirrors (an item that shares another item's blob).
  4. Rebuild the menu/briefing/image tables from what was written.

Missing blobs, size mismatches and dirty pool destinations are report
lines; protected-range hits and impossible extensions raise.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .address_space import write_be32
from .back_pointer import fix_back_pointer
from .errors import ExtensionDisabledError, ExtensionError
from .layout import RegionLayout
from .metadata_sync import MetadataLayout, synchronize_metadata
from .planner import Placement
from .segments import RegionKind
from .split_planner import SplitPlan

__all__ = [
    'ApplyJob', 'ApplyReport', 'ApplyResult',
    'apply_jobs', 'apply_placements', 'apply_split', 'space_usage_report',
]

log = logging.getLogger(__name__)


@dataclass
class ApplyJob:
    """One placement domain's share of an apply run."""
    layout: RegionLayout
    placements: Sequence[Placement]
    blobs: Mapping[str, bytes]
    renderer: Optional[object] = None
    mirrors: Mapping[str, str] = field(default_factory=dict)
    extra_pool: Sequence[Tuple[int, int]] = ()


@dataclass
class ApplyReport:
    written: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)
    usage: List[str] = field(default_factory=list)

    def warn(self, msg: str):
        log.warning(msg)
        self.warnings.append(f"WARN: {msg}")

    def skip(self, name: str, reason: str):
        log.warning("skipped %s: %s", name, reason)
        self.skipped.append(f"{name}: {reason}")

    def lines(self) -> List[str]:
        out = ["=== APPLY REPORT ==="]
        out.extend(self.written)
        if self.skipped:
            out.append("")
            out.append("Skipped:")
            out.extend(f"  {s}" for s in self.skipped)
        if self.notes:
            out.append("")
            out.extend(self.notes)
        if self.warnings:
            out.append("")
            out.extend(self.warnings)
        if self.usage:
            out.append("")
            out.extend(self.usage)
        return out

    def __str__(self) -> str:
        return "\n".join(self.lines())


@dataclass
class ApplyResult:
    image: bytearray
    report: ApplyReport
    visible: List[str] = field(default_factory=list)


# ============================================================================
# SPACE USAGE
# ============================================================================

def _fmt_bytes(n: int) -> str:
    if n >= 1024 * 1024:
        return f"{n / (1024 * 1024):.2f} MB"
    if n >= 1024:
        return f"{n / 1024:.1f} KB"
    return f"{n} B"


def space_usage_report(layout: RegionLayout, placements: Sequence[Placement],
                       extra_pool: Sequence[Tuple[int, int]] = ()) -> List[str]:
    """Bytes used vs capacity per region kind for one domain."""
    used: Dict[RegionKind, int] = {}
    for p in placements:
        used[p.kind] = used.get(p.kind, 0) + p.size

    capacity: Dict[RegionKind, int] = {}
    fixed_cap = sum(layout.slot(p.name).capacity for p in placements
                    if p.kind is RegionKind.FIXED_SLOT and layout.slot(p.name) is not None)
    if fixed_cap:
        capacity[RegionKind.FIXED_SLOT] = fixed_cap
    tail = sum(end - start for start, end in extra_pool if end > start)
    if tail:
        capacity[RegionKind.COMPACTED_TAIL] = tail
    for pool in layout.pools:
        capacity[pool.kind] = capacity.get(pool.kind, 0) + pool.size

    lines = [f"--- {layout.name} space usage ---"]
    for kind in RegionKind:
        if kind not in used and kind not in capacity:
            continue
        u = used.get(kind, 0)
        cap = capacity.get(kind)
        if cap:
            lines.append(f"  {kind.value:<15} {_fmt_bytes(u):>10} / {_fmt_bytes(cap):<10} "
                         f"({u * 100.0 / cap:5.1f}%)")
        else:
            lines.append(f"  {kind.value:<15} {_fmt_bytes(u):>10} (appended)")
    return lines


# ============================================================================
# APPLY
# ============================================================================

def _grow(image: bytearray, required: int, allow_extend: bool, extender,
          jobs: Sequence[ApplyJob], report: ApplyReport) -> bytearray:
    if required <= len(image):
        return image
    delta = required - len(image)
    if not allow_extend:
        raise ExtensionDisabledError(
            f"Placements need 0x{delta:X} more bytes but extension is disabled")
    if extender is None:
        raise ExtensionError("Placements need a larger image but no extender was supplied",
                             "no extender")
    for job in jobs:
        job.layout.address_space.check_writable(len(image), required, "extension")
    old_len = len(image)
    grown, end_va = extender.extend(bytes(image), delta)
    if len(grown) < required:
        raise ExtensionError(
            f"Extender returned 0x{len(grown):X} bytes, need 0x{required:X}", "short extension")
    report.notes.append(f"Extended image 0x{old_len:X} -> 0x{len(grown):X} "
                        f"(new end VA 0x{end_va:08X})")
    log.info("extended image by 0x%X bytes", len(grown) - old_len)
    return bytearray(grown)


def _fetch_blob(job: ApplyJob, p: Placement, report: ApplyReport) -> Optional[bytes]:
    """Relocated items are re-rendered for their new VA when a renderer is set."""
    if p.relocated and job.renderer is not None:
        blob = job.renderer.render(p.name, p.va)
        report.notes.append(f"  Rendered {p.name} for VA 0x{p.va:08X}")
    else:
        blob = job.blobs.get(p.name)
    if blob is None:
        report.skip(p.name, "no blob available")
    return blob


def _write_placement(image: bytearray, job: ApplyJob, p: Placement,
                     report: ApplyReport) -> bool:
    blob = _fetch_blob(job, p, report)
    if blob is None:
        return False
    n = len(blob)
    if n != p.size:
        report.warn(f"{p.name}: blob is 0x{n:X} bytes, planned 0x{p.size:X}; using actual length")
    if p.offset + n > len(image):
        report.skip(p.name, f"blob ends at 0x{p.offset + n:X}, past image end 0x{len(image):X}")
        return False

    space = job.layout.address_space
    space.check_writable(p.offset, p.offset + n, p.name)
    for ptr in p.item.pointer_offsets:
        space.check_writable(ptr, ptr + 4, f"{p.name} pointer")
    if p.kind.is_pool and any(image[p.offset:p.offset + n]):
        report.warn(f"{p.name}: destination 0x{p.offset:X}-0x{p.offset + n:X} "
                    f"({p.kind.value}) is not zero-filled")

    image[p.offset:p.offset + n] = blob
    for ptr in p.item.pointer_offsets:
        write_be32(image, ptr, p.va)

    flag = ""
    if p.relocated and p.item.requires_back_pointer_fixup:
        old_va = job.layout.original_va(p.name)
        if old_va is not None and fix_back_pointer(image, p.offset, n, old_va, p.va):
            flag = " (back-pointer fixed)"
        else:
            report.warn(f"{p.name}: back-pointer 0x{(old_va or 0):08X} not found in blob")
    report.written.append(f"  {p.name:<14} -> 0x{p.offset:08X}  VA 0x{p.va:08X}  "
                          f"0x{n:X} bytes  [{p.kind.value}]{flag}")
    return True


def _apply_mirrors(image: bytearray, job: ApplyJob, written: Dict[str, Placement],
                   report: ApplyReport):
    for mirror, source in job.mirrors.items():
        src = written.get(source)
        offsets = job.layout.pointer_offsets.get(mirror)
        if src is None or not offsets:
            report.notes.append(f"  Mirror {mirror} -> {source}: source not written, left as is")
            continue
        for ptr in offsets:
            job.layout.address_space.check_writable(ptr, ptr + 4, f"{mirror} pointer")
            write_be32(image, ptr, src.va)
        report.notes.append(f"  Mirror {mirror} -> {source}: VA 0x{src.va:08X}")


def apply_jobs(image: bytes,
               jobs: Sequence[ApplyJob],
               *,
               allow_extend: bool = False,
               extender=None,
               metadata: Optional[MetadataLayout] = None,
               desired_order: Optional[Iterable[str]] = None) -> ApplyResult:
    """
    Apply several domains' placements to one copy of ``image``.

    Metadata is synchronised from the first job's written items.
    """
    report = ApplyReport()
    out = bytearray(image)

    required = max((p.end for job in jobs for p in job.placements), default=0)
    out = _grow(out, required, allow_extend, extender, jobs, report)

    visible: List[str] = []
    for idx, job in enumerate(jobs):
        report.written.append(f"[{job.layout.name}]")
        written: Dict[str, Placement] = {}
        for p in job.placements:
            if _write_placement(out, job, p, report):
                written[p.name] = p
                if idx == 0:
                    visible.append(p.name)
        _apply_mirrors(out, job, written, report)
        report.usage.extend(space_usage_report(job.layout, job.placements, job.extra_pool))

    if metadata is not None:
        sync = synchronize_metadata(out, metadata, visible, desired_order)
        report.notes.append("=== METADATA SYNC ===")
        report.notes.extend(sync.lines)
        report.warnings.extend(sync.warnings)

    log.info("apply: %d written, %d skipped, %d warnings",
             sum(len(j.placements) for j in jobs) - len(report.skipped),
             len(report.skipped), len(report.warnings))
    return ApplyResult(out, report, visible)


def apply_placements(image: bytes,
                     layout: RegionLayout,
                     placements: Sequence[Placement],
                     blobs: Mapping[str, bytes],
                     config,
                     *,
                     renderer=None,
                     extender=None,
                     metadata: Optional[MetadataLayout] = None,
                     desired_order: Optional[Iterable[str]] = None,
                     mirrors: Optional[Mapping[str, str]] = None,
                     extra_pool: Sequence[Tuple[int, int]] = ()) -> ApplyResult:
    """
    Write ``placements`` of a single domain into a copy of ``image``.

    Args:
        image: input image (not modified)
        layout: domain the placements were planned in
        placements: planner output
        blobs: item name -> rendered bytes
        config: anything with an ``allow_extend`` attribute (PlanConfig, PatchConfig)
        renderer: re-renders relocated items for their new VA (pre-supplied
                  blobs are used only for items that keep their slot)
        extender: grows the image when a placement ends past its length
        metadata: menu/briefing/image layout to resynchronise
        desired_order: custom menu order
        mirrors: mirror item name -> source item name

    Returns:
        ApplyResult with the new image and the report
    """
    job = ApplyJob(layout, placements, blobs, renderer, dict(mirrors or {}), extra_pool)
    return apply_jobs(image, [job], allow_extend=config.allow_extend, extender=extender,
                      metadata=metadata, desired_order=desired_order)


def apply_split(image: bytes,
                layout: RegionLayout,
                split: SplitPlan,
                blobs: Mapping[str, bytes],
                config,
                **kwargs) -> Tuple[ApplyResult, ApplyResult]:
    """Apply both halves of a split plan to two fresh copies of ``image``."""
    first = apply_placements(image, layout, split.first.placements, blobs, config, **kwargs)
    second = apply_placements(image, layout, split.second.placements, blobs, config, **kwargs)
    return first, second
