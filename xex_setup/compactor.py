"""
Region compactor - squeeze removed blocks out of a contiguous region.

The multiplayer setup region is a back-to-back run of per-level blocks.
Dropping unused blocks and sliding the survivors down frees one
contiguous tail ``[new_end, region_end)`` that the planner can use as
its cheapest pool (RegionKind.COMPACTED_TAIL).

After compaction, a pointer table elsewhere in the image still points at
the old block addresses. fix_pointer_table() walks it:

    pointer inside a kept block     -> pointer + (new_offset - old_offset)
    pointer inside a removed block  -> 0, reported
    pointer outside the region      -> untouched
    identity 0 or pointer 0         -> entry skipped

Compacting an already compacted region with the same removal set is a
no-op, and kept + freed always equals the region length.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence, Tuple

from .address_space import AddressSpace, read_be32, write_be32
from .errors import CompactionError

__all__ = [
    'Block', 'CompactionResult', 'PointerTable', 'PointerFixReport',
    'compact_region', 'fix_pointer_table',
]

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Block:
    name: str
    offset: int
    size: int

    @property
    def end(self) -> int:
        return self.offset + self.size


@dataclass(frozen=True)
class PointerTable:
    """Fixed-stride table of (identity, pointer) entries."""
    start: int
    count: int
    stride: int
    pointer_offset: int
    identity_offset: int = 0

    @property
    def end(self) -> int:
        return self.start + self.count * self.stride


@dataclass
class CompactionResult:
    image: bytearray
    layout: List[Block]
    freed: Tuple[int, int]
    report: List[str] = field(default_factory=list)
    removed: List[Block] = field(default_factory=list)

    @property
    def kept_bytes(self) -> int:
        return sum(b.size for b in self.layout)

    @property
    def freed_bytes(self) -> int:
        return self.freed[1] - self.freed[0]


@dataclass
class PointerFixReport:
    updated: int = 0
    zeroed: int = 0
    skipped: int = 0
    lines: List[str] = field(default_factory=list)


def _validate(blocks: Sequence[Block], region_start: int, region_end: int, image_len: int):
    if region_end > image_len:
        raise CompactionError(
            f"Region end 0x{region_end:X} is past the image end 0x{image_len:X}")
    cursor = region_start
    for b in blocks:
        if b.offset != cursor:
            raise CompactionError(
                f"Block {b.name} at 0x{b.offset:X} is not contiguous (expected 0x{cursor:X})")
        if b.size < 0:
            raise CompactionError(f"Block {b.name} has negative size")
        cursor = b.end
    if cursor > region_end:
        raise CompactionError(
            f"Blocks end at 0x{cursor:X}, past region end 0x{region_end:X}")


def compact_region(image: bytes,
                   blocks: Sequence[Block],
                   region_start: int,
                   region_end: int,
                   remove: Iterable[str],
                   address_space: Optional[AddressSpace] = None) -> CompactionResult:
    """
    Remove ``remove`` blocks and slide survivors to ``region_start``.

    Returns:
        CompactionResult with a new image, the compacted block list and the
        freed tail ``(new_end, region_end)``.
    """
    _validate(blocks, region_start, region_end, len(image))
    if address_space is not None:
        address_space.check_writable(region_start, region_end, "compaction")

    remove_keys = {n.casefold() for n in remove}
    known = {b.name.casefold() for b in blocks}
    report: List[str] = ["=== COMPACTION ==="]
    for name in sorted(remove_keys - known):
        report.append(f"WARN: '{name}' is not a block of this region")
        log.warning("compaction: unknown block '%s'", name)

    out = bytearray(image)
    source = bytes(image[region_start:region_end])
    out[region_start:region_end] = bytes(region_end - region_start)

    cursor = region_start
    kept: List[Block] = []
    removed: List[Block] = []
    for b in blocks:
        if b.name.casefold() in remove_keys:
            removed.append(b)
            report.append(f"  REMOVE {b.name:<24} 0x{b.offset:X} (0x{b.size:X} bytes)")
            continue
        rel = b.offset - region_start
        out[cursor:cursor + b.size] = source[rel:rel + b.size]
        if cursor != b.offset:
            report.append(f"  MOVE   {b.name:<24} 0x{b.offset:X} -> 0x{cursor:X} "
                          f"(delta -0x{b.offset - cursor:X})")
        kept.append(Block(b.name, cursor, b.size))
        cursor += b.size

    freed = (cursor, region_end)
    report.append(f"Kept 0x{cursor - region_start:X} bytes, freed 0x{region_end - cursor:X} "
                  f"bytes at 0x{cursor:X}-0x{region_end:X}")
    log.info("compaction freed 0x%X bytes", region_end - cursor)
    return CompactionResult(out, kept, freed, report, removed)


def fix_pointer_table(image: bytearray,
                      original: Sequence[Block],
                      compacted: Sequence[Block],
                      table: PointerTable,
                      address_space: AddressSpace) -> PointerFixReport:
    """Rewrite pointers in ``table`` after compact_region(), in place."""
    if table.end > len(image):
        raise CompactionError(
            f"Pointer table 0x{table.start:X}-0x{table.end:X} is past the image end")

    new_at = {b.name: b.offset for b in compacted}
    if original:
        region = (original[0].offset, original[-1].end)
    else:
        region = (0, 0)
    rep = PointerFixReport()

    for i in range(table.count):
        entry = table.start + i * table.stride
        ident = read_be32(image, entry + table.identity_offset)
        ptr_at = entry + table.pointer_offset
        ptr = read_be32(image, ptr_at)
        if ident == 0 or ptr == 0:
            rep.skipped += 1
            continue
        off = address_space.offset(ptr)
        if not region[0] <= off < region[1]:
            continue
        owner = next((b for b in original if b.offset <= off < b.end), None)
        if owner is None:
            continue
        address_space.check_writable(ptr_at, ptr_at + 4, f"level 0x{ident:X} pointer")
        if owner.name not in new_at:
            write_be32(image, ptr_at, 0)
            rep.zeroed += 1
            rep.lines.append(f"  Level 0x{ident:X}: pointer into removed {owner.name} zeroed")
            continue
        delta = new_at[owner.name] - owner.offset
        if delta:
            write_be32(image, ptr_at, (ptr + delta) & 0xFFFFFFFF)
            rep.updated += 1
            rep.lines.append(f"  Level 0x{ident:X}: 0x{ptr:08X} -> 0x{(ptr + delta) & 0xFFFFFFFF:08X} "
                             f"({owner.name})")
    rep.lines.append(f"Pointers updated: {rep.updated}, zeroed: {rep.zeroed}, "
                     f"skipped: {rep.skipped}")
    return rep
