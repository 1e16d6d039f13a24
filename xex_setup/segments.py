"""
Segment allocator - first-fit over a mutable list of free byte ranges.

Each free range carries the kind of region it came from so the report
can say where a level landed. The list is scanned in the order the
caller built it, never sorted by size: callers put the cheapest, most
disposable space first and the allocator simply honours that order.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple

__all__ = ['RegionKind', 'Segment', 'align_up', 'overlaps', 'try_allocate', 'carve_out']


class RegionKind(Enum):
    """Where a placement lives."""
    FIXED_SLOT = "fixed slot"
    COMPACTED_TAIL = "compacted tail"
    LOW_POOL = "low pool"
    OVERFLOW_POOL = "overflow pool"
    EXTENDED_TAIL = "extended tail"
    SECONDARY_POOL = "secondary pool"

    @property
    def is_pool(self) -> bool:
        return self is not RegionKind.FIXED_SLOT


@dataclass(frozen=True)
class Segment:
    """Free range ``[start, end)``."""
    start: int
    end: int
    kind: RegionKind

    @property
    def size(self) -> int:
        return self.end - self.start

    def __repr__(self) -> str:
        return f"Segment(0x{self.start:X}-0x{self.end:X}, {self.kind.name})"


def align_up(value: int, align: int) -> int:
    if align <= 1:
        return value
    return (value + (align - 1)) // align * align


def overlaps(a_start: int, a_end: int, b_start: int, b_end: int) -> bool:
    return a_start < b_end and b_start < a_end


def try_allocate(segments: List[Segment], size: int,
                 align: int = 1) -> Optional[Tuple[int, RegionKind]]:
    """
    Take ``size`` bytes from the first segment that can hold them.

    The chosen segment is replaced, at the same list position, by its
    left remainder (alignment padding) and right remainder, both keeping
    the segment's kind.

    Returns:
        (offset, kind) of the allocation, or None if nothing fits
    """
    for idx, seg in enumerate(segments):
        start = align_up(seg.start, align)
        end = start + size
        if end > seg.end:
            continue
        pieces = []
        if seg.start < start:
            pieces.append(Segment(seg.start, start, seg.kind))
        if end < seg.end:
            pieces.append(Segment(end, seg.end, seg.kind))
        segments[idx:idx + 1] = pieces
        return start, seg.kind
    return None


def carve_out(segments: List[Segment], start: int, end: int):
    """Remove ``[start, end)`` from every segment it overlaps, in place."""
    for i in range(len(segments) - 1, -1, -1):
        seg = segments[i]
        if not overlaps(seg.start, seg.end, start, end):
            continue
        del segments[i]
        if seg.start < start:
            segments.insert(i, Segment(seg.start, start, seg.kind))
        if seg.end > end:
            # right remainder is appended, not inserted
            segments.append(Segment(end, seg.end, seg.kind))
