"""
================================================================================
 Address Space - file offsets, virtual addresses, protected ranges
================================================================================

KEY CONCEPTS:
-------------
1. File offset  = byte position in the image on disk
2. Virtual addr = what the game's own pointers contain (VA = base + offset)
3. Protected    = sub-ranges nothing in this package may ever write to

GOLDENEYE XBLA EXAMPLE:
-----------------------
  base = 0x8200D000

  File Offset       Virtual Address   Region
  ──────────────    ───────────────   ──────────────────────────────
  0xC7DF38          0x82C8AF38        Shared read-only setup data
  0xC94480          0x82CA1480        Single-player setup pool start

FIXED SLOTS:
------------
A fixed slot is the place a level's data has always lived. Its capacity is
the distance to the next slot start in address order (or to the region
boundary for the last slot). Slot starts that belong to data we never
relocate still bound the capacity of their neighbours, which is why
``derive_fixed_slots`` takes the full boundary list separately.
================================================================================
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Iterable, List, Mapping, Optional, Sequence, Tuple

from .errors import LayoutError, ProtectedRangeError

__all__ = [
    'ProtectedRange', 'FixedSlot', 'AddressSpace', 'derive_fixed_slots',
    'read_be32', 'write_be32', 'read_be16', 'write_be16',
]


# ============================================================================
# BIG-ENDIAN FIELD HELPERS
# ============================================================================

def read_be32(buf, offset: int) -> int:
    return struct.unpack_from(">I", buf, offset)[0]


def write_be32(buf: bytearray, offset: int, value: int):
    struct.pack_into(">I", buf, offset, value & 0xFFFFFFFF)


def read_be16(buf, offset: int) -> int:
    return struct.unpack_from(">H", buf, offset)[0]


def write_be16(buf: bytearray, offset: int, value: int):
    struct.pack_into(">H", buf, offset, value & 0xFFFF)


# ============================================================================
# VALUE TYPES
# ============================================================================

@dataclass(frozen=True)
class ProtectedRange:
    """A ``[start, end)`` file range that must never be written."""
    start: int
    end: int
    name: str = "protected"

    def intersects(self, start: int, end: int) -> bool:
        return self.start < end and start < self.end


@dataclass(frozen=True)
class FixedSlot:
    """An item's historical location and how many bytes it may occupy."""
    name: str
    offset: int
    capacity: int

    @property
    def end(self) -> int:
        return self.offset + self.capacity


def derive_fixed_slots(named_starts: Sequence[Tuple[str, int]],
                       boundary_starts: Iterable[int],
                       region_end: int) -> Tuple[FixedSlot, ...]:
    """
    Build fixed slots whose capacity runs up to the next boundary.

    Args:
        named_starts: (name, offset) for every slot that takes part in planning
        boundary_starts: every slot start in the region, including slots of
                         data that is never relocated
        region_end: exclusive end bounding the last slot

    Returns:
        FixedSlot tuple in the order of ``named_starts``
    """
    bounds = sorted(set(boundary_starts) | {off for _, off in named_starts})
    slots: List[FixedSlot] = []
    for name, start in named_starts:
        nxt = next((b for b in bounds if b > start), region_end)
        if nxt > region_end:
            nxt = region_end
        slots.append(FixedSlot(name, start, max(0, nxt - start)))
    return tuple(slots)


# ============================================================================
# ADDRESS SPACE
# ============================================================================

class AddressSpace:
    """
    Maps file offsets to virtual addresses via a fixed base and guards
    the protected ranges.

    Instances are immutable after construction and safe to share between
    planning runs.
    """

    def __init__(self, base: int, protected: Iterable[ProtectedRange] = ()):
        self._base = base
        self._protected = tuple(protected)
        for pr in self._protected:
            if pr.end < pr.start:
                raise LayoutError(f"Protected range '{pr.name}' ends before it starts")

    @property
    def base(self) -> int:
        return self._base

    @property
    def protected(self) -> Tuple[ProtectedRange, ...]:
        return self._protected

    def va(self, offset: int) -> int:
        """File offset -> virtual address."""
        return (self._base + offset) & 0xFFFFFFFF

    def offset(self, va: int) -> int:
        """Virtual address -> file offset (may be negative if below base)."""
        return va - self._base

    def protected_hit(self, start: int, end: int) -> Optional[ProtectedRange]:
        """Return the first protected range intersecting ``[start, end)``."""
        for pr in self._protected:
            if pr.intersects(start, end):
                return pr
        return None

    def check_writable(self, start: int, end: int, what: str = ""):
        """Raise ProtectedRangeError if ``[start, end)`` touches a protected range."""
        hit = self.protected_hit(start, end)
        if hit is not None:
            raise ProtectedRangeError(start, end, hit.name, what)

    def slot_va(self, slots: Mapping[str, FixedSlot], name: str) -> Optional[int]:
        """VA of ``name``'s fixed slot, or None if it has none."""
        slot = slots.get(name)
        return None if slot is None else self.va(slot.offset)

    def __repr__(self) -> str:
        return f"AddressSpace(base=0x{self._base:08X}, protected={len(self._protected)})"
