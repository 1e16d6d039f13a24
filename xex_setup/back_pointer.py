"""
Back-pointer fixup for relocated blobs.

Some blobs (the STAN clipping data) end with a BE32 pointer to their own
first byte, followed by padding. When such a blob moves, that pointer
still holds the old VA. We search backwards from the end of the written
blob, on 4-byte steps, for the old VA and swap in the new one.
"""

from __future__ import annotations

from typing import Optional

from .address_space import read_be32, write_be32

__all__ = ['find_back_pointer', 'fix_back_pointer']


def find_back_pointer(image, start: int, size: int, old_va: int) -> Optional[int]:
    """File offset of the last BE32 equal to ``old_va`` inside the blob."""
    i = start + size - 4
    while i >= start:
        if 0 <= i and i + 4 <= len(image) and read_be32(image, i) == old_va:
            return i
        i -= 4
    return None


def fix_back_pointer(image: bytearray, start: int, size: int,
                     old_va: int, new_va: int) -> bool:
    """Rewrite the blob's self-reference; False if it could not be found."""
    hit = find_back_pointer(image, start, size, old_va)
    if hit is None:
        return False
    write_be32(image, hit, new_va)
    return True
