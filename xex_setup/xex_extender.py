"""
XEX2 extender - append bytes to an XEX2 image so they get mapped into memory.

Header fields used (all big-endian):

    0x0000  "XEX2" magic
    0x0104  image_size           never changed
    0x0108  SHA-1 (20 bytes)     never changed
    0x1C00  file format info     [info_size 4][compression_type 4]
    0x1C08  block entries        [data_size 4][zero_size 4] each
    0x3000  first block's data

Blocks are laid out back to back in memory from 0x82000000, each one
``data_size + zero_size`` long. Appended bytes always become part of the
last block's data. Two ways to make room:

  image_size  The loader maps ``image_size`` bytes but the blocks only
              cover ``sum(data + zero)``. The difference is headroom; the
              last block's data_size grows and the new bytes land at the
              current end of memory (typically 32 KB on GoldenEye).

  zero_size   The last block's zero-filled tail is turned into real data:
              data_size += n, zero_size -= n. The new bytes land at
              ``last_block.va + data_size``; the end of memory is unchanged.

Only basic compression (type 1) is understood.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Tuple

from .address_space import read_be32, write_be32
from .errors import ExtensionError

__all__ = [
    'XEX_MAGIC', 'XEX_BASE_ADDRESS', 'EXTENSION_METHODS',
    'BlockInfo', 'XexAnalysis', 'XexExtender', 'analyze',
]

log = logging.getLogger(__name__)

XEX_MAGIC = b"XEX2"
HEADER_IMAGE_SIZE_OFFSET = 0x104
HEADER_SHA1_OFFSET = 0x108
FILE_FORMAT_INFO_OFFSET = 0x1C00
BLOCK_ENTRIES_OFFSET = 0x1C08
BLOCK_ENTRY_SIZE = 8
DATA_START_OFFSET = 0x3000
XEX_BASE_ADDRESS = 0x82000000
BASIC_COMPRESSION = 1

EXTENSION_METHODS = ("image_size", "zero_size")


@dataclass
class BlockInfo:
    index: int
    file_offset: int
    data_size: int
    zero_size: int
    va: int

    @property
    def memory_size(self) -> int:
        return self.data_size + self.zero_size


@dataclass
class XexAnalysis:
    valid: bool
    error: str = ""
    file_size: int = 0
    image_size: int = 0
    sha1: bytes = b""
    compression_type: int = 0
    blocks: List[BlockInfo] = field(default_factory=list)
    end_va: int = 0

    @property
    def total_data(self) -> int:
        return sum(b.data_size for b in self.blocks)

    @property
    def total_zero(self) -> int:
        return sum(b.zero_size for b in self.blocks)

    @property
    def image_size_headroom(self) -> int:
        return max(0, self.image_size - (self.total_data + self.total_zero))

    @property
    def zero_size_headroom(self) -> int:
        return self.blocks[-1].zero_size if self.blocks else 0

    @property
    def zero_size_insert_va(self) -> int:
        if not self.blocks:
            return 0
        last = self.blocks[-1]
        return (last.va + last.data_size) & 0xFFFFFFFF

    def summary(self) -> List[str]:
        if not self.valid:
            return [f"Invalid XEX: {self.error}"]
        return [
            f"File size:        0x{self.file_size:X}",
            f"Image size:       0x{self.image_size:X}",
            f"SHA-1:            {self.sha1.hex().upper()}",
            f"Blocks:           {len(self.blocks)}",
            f"Data / zero:      0x{self.total_data:X} / 0x{self.total_zero:X}",
            f"Data end address: 0x{self.end_va:08X}",
            f"image_size room:  0x{self.image_size_headroom:X}",
            f"zero_size room:   0x{self.zero_size_headroom:X} "
            f"(insert at 0x{self.zero_size_insert_va:08X})",
        ]


def analyze(image: bytes) -> XexAnalysis:
    """Parse the XEX2 header fields the extender needs."""
    if len(image) < 0x2000 or bytes(image[:4]) != XEX_MAGIC:
        return XexAnalysis(False, "Not a valid XEX2 file")

    res = XexAnalysis(True, file_size=len(image))
    res.image_size = read_be32(image, HEADER_IMAGE_SIZE_OFFSET)
    res.sha1 = bytes(image[HEADER_SHA1_OFFSET:HEADER_SHA1_OFFSET + 20])
    info_size = read_be32(image, FILE_FORMAT_INFO_OFFSET)
    res.compression_type = read_be32(image, FILE_FORMAT_INFO_OFFSET + 4)
    if res.compression_type != BASIC_COMPRESSION:
        res.valid = False
        res.error = (f"Unsupported compression type: {res.compression_type}. "
                     f"Only basic compression (type 1) is supported.")
        return res

    n_blocks = max(0, (info_size - 8) // BLOCK_ENTRY_SIZE)
    file_off = DATA_START_OFFSET
    mem_off = 0
    for i in range(n_blocks):
        entry = BLOCK_ENTRIES_OFFSET + i * BLOCK_ENTRY_SIZE
        if entry + BLOCK_ENTRY_SIZE > len(image):
            res.valid = False
            res.error = f"Block entry {i} is past the end of the file"
            return res
        data = read_be32(image, entry)
        zero = read_be32(image, entry + 4)
        res.blocks.append(BlockInfo(i, file_off, data, zero, (XEX_BASE_ADDRESS + mem_off) & 0xFFFFFFFF))
        file_off += data
        mem_off += data + zero
    res.end_va = (XEX_BASE_ADDRESS + mem_off) & 0xFFFFFFFF
    if not res.blocks:
        res.valid = False
        res.error = "No data blocks"
    return res


class XexExtender:
    """
    Grow an XEX2 image in place of the last block.

    Usage:
        ext = XexExtender("zero_size")
        va = ext.base_va(image)            # VA the first appended byte maps to
        new_image, end_va = ext.extend(image, 0x8000)
    """

    def __init__(self, method: str = "image_size"):
        if method not in EXTENSION_METHODS:
            raise ValueError(f"Unknown extension method '{method}' "
                             f"(expected one of {', '.join(EXTENSION_METHODS)})")
        self.method = method

    def _analysis(self, image: bytes) -> XexAnalysis:
        res = analyze(image)
        if not res.valid:
            raise ExtensionError(res.error, "xex header")
        return res

    def base_va(self, image: bytes) -> int:
        res = self._analysis(image)
        return res.end_va if self.method == "image_size" else res.zero_size_insert_va

    def headroom(self, image: bytes) -> int:
        res = self._analysis(image)
        if self.method == "image_size":
            return res.image_size_headroom
        return res.zero_size_headroom

    def extend(self, image: bytes, extra_bytes: int) -> Tuple[bytes, int]:
        """
        Append ``extra_bytes`` zero bytes and patch the last block entry.

        Returns:
            (new_image, new_end_va)

        Raises:
            ExtensionError: headroom exceeded or the header is not usable
        """
        if extra_bytes <= 0:
            raise ExtensionError("Nothing to extend", "size")
        res = self._analysis(image)
        last = res.blocks[-1]
        entry = BLOCK_ENTRIES_OFFSET + last.index * BLOCK_ENTRY_SIZE
        out = bytearray(image)
        out.extend(bytes(extra_bytes))

        if self.method == "image_size":
            room = res.image_size_headroom
            if extra_bytes > room:
                raise ExtensionError(
                    f"Extension size 0x{extra_bytes:X} exceeds image_size headroom 0x{room:X}",
                    "image_size headroom")
            write_be32(out, entry, last.data_size + extra_bytes)
            new_end = (res.end_va + extra_bytes) & 0xFFFFFFFF
        else:
            room = res.zero_size_headroom
            if extra_bytes > room:
                raise ExtensionError(
                    f"Extension size 0x{extra_bytes:X} exceeds last block zero_size 0x{room:X}",
                    "last block zero_size")
            write_be32(out, entry, last.data_size + extra_bytes)
            write_be32(out, entry + 4, last.zero_size - extra_bytes)
            new_end = res.end_va

        log.info("XEX extended by 0x%X bytes (%s method), end VA 0x%08X",
                 extra_bytes, self.method, new_end)
        return bytes(out), new_end
