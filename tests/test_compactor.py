"""
Region Compactor Tests.

Removing blocks from a contiguous region, sliding survivors down and
fixing the pointer table that refers into the region.
"""
import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from itertools import combinations

import pytest
from xex_setup.address_space import AddressSpace, ProtectedRange, read_be32, write_be32
from xex_setup.compactor import Block, PointerTable, compact_region, fix_pointer_table
from xex_setup.errors import CompactionError, ProtectedRangeError

BLOCKS = (Block("w", 0, 100), Block("x", 100, 200), Block("y", 300, 150), Block("z", 450, 300))
REGION_END = 1000
TABLE = PointerTable(start=1024, count=4, stride=8, pointer_offset=4, identity_offset=0)
SPACE = AddressSpace(0)


def _image():
    img = bytearray(2048)
    for b in BLOCKS:
        img[b.offset:b.end] = bytes([ord(b.name)]) * b.size
    img[800:1000] = b"\xEE" * 200
    for i, (ident, ptr) in enumerate([(1, 120), (2, 460), (3, 2000), (0, 310)]):
        write_be32(img, TABLE.start + i * 8, ident)
        write_be32(img, TABLE.start + i * 8 + 4, ptr)
    return img


class TestCompaction:
    """Block movement and the freed tail."""

    def test_remove_middle_block(self):
        res = compact_region(_image(), BLOCKS, 0, REGION_END, ["x"])
        assert [(b.name, b.offset, b.size) for b in res.layout] == [
            ("w", 0, 100), ("y", 100, 150), ("z", 250, 300)]
        assert res.freed == (550, 1000)
        assert res.freed_bytes == 450
        assert bytes(res.image[100:250]) == b"y" * 150
        assert bytes(res.image[250:550]) == b"z" * 300
        assert not any(res.image[550:1000])
        assert [b.name for b in res.removed] == ["x"]

    def test_pointer_table_fix(self):
        res = compact_region(_image(), BLOCKS, 0, REGION_END, ["x"])
        rep = fix_pointer_table(res.image, BLOCKS, res.layout, TABLE, SPACE)
        assert read_be32(res.image, TABLE.start + 4) == 0
        assert read_be32(res.image, TABLE.start + 12) == 260
        assert read_be32(res.image, TABLE.start + 20) == 2000
        assert read_be32(res.image, TABLE.start + 28) == 310
        assert (rep.updated, rep.zeroed, rep.skipped) == (1, 1, 1)

    def test_input_not_modified(self):
        img = _image()
        before = bytes(img)
        compact_region(img, BLOCKS, 0, REGION_END, ["x"])
        assert bytes(img) == before

    def test_compaction_is_idempotent(self):
        first = compact_region(_image(), BLOCKS, 0, REGION_END, ["x", "w"])
        second = compact_region(first.image, first.layout, 0, REGION_END, ["x", "w"])
        assert bytes(second.image) == bytes(first.image)
        assert second.layout == first.layout
        assert second.freed == first.freed

    def test_empty_delete_set_leaves_image_unchanged(self):
        img = _image()
        res = compact_region(img, BLOCKS, 0, 750, [])
        assert bytes(res.image) == bytes(img)
        assert res.freed == (750, 750)
        assert res.removed == []

    def test_empty_delete_set_with_zero_tail(self):
        img = _image()
        img[750:REGION_END] = bytes(REGION_END - 750)
        res = compact_region(img, BLOCKS, 0, REGION_END, [])
        assert bytes(res.image) == bytes(img)
        assert res.layout == list(BLOCKS)

    @pytest.mark.parametrize("count", range(len(BLOCKS) + 1))
    def test_kept_plus_freed_is_region_length(self, count):
        for remove in combinations([b.name for b in BLOCKS], count):
            res = compact_region(_image(), BLOCKS, 0, REGION_END, remove)
            assert res.kept_bytes + res.freed_bytes == REGION_END

    def test_unknown_name_is_reported(self):
        res = compact_region(_image(), BLOCKS, 0, REGION_END, ["nope"])
        assert any("nope" in line for line in res.report)
        assert res.freed == (750, 1000)


class TestValidation:
    """Layouts that do not match the image are rejected."""

    def test_gap_between_blocks(self):
        blocks = (Block("a", 0, 100), Block("b", 120, 10))
        with pytest.raises(CompactionError):
            compact_region(_image(), blocks, 0, REGION_END, [])

    def test_region_past_image_end(self):
        with pytest.raises(CompactionError):
            compact_region(bytes(500), BLOCKS, 0, REGION_END, [])

    def test_blocks_past_region_end(self):
        with pytest.raises(CompactionError):
            compact_region(_image(), BLOCKS, 0, 700, [])

    def test_table_past_image_end(self):
        res = compact_region(_image(), BLOCKS, 0, REGION_END, [])
        table = PointerTable(start=2040, count=4, stride=8, pointer_offset=4)
        with pytest.raises(CompactionError):
            fix_pointer_table(res.image, BLOCKS, res.layout, table, SPACE)

    def test_protected_region_is_refused(self):
        space = AddressSpace(0, [ProtectedRange(900, 950, "ro")])
        with pytest.raises(ProtectedRangeError):
            compact_region(_image(), BLOCKS, 0, REGION_END, ["x"], space)

    def test_protected_pointer_table_is_refused(self):
        res = compact_region(_image(), BLOCKS, 0, REGION_END, ["x"])
        space = AddressSpace(0, [ProtectedRange(TABLE.start, TABLE.end, "table")])
        with pytest.raises(ProtectedRangeError):
            fix_pointer_table(res.image, BLOCKS, res.layout, TABLE, space)
