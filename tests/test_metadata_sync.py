"""
Metadata Synchronizer Tests.

A miniature menu / briefing / image table set with three levels, laid
out like the real GoldenEye tables but at small offsets.
"""
import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from xex_setup.address_space import read_be16, read_be32, write_be16, write_be32
from xex_setup.metadata_sync import (
    DescriptorTableLayout, DetailTableLayout, ImageTableLayout, MetadataLayout,
    discover, find_sequence, synchronize_metadata,
)

IDS = {"Dam": 0x21, "Facility": 0x22, "Runway": 0x23}
IMAGES = {0x21: 0x2C, 0x22: 0x0C, 0x23: 0x70}
DESC_START, IMAGE_AT, DETAIL_START = 0x100, 0x200, 0x300

META = MetadataLayout(
    descriptor=DescriptorTableLayout(DESC_START, DESC_START + 36, (0x21, 0x22, 0x23)),
    detail=DetailTableLayout(DETAIL_START, 0x30, 3, {v: k for k, v in IMAGES.items()},
                             {0x21: 0, 0x22: 1, 0x23: 2}),
    image=ImageTableLayout((0x2C, 0x0C, 0x70), IMAGES),
    name_to_identity=IDS,
)


def _image():
    img = bytearray(0x400)
    for i, ident in enumerate((0x21, 0x22, 0x23)):
        off = DESC_START + i * 12
        write_be32(img, off, 0x82100000 + i * 0x10)
        write_be16(img, off + 4, 0x1000 + i)      # folder text
        write_be16(img, off + 6, 0x2000 + i)      # icon text
        write_be32(img, off + 8, ident)
        write_be32(img, IMAGE_AT + i * 4, IMAGES[ident])
        tag = IMAGES[ident]
        img[DETAIL_START + i * 0x30:DETAIL_START + (i + 1) * 0x30] = bytes([tag]) * 0x30
    return img


def _slot(img, i):
    off = DESC_START + i * 12
    return read_be16(img, off + 4), read_be16(img, off + 6), read_be32(img, off + 8)


class TestDiscovery:
    """Generic discovery protocol and sequence search."""

    def test_discover_maps_identity_to_offset(self):
        img = _image()

        def probe(buf, i):
            ident = read_be32(buf, i + 8)
            return (ident, i) if ident in IDS.values() else None
        found = discover(img, DESC_START, DESC_START + 36, 12, probe)
        assert found == {0x21: 0x100, 0x22: 0x10C, 0x23: 0x118}

    def test_find_sequence_honours_step(self):
        buf = bytearray(0x40)
        write_be32(buf, 0x12, 0xAABBCCDD)
        write_be32(buf, 0x20, 0xAABBCCDD)
        assert find_sequence(buf, [0xAABBCCDD], 0, 4) == 0x20
        assert find_sequence(buf, [0xAABBCCDD], 0, 2) == 0x12
        assert find_sequence(buf, [0x11111111], 0, 4) is None


class TestSynchronize:
    """Packing, clearing and table transplanting."""

    def test_vanilla_order_is_identity(self):
        img = _image()
        before = bytes(img)
        report = synchronize_metadata(img, META, ["Dam", "Facility", "Runway"])
        assert bytes(img) == before
        assert report.slots_filled == 3 and report.slots_cleared == 0
        assert report.image_table_offset == IMAGE_AT

    def test_pack_and_clear(self):
        img = _image()
        report = synchronize_metadata(img, META, ["Facility", "Dam"])
        assert _slot(img, 0) == (0x1001, 0x2001, 0x22)
        assert _slot(img, 1) == (0x1000, 0x2000, 0x21)
        assert _slot(img, 2) == (0, 0, 0)
        assert [read_be32(img, IMAGE_AT + i * 4) for i in range(3)] == [0x0C, 0x2C, 0xFFFFFFFF]
        assert img[DETAIL_START] == 0x0C
        assert img[DETAIL_START + 0x30] == 0x2C
        assert img[DETAIL_START + 0x60] == 0x70
        assert report.slots_filled == 2 and report.slots_cleared == 1
        assert not report.warnings

    def test_names_without_identity_are_ignored(self):
        img = _image()
        report = synchronize_metadata(img, META, ["Cuba", "Runway"])
        assert _slot(img, 0)[2] == 0x23
        assert report.slots_filled == 1

    def test_desired_order(self):
        img = _image()
        report = synchronize_metadata(img, META, ["Dam", "Facility", "Runway"],
                                      desired_order=["runway", "Dam"])
        assert [_slot(img, i)[2] for i in range(3)] == [0x23, 0x21, 0x22]
        assert not report.warnings

    def test_desired_order_unknown_name_warns(self):
        img = _image()
        report = synchronize_metadata(img, META, ["Dam"], desired_order=["Nowhere"])
        assert any("Nowhere".casefold() in w for w in report.warnings)
        assert _slot(img, 0)[2] == 0x21

    def test_positional_fallback_for_cleared_slot(self):
        img = _image()
        write_be32(img, DESC_START + 24 + 8, 0)
        report = synchronize_metadata(img, META, ["Dam", "Facility", "Runway"])
        assert _slot(img, 2)[2] == 0x23
        assert any("positional fallback" in line for line in report.lines)

    def test_missing_image_table_warns(self):
        img = _image()
        write_be32(img, IMAGE_AT, 0x99)
        report = synchronize_metadata(img, META, ["Runway"])
        assert report.image_table_offset is None
        assert any("Image table not found" in w for w in report.warnings)
        assert _slot(img, 0)[2] == 0x23
