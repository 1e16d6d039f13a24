"""
================================================================================
GoldenEye XBLA - layout tables
================================================================================

File offsets and addresses for the retail GoldenEye 007 XBLA XEX
(basic compression, decrypted). Every value here is built once at import
time and is read-only afterwards.

Memory map of the parts we touch (file offsets):

    0x71DF60  briefing table         21 x 0x30
    0x71E570  menu descriptor table  12-byte entries
    0x720588  STAN (clipping) blobs  up to 0x84AF3C
    0x84AF90  level ID table         38 x 0x38
    0x84C5F0  MP setup blocks        up to 0xB00AC0
    0xC7DF38  shared read-only data  up to 0xC94480 (never written)
    0xC94480  SP setup blocks        up to 0xDB8CC0
    0xDB8CC0  MP setup headers       up to 0xDDFF60 (overflow pool)

VA = 0x8200D000 + file offset.

Level ID table entry (+0x00 level id, +0x14 STAN ptr, +0x18 SP setup ptr,
+0x20 BG data ptr). The SP pointer of every level is the entry's +0x18
field, and its STAN pointer sits 4 bytes before it.

Cuba cannot be re-converted (the converter produces a setup that crashes
the game) and carries absolute VAs, so it always stays in its own slot.
It has no menu entry of its own; it is reached through Cradle.
================================================================================
"""

from __future__ import annotations

from types import MappingProxyType

from .address_space import AddressSpace, ProtectedRange, derive_fixed_slots
from .compactor import Block, PointerTable
from .layout import PoolRegion, RegionLayout
from .metadata_sync import (
    DescriptorTableLayout, DetailTableLayout, ImageTableLayout, MetadataLayout,
)
from .segments import RegionKind

__all__ = [
    'VA_BASE', 'ADDRESS_SPACE', 'SP_LAYOUT', 'STAN_LAYOUT', 'MENU_METADATA',
    'MP_BLOCKS', 'MP_REGION_START', 'MP_REGION_END', 'MP_DEFAULT_REMOVE',
    'LEVEL_ID_TABLE', 'PINNED', 'ANCHOR', 'STAN_MIRRORS', 'LEVEL_IDS',
]

VA_BASE = 0x8200D000

SHARED_READ_ONLY = ProtectedRange(0xC7DF38, 0xC94480, "shared read-only setup data")
ADDRESS_SPACE = AddressSpace(VA_BASE, (SHARED_READ_ONLY,))

PINNED = "Cuba"
ANCHOR = "Cradle"

# ============================================================================
# SP SETUP BLOCKS
# ============================================================================

SETUP_BLOCKS_END = 0xDDFF60
MP_HEADERS_START = 0xDB8CC0
END_OF_XEX_DEFAULT = 0xF1B6D0

_SP_SLOTS = (
    ("Archives", 0xC94480), ("Control", 0xCA4CF8), ("Facility", 0xCBB470),
    ("Aztec", 0xCCC988), ("Caverns", 0xCE2420), ("Cradle", 0xCE7B08),
    ("Egyptian", 0xCF0BD8), ("Dam", 0xD045F0), ("Depot", 0xD11A40),
    ("Frigate", 0xD1F3E8), ("Jungle", 0xD37440), ("Cuba", 0xD39898),
    ("Streets", 0xD47C40), ("Runway", 0xD4F238), ("Bunker (1)", 0xD589C0),
    ("Bunker (2)", 0xD67C10), ("Surface (1)", 0xD787E8), ("Surface (2)", 0xD86CD0),
    ("Silo", 0xD9AAC8), ("Statue", 0xDA18C0), ("Train", 0xDB4C50),
)

PRIORITY_ORDER = (
    "Dam", "Facility", "Runway", "Surface (1)", "Bunker (1)", "Silo",
    "Frigate", "Surface (2)", "Bunker (2)", "Statue", "Archives", "Streets",
    "Depot", "Train", "Jungle", "Control", "Caverns", "Cradle", "Cuba",
    "Aztec", "Egyptian",
)

_SP_POINTERS = {
    "Bunker (1)": 0x84AFA8, "Silo": 0x84AFE0, "Statue": 0x84B018,
    "Control": 0x84B050, "Archives": 0x84B088, "Train": 0x84B0C0,
    "Frigate": 0x84B0F8, "Bunker (2)": 0x84B130, "Aztec": 0x84B168,
    "Streets": 0x84B1A0, "Depot": 0x84B1D8, "Egyptian": 0x84B248,
    "Dam": 0x84B280, "Facility": 0x84B2B8, "Runway": 0x84B2F0,
    "Surface (1)": 0x84B328, "Jungle": 0x84B360, "Caverns": 0x84B3D0,
    "Cradle": 0x84B440, "Surface (2)": 0x84B4B0, "Cuba": 0x84B718,
}

SP_LAYOUT = RegionLayout(
    name="SP setup",
    address_space=ADDRESS_SPACE,
    fixed_slots=derive_fixed_slots(_SP_SLOTS, [s for _, s in _SP_SLOTS], SETUP_BLOCKS_END),
    pointer_offsets={k: (v,) for k, v in _SP_POINTERS.items()},
    pools=(
        PoolRegion(SHARED_READ_ONLY.end, MP_HEADERS_START, RegionKind.LOW_POOL, "SP setup pool"),
        PoolRegion(MP_HEADERS_START, SETUP_BLOCKS_END, RegionKind.OVERFLOW_POOL, "MP headers"),
    ),
    ceiling=SETUP_BLOCKS_END,
    priority_order=PRIORITY_ORDER,
)

# ============================================================================
# STAN (CLIPPING) BLOBS
# ============================================================================
# Blob layout: +0x000 size to end, +0x408 stans data, and at the end a BE32
# VA pointing back at the blob start followed by padding.

STAN_REGION_START = 0x720588
STAN_REGION_END = 0x84AF3C

# every slot start, SP and MP, used only to bound capacities
_STAN_BOUNDARIES = (
    0x720588, 0x724720, 0x732090, 0x744530, 0x7591C0,
    0x75D358, 0x76A088, 0x775880, 0x77BBA0, 0x7832C8,
    0x799298, 0x7A99B8, 0x7B8C28, 0x7BA9E0, 0x7BEB78,
    0x7CF6E0, 0x7D14D8, 0x7D52D0, 0x7DF740, 0x7E40D8,
    0x7E83D0, 0x7F11D8, 0x7FC680, 0x810B58, 0x825030,
    0x8258D8, 0x83A310, 0x845400,
)

_STAN_SLOTS = (
    ("Archives", 0x724720), ("Control", 0x732090), ("Facility", 0x744530),
    ("Aztec", 0x75D358), ("Caverns", 0x76A088), ("Cradle", 0x775880),
    ("Egyptian", 0x77BBA0), ("Dam", 0x7832C8), ("Depot", 0x799298),
    ("Frigate", 0x7A99B8), ("Jungle", 0x7BEB78), ("Cuba", 0x7CF6E0),
    ("Streets", 0x7D52D0), ("Runway", 0x7E40D8), ("Bunker (1)", 0x7E83D0),
    ("Bunker (2)", 0x7F11D8), ("Surface (1)", 0x7FC680), ("Silo", 0x8258D8),
    ("Statue", 0x83A310), ("Train", 0x845400),
)

STAN_MIRRORS = MappingProxyType({"Surface (2)": "Surface (1)"})

STAN_LAYOUT = RegionLayout(
    name="STAN",
    address_space=ADDRESS_SPACE,
    fixed_slots=derive_fixed_slots(_STAN_SLOTS, _STAN_BOUNDARIES, STAN_REGION_END),
    pointer_offsets={k: (v - 4,) for k, v in _SP_POINTERS.items()},
    pools=(
        # unused tail of the MP Stack slot
        PoolRegion(0x7595B8, 0x75D358, RegionKind.SECONDARY_POOL, "Stack slot tail"),
        # Surface (2) shares Surface (1); its slot and the beta "sho" slot are free
        PoolRegion(0x810B58, 0x8258D8, RegionKind.SECONDARY_POOL, "Surface (2) + sho"),
    ),
    ceiling=STAN_REGION_END,
    priority_order=PRIORITY_ORDER,
    back_pointer_fixup=True,
    excluded=frozenset(STAN_MIRRORS),
)

# ============================================================================
# MENU / BRIEFING / IMAGE TABLES
# ============================================================================

LEVEL_IDS = MappingProxyType({
    "Dam": 0x21, "Facility": 0x22, "Runway": 0x23, "Surface (1)": 0x24,
    "Bunker (1)": 0x09, "Silo": 0x14, "Frigate": 0x1A, "Surface (2)": 0x2B,
    "Bunker (2)": 0x1B, "Statue": 0x16, "Archives": 0x18, "Streets": 0x1D,
    "Depot": 0x1E, "Train": 0x19, "Jungle": 0x25, "Control": 0x17,
    "Caverns": 0x27, "Cradle": 0x29, "Aztec": 0x1C, "Egyptian": 0x20,
})

# level id -> preview image id; the briefing tag byte uses the same values
_LEVEL_IMAGE_IDS = {
    0x18: 0x08, 0x17: 0x20, 0x22: 0x0C, 0x1C: 0x14, 0x27: 0x1C,
    0x29: 0x24, 0x20: 0x28, 0x21: 0x2C, 0x1E: 0x30, 0x1A: 0x34,
    0x25: 0x48, 0x1D: 0x64, 0x23: 0x70, 0x09: 0x78, 0x1B: 0x74,
    0x24: 0x7C, 0x2B: 0x80, 0x14: 0x88, 0x16: 0x8C, 0x19: 0x90,
}

VANILLA_MENU_ORDER = (
    0x21, 0x22, 0x23, 0x24, 0x09, 0x14, 0x1A, 0x2B, 0x1B, 0x16,
    0x18, 0x1D, 0x1E, 0x19, 0x25, 0x17, 0x27, 0x29, 0x1C, 0x20,
)

VANILLA_IMAGE_ORDER = (
    0x2C, 0x0C, 0x70, 0x7C, 0x78, 0x88, 0x34, 0x80, 0x74, 0x8C,
    0x08, 0x64, 0x30, 0x90, 0x48, 0x20, 0x1C, 0x24, 0x14, 0x28,
)

_BRIEFING_INDICES = {
    0x21: 0, 0x22: 1, 0x23: 2, 0x24: 3, 0x09: 4, 0x14: 5, 0x1A: 6,
    0x2B: 7, 0x1B: 8, 0x16: 9, 0x18: 10, 0x1D: 11, 0x1E: 12, 0x19: 13,
    0x25: 14, 0x17: 15, 0x27: 16, 0x29: 17, 0x1C: 18, 0x20: 19, 0x36: 20,
}

MENU_METADATA = MetadataLayout(
    descriptor=DescriptorTableLayout(
        start=0x71E570,
        end=0x71E8B8,
        slot_order=VANILLA_MENU_ORDER,
    ),
    detail=DetailTableLayout(
        start=0x71DF60,
        stride=0x30,
        count=21,
        tag_to_identity=MappingProxyType({tag: lvl for lvl, tag in _LEVEL_IMAGE_IDS.items()}),
        fallback_index=MappingProxyType(_BRIEFING_INDICES),
    ),
    image=ImageTableLayout(
        default_sequence=VANILLA_IMAGE_ORDER,
        identity_to_image=MappingProxyType(_LEVEL_IMAGE_IDS),
        search_start=0x700000,
    ),
    name_to_identity=LEVEL_IDS,
)

# ============================================================================
# MP SETUP REGION (compaction)
# ============================================================================

MP_REGION_START = 0x84C5F0
MP_REGION_END = 0xB00AC0

MP_BLOCKS = (
    Block("Library / Basement / Stack", 0x84C5F0, 0x9F60),
    Block("Archives", 0x856550, 0x25AF0),
    Block("Control", 0x87C040, 0x2E380),
    Block("Facility", 0x8AA3C0, 0x30F80),
    Block("Aztec", 0x8DB340, 0x21A50),
    Block("Citadel", 0x8FCD90, 0x5530),
    Block("Caverns", 0x9022C0, 0x244F0),
    Block("Cradle", 0x9267B0, 0x10350),
    Block("Egypt", 0x936B00, 0x156B0),
    Block("Dam", 0x94C1B0, 0x301A0),
    Block("Depot", 0x97C350, 0x2C970),
    Block("Frigate", 0x9A8CC0, 0x2D9C0),
    Block("Temple", 0x9D6680, 0x4870),
    Block("Jungle", 0x9DAEF0, 0x150F0),
    Block("Cuba", 0x9EFFE0, 0xFA0),
    Block("Caves", 0x9F0F80, 0x6E50),
    Block("Streets", 0x9F7DD0, 0x19C30),
    Block("Complex", 0xA11A00, 0x9610),
    Block("Runway", 0xA1B010, 0xA3D0),
    Block("Bunker I", 0xA253E0, 0x10DF0),
    Block("Bunker II", 0xA361D0, 0x1ADA0),
    Block("Surface I & II", 0xA50F70, 0x1C5D0),
    Block("Silo", 0xA6D540, 0x50F40),
    Block("Statue", 0xABE480, 0x220D0),
    Block("Train", 0xAE0550, 0x20570),
)

MP_DEFAULT_REMOVE = ("Library / Basement / Stack", "Citadel", "Caves", "Complex", "Temple")

# BG data pointer of every level ID table entry
LEVEL_ID_TABLE = PointerTable(start=0x84AF90, count=38, stride=0x38,
                              pointer_offset=0x20, identity_offset=0)
