"""
Metadata synchronizer - keep the menu, briefing and image tables in step
with the set of levels that were just written.

Three derived tables are rebuilt after every apply:

  Descriptor table (menu):  [Ptr 4][Folder TextID 2][Icon TextID 2][LevelID 4]
      Earlier patch passes may have zeroed entries, so entries are found by
      scanning for a known level ID with the pointer tag byte 8 bytes
      before it, not by index. A cleared slot (LevelID = 0) is invisible to
      that scan; for those the fixed 12-byte stride is used instead.

  Detail table (briefings): fixed 0x30-byte blocks with no level ID field.
      The first byte is a per-level tag; a tag -> level lookup is built once
      per run by reading every block. Blocks are buffered by level before
      any write and then copied to the destination level's index.

  Image table: menu preview image IDs in menu order. Its file offset moves
      between revisions, so it is found by searching for the exact default
      image sequence. Unused trailing entries get the "no image" sentinel.

Discovery always happens on the image after every blob has been written.
"""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .address_space import read_be16, read_be32, write_be16, write_be32

__all__ = [
    'DescriptorTableLayout', 'DetailTableLayout', 'ImageTableLayout', 'MetadataLayout',
    'SyncReport', 'discover', 'find_sequence', 'reorder_entries', 'synchronize_metadata',
]

log = logging.getLogger(__name__)

# probe(image, offset) -> (identity, entry_offset) or None
Probe = Callable[[bytes, int], Optional[Tuple[int, int]]]


@dataclass(frozen=True)
class DescriptorTableLayout:
    start: int
    end: int
    slot_order: Tuple[int, ...]
    stride: int = 12
    tag_offset: int = 0
    tag_value: int = 0x82
    aux_a_offset: int = 4
    aux_b_offset: int = 6
    identity_offset: int = 8
    scan_step: int = 4

    def positional_offset(self, index: int) -> int:
        return self.start + index * self.stride


@dataclass(frozen=True)
class DetailTableLayout:
    start: int
    stride: int
    count: int
    tag_to_identity: Mapping[int, int]
    fallback_index: Mapping[int, int] = field(default_factory=dict)
    tag_offset: int = 0

    @property
    def end(self) -> int:
        return self.start + self.stride * self.count

    def block_offset(self, index: int) -> int:
        return self.start + index * self.stride


@dataclass(frozen=True)
class ImageTableLayout:
    default_sequence: Tuple[int, ...]
    identity_to_image: Mapping[int, int]
    search_start: int = 0
    step: int = 4
    empty_sentinel: int = 0xFFFFFFFF


@dataclass(frozen=True)
class MetadataLayout:
    descriptor: DescriptorTableLayout
    detail: Optional[DetailTableLayout]
    image: Optional[ImageTableLayout]
    name_to_identity: Mapping[str, int]


@dataclass
class SyncReport:
    lines: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    slots_filled: int = 0
    slots_cleared: int = 0
    image_table_offset: Optional[int] = None

    def warn(self, msg: str):
        log.warning(msg)
        self.warnings.append(f"WARN: {msg}")


# ============================================================================
# DISCOVERY PROTOCOL
# ============================================================================

def discover(image, start: int, end: int, step: int, probe: Probe) -> Dict[int, int]:
    """Scan ``[start, end)`` in ``step`` increments; map identity -> offset."""
    found: Dict[int, int] = {}
    end = min(end, len(image))
    for i in range(start, end, step):
        hit = probe(image, i)
        if hit is not None:
            identity, offset = hit
            found[identity] = offset
    return found


def find_sequence(image, values: Sequence[int], start: int = 0, step: int = 4) -> Optional[int]:
    """Offset of the first ``step``-aligned exact match of ``values`` as BE32s."""
    pattern = b"".join(struct.pack(">I", v) for v in values)
    pos = image.find(pattern, start)
    while pos != -1:
        if (pos - start) % step == 0:
            return pos
        pos = image.find(pattern, pos + 1)
    return None


def _descriptor_index(image, layout: DescriptorTableLayout, known: set) -> Dict[int, int]:
    def probe(buf, i):
        if i + 4 > len(buf):
            return None
        ident = read_be32(buf, i)
        if ident == 0 or ident not in known:
            return None
        struct_start = i - layout.identity_offset
        if struct_start < layout.start or buf[struct_start + layout.tag_offset] != layout.tag_value:
            return None
        return ident, struct_start
    return discover(image, layout.start, layout.end, layout.scan_step, probe)


def _detail_index(image, layout: DetailTableLayout, report: SyncReport) -> Dict[int, int]:
    def probe(buf, off):
        if off + 4 > len(buf):
            return None
        tag = buf[off + layout.tag_offset]
        ident = layout.tag_to_identity.get(tag)
        if ident is None:
            report.lines.append(f"  Note: detail block idx {(off - layout.start) // layout.stride}: "
                                f"unknown tag 0x{tag:02X}, skipped")
            return None
        return ident, (off - layout.start) // layout.stride
    return discover(image, layout.start, layout.end, layout.stride, probe)


# ============================================================================
# ORDERING
# ============================================================================

def reorder_entries(entries: List[Tuple[str, int]], desired_order: Iterable[str],
                    report: SyncReport) -> List[Tuple[str, int]]:
    """Names in ``desired_order`` first (in that order), the rest keep their order."""
    index: Dict[str, int] = {}
    for name in desired_order:
        key = name.casefold()
        if key not in index:
            index[key] = len(index)

    present = {n.casefold() for n, _ in entries}
    unknown = [n for n in index if n not in present]
    if unknown:
        report.warn("Desired menu contains levels not present in placements: " + ", ".join(unknown))

    explicit = sorted((e for e in entries if e[0].casefold() in index),
                      key=lambda e: index[e[0].casefold()])
    rest = [e for e in entries if e[0].casefold() not in index]
    report.lines.append(f"Applied custom menu order ({len(explicit)} matched, "
                        f"{len(rest)} left in original order).")
    return explicit + rest


# ============================================================================
# SYNCHRONIZATION
# ============================================================================

def synchronize_metadata(image: bytearray,
                         metadata: MetadataLayout,
                         visible: Sequence[str],
                         desired_order: Optional[Iterable[str]] = None) -> SyncReport:
    """
    Rewrite the menu, briefing and image tables for ``visible`` levels.

    Args:
        image: working image, already holding every written blob
        metadata: table layouts
        visible: written item names in placement order; names without an
                 identity (e.g. Cuba) are ignored
        desired_order: optional custom menu order

    Returns:
        SyncReport with lines, warnings and fill/clear counts
    """
    report = SyncReport()
    desc = metadata.descriptor
    entries = [(n, metadata.name_to_identity[n]) for n in visible if n in metadata.name_to_identity]
    if desired_order is not None:
        entries = reorder_entries(entries, desired_order, report)

    known = set(metadata.name_to_identity.values())
    desc_index = _descriptor_index(image, desc, known)
    aux = {ident: (read_be16(image, off + desc.aux_a_offset), read_be16(image, off + desc.aux_b_offset))
           for ident, off in desc_index.items()}

    image_off = None
    if metadata.image is not None:
        image_off = find_sequence(image, metadata.image.default_sequence,
                                  metadata.image.search_start, metadata.image.step)
        if image_off is None:
            report.warn("Image table not found! Images won't be reordered.")
        else:
            report.lines.append(f"Image Table Found at 0x{image_off:X}")
    report.image_table_offset = image_off

    detail_idx: Dict[int, int] = {}
    detail_buf: Dict[int, bytes] = {}
    if metadata.detail is not None:
        det = metadata.detail
        detail_idx = _detail_index(image, det, report)
        for name, ident in entries:
            idx = detail_idx.get(ident)
            if idx is None:
                report.warn(f"Could not discover briefing index for {name} (0x{ident:X}).")
                continue
            off = det.block_offset(idx)
            detail_buf[ident] = bytes(image[off:off + det.stride])

    def _dest_offset(i: int, dest_id: int) -> Optional[int]:
        off = desc_index.get(dest_id)
        if off is not None:
            return off
        pos = desc.positional_offset(i)
        if pos + desc.stride <= len(image) and image[pos + desc.tag_offset] == desc.tag_value:
            report.lines.append(f"  Note: slot {i} (0x{dest_id:X}) found via positional fallback.")
            return pos
        return None

    slots = desc.slot_order
    n = min(len(entries), len(slots))
    if len(entries) > len(slots):
        report.warn(f"{len(entries) - len(slots)} visible levels exceed the {len(slots)} menu slots.")

    for i in range(n):
        dest_id = slots[i]
        off = _dest_offset(i, dest_id)
        if off is None:
            report.warn(f"Couldn't locate destination menu struct for 0x{dest_id:X} (slot {i}); "
                        f"positional fallback also failed.")
            continue
        name, src_id = entries[i]
        folder, icon = aux.get(src_id, (0, 0))
        write_be16(image, off + desc.aux_a_offset, folder)
        write_be16(image, off + desc.aux_b_offset, icon)
        write_be32(image, off + desc.identity_offset, src_id)
        if image_off is not None:
            img_id = metadata.image.identity_to_image.get(src_id)
            if img_id is not None:
                write_be32(image, image_off + i * 4, img_id)
        report.lines.append(f"  Slot {i}: {name} -> dest 0x{dest_id:X} (Menu/Image updated)")
        report.slots_filled += 1

    for i in range(n, len(slots)):
        off = _dest_offset(i, slots[i])
        if off is not None:
            write_be16(image, off + desc.aux_a_offset, 0)
            write_be16(image, off + desc.aux_b_offset, 0)
            write_be32(image, off + desc.identity_offset, 0)
        if image_off is not None:
            write_be32(image, image_off + i * 4, metadata.image.empty_sentinel)
        report.slots_cleared += 1

    if metadata.detail is not None:
        det = metadata.detail
        for i in range(n):
            dest_id = slots[i]
            src_id = entries[i][1]
            block = detail_buf.get(src_id)
            if block is None:
                continue
            dest_idx = detail_idx.get(dest_id)
            if dest_idx is None:
                dest_idx = det.fallback_index.get(dest_id)
                if dest_idx is None:
                    report.warn(f"Could not discover dest briefing index for 0x{dest_id:X}; slot {i}.")
                    continue
            dest_off = det.block_offset(dest_idx)
            image[dest_off:dest_off + det.stride] = block
            report.lines.append(f"    Briefing: 0x{src_id:X} -> 0x{dest_id:X} @ idx {dest_idx}")

    report.lines.append(f"Packed {report.slots_filled} levels. Cleared {report.slots_cleared} slots.")
    return report
