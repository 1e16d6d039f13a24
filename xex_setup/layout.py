"""
Static layout descriptions consumed by the planner and the apply engine.

A RegionLayout describes one placement domain inside the image (for
GoldenEye XBLA: the single-player setup blocks, and separately the STAN
clipping blobs). It is configuration, loaded once and shared read-only
between planning runs; nothing in here is mutated after construction.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, FrozenSet, Iterable, Mapping, Optional, Tuple

from .address_space import AddressSpace, FixedSlot
from .errors import LayoutError
from .segments import RegionKind

__all__ = ['Item', 'PoolRegion', 'RegionLayout']


@dataclass(frozen=True)
class Item:
    """One externally produced data block to place."""
    name: str
    size: int
    pointer_offsets: Tuple[int, ...]
    requires_back_pointer_fixup: bool = False


@dataclass(frozen=True)
class PoolRegion:
    """Free space handed to the allocator, in declared precedence order."""
    start: int
    end: int
    kind: RegionKind
    label: str = ""

    @property
    def size(self) -> int:
        return self.end - self.start


@dataclass(frozen=True, eq=False)
class RegionLayout:
    """
    Everything the planner needs to know about one placement domain.

    Attributes:
        name: label used in reports ("SP setup", "STAN", ...)
        address_space: offset <-> VA mapping plus protected ranges
        fixed_slots: slots in address order, capacities already derived
        pointer_offsets: item name -> file offsets of its pointer field(s)
        pools: free regions in allocation precedence order
        ceiling: exclusive end of the writable area for fixed-slot reuse
        priority_order: item names, most important first
        back_pointer_fixup: relocated items embed a pointer to their own start
        excluded: names never planned individually (e.g. mirrored items)
    """
    name: str
    address_space: AddressSpace
    fixed_slots: Tuple[FixedSlot, ...]
    pointer_offsets: Mapping[str, Tuple[int, ...]]
    pools: Tuple[PoolRegion, ...]
    ceiling: int
    priority_order: Tuple[str, ...]
    back_pointer_fixup: bool = False
    excluded: FrozenSet[str] = frozenset()
    _slots_by_name: Dict[str, FixedSlot] = field(init=False, repr=False)
    _canonical: Dict[str, str] = field(init=False, repr=False)

    def __post_init__(self):
        slots = {s.name: s for s in self.fixed_slots}
        if len(slots) != len(self.fixed_slots):
            raise LayoutError(f"{self.name}: duplicate fixed slot names")
        object.__setattr__(self, '_slots_by_name', slots)
        object.__setattr__(self, 'pointer_offsets',
                           MappingProxyType({k: tuple(v) for k, v in self.pointer_offsets.items()}))
        names = set(self.priority_order) | set(slots) | set(self.pointer_offsets)
        object.__setattr__(self, '_canonical', {n.casefold(): n for n in names})

    # --- lookups ---

    def canonical_name(self, name: str) -> Optional[str]:
        """Case-insensitive name lookup; None if the name is unknown."""
        return self._canonical.get(name.casefold())

    def slot(self, name: str) -> Optional[FixedSlot]:
        return self._slots_by_name.get(name)

    @property
    def slots(self) -> Mapping[str, FixedSlot]:
        return MappingProxyType(self._slots_by_name)

    def original_va(self, name: str) -> Optional[int]:
        slot = self.slot(name)
        return None if slot is None else self.address_space.va(slot.offset)

    def item(self, name: str, size: int) -> Optional[Item]:
        """Build an Item, or None when the layout has no pointer for it."""
        offsets = self.pointer_offsets.get(name)
        if not offsets:
            return None
        return Item(name, size, offsets, self.back_pointer_fixup)

    def ordered(self, names: Iterable[str]) -> Tuple[str, ...]:
        """``names`` restricted to and sorted by priority order."""
        wanted = set(names)
        return tuple(n for n in self.priority_order if n in wanted)

    def pool_capacity(self, kind: RegionKind) -> int:
        return sum(p.size for p in self.pools if p.kind is kind)
