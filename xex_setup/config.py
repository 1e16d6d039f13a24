"""
Patch configuration and the JSON manifest format.

A manifest describes one patch run:

    {
      "blobs":      {"Dam": "out/dam.bin", "Cuba": "out/cuba.bin"},
      "stan_blobs": {"Dam": "out/dam_stan.bin"},
      "sizes":      {"Dam": 196608},
      "inputs":     {"Dam": "setups/UsetupdamZ.set"},
      "menu_order": ["Facility", "Dam"],
      "config":     {"allow_extend": true, "extension_method": "zero_size"}
    }

Relative paths are resolved against the manifest's directory. "sizes"
overrides the blob length for planning; "inputs" feeds the external
converter when relocated levels need re-rendering.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Dict, List, Optional

from .errors import XexSetupError
from .planner import PlanConfig
from .xex_extender import EXTENSION_METHODS

__all__ = ['PatchConfig', 'Manifest', 'load_manifest']


@dataclass(frozen=True)
class PatchConfig:
    """All switches of a patch run."""
    allow_overflow_pool: bool = False
    allow_extend: bool = False
    force_relocate_all: bool = False
    align: int = 0x10
    extend_chunk: int = 0x10000
    extension_method: str = "image_size"
    compact_mp: bool = False

    def __post_init__(self):
        if self.extension_method not in EXTENSION_METHODS:
            raise XexSetupError(f"Unknown extension method '{self.extension_method}'")
        if self.align <= 0 or self.align & (self.align - 1):
            raise XexSetupError(f"Alignment must be a power of two, got {self.align}")
        if self.extend_chunk <= 0:
            raise XexSetupError("extend_chunk must be positive")

    def plan_config(self) -> PlanConfig:
        return PlanConfig(
            allow_overflow_pool=self.allow_overflow_pool,
            allow_extend=self.allow_extend,
            force_relocate_all=self.force_relocate_all,
            align=self.align,
            extend_chunk=self.extend_chunk,
        )

    def updated(self, **overrides) -> "PatchConfig":
        """Copy with every non-None override applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})

    @classmethod
    def from_dict(cls, data: Dict) -> "PatchConfig":
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise XexSetupError(f"Unknown config keys: {', '.join(sorted(unknown))}")
        values = {}
        for k, v in data.items():
            if k in ("align", "extend_chunk") and isinstance(v, str):
                v = int(v, 0)
            values[k] = v
        return cls(**values)


@dataclass
class Manifest:
    path: Optional[Path] = None
    blobs: Dict[str, Path] = field(default_factory=dict)
    stan_blobs: Dict[str, Path] = field(default_factory=dict)
    sizes: Dict[str, int] = field(default_factory=dict)
    inputs: Dict[str, Path] = field(default_factory=dict)
    menu_order: List[str] = field(default_factory=list)
    config: PatchConfig = field(default_factory=PatchConfig)

    def read_blobs(self, which: str = "blobs") -> Dict[str, bytes]:
        paths = getattr(self, which)
        out: Dict[str, bytes] = {}
        for name, p in paths.items():
            if not p.exists():
                raise XexSetupError(f"Blob for {name} not found: {p}")
            out[name] = p.read_bytes()
        return out

    def blob_sizes(self, blobs: Dict[str, bytes]) -> Dict[str, int]:
        sizes = {name: len(b) for name, b in blobs.items()}
        sizes.update(self.sizes)
        return sizes


def _paths(raw, base: Path) -> Dict[str, Path]:
    out = {}
    for name, p in (raw or {}).items():
        path = Path(p)
        out[name] = path if path.is_absolute() else base / path
    return out


def load_manifest(path) -> Manifest:
    """Read a JSON manifest; raises XexSetupError on malformed input."""
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise XexSetupError(f"Cannot read manifest {path}: {e}") from e
    if not isinstance(data, dict):
        raise XexSetupError(f"Manifest {path} must be a JSON object")

    base = path.parent
    sizes = {}
    for name, v in (data.get("sizes") or {}).items():
        sizes[name] = int(v, 0) if isinstance(v, str) else int(v)
    return Manifest(
        path=path,
        blobs=_paths(data.get("blobs"), base),
        stan_blobs=_paths(data.get("stan_blobs"), base),
        sizes=sizes,
        inputs=_paths(data.get("inputs"), base),
        menu_order=list(data.get("menu_order") or []),
        config=PatchConfig.from_dict(data.get("config") or {}),
    )
