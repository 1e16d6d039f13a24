"""
Blob renderers - produce a level's setup bytes for a given load address.

Setup data holds absolute pointers, so a level that moves must be
converted again for its new VA. The converter is an external program
(setupconv.exe) called as:

    setupconv.exe "<input .set>" "<output .bin>" <VA as 8 hex digits>

Anything with a ``render(name, va) -> bytes`` method can stand in for it.
"""

from __future__ import annotations

import logging
import re
import subprocess
from pathlib import Path
from typing import Mapping, Optional

from .errors import RenderError

__all__ = ['SetupConvRenderer', 'StaticRenderer']

log = logging.getLogger(__name__)


def _safe_name(name: str) -> str:
    return re.sub(r'[^A-Za-z0-9_.()-]+', '_', name)


class SetupConvRenderer:
    """Run the external setup converter once per (item, VA)."""

    def __init__(self, exe: Path, inputs: Mapping[str, Path], work_dir: Path,
                 timeout: Optional[float] = 120.0):
        self.exe = Path(exe)
        self.inputs = {k: Path(v) for k, v in inputs.items()}
        self.work_dir = Path(work_dir)
        self.timeout = timeout

    def render(self, name: str, va: int) -> bytes:
        src = self.inputs.get(name)
        if src is None or not src.exists():
            raise RenderError(f"Missing input setup for {name}")
        self.work_dir.mkdir(parents=True, exist_ok=True)
        out = self.work_dir / f"{_safe_name(name)}_{va:08X}.bin"
        cmd = [str(self.exe), str(src), str(out), f"{va:08X}"]
        log.info("render %-12s VA=%08X -> %s", name, va, out)
        try:
            proc = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout)
        except (OSError, subprocess.TimeoutExpired) as e:
            raise RenderError(f"setupconv failed for {name}: {e}") from e
        if proc.stdout:
            log.debug(proc.stdout.rstrip())
        if proc.returncode != 0 or not out.exists():
            if proc.stderr:
                log.error(proc.stderr.rstrip())
            raise RenderError(f"setupconv failed for {name} (exit code {proc.returncode})",
                              proc.returncode)
        return out.read_bytes()


class StaticRenderer:
    """Serve pre-rendered blobs keyed by (name, VA) or just name."""

    def __init__(self, blobs: Mapping):
        self._blobs = dict(blobs)
        self.calls = []

    def render(self, name: str, va: int) -> bytes:
        self.calls.append((name, va))
        blob = self._blobs.get((name, va), self._blobs.get(name))
        if blob is None:
            raise RenderError(f"No pre-rendered blob for {name} at 0x{va:08X}")
        return bytes(blob)
