"""
Exception types for the XEX setup relocation engine.

Only invariant violations and unusable input raise. Anything a user can
fix by changing options (a level that does not fit, a missing blob, a
back-pointer that could not be found) is reported as a line in the
plan/apply report instead.
"""

from __future__ import annotations

__all__ = [
    'XexSetupError', 'LayoutError', 'ProtectedRangeError',
    'ExtensionError', 'ExtensionDisabledError', 'CompactionError',
    'RenderError',
]


class XexSetupError(Exception):
    """Base class for every error raised by xex_setup."""


class LayoutError(XexSetupError):
    """Raised when a static layout table is inconsistent."""


class ProtectedRangeError(XexSetupError):
    """Raised when a write would touch a protected (read-only) range."""
    def __init__(self, start: int, end: int, range_name: str, what: str = ""):
        self.start = start
        self.end = end
        self.range_name = range_name
        self.what = what
        label = f"{what} " if what else ""
        super().__init__(
            f"{label}write 0x{start:X}-0x{end:X} intersects protected range '{range_name}'"
        )


class ExtensionError(XexSetupError):
    """Raised when the image cannot be extended.

    ``constraint`` names the host-format limit that was hit
    (e.g. ``'image_size headroom'`` or ``'last block zero_size'``).
    """
    def __init__(self, message: str, constraint: str = ""):
        self.constraint = constraint
        super().__init__(message)


class ExtensionDisabledError(ExtensionError):
    """Raised when placements need a larger image but extension is off."""


class CompactionError(XexSetupError):
    """Raised when a compaction layout does not match the image."""


class RenderError(XexSetupError):
    """Raised when the external converter fails to produce a blob."""
    def __init__(self, message: str, exit_code: int = -1):
        self.exit_code = exit_code
        super().__init__(message)
