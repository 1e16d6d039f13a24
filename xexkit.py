#!/usr/bin/env python3
"""
xexkit - GoldenEye XBLA Setup Toolkit
======================================

One CLI for everything:
    xexkit plan     - Show where every level would go
    xexkit patch    - Plan and write setups (and STAN blobs) into a XEX
    xexkit split    - Share the levels between two XEX files
    xexkit compact  - Squeeze unused MP setups out of the MP region
    xexkit extend   - Grow the XEX2 last block
    xexkit info     - XEX header summary and current level pointers

Usage:
    python xexkit.py <command> [options]
    python xexkit.py --help
    python xexkit.py <command> --help

Examples:
    python xexkit.py plan default.xex manifest.json --overflow
    python xexkit.py patch default.xex manifest.json -o patched.xex --extend
    python xexkit.py split default.xex manifest.json -o xex1.xex -O xex2.xex
    python xexkit.py compact default.xex -o compacted.xex
    python xexkit.py extend default.xex --bytes 0x8000 --method zero_size
    python xexkit.py info default.xex
"""

import argparse
import logging
import os
import sys
from pathlib import Path

__version__ = "0.4.0"

# Ensure our package is importable
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from xex_setup.errors import XexSetupError  # noqa: E402


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="xexkit",
        description="GoldenEye XBLA setup toolkit - plan, patch, split, compact, extend",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""commands:
  plan       Show the placement plan for a manifest
  patch      Write setups / STAN blobs into a XEX
  split      Share the levels between two XEX files
  compact    Remove unused MP setups and fix BG pointers
  extend     Append zero bytes to the XEX2 last block
  info       Summarize a XEX and its level pointers
""",
    )
    parser.add_argument("--version", action="version", version=f"xexkit {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug output on the console")
    parser.add_argument("--log-dir", default=None, help="Also write a log file to this directory")
    sub = parser.add_subparsers(dest="command", metavar="command")

    def _plan_options(p):
        p.add_argument("xex", help="Input .xex file")
        p.add_argument("manifest", help="JSON manifest (blobs, sizes, menu order, config)")
        p.add_argument("--overflow", action="store_true", default=None,
                       help="Allow the MP header area as an overflow pool")
        p.add_argument("--extend", action="store_true", default=None,
                       help="Allow growing the XEX when the pools are full")
        p.add_argument("--force-relocate", action="store_true", default=None,
                       help="Never reuse fixed slots (except Cuba)")
        p.add_argument("--compact-mp", action="store_true", default=None,
                       help="Compact the MP setup region first and use its tail")
        p.add_argument("--method", choices=["image_size", "zero_size"], default=None,
                       help="XEX extension method")
        p.add_argument("--align", type=lambda x: int(x, 0), default=None,
                       help="Placement alignment (default: 0x10)")
        p.add_argument("--chunk", type=lambda x: int(x, 0), default=None,
                       help="Minimum extension chunk (default: 0x10000)")

    # ── plan ─────────────────────────────────────────────────────────────
    p_plan = sub.add_parser("plan", help="Show the placement plan")
    _plan_options(p_plan)

    # ── patch ────────────────────────────────────────────────────────────
    p_pat = sub.add_parser("patch", help="Write setups into a XEX")
    _plan_options(p_pat)
    p_pat.add_argument("-o", "--output", help="Output XEX (default: input_patched.xex)")
    p_pat.add_argument("--converter", default=None,
                       help="setupconv executable, used for relocated levels")
    p_pat.add_argument("--dry-run", action="store_true",
                       help="Show the report without writing")

    # ── split ────────────────────────────────────────────────────────────
    p_spl = sub.add_parser("split", help="Share the levels between two XEX files")
    _plan_options(p_spl)
    p_spl.add_argument("-o", "--output", help="First output XEX (default: input_1.xex)")
    p_spl.add_argument("-O", "--output2", help="Second output XEX (default: input_2.xex)")
    p_spl.add_argument("--converter", default=None, help="setupconv executable")

    # ── compact ──────────────────────────────────────────────────────────
    p_cmp = sub.add_parser("compact", help="Compact the MP setup region")
    p_cmp.add_argument("xex", help="Input .xex file")
    p_cmp.add_argument("--remove", nargs="+", default=None,
                       help="Blocks to remove (default: Library/Basement/Stack, Citadel, "
                            "Caves, Complex, Temple)")
    p_cmp.add_argument("-o", "--output", help="Output XEX (default: input_compacted.xex)")

    # ── extend ───────────────────────────────────────────────────────────
    p_ext = sub.add_parser("extend", help="Grow the XEX2 last block")
    p_ext.add_argument("xex", help="Input .xex file")
    p_ext.add_argument("--bytes", required=True, type=lambda x: int(x, 0),
                       help="Number of bytes to append")
    p_ext.add_argument("--method", choices=["image_size", "zero_size"], default="image_size")
    p_ext.add_argument("-o", "--output", help="Output XEX (default: input_extended.xex)")

    # ── info ─────────────────────────────────────────────────────────────
    p_info = sub.add_parser("info", help="Summarize a XEX")
    p_info.add_argument("xex", help="Input .xex file")

    # ── Parse and dispatch ───────────────────────────────────────────────
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        sys.exit(0)

    from xex_setup.log import setup_logging
    setup_logging(console_level=logging.DEBUG if args.verbose else logging.INFO,
                  log_dir=Path(args.log_dir) if args.log_dir else None)

    handler = COMMANDS.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        sys.exit(1)
    try:
        return handler(args)
    except (XexSetupError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


# ═════════════════════════════════════════════════════════════════════════════
# COMMAND IMPLEMENTATIONS
# ═════════════════════════════════════════════════════════════════════════════

def _read(path):
    with open(path, "rb") as f:
        return f.read()


def _write(path, data):
    with open(path, "wb") as f:
        f.write(bytes(data))


def _default_out(path, suffix):
    stem, ext = os.path.splitext(path)
    return f"{stem}_{suffix}{ext or '.xex'}"


def _load(args):
    """Manifest + config with CLI overrides applied."""
    from xex_setup.config import load_manifest
    manifest = load_manifest(args.manifest)
    manifest.config = manifest.config.updated(
        allow_overflow_pool=args.overflow,
        allow_extend=args.extend,
        force_relocate_all=args.force_relocate,
        compact_mp=args.compact_mp,
        extension_method=args.method,
        align=args.align,
        extend_chunk=args.chunk,
    )
    return manifest


def _renderer(args, manifest):
    from xex_setup.renderer import SetupConvRenderer
    if not getattr(args, "converter", None):
        return None
    work = Path(args.xex).resolve().parent / "repack"
    return SetupConvRenderer(Path(args.converter), manifest.inputs, work)


def _print_lines(lines):
    for line in lines:
        print(line)


# ── plan ─────────────────────────────────────────────────────────────────
def cmd_plan(args):
    from xex_setup import goldeneye, plan_placements
    from xex_setup.compactor import compact_region

    xex = _read(args.xex)
    manifest = _load(args)
    cfg = manifest.config
    sizes = manifest.blob_sizes(manifest.read_blobs())

    extra = ()
    if cfg.compact_mp:
        comp = compact_region(xex, goldeneye.MP_BLOCKS, goldeneye.MP_REGION_START,
                              goldeneye.MP_REGION_END, goldeneye.MP_DEFAULT_REMOVE,
                              goldeneye.ADDRESS_SPACE)
        extra = (comp.freed,)

    base_va = None
    if cfg.allow_extend:
        from xex_setup.xex_extender import XexExtender
        base_va = XexExtender(cfg.extension_method).base_va(xex)

    plan = plan_placements(goldeneye.SP_LAYOUT, sizes, sizes, cfg.plan_config(), len(xex),
                           extra_pool=extra, always_fixed=(goldeneye.PINNED,),
                           extension_base_va=base_va)
    _print_lines(plan.trace)
    if plan.not_placed:
        print(f"\n{len(plan.not_placed)} level(s) did not fit: {', '.join(plan.not_placed)}")


# ── patch ────────────────────────────────────────────────────────────────
def cmd_patch(args):
    from xex_setup import patch_image

    xex = _read(args.xex)
    print(f"Base XEX: {args.xex} ({len(xex)} bytes)")
    manifest = _load(args)
    blobs = manifest.read_blobs()
    stan = manifest.read_blobs("stan_blobs") if manifest.stan_blobs else None

    result, sp_plan, stan_plan = patch_image(
        xex, blobs, manifest.config,
        stan_blobs=stan, sizes=manifest.sizes,
        renderer=_renderer(args, manifest),
        desired_order=manifest.menu_order or None,
    )
    _print_lines(sp_plan.trace)
    if stan_plan is not None:
        print()
        _print_lines(stan_plan.trace)
    print()
    _print_lines(result.report.lines())

    if args.dry_run:
        print("\n[DRY RUN] No files modified.")
        return
    out = args.output or _default_out(args.xex, "patched")
    _write(out, result.image)
    print(f"\nWrote {len(result.image)} bytes -> {out}")


# ── split ────────────────────────────────────────────────────────────────
def cmd_split(args):
    from xex_setup import goldeneye, plan_split, apply_split
    from xex_setup.xex_extender import XexExtender

    xex = _read(args.xex)
    manifest = _load(args)
    cfg = manifest.config
    blobs = manifest.read_blobs()
    sizes = manifest.blob_sizes(blobs)

    extender = XexExtender(cfg.extension_method) if cfg.allow_extend else None
    base_va = extender.base_va(xex) if extender else None
    split = plan_split(goldeneye.SP_LAYOUT, sizes, cfg.plan_config(), len(xex),
                       pinned=goldeneye.PINNED, anchor=goldeneye.ANCHOR,
                       extension_base_va=base_va)
    _print_lines(split.first.trace)
    print()
    _print_lines(split.second.trace)

    first, second = apply_split(xex, goldeneye.SP_LAYOUT, split, blobs, cfg,
                                renderer=_renderer(args, manifest), extender=extender,
                                metadata=goldeneye.MENU_METADATA,
                                desired_order=manifest.menu_order or None)
    out1 = args.output or _default_out(args.xex, "1")
    out2 = args.output2 or _default_out(args.xex, "2")
    for label, res, out in (("XEX #1", first, out1), ("XEX #2", second, out2)):
        print(f"\n--- {label} ---")
        _print_lines(res.report.lines())
        _write(out, res.image)
        print(f"Wrote {len(res.image)} bytes -> {out}")
    if split.not_placed:
        print(f"\nNot placed in either XEX: {', '.join(split.not_placed)}")


# ── compact ──────────────────────────────────────────────────────────────
def cmd_compact(args):
    from xex_setup import goldeneye
    from xex_setup.compactor import compact_region, fix_pointer_table

    xex = _read(args.xex)
    remove = args.remove or goldeneye.MP_DEFAULT_REMOVE
    comp = compact_region(xex, goldeneye.MP_BLOCKS, goldeneye.MP_REGION_START,
                          goldeneye.MP_REGION_END, remove, goldeneye.ADDRESS_SPACE)
    fix = fix_pointer_table(comp.image, goldeneye.MP_BLOCKS, comp.layout,
                            goldeneye.LEVEL_ID_TABLE, goldeneye.ADDRESS_SPACE)
    _print_lines(comp.report)
    _print_lines(fix.lines)
    out = args.output or _default_out(args.xex, "compacted")
    _write(out, comp.image)
    print(f"Freed tail: 0x{comp.freed[0]:X}-0x{comp.freed[1]:X} -> {out}")


# ── extend ───────────────────────────────────────────────────────────────
def cmd_extend(args):
    from xex_setup.xex_extender import XexExtender

    xex = _read(args.xex)
    ext = XexExtender(args.method)
    data_va = ext.base_va(xex)
    new_xex, end_va = ext.extend(xex, args.bytes)
    out = args.output or _default_out(args.xex, "extended")
    _write(out, new_xex)
    print(f"Extended by 0x{args.bytes:X} bytes ({args.method} method)")
    print(f"New data at VA 0x{data_va:08X}, end VA 0x{end_va:08X} -> {out}")


# ── info ─────────────────────────────────────────────────────────────────
def cmd_info(args):
    from xex_setup import goldeneye
    from xex_setup.address_space import read_be32
    from xex_setup.xex_extender import analyze

    xex = _read(args.xex)
    print(f"File:     {args.xex}")
    print(f"Size:     {len(xex)} bytes ({len(xex) // 1024} KB)")
    _print_lines(analyze(xex).summary())

    layout = goldeneye.SP_LAYOUT
    if len(xex) < max(o for offs in layout.pointer_offsets.values() for o in offs) + 4:
        return
    print("\nLevel         Slot VA     Current VA  Capacity")
    for slot in layout.fixed_slots:
        ptr = layout.pointer_offsets.get(slot.name)
        cur = read_be32(xex, ptr[0]) if ptr else 0
        moved = "" if cur == layout.address_space.va(slot.offset) else "  (relocated)"
        print(f"{slot.name:<13} 0x{layout.address_space.va(slot.offset):08X}  "
              f"0x{cur:08X}  0x{slot.capacity:X}{moved}")


COMMANDS = {
    "plan": cmd_plan,
    "patch": cmd_patch,
    "split": cmd_split,
    "compact": cmd_compact,
    "extend": cmd_extend,
    "info": cmd_info,
}


if __name__ == "__main__":
    main()
