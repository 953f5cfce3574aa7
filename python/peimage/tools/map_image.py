#!/usr/bin/env python3
"""
PE image mapping CLI tool.

Loads a PE file the way a chosen Windows loader would and prints its
headers, section table and the loader verdict. Optionally rebases the
image, dumps the mapped image, writes a snapshot of it or compares it with
a reference snapshot.

Usage:
    python -m peimage.tools.map_image <binary> [--windows 10] [--dump out.bin]
"""

import argparse
import logging
import sys
from pathlib import Path

from peimage import (
    ImageLoader,
    ImageSnapshot,
    LoaderConfiguration,
    SnapshotError,
    Status,
    WindowsVersion,
    compare_with_snapshot,
    load_snapshot,
    relocate_image,
    save_snapshot,
)


def print_image(loader: ImageLoader) -> None:
    """Print headers, sections and loader verdict."""
    file_header = loader.file_header
    opt = loader.optional_header

    print(f"  Machine:           0x{file_header.Machine:04X}")
    print(f"  Bitability:        {loader.get_image_bitability()}")
    print(f"  Characteristics:   0x{file_header.Characteristics:04X}")
    print(f"  ImageBase:         0x{opt.ImageBase:X}")
    print(f"  EntryPoint:        0x{opt.AddressOfEntryPoint:08X}")
    print(f"  SectionAlignment:  0x{opt.SectionAlignment:X}")
    print(f"  FileAlignment:     0x{opt.FileAlignment:X}")
    print(f"  SizeOfHeaders:     0x{opt.SizeOfHeaders:X}")
    print(f"  SizeOfImage:       0x{opt.SizeOfImage:X}")

    print(f"  Sections ({loader.number_of_sections}):")
    for index, section in enumerate(loader.sections):
        print(
            f"    [{index:2}] {section.name_str:<8} "
            f"va=0x{section.VirtualAddress:08X} vsize=0x{section.VirtualSize:08X} "
            f"raw=0x{section.PointerToRawData:08X} rsize=0x{section.SizeOfRawData:08X} "
            f"flags=0x{section.Characteristics:08X}"
        )

    error = loader.loader_error()
    print(f"  Loader error:      {error.name} ({error.description})")
    print(f"  Loadable:          {'yes' if loader.is_image_loadable() else 'no'}")
    if loader.pages is not None:
        print(f"  Mapped:            {len(loader.pages)} pages")
    else:
        print("  Mapped:            no (raw file fallback)")


def build_config(args: argparse.Namespace) -> LoaderConfiguration:
    return LoaderConfiguration.for_windows(
        WindowsVersion(args.windows),
        is_64bit_windows=args.is_64bit_windows,
        load_arm_images=False if args.no_arm else None,
    )


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Map a PE file the way the Windows loader does"
    )
    parser.add_argument("binary", type=Path, help="Path to PE file")
    parser.add_argument(
        "--windows",
        choices=[version.value for version in WindowsVersion],
        default=WindowsVersion.DEFAULT.value,
        help="Windows loader to reproduce (default: no particular version)",
    )
    parser.add_argument(
        "--64bit-windows",
        dest="is_64bit_windows",
        action="store_true",
        help="Reproduce a loader running on 64-bit Windows",
    )
    parser.add_argument(
        "--no-arm", action="store_true", help="Reject ARM machine types"
    )
    parser.add_argument(
        "--headers-only", action="store_true", help="Capture headers without mapping"
    )
    parser.add_argument(
        "--rebase",
        type=lambda value: int(value, 0),
        help="Relocate the mapped image to this base address",
    )
    parser.add_argument("--dump", type=Path, help="Write the mapped image to a file")
    parser.add_argument("--snapshot", type=Path, help="Write a snapshot of the mapping")
    parser.add_argument(
        "--compare", type=Path, help="Compare the mapping with a snapshot"
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true", help="Enable debug logging"
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    if not args.binary.exists():
        print(f"Error: {args.binary} does not exist", file=sys.stderr)
        return 1

    print(f"Loading: {args.binary}")
    print("-" * 60)
    loader = ImageLoader(build_config(args))
    status = loader.load_file(args.binary, headers_only=args.headers_only)
    if status != Status.NONE:
        print(f"Error: cannot load {args.binary}: {status.name}", file=sys.stderr)
        return 1
    print_image(loader)

    exit_code = 0
    if args.rebase is not None:
        if relocate_image(loader, args.rebase):
            print(f"  Rebased to:        0x{args.rebase:X}")
        else:
            print(f"Error: cannot rebase to 0x{args.rebase:X}", file=sys.stderr)
            exit_code = 1

    if args.dump:
        written = loader.dump_image(args.dump)
        print(f"  Dumped:            {written} bytes to {args.dump}")

    if args.snapshot:
        size = save_snapshot(ImageSnapshot.from_loader(loader), args.snapshot)
        print(f"  Snapshot:          {size} bytes to {args.snapshot}")

    if args.compare:
        try:
            snapshot = load_snapshot(args.compare)
        except (OSError, SnapshotError) as e:
            print(f"Error: cannot read snapshot {args.compare}: {e}", file=sys.stderr)
            return 1
        comparison = compare_with_snapshot(loader, snapshot)
        print(f"  Compare:           {comparison}")
        if not comparison.equal:
            exit_code = 1

    print("-" * 60)
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
