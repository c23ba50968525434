#!/usr/bin/env python3
"""
Command-line interface for teenyjvm - a tiny JVM for the integer subset.
"""

import argparse
import logging
import sys
from pathlib import Path

from .errors import JVMError

ASSEMBLY_SUFFIX = ".j"


def _configure_logging(verbose: bool):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s - %(name)s - %(message)s",
    )


def _load_class(path: Path):
    """Read a .class file, or assemble a .j file in memory."""
    from .classreader import read_class_bytes, read_class_file

    if path.suffix == ASSEMBLY_SUFFIX:
        from .assembler import assemble_file
        return read_class_bytes(assemble_file(path).to_bytes())
    return read_class_file(path)


def run_command(args):
    """Run main() of a class file or assembly source."""
    from .interpreter import run_main

    path = Path(args.file)
    if not path.exists():
        print(f"Error: File not found: {args.file}", file=sys.stderr)
        sys.exit(1)

    sys.setrecursionlimit(max(sys.getrecursionlimit(), args.recursion_limit))

    try:
        class_model = _load_class(path)
        run_main(class_model)
    except JVMError as e:
        sys.stdout.flush()
        print(f"Error running {args.file}: {e}", file=sys.stderr)
        sys.exit(1)


def assemble_command(args):
    """Assemble .j files to .class bytecode."""
    from .assembler import Assembler

    assembler = Assembler()
    output_dir = Path(args.output) if args.output else Path(".")
    output_dir.mkdir(parents=True, exist_ok=True)

    total_classes = 0
    for source_file in args.files:
        path = Path(source_file)
        if not path.exists():
            print(f"Error: File not found: {source_file}", file=sys.stderr)
            sys.exit(1)

        try:
            class_file = assembler.assemble(path.read_text(encoding="utf-8"))
        except JVMError as e:
            print(f"Error assembling {source_file}: {e}", file=sys.stderr)
            sys.exit(1)

        class_path = output_dir / f"{class_file.name}.class"
        class_file.write(str(class_path))
        if args.verbose:
            print(f"Wrote {class_path}")
        total_classes += 1

    if not args.quiet:
        print(f"Assembled {len(args.files)} file(s) to {total_classes} class(es)")


def main():
    """Main entry point for teenyjvm CLI."""
    parser = argparse.ArgumentParser(
        prog="teenyjvm",
        description="Run and assemble class files for the teenyjvm integer subset",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Run command
    run_parser = subparsers.add_parser(
        "run",
        help="Run main() of a .class file or .j assembly source",
    )
    run_parser.add_argument(
        "file",
        help="Class file or assembly source to run",
    )
    run_parser.add_argument(
        "--recursion-limit",
        type=int,
        default=20000,
        help="Host recursion limit, bounding bytecode call depth (default: 20000)",
    )
    run_parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Log every executed instruction to stderr",
    )
    run_parser.set_defaults(func=run_command)

    # Assemble command
    assemble_parser = subparsers.add_parser(
        "assemble",
        help="Assemble .j files to .class bytecode",
    )
    assemble_parser.add_argument(
        "files",
        nargs="+",
        help="Assembly source files",
    )
    assemble_parser.add_argument(
        "-o", "--output",
        help="Output directory for .class files (default: current directory)",
    )
    assemble_parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Print each generated class file",
    )
    assemble_parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Suppress summary output",
    )
    assemble_parser.set_defaults(func=assemble_command)

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    _configure_logging(args.verbose)
    args.func(args)


if __name__ == "__main__":
    main()
