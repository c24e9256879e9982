from __future__ import annotations

import argparse
import asyncio
import logging
import math
import os
import sys
from pathlib import Path
from typing import Sequence

from .codec import get_engine_status
from .config import LOG_LEVEL_ENV_VAR, find_config, load_options
from .errors import ConfigError, OptimizeError
from .models import BatchOutcome, ConversionOutcome, OptimizationRecord, PLACEHOLDER_KINDS
from .optimizer import ImageOptimizer


def format_bytes(size: float) -> str:
    if size == 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB"]
    index = min(len(units) - 1, int(math.log(abs(size), 1024)))
    sign = "-" if size < 0 else ""
    return f"{sign}{abs(size) / 1024 ** index:.2f} {units[index]}"


def _split(value: str | None) -> list[str] | None:
    if value is None:
        return None
    return [item.strip() for item in value.split(",") if item.strip()]


def _sizes(value: str | None) -> list[int] | None:
    items = _split(value)
    if items is None:
        return None
    try:
        return [int(item) for item in items]
    except ValueError as exc:
        raise ConfigError(f"sizes must be comma-separated integers, got {value!r}") from exc


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="imgoptim", description="Content-aware image optimization pipeline")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="More logging (-vv for debug)")
    commands = parser.add_subparsers(dest="command", required=True)

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("-o", "--output", help="Output directory")
    common.add_argument("-f", "--formats", help="Output formats, comma-separated (webp,avif,jpeg,png,gif)")
    common.add_argument("-s", "--sizes", help="Responsive widths, comma-separated")
    common.add_argument("-q", "--quality", help='Quality 1-100 or "auto"')
    common.add_argument("-c", "--cdn", help="CDN base URL, may contain {path}")
    common.add_argument("-p", "--parallel", type=int, help="Files processed concurrently")
    common.add_argument("--auto-format", action="store_true", default=None, help="Let the analyzer pick formats")
    common.add_argument("--placeholders", choices=PLACEHOLDER_KINDS, help="Generate placeholders of this kind")
    common.add_argument("--no-cache", action="store_true", help="Disable the result cache")
    common.add_argument("--no-native", action="store_true", help="Use Pillow only, ignore native encoders")
    common.add_argument("--config", help="JSON config file (default: nearest imgoptim.config.json)")

    optimize = commands.add_parser("optimize", parents=[common], help="Optimize an image or a directory")
    optimize.add_argument("input", help="Image file or directory")

    convert = commands.add_parser("convert", parents=[common], help="Optimize images referenced by a codebase")
    convert.add_argument("root", help="Codebase root to scan")
    convert.add_argument("--rewrite-format", help="Format the rewritten references point at")

    commands.add_parser("engines", help="Show which encoder handles each format")
    return parser


def configure_logging(verbosity: int) -> None:
    if verbosity >= 2:
        level = logging.DEBUG
    elif verbosity == 1:
        level = logging.INFO
    else:
        level = getattr(logging, os.environ.get(LOG_LEVEL_ENV_VAR, "WARNING").upper(), logging.WARNING)
    if not logging.getLogger().handlers:
        logging.basicConfig(level=level, format="%(levelname)s:%(name)s:%(message)s")
    else:
        logging.getLogger().setLevel(level)
    logging.getLogger("PIL").setLevel(logging.WARNING)


def options_from_args(args: argparse.Namespace, **extra):
    config = args.config or find_config()
    overrides = {
        "output_dir": args.output,
        "formats": _split(args.formats),
        "sizes": _sizes(args.sizes),
        "quality": args.quality,
        "cdn_base_url": args.cdn,
        "parallel": args.parallel,
        "auto_format": args.auto_format,
        "generate_placeholders": True if args.placeholders else None,
        "placeholder_kind": args.placeholders,
        "cache_enabled": False if args.no_cache else None,
        "native_tools": False if args.no_native else None,
    }
    overrides.update(extra)
    return load_options(config, **overrides)


def print_record(record: OptimizationRecord) -> None:
    print("Result:")
    print(f"  Original: {format_bytes(record.original.size)}")
    print(f"  Optimized: {len(record.optimized)} version(s)")
    print(f"  Savings: {format_bytes(record.savings.bytes)} ({record.savings.percentage:.2f}%)")
    print(f"  Processing time: {record.elapsed:.2f}s")
    if record.decision is not None:
        print(f"  Quality: {record.decision.quality} (suggested formats: {', '.join(record.decision.formats)})")
    print("Output files:")
    for artifact in record.optimized:
        print(f"  {artifact.path} ({format_bytes(artifact.size)})")
    if record.responsive:
        print("Responsive versions:")
        for artifact in record.responsive:
            print(f"  {artifact.path} ({artifact.width}w, {format_bytes(artifact.size)})")


def print_batch(outcome: BatchOutcome) -> None:
    print("Results:")
    print(f"  Files processed: {outcome.files_processed}")
    print(
        f"  Total savings: {format_bytes(outcome.total_savings.bytes)} "
        f"({outcome.total_savings.percentage:.2f}%)"
    )
    print(f"  Processing time: {outcome.total_elapsed:.2f}s")
    if outcome.results:
        print("Sample results:")
        for record in outcome.results[:5]:
            print(
                f"  {record.source.name}: {format_bytes(record.savings.bytes)} saved "
                f"({record.savings.percentage:.1f}%)"
            )
        if len(outcome.results) > 5:
            print(f"  ... and {len(outcome.results) - 5} more")
    print_errors(outcome.errors)


def print_conversion(outcome: ConversionOutcome) -> None:
    print("Codebase conversion:")
    print(f"  Files scanned: {outcome.scanned_files}")
    print(f"  Image references: {outcome.image_references}")
    print(f"  Unique images: {outcome.unique_images}")
    print(f"  Images converted: {outcome.converted_images}")
    print(f"  Files updated: {outcome.updated_files}")
    print_errors(outcome.errors)


def print_errors(errors) -> None:
    if not errors:
        return
    print("Errors:")
    for error in errors:
        print(f"  {error.file}: {error.error}")


def run(args: argparse.Namespace) -> int:
    if args.command == "engines":
        for fmt, engine in get_engine_status().items():
            print(f"  {fmt}: {engine}")
        return 0

    if args.command == "optimize":
        source = Path(args.input)
        options = options_from_args(args, input_root=source if source.is_dir() else None)
        optimizer = ImageOptimizer(options)
        if source.is_dir():
            print_batch(asyncio.run(optimizer.optimize_directory(source)))
        elif source.is_file():
            print_record(asyncio.run(optimizer.optimize_single(source)))
        else:
            print(f"Input not found: {source}", file=sys.stderr)
            return 1
        print(f"Output directory: {options.output_dir}")
        return 0

    options = options_from_args(
        args,
        update_codebase=True,
        codebase_root=args.root,
        rewrite_format=args.rewrite_format,
    )
    print_conversion(asyncio.run(ImageOptimizer(options).convert_codebase()))
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)
    try:
        return run(args)
    except ConfigError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 1
    except (OptimizeError, OSError, ValueError) as exc:
        print(f"Optimization failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
