#!/usr/bin/env python3
"""
Extract Telemetry Script

Reads a GoPro video and/or a GPX/IGC track file from disk and writes the
normalized GPS samples as JSON (``{samples, totalSamples, source}``) or CSV.

Usage:
    geotelemetry-extract --video GX010042.MP4 [--track ride.gpx] [--output out.json]

Example:
    geotelemetry-extract --video GX010042.MP4 --format csv --output GX010042.csv
"""

import argparse
import json
import logging
import mmap
import sys
from contextlib import ExitStack
from pathlib import Path

import rich.console
import rich.logging

from geotelemetry.errors import TelemetryError
from geotelemetry.processing.extract_telemetry import extract_telemetry

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False):
    log_format = r"\[[bold]%(name)s[/bold]] %(message)s"
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=log_format,
        datefmt="[%X]",
        handlers=[
            rich.logging.RichHandler(
                console=rich.console.Console(color_system="auto", stderr=True),
                show_level=True,
                show_path=False,
                enable_link_path=False,
                rich_tracebacks=True,
                tracebacks_show_locals=False,
                markup=True,
            )
        ],
    )


def run(args: argparse.Namespace) -> int:
    """Run the pipeline for parsed CLI *args*; returns the process exit code."""
    with ExitStack() as stack:
        video = None
        if args.video is not None:
            f = stack.enter_context(open(args.video, "rb"))
            size_mb = args.video.stat().st_size / (1024 * 1024)
            logger.info("Reading %s (%.1f MiB)", args.video.name, size_mb)
            # mmap cannot map an empty file
            video = (
                stack.enter_context(mmap.mmap(f.fileno(), 0, access=mmap.ACCESS_READ))
                if size_mb > 0
                else b""
            )

        track_text = None
        if args.track is not None:
            track_text = args.track.read_text(encoding="utf-8", errors="replace")

        try:
            result = extract_telemetry(video=video, track_text=track_text)
        except TelemetryError as exc:
            logger.error("%s: %s", type(exc).__name__, exc)
            return 1

    for warning in result.warnings:
        logger.warning(warning)

    if args.format == "csv":
        df = result.to_dataframe()
        if args.output is not None:
            df.to_csv(args.output, index=False)
        else:
            df.to_csv(sys.stdout, index=False)
    else:
        text = json.dumps(result.to_payload(), indent=2) + "\n"
        if args.output is not None:
            args.output.write_text(text)
        else:
            sys.stdout.write(text)

    if args.output is not None:
        logger.info(
            "Wrote %s  (%d samples, source: %s)",
            args.output.name,
            result.total_samples,
            result.source,
        )
    return 0


def main():
    parser = argparse.ArgumentParser(description="Extract normalized GPS telemetry")
    parser.add_argument("--video", type=Path, help="GoPro MP4 or bare GPMF dump")
    parser.add_argument("--track", type=Path, help="GPX or IGC track file (fallback)")
    parser.add_argument("--output", type=Path, help="Output file (default: stdout)")
    parser.add_argument(
        "--format", choices=("json", "csv"), default="json", help="Output format"
    )
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args()

    setup_logging(args.verbose)

    if args.video is None and args.track is None:
        parser.error("at least one of --video or --track is required")

    sys.exit(run(args))


if __name__ == "__main__":
    main()
