#!/usr/bin/env python3
"""Halve the resolution of every FLASH plot file in a directory."""

from __future__ import annotations

import argparse
import logging
import os
import sys

REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

from octreduce.batch import reduce_directory  # noqa: E402
from octreduce.errors import ReductionIOError  # noqa: E402
from octreduce.process import ReductionConfig, parse_strategy  # noqa: E402

logger = logging.getLogger("octreduce")


def setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s | %(levelname)-8s | %(message)s",
        datefmt="%H:%M:%S",
    )
    logging.getLogger("h5py").setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Downsample FLASH AMR plot files by a factor of two.")
    parser.add_argument(
        "-id",
        "--input-directory",
        required=True,
        help="Directory containing the files to reduce. Must exist.",
    )
    parser.add_argument(
        "-od",
        "--output-directory",
        required=True,
        help="Directory for the reduced files. Created if it does not exist.",
    )
    parser.add_argument(
        "-rt",
        "--reduce-type",
        default="mean",
        help="Reduction strategy: mean, median, physicalmean or physicalmedian (default: mean).",
    )
    parser.add_argument(
        "-ds",
        "--datasets",
        nargs="*",
        default=None,
        help="Variable datasets to reduce (default: all).",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=1,
        help="Threads used to reduce the datasets of one file (default: 1).",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Show more information about the files being reduced.",
    )
    return parser


def config_from_args(args: argparse.Namespace) -> ReductionConfig:
    reducer_type, physical = parse_strategy(args.reduce_type)
    return ReductionConfig(
        target_directory=args.output_directory,
        reducer_type=reducer_type,
        dataset_names=tuple(args.datasets or ()),
        physical=physical,
        workers=args.workers,
    )


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    try:
        config = config_from_args(args)
    except ValueError as exc:
        logger.error("%s", exc)
        parser.print_usage(sys.stderr)
        return 2

    logger.info("reduced files will be placed in '%s'", config.target_directory)
    logger.info(
        "strategy: %s%s", config.reducer_type.value, " (physical)" if config.physical else ""
    )
    if config.reduce_all:
        logger.info("no datasets specified, reducing all variable datasets")
    else:
        logger.info("reducing only: %s", ", ".join(config.dataset_names))

    try:
        report = reduce_directory(args.input_directory, config, verbose=args.verbose)
    except ReductionIOError as exc:
        logger.error("%s", exc)
        return 1

    for result in report.failed:
        logger.error("%s: %s", result.source.name, result.error)
    return 0 if not report.failed else 1


if __name__ == "__main__":
    raise SystemExit(main())
