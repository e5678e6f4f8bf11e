#!/usr/bin/env python3
# Copyright (c) Meta Platforms, Inc. and affiliates.
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.


# pyre-strict


import argparse
import logging
import os
import sys
import typing

from pycruncher.bmd import BmdReader
from pycruncher.crunch import crunch_file
from pycruncher.errors import CrunchError


def _init_logging(level_str: str) -> None:
    levels = {
        "critical": logging.CRITICAL,
        "error": logging.ERROR,
        "warn": logging.WARNING,
        "warning": logging.WARNING,
        "info": logging.INFO,
        "debug": logging.DEBUG,
    }
    level = levels[level_str]
    logging.basicConfig(
        level=level,
        format="[%(levelname)-8s] %(message)s",
    )


def arg_parser() -> argparse.ArgumentParser:
    description = """
Convert an HPROF heap dump into the compact BMD format, or print the records
of a BMD file.

Record tracing is enabled per category with TRACE, e.g. TRACE=RECORDS:1,CLASSES:1
or TRACE=1 for everything (categories: RECORDS, HEAP, CLASSES, OBJECTS). It goes
to stderr unless TRACEFILE is set.
"""
    parser = argparse.ArgumentParser(
        formatter_class=argparse.RawDescriptionHelpFormatter, description=description
    )
    parser.add_argument(
        "--log-level",
        default="info",
        choices=["critical", "error", "warn", "warning", "info", "debug"],
        help="Log level (defaults to info)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    crunch_parser = subparsers.add_parser("crunch", help="Convert HPROF to BMD")
    crunch_parser.add_argument("input", help="Input HPROF file")
    crunch_parser.add_argument(
        "output",
        type=os.path.realpath,
        help="Output BMD file name",
    )

    dump_parser = subparsers.add_parser("dump", help="Print the records of a BMD file")
    dump_parser.add_argument("input", help="Input BMD file")

    return parser


def run_crunch(args: argparse.Namespace) -> None:
    logging.info("Converting %s to %s", args.input, args.output)
    crunch_file(args.input, args.output)
    logging.info(
        "Wrote %d bytes (input was %d bytes)",
        os.path.getsize(args.output),
        os.path.getsize(args.input),
    )


def run_dump(
    args: argparse.Namespace, out: typing.Optional[typing.TextIO] = None
) -> None:
    out = out if out is not None else sys.stdout
    with open(args.input, "rb") as f:
        reader = BmdReader(f)
        while reader.has_next():
            print(reader.next(), file=out)


def main(argv: typing.Optional[typing.List[str]] = None) -> int:
    args = arg_parser().parse_args(argv)
    _init_logging(args.log_level)
    try:
        if args.command == "crunch":
            run_crunch(args)
        else:
            run_dump(args)
    except (CrunchError, OSError) as e:
        logging.error("%s", e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
