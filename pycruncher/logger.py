# Copyright (c) Meta Platforms, Inc. and affiliates.
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.


# pyre-strict

# Record level tracing, for finding out where a conversion of a broken dump
# goes wrong. TRACE selects categories and levels, e.g.
#
#   TRACE=RECORDS:1,CLASSES:2   top level records and class details
#   TRACE=1                     level 1 for every category
#
# Output goes to the file named by TRACEFILE, or to stderr.


import logging
import os
import sys
import typing


RECORDS = "RECORDS"  # top level HPROF records
HEAP = "HEAP"  # heap dump sub-records
CLASSES = "CLASSES"  # class definitions, first pass
OBJECTS = "OBJECTS"  # instances, arrays and roots, second pass
CATEGORIES = (RECORDS, HEAP, CLASSES, OBJECTS)

levels: typing.Optional[typing.Dict[str, int]] = None
trace_fp: typing.Optional[typing.TextIO] = None
_default_level = 0


def parse_levels(value: typing.Optional[str]) -> typing.Tuple[typing.Dict[str, int], int]:
    """
    Returns the per category levels and the level for categories that are
    not named. Malformed entries are reported and ignored.
    """
    per_category: typing.Dict[str, int] = {}
    default = 0
    if not value:
        return per_category, default
    for entry in value.split(","):
        category, _, level = entry.strip().rpartition(":")
        try:
            parsed = int(level)
        except ValueError:
            logging.warning("Ignoring TRACE entry %r, level is not a number", entry)
            continue
        if not category:
            default = parsed
        elif category.upper() in CATEGORIES:
            per_category[category.upper()] = parsed
        else:
            logging.warning(
                "Ignoring TRACE entry %r, categories are %s", entry, ", ".join(CATEGORIES)
            )
    return per_category, default


def _get_levels() -> typing.Dict[str, int]:
    global levels, _default_level
    if levels is None:
        levels, _default_level = parse_levels(os.environ.get("TRACE"))
    return levels


def get_level(category: str) -> int:
    return _get_levels().get(category, _default_level)


def enabled(category: str, level: int = 1) -> bool:
    return get_level(category) >= level


def _get_trace_file() -> typing.TextIO:
    global trace_fp
    if trace_fp is None:
        trace_file = os.environ.get("TRACEFILE")
        if trace_file:
            logging.info("Trace output will go to %s", trace_file)
            trace_fp = open(trace_file, "w")  # noqa: P201
        else:
            trace_fp = sys.stderr
    return trace_fp


def trace(category: str, message: str, *args: typing.Any, level: int = 1) -> None:
    """Writes message % args if category is traced at level or above."""
    if not enabled(category, level):
        return
    print("%s: %s" % (category, message % args if args else message), file=_get_trace_file())


def flush() -> None:
    if trace_fp is not None:
        trace_fp.flush()


def reset() -> None:
    """Closes the trace file and re-reads TRACE and TRACEFILE on next use."""
    global levels, trace_fp
    if trace_fp is not None and trace_fp is not sys.stderr:
        trace_fp.close()
    levels = None
    trace_fp = None
