# Copyright (c) Meta Platforms, Inc. and affiliates.
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

# pyre-strict

import typing


class CrunchError(Exception):
    """
    Base class for every fatal conversion error. The optional tag and byte
    offset point at the record (or heap record) being read when the error was
    detected.
    """

    def __init__(
        self,
        message: str,
        tag: typing.Optional[int] = None,
        offset: typing.Optional[int] = None,
    ) -> None:
        self.message = message
        self.tag: typing.Optional[int] = None if tag is None else int(tag)
        self.offset = offset
        super().__init__(self.describe())

    def describe(self) -> str:
        context = []
        if self.tag is not None:
            context.append("tag=0x%02x" % self.tag)
        if self.offset is not None:
            context.append("offset=%d" % self.offset)
        if not context:
            return self.message
        return "%s (%s)" % (self.message, ", ".join(context))


class MalformedStream(CrunchError):
    """Stream alignment is lost: unknown tag, truncated data or a record whose
    length was not consumed exactly."""


class UnresolvedClass(CrunchError):
    """A class id was referenced that was never loaded or never dumped."""


class BlobLengthMismatch(CrunchError):
    """An instance field blob does not match its class hierarchy's layout."""


class UnsupportedInput(CrunchError):
    """Well formed input that this converter does not handle."""
