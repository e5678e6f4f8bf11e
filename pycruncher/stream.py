# Copyright (c) Meta Platforms, Inc. and affiliates.
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

import struct

from pycruncher.errors import MalformedStream


# Skipping is done in bounded chunks so large arrays are never held in memory.
SKIP_CHUNK_SIZE = 64 * 1024


class ByteStream(object):
    """
    Forward-only big-endian cursor over a binary file object. Keeps track of
    the absolute offset so errors can point at the broken record.
    """

    def __init__(self, instream, offset=0):
        self.instream = instream
        self.offset = offset
        self._peeked = b""

    def read(self, length):
        if length < 0:
            raise MalformedStream("Negative read of %d bytes" % length, offset=self.offset)
        if length == 0:
            return b""
        if self._peeked:
            data = self._peeked + self.instream.read(length - len(self._peeked))
            self._peeked = b""
        else:
            data = self.instream.read(length)
        if len(data) != length:
            raise MalformedStream(
                "Unexpected end of stream, wanted %d bytes but got %d"
                % (length, len(data)),
                offset=self.offset,
            )
        self.offset += length
        return data

    def at_end(self):
        if not self._peeked:
            self._peeked = self.instream.read(1)
        return not self._peeked

    def skip(self, length):
        while length > 0:
            chunk = min(length, SKIP_CHUNK_SIZE)
            self.read(chunk)
            length -= chunk

    def next_byte(self):
        return self.read(1)[0]

    def next_two_bytes(self):
        return struct.unpack(b">H", self.read(2))[0]

    def next_four_bytes(self):
        return struct.unpack(b">I", self.read(4))[0]

    def next_eight_bytes(self):
        return struct.unpack(b">Q", self.read(8))[0]

    # Only 4 byte ids are supported, see HprofReader.read_header
    def next_id(self):
        return self.next_four_bytes()

    def next_byte_array(self, length):
        return self.read(length)
