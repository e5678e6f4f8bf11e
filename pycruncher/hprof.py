# Copyright (c) Meta Platforms, Inc. and affiliates.
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

# Reads the top level record stream of an HPROF dump:
#
#   header:  NUL terminated text, u4 id size, u4 timestamp high, u4 low
#   records: u1 tag, u4 time offset (us), u4 length, <length> bytes payload
#
# Example usage:
#   reader = HprofReader(open("dump.hprof", "rb"), processor)
#   while reader.has_next():
#       reader.next()

import enum
import struct

from pycruncher import logger
from pycruncher.errors import MalformedStream, UnsupportedInput
from pycruncher.model import ClassDefinition, HprofString, decode_modified_utf8
from pycruncher.stream import ByteStream


SUPPORTED_ID_SIZE = 4


class HprofTag(enum.Enum):
    STRING = 0x01
    LOAD_CLASS = 0x02
    UNLOAD_CLASS = 0x03
    STACK_FRAME = 0x04
    STACK_TRACE = 0x05
    ALLOC_SITES = 0x06
    HEAP_SUMMARY = 0x07
    START_THREAD = 0x0A
    END_THREAD = 0x0B
    HEAP_DUMP = 0x0C
    HEAP_DUMP_SEGMENT = 0x1C
    HEAP_DUMP_END = 0x2C
    CPU_SAMPLES = 0x0D
    CONTROL_SETTINGS = 0x0E


class DiscardProcessor(object):
    """
    Processor which ignores the header and skips every record. Subclasses
    override on_record for the tags they care about and defer to this class
    for the rest.
    """

    def on_header(self, text, id_size, time_high, time_low):
        pass

    def on_record(self, tag, timestamp, length, reader):
        reader.skip(length)


class HprofReader(object):
    record_struct_format = b">BII"
    record_struct = struct.Struct(record_struct_format)

    def __init__(self, instream, processor=None):
        self.byte_stream = ByteStream(instream)
        self.processor = processor if processor is not None else DiscardProcessor()
        self.header = None
        self._record_tag = None
        self._record_end = None

    def read_header(self):
        # The tag is a NUL terminated string
        text = bytearray()
        while True:
            byte = self.byte_stream.next_byte()
            if byte == 0:
                break
            text.append(byte)
        text = decode_modified_utf8(bytes(text))

        offset = self.byte_stream.offset
        id_size = self.byte_stream.next_four_bytes()
        if id_size != SUPPORTED_ID_SIZE:
            raise UnsupportedInput(
                "Identifier size %d is not supported, only %d byte ids are"
                % (id_size, SUPPORTED_ID_SIZE),
                offset=offset,
            )
        time_high = self.byte_stream.next_four_bytes()
        time_low = self.byte_stream.next_four_bytes()
        self.header = (text, id_size, time_high, time_low)
        return self.header

    def _ensure_header(self):
        if self.header is None:
            self.read_header()
            self.processor.on_header(*self.header)

    def _check_record_consumed(self):
        if self._record_end is None:
            return
        if self.byte_stream.offset != self._record_end:
            raise MalformedStream(
                "Record was not consumed exactly, %d bytes off"
                % (self._record_end - self.byte_stream.offset),
                tag=self._record_tag,
                offset=self.byte_stream.offset,
            )
        self._record_tag = None
        self._record_end = None

    def has_next(self):
        self._ensure_header()
        self._check_record_consumed()
        return not self.byte_stream.at_end()

    def next_record(self):
        """
        Reads the next record header and returns (tag, timestamp, length). The
        caller must consume or skip exactly length bytes before asking for the
        following record.
        """
        self._ensure_header()
        self._check_record_consumed()
        (tag, timestamp, length) = HprofReader.record_struct.unpack(
            self.byte_stream.read(HprofReader.record_struct.size)
        )
        self._record_tag = tag
        self._record_end = self.byte_stream.offset + length
        return tag, timestamp, length

    def next(self):
        tag, timestamp, length = self.next_record()
        logger.trace(
            logger.RECORDS, "0x%02x, %d bytes at %d", tag, length, self.byte_stream.offset
        )
        self.processor.on_record(tag, timestamp, length, self)
        self._check_record_consumed()

    @property
    def offset(self):
        return self.byte_stream.offset

    def read(self, length):
        return self.byte_stream.read(length)

    def skip(self, length):
        self.byte_stream.skip(length)

    def read_string_record(self, length):
        string_id = self.byte_stream.next_id()
        data = self.byte_stream.read(length - SUPPORTED_ID_SIZE)
        return HprofString(string_id, decode_modified_utf8(data), len(data))

    def read_load_class_record(self):
        return ClassDefinition.create_from_load_class(self.byte_stream)
