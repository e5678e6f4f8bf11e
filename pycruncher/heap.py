# Copyright (c) Meta Platforms, Inc. and affiliates.
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

import enum

from pycruncher import logger
from pycruncher.errors import MalformedStream, UnresolvedClass
from pycruncher.model import (
    ConstantField,
    Instance,
    ObjectArray,
    PrimitiveArray,
    StaticField,
)


class HeapTag(enum.Enum):
    # standard
    ROOT_UNKNOWN = 0xFF
    ROOT_JNI_GLOBAL = 0x01
    ROOT_JNI_LOCAL = 0x02
    ROOT_JAVA_FRAME = 0x03
    ROOT_NATIVE_STACK = 0x04
    ROOT_STICKY_CLASS = 0x05
    ROOT_THREAD_BLOCK = 0x06
    ROOT_MONITOR_USED = 0x07
    ROOT_THREAD_OBJECT = 0x08
    CLASS_DUMP = 0x20
    INSTANCE_DUMP = 0x21
    OBJECT_ARRAY_DUMP = 0x22
    PRIMITIVE_ARRAY_DUMP = 0x23

    # Android
    HEAP_DUMP_INFO = 0xFE
    ROOT_INTERNED_STRING = 0x89
    ROOT_FINALIZING = 0x8A  # obsolete
    ROOT_DEBUGGER = 0x8B
    ROOT_REFERENCE_CLEANUP = 0x8C  # obsolete
    ROOT_VM_INTERNAL = 0x8D
    ROOT_JNI_MONITOR = 0x8E
    UNREACHABLE = 0x90  # obsolete
    PRIMITIVE_ARRAY_NODATA_DUMP = 0xC3


# Bytes following the object id of each GC root record, none of them are kept.
ROOT_TRAILER_SIZES = {
    HeapTag.ROOT_UNKNOWN: 0,
    HeapTag.ROOT_JNI_GLOBAL: 4,  # JNI global ref id
    HeapTag.ROOT_JNI_LOCAL: 8,  # thread serial + frame number
    HeapTag.ROOT_JAVA_FRAME: 8,  # thread serial + frame number
    HeapTag.ROOT_NATIVE_STACK: 4,  # thread serial
    HeapTag.ROOT_STICKY_CLASS: 0,
    HeapTag.ROOT_THREAD_BLOCK: 4,  # thread serial
    HeapTag.ROOT_MONITOR_USED: 0,
    HeapTag.ROOT_THREAD_OBJECT: 8,  # thread serial + stack serial
    HeapTag.ROOT_INTERNED_STRING: 0,
    HeapTag.ROOT_FINALIZING: 0,
    HeapTag.ROOT_DEBUGGER: 0,
    HeapTag.ROOT_REFERENCE_CLEANUP: 0,
    HeapTag.ROOT_VM_INTERNAL: 0,
    HeapTag.ROOT_JNI_MONITOR: 8,  # thread serial + stack depth
}

# Heap records with a fixed size that carry nothing of interest.
FIXED_SIZE_RECORDS = {
    HeapTag.HEAP_DUMP_INFO: 8,  # heap id + heap name string id
    HeapTag.UNREACHABLE: 4,
}


def is_root(heap_tag):
    return heap_tag in ROOT_TRAILER_SIZES


class HeapDumpReader(object):
    """
    Iterates the heap records of one HEAP_DUMP or HEAP_DUMP_SEGMENT payload.
    Heap records have no length prefix, so each one must be consumed in full
    by the handler (or skipped with skip_record) to keep the stream aligned.

    The handler is called as handler(heap_tag, reader) once per record.
    """

    def __init__(self, byte_stream, length, handler):
        self.byte_stream = byte_stream
        self.length = length
        self.handler = handler
        self._end = byte_stream.offset + length

    def has_next(self):
        return self.byte_stream.offset < self._end

    def next(self):
        start = self.byte_stream.offset
        raw_tag = self.byte_stream.next_byte()
        try:
            heap_tag = HeapTag(raw_tag)
        except ValueError:
            raise MalformedStream("Unrecognized heap record tag", tag=raw_tag, offset=start)
        logger.trace(logger.HEAP, "%s at %d", heap_tag.name, start)

        self.handler(heap_tag, self)

        if self.byte_stream.offset > self._end:
            raise MalformedStream(
                "Heap record overran its heap dump by %d bytes"
                % (self.byte_stream.offset - self._end),
                tag=raw_tag,
                offset=start,
            )

    def read_all(self):
        while self.has_next():
            self.next()

    def read_class_dump_record(self, classes):
        offset = self.byte_stream.offset
        object_id = self.byte_stream.next_id()
        class_def = classes.get(object_id)
        if class_def is None:
            raise UnresolvedClass(
                "Class 0x%x was not loaded before its class dump" % object_id,
                tag=HeapTag.CLASS_DUMP.value,
                offset=offset,
            )
        class_def.populate_from_class_dump(self.byte_stream)
        return class_def

    def read_instance_dump(self):
        return Instance.parse(self.byte_stream)

    def read_object_array(self):
        return ObjectArray.parse(self.byte_stream)

    def read_primitive_array(self):
        return PrimitiveArray.parse(self.byte_stream)

    def read_root(self, heap_tag):
        object_id = self.byte_stream.next_id()
        self.byte_stream.skip(ROOT_TRAILER_SIZES[heap_tag])
        return object_id

    def skip_record(self, heap_tag):
        byte_stream = self.byte_stream
        if heap_tag in ROOT_TRAILER_SIZES:
            self.read_root(heap_tag)
        elif heap_tag in FIXED_SIZE_RECORDS:
            byte_stream.skip(FIXED_SIZE_RECORDS[heap_tag])
        elif heap_tag is HeapTag.CLASS_DUMP:
            # object id, stack serial, super, loader, signer, protection domain,
            # two reserved ids and the instance size
            byte_stream.skip(36)
            for _ in range(byte_stream.next_two_bytes()):
                ConstantField.parse(byte_stream)
            for _ in range(byte_stream.next_two_bytes()):
                StaticField.parse(byte_stream)
            # name id + type for each instance field
            byte_stream.skip(5 * byte_stream.next_two_bytes())
        elif heap_tag is HeapTag.INSTANCE_DUMP:
            byte_stream.skip(12)
            byte_stream.skip(byte_stream.next_four_bytes())
        elif heap_tag is HeapTag.OBJECT_ARRAY_DUMP:
            byte_stream.skip(8)
            num_elements = byte_stream.next_four_bytes()
            byte_stream.skip(4 + 4 * num_elements)
        elif heap_tag is HeapTag.PRIMITIVE_ARRAY_DUMP:
            PrimitiveArray.parse(byte_stream)
        elif heap_tag is HeapTag.PRIMITIVE_ARRAY_NODATA_DUMP:
            PrimitiveArray.parse(byte_stream, with_data=False)
        else:
            raise MalformedStream("Cannot skip heap record %s" % heap_tag, tag=heap_tag.value)


def skip_all(heap_tag, reader):
    """Handler that skips every heap record."""
    reader.skip_record(heap_tag)
