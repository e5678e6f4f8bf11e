# Copyright (c) Meta Platforms, Inc. and affiliates.
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

import io
import struct
import unittest

from hprof_writer import HprofWriter
from pycruncher.bmd import BmdReader
from pycruncher.crunch import crunch
from pycruncher.heap import HeapTag
from pycruncher.model import HprofBasic


# Original string ids
OBJECT_NAME = 0x11
BASE_NAME = 0x12
CHILD_NAME = 0x13
PARENT_FIELD = 0x14
COUNT_FIELD = 0x15
CHILD_FIELD = 0x16

# Original object ids
OBJECT_CLASS = 0x100
BASE_CLASS = 0x200
CHILD_CLASS = 0x300
INSTANCE = 0x500
PARENT = 0x600
CHILD = 0x700


def u4(value):
    return struct.pack(">I", value)


def i4(value):
    return struct.pack(">i", value)


def write_class_strings(hprof):
    hprof.write_string(OBJECT_NAME, "java.lang.Object")
    hprof.write_string(BASE_NAME, "com.example.Base")
    hprof.write_string(CHILD_NAME, "com.example.Child")
    hprof.write_string(PARENT_FIELD, "parent")
    hprof.write_string(COUNT_FIELD, "count")
    hprof.write_string(CHILD_FIELD, "child")


def write_class_loads(hprof):
    hprof.write_load_class(1, OBJECT_CLASS, OBJECT_NAME)
    hprof.write_load_class(2, BASE_CLASS, BASE_NAME)
    hprof.write_load_class(3, CHILD_CLASS, CHILD_NAME)


def write_class_dumps(heap):
    heap.write_class_dump(OBJECT_CLASS, 0, 0)
    heap.write_class_dump(
        BASE_CLASS, OBJECT_CLASS, 4, instance_fields=[(PARENT_FIELD, HprofBasic.OBJECT)]
    )
    heap.write_class_dump(
        CHILD_CLASS,
        BASE_CLASS,
        12,
        instance_fields=[
            (COUNT_FIELD, HprofBasic.INT),
            (CHILD_FIELD, HprofBasic.OBJECT),
        ],
    )


def child_instance_data(count=7, child=CHILD, parent=PARENT):
    # Child's own fields first, then Base's
    return i4(count) + u4(child) + u4(parent)


class HprofTestFixture(unittest.TestCase):
    """
    Builds a small three class hierarchy: java.lang.Object, Base with an
    object field "parent" and Child extending Base with an int "count" and an
    object field "child".
    """

    def build_hierarchy(self, hprof=None):
        hprof = hprof if hprof is not None else HprofWriter()
        write_class_strings(hprof)
        write_class_loads(hprof)
        with hprof.heap_dump_segment() as heap:
            write_class_dumps(heap)
        return hprof

    def build_simple_dump(self):
        hprof = self.build_hierarchy()
        with hprof.heap_dump_segment() as heap:
            heap.write_root(HeapTag.ROOT_STICKY_CLASS, OBJECT_CLASS)
            heap.write_instance_dump(INSTANCE, CHILD_CLASS, child_instance_data())
            heap.write_root(HeapTag.ROOT_JAVA_FRAME, INSTANCE)
        hprof.write_heap_dump_end()
        return hprof

    def crunch_bytes(self, data, **kwargs):
        out = io.BytesIO()
        stats = crunch(io.BytesIO(data), out, **kwargs)
        return out.getvalue(), stats

    def crunch_records(self, hprof, **kwargs):
        data, _ = self.crunch_bytes(hprof.to_bytes(), **kwargs)
        return BmdReader(io.BytesIO(data)).read_all()

    def records_of_type(self, records, record_type):
        return [record for record in records if isinstance(record, record_type)]
