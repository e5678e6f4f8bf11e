# Copyright (c) Meta Platforms, Inc. and affiliates.
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

import io
import unittest

from hprof_test_fixture import u4
from hprof_writer import HprofWriter
from pycruncher.errors import MalformedStream, UnsupportedInput
from pycruncher.hprof import DiscardProcessor, HprofReader, HprofTag


class RecordingProcessor(DiscardProcessor):
    def __init__(self):
        self.header = None
        self.records = []

    def on_header(self, text, id_size, time_high, time_low):
        self.header = (text, id_size, time_high, time_low)

    def on_record(self, tag, timestamp, length, reader):
        self.records.append((tag, timestamp, length))
        super(RecordingProcessor, self).on_record(tag, timestamp, length, reader)


def read_all(data, processor):
    reader = HprofReader(io.BytesIO(data), processor)
    while reader.has_next():
        reader.next()
    return reader


class TestHprofReader(unittest.TestCase):
    def test_header(self):
        hprof = HprofWriter(text="JAVA PROFILE 1.0.3", timestamp=(5 << 32) | 9)
        reader = HprofReader(io.BytesIO(hprof.to_bytes()))
        self.assertEqual(reader.read_header(), ("JAVA PROFILE 1.0.3", 4, 5, 9))
        self.assertFalse(reader.has_next())

    def test_header_is_reported_once(self):
        hprof = HprofWriter()
        hprof.write_string(1, "a")
        processor = RecordingProcessor()
        read_all(hprof.to_bytes(), processor)
        self.assertEqual(processor.header, ("JAVA PROFILE 1.0.3", 4, 0, 0))

    def test_rejects_eight_byte_ids(self):
        hprof = HprofWriter(id_size=8)
        with self.assertRaises(UnsupportedInput) as cm:
            HprofReader(io.BytesIO(hprof.to_bytes())).read_header()
        self.assertEqual(cm.exception.offset, len("JAVA PROFILE 1.0.3") + 1)

    def test_records_in_order(self):
        hprof = HprofWriter()
        hprof.write_string(1, "java.lang.Object")
        hprof.write_record(HprofTag.STACK_TRACE.value, b"\0" * 12, time_offset_us=3)
        hprof.write_load_class(1, 0x100, 1)
        hprof.write_heap_dump_end()
        processor = RecordingProcessor()
        read_all(hprof.to_bytes(), processor)
        self.assertEqual(
            processor.records,
            [
                (HprofTag.STRING.value, 0, 4 + 16),
                (HprofTag.STACK_TRACE.value, 3, 12),
                (HprofTag.LOAD_CLASS.value, 0, 16),
                (HprofTag.HEAP_DUMP_END.value, 0, 0),
            ],
        )

    def test_string_and_load_class_records(self):
        hprof = HprofWriter()
        hprof.write_string(0x42, "café")
        hprof.write_load_class(7, 0x100, 0x42)
        reader = HprofReader(io.BytesIO(hprof.to_bytes()))

        tag, _, length = reader.next_record()
        self.assertEqual(tag, HprofTag.STRING.value)
        string = reader.read_string_record(length)
        self.assertEqual((string.id, string.value), (0x42, "café"))
        self.assertEqual(string.length, 5)

        tag, _, _ = reader.next_record()
        self.assertEqual(tag, HprofTag.LOAD_CLASS.value)
        class_def = reader.read_load_class_record()
        self.assertEqual(class_def.serial_number, 7)
        self.assertEqual(class_def.object_id, 0x100)
        self.assertEqual(class_def.name_string_id, 0x42)
        self.assertFalse(class_def.populated)
        self.assertFalse(reader.has_next())

    def read_string_payload(self, payload):
        hprof = HprofWriter()
        hprof.write_record(HprofTag.STRING.value, u4(1) + payload)
        reader = HprofReader(io.BytesIO(hprof.to_bytes()))
        _, _, length = reader.next_record()
        return reader.read_string_record(length)

    def test_modified_utf8_nul(self):
        string = self.read_string_payload(b"a\xc0\x80b")
        self.assertEqual(string.value, "a\x00b")
        self.assertEqual(string.length, 4)

    def test_modified_utf8_surrogate_pair(self):
        # U+1F600 written as two three byte surrogates
        string = self.read_string_payload(b"\xed\xa0\xbd\xed\xb8\x80")
        self.assertEqual(string.value, "\ud83d\ude00")
        self.assertEqual(string.length, 6)

    def test_invalid_utf8_keeps_length(self):
        string = self.read_string_payload(b"a\xffb")
        self.assertEqual(string.value, "a\ufffdb")
        self.assertEqual(string.length, 3)

    def test_record_not_consumed_exactly(self):
        hprof = HprofWriter()
        # A LOAD_CLASS record with 4 bytes too many
        hprof.write_record(HprofTag.LOAD_CLASS.value, u4(1) + u4(0x100) + u4(0) + u4(1) + u4(0))
        hprof.write_heap_dump_end()

        class LoadClassProcessor(DiscardProcessor):
            def on_record(self, tag, timestamp, length, reader):
                reader.read_load_class_record()

        with self.assertRaises(MalformedStream) as cm:
            read_all(hprof.to_bytes(), LoadClassProcessor())
        self.assertEqual(cm.exception.tag, HprofTag.LOAD_CLASS.value)

    def test_truncated_record(self):
        hprof = HprofWriter()
        hprof.write_string(1, "java.lang.Object")
        with self.assertRaises(MalformedStream):
            read_all(hprof.to_bytes()[:-3], DiscardProcessor())

    def test_truncated_record_header(self):
        hprof = HprofWriter()
        hprof.write_heap_dump_end()
        with self.assertRaises(MalformedStream):
            read_all(hprof.to_bytes()[:-2], DiscardProcessor())

    def test_continues_after_heap_dump_end(self):
        hprof = HprofWriter()
        hprof.write_heap_dump_end()
        hprof.write_string(1, "x")
        processor = RecordingProcessor()
        read_all(hprof.to_bytes(), processor)
        self.assertEqual(
            [tag for tag, _, _ in processor.records],
            [HprofTag.HEAP_DUMP_END.value, HprofTag.STRING.value],
        )
