# Copyright (c) Meta Platforms, Inc. and affiliates.
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

# Converts an HPROF heap dump into a BMD file. This is done in two passes over
# the input:
#
# 1. Read all strings and class definitions and write them to the BMD file.
# 2. Read all instance, array and root dumps and write them to the BMD file.
#
# HPROF does not guarantee that a class dump comes before the instances of
# that class, and an instance's field data can only be decoded once the whole
# class hierarchy is known. Doing this in one pass would mean holding class
# definitions and instance dumps in memory until every dependency resolves.

import enum
import logging
import os
import struct

from pycruncher import logger
from pycruncher.bmd import (
    BMD_VERSION,
    BmdBasicType,
    BmdClassDefinition,
    BmdConstantField,
    BmdInstanceField,
    BmdStaticField,
    BmdWriter,
)
from pycruncher.errors import BlobLengthMismatch, MalformedStream, UnresolvedClass
from pycruncher.heap import HeapDumpReader, HeapTag, is_root
from pycruncher.hprof import DiscardProcessor, HprofReader, HprofTag
from pycruncher.model import HprofBasic
from pycruncher.remap import IdRemapper


PRIMITIVE_TYPE_NAMES = frozenset(
    ["boolean", "byte", "short", "char", "int", "long", "float", "double"]
)
VOID_TYPE_NAME = "V"
KEPT_STRING_PREFIX = "java.lang"

_TYPE_CONVERSIONS = {
    HprofBasic.OBJECT: BmdBasicType.OBJECT,
    HprofBasic.BOOLEAN: BmdBasicType.BOOLEAN,
    HprofBasic.BYTE: BmdBasicType.BYTE,
    HprofBasic.CHAR: BmdBasicType.CHAR,
    HprofBasic.SHORT: BmdBasicType.SHORT,
    HprofBasic.INT: BmdBasicType.INT,
    HprofBasic.LONG: BmdBasicType.LONG,
    HprofBasic.FLOAT: BmdBasicType.FLOAT,
    HprofBasic.DOUBLE: BmdBasicType.DOUBLE,
}

_VALUE_FORMATS = {
    HprofBasic.SHORT: ">h",
    HprofBasic.INT: ">i",
    HprofBasic.LONG: ">q",
    HprofBasic.FLOAT: ">f",
    HprofBasic.DOUBLE: ">d",
}


def keep_string(value):
    """
    Strings written as is. The names of core system classes are kept so that
    heap analyzers keep working, everything else is replaced by a hash.
    """
    return (
        value.startswith(KEPT_STRING_PREFIX)
        or value == VOID_TYPE_NAME
        or value in PRIMITIVE_TYPE_NAMES
    )


def convert_type(hprof_basic):
    return _TYPE_CONVERSIONS[hprof_basic]


class CrunchState(enum.Enum):
    COLLECTING_CLASSES = 1
    COLLECTING_INSTANCES = 2
    FINISHED = 3


class CrunchStats(object):
    def __init__(self):
        self.strings_kept = 0
        self.strings_hashed = 0
        self.legacy_records = 0
        self.classes = 0
        self.instances = 0
        self.object_arrays = 0
        self.primitive_arrays = 0
        self.roots = 0

    def __str__(self):
        return (
            "%d strings (%d hashed), %d legacy records, %d classes, "
            "%d instances, %d object arrays, %d primitive arrays, %d roots"
            % (
                self.strings_kept + self.strings_hashed,
                self.strings_hashed,
                self.legacy_records,
                self.classes,
                self.instances,
                self.object_arrays,
                self.primitive_arrays,
                self.roots,
            )
        )


class CrunchProcessor(DiscardProcessor):
    """
    Record processor turning HPROF records into BMD records. Feed it the whole
    input once, call start_second_pass(), feed it the whole input again and
    finally call finish().

    All lookup tables live here, one processor handles exactly one conversion.
    """

    def __init__(self, out, keep_string=keep_string):
        self.writer = BmdWriter(out)
        self.keep_string = keep_string
        self.state = CrunchState.COLLECTING_CLASSES
        self.string_ids = IdRemapper()
        self.object_ids = IdRemapper()
        # Original class object id -> ClassDefinition
        self.classes_by_original_id = {}
        self.root_object_ids = []
        self.stats = CrunchStats()

    def start_second_pass(self):
        """Call once the first pass (strings and classes) has read the whole input."""
        if self.state is not CrunchState.COLLECTING_CLASSES:
            raise RuntimeError("Second pass started twice")
        self.state = CrunchState.COLLECTING_INSTANCES

    def finish(self):
        """Call after the second pass to write the remaining data."""
        if self.state is not CrunchState.COLLECTING_INSTANCES:
            raise RuntimeError("Cannot finish a conversion in state %s" % self.state.name)
        self.writer.write_root_objects(
            [self.object_ids.map(root) for root in self.root_object_ids]
        )
        self.state = CrunchState.FINISHED

    def on_header(self, text, id_size, time_high, time_low):
        # Only the text makes it into the BMD header, the timestamp is dropped
        if self.state is CrunchState.COLLECTING_CLASSES:
            self.writer.write_header(BMD_VERSION, text.encode("utf-8", errors="surrogatepass"))

    def on_record(self, tag, timestamp, length, reader):
        if self.state is CrunchState.COLLECTING_CLASSES:
            self._collect_classes(tag, length, reader)
        elif self.state is CrunchState.COLLECTING_INSTANCES:
            self._collect_instances(tag, length, reader)
        else:
            raise RuntimeError("Conversion already finished")

    # ==================== First pass: strings and classes ====================

    def _collect_classes(self, tag, length, reader):
        if tag == HprofTag.STRING.value:
            string = reader.read_string_record(length)
            # Save the original id so references can be updated later
            string.id = self.string_ids.map(string.id)
            hashed = not self.keep_string(string.value)
            self.writer.write_string(string.id, string.value, hashed, string.length)
            if hashed:
                self.stats.strings_hashed += 1
            else:
                self.stats.strings_kept += 1
        elif tag == HprofTag.LOAD_CLASS.value:
            class_def = reader.read_load_class_record()
            self.classes_by_original_id[class_def.object_id] = class_def
        elif tag in (HprofTag.HEAP_DUMP.value, HprofTag.HEAP_DUMP_SEGMENT.value):
            dump_reader = HeapDumpReader(reader.byte_stream, length, self._on_class_record)
            dump_reader.read_all()
        elif tag in (HprofTag.UNLOAD_CLASS.value, HprofTag.HEAP_DUMP_END.value):
            super(CrunchProcessor, self).on_record(tag, 0, length, reader)
        else:
            self.writer.write_legacy_record(tag, reader.read(length))
            self.stats.legacy_records += 1

    def _on_class_record(self, heap_tag, reader):
        if heap_tag is HeapTag.CLASS_DUMP:
            offset = reader.byte_stream.offset
            class_def = reader.read_class_dump_record(self.classes_by_original_id)
            self.write_class_definition(class_def, offset)
        else:
            reader.skip_record(heap_tag)

    def _lookup_string(self, string_id, offset):
        try:
            return self.string_ids.lookup(string_id)
        except KeyError:
            raise MalformedStream(
                "String 0x%x is used before it is defined" % string_id,
                tag=HeapTag.CLASS_DUMP.value,
                offset=offset,
            )

    def write_class_definition(self, class_def, offset=None):
        class_id = self.object_ids.map(class_def.object_id)
        super_class_id = self.object_ids.map(class_def.super_class_object_id)
        name_id = self._lookup_string(class_def.name_string_id, offset)
        constant_fields = [
            BmdConstantField(
                field.pool_index,
                convert_type(field.hprof_basic),
                self._decode_value(field.hprof_basic, field.value),
            )
            for field in class_def.constant_fields
        ]
        static_fields = [
            BmdStaticField(
                self._lookup_string(field.field_name_id, offset),
                convert_type(field.hprof_basic),
                self._decode_value(field.hprof_basic, field.value),
            )
            for field in class_def.static_fields
        ]
        # Only object fields are kept, the others are summed up by size
        kept_fields = []
        skipped_field_size = 0
        for field in class_def.instance_fields:
            if field.hprof_basic is HprofBasic.OBJECT:
                kept_fields.append(
                    BmdInstanceField(
                        self._lookup_string(field.field_name_id, offset),
                        BmdBasicType.OBJECT,
                    )
                )
            else:
                skipped_field_size += field.hprof_basic.size()

        self.writer.write_class_definition(
            BmdClassDefinition(
                class_id,
                super_class_id,
                name_id,
                constant_fields,
                static_fields,
                kept_fields,
                skipped_field_size,
            )
        )
        self.stats.classes += 1
        logger.trace(
            logger.CLASSES,
            "0x%x -> %d: %d kept fields, %d bytes skipped",
            class_def.object_id,
            class_id,
            len(kept_fields),
            skipped_field_size,
        )

    def _decode_value(self, hprof_basic, data):
        if hprof_basic is HprofBasic.OBJECT:
            return self.object_ids.map(struct.unpack(">I", data)[0])
        value_format = _VALUE_FORMATS.get(hprof_basic)
        if value_format is None:
            # BOOLEAN, BYTE and CHAR are passed through
            return data
        return struct.unpack(value_format, data)[0]

    # ==================== Second pass: objects and roots ====================

    def _collect_instances(self, tag, length, reader):
        if tag in (HprofTag.HEAP_DUMP.value, HprofTag.HEAP_DUMP_SEGMENT.value):
            dump_reader = HeapDumpReader(reader.byte_stream, length, self._on_object_record)
            dump_reader.read_all()
        else:
            super(CrunchProcessor, self).on_record(tag, 0, length, reader)

    def _on_object_record(self, heap_tag, reader):
        if heap_tag is HeapTag.INSTANCE_DUMP:
            offset = reader.byte_stream.offset
            self.write_instance_dump(reader.read_instance_dump(), offset)
        elif heap_tag is HeapTag.OBJECT_ARRAY_DUMP:
            array = reader.read_object_array()
            self.writer.write_object_array(
                self.object_ids.map(array.object_id),
                self.object_ids.map(array.element_class_object_id),
                [self.object_ids.map(element) for element in array.elements],
            )
            self.stats.object_arrays += 1
        elif heap_tag is HeapTag.PRIMITIVE_ARRAY_DUMP:
            array = reader.read_primitive_array()
            self.writer.write_primitive_array(
                self.object_ids.map(array.object_id),
                convert_type(array.hprof_basic),
                array.num_elements,
            )
            self.stats.primitive_arrays += 1
        elif is_root(heap_tag):
            root = reader.read_root(heap_tag)
            self.root_object_ids.append(root)
            logger.trace(logger.OBJECTS, "root 0x%x (%s)", root, heap_tag.name, level=2)
            self.stats.roots += 1
        else:
            reader.skip_record(heap_tag)

    def _lookup_class(self, class_object_id, instance, offset):
        class_def = self.classes_by_original_id.get(class_object_id)
        if class_def is None or not class_def.populated:
            raise UnresolvedClass(
                "Class 0x%x of instance 0x%x was not loaded"
                % (class_object_id, instance.object_id),
                tag=HeapTag.INSTANCE_DUMP.value,
                offset=offset,
            )
        return class_def

    def write_instance_dump(self, instance, offset=None):
        # Walk the instance's class and then its super classes, reading the
        # field data of each from the same blob
        object_id = self.object_ids.map(instance.object_id)
        class_id = self.object_ids.map(instance.class_object_id)
        data = instance.instance_field_data
        position = 0
        field_ids = []
        class_def = self._lookup_class(instance.class_object_id, instance, offset)
        visited = set()
        while class_def is not None:
            if class_def.object_id in visited:
                raise MalformedStream(
                    "Class 0x%x of instance 0x%x has a cyclic super class chain"
                    % (instance.class_object_id, instance.object_id),
                    tag=HeapTag.INSTANCE_DUMP.value,
                    offset=offset,
                )
            visited.add(class_def.object_id)
            for field in class_def.instance_fields:
                end = position + field.hprof_basic.size()
                if end > len(data):
                    raise BlobLengthMismatch(
                        "Field data of instance 0x%x ends after %d bytes, class "
                        "hierarchy needs more" % (instance.object_id, len(data)),
                        tag=HeapTag.INSTANCE_DUMP.value,
                        offset=offset,
                    )
                if field.hprof_basic is HprofBasic.OBJECT:
                    field_ids.append(
                        self.object_ids.map(struct.unpack_from(">I", data, position)[0])
                    )
                # Other fields are ignored
                position = end
            if class_def.super_class_object_id == 0:
                class_def = None
            else:
                class_def = self._lookup_class(
                    class_def.super_class_object_id, instance, offset
                )

        if position != len(data):
            raise BlobLengthMismatch(
                "Did not read the expected number of bytes for instance 0x%x, "
                "%d left" % (instance.object_id, len(data) - position),
                tag=HeapTag.INSTANCE_DUMP.value,
                offset=offset,
            )

        self.writer.write_instance_dump(object_id, class_id, field_ids)
        self.stats.instances += 1
        logger.trace(
            logger.OBJECTS,
            "instance 0x%x -> %d: %d field ids",
            instance.object_id,
            object_id,
            len(field_ids),
        )


def read_all(instream, processor):
    reader = HprofReader(instream, processor)
    while reader.has_next():
        reader.next()


def crunch(instream, out, keep_string=keep_string):
    """
    Converts the HPROF data in instream to BMD written to out. The input is
    read twice, so instream must be seekable.
    """
    processor = CrunchProcessor(out, keep_string)
    start = instream.tell()

    logging.info("Reading strings and classes...")
    read_all(instream, processor)
    logging.info("Found %d classes", processor.stats.classes)

    processor.start_second_pass()
    instream.seek(start)

    logging.info("Reading instances...")
    read_all(instream, processor)
    processor.finish()

    logging.info("Converted %s", processor.stats)
    logger.flush()
    return processor.stats


def crunch_file(in_path, out_path, keep_string=keep_string):
    """Like crunch, on paths. out_path is removed again if the conversion fails."""
    with open(in_path, "rb") as instream:
        try:
            with open(out_path, "wb") as out:
                return crunch(instream, out, keep_string)
        except BaseException:
            # Partial output is never valid
            if os.path.exists(out_path):
                os.remove(out_path)
            raise
