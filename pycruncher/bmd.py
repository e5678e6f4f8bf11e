# Copyright (c) Meta Platforms, Inc. and affiliates.
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

# BMD: a compact tagged record format for heap dumps. Every record is a varint
# tag followed by a tag specific payload. Integers are varints (protobuf
# style, negative int32 values take 10 bytes), float and double values are
# fixed size little-endian, byte arrays are prefixed with their varint length.

import enum
import struct
from typing import Dict, List, NamedTuple, Optional, Union

from pycruncher.errors import MalformedStream


BMD_VERSION = 1

_UINT64_MASK = (1 << 64) - 1


class BmdTag(enum.Enum):
    HEADER = 1
    STRING = 2
    HASHED_STRING = 3
    LEGACY_HPROF_RECORD = 4
    CLASS_DEFINITION = 5
    INSTANCE_DUMP = 6
    OBJECT_ARRAY = 7
    PRIMITIVE_ARRAY_PLACEHOLDER = 8
    ROOT_OBJECTS = 9


class BmdBasicType(enum.Enum):
    OBJECT = 0
    BOOLEAN = 1
    BYTE = 2
    CHAR = 3
    SHORT = 4
    INT = 5
    LONG = 6
    FLOAT = 7
    DOUBLE = 8

    def size(self) -> int:
        return _BASIC_TYPE_SIZES[self]


_BASIC_TYPE_SIZES: Dict[BmdBasicType, int] = {
    BmdBasicType.OBJECT: 4,
    BmdBasicType.BOOLEAN: 1,
    BmdBasicType.BYTE: 1,
    BmdBasicType.CHAR: 2,
    BmdBasicType.SHORT: 2,
    BmdBasicType.INT: 4,
    BmdBasicType.LONG: 8,
    BmdBasicType.FLOAT: 4,
    BmdBasicType.DOUBLE: 8,
}

# int for OBJECT, SHORT, INT and LONG, float for FLOAT and DOUBLE and the raw
# bytes for BOOLEAN, BYTE and CHAR.
FieldValue = Union[int, float, bytes]


class BmdHeader(NamedTuple):
    version: int
    metadata: bytes


class BmdString(NamedTuple):
    string_id: int
    value: str


class BmdHashedString(NamedTuple):
    string_id: int
    length: int
    hash: int


class BmdLegacyRecord(NamedTuple):
    tag: int
    data: bytes


class BmdConstantField(NamedTuple):
    pool_index: int
    type: BmdBasicType
    value: FieldValue


class BmdStaticField(NamedTuple):
    name_id: int
    type: BmdBasicType
    value: FieldValue


class BmdInstanceField(NamedTuple):
    name_id: int
    type: BmdBasicType


class BmdClassDefinition(NamedTuple):
    class_id: int
    super_class_id: int
    name_id: int
    constant_fields: List[BmdConstantField]
    static_fields: List[BmdStaticField]
    instance_fields: List[BmdInstanceField]
    skipped_field_size: int


class BmdInstance(NamedTuple):
    object_id: int
    class_id: int
    field_ids: List[int]


class BmdPrimitiveArray(NamedTuple):
    object_id: int
    type: BmdBasicType
    count: int


class BmdObjectArray(NamedTuple):
    object_id: int
    element_class_id: int
    elements: List[int]


class BmdRootObjects(NamedTuple):
    roots: List[int]


def java_string_hash(value: str) -> int:
    """
    The runtime's String.hashCode(): s[0]*31^(n-1) + ... + s[n-1] over UTF-16
    code units, as a signed 32 bit integer.
    """
    h = 0
    data = value.encode("utf-16-be", errors="surrogatepass")
    for (unit,) in struct.iter_unpack(">H", data):
        h = (31 * h + unit) & 0xFFFFFFFF
    if h & 0x80000000:
        h -= 1 << 32
    return h


class DataWriter:
    """Low level encoding of BMD values onto a binary file object."""

    def __init__(self, out) -> None:
        self.out = out

    def write_raw_bytes(self, data: bytes) -> None:
        self.out.write(data)

    def write_raw_varint(self, value: int) -> None:
        out = bytearray()
        while value > 0x7F:
            out.append((value & 0x7F) | 0x80)
            value >>= 7
        out.append(value & 0x7F)
        self.out.write(bytes(out))

    def write_int32(self, value: int) -> None:
        if value >= 0:
            self.write_raw_varint(value)
        else:
            # Sign extended to 64 bits, always 10 bytes
            self.write_raw_varint(value & _UINT64_MASK)

    def write_int64(self, value: int) -> None:
        self.write_raw_varint(value & _UINT64_MASK)

    def write_float(self, value: float) -> None:
        self.out.write(struct.pack("<f", value))

    def write_double(self, value: float) -> None:
        self.out.write(struct.pack("<d", value))

    def write_byte_array_with_length(self, data: bytes) -> None:
        self.write_raw_varint(len(data))
        self.out.write(data)


class BmdWriter(DataWriter):
    """
    Writes BMD records. Ids passed in are written as given, remapping them is
    up to the caller.
    """

    def write_tag(self, tag: BmdTag) -> None:
        self.write_int32(tag.value)

    def write_header(self, version: int, metadata: Optional[bytes]) -> None:
        self.write_tag(BmdTag.HEADER)
        self.write_int32(version)
        self.write_byte_array_with_length(metadata if metadata is not None else b"")

    def write_string(
        self, string_id: int, value: str, hashed: bool, length: Optional[int] = None
    ) -> None:
        """
        length is the byte length of the value in the input, written for
        hashed strings. It defaults to the length of the UTF-8 encoding.
        """
        data = value.encode("utf-8", errors="surrogatepass")
        if hashed:
            self.write_tag(BmdTag.HASHED_STRING)
            self.write_int32(string_id)
            self.write_int32(length if length is not None else len(data))
            self.write_int32(java_string_hash(value))
        else:
            self.write_tag(BmdTag.STRING)
            self.write_int32(string_id)
            self.write_byte_array_with_length(data)

    def write_legacy_record(self, tag: int, data: bytes) -> None:
        self.write_tag(BmdTag.LEGACY_HPROF_RECORD)
        self.write_int32(tag)
        self.write_int32(len(data))
        self.write_raw_bytes(data)

    def write_class_definition(self, class_def: BmdClassDefinition) -> None:
        self.write_tag(BmdTag.CLASS_DEFINITION)
        self.write_int32(class_def.class_id)
        self.write_int32(class_def.super_class_id)
        self.write_int32(class_def.name_id)
        self.write_int32(len(class_def.constant_fields))
        for constant in class_def.constant_fields:
            self.write_int32(constant.pool_index)
            self.write_int32(constant.type.value)
            self.write_field_value(constant.type, constant.value)
        self.write_int32(len(class_def.static_fields))
        for static in class_def.static_fields:
            self.write_int32(static.name_id)
            self.write_int32(static.type.value)
            self.write_field_value(static.type, static.value)
        self.write_int32(len(class_def.instance_fields))
        for field in class_def.instance_fields:
            self.write_int32(field.name_id)
            self.write_int32(field.type.value)
        self.write_int32(class_def.skipped_field_size)

    def write_instance_dump(
        self, object_id: int, class_id: int, field_ids: List[int]
    ) -> None:
        self.write_tag(BmdTag.INSTANCE_DUMP)
        self.write_int32(object_id)
        self.write_int32(class_id)
        # The number of ids follows from the class definitions
        for field_id in field_ids:
            self.write_int32(field_id)

    def write_primitive_array(
        self, object_id: int, element_type: BmdBasicType, count: int
    ) -> None:
        self.write_tag(BmdTag.PRIMITIVE_ARRAY_PLACEHOLDER)
        self.write_int32(object_id)
        self.write_int32(element_type.value)
        self.write_int32(count)

    def write_object_array(
        self, object_id: int, element_class_id: int, elements: List[int]
    ) -> None:
        self.write_tag(BmdTag.OBJECT_ARRAY)
        self.write_int32(object_id)
        self.write_int32(element_class_id)
        self.write_int32(len(elements))
        for element in elements:
            self.write_int32(element)

    def write_root_objects(self, roots: List[int]) -> None:
        self.write_tag(BmdTag.ROOT_OBJECTS)
        self.write_int32(len(roots))
        for root in roots:
            self.write_int32(root)

    def write_field_value(self, field_type: BmdBasicType, value: FieldValue) -> None:
        if field_type in (BmdBasicType.OBJECT, BmdBasicType.SHORT, BmdBasicType.INT):
            self.write_int32(value)
        elif field_type is BmdBasicType.LONG:
            self.write_int64(value)
        elif field_type is BmdBasicType.FLOAT:
            self.write_float(value)
        elif field_type is BmdBasicType.DOUBLE:
            self.write_double(value)
        else:
            # BOOLEAN, BYTE and CHAR keep their raw bytes
            self.write_raw_bytes(value)


BmdRecord = Union[
    BmdHeader,
    BmdString,
    BmdHashedString,
    BmdLegacyRecord,
    BmdClassDefinition,
    BmdInstance,
    BmdPrimitiveArray,
    BmdObjectArray,
    BmdRootObjects,
]


class BmdReader:
    """
    Decodes a BMD stream record by record.

    Instance dumps do not state how many field ids follow, so the reader keeps
    every class definition it has read and walks the super class chain of an
    instance's class to find out.

    Example usage:
        reader = BmdReader(open("dump.bmd", "rb"))
        while reader.has_next():
            print(reader.next())
    """

    def __init__(self, instream) -> None:
        self.instream = instream
        self.offset = 0
        self.classes: Dict[int, BmdClassDefinition] = {}
        self._peeked = b""

    def _read(self, length: int) -> bytes:
        if length == 0:
            return b""
        data = self._peeked + self.instream.read(length - len(self._peeked))
        self._peeked = b""
        if len(data) != length:
            raise MalformedStream(
                "Unexpected end of BMD stream, wanted %d bytes but got %d"
                % (length, len(data)),
                offset=self.offset,
            )
        self.offset += length
        return data

    def has_next(self) -> bool:
        if not self._peeked:
            self._peeked = self.instream.read(1)
        return bool(self._peeked)

    def read_raw_varint(self) -> int:
        result = 0
        shift = 0
        while True:
            byte = self._read(1)[0]
            result |= (byte & 0x7F) << shift
            if not byte & 0x80:
                return result
            shift += 7
            if shift >= 70:
                raise MalformedStream("Varint is too long", offset=self.offset)

    def read_int32(self) -> int:
        return self.read_int64()

    def read_int64(self) -> int:
        value = self.read_raw_varint() & _UINT64_MASK
        if value & (1 << 63):
            value -= 1 << 64
        return value

    def read_float(self) -> float:
        return struct.unpack("<f", self._read(4))[0]

    def read_double(self) -> float:
        return struct.unpack("<d", self._read(8))[0]

    def read_byte_array_with_length(self) -> bytes:
        return self._read(self.read_raw_varint())

    def read_basic_type(self) -> BmdBasicType:
        offset = self.offset
        value = self.read_int32()
        try:
            return BmdBasicType(value)
        except ValueError:
            raise MalformedStream("Invalid BMD basic type %d" % value, offset=offset)

    def read_field_value(self, field_type: BmdBasicType) -> FieldValue:
        if field_type in (BmdBasicType.OBJECT, BmdBasicType.SHORT, BmdBasicType.INT):
            return self.read_int32()
        elif field_type is BmdBasicType.LONG:
            return self.read_int64()
        elif field_type is BmdBasicType.FLOAT:
            return self.read_float()
        elif field_type is BmdBasicType.DOUBLE:
            return self.read_double()
        return self._read(field_type.size())

    def next(self) -> BmdRecord:
        offset = self.offset
        raw_tag = self.read_int32()
        try:
            tag = BmdTag(raw_tag)
        except ValueError:
            raise MalformedStream("Unknown BMD record", tag=raw_tag, offset=offset)

        if tag is BmdTag.HEADER:
            return BmdHeader(self.read_int32(), self.read_byte_array_with_length())
        elif tag is BmdTag.STRING:
            string_id = self.read_int32()
            value = self.read_byte_array_with_length().decode("utf-8", errors="surrogatepass")
            return BmdString(string_id, value)
        elif tag is BmdTag.HASHED_STRING:
            return BmdHashedString(self.read_int32(), self.read_int32(), self.read_int32())
        elif tag is BmdTag.LEGACY_HPROF_RECORD:
            legacy_tag = self.read_int32()
            return BmdLegacyRecord(legacy_tag, self._read(self.read_int32()))
        elif tag is BmdTag.CLASS_DEFINITION:
            class_def = self._read_class_definition()
            self.classes[class_def.class_id] = class_def
            return class_def
        elif tag is BmdTag.INSTANCE_DUMP:
            object_id = self.read_int32()
            class_id = self.read_int32()
            count = self.count_instance_fields(class_id, offset)
            return BmdInstance(object_id, class_id, [self.read_int32() for _ in range(count)])
        elif tag is BmdTag.OBJECT_ARRAY:
            object_id = self.read_int32()
            element_class_id = self.read_int32()
            count = self.read_int32()
            return BmdObjectArray(
                object_id, element_class_id, [self.read_int32() for _ in range(count)]
            )
        elif tag is BmdTag.PRIMITIVE_ARRAY_PLACEHOLDER:
            object_id = self.read_int32()
            element_type = self.read_basic_type()
            return BmdPrimitiveArray(object_id, element_type, self.read_int32())
        else:
            count = self.read_int32()
            return BmdRootObjects([self.read_int32() for _ in range(count)])

    def _read_class_definition(self) -> BmdClassDefinition:
        class_id = self.read_int32()
        super_class_id = self.read_int32()
        name_id = self.read_int32()
        constant_fields = []
        for _ in range(self.read_int32()):
            pool_index = self.read_int32()
            field_type = self.read_basic_type()
            constant_fields.append(
                BmdConstantField(pool_index, field_type, self.read_field_value(field_type))
            )
        static_fields = []
        for _ in range(self.read_int32()):
            static_name_id = self.read_int32()
            field_type = self.read_basic_type()
            static_fields.append(
                BmdStaticField(static_name_id, field_type, self.read_field_value(field_type))
            )
        instance_fields = []
        for _ in range(self.read_int32()):
            field_name_id = self.read_int32()
            instance_fields.append(BmdInstanceField(field_name_id, self.read_basic_type()))
        skipped_field_size = self.read_int32()
        return BmdClassDefinition(
            class_id,
            super_class_id,
            name_id,
            constant_fields,
            static_fields,
            instance_fields,
            skipped_field_size,
        )

    def count_instance_fields(self, class_id: int, offset: int) -> int:
        count = 0
        visited = set()
        while class_id != 0:
            if class_id in visited:
                raise MalformedStream(
                    "Cyclic super class chain at class %d" % class_id,
                    tag=BmdTag.INSTANCE_DUMP.value,
                    offset=offset,
                )
            visited.add(class_id)
            class_def = self.classes.get(class_id)
            if class_def is None:
                raise MalformedStream(
                    "Instance of undefined class %d" % class_id,
                    tag=BmdTag.INSTANCE_DUMP.value,
                    offset=offset,
                )
            count += len(class_def.instance_fields)
            class_id = class_def.super_class_id
        return count

    def read_all(self) -> List[BmdRecord]:
        records = []
        while self.has_next():
            records.append(self.next())
        return records
