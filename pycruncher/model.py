# Copyright (c) Meta Platforms, Inc. and affiliates.
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

# Entity model shared by the HPROF readers and the cruncher. Entities are
# created while reading the input once, forward only.

import enum

from pycruncher.errors import MalformedStream


class HprofBasic(enum.Enum):
    OBJECT = 2
    BOOLEAN = 4
    CHAR = 5
    FLOAT = 6
    DOUBLE = 7
    BYTE = 8
    SHORT = 9
    INT = 10
    LONG = 11

    def size(self):
        if self is HprofBasic.OBJECT:
            return 4
        elif self is HprofBasic.BOOLEAN:
            return 1
        elif self is HprofBasic.CHAR:
            return 2
        elif self is HprofBasic.FLOAT:
            return 4
        elif self is HprofBasic.DOUBLE:
            return 8
        elif self is HprofBasic.BYTE:
            return 1
        elif self is HprofBasic.SHORT:
            return 2
        elif self is HprofBasic.INT:
            return 4
        elif self is HprofBasic.LONG:
            return 8
        else:
            raise MalformedStream("Invalid HprofBasic type: %s" % self)

    @staticmethod
    def from_type(value, offset=None):
        try:
            return HprofBasic(value)
        except ValueError:
            raise MalformedStream("Invalid basic type %d" % value, offset=offset)

    @staticmethod
    def parse(byte_stream):
        offset = byte_stream.offset
        return HprofBasic.from_type(byte_stream.next_byte(), offset)


def decode_modified_utf8(data):
    """
    Decodes the modified UTF-8 the runtime writes string records in: NUL is
    encoded as C0 80 and characters outside the BMP as two encoded surrogates.
    Surrogates are kept as lone code points, so encoding the result as UTF-16
    gives back the runtime's code units.
    """
    data = data.replace(b"\xc0\x80", b"\x00")
    try:
        return data.decode("utf-8", errors="surrogatepass")
    except UnicodeDecodeError:
        # Not modified UTF-8 at all, keep what can be read
        return data.decode("utf-8", errors="replace")


class HprofString(object):
    def __init__(self, string_id, value, length=None):
        self.id = string_id
        self.value = value
        # Byte length of the value as stored in the dump
        self.length = length

    def __str__(self):
        return "<HprofString %d %r>" % (self.id, self.value)

    def __repr__(self):
        return str(self)


class ConstantField(object):
    def __init__(self, pool_index, hprof_basic, value):
        self.pool_index = pool_index
        self.hprof_basic = hprof_basic
        self.value = value

    @staticmethod
    def parse(byte_stream):
        pool_index = byte_stream.next_two_bytes()
        hprof_basic = HprofBasic.parse(byte_stream)
        value = byte_stream.next_byte_array(hprof_basic.size())
        return ConstantField(pool_index, hprof_basic, value)


class NamedField(object):
    """
    A field referring to its name through a string id. The id stays writable
    so that a string table rewrite (e.g. deduplicating obfuscated names) can
    point a field at a new alias before the class is written out.
    """

    def __init__(self, field_name_id, hprof_basic):
        self.field_name_id = field_name_id
        self.hprof_basic = hprof_basic


class StaticField(NamedField):
    def __init__(self, field_name_id, hprof_basic, value):
        super(StaticField, self).__init__(field_name_id, hprof_basic)
        self.value = value

    @staticmethod
    def parse(byte_stream):
        field_name_id = byte_stream.next_id()
        hprof_basic = HprofBasic.parse(byte_stream)
        value = byte_stream.next_byte_array(hprof_basic.size())
        return StaticField(field_name_id, hprof_basic, value)


class InstanceField(NamedField):
    @staticmethod
    def parse(byte_stream):
        field_name_id = byte_stream.next_id()
        hprof_basic = HprofBasic.parse(byte_stream)
        return InstanceField(field_name_id, hprof_basic)


class ClassDefinition(object):
    """
    A class as announced by a LOAD_CLASS record. The super class, size and
    field descriptors are only known once the matching CLASS_DUMP heap record
    has been read (see populate_from_class_dump).
    """

    def __init__(self, object_id, name_string_id, serial_number=0):
        self.object_id = object_id
        self.name_string_id = name_string_id
        self.serial_number = serial_number
        self.super_class_object_id = 0
        self.instance_size = 0
        self.constant_fields = []
        self.static_fields = []
        self.instance_fields = []
        self.populated = False

    @staticmethod
    def create_from_load_class(byte_stream):
        serial_number = byte_stream.next_four_bytes()
        object_id = byte_stream.next_id()
        byte_stream.next_four_bytes()  # stack trace serial
        name_string_id = byte_stream.next_id()
        return ClassDefinition(object_id, name_string_id, serial_number)

    def populate_from_class_dump(self, byte_stream):
        # The object id has already been consumed by the caller to find us
        byte_stream.next_four_bytes()  # stack trace serial
        self.super_class_object_id = byte_stream.next_id()
        byte_stream.next_id()  # class loader
        byte_stream.next_id()  # signer
        byte_stream.next_id()  # protection domain
        # reserved
        byte_stream.next_id()
        byte_stream.next_id()
        self.instance_size = byte_stream.next_four_bytes()

        constant_pool_count = byte_stream.next_two_bytes()
        self.constant_fields = [
            ConstantField.parse(byte_stream) for _ in range(constant_pool_count)
        ]
        static_field_count = byte_stream.next_two_bytes()
        self.static_fields = [
            StaticField.parse(byte_stream) for _ in range(static_field_count)
        ]
        instance_field_count = byte_stream.next_two_bytes()
        self.instance_fields = [
            InstanceField.parse(byte_stream) for _ in range(instance_field_count)
        ]
        self.populated = True

    def __str__(self):
        return "<ClassDefinition 0x%x super=0x%x fields=%d>" % (
            self.object_id,
            self.super_class_object_id,
            len(self.instance_fields),
        )

    def __repr__(self):
        return str(self)


class Instance(object):
    def __init__(self, object_id, class_object_id, instance_field_data):
        self.object_id = object_id
        self.class_object_id = class_object_id
        # Field data of the instance's own class first, followed by its super
        # class data, and so on up the hierarchy.
        self.instance_field_data = instance_field_data

    @staticmethod
    def parse(byte_stream):
        object_id = byte_stream.next_id()
        byte_stream.next_four_bytes()  # stack trace serial
        class_object_id = byte_stream.next_id()
        instance_field_values_size = byte_stream.next_four_bytes()
        instance_field_data = byte_stream.next_byte_array(instance_field_values_size)
        return Instance(object_id, class_object_id, instance_field_data)

    def __str__(self):
        return "<Instance 0x%x class=0x%x>" % (self.object_id, self.class_object_id)

    def __repr__(self):
        return str(self)


class ObjectArray(object):
    def __init__(self, object_id, element_class_object_id, elements):
        self.object_id = object_id
        self.element_class_object_id = element_class_object_id
        self.elements = elements

    @staticmethod
    def parse(byte_stream):
        object_id = byte_stream.next_id()
        byte_stream.next_four_bytes()  # stack trace serial
        num_elements = byte_stream.next_four_bytes()
        element_class_object_id = byte_stream.next_id()
        elements = [byte_stream.next_id() for _ in range(num_elements)]
        return ObjectArray(object_id, element_class_object_id, elements)


class PrimitiveArray(object):
    """A primitive array dump. Element values are skipped, not kept."""

    def __init__(self, object_id, hprof_basic, num_elements):
        self.object_id = object_id
        self.hprof_basic = hprof_basic
        self.num_elements = num_elements

    @staticmethod
    def parse(byte_stream, with_data=True):
        object_id = byte_stream.next_id()
        byte_stream.next_four_bytes()  # stack trace serial
        num_elements = byte_stream.next_four_bytes()
        hprof_basic = HprofBasic.parse(byte_stream)
        if with_data:
            byte_stream.skip(num_elements * hprof_basic.size())
        return PrimitiveArray(object_id, hprof_basic, num_elements)
