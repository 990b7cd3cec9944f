"""Element type model for the marshalling codecs."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class PrimitiveType(Enum):
    """Fixed-width numeric types that can be stored in a flat buffer."""

    INT8 = "int8"
    INT16 = "int16"
    INT32 = "int32"
    INT64 = "int64"
    FLOAT32 = "float32"
    FLOAT64 = "float64"

    @property
    def size_bytes(self) -> int:
        """Return the size in bytes for this primitive type."""
        sizes = {
            PrimitiveType.INT8: 1,
            PrimitiveType.INT16: 2,
            PrimitiveType.INT32: 4,
            PrimitiveType.INT64: 8,
            PrimitiveType.FLOAT32: 4,
            PrimitiveType.FLOAT64: 8,
        }
        return sizes[self]

    @property
    def struct_format(self) -> str:
        """Return the struct format character, without a byte order prefix."""
        formats = {
            PrimitiveType.INT8: "b",
            PrimitiveType.INT16: "h",
            PrimitiveType.INT32: "i",
            PrimitiveType.INT64: "q",
            PrimitiveType.FLOAT32: "f",
            PrimitiveType.FLOAT64: "d",
        }
        return formats[self]

    @property
    def is_integer(self) -> bool:
        return self in _INTEGER_BY_SIZE.values()

    @property
    def is_float(self) -> bool:
        return self in _FLOAT_BY_SIZE.values()

    @property
    def default(self) -> int | float:
        """Return the zero value for this type."""
        return 0.0 if self.is_float else 0


_INTEGER_BY_SIZE = {
    1: PrimitiveType.INT8,
    2: PrimitiveType.INT16,
    4: PrimitiveType.INT32,
    8: PrimitiveType.INT64,
}

_FLOAT_BY_SIZE = {
    4: PrimitiveType.FLOAT32,
    8: PrimitiveType.FLOAT64,
}

# Mapping from type name strings to PrimitiveType enum values
PRIMITIVE_TYPE_NAMES: dict[str, PrimitiveType] = {pt.value: pt for pt in PrimitiveType}


def integer_of_size(size: int) -> PrimitiveType | None:
    """Return the signed integer primitive with the given width, if any."""
    return _INTEGER_BY_SIZE.get(size)


def float_of_size(size: int) -> PrimitiveType | None:
    """Return the floating point primitive with the given width, if any."""
    return _FLOAT_BY_SIZE.get(size)


# Size of a foreign address stored in a buffer
POINTER_SIZE = 8
POINTER_FORMAT = "=Q"

# A variable-length entry is a (length, address) pair
VLEN_ENTRY_SIZE = 16
VLEN_ENTRY_FORMAT = "=QQ"

# Address that refers to nothing
NULL_ADDRESS = 0

DEFAULT_REFERENCE_SIZE = 8


class TypeClass(Enum):
    """Coarse classification of an element type."""

    INTEGER = "integer"
    FLOAT = "float"
    STRING = "string"
    VLEN = "vlen"
    COMPOUND = "compound"
    REFERENCE = "reference"
    ENUM = "enum"
    ARRAY = "array"


@dataclass(frozen=True)
class ElementType:
    """Base class for all element types."""

    @property
    def name(self) -> str:
        raise NotImplementedError

    @property
    def size_bytes(self) -> int:
        """Return the size in bytes of one element stored inline."""
        raise NotImplementedError

    @property
    def type_class(self) -> TypeClass:
        raise NotImplementedError

    @property
    def is_variable(self) -> bool:
        """Return True if stored elements hold addresses of foreign payloads."""
        return False

    @property
    def is_string(self) -> bool:
        return self.type_class is TypeClass.STRING


@dataclass(frozen=True)
class NumericType(ElementType):
    """An integer or floating point element."""

    primitive: PrimitiveType

    @property
    def name(self) -> str:
        return self.primitive.value

    @property
    def size_bytes(self) -> int:
        return self.primitive.size_bytes

    @property
    def type_class(self) -> TypeClass:
        return TypeClass.FLOAT if self.primitive.is_float else TypeClass.INTEGER


@dataclass(frozen=True)
class FixedStringType(ElementType):
    """A NUL-padded string stored inline in a fixed number of bytes."""

    width: int

    @property
    def name(self) -> str:
        return f"string({self.width})"

    @property
    def size_bytes(self) -> int:
        return self.width

    @property
    def type_class(self) -> TypeClass:
        return TypeClass.STRING


@dataclass(frozen=True)
class VariableStringType(ElementType):
    """A NUL-terminated string stored in foreign memory and addressed inline."""

    @property
    def name(self) -> str:
        return "string"

    @property
    def size_bytes(self) -> int:
        return POINTER_SIZE

    @property
    def type_class(self) -> TypeClass:
        return TypeClass.STRING

    @property
    def is_variable(self) -> bool:
        return True


@dataclass(frozen=True)
class VariableLengthType(ElementType):
    """A sequence of elements of another type, stored as a (length, address) entry."""

    element_type: ElementType

    @property
    def name(self) -> str:
        return f"vlen<{self.element_type.name}>"

    @property
    def size_bytes(self) -> int:
        return VLEN_ENTRY_SIZE

    @property
    def type_class(self) -> TypeClass:
        return TypeClass.VLEN

    @property
    def is_variable(self) -> bool:
        return True


@dataclass(frozen=True)
class ArrayType(ElementType):
    """A fixed number of elements of another type, stored inline back to back."""

    element_type: ElementType
    length: int

    @property
    def name(self) -> str:
        return f"array<{self.element_type.name}, {self.length}>"

    @property
    def size_bytes(self) -> int:
        return self.element_type.size_bytes * self.length

    @property
    def type_class(self) -> TypeClass:
        return TypeClass.ARRAY

    @property
    def is_variable(self) -> bool:
        return self.element_type.is_variable


@dataclass(frozen=True)
class ReferenceType(ElementType):
    """An opaque object reference of fixed width."""

    width: int = DEFAULT_REFERENCE_SIZE

    @property
    def name(self) -> str:
        if self.width == DEFAULT_REFERENCE_SIZE:
            return "reference"
        return f"reference({self.width})"

    @property
    def size_bytes(self) -> int:
        return self.width

    @property
    def type_class(self) -> TypeClass:
        return TypeClass.REFERENCE


@dataclass(frozen=True)
class EnumType(ElementType):
    """Named integer constants over an integer backing type."""

    backing: PrimitiveType
    members: tuple[tuple[str, int], ...] = ()

    @property
    def name(self) -> str:
        names = ", ".join(name for name, _ in self.members)
        return f"enum<{self.backing.value}> {{ {names} }}"

    @property
    def size_bytes(self) -> int:
        return self.backing.size_bytes

    @property
    def type_class(self) -> TypeClass:
        return TypeClass.ENUM

    def value_of(self, member: str) -> int:
        """Return the integer value for a member name."""
        for name, value in self.members:
            if name == member:
                return value
        raise KeyError(f"Unknown enum member: {member}")


@dataclass(frozen=True)
class CompoundMember:
    """A named member of a compound type at a fixed byte offset."""

    name: str
    offset: int
    element_type: ElementType

    @property
    def end(self) -> int:
        return self.offset + self.element_type.size_bytes


@dataclass(frozen=True)
class CompoundType(ElementType):
    """A fixed-size record made of named members."""

    members: tuple[CompoundMember, ...] = ()
    size: int = field(default=-1)

    def __post_init__(self) -> None:
        if self.size < 0:
            end = max((m.end for m in self.members), default=0)
            object.__setattr__(self, "size", end)

    @property
    def name(self) -> str:
        inner = ", ".join(f"{m.name}: {m.element_type.name}" for m in self.members)
        return f"compound {{ {inner} }}"

    @property
    def size_bytes(self) -> int:
        return self.size

    @property
    def type_class(self) -> TypeClass:
        return TypeClass.COMPOUND

    @property
    def is_variable(self) -> bool:
        return any(m.element_type.is_variable for m in self.members)

    def member(self, name: str) -> CompoundMember:
        """Return the member with the given name."""
        for m in self.members:
            if m.name == name:
                return m
        raise KeyError(f"Unknown compound member: {name}")


INT8 = NumericType(PrimitiveType.INT8)
INT16 = NumericType(PrimitiveType.INT16)
INT32 = NumericType(PrimitiveType.INT32)
INT64 = NumericType(PrimitiveType.INT64)
FLOAT32 = NumericType(PrimitiveType.FLOAT32)
FLOAT64 = NumericType(PrimitiveType.FLOAT64)
