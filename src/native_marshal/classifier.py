"""Resolve library type descriptors into element types."""

from __future__ import annotations

from native_marshal.compound import CompoundFieldLayout
from native_marshal.errors import UnsupportedTypeError
from native_marshal.library import NativeLibrary
from native_marshal.types import (
    ArrayType,
    CompoundMember,
    CompoundType,
    ElementType,
    EnumType,
    FixedStringType,
    NumericType,
    ReferenceType,
    TypeClass,
    VariableLengthType,
    VariableStringType,
    float_of_size,
    integer_of_size,
)


class TypeClassifier:
    """Answers element type questions about library type descriptors.

    The classifier holds no state besides the library, so one instance can
    be shared by any number of codecs.
    """

    def __init__(self, library: NativeLibrary) -> None:
        self.library = library

    def classify(self, type_id: int) -> ElementType:
        """Return the element type described by a type descriptor.

        Args:
            type_id: A type descriptor owned by the library.

        Returns:
            The matching element type, with nested types resolved.

        Raises:
            UnsupportedTypeError: If the descriptor has no counterpart in the
                element type model.
        """
        lib = self.library
        type_class = lib.get_class(type_id)
        size = lib.get_size(type_id)

        if type_class is TypeClass.INTEGER:
            primitive = integer_of_size(size)
            if primitive is None:
                raise UnsupportedTypeError(f"No integer type of {size} bytes")
            return NumericType(primitive)

        if type_class is TypeClass.FLOAT:
            primitive = float_of_size(size)
            if primitive is None:
                raise UnsupportedTypeError(f"No float type of {size} bytes")
            return NumericType(primitive)

        if type_class is TypeClass.STRING:
            if lib.is_variable_str(type_id):
                return VariableStringType()
            return FixedStringType(size)

        if type_class is TypeClass.VLEN:
            return VariableLengthType(self.classify(lib.get_super(type_id)))

        if type_class is TypeClass.ARRAY:
            dims = lib.get_array_dims(type_id)
            if len(dims) != 1:
                raise UnsupportedTypeError(f"Only 1-D arrays are supported, got {len(dims)}-D")
            return ArrayType(self.classify(lib.get_super(type_id)), dims[0])

        if type_class is TypeClass.REFERENCE:
            return ReferenceType(size)

        if type_class is TypeClass.ENUM:
            backing = integer_of_size(size)
            if backing is None:
                raise UnsupportedTypeError(f"No enum backing type of {size} bytes")
            members = tuple(
                (lib.get_member_name(type_id, i), lib.get_member_value(type_id, i))
                for i in range(lib.get_nmembers(type_id))
            )
            return EnumType(backing=backing, members=members)

        if type_class is TypeClass.COMPOUND:
            members = tuple(
                CompoundMember(
                    name=lib.get_member_name(type_id, i),
                    offset=lib.get_member_offset(type_id, i),
                    element_type=self.classify(lib.get_member_type(type_id, i)),
                )
                for i in range(lib.get_nmembers(type_id))
            )
            return CompoundType(members=members, size=size)

        raise UnsupportedTypeError(f"Unsupported type class: {type_class}")

    def size(self, type_id: int) -> int:
        """Return the inline size in bytes of one element."""
        return self.library.get_size(type_id)

    def base_type(self, type_id: int) -> int:
        """Return the element descriptor of a vlen or array type, or the type itself."""
        if self.library.get_class(type_id) in (TypeClass.VLEN, TypeClass.ARRAY):
            return self.library.get_super(type_id)
        return type_id

    def is_string(self, type_id: int) -> bool:
        """Return True for string types and sequences or arrays of strings."""
        return self.library.get_class(self.base_type(type_id)) is TypeClass.STRING

    def compound_layout(self, type_id: int) -> CompoundFieldLayout:
        """Return the field layout of a compound type descriptor."""
        element_type = self.classify(type_id)
        if not isinstance(element_type, CompoundType):
            raise UnsupportedTypeError(f"Type {type_id} is not a compound type")
        return CompoundFieldLayout.from_type(element_type)
