"""Native Marshal - Flat buffer codecs for nested, variable-length and compound data."""

from native_marshal.classifier import TypeClassifier
from native_marshal.compound import (
    CompoundField,
    CompoundFieldLayout,
    CompoundRecordCodec,
    pack_compound_batch,
    unpack_compound_batch,
)
from native_marshal.errors import (
    ConversionError,
    ForeignMemoryError,
    InternalInvariantViolation,
    LayoutError,
    MarshalError,
    ShapeError,
    SizeMismatchError,
    UnsupportedFieldError,
    UnsupportedTypeError,
)
from native_marshal.flatten import FlatteningCodec, flatten, unflatten
from native_marshal.library import NativeLibrary
from native_marshal.memory import ForeignHeap, MemoryLibrary
from native_marshal.parsing import TypeParser
from native_marshal.shape import ArrayShapeDescriptor
from native_marshal.types import (
    ArrayType,
    CompoundMember,
    CompoundType,
    ElementType,
    EnumType,
    FixedStringType,
    NumericType,
    PrimitiveType,
    ReferenceType,
    TypeClass,
    VariableLengthType,
    VariableStringType,
)
from native_marshal.vlen import (
    CapturedBatch,
    RawCapturedElement,
    VLRecordMarshaller,
    capture_vl_batch,
    interpret_vl_batch,
)

__all__ = [
    # Main API
    "flatten",
    "unflatten",
    "capture_vl_batch",
    "interpret_vl_batch",
    "pack_compound_batch",
    "unpack_compound_batch",
    # Codecs
    "ArrayShapeDescriptor",
    "FlatteningCodec",
    "VLRecordMarshaller",
    "CapturedBatch",
    "RawCapturedElement",
    "CompoundField",
    "CompoundFieldLayout",
    "CompoundRecordCodec",
    "TypeClassifier",
    # Libraries
    "NativeLibrary",
    "MemoryLibrary",
    "ForeignHeap",
    "TypeParser",
    # Element types
    "ElementType",
    "PrimitiveType",
    "TypeClass",
    "NumericType",
    "FixedStringType",
    "VariableStringType",
    "VariableLengthType",
    "ArrayType",
    "ReferenceType",
    "EnumType",
    "CompoundMember",
    "CompoundType",
    # Errors
    "MarshalError",
    "ShapeError",
    "SizeMismatchError",
    "ConversionError",
    "LayoutError",
    "UnsupportedFieldError",
    "UnsupportedTypeError",
    "ForeignMemoryError",
    "InternalInvariantViolation",
]

__version__ = "0.1.0"
