"""Conversion between nested arrays and flat byte buffers."""

from __future__ import annotations

import array
import logging
import struct
from typing import Any

from native_marshal.errors import ConversionError, SizeMismatchError
from native_marshal.shape import ArrayShapeDescriptor
from native_marshal.types import PrimitiveType

logger = logging.getLogger(__name__)


class FlatteningCodec:
    """Converts one nested array of any rank to and from a contiguous buffer.

    ``flatten`` packs elements in native byte order. ``unflatten`` decodes
    elements as little-endian, so a round trip is only lossless on
    little-endian hosts. A fresh shape descriptor is built for every call.

    A rank-1 ``bytes`` or ``bytearray`` is its own flat form: ``flatten``
    returns the same object, so mutating the result mutates the input.
    """

    def __init__(self, array_obj: Any, primitive: PrimitiveType | None = None) -> None:
        self.array = array_obj
        self.primitive = primitive

    def describe(self) -> ArrayShapeDescriptor:
        """Return a new shape descriptor for the codec's array."""
        return ArrayShapeDescriptor(self.array, self.primitive)

    def empty_bytes(self) -> bytes | bytearray:
        """Return a zero-filled buffer large enough to hold the array.

        For a rank-1 byte array the array itself is returned.
        """
        desc = self.describe()
        if desc.rank == 1 and desc.byte_rows:
            return self.array
        try:
            return bytearray(desc.total_size)
        except MemoryError as e:
            raise ConversionError(f"Cannot allocate {desc.total_size} bytes") from e

    def flatten(self) -> bytes | bytearray:
        """Pack the array into a contiguous buffer in row-major order.

        Returns:
            A buffer of ``total_size`` bytes, or the input itself for a rank-1
            byte array.

        Raises:
            ShapeError: If the array is empty, ragged or of an unsupported type.
            ConversionError: If a value cannot be packed or the buffer cannot
                be allocated.
        """
        desc = self.describe()
        if desc.rank == 1 and desc.byte_rows:
            return self.array

        try:
            out = bytearray(desc.total_size)
        except MemoryError as e:
            raise ConversionError(f"Cannot allocate {desc.total_size} bytes") from e

        row_format = f"={desc.row_length}{desc.primitive.struct_format}"
        for n, row in desc.iter_rows():
            _pack_row(out, n, row, row_format, desc.row_size)

        logger.debug(f"Flattened array of shape {desc.shape} into {len(out)} bytes")
        return out

    def unflatten(self, data: bytes | bytearray | memoryview) -> Any:
        """Fill the codec's array with the elements of a flat buffer.

        Rows are overwritten in place. Immutable rows are replaced inside
        their parent list. For a rank-1 immutable array a new object of the
        same type is returned.

        Args:
            data: A buffer of exactly ``total_size`` bytes.

        Returns:
            The filled array.

        Raises:
            SizeMismatchError: If ``len(data)`` differs from the array's size.
        """
        desc = self.describe()
        if len(data) != desc.total_size:
            raise SizeMismatchError(
                f"Buffer holds {len(data)} bytes, array needs {desc.total_size}"
            )

        if desc.byte_rows:
            flat: Any = bytes(data)
        else:
            count = desc.total_elements
            try:
                flat = struct.unpack(f"<{count}{desc.primitive.struct_format}", data)
            except struct.error as e:
                raise ConversionError(f"Cannot decode buffer: {e}") from e

        width = desc.row_length
        m = 0
        for _, row in desc.iter_rows():
            values = flat[m : m + width]
            replacement = _fill_row(row, values)
            if replacement is not None:
                desc.replace_row(replacement)
            m += width

        self.array = desc.array
        return desc.array


def _pack_row(out: bytearray, n: int, row: Any, row_format: str, row_size: int) -> None:
    if isinstance(row, (bytes, bytearray, array.array)):
        raw = row.tobytes() if isinstance(row, array.array) else row
        if len(raw) != row_size:
            raise ConversionError(f"Row holds {len(raw)} bytes, expected {row_size}")
        out[n : n + row_size] = raw
        return
    try:
        struct.pack_into(row_format, out, n, *row)
    except struct.error as e:
        raise ConversionError(f"Cannot pack row at byte {n}: {e}") from e


def _as_bytes(values: Any) -> bytes:
    # Signed int8 values from a mixed template are stored as their unsigned byte
    try:
        return bytes(v + 256 if -128 <= v < 0 else v for v in values)
    except (TypeError, ValueError) as e:
        raise ConversionError(f"Cannot store {list(values)!r} in a byte row: {e}") from e


def _fill_row(row: Any, values: Any) -> Any:
    """Write values into row, returning a new row when row is immutable."""
    if isinstance(row, list):
        row[:] = list(values)
    elif isinstance(row, bytearray):
        row[:] = _as_bytes(values)
    elif isinstance(row, array.array):
        try:
            row[:] = array.array(row.typecode, values)
        except (TypeError, OverflowError) as e:
            raise ConversionError(
                f"Cannot store {list(values)!r} in an array of typecode '{row.typecode}'"
            ) from e
    elif isinstance(row, bytes):
        return _as_bytes(values)
    elif isinstance(row, tuple):
        return tuple(values)
    else:
        raise ConversionError(f"Cannot fill a row of type {type(row).__name__}")
    return None


def flatten(array_obj: Any, primitive: PrimitiveType | None = None) -> bytes | bytearray:
    """Flatten a nested array into a contiguous buffer."""
    return FlatteningCodec(array_obj, primitive).flatten()


def unflatten(
    data: bytes | bytearray | memoryview,
    template: Any,
    primitive: PrimitiveType | None = None,
) -> Any:
    """Fill ``template`` from a flat buffer and return it."""
    return FlatteningCodec(template, primitive).unflatten(data)
