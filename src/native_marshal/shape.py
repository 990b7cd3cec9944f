"""Shape discovery and row-major traversal of nested arrays."""

from __future__ import annotations

import array
from collections.abc import Iterator
from typing import Any

from native_marshal.errors import ConversionError, InternalInvariantViolation, ShapeError
from native_marshal.types import PrimitiveType, float_of_size, integer_of_size

# Containers that count as one dimension of an array
ARRAY_TYPES = (list, tuple, array.array, bytes, bytearray)

_SIGNED_TYPECODES = "bhilq"
_FLOAT_TYPECODES = "fd"


def is_array(obj: Any) -> bool:
    """Return True if obj is a container that counts as an array dimension."""
    return isinstance(obj, ARRAY_TYPES)


def primitive_for_typecode(typed: array.array) -> PrimitiveType:
    """Return the primitive matching an array.array's typecode and item size."""
    code = typed.typecode
    if code in _SIGNED_TYPECODES:
        primitive = integer_of_size(typed.itemsize)
    elif code in _FLOAT_TYPECODES:
        primitive = float_of_size(typed.itemsize)
    else:
        primitive = None
    if primitive is None:
        raise ShapeError(f"Unsupported array typecode '{code}'")
    return primitive


def _primitive_for_leaf(leaf: Any, override: PrimitiveType | None) -> PrimitiveType:
    if isinstance(leaf, bool):
        raise ShapeError("Boolean elements are not supported")
    if isinstance(leaf, int):
        if override is None:
            return PrimitiveType.INT64
        if not override.is_integer:
            raise ShapeError(f"Integer elements cannot be stored as {override.value}")
        return override
    if isinstance(leaf, float):
        if override is None:
            return PrimitiveType.FLOAT64
        if not override.is_float:
            raise ShapeError(f"Float elements cannot be stored as {override.value}")
        return override
    raise ShapeError(f"Unsupported element type: {type(leaf).__name__}")


def _check_override(found: PrimitiveType, override: PrimitiveType | None) -> PrimitiveType:
    if override is not None and override is not found:
        raise ShapeError(f"Array of {found.value} cannot be stored as {override.value}")
    return found


class ArrayShapeDescriptor:
    """Describes the shape, element type and byte layout of a nested array.

    Dimension 0 is a synthetic root of length 1 so that ``strides[0]`` is the
    size of the whole array. ``dims[1..rank]`` are the real dimension lengths
    and ``dims[rank]`` is the length of each innermost row.

    The descriptor also carries the traversal cache used by ``iter_rows``,
    so a descriptor must not be shared between conversions.
    """

    def __init__(self, array_obj: Any, primitive: PrimitiveType | None = None) -> None:
        if not is_array(array_obj):
            raise ShapeError(f"Expected an array, got {type(array_obj).__name__}")

        self.array = array_obj
        self.dims: list[int] = [1]
        self.objs: list[Any] = [array_obj]
        self.byte_rows = False

        obj = array_obj
        while True:
            if len(obj) == 0:
                raise ShapeError(f"Dimension {len(self.dims)} is empty")
            self.dims.append(len(obj))

            if isinstance(obj, (bytes, bytearray)):
                self.primitive = _check_override(PrimitiveType.INT8, primitive)
                self.byte_rows = True
                break
            if isinstance(obj, array.array):
                self.primitive = _check_override(primitive_for_typecode(obj), primitive)
                break

            first = obj[0]
            if not is_array(first):
                self.primitive = _primitive_for_leaf(first, primitive)
                break
            obj = first
            self.objs.append(obj)

        self.rank = len(self.dims) - 1
        self.current_index = [0] * (self.rank + 1)
        # objs[rank] is never a row; pad so indices line up with dims
        self.objs.append(None)

        self._validate(array_obj, 1)

        es = self.primitive.size_bytes
        self.element_size = es
        self.strides = [0] * (self.rank + 1)
        self.strides[self.rank] = es
        for i in range(self.rank - 1, -1, -1):
            self.strides[i] = self.strides[i + 1] * self.dims[i + 1]

        self.total_size = self.strides[0]
        self.total_elements = self.total_size // es

    @property
    def row_length(self) -> int:
        """Number of elements in one innermost row."""
        return self.dims[self.rank]

    @property
    def row_size(self) -> int:
        """Number of bytes one innermost row occupies."""
        return self.strides[self.rank - 1]

    @property
    def shape(self) -> tuple[int, ...]:
        """The real dimension lengths, without the synthetic root."""
        return tuple(self.dims[1:])

    def _validate(self, obj: Any, level: int) -> None:
        """Check that every sub-array at ``level`` has length ``dims[level]``."""
        if not is_array(obj):
            raise ShapeError(f"Expected an array at depth {level}, got {type(obj).__name__}")
        if len(obj) != self.dims[level]:
            raise ShapeError(
                f"Ragged array: length {len(obj)} at depth {level}, expected {self.dims[level]}"
            )
        if level == self.rank:
            return
        for child in obj:
            self._validate(child, level + 1)

    def iter_rows(self) -> Iterator[tuple[int, Any]]:
        """Yield ``(offset, row)`` for every innermost row in row-major order.

        The index of dimension ``i`` is recovered from the byte offset as
        ``(n // strides[i]) % dims[i]``. A sub-array is only dereferenced
        again when its index changes or an enclosing sub-array changed.
        """
        rank = self.rank
        n = 0
        while n < self.total_size:
            oo = self.objs[0]
            changed = False
            for i in range(rank):
                index = (n // self.strides[i]) % self.dims[i]
                if index == self.current_index[i] and not changed:
                    oo = self.objs[i]
                    continue
                if index > self.dims[i] - 1:
                    raise ConversionError(f"Index {index} out of range for dimension {i}")
                try:
                    oo = oo[index]
                except (IndexError, TypeError) as e:
                    raise ConversionError(f"Cannot index dimension {i}: {e}") from e
                self.current_index[i] = index
                self.objs[i] = oo
                changed = True
            yield n, oo
            n += self.row_size
        self.check_complete(n)

    def replace_row(self, row: Any) -> None:
        """Replace the row most recently yielded by ``iter_rows`` inside its parent."""
        rank = self.rank
        if rank == 1:
            self.array = row
        else:
            parent = self.objs[rank - 2]
            try:
                parent[self.current_index[rank - 1]] = row
            except TypeError as e:
                raise ConversionError(
                    f"Cannot replace a row inside an immutable {type(parent).__name__}"
                ) from e
        self.objs[rank - 1] = row

    def check_complete(self, n: int) -> None:
        """Raise if a traversal ending at offset ``n`` did not visit every row."""
        if n < self.total_size:
            raise InternalInvariantViolation(
                f"Traversal did not complete all data: n={n} size={self.total_size}"
            )
        for i in range(self.rank):
            if self.current_index[i] != self.dims[i] - 1:
                raise InternalInvariantViolation(
                    f"Traversal did not complete all data: current_index[{i}] = "
                    f"{self.current_index[i]} (should be {self.dims[i] - 1})"
                )
