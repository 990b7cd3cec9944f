"""Packing and unpacking of fixed-size compound records."""

from __future__ import annotations

import logging
import struct
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from native_marshal.errors import (
    ConversionError,
    ForeignMemoryError,
    LayoutError,
    SizeMismatchError,
    UnsupportedFieldError,
)
from native_marshal.library import NativeLibrary
from native_marshal.types import (
    NULL_ADDRESS,
    POINTER_FORMAT,
    CompoundType,
    ElementType,
    FixedStringType,
    NumericType,
    VariableStringType,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompoundField:
    """One field of a compound record."""

    name: str
    offset: int
    element_type: ElementType

    @property
    def size(self) -> int:
        return self.element_type.size_bytes


@dataclass(frozen=True)
class CompoundFieldLayout:
    """The ordered fields of a compound record and the record's total size."""

    fields: tuple[CompoundField, ...]
    record_size: int

    @classmethod
    def from_type(cls, compound: CompoundType) -> CompoundFieldLayout:
        """Build a layout from a compound element type."""
        fields = tuple(
            CompoundField(name=m.name, offset=m.offset, element_type=m.element_type)
            for m in compound.members
        )
        return cls(fields=fields, record_size=compound.size_bytes)

    @property
    def has_variable_fields(self) -> bool:
        """Return True if any field stores the address of a foreign payload."""
        return any(f.element_type.is_variable for f in self.fields)

    @property
    def field_names(self) -> list[str]:
        return [f.name for f in self.fields]


class CompoundRecordCodec:
    """Converts tuples of field values to and from packed compound records.

    Numeric fields are stored little-endian. Fixed strings are NUL padded
    and truncated to their width. Variable strings are copied into foreign
    memory allocated through the library, and their address is stored in
    the record; reading one dereferences it immediately.
    """

    def __init__(self, layout: CompoundFieldLayout, library: NativeLibrary | None = None) -> None:
        self.layout = layout
        self.library = library

        for f in layout.fields:
            if not isinstance(f.element_type, (NumericType, FixedStringType, VariableStringType)):
                raise UnsupportedFieldError(
                    f"Field '{f.name}' has unsupported type {f.element_type.name}"
                )
            if f.offset < 0 or f.offset + f.size > layout.record_size:
                raise LayoutError(
                    f"Field '{f.name}' at offset {f.offset} does not fit in a "
                    f"{layout.record_size}-byte record"
                )

        ordered = sorted(layout.fields, key=lambda f: f.offset)
        for prev, f in zip(ordered, ordered[1:]):
            if f.offset < prev.offset + prev.size:
                raise LayoutError(
                    f"Field '{f.name}' at offset {f.offset} overlaps field '{prev.name}'"
                )

    def pack(
        self, records: Sequence[Sequence[Any]], allocated: list[int] | None = None
    ) -> bytearray:
        """Pack records into one contiguous buffer.

        If packing fails, every string already allocated for the batch is
        freed before the error propagates.

        Args:
            records: One sequence of field values per record, in field order.
                ``None`` packs the field's zero value.
            allocated: If given, the addresses of the strings allocated for
                the batch are appended to it once packing succeeds.

        Returns:
            A buffer of ``len(records) * record_size`` bytes.

        Raises:
            LayoutError: If a record does not have one value per field.
            ConversionError: If a value cannot be stored in its field.
        """
        size = self.layout.record_size
        n_fields = len(self.layout.fields)
        out = bytearray(len(records) * size)
        owned: list[int] = []

        try:
            for i, record in enumerate(records):
                if len(record) != n_fields:
                    raise LayoutError(
                        f"Record {i} has {len(record)} values, layout has {n_fields} fields"
                    )
                base = i * size
                for f, value in zip(self.layout.fields, record):
                    self._pack_field(out, base + f.offset, f, value, owned)
        except Exception:
            self._release(owned)
            raise

        if allocated is not None:
            allocated.extend(owned)
        return out

    def _pack_field(
        self, out: bytearray, pos: int, f: CompoundField, value: Any, owned: list[int]
    ) -> None:
        et = f.element_type

        if isinstance(et, NumericType):
            if value is None:
                value = et.primitive.default
            try:
                struct.pack_into("<" + et.primitive.struct_format, out, pos, value)
            except struct.error as e:
                raise ConversionError(f"Field '{f.name}': {e}") from e
            return

        if value is None:
            value = ""
        if isinstance(value, str):
            encoded = value.encode("utf-8")
        elif isinstance(value, (bytes, bytearray)):
            encoded = bytes(value)
        else:
            raise ConversionError(
                f"Field '{f.name}' expects a string, got {type(value).__name__}"
            )

        if isinstance(et, FixedStringType):
            out[pos : pos + et.width] = encoded[: et.width].ljust(et.width, b"\x00")
            return

        if self.library is None:
            raise ConversionError(f"Field '{f.name}' needs a library to allocate its string")
        address = self.library.allocate(len(encoded) + 1)
        owned.append(address)
        self.library.write_memory(address, encoded + b"\x00")
        struct.pack_into(POINTER_FORMAT, out, pos, address)

    def _release(self, addresses: list[int]) -> None:
        """Free strings allocated by a pack that did not complete."""
        if self.library is None or not addresses:
            return
        for address in addresses:
            self.library.free(address)
        logger.debug(f"Freed {len(addresses)} strings of a failed pack")

    def unpack(self, buffer: bytes | bytearray | memoryview, count: int) -> list[tuple[Any, ...]]:
        """Unpack ``count`` records from a buffer.

        Raises:
            SizeMismatchError: If the buffer is shorter than ``count`` records.
        """
        size = self.layout.record_size
        if len(buffer) < count * size:
            raise SizeMismatchError(
                f"Buffer holds {len(buffer)} bytes, {count} records need {count * size}"
            )

        records = []
        for i in range(count):
            base = i * size
            records.append(
                tuple(self._unpack_field(buffer, base + f.offset, f) for f in self.layout.fields)
            )
        return records

    def _unpack_field(self, buffer: Any, pos: int, f: CompoundField) -> Any:
        et = f.element_type

        if isinstance(et, NumericType):
            return struct.unpack_from("<" + et.primitive.struct_format, buffer, pos)[0]

        if isinstance(et, FixedStringType):
            raw = bytes(buffer[pos : pos + et.width])
            return raw.split(b"\x00", 1)[0].decode("utf-8", errors="replace")

        (address,) = struct.unpack_from(POINTER_FORMAT, buffer, pos)
        if address == NULL_ADDRESS:
            return ""
        if self.library is None:
            raise ConversionError(f"Field '{f.name}' needs a library to read its string")
        try:
            raw = self.library.read_string(address)
        except ForeignMemoryError as e:
            logger.warning(f"Unreadable string in field '{f.name}': {e}")
            return ""
        return raw.decode("utf-8", errors="replace")

    def read(self, handle: int, type_id: int, count: int) -> list[tuple[Any, ...]]:
        """Read ``count`` records from a library dataset."""
        library = self._require_library()
        buffer = bytearray(count * self.layout.record_size)
        library.read(handle, type_id, buffer)
        try:
            return self.unpack(buffer, count)
        finally:
            if self.layout.has_variable_fields:
                library.reclaim(type_id, count, buffer)

    def write(self, handle: int, type_id: int, records: Sequence[Sequence[Any]]) -> None:
        """Pack records and write them to a library dataset."""
        library = self._require_library()
        buffer = self.pack(records)
        try:
            library.write(handle, type_id, buffer)
        finally:
            if self.layout.has_variable_fields:
                library.reclaim(type_id, len(records), buffer)

    def _require_library(self) -> NativeLibrary:
        if self.library is None:
            raise ConversionError("This operation needs a library")
        return self.library


def pack_compound_batch(
    records: Sequence[Sequence[Any]],
    layout: CompoundFieldLayout,
    library: NativeLibrary | None = None,
) -> bytearray:
    """Pack records into a buffer of ``len(records) * layout.record_size`` bytes."""
    return CompoundRecordCodec(layout, library).pack(records)


def unpack_compound_batch(
    buffer: bytes | bytearray | memoryview,
    count: int,
    layout: CompoundFieldLayout,
    library: NativeLibrary | None = None,
) -> list[tuple[Any, ...]]:
    """Unpack ``count`` records from a buffer."""
    return CompoundRecordCodec(layout, library).unpack(buffer, count)
