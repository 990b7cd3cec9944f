"""Marshalling of variable-length sequences held in foreign memory.

A variable-length buffer is a table of ``(length, address)`` entries whose
payloads live in memory owned by the native library. Reading one is a
strict two-phase protocol:

1. ``capture`` copies every payload out of foreign memory into a
   ``CapturedBatch`` that owns its bytes.
2. The caller asks the library to ``reclaim`` the table. From then on every
   address in it is dangling.
3. ``interpret`` decodes the captured bytes into Python values without
   touching the library.

A payload that cannot be decoded turns into a list of default values of
the right length; it never affects the other elements of the batch.
"""

from __future__ import annotations

import logging
import struct
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from native_marshal.classifier import TypeClassifier
from native_marshal.compound import CompoundFieldLayout, CompoundRecordCodec
from native_marshal.errors import (
    ConversionError,
    ForeignMemoryError,
    MarshalError,
    SizeMismatchError,
    UnsupportedTypeError,
)
from native_marshal.library import NativeLibrary
from native_marshal.types import (
    NULL_ADDRESS,
    POINTER_FORMAT,
    POINTER_SIZE,
    VLEN_ENTRY_FORMAT,
    VLEN_ENTRY_SIZE,
    ArrayType,
    CompoundType,
    ElementType,
    EnumType,
    FixedStringType,
    NumericType,
    ReferenceType,
    TypeClass,
    VariableLengthType,
    VariableStringType,
)

logger = logging.getLogger(__name__)


@dataclass
class RawCapturedElement:
    """The owned copy of one variable-length element.

    ``payload`` holds the element's bytes. String elements hold a packed
    string table instead: a little-endian uint32 count followed by a
    uint32 length and the bytes of each entry. ``decoded`` holds values that
    had to be decoded while foreign memory was still valid, and ``children``
    holds the captured entries of a nested variable-length element.
    """

    payload: bytes = b""
    length: int = 0
    decoded: list[Any] | None = None
    children: list[RawCapturedElement] | None = None


@dataclass
class CapturedBatch:
    """Every element of one variable-length buffer, copied out of foreign memory."""

    type_id: int
    base_type: ElementType
    elements: list[RawCapturedElement] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.elements)


def pack_string_table(entries: Sequence[bytes]) -> bytes:
    """Pack byte strings into the count-prefixed string table format."""
    parts = [struct.pack("<I", len(entries))]
    for entry in entries:
        parts.append(struct.pack("<I", len(entry)))
        parts.append(bytes(entry))
    return b"".join(parts)


def unpack_string_table(payload: bytes) -> list[bytes]:
    """Unpack a string table. Raises ValueError if it is malformed."""
    if len(payload) < 4:
        raise ValueError("String table is too short for its count")
    (count,) = struct.unpack_from("<I", payload, 0)
    pos = 4
    entries = []
    for _ in range(count):
        if pos + 4 > len(payload):
            raise ValueError(f"String table truncated at entry {len(entries)}")
        (size,) = struct.unpack_from("<I", payload, pos)
        pos += 4
        if pos + size > len(payload):
            raise ValueError(f"String table entry {len(entries)} overruns the payload")
        entries.append(payload[pos : pos + size])
        pos += size
    return entries


def _default_for(base: ElementType) -> Any:
    type_class = base.type_class
    if type_class in (TypeClass.INTEGER, TypeClass.ENUM):
        return 0
    if type_class is TypeClass.FLOAT:
        return 0.0
    if type_class is TypeClass.STRING:
        return ""
    if type_class is TypeClass.REFERENCE:
        return b""
    if type_class is TypeClass.VLEN:
        return []
    return None


def _unpack_reference_table(payload: bytes, n: int) -> list[bytes] | None:
    """Return the references of a packed table holding exactly ``n`` entries, if it is one."""
    if len(payload) < 4 or struct.unpack_from("<I", payload, 0)[0] != n:
        return None
    try:
        entries = unpack_string_table(payload)
    except ValueError:
        return None
    if 4 + sum(4 + len(e) for e in entries) != len(payload):
        return None
    return entries


def _decode_element(base: ElementType, element: RawCapturedElement) -> list[Any]:
    n = element.length
    payload = element.payload

    if element.decoded is not None:
        if len(element.decoded) != n:
            raise ValueError(f"Decoded {len(element.decoded)} values, expected {n}")
        return list(element.decoded)

    if base.is_string:
        entries = unpack_string_table(payload)[:n]
        values = [e.decode("utf-8", errors="replace") for e in entries]
        values.extend([""] * (n - len(values)))
        return values

    if isinstance(base, VariableLengthType):
        if element.children is None or len(element.children) != n:
            raise ValueError("Nested elements were not captured")
        return [_interpret_element(base.element_type, child) for child in element.children]

    if isinstance(base, (NumericType, EnumType)):
        primitive = base.primitive if isinstance(base, NumericType) else base.backing
        need = n * primitive.size_bytes
        if len(payload) < need:
            raise ValueError(f"Payload holds {len(payload)} bytes, {n} elements need {need}")
        return list(struct.unpack_from(f"<{n}{primitive.struct_format}", payload))

    if isinstance(base, ReferenceType):
        table = _unpack_reference_table(payload, n)
        if table is not None:
            return table
        width = base.width
        if len(payload) < n * width:
            raise ValueError(f"Payload holds {len(payload)} bytes, {n} references need {n * width}")
        return [payload[k * width : (k + 1) * width] for k in range(n)]

    if isinstance(base, CompoundType):
        codec = CompoundRecordCodec(CompoundFieldLayout.from_type(base))
        return codec.unpack(payload, n)

    raise UnsupportedTypeError(f"Cannot interpret elements of type {base.name}")


def _interpret_element(base: ElementType, element: RawCapturedElement) -> list[Any]:
    if element.length == 0:
        return []
    try:
        return _decode_element(base, element)
    except (ValueError, struct.error, MarshalError) as e:
        logger.warning(
            f"Cannot interpret {element.length} elements of {base.name}, using defaults: {e}"
        )
        return [_default_for(base) for _ in range(element.length)]


def interpret_vl_batch(batch: CapturedBatch) -> list[list[Any]]:
    """Decode a captured batch into one list of values per element.

    This never touches foreign memory, so it is safe to call after the
    library has reclaimed the buffer the batch was captured from. The
    result has one list per captured element, and each list has the
    element's logical length.
    """
    values = [_interpret_element(batch.base_type, e) for e in batch.elements]
    logger.debug(f"Interpreted {len(values)} elements of {batch.base_type.name}")
    return values


class VLRecordMarshaller:
    """Reads and writes variable-length buffers through a native library.

    The same capture and interpret steps also serve fixed-size array
    elements: an array element is captured like a variable-length entry
    whose items are stored inline instead of behind an address.
    """

    # Element widths tried when a base type reports a size of zero
    FALLBACK_WIDTHS = (8, 4)

    def __init__(self, library: NativeLibrary, classifier: TypeClassifier | None = None) -> None:
        self.library = library
        self.classifier = classifier or TypeClassifier(library)

    def _vlen_type(self, type_id: int) -> VariableLengthType:
        vl = self.classifier.classify(type_id)
        if not isinstance(vl, VariableLengthType):
            raise UnsupportedTypeError(f"Type {vl.name} is not a variable-length type")
        return vl

    def _array_type(self, type_id: int) -> ArrayType:
        at = self.classifier.classify(type_id)
        if not isinstance(at, ArrayType):
            raise UnsupportedTypeError(f"Type {at.name} is not an array type")
        return at

    # Capture

    def capture(self, table: bytes | bytearray, count: int, type_id: int) -> CapturedBatch:
        """Copy every element of a variable-length buffer out of foreign memory.

        Must be called before the library reclaims ``table``.

        Args:
            table: ``count`` native-order ``(length, address)`` entries.
            count: Number of entries.
            type_id: The variable-length type descriptor.

        Returns:
            A batch that owns copies of every payload.

        Raises:
            SizeMismatchError: If the table is shorter than ``count`` entries.
        """
        if len(table) < count * VLEN_ENTRY_SIZE:
            raise SizeMismatchError(
                f"Table holds {len(table)} bytes, {count} entries need {count * VLEN_ENTRY_SIZE}"
            )
        base = self._vlen_type(type_id).element_type
        elements = []
        for i in range(count):
            length, address = struct.unpack_from(VLEN_ENTRY_FORMAT, table, i * VLEN_ENTRY_SIZE)
            elements.append(self._capture_entry(base, length, address))
        logger.debug(f"Captured {count} elements of {base.name}")
        return CapturedBatch(type_id=type_id, base_type=base, elements=elements)

    def _capture_entry(self, base: ElementType, length: int, address: int) -> RawCapturedElement:
        if length == 0 or address == NULL_ADDRESS:
            return RawCapturedElement()
        raw = self._copy_payload(base.size_bytes, length, address)
        if not raw:
            return RawCapturedElement(length=length)
        return self._capture_items(base, raw, length)

    def _copy_payload(self, width: int, length: int, address: int) -> bytes:
        """Copy ``length`` elements, trying fallback widths when ``width`` is unknown."""
        widths = (width,) if width > 0 else self.FALLBACK_WIDTHS
        for w in widths:
            try:
                return self.library.read_memory(address, length * w)
            except ForeignMemoryError as e:
                logger.debug(f"Copy of {length} x {w} bytes at {address:#x} failed: {e}")
        return b""

    def _capture_items(self, base: ElementType, raw: bytes, length: int) -> RawCapturedElement:
        """Capture ``length`` elements of ``base`` whose inline bytes are ``raw``.

        Addresses stored in ``raw`` are followed now, while their memory is
        still live.
        """
        if base.is_string:
            return self._capture_strings(base, raw, length)

        if isinstance(base, VariableLengthType):
            entries = [
                struct.unpack_from(VLEN_ENTRY_FORMAT, raw, k * VLEN_ENTRY_SIZE)
                for k in range(length)
            ]
            children = [self._capture_entry(base.element_type, *entry) for entry in entries]
            return RawCapturedElement(payload=raw, length=length, children=children)

        element = RawCapturedElement(payload=raw, length=length)
        if isinstance(base, CompoundType) and base.is_variable:
            try:
                codec = CompoundRecordCodec(CompoundFieldLayout.from_type(base), self.library)
                element.decoded = codec.unpack(raw, length)
            except MarshalError as e:
                logger.debug(f"Cannot decode {length} records of {base.name}: {e}")
        return element

    def _capture_strings(self, base: ElementType, raw: bytes, length: int) -> RawCapturedElement:
        complete = True
        if isinstance(base, FixedStringType):
            w = base.width
            entries = [raw[k * w : (k + 1) * w].split(b"\x00", 1)[0] for k in range(length)]
        else:
            entries = []
            for k in range(length):
                (pointer,) = struct.unpack_from(POINTER_FORMAT, raw, k * POINTER_SIZE)
                if pointer == NULL_ADDRESS:
                    entries.append(b"")
                    continue
                try:
                    entries.append(self.library.read_string(pointer))
                except ForeignMemoryError as e:
                    logger.debug(f"String {k} at {pointer:#x} unreadable: {e}")
                    entries.append(b"")
                    complete = False

        element = RawCapturedElement(payload=pack_string_table(entries), length=length)
        if complete:
            try:
                element.decoded = [e.decode("utf-8") for e in entries]
            except UnicodeDecodeError as e:
                logger.debug(f"Strings of {base.name} are not valid UTF-8: {e}")
        return element

    # Interpret

    def interpret(self, batch: CapturedBatch) -> list[list[Any]]:
        """Decode a captured batch. See ``interpret_vl_batch``."""
        return interpret_vl_batch(batch)

    def read(self, handle: int, type_id: int, count: int) -> list[list[Any]]:
        """Read, capture, reclaim and interpret ``count`` elements of a dataset."""
        table = bytearray(count * VLEN_ENTRY_SIZE)
        self.library.read(handle, type_id, table)
        try:
            batch = self.capture(table, count, type_id)
        finally:
            self.library.reclaim(type_id, count, table)
        return self.interpret(batch)

    # Write

    def pack(self, values: Sequence[Sequence[Any] | None], type_id: int) -> bytearray:
        """Build a variable-length buffer whose payloads live in foreign memory.

        Each payload is allocated through the library; the caller hands
        ownership to the library, normally by writing the buffer and then
        reclaiming it. If an element cannot be encoded, every block
        allocated so far is freed before the error propagates.

        Args:
            values: One sequence per element. ``None`` or an empty sequence
                stores a null entry.
            type_id: The variable-length type descriptor.

        Returns:
            A buffer of ``len(values)`` native-order ``(length, address)`` entries.
        """
        base = self._vlen_type(type_id).element_type
        table = bytearray(len(values) * VLEN_ENTRY_SIZE)
        allocated: list[int] = []
        try:
            for i, seq in enumerate(values):
                length, address = self._pack_entry(base, seq, allocated)
                struct.pack_into(VLEN_ENTRY_FORMAT, table, i * VLEN_ENTRY_SIZE, length, address)
        except Exception:
            self._release(allocated)
            raise
        return table

    def _pack_entry(
        self, base: ElementType, seq: Sequence[Any] | None, allocated: list[int]
    ) -> tuple[int, int]:
        if not seq:
            return 0, NULL_ADDRESS
        payload = self._encode(base, seq, allocated)
        address = self.library.allocate(len(payload))
        allocated.append(address)
        self.library.write_memory(address, payload)
        return len(seq), address

    def _encode(
        self, base: ElementType, seq: Sequence[Any], allocated: list[int]
    ) -> bytes | bytearray:
        """Encode a sequence of elements of ``base`` into payload bytes.

        The address of every block allocated along the way is appended to
        ``allocated``.
        """
        n = len(seq)

        if isinstance(base, (NumericType, EnumType)):
            if isinstance(base, EnumType):
                primitive = base.backing
                seq = [base.value_of(v) if isinstance(v, str) else v for v in seq]
            else:
                primitive = base.primitive
            seq = [primitive.default if v is None else v for v in seq]
            try:
                return struct.pack(f"<{n}{primitive.struct_format}", *seq)
            except struct.error as e:
                raise ConversionError(f"Cannot pack {base.name} values: {e}") from e

        if isinstance(base, VariableStringType):
            buf = bytearray(n * POINTER_SIZE)
            for k, s in enumerate(seq):
                if s is None:
                    continue
                address = self._allocate_string(s, allocated)
                struct.pack_into(POINTER_FORMAT, buf, k * POINTER_SIZE, address)
            return buf

        if isinstance(base, FixedStringType):
            w = base.width
            return b"".join(_encode_text(s)[:w].ljust(w, b"\x00") for s in seq)

        if isinstance(base, ReferenceType):
            for ref in seq:
                if not isinstance(ref, (bytes, bytearray)) or len(ref) != base.width:
                    raise ConversionError(f"References must be {base.width} bytes long")
            return b"".join(bytes(ref) for ref in seq)

        if isinstance(base, VariableLengthType):
            buf = bytearray(n * VLEN_ENTRY_SIZE)
            for k, sub in enumerate(seq):
                length, address = self._pack_entry(base.element_type, sub, allocated)
                struct.pack_into(VLEN_ENTRY_FORMAT, buf, k * VLEN_ENTRY_SIZE, length, address)
            return buf

        if isinstance(base, CompoundType):
            codec = CompoundRecordCodec(CompoundFieldLayout.from_type(base), self.library)
            return codec.pack(seq, allocated)

        raise UnsupportedTypeError(f"Cannot pack elements of type {base.name}")

    def _allocate_string(self, text: str | bytes, allocated: list[int]) -> int:
        encoded = _encode_text(text)
        address = self.library.allocate(len(encoded) + 1)
        allocated.append(address)
        self.library.write_memory(address, encoded + b"\x00")
        return address

    def _release(self, addresses: list[int]) -> None:
        """Free blocks allocated by a pack that did not complete."""
        for address in reversed(addresses):
            self.library.free(address)
        if addresses:
            logger.debug(f"Freed {len(addresses)} blocks of a failed pack")

    def write(self, handle: int, type_id: int, values: Sequence[Sequence[Any] | None]) -> None:
        """Pack values and write them to a dataset, then release the packed payloads."""
        table = self.pack(values, type_id)
        try:
            self.library.write(handle, type_id, table)
        finally:
            self.library.reclaim(type_id, len(values), table)

    # Fixed-size arrays: elements stored inline, possibly holding addresses

    def pack_arrays(self, values: Sequence[Sequence[Any] | None], type_id: int) -> bytearray:
        """Build a buffer of array elements.

        Items that live in foreign memory, such as variable strings, are
        allocated through the library as ``pack`` does.

        Args:
            values: One sequence of exactly the array length per element.
                ``None`` stores a zero-filled element, and a ``None`` item
                stores the item's zero value.
            type_id: The array type descriptor.

        Raises:
            ConversionError: If a sequence does not have the array length or
                an item cannot be stored.
        """
        array_type = self._array_type(type_id)
        base = array_type.element_type
        size = array_type.size_bytes
        out = bytearray(len(values) * size)
        allocated: list[int] = []
        try:
            for i, seq in enumerate(values):
                if seq is None:
                    continue
                if len(seq) != array_type.length:
                    raise ConversionError(
                        f"Array element {i} has {len(seq)} values, expected {array_type.length}"
                    )
                out[i * size : (i + 1) * size] = self._encode(base, seq, allocated)
        except Exception:
            self._release(allocated)
            raise
        return out

    def capture_arrays(self, buffer: bytes | bytearray, count: int, type_id: int) -> CapturedBatch:
        """Copy ``count`` array elements, and every payload they address, into a batch.

        Must be called before the library reclaims ``buffer``. The batch is
        decoded with ``interpret`` like a variable-length batch.
        """
        array_type = self._array_type(type_id)
        size = array_type.size_bytes
        if len(buffer) < count * size:
            raise SizeMismatchError(
                f"Buffer holds {len(buffer)} bytes, {count} arrays need {count * size}"
            )
        base = array_type.element_type
        if isinstance(base, ArrayType):
            raise UnsupportedTypeError(f"Cannot capture elements of type {array_type.name}")
        elements = [
            self._capture_items(base, bytes(buffer[i * size : (i + 1) * size]), array_type.length)
            for i in range(count)
        ]
        logger.debug(f"Captured {count} elements of {array_type.name}")
        return CapturedBatch(type_id=type_id, base_type=base, elements=elements)

    def read_arrays(self, handle: int, type_id: int, count: int) -> list[list[Any]]:
        """Read, capture, reclaim and interpret ``count`` array elements of a dataset."""
        array_type = self._array_type(type_id)
        buffer = bytearray(count * array_type.size_bytes)
        self.library.read(handle, type_id, buffer)
        try:
            batch = self.capture_arrays(buffer, count, type_id)
        finally:
            if array_type.is_variable:
                self.library.reclaim(type_id, count, buffer)
        return self.interpret(batch)

    def write_arrays(
        self, handle: int, type_id: int, values: Sequence[Sequence[Any] | None]
    ) -> None:
        """Write array elements to a dataset."""
        variable = self._array_type(type_id).is_variable
        buffer = self.pack_arrays(values, type_id)
        try:
            self.library.write(handle, type_id, buffer)
        finally:
            if variable:
                self.library.reclaim(type_id, len(values), buffer)

    # Variable-length string arrays: one address per element

    def pack_strings(self, strings: Sequence[str | None]) -> bytearray:
        """Build a buffer holding one foreign string address per element."""
        buf = bytearray(len(strings) * POINTER_SIZE)
        allocated: list[int] = []
        try:
            for i, s in enumerate(strings):
                if s is not None:
                    address = self._allocate_string(s, allocated)
                    struct.pack_into(POINTER_FORMAT, buf, i * POINTER_SIZE, address)
        except Exception:
            self._release(allocated)
            raise
        return buf

    def capture_strings(self, buffer: bytes | bytearray, count: int) -> list[str]:
        """Copy ``count`` strings out of a buffer of string addresses.

        Null or unreadable addresses yield empty strings.
        """
        if len(buffer) < count * POINTER_SIZE:
            raise SizeMismatchError(
                f"Buffer holds {len(buffer)} bytes, {count} strings need {count * POINTER_SIZE}"
            )
        strings = []
        for i in range(count):
            (address,) = struct.unpack_from(POINTER_FORMAT, buffer, i * POINTER_SIZE)
            if address == NULL_ADDRESS:
                strings.append("")
                continue
            try:
                raw = self.library.read_string(address)
            except ForeignMemoryError as e:
                logger.warning(f"String {i} at {address:#x} unreadable: {e}")
                strings.append("")
                continue
            strings.append(raw.decode("utf-8", errors="replace"))
        return strings

    def read_strings(self, handle: int, type_id: int, count: int) -> list[str]:
        """Read ``count`` variable-length strings from a dataset."""
        buffer = bytearray(count * POINTER_SIZE)
        self.library.read(handle, type_id, buffer)
        try:
            return self.capture_strings(buffer, count)
        finally:
            self.library.reclaim(type_id, count, buffer)

    def write_strings(self, handle: int, type_id: int, strings: Sequence[str | None]) -> None:
        """Write variable-length strings to a dataset."""
        buffer = self.pack_strings(strings)
        try:
            self.library.write(handle, type_id, buffer)
        finally:
            self.library.reclaim(type_id, len(strings), buffer)


def _encode_text(value: Any) -> bytes:
    if value is None:
        return b""
    if isinstance(value, str):
        return value.encode("utf-8")
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    raise ConversionError(f"Expected a string, got {type(value).__name__}")


def capture_vl_batch(
    table: bytes | bytearray,
    count: int,
    type_id: int,
    library: NativeLibrary,
) -> CapturedBatch:
    """Copy a variable-length buffer out of foreign memory before it is reclaimed."""
    return VLRecordMarshaller(library).capture(table, count, type_id)
