"""An in-process storage library backed by an anonymous memory arena."""

from __future__ import annotations

import bisect
import logging
import mmap
import struct
from dataclasses import dataclass

from native_marshal.errors import ForeignMemoryError, SizeMismatchError
from native_marshal.parsing import TypeParser
from native_marshal.types import (
    NULL_ADDRESS,
    POINTER_FORMAT,
    VLEN_ENTRY_FORMAT,
    ArrayType,
    CompoundType,
    ElementType,
    EnumType,
    TypeClass,
    VariableLengthType,
    VariableStringType,
)

logger = logging.getLogger(__name__)


class ForeignHeap:
    """A bump allocator over an mmap arena that detects dangling addresses.

    Addresses are offsets into the arena. Offset 0 is never handed out so it
    can serve as the null address. Freed blocks are poisoned and never
    reused, so any later access through a stale address fails.
    """

    INITIAL_SIZE = 4096
    GROWTH_FACTOR = 2
    ALIGNMENT = 8
    POISON = 0xDD

    def __init__(self, initial_size: int | None = None) -> None:
        self._capacity = initial_size or self.INITIAL_SIZE
        self._mmap: mmap.mmap | None = mmap.mmap(-1, self._capacity)
        self._top = self.ALIGNMENT
        self._starts: list[int] = []
        self._sizes: dict[int, int] = {}
        self._live: set[int] = set()

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def live_blocks(self) -> int:
        """Number of allocated blocks that have not been freed."""
        return len(self._live)

    def _arena(self) -> mmap.mmap:
        if self._mmap is None:
            raise ForeignMemoryError("Heap is closed")
        return self._mmap

    def _grow(self, needed: int) -> None:
        """Grow the arena so that it holds at least ``needed`` bytes."""
        old = self._arena()
        new_capacity = self._capacity
        while new_capacity < needed:
            new_capacity *= self.GROWTH_FACTOR
        new = mmap.mmap(-1, new_capacity)
        new[: self._capacity] = old[:]
        old.close()
        logger.debug(f"Heap grown from {self._capacity} to {new_capacity} bytes")
        self._mmap = new
        self._capacity = new_capacity

    def allocate(self, nbytes: int) -> int:
        """Allocate a zero-filled block and return its address."""
        if nbytes < 0:
            raise ValueError(f"Cannot allocate {nbytes} bytes")
        size = max(nbytes, 1)
        step = -(-size // self.ALIGNMENT) * self.ALIGNMENT
        if self._top + step > self._capacity:
            self._grow(self._top + step)

        address = self._top
        self._top += step
        self._starts.append(address)
        self._sizes[address] = size
        self._live.add(address)
        return address

    def free(self, address: int) -> None:
        """Release a block. Freeing an unknown or already freed block raises."""
        if address not in self._live:
            raise ForeignMemoryError(f"Address {address:#x} is not a live block")
        self._live.remove(address)
        size = self._sizes[address]
        self._arena()[address : address + size] = bytes([self.POISON]) * size

    def is_live(self, address: int) -> bool:
        return address in self._live

    def _block(self, address: int, nbytes: int) -> tuple[int, int]:
        """Return (start, end) of the live block containing the given range."""
        i = bisect.bisect_right(self._starts, address) - 1
        if i < 0:
            raise ForeignMemoryError(f"Address {address:#x} is not allocated")
        start = self._starts[i]
        if start not in self._live:
            raise ForeignMemoryError(f"Address {address:#x} refers to freed memory")
        end = start + self._sizes[start]
        if address + nbytes > end:
            raise ForeignMemoryError(
                f"Access of {nbytes} bytes at {address:#x} overruns its block"
            )
        return start, end

    def read(self, address: int, nbytes: int) -> bytes:
        """Return a copy of ``nbytes`` bytes at ``address``."""
        self._block(address, nbytes)
        return bytes(self._arena()[address : address + nbytes])

    def write(self, address: int, data: bytes | bytearray) -> None:
        """Copy ``data`` into memory at ``address``."""
        self._block(address, len(data))
        self._arena()[address : address + len(data)] = bytes(data)

    def read_string(self, address: int) -> bytes:
        """Return the NUL-terminated string at ``address``, without the NUL."""
        _, end = self._block(address, 0)
        arena = self._arena()
        nul = arena.find(b"\x00", address, end)
        if nul < 0:
            raise ForeignMemoryError(f"String at {address:#x} is not terminated")
        return bytes(arena[address:nul])

    def close(self) -> None:
        """Release the arena. Every address becomes invalid."""
        if self._mmap is not None:
            self._mmap.close()
            self._mmap = None
        self._live.clear()


@dataclass
class Dataset:
    """A stored array of elements of one type."""

    type_id: int
    count: int
    data: bytearray


class MemoryLibrary:
    """Implements the native library interface entirely in process memory.

    Types are registered from element types (or parsed from descriptor
    text) and identified by small integers. Datasets own private copies of
    every payload written to them. Reading a dataset allocates fresh copies
    of its payloads on the heap; the reader owns those until it calls
    ``reclaim`` on the buffer that references them.
    """

    def __init__(self, heap: ForeignHeap | None = None) -> None:
        self.heap = heap or ForeignHeap()
        self._types: dict[int, ElementType] = {}
        self._type_ids: dict[ElementType, int] = {}
        self._datasets: dict[int, Dataset] = {}
        self._parser: TypeParser | None = None

    # Type registry

    def register_type(self, element_type: ElementType) -> int:
        """Register an element type and the types it contains.

        Registering an equal type again returns the existing id.
        """
        existing = self._type_ids.get(element_type)
        if existing is not None:
            return existing

        if isinstance(element_type, (VariableLengthType, ArrayType)):
            self.register_type(element_type.element_type)
        elif isinstance(element_type, CompoundType):
            for m in element_type.members:
                self.register_type(m.element_type)

        type_id = len(self._types) + 1
        self._types[type_id] = element_type
        self._type_ids[element_type] = type_id
        return type_id

    def parse_type(self, text: str) -> int:
        """Parse descriptor text and register the resulting type."""
        if self._parser is None:
            self._parser = TypeParser()
        return self.register_type(self._parser.parse(text))

    def element_type(self, type_id: int) -> ElementType:
        """Return the element type registered under ``type_id``."""
        try:
            return self._types[type_id]
        except KeyError:
            raise KeyError(f"Unknown type id: {type_id}") from None

    def get_class(self, type_id: int) -> TypeClass:
        return self.element_type(type_id).type_class

    def get_size(self, type_id: int) -> int:
        return self.element_type(type_id).size_bytes

    def get_super(self, type_id: int) -> int:
        et = self.element_type(type_id)
        if not isinstance(et, (VariableLengthType, ArrayType)):
            raise ValueError(f"Type {type_id} has no element type")
        return self._type_ids[et.element_type]

    def get_array_dims(self, type_id: int) -> tuple[int, ...]:
        et = self.element_type(type_id)
        if not isinstance(et, ArrayType):
            raise ValueError(f"Type {type_id} is not an array type")
        return (et.length,)

    def is_variable_str(self, type_id: int) -> bool:
        return isinstance(self.element_type(type_id), VariableStringType)

    def get_nmembers(self, type_id: int) -> int:
        et = self.element_type(type_id)
        if isinstance(et, (CompoundType, EnumType)):
            return len(et.members)
        raise ValueError(f"Type {type_id} has no members")

    def get_member_name(self, type_id: int, index: int) -> str:
        et = self.element_type(type_id)
        if isinstance(et, CompoundType):
            return et.members[index].name
        if isinstance(et, EnumType):
            return et.members[index][0]
        raise ValueError(f"Type {type_id} has no members")

    def get_member_offset(self, type_id: int, index: int) -> int:
        return self._compound(type_id).members[index].offset

    def get_member_type(self, type_id: int, index: int) -> int:
        return self._type_ids[self._compound(type_id).members[index].element_type]

    def get_member_value(self, type_id: int, index: int) -> int:
        et = self.element_type(type_id)
        if not isinstance(et, EnumType):
            raise ValueError(f"Type {type_id} is not an enum type")
        return et.members[index][1]

    def _compound(self, type_id: int) -> CompoundType:
        et = self.element_type(type_id)
        if not isinstance(et, CompoundType):
            raise ValueError(f"Type {type_id} is not a compound type")
        return et

    # Datasets

    def create_dataset(self, type_id: int, count: int) -> int:
        """Create a zero-filled dataset of ``count`` elements and return its handle."""
        if count < 0:
            raise ValueError(f"Dataset count must not be negative, got {count}")
        size = self.get_size(type_id)
        handle = len(self._datasets) + 1
        self._datasets[handle] = Dataset(type_id=type_id, count=count, data=bytearray(count * size))
        return handle

    def dataset(self, handle: int) -> Dataset:
        try:
            return self._datasets[handle]
        except KeyError:
            raise KeyError(f"Unknown dataset handle: {handle}") from None

    def _checked(self, handle: int, type_id: int, nbytes: int) -> tuple[Dataset, ElementType]:
        ds = self.dataset(handle)
        et = self.element_type(type_id)
        if et != self.element_type(ds.type_id):
            raise ValueError(
                f"Dataset {handle} holds {self.element_type(ds.type_id).name}, not {et.name}"
            )
        if nbytes != len(ds.data):
            raise SizeMismatchError(
                f"Buffer holds {nbytes} bytes, dataset {handle} holds {len(ds.data)}"
            )
        return ds, et

    def write(self, handle: int, type_id: int, data: bytes | bytearray) -> None:
        """Replace a dataset's contents, copying every referenced payload."""
        ds, et = self._checked(handle, type_id, len(data))
        stored = bytearray(data)
        size = et.size_bytes
        if et.is_variable:
            for i in range(ds.count):
                self._copy_payloads(et, stored, i * size)
            for i in range(ds.count):
                self._free_payloads(et, ds.data, i * size)
        ds.data = stored

    def read(self, handle: int, type_id: int, out: bytearray) -> None:
        """Copy a dataset into ``out``, allocating fresh copies of its payloads."""
        ds, et = self._checked(handle, type_id, len(out))
        buf = bytearray(ds.data)
        size = et.size_bytes
        if et.is_variable:
            for i in range(ds.count):
                self._copy_payloads(et, buf, i * size)
        out[:] = buf

    def reclaim(self, type_id: int, count: int, buffer: bytes | bytearray) -> None:
        """Free the payloads referenced from ``count`` elements of ``buffer``.

        The buffer itself is left untouched, so its addresses dangle afterwards.
        """
        et = self.element_type(type_id)
        if not et.is_variable:
            return
        size = et.size_bytes
        for i in range(count):
            self._free_payloads(et, buffer, i * size)

    def _copy_payloads(self, et: ElementType, buf: bytearray, pos: int) -> None:
        """Replace addresses in the element at ``pos`` with addresses of fresh copies."""
        if isinstance(et, VariableStringType):
            (address,) = struct.unpack_from(POINTER_FORMAT, buf, pos)
            if address == NULL_ADDRESS:
                return
            text = self.heap.read_string(address)
            copy = self.heap.allocate(len(text) + 1)
            self.heap.write(copy, text + b"\x00")
            struct.pack_into(POINTER_FORMAT, buf, pos, copy)

        elif isinstance(et, VariableLengthType):
            length, address = struct.unpack_from(VLEN_ENTRY_FORMAT, buf, pos)
            if address == NULL_ADDRESS:
                return
            inner = et.element_type
            payload = bytearray(self.heap.read(address, length * inner.size_bytes))
            if inner.is_variable:
                for k in range(length):
                    self._copy_payloads(inner, payload, k * inner.size_bytes)
            copy = self.heap.allocate(len(payload))
            self.heap.write(copy, payload)
            struct.pack_into(VLEN_ENTRY_FORMAT, buf, pos, length, copy)

        elif isinstance(et, CompoundType):
            for m in et.members:
                if m.element_type.is_variable:
                    self._copy_payloads(m.element_type, buf, pos + m.offset)

        elif isinstance(et, ArrayType) and et.is_variable:
            step = et.element_type.size_bytes
            for k in range(et.length):
                self._copy_payloads(et.element_type, buf, pos + k * step)

    def _free_payloads(self, et: ElementType, buf: bytes | bytearray, pos: int) -> None:
        """Free every payload reachable from the element at ``pos``."""
        if isinstance(et, VariableStringType):
            (address,) = struct.unpack_from(POINTER_FORMAT, buf, pos)
            if address != NULL_ADDRESS:
                self.heap.free(address)

        elif isinstance(et, VariableLengthType):
            length, address = struct.unpack_from(VLEN_ENTRY_FORMAT, buf, pos)
            if address == NULL_ADDRESS:
                return
            inner = et.element_type
            if inner.is_variable:
                payload = self.heap.read(address, length * inner.size_bytes)
                for k in range(length):
                    self._free_payloads(inner, payload, k * inner.size_bytes)
            self.heap.free(address)

        elif isinstance(et, CompoundType):
            for m in et.members:
                if m.element_type.is_variable:
                    self._free_payloads(m.element_type, buf, pos + m.offset)

        elif isinstance(et, ArrayType) and et.is_variable:
            step = et.element_type.size_bytes
            for k in range(et.length):
                self._free_payloads(et.element_type, buf, pos + k * step)

    # Foreign memory

    def allocate(self, nbytes: int) -> int:
        return self.heap.allocate(nbytes)

    def free(self, address: int) -> None:
        self.heap.free(address)

    def read_memory(self, address: int, nbytes: int) -> bytes:
        return self.heap.read(address, nbytes)

    def read_string(self, address: int) -> bytes:
        return self.heap.read_string(address)

    def write_memory(self, address: int, data: bytes | bytearray) -> None:
        self.heap.write(address, data)
