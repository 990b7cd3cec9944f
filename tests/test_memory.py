"""Tests for the in-process library and its heap."""

import struct

import pytest

from native_marshal.errors import ForeignMemoryError, SizeMismatchError
from native_marshal.library import NativeLibrary
from native_marshal.memory import ForeignHeap, MemoryLibrary
from native_marshal.types import INT32, TypeClass, VariableLengthType


@pytest.fixture
def heap():
    """Create a small heap so tests exercise growth."""
    heap = ForeignHeap(initial_size=64)
    yield heap
    heap.close()


class TestForeignHeap:
    """Tests for ForeignHeap."""

    def test_allocate_is_aligned_and_non_null(self, heap):
        """Test addresses are aligned and never zero."""
        a = heap.allocate(3)
        b = heap.allocate(1)
        assert a != 0
        assert a % ForeignHeap.ALIGNMENT == 0
        assert b % ForeignHeap.ALIGNMENT == 0
        assert b > a

    def test_allocate_zero_filled(self, heap):
        """Test new blocks are zero filled."""
        address = heap.allocate(5)
        assert heap.read(address, 5) == bytes(5)

    def test_write_read(self, heap):
        """Test writing and reading a block."""
        address = heap.allocate(4)
        heap.write(address, b"abcd")
        assert heap.read(address, 4) == b"abcd"
        assert heap.read(address + 1, 2) == b"bc"

    def test_growth_keeps_contents(self, heap):
        """Test growing the arena preserves existing blocks."""
        first = heap.allocate(16)
        heap.write(first, b"x" * 16)
        heap.allocate(200)
        assert heap.capacity >= 200
        assert heap.read(first, 16) == b"x" * 16

    def test_read_string(self, heap):
        """Test reading a NUL-terminated string."""
        address = heap.allocate(8)
        heap.write(address, b"hi\x00there")
        assert heap.read_string(address) == b"hi"

    def test_unterminated_string(self, heap):
        """Test a string without a NUL inside its block."""
        address = heap.allocate(4)
        heap.write(address, b"abcd")
        with pytest.raises(ForeignMemoryError):
            heap.read_string(address)

    def test_use_after_free(self, heap):
        """Test every access to a freed block raises."""
        address = heap.allocate(8)
        heap.free(address)
        assert not heap.is_live(address)
        with pytest.raises(ForeignMemoryError):
            heap.read(address, 1)
        with pytest.raises(ForeignMemoryError):
            heap.write(address, b"x")
        with pytest.raises(ForeignMemoryError):
            heap.read_string(address)

    def test_double_free(self, heap):
        """Test freeing a block twice."""
        address = heap.allocate(8)
        heap.free(address)
        with pytest.raises(ForeignMemoryError):
            heap.free(address)

    def test_overrun(self, heap):
        """Test reading past the end of a block."""
        address = heap.allocate(4)
        with pytest.raises(ForeignMemoryError):
            heap.read(address, 5)

    def test_null_and_unknown(self, heap):
        """Test addresses that were never allocated."""
        with pytest.raises(ForeignMemoryError):
            heap.read(0, 1)
        with pytest.raises(ForeignMemoryError):
            heap.free(12345)

    def test_live_blocks(self, heap):
        """Test the live block count."""
        a = heap.allocate(1)
        heap.allocate(1)
        heap.free(a)
        assert heap.live_blocks == 1

    def test_negative_size(self, heap):
        """Test a negative allocation size."""
        with pytest.raises(ValueError):
            heap.allocate(-1)


class TestMemoryLibrary:
    """Tests for MemoryLibrary."""

    def test_implements_protocol(self):
        """Test the library satisfies the native library interface."""
        assert isinstance(MemoryLibrary(), NativeLibrary)

    def test_register_deduplicates(self):
        """Test equal types share an id."""
        library = MemoryLibrary()
        a = library.register_type(VariableLengthType(INT32))
        b = library.parse_type("vlen<int32>")
        assert a == b
        assert library.get_super(a) == library.register_type(INT32)

    def test_type_queries(self):
        """Test type descriptor queries."""
        library = MemoryLibrary()
        type_id = library.parse_type("compound { id: int32, name: string @ 8 }")
        assert library.get_class(type_id) is TypeClass.COMPOUND
        assert library.get_size(type_id) == 16
        assert library.get_nmembers(type_id) == 2
        assert library.get_member_name(type_id, 1) == "name"
        assert library.get_member_offset(type_id, 1) == 8
        assert library.is_variable_str(library.get_member_type(type_id, 1))

    def test_unknown_type(self):
        """Test an unknown type id."""
        with pytest.raises(KeyError):
            MemoryLibrary().get_size(99)

    def test_get_super_of_non_vlen(self):
        """Test get_super on a fixed-size type."""
        library = MemoryLibrary()
        with pytest.raises(ValueError):
            library.get_super(library.register_type(INT32))

    def test_dataset_round_trip(self):
        """Test fixed-size data is stored and returned unchanged."""
        library = MemoryLibrary()
        type_id = library.register_type(INT32)
        handle = library.create_dataset(type_id, 2)
        library.write(handle, type_id, struct.pack("=2i", 7, 8))
        out = bytearray(8)
        library.read(handle, type_id, out)
        assert struct.unpack("=2i", out) == (7, 8)

    def test_dataset_size_mismatch(self):
        """Test writing a buffer of the wrong size."""
        library = MemoryLibrary()
        type_id = library.register_type(INT32)
        handle = library.create_dataset(type_id, 2)
        with pytest.raises(SizeMismatchError):
            library.write(handle, type_id, bytes(4))

    def test_dataset_type_mismatch(self):
        """Test reading a dataset as another type."""
        library = MemoryLibrary()
        int_type = library.register_type(INT32)
        float_type = library.parse_type("float32")
        handle = library.create_dataset(int_type, 1)
        with pytest.raises(ValueError):
            library.read(handle, float_type, bytearray(4))

    def test_write_copies_payloads(self):
        """Test a dataset keeps its own copy of written payloads."""
        library = MemoryLibrary()
        type_id = library.parse_type("vlen<int32>")
        payload = library.allocate(4)
        library.write_memory(payload, struct.pack("<i", 42))
        handle = library.create_dataset(type_id, 1)

        library.write(handle, type_id, struct.pack("=QQ", 1, payload))
        library.heap.free(payload)

        out = bytearray(16)
        library.read(handle, type_id, out)
        length, address = struct.unpack("=QQ", out)
        assert length == 1
        assert address != payload
        assert library.read_memory(address, 4) == struct.pack("<i", 42)

    def test_reclaim_frees_nested(self):
        """Test reclaim frees nested payloads and leaves the buffer intact."""
        library = MemoryLibrary()
        type_id = library.parse_type("vlen<vlen<int32>>")
        inner = library.allocate(4)
        outer = library.allocate(16)
        library.write_memory(outer, struct.pack("=QQ", 1, inner))
        buffer = struct.pack("=QQ", 1, outer)

        library.reclaim(type_id, 1, buffer)

        assert not library.heap.is_live(inner)
        assert not library.heap.is_live(outer)
        assert buffer == struct.pack("=QQ", 1, outer)

    def test_overwrite_frees_old_payloads(self):
        """Test rewriting a dataset releases its previous payloads."""
        library = MemoryLibrary()
        type_id = library.parse_type("string")
        handle = library.create_dataset(type_id, 1)
        for text in (b"first", b"second"):
            address = library.allocate(len(text) + 1)
            library.write_memory(address, text + b"\x00")
            library.write(handle, type_id, struct.pack("=Q", address))
            library.heap.free(address)
        assert library.heap.live_blocks == 1

    def test_array_queries(self):
        """Test array dimensions and element type."""
        library = MemoryLibrary()
        type_id = library.parse_type("array<string, 3>")
        assert library.get_class(type_id) is TypeClass.ARRAY
        assert library.get_size(type_id) == 24
        assert library.get_array_dims(type_id) == (3,)
        assert library.is_variable_str(library.get_super(type_id))
        with pytest.raises(ValueError):
            library.get_array_dims(library.get_super(type_id))

    def test_array_payloads_are_copied_and_reclaimed(self):
        """Test strings addressed from array elements are copied and freed per item."""
        library = MemoryLibrary()
        type_id = library.parse_type("array<string, 2>")
        handle = library.create_dataset(type_id, 1)
        first = library.allocate(2)
        library.write_memory(first, b"a\x00")
        library.write(handle, type_id, struct.pack("=QQ", first, 0))
        library.free(first)
        assert library.heap.live_blocks == 1

        out = bytearray(16)
        library.read(handle, type_id, out)
        copy, null = struct.unpack("=QQ", out)
        assert null == 0
        assert library.read_string(copy) == b"a"
        library.reclaim(type_id, 1, out)
        assert not library.heap.is_live(copy)
        assert library.heap.live_blocks == 1
