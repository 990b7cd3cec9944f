"""Tests for flattening nested arrays to byte buffers and back."""

import array
import struct
import sys

import pytest

from native_marshal.errors import ConversionError, ShapeError, SizeMismatchError
from native_marshal.flatten import FlatteningCodec, flatten, unflatten
from native_marshal.types import PrimitiveType

little_endian_only = pytest.mark.skipif(
    sys.byteorder != "little", reason="flatten packs in native byte order"
)


class TestFlatten:
    """Tests for flatten."""

    @little_endian_only
    def test_int32_example(self):
        """Test a 2x3 int32 array packs into 24 little-endian bytes."""
        result = flatten([[1, 2, 3], [4, 5, 6]], PrimitiveType.INT32)
        assert bytes(result) == (
            b"\x01\x00\x00\x00\x02\x00\x00\x00\x03\x00\x00\x00"
            b"\x04\x00\x00\x00\x05\x00\x00\x00\x06\x00\x00\x00"
        )

    def test_byte_count(self):
        """Test the buffer holds one element size per element."""
        shapes = [
            ([1.5, 2.5], PrimitiveType.FLOAT32, 8),
            ([[1, 2], [3, 4], [5, 6]], PrimitiveType.INT16, 12),
            ([[[1, 2]], [[3, 4]]], None, 32),
        ]
        for data, primitive, expected in shapes:
            assert len(flatten(data, primitive)) == expected

    def test_native_order(self):
        """Test values are packed in native byte order."""
        result = flatten([[1.0, -2.0], [3.5, 4.25]])
        assert struct.unpack("=4d", result) == (1.0, -2.0, 3.5, 4.25)

    def test_rank_one_bytes_is_aliased(self):
        """Test a rank-1 byte array is returned as the same object."""
        data = bytearray(b"\x01\x02\x03")
        result = flatten(data)
        assert result is data
        result[0] = 9
        assert data[0] == 9

    def test_byte_rows(self):
        """Test rows of bytes are copied in order."""
        assert flatten([b"ab", bytearray(b"cd")]) == bytearray(b"abcd")

    def test_array_rows(self):
        """Test array.array rows are copied in order."""
        rows = [array.array("i", [1, 2]), array.array("i", [3, 4])]
        assert struct.unpack("=4i", flatten(rows)) == (1, 2, 3, 4)

    def test_value_out_of_range(self):
        """Test a value too large for its element type."""
        with pytest.raises(ConversionError):
            flatten([[1, 2], [3, 1000]], PrimitiveType.INT8)

    def test_float_in_int_array(self):
        """Test a float inside an integer array."""
        with pytest.raises(ConversionError):
            flatten([[1, 2], [3, 4.5]])

    def test_ragged(self):
        """Test a ragged array."""
        with pytest.raises(ShapeError):
            flatten([[1, 2], [3]])

    def test_empty_bytes(self):
        """Test empty_bytes sizes a zero buffer for the array."""
        codec = FlatteningCodec([[0.0] * 4] * 3, PrimitiveType.FLOAT32)
        assert codec.empty_bytes() == bytearray(48)

    def test_empty_bytes_rank_one_bytes(self):
        """Test empty_bytes returns a rank-1 byte array itself."""
        data = bytearray(4)
        assert FlatteningCodec(data).empty_bytes() is data


@little_endian_only
class TestUnflatten:
    """Tests for unflatten."""

    def test_round_trip_int32(self):
        """Test flatten then unflatten restores the array."""
        original = [[1, -2, 3], [4, 5, -6]]
        template = [[0, 0, 0], [0, 0, 0]]
        result = unflatten(flatten(original, PrimitiveType.INT32), template, PrimitiveType.INT32)
        assert result == original
        assert result is template

    def test_round_trip_rank_three(self):
        """Test a rank-3 float array."""
        original = [[[1.5, 2.5], [3.5, 4.5]], [[5.5, 6.5], [7.5, 8.5]]]
        template = [[[0.0, 0.0], [0.0, 0.0]], [[0.0, 0.0], [0.0, 0.0]]]
        assert unflatten(flatten(original), template) == original

    def test_round_trip_length_one_dimension(self):
        """Test a length-1 middle dimension."""
        original = [[[1, 2]], [[3, 4]], [[5, 6]]]
        template = [[[0, 0]], [[0, 0]], [[0, 0]]]
        assert unflatten(flatten(original), template) == original

    def test_tuple_rows_are_replaced(self):
        """Test immutable rows are replaced inside their parent list."""
        template = [(0, 0), (0, 0)]
        result = unflatten(flatten([[7, 8], [9, 10]]), template)
        assert result == [(7, 8), (9, 10)]
        assert result is template

    def test_rank_one_tuple(self):
        """Test a rank-1 tuple yields a new tuple."""
        template = (0, 0, 0)
        codec = FlatteningCodec(template, PrimitiveType.INT16)
        result = codec.unflatten(struct.pack("<3h", 1, 2, 3))
        assert result == (1, 2, 3)
        assert template == (0, 0, 0)

    def test_rank_one_bytearray(self):
        """Test a rank-1 bytearray is filled in place."""
        template = bytearray(3)
        result = unflatten(b"xyz", template)
        assert result is template
        assert template == bytearray(b"xyz")

    def test_array_rows(self):
        """Test array.array rows are filled in place."""
        rows = [array.array("d", [0.0, 0.0]), array.array("d", [0.0, 0.0])]
        unflatten(struct.pack("<4d", 1.0, 2.0, 3.0, 4.0), rows)
        assert rows[1].tolist() == [3.0, 4.0]

    def test_immutable_parent(self):
        """Test a tuple row inside a tuple cannot be replaced."""
        with pytest.raises(ConversionError):
            unflatten(bytes(16), ((0, 0), (0, 0)), PrimitiveType.INT32)

    def test_size_mismatch(self):
        """Test a buffer of the wrong length."""
        with pytest.raises(SizeMismatchError):
            unflatten(bytes(23), [[0, 0, 0], [0, 0, 0]], PrimitiveType.INT32)

    def test_size_mismatch_leaves_template(self):
        """Test nothing is written when the size check fails."""
        template = [[5, 5], [5, 5]]
        with pytest.raises(SizeMismatchError):
            unflatten(bytes(40), template)
        assert template == [[5, 5], [5, 5]]


class TestMixedRows:
    """Tests for templates mixing byte or typed rows with other rows."""

    def test_short_byte_row(self):
        """Test a byte row narrower than the other rows."""
        with pytest.raises(ConversionError):
            flatten([[1, 2], b"ab"])

    def test_short_bytearray_row_between_lists(self):
        """Test a short bytearray row fails instead of shrinking the buffer."""
        codec = FlatteningCodec([[1, 2], bytearray(b"ab"), [3, 4]], PrimitiveType.INT32)
        with pytest.raises(ConversionError):
            codec.flatten()

    @little_endian_only
    def test_signed_values_in_byte_row(self):
        """Test signed int8 values are stored in a byte row as unsigned bytes."""
        template = [[0, 0], bytearray(2)]
        result = unflatten(b"\xff\x01\xff\x80", template, PrimitiveType.INT8)
        assert result == [[-1, 1], bytearray(b"\xff\x80")]

    @little_endian_only
    def test_wide_values_in_byte_row(self):
        """Test values that do not fit a byte row."""
        with pytest.raises(ConversionError):
            unflatten(struct.pack("<4h", 1, 2, 300, 4), [[0, 0], b"\x00\x00"], PrimitiveType.INT16)

    @little_endian_only
    def test_typecode_mismatch(self):
        """Test float values decoded into an integer array.array row."""
        template = [[0.0, 0.0], array.array("i", [0, 0])]
        with pytest.raises(ConversionError):
            unflatten(struct.pack("<4d", 1.0, 2.0, 3.5, 4.5), template)
