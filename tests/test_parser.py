"""Tests for the type descriptor DSL."""

import pytest

from native_marshal.errors import LayoutError
from native_marshal.parsing import TypeParser
from native_marshal.parsing.type_lexer import TypeLexer
from native_marshal.types import (
    FLOAT64,
    INT8,
    INT32,
    ArrayType,
    CompoundType,
    EnumType,
    FixedStringType,
    PrimitiveType,
    ReferenceType,
    VariableLengthType,
    VariableStringType,
)


class TestTypeLexer:
    """Tests for the type lexer."""

    def test_tokenize_vlen(self):
        """Test tokenizing a variable-length type."""
        lexer = TypeLexer()
        lexer.build()

        tokens = lexer.tokenize("vlen<int32>")
        assert [t.type for t in tokens] == ["VLEN", "<", "IDENTIFIER", ">"]

    def test_tokenize_member_offset(self):
        """Test tokenizing a compound member with an offset."""
        lexer = TypeLexer()
        lexer.build()

        tokens = lexer.tokenize("x: float64 @ 8")
        assert [t.type for t in tokens] == ["IDENTIFIER", ":", "IDENTIFIER", "@", "INTEGER"]
        assert tokens[-1].value == 8

    def test_comments_ignored(self):
        """Test that comments and newlines produce no tokens."""
        lexer = TypeLexer()
        lexer.build()

        tokens = lexer.tokenize("# a comment\nint8\n")
        assert [t.type for t in tokens] == ["IDENTIFIER"]

    def test_illegal_character(self):
        """Test that an illegal character raises."""
        lexer = TypeLexer()
        lexer.build()

        with pytest.raises(SyntaxError):
            lexer.tokenize("int8 $")

    def test_tokenize_array(self):
        """Test tokenizing a fixed-size array type."""
        lexer = TypeLexer()
        lexer.build()

        tokens = lexer.tokenize("array<string(4), 3>")
        assert [t.type for t in tokens] == [
            "ARRAY", "<", "IDENTIFIER", "(", "INTEGER", ")", ",", "INTEGER", ">"
        ]

    def test_illegal_character_position(self):
        """Test the error names the line and column of the character."""
        lexer = TypeLexer()
        lexer.build()

        with pytest.raises(SyntaxError, match="line 2, column 3"):
            lexer.tokenize("int8\n  $")


class TestTypeParser:
    """Tests for the type parser."""

    def test_primitive(self):
        """Test parsing a primitive name."""
        assert TypeParser().parse("int32") == INT32

    def test_strings(self):
        """Test variable and fixed strings."""
        parser = TypeParser()
        assert parser.parse("string") == VariableStringType()
        assert parser.parse("string(16)") == FixedStringType(16)

    def test_references(self):
        """Test default and sized references."""
        parser = TypeParser()
        assert parser.parse("reference") == ReferenceType()
        assert parser.parse("reference(12)") == ReferenceType(12)

    def test_nested_vlen(self):
        """Test nested variable-length types."""
        assert TypeParser().parse("vlen<vlen<float64>>") == VariableLengthType(
            VariableLengthType(FLOAT64)
        )

    def test_enum_auto_values(self):
        """Test enum members continue numbering after explicit values."""
        result = TypeParser().parse("enum<int8> { A, B = 5, C, }")
        assert isinstance(result, EnumType)
        assert result.backing is PrimitiveType.INT8
        assert result.members == (("A", 0), ("B", 5), ("C", 6))

    def test_enum_requires_integer_backing(self):
        """Test a float backing type is rejected."""
        with pytest.raises(ValueError):
            TypeParser().parse("enum<float32> { A }")

    def test_compound_packed_offsets(self):
        """Test members are laid out back to back."""
        result = TypeParser().parse("compound { id: int32, value: float64 }")
        assert isinstance(result, CompoundType)
        assert [(m.name, m.offset) for m in result.members] == [("id", 0), ("value", 4)]
        assert result.size_bytes == 12

    def test_compound_explicit_offsets(self):
        """Test explicit offsets and the size they imply."""
        result = TypeParser().parse("compound { id: int8, value: float64 @ 8, }")
        assert result.member("value").offset == 8
        assert result.size_bytes == 16

    def test_definitions(self):
        """Test later definitions can use earlier ones."""
        types = TypeParser().parse_definitions(
            """
            define Point as compound { x: float64, y: float64 }
            define Path as vlen<Point>
            """
        )
        assert list(types) == ["Point", "Path"]
        assert types["Path"] == VariableLengthType(types["Point"])
        assert types["Point"].size_bytes == 16

    def test_parse_returns_last_definition(self):
        """Test parse on a definition list returns the last type."""
        result = TypeParser().parse("define Small as int8\ndefine Seq as vlen<Small>")
        assert result == VariableLengthType(INT8)

    def test_unknown_type(self):
        """Test referring to an undefined name."""
        with pytest.raises(KeyError):
            TypeParser().parse("vlen<Missing>")

    def test_redefinition(self):
        """Test defining a name twice."""
        with pytest.raises(ValueError):
            TypeParser().parse_definitions("define A as int8\ndefine A as int16")

    def test_width_on_primitive(self):
        """Test that only strings and references take a width."""
        with pytest.raises(ValueError):
            TypeParser().parse("int32(4)")

    def test_syntax_error(self):
        """Test malformed input."""
        with pytest.raises(SyntaxError):
            TypeParser().parse("compound { id int32 }")

    def test_syntax_error_position(self):
        """Test a syntax error names the column of the offending token."""
        with pytest.raises(SyntaxError, match="column 15"):
            TypeParser().parse("compound { id int32 }")

    def test_empty_input(self):
        """Test empty input."""
        with pytest.raises(SyntaxError):
            TypeParser().parse("")

    def test_parser_is_reusable(self):
        """Test definitions do not leak between parses."""
        parser = TypeParser()
        parser.parse_definitions("define A as int8")
        with pytest.raises(KeyError):
            parser.parse("vlen<A>")

    def test_array(self):
        """Test a fixed-size array and its inline size."""
        result = TypeParser().parse("array<int32, 3>")
        assert result == ArrayType(INT32, 3)
        assert result.size_bytes == 12
        assert not result.is_variable

    def test_array_of_strings(self):
        """Test an array of variable strings holds addresses."""
        result = TypeParser().parse("array<string, 2>")
        assert result.size_bytes == 16
        assert result.is_variable

    def test_array_member(self):
        """Test an array inside a compound takes its full inline size."""
        result = TypeParser().parse("compound { xs: array<int16, 3>, id: int32 }")
        assert result.member("id").offset == 6
        assert result.size_bytes == 10

    def test_array_length_must_be_positive(self):
        """Test a zero-length array."""
        with pytest.raises(ValueError):
            TypeParser().parse("array<int32, 0>")

    def test_array_of_arrays(self):
        """Test arrays cannot hold arrays."""
        with pytest.raises(ValueError):
            TypeParser().parse("array<array<int8, 2>, 2>")

    def test_overlapping_members(self):
        """Test explicit offsets that overlap an earlier member."""
        with pytest.raises(LayoutError):
            TypeParser().parse("compound { a: int32 @ 0, b: int32 @ 2 }")

    def test_overlap_with_packed_member(self):
        """Test an explicit offset inside a later packed member."""
        with pytest.raises(LayoutError):
            TypeParser().parse("compound { a: int64 @ 8, b: int32 @ 0, c: int64 }")

    def test_adjacent_members_do_not_overlap(self):
        """Test members that touch but do not share bytes."""
        result = TypeParser().parse("compound { b: int32 @ 4, a: int32 @ 0 }")
        assert result.size_bytes == 8
