"""Parser for the type descriptor DSL.

The DSL describes the element types the codecs understand::

    define Point as compound { x: float64, y: float64 }
    define Track as compound {
        name: string,
        label: string(8) @ 8,
        points: vlen<Point>,
        window: array<float64, 4>,
    }

A document is either a single type expression or a list of ``define``
statements. Compound members are laid out back to back unless an explicit
``@ offset`` is given.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import ply.yacc as yacc

from native_marshal.errors import LayoutError
from native_marshal.parsing.type_lexer import TypeLexer
from native_marshal.types import (
    PRIMITIVE_TYPE_NAMES,
    ArrayType,
    CompoundMember,
    CompoundType,
    ElementType,
    EnumType,
    FixedStringType,
    NumericType,
    ReferenceType,
    VariableLengthType,
    VariableStringType,
)


@dataclass
class MemberSpec:
    """A compound member before its offset is assigned."""

    name: str
    element_type: ElementType
    offset: int | None = None


@dataclass
class EnumMemberSpec:
    """An enum member before its value is assigned."""

    name: str
    explicit_value: int | None = None


@dataclass
class Definition:
    """A named type introduced by a ``define`` statement."""

    name: str
    element_type: ElementType


class TypeParser:
    """Parser for the type descriptor DSL."""

    tokens = TypeLexer.tokens

    def __init__(self) -> None:
        self.lexer = TypeLexer()
        self.lexer.build()
        self.parser: yacc.LRParser = None  # type: ignore
        self._definitions: dict[str, ElementType] = {}

    def p_document_single(self, p: yacc.YaccProduction) -> None:
        """document : type_expr"""
        p[0] = p[1]

    def p_document_definitions(self, p: yacc.YaccProduction) -> None:
        """document : definition_list"""
        p[0] = p[1]

    def p_definition_list_single(self, p: yacc.YaccProduction) -> None:
        """definition_list : definition"""
        p[0] = [p[1]]

    def p_definition_list_multiple(self, p: yacc.YaccProduction) -> None:
        """definition_list : definition_list definition"""
        p[0] = p[1] + [p[2]]

    def p_definition(self, p: yacc.YaccProduction) -> None:
        """definition : DEFINE IDENTIFIER AS type_expr"""
        name = p[2]
        if name in self._definitions or name in _BUILTIN_NAMES:
            raise ValueError(f"Type '{name}' is already defined")
        # Later definitions may refer to this one
        self._definitions[name] = p[4]
        p[0] = Definition(name=name, element_type=p[4])

    def p_type_expr_name(self, p: yacc.YaccProduction) -> None:
        """type_expr : IDENTIFIER"""
        p[0] = self._resolve_name(p[1])

    def p_type_expr_sized(self, p: yacc.YaccProduction) -> None:
        """type_expr : IDENTIFIER '(' INTEGER ')'"""
        name, width = p[1], p[3]
        if width <= 0:
            raise ValueError(f"Width of '{name}' must be positive, got {width}")
        if name == "string":
            p[0] = FixedStringType(width)
        elif name == "reference":
            p[0] = ReferenceType(width)
        else:
            raise ValueError(f"Type '{name}' does not take a width")

    def p_type_expr_vlen(self, p: yacc.YaccProduction) -> None:
        """type_expr : VLEN '<' type_expr '>'"""
        p[0] = VariableLengthType(p[3])

    def p_type_expr_array(self, p: yacc.YaccProduction) -> None:
        """type_expr : ARRAY '<' type_expr ',' INTEGER '>'"""
        element_type, length = p[3], p[5]
        if length <= 0:
            raise ValueError(f"Array length must be positive, got {length}")
        if isinstance(element_type, ArrayType):
            raise ValueError("Arrays of arrays are not supported")
        p[0] = ArrayType(element_type, length)

    def p_type_expr_enum(self, p: yacc.YaccProduction) -> None:
        """type_expr : ENUM '<' IDENTIFIER '>' '{' enum_member_list '}'
                     | ENUM '<' IDENTIFIER '>' '{' enum_member_list ',' '}'"""
        p[0] = self._build_enum(p[3], p[6])

    def p_type_expr_compound(self, p: yacc.YaccProduction) -> None:
        """type_expr : COMPOUND '{' member_list '}'
                     | COMPOUND '{' member_list ',' '}'"""
        p[0] = self._build_compound(p[3])

    def p_enum_member_list_single(self, p: yacc.YaccProduction) -> None:
        """enum_member_list : enum_member"""
        p[0] = [p[1]]

    def p_enum_member_list_multiple(self, p: yacc.YaccProduction) -> None:
        """enum_member_list : enum_member_list ',' enum_member"""
        p[0] = p[1] + [p[3]]

    def p_enum_member_bare(self, p: yacc.YaccProduction) -> None:
        """enum_member : IDENTIFIER"""
        p[0] = EnumMemberSpec(name=p[1])

    def p_enum_member_value(self, p: yacc.YaccProduction) -> None:
        """enum_member : IDENTIFIER '=' INTEGER"""
        p[0] = EnumMemberSpec(name=p[1], explicit_value=p[3])

    def p_member_list_single(self, p: yacc.YaccProduction) -> None:
        """member_list : member"""
        p[0] = [p[1]]

    def p_member_list_multiple(self, p: yacc.YaccProduction) -> None:
        """member_list : member_list ',' member"""
        p[0] = p[1] + [p[3]]

    def p_member(self, p: yacc.YaccProduction) -> None:
        """member : IDENTIFIER ':' type_expr"""
        p[0] = MemberSpec(name=p[1], element_type=p[3])

    def p_member_offset(self, p: yacc.YaccProduction) -> None:
        """member : IDENTIFIER ':' type_expr '@' INTEGER"""
        p[0] = MemberSpec(name=p[1], element_type=p[3], offset=p[5])

    def p_error(self, p: yacc.YaccProduction) -> None:
        if p:
            raise SyntaxError(
                f"Syntax error at '{p.value}' (line {p.lineno}, column {self.lexer.column(p)})"
            )
        else:
            raise SyntaxError("Syntax error at end of input")

    def build(self, **kwargs: Any) -> None:
        """Build the parser."""
        self.parser = yacc.yacc(module=self, **kwargs)

    def _parse(self, data: str) -> ElementType | list[Definition]:
        if self.parser is None:
            self.build(debug=False, write_tables=False)
        self._definitions = {}
        self.lexer.input(data)
        result = self.parser.parse(data, lexer=self.lexer.lexer)
        if result is None:
            raise SyntaxError("Empty type description")
        return result

    def parse(self, data: str) -> ElementType:
        """Parse text and return the type it describes.

        When the text holds ``define`` statements, the last definition is
        returned.

        Args:
            data: Type descriptor text.

        Returns:
            The described element type.
        """
        result = self._parse(data)
        if isinstance(result, list):
            return result[-1].element_type
        return result

    def parse_definitions(self, data: str) -> dict[str, ElementType]:
        """Parse ``define`` statements and return the named types in order."""
        result = self._parse(data)
        if not isinstance(result, list):
            raise SyntaxError("Expected one or more 'define' statements")
        return {d.name: d.element_type for d in result}

    def _resolve_name(self, name: str) -> ElementType:
        """Resolve a bare identifier to a builtin or previously defined type."""
        if name in PRIMITIVE_TYPE_NAMES:
            return NumericType(PRIMITIVE_TYPE_NAMES[name])
        if name == "string":
            return VariableStringType()
        if name == "reference":
            return ReferenceType()
        if name in self._definitions:
            return self._definitions[name]
        raise KeyError(f"Unknown type: {name}")

    def _build_enum(self, backing_name: str, specs: list[EnumMemberSpec]) -> EnumType:
        backing = PRIMITIVE_TYPE_NAMES.get(backing_name)
        if backing is None or not backing.is_integer:
            raise ValueError(f"Enum backing type must be an integer type, got '{backing_name}'")

        members: list[tuple[str, int]] = []
        seen: set[str] = set()
        auto_value = 0
        for spec in specs:
            if spec.name in seen:
                raise ValueError(f"Duplicate enum member: {spec.name}")
            seen.add(spec.name)
            if spec.explicit_value is not None:
                value = spec.explicit_value
            else:
                value = auto_value
            auto_value = value + 1
            members.append((spec.name, value))

        return EnumType(backing=backing, members=tuple(members))

    def _build_compound(self, specs: list[MemberSpec]) -> CompoundType:
        members: list[CompoundMember] = []
        seen: set[str] = set()
        cursor = 0
        for spec in specs:
            if spec.name in seen:
                raise ValueError(f"Duplicate compound member: {spec.name}")
            seen.add(spec.name)
            offset = cursor if spec.offset is None else spec.offset
            if offset < 0:
                raise ValueError(f"Member '{spec.name}' has a negative offset")
            member = CompoundMember(name=spec.name, offset=offset, element_type=spec.element_type)
            members.append(member)
            cursor = member.end

        ordered = sorted(members, key=lambda m: m.offset)
        for prev, member in zip(ordered, ordered[1:]):
            if member.offset < prev.end:
                raise LayoutError(
                    f"Member '{member.name}' at offset {member.offset} overlaps "
                    f"'{prev.name}', which ends at {prev.end}"
                )

        return CompoundType(members=tuple(members))


_BUILTIN_NAMES = set(PRIMITIVE_TYPE_NAMES) | {"string", "reference"}
