"""Lexer for the type descriptor DSL.

Descriptor text is built from type names, a few constructor keywords,
integers (widths, offsets, counts and enum values) and single-character
punctuation::

    compound { id: int32, tags: array<string, 4> @ 8 }

Punctuation is declared as ply ``literals``, so the grammar names each
mark by the character itself.
"""

import ply.lex as lex


class TypeLexer:
    """Splits descriptor text into tokens."""

    # Constructor keywords; any other word is a type or member name
    reserved = {
        "define": "DEFINE",
        "as": "AS",
        "vlen": "VLEN",
        "array": "ARRAY",
        "enum": "ENUM",
        "compound": "COMPOUND",
    }

    tokens = ["IDENTIFIER", "INTEGER"] + list(reserved.values())

    # {} members, <> element types, () widths, @ offsets
    literals = "{}<>(),:=@"

    t_ignore = " \t\r"
    t_ignore_COMMENT = r"\#[^\n]*"

    def __init__(self) -> None:
        self.lexer: lex.Lexer = None  # type: ignore

    def t_INTEGER(self, t: lex.LexToken) -> lex.LexToken:
        r"-?\d+"
        t.value = int(t.value)
        return t

    def t_IDENTIFIER(self, t: lex.LexToken) -> lex.LexToken:
        r"[a-zA-Z_][a-zA-Z0-9_]*"
        t.type = self.reserved.get(t.value, "IDENTIFIER")
        return t

    def t_NEWLINE(self, t: lex.LexToken) -> None:
        r"\n+"
        t.lexer.lineno += len(t.value)

    def t_error(self, t: lex.LexToken) -> None:
        raise SyntaxError(
            f"Illegal character '{t.value[0]}' at line {t.lineno}, column {self.column(t)}"
        )

    def column(self, t: lex.LexToken) -> int:
        """Return the 1-based column of a token within its line."""
        line_start = self.lexer.lexdata.rfind("\n", 0, t.lexpos) + 1
        return t.lexpos - line_start + 1

    def build(self, **kwargs) -> None:  # type: ignore
        self.lexer = lex.lex(module=self, **kwargs)

    def input(self, data: str) -> None:
        """Start tokenizing ``data`` from line 1."""
        self.lexer.lineno = 1
        self.lexer.input(data)

    def token(self) -> lex.LexToken | None:
        return self.lexer.token()

    def tokenize(self, data: str) -> list[lex.LexToken]:
        """Return every token of ``data``."""
        self.input(data)
        return list(iter(self.token, None))
