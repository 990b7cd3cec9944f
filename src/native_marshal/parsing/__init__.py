"""Parsing module for the type descriptor DSL."""

from native_marshal.parsing.type_parser import TypeParser

__all__ = [
    "TypeParser",
]
