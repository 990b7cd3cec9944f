"""The narrow interface the codecs use to reach a native storage library."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from native_marshal.types import TypeClass


@runtime_checkable
class NativeLibrary(Protocol):
    """Operations a storage backend must provide.

    Type descriptors and dataset handles are opaque integers owned by the
    library. Addresses refer to foreign memory: memory the library allocates
    and frees, which the codecs may only touch through ``read_memory``,
    ``read_string`` and ``write_memory``.
    """

    # Type descriptor queries

    def get_class(self, type_id: int) -> TypeClass: ...

    def get_size(self, type_id: int) -> int: ...

    def get_super(self, type_id: int) -> int:
        """Return the element type of a variable-length or array type."""
        ...

    def get_array_dims(self, type_id: int) -> tuple[int, ...]:
        """Return the dimensions of an array type."""
        ...

    def is_variable_str(self, type_id: int) -> bool: ...

    def get_nmembers(self, type_id: int) -> int:
        """Return the number of members of a compound or enum type."""
        ...

    def get_member_name(self, type_id: int, index: int) -> str: ...

    def get_member_offset(self, type_id: int, index: int) -> int: ...

    def get_member_type(self, type_id: int, index: int) -> int: ...

    def get_member_value(self, type_id: int, index: int) -> int:
        """Return the integer value of an enum member."""
        ...

    # Buffer I/O

    def read(self, handle: int, type_id: int, out: bytearray) -> None:
        """Fill ``out`` with the elements stored under ``handle``.

        Variable-length payloads referenced from ``out`` are allocated by
        the library and stay valid until ``reclaim`` is called on ``out``.
        """
        ...

    def write(self, handle: int, type_id: int, data: bytes | bytearray) -> None: ...

    def reclaim(self, type_id: int, count: int, buffer: bytes | bytearray) -> None:
        """Free every foreign payload referenced from ``count`` elements of ``buffer``."""
        ...

    # Foreign memory

    def allocate(self, nbytes: int) -> int: ...

    def free(self, address: int) -> None:
        """Release a block obtained from ``allocate``."""
        ...

    def read_memory(self, address: int, nbytes: int) -> bytes: ...

    def read_string(self, address: int) -> bytes:
        """Return the bytes at ``address`` up to, not including, the first NUL."""
        ...

    def write_memory(self, address: int, data: bytes | bytearray) -> None: ...
