"""Exception types raised by the marshalling codecs."""


class MarshalError(Exception):
    """Base class for errors raised while converting to or from byte buffers."""


class ShapeError(MarshalError, ValueError):
    """The input is not a rectangular array of a supported element type."""


class SizeMismatchError(MarshalError, ValueError):
    """A byte buffer does not have the length its shape or layout requires."""


class ConversionError(MarshalError):
    """A value could not be converted, or the output could not be allocated."""


class LayoutError(MarshalError, ValueError):
    """A record does not match the compound field layout it is packed with."""


class UnsupportedFieldError(MarshalError, TypeError):
    """A compound layout contains a field class the record codec cannot handle."""


class UnsupportedTypeError(MarshalError, TypeError):
    """A type descriptor has no counterpart in the element type model."""


class ForeignMemoryError(MarshalError):
    """An address does not refer to live foreign memory."""


class InternalInvariantViolation(AssertionError):
    """A traversal finished without visiting every element.

    This indicates a defect in the codec rather than bad input, so it is
    deliberately not a MarshalError.
    """
