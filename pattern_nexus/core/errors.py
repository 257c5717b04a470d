"""
Exceptions raised by the pattern store.

Everything the store raises derives from PatternStoreError so callers
can catch a single type. Backend exceptions are chained as __cause__.
"""


class PatternStoreError(Exception):
    """Base class for pattern store errors."""


class PatternValidationError(PatternStoreError, ValueError):
    """Input rejected before any state was touched."""


class EncoderError(PatternStoreError):
    """The embedding provider failed to encode a context."""


class PersistenceError(PatternStoreError):
    """The backing database failed; the transaction was rolled back."""


class StoreClosedError(PatternStoreError):
    """Operation attempted on a closed store."""
