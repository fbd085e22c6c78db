"""Exception hierarchy for the stream cursor.

Every error raised by the cursor core and its collaborators derives from
CursorError so the host driver can tell cursor failures apart from bugs.
"""


class CursorError(Exception):
    """Base class for all stream cursor errors."""
    pass


class InvalidConfiguration(CursorError):
    """Raised when configuration or a partition set is invalid.

    Construction-time error. Never retried.
    """
    pass


class CeilingUnavailable(CursorError):
    """Raised when the high-water mark cannot be fetched and stale data may not be reused."""
    pass


class NonMonotonicCeiling(CursorError):
    """Raised when a position would move a partition backward."""
    pass


class TransportError(CursorError):
    """Raised by broker collaborators on network, auth or protocol failure."""
    pass


class DataLossError(CursorError):
    """Raised when requested records are no longer retained by the broker."""
    pass


class SourceStopped(CursorError):
    """Raised when a stopped source is asked for data."""
    pass
