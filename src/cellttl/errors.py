"""Error definitions for cellttl."""


class CellTTLError(Exception):
    """Base class for every error raised by cellttl.

    Attributes:
        code: Short machine-readable error code (e.g. "BulkLimitExceeded").
        message: Human-readable error description.
    """

    def __init__(self, code: str, message: str) -> None:
        """Initialize the error.

        Args:
            code: Error code.
            message: Error description.
        """
        super().__init__(message)
        self.code = code
        self.message = message


# -- Common pre-defined errors ------------------------------------------------


class BulkLimitExceeded(CellTTLError):
    """A bulk insert carried more items than the configured limit allows."""

    def __init__(self, size: int, limit: int, with_ttl: bool = False) -> None:
        kind = "bulk insert with TTL" if with_ttl else "bulk insert"
        super().__init__(
            code="BulkLimitExceeded",
            message=f"{kind} of {size} items exceeds the limit of {limit}",
        )
        self.size = size
        self.limit = limit
        self.with_ttl = with_ttl


class InvalidName(CellTTLError):
    """A table, family, column or row name cannot be used."""

    def __init__(self, kind: str, value: str, reason: str = "") -> None:
        message = f"Invalid {kind} name: {value!r}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(code="InvalidName", message=message)
        self.kind = kind
        self.value = value


class TableStoreError(CellTTLError):
    """The table store rejected an operation."""

    def __init__(self, message: str = "Table store error") -> None:
        super().__init__(code="TableStoreError", message=message)


class InitializationError(CellTTLError):
    """The backing instance or tables could not be prepared."""

    def __init__(self, message: str = "Initialization failed") -> None:
        super().__init__(code="InitializationError", message=message)

