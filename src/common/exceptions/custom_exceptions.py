"""Custom application-wide exceptions."""


class ApplicationError(Exception):
    """Base class for application-specific errors."""

    def __init__(
        self, message: str = "An application error occurred", original_exception: Exception | None = None
    ) -> None:
        super().__init__(message)
        self.original_exception = original_exception
        self.message = message

    def __str__(self) -> str:
        if self.original_exception:
            return f"{self.message} (Original error: {self.original_exception})"
        return self.message


class DatabaseError(ApplicationError):
    """Exception raised for errors during database operations."""

    def __init__(self, message: str = "Database operation failed", original_exception: Exception | None = None) -> None:
        super().__init__(message, original_exception)
        self.message = f"Database Error: {message}"


class ValidationError(ApplicationError):
    """Raised when a request is rejected before any write takes place."""

    def __init__(self, message: str = "Invalid request", field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class InvalidTypeError(ValidationError):
    """Transaction type is not one of the supported movement types."""

    def __init__(self, value: object) -> None:
        super().__init__(f"Transaction type must be 'import' or 'export', got {value!r}", field="type")
        self.value = value


class InvalidQuantityError(ValidationError):
    """Quantity is missing, not an integer, or not positive."""

    def __init__(self, message: str = "Quantity must be a positive integer", value: object = None) -> None:
        super().__init__(message, field="quantity")
        self.value = value


class ConflictError(ApplicationError):
    """Request conflicts with the current stored state."""


class DuplicateKeyError(ConflictError):
    """A product with the same SKU already exists."""

    def __init__(self, sku: str | None, original_exception: Exception | None = None) -> None:
        super().__init__(f"SKU '{sku}' already exists", original_exception)
        self.sku = sku


class InsufficientStockError(ConflictError):
    """A movement would take on-hand stock below zero."""

    def __init__(self, current: int, requested: int, sku: str | None = None) -> None:
        target = f" for SKU '{sku}'" if sku else ""
        super().__init__(f"Insufficient stock{target}: current quantity {current}, requested {requested}")
        self.current = current
        self.requested = requested
        self.sku = sku


class ReferentialIntegrityError(ConflictError):
    """A record cannot be removed while other records still reference it."""


class NotFoundError(ApplicationError):
    """Requested entity does not exist."""

    def __init__(self, entity: str, identifier: object) -> None:
        super().__init__(f"{entity} {identifier!r} not found")
        self.entity = entity
        self.identifier = identifier
