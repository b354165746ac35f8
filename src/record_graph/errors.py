from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from record_graph.core.record import Record


class RecordGraphError(Exception):
    """Base class for every error raised by record_graph."""


class ValidationFailed(RecordGraphError):
    """Raised by ``save_or_raise`` when the record graph does not validate."""

    def __init__(self, record: "Record") -> None:
        self.record = record
        self.errors = record.errors
        messages = ", ".join(record.errors.full_messages()) or "unknown error"
        super().__init__(f"Validation failed: {messages}")


class NotFoundError(RecordGraphError):
    def __init__(self, message: str, model: str | None = None, primary_key: Any = None) -> None:
        super().__init__(message)
        self.model = model
        self.primary_key = primary_key


class TooManyRecordsError(RecordGraphError):
    pass


class StorageError(RecordGraphError):
    """Opaque failure reported by a record store."""


class InvariantViolation(RecordGraphError):
    """Programmer error: the caller broke a rule of the record model."""


class UnknownAttributeError(InvariantViolation, AttributeError):
    def __init__(self, model: str, name: str) -> None:
        super().__init__(f"unknown attribute '{name}' for {model}")
        self.model = model
        self.name = name


class MissingAttributeError(InvariantViolation, AttributeError):
    def __init__(self, model: str, name: str) -> None:
        super().__init__(f"missing attribute '{name}' for {model}")
        self.model = model
        self.name = name


class UnknownAssociationError(InvariantViolation, KeyError):
    def __init__(self, model: str, name: str) -> None:
        super().__init__(f"No association found for name '{name}' on {model}")
        self.model = model
        self.name = name

    def __str__(self) -> str:
        return str(self.args[0])


class RecordDestroyedError(InvariantViolation):
    pass
