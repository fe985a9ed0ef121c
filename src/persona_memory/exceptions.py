"""
Memory engine exceptions.

Disabled personas are not an error: they produce explicit no-op outcomes.
"""


class MemoryEngineError(Exception):
    """Base exception for the memory engine."""

    pass


class EmbeddingFailure(MemoryEngineError):
    """The embedder was unreachable or returned a malformed vector."""

    def __init__(self, message: str, text: str | None = None):
        self.text = text
        super().__init__(message)


class StorageFailure(MemoryEngineError):
    """A persistence operation failed; nothing was partially written."""

    def __init__(self, message: str, operation: str | None = None):
        self.operation = operation
        super().__init__(message)


class InvalidInput(MemoryEngineError):
    """Input was rejected before any side effect."""

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(f"Invalid input for '{field}': {message}")
