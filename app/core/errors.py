"""Error taxonomy shared by the generation engine, editor and stores."""


class EngineError(Exception):
    """Base class for engine errors. ``code`` is what clients see on the wire."""

    code = "engine_error"

    def __init__(self, message: str, *, code: str | None = None):
        super().__init__(message)
        if code:
            self.code = code


class ValidationError(EngineError):
    """Request is malformed or out of bounds. Raised before any event is emitted."""

    code = "validation_error"


class NotFoundError(EngineError):
    """Referenced report or section does not exist."""

    code = "not_found"


class ProviderError(EngineError):
    """The model provider failed to open or continue a stream."""

    code = "provider_error"


class ParseError(EngineError):
    """Model output could not be parsed into the expected shape."""

    code = "parse_error"


class ConflictError(EngineError):
    """Another run owns the report, or an edit lost the optimistic commit race."""

    code = "conflict"


class StoreError(EngineError):
    """The content store could not complete a read or write."""

    code = "store_error"


class RunCancelledError(EngineError):
    """A run stopped before completing, on request or at its deadline."""

    code = "cancelled"
