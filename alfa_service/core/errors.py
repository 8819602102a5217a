"""
Domain-specific exceptions for the ALFA compiler service.

These exceptions describe failures of the language server bridge and of
the HTTP surface in front of it. They are mapped to HTTP status codes in
the API layer.
"""

from typing import Any


class AlfaServiceError(Exception):
    """Base exception for all ALFA compiler service errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(AlfaServiceError):
    """
    Raised when an HTTP request is malformed.

    Examples:
    - Wrong Content-Type
    - Empty body
    - Invalid JSON or a file entry without fileName/content

    HTTP Status: 400 Bad Request
    """

    pass


class InputNotFoundError(AlfaServiceError):
    """
    Raised when a compile input path does not reference an existing file.

    The cycle is aborted before anything is sent to the language server.

    HTTP Status: 400 Bad Request
    """

    pass


class CompilationError(AlfaServiceError):
    """
    Raised when the language server reported error diagnostics.

    The message lists every error with a 1-based line and column and is
    surfaced verbatim to the caller.

    HTTP Status: 400 Bad Request
    """

    pass


class SpawnError(AlfaServiceError):
    """
    Raised when the language server process cannot be started.

    Examples:
    - Server jar missing
    - Executable not found or not executable
    - Process started without usable stdin/stdout

    HTTP Status: 503 Service Unavailable
    """

    pass


class HandshakeFailedError(AlfaServiceError):
    """
    Raised when the LSP initialize handshake fails.

    The server answered with an error, closed the channel, or did not
    answer in time.

    HTTP Status: 503 Service Unavailable
    """

    pass


class AlreadyInitializedError(AlfaServiceError):
    """
    Raised when initialize is called on an initialized connection.

    HTTP Status: 409 Conflict
    """

    pass


class NotReadyError(AlfaServiceError):
    """
    Raised when a compile is requested before the handshake completed.

    HTTP Status: 503 Service Unavailable
    """

    pass


class ConnectionClosedError(AlfaServiceError):
    """
    Raised when the language server channel closes under a pending request
    or during a compile cycle (usually a crashed process).

    HTTP Status: 503 Service Unavailable
    """

    pass


class ResponseError(AlfaServiceError):
    """
    Raised when the language server answers a request with a JSON-RPC error.

    HTTP Status: 502 Bad Gateway
    """

    def __init__(
        self,
        message: str,
        code: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.code = code
        super().__init__(message, details)


class ProtocolError(AlfaServiceError):
    """
    Raised when a malformed frame or message is read from the language server.

    HTTP Status: 502 Bad Gateway
    """

    pass


class RequestTimeoutError(AlfaServiceError):
    """
    Raised when the language server does not answer a request in time.

    HTTP Status: 504 Gateway Timeout
    """

    pass


class CompileTimeoutError(AlfaServiceError):
    """
    Raised when a compile cycle exceeds its end-to-end bound.

    HTTP Status: 504 Gateway Timeout
    """

    pass


class CleanupError(AlfaServiceError):
    """
    Raised when the compilation output directory cannot be cleared.

    Per-entry failures are listed in ``details["failures"]``. Stale files
    would be misattributed to the next compile, so this is fatal for the
    cycle.

    HTTP Status: 500 Internal Server Error
    """

    pass


class OutputReadError(AlfaServiceError):
    """
    Raised when the compilation output directory cannot be listed.

    HTTP Status: 500 Internal Server Error
    """

    pass


# HTTP Status Code Mapping
ERROR_STATUS_MAP = {
    ValidationError: 400,
    InputNotFoundError: 400,
    CompilationError: 400,
    SpawnError: 503,
    HandshakeFailedError: 503,
    AlreadyInitializedError: 409,
    NotReadyError: 503,
    ConnectionClosedError: 503,
    ResponseError: 502,
    ProtocolError: 502,
    RequestTimeoutError: 504,
    CompileTimeoutError: 504,
    CleanupError: 500,
    OutputReadError: 500,
}


def get_status_code(error: Exception) -> int:
    """
    Get the HTTP status code for a given exception.

    Args:
        error: The exception instance

    Returns:
        HTTP status code (defaults to 500 for unknown errors)
    """
    return ERROR_STATUS_MAP.get(type(error), 500)
