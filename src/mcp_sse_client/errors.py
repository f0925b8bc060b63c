"""Exceptions raised by the MCP SSE client."""

from typing import Any


class McpClientError(Exception):
    """Base exception for all client errors."""


class SseConnectionError(McpClientError):
    """The event stream could not be opened in either decode mode."""


class DeliveryError(McpClientError):
    """A message could not be delivered to the submission endpoint."""

    def __init__(self, status_code: int | None, body: str, url: str, message: str | None = None) -> None:
        """Initialize the error.

        Args:
            status_code: HTTP status returned by the submission endpoint, or
                None when no response was received.
            body: Response body text.
            url: The URL the message was posted to.
            message: Overrides the default error message.
        """
        self.status_code = status_code
        self.body = body
        self.url = url
        super().__init__(message or f"POST {url} failed: {status_code} {body}")


class DeliveryTransportError(DeliveryError):
    """The POST failed before any HTTP response arrived (connection error, timeout)."""

    def __init__(self, url: str, error: Exception) -> None:
        self.error = error
        super().__init__(None, "", url, f"POST {url} failed: {type(error).__name__}: {error}")


class JsonRpcError(McpClientError):
    """The server answered a request with a JSON-RPC error object."""

    def __init__(self, message: str, code: int | None = None, data: Any = None) -> None:
        self.message = message
        self.code = code
        self.data = data
        super().__init__(message)

    @classmethod
    def from_payload(cls, error: Any) -> "JsonRpcError":
        """Build the exception from the ``error`` member of a response."""
        if not isinstance(error, dict):
            return cls("Unknown error", data=error)
        message = error.get("message")
        code = error.get("code")
        return cls(
            str(message) if message is not None else "Unknown error",
            code=code if isinstance(code, int) else None,
            data=error.get("data"),
        )


class RequestTimeoutError(McpClientError, TimeoutError):
    """No response arrived for a request before its timer fired."""

    def __init__(self, request_id: str, timeout: float) -> None:
        self.request_id = request_id
        self.timeout = timeout
        super().__init__(f"Request {request_id} timed out after {timeout:g}s")


class ClientDisposedError(McpClientError):
    """The client was closed while the operation was pending, or before it started."""


class ClientStateError(McpClientError):
    """The operation is not valid in the client's current state."""


class DuplicateRequestIdError(McpClientError):
    """A request id is already registered for an outstanding call."""
