"""Error types for the request path.

Every failure the proxy reports to a caller is a ``ProxyError`` subclass
carrying the HTTP status and the message rendered as ``{"error": message}``.
"""

from typing import Any, Optional

from fastapi.responses import JSONResponse


class ProxyError(Exception):
    """Base exception for caller-visible proxy failures."""

    status_code: int = 500
    message: str = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        if message is not None:
            self.message = message
        super().__init__(self.message)

    def to_response(self) -> JSONResponse:
        """Convert to a JSON error response."""
        return JSONResponse(status_code=self.status_code, content={"error": self.message})


class MissingKey(ProxyError):
    status_code = 400
    message = "API key is required"


class InvalidKey(ProxyError):
    status_code = 403
    message = "Invalid API key"


class Deactivated(ProxyError):
    status_code = 403
    message = "API key is deactivated"


class RateLimited(ProxyError):
    status_code = 429
    message = "Rate limit exceeded. Try again later."

    def __init__(self, retry_after: int = 60):
        self.retry_after = retry_after
        super().__init__()

    def to_response(self) -> JSONResponse:
        return JSONResponse(
            status_code=self.status_code,
            content={"error": self.message, "retry_after": self.retry_after},
            headers={"Retry-After": str(self.retry_after)},
        )


class BackendUnavailable(ProxyError):
    status_code = 500
    message = "Error making request to Ollama API"


class BackendError(ProxyError):
    """The backend answered with a non-2xx status; that status is passed through."""

    def __init__(self, status_code: int, body: Any):
        self.status_code = status_code
        self.body = body
        if isinstance(body, dict) and isinstance(body.get("error"), str):
            message = body["error"]
        else:
            message = str(body) if body else f"Ollama API returned {status_code}"
        super().__init__(message)

    def to_response(self) -> JSONResponse:
        if isinstance(self.body, dict):
            return JSONResponse(status_code=self.status_code, content=self.body)
        return JSONResponse(status_code=self.status_code, content={"error": self.message})


class BackendProtocolError(ProxyError):
    status_code = 500
    message = "Invalid response from Ollama API"


class InternalStoreError(ProxyError):
    status_code = 500
    message = "Internal server error"


class StreamInterrupted(Exception):
    """The backend stream failed after the response headers were sent.

    Raised out of the streaming body so the server aborts the connection; the
    caller sees a truncated ndjson stream.
    """
