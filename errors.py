"""
errors.py
---------
ChartBridge — EHR Patient Dashboard Proxy — Error taxonomy
----------------------------------------------------------
Exception hierarchy shared by the gateways, the EHR client and the session
client. Every error carries the HTTP status it maps to and a public message
that is safe to show to a browser. Remote payloads, stack traces and
credentials never go into ``message``.

    ProxyError
      ├── ConfigurationError   500  missing / malformed settings (fatal at startup)
      ├── ValidationError      400  bad input shape, user-correctable
      ├── AuthError            401  missing / expired / invalid token
      ├── NotFoundError        404  remote resource absent
      ├── RemoteError          *    any other non-2xx from the remote API
      └── UnknownError         500  unexpected exception

Project: ChartBridge — EHR Patient Dashboard Proxy
"""

from typing import Any, List, Optional


class ProxyError(Exception):
    """Base class for every error the proxy knows how to render."""

    status_code: int = 500
    default_message: str = "Internal server error"

    def __init__(self, message: Optional[str] = None, *, status_code: Optional[int] = None) -> None:
        self.message = message or self.default_message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)

    def to_body(self) -> dict:
        """Return the JSON body rendered for this error."""
        return {"error": self.message}


class ConfigurationError(ProxyError):
    """Raised when required settings are missing or malformed."""

    status_code = 500
    default_message = "Environment configuration error"

    def __init__(self, message: Optional[str] = None, *, problems: Optional[List[str]] = None) -> None:
        self.problems = problems or []
        super().__init__(message)


class ValidationError(ProxyError):
    """Raised for bad request input; ``details`` carries field-level feedback."""

    status_code = 400
    default_message = "Invalid input data"

    def __init__(self, message: Optional[str] = None, *, details: Optional[List[Any]] = None) -> None:
        self.details = details
        super().__init__(message)

    def to_body(self) -> dict:
        body = super().to_body()
        if self.details is not None:
            body["details"] = self.details
        return body


class AuthError(ProxyError):
    """Raised when a bearer token is missing, expired or rejected."""

    status_code = 401
    default_message = "Unauthorized"


class NotFoundError(ProxyError):
    """Raised when the remote API reports the resource does not exist."""

    status_code = 404
    default_message = "Resource not found"


class RemoteError(ProxyError):
    """Raised for any other non-2xx answer from the remote API."""

    status_code = 502
    default_message = "Remote EHR request failed"


class UnknownError(ProxyError):
    """Wraps an unexpected exception; the original is kept for server-side logs only."""

    status_code = 500
    default_message = "Internal server error"
