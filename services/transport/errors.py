"""Errors raised by the Flow transport client."""

from typing import Optional


class FlowAPIError(Exception):
    """Raised when a Flow API call fails."""

    def __init__(self, message: str, status_code: Optional[int] = None, endpoint: Optional[str] = None):
        self.status_code = status_code
        self.endpoint = endpoint
        super().__init__(message)


class FlowAuthError(FlowAPIError):
    """Raised when the API rejects a session or access token."""


class FlowResponseError(FlowAPIError):
    """Raised when a response body cannot be understood."""
