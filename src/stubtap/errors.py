"""StubTap exceptions.

Errors raised through the control interface (start, register, reset, ...).
HTTP-level outcomes (404 for unmatched requests, 502 for upstream failures)
are responses, not exceptions, and never surface here.
"""

from typing import Any, Dict, Optional


class StubTapError(Exception):
    """Base exception for all StubTap control errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        """
        Initialize error.

        Args:
            message: Human-readable error message
            details: Optional dictionary with additional error details
        """
        super().__init__(message)
        self.details = details or {}


class PortUnavailable(StubTapError):
    """Raised when no listening port could be bound after all retries."""

    def __init__(self, message: str, attempts: int = 0, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.attempts = attempts


class InvalidStubDefinition(StubTapError):
    """Raised when a stub rule is structurally invalid."""

    def __init__(
        self,
        message: str,
        problems: Optional[list] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, details)
        self.problems = problems or []


class ResourceLoadError(StubTapError):
    """Raised when a response body file cannot be found or read."""

    def __init__(self, message: str, resource: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.resource = resource


class ServerStartError(StubTapError):
    """Raised when a server instance does not come up in time."""


class InstanceNotRunning(StubTapError):
    """Raised when a control call needs a live instance and there is none."""

    def __init__(self, key: Any):
        super().__init__(f"No running stub server for key {key!r}", {'key': repr(key)})
        self.key = key
