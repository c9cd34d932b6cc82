"""Exception hierarchy shared by the directory client, resolver, and HTTP surface."""

from __future__ import annotations

from typing import Any

__all__ = [
    "BridgeError",
    "DirectoryConflict",
    "DirectoryError",
    "DirectoryInconsistent",
    "DirectoryRejected",
    "DirectoryTimeout",
    "Unauthorized",
    "UnrecognizedResponse",
    "ValidationFailure",
]


class BridgeError(RuntimeError):
    """Base class for every error raised by the bridge itself."""


class DirectoryError(BridgeError):
    """A support-desk call failed; ``operation`` names the directory method."""

    def __init__(self, message: str, *, operation: str) -> None:
        super().__init__(message)
        self.operation = operation


class DirectoryTimeout(DirectoryError):
    """The remote call did not complete (timeout or connection failure)."""


class DirectoryRejected(DirectoryError):
    """The remote call completed with a non-success status."""

    def __init__(self, message: str, *, operation: str, status_code: int, payload: Any = None) -> None:
        super().__init__(message, operation=operation)
        self.status_code = status_code
        self.payload = payload


class DirectoryConflict(DirectoryRejected):
    """A create call hit a uniqueness constraint (identifier or source tag)."""


class UnrecognizedResponse(DirectoryError):
    """A success response whose payload matches none of the known shapes."""

    def __init__(self, message: str, *, operation: str, payload: Any = None) -> None:
        super().__init__(message, operation=operation)
        self.payload = payload


class DirectoryInconsistent(DirectoryError):
    """The remote reported a conflict but no conflicting record could be found."""


class Unauthorized(BridgeError):
    """Caller-supplied credential did not match the configured secret."""


class ValidationFailure(BridgeError):
    """Inbound HTTP payload did not match the expected schema."""
