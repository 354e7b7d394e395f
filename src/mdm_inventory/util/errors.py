from __future__ import annotations

from typing import Optional

import requests


class InventoryError(Exception):
    """Base error for the sync and snapshot engine."""


class ConfigError(InventoryError):
    """Raised for configuration issues or unsupported provider settings."""


class AuthenticationError(InventoryError):
    """Raised when a tenant's credential exchange is rejected or unreachable."""


class TransportError(InventoryError):
    """Raised when a vendor API request fails or returns a non-success status."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, body: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class ExportJobError(InventoryError):
    """Raised when a bulk export job cannot be created or ends in failure."""


class ExportJobTimeout(ExportJobError):
    """Raised when a bulk export job does not reach a terminal state in time."""


class ExportFormatError(InventoryError):
    """Raised when a downloaded export payload matches no known shape."""


class CaptureCancelled(InventoryError):
    """Raised when the shared cancellation signal is observed mid-operation."""


class SnapshotStateError(InventoryError):
    """Raised for an illegal snapshot status transition."""


def truncate(text: str, limit: int = 500) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def is_http_error(exc: BaseException) -> bool:
    """
    Return True if the exception comes from the requests/urllib3 transport stack.
    """
    if isinstance(exc, requests.RequestException):
        return True
    return exc.__class__.__module__.startswith(("requests.", "urllib3."))


def map_http_error(exc: BaseException, context: str) -> TransportError | None:
    """
    Wrap transport exceptions with TransportError for consistent handling upstream.
    """
    if not is_http_error(exc):
        return None
    return TransportError(f"{context}: {exc}")
