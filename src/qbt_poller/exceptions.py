"""
Custom exceptions for the qBittorrent poller.

This module defines the error taxonomy used by the transport, session and
polling layers. Only ConfigurationError is fatal; everything else is caught
at the scheduler or dispatcher boundary and retried on the next tick.
"""

from typing import Any


class QBPollerError(Exception):
    """Base exception for qBittorrent poller errors."""

    def __init__(
        self,
        message: str,
        code: str | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.code = code or "QB_POLLER_ERROR"
        self.context = context or {}


class ConfigurationError(QBPollerError):
    """Exception for configuration related errors."""

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message, "CONFIGURATION_ERROR", context)


class AuthenticationError(QBPollerError):
    """Exception for login failures against the torrent service."""

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message, "AUTHENTICATION_ERROR", context)


class RequestTimeoutError(QBPollerError):
    """Exception raised when a request exceeds its deadline."""

    def __init__(
        self,
        timeout: float,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(
            f"Request timed out after {timeout * 1000:.0f}ms", "TIMEOUT_ERROR", context
        )
        self.timeout = timeout


class TransportError(QBPollerError):
    """Exception for network level failures."""

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message, "TRANSPORT_ERROR", context)


class HttpStatusError(QBPollerError):
    """Exception for non-2xx responses from a reachable service."""

    def __init__(
        self,
        message: str,
        status_code: int,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, "HTTP_ERROR", context)
        self.status_code = status_code

    @property
    def is_auth_expiry(self) -> bool:
        """Check if the status signals an expired session."""
        return self.status_code in (401, 403)
