# app/exceptions.py
"""
Error taxonomy for the access-control integration.

Boundary code (routers, main.py exception handlers) translates these into HTTP
responses; services raise them and let them propagate. Per-event conditions in
the event processor (ProcessingAnomaly) and push failures in the sync service
(SyncFailure) are contained inside their component.
"""

from typing import Optional


class AccessControlError(Exception):
    """Base class. `code` carries the downstream/vendor error code when there is one."""

    def __init__(self, message: str, code: Optional[str] = None):
        self.message = message
        self.code = code
        super().__init__(message)

    def __str__(self):
        return f"[{self.code}] {self.message}" if self.code else self.message


class ConfigurationError(AccessControlError):
    """No active integration credential for the tenant. Not retryable."""


class AuthenticationError(AccessControlError):
    """Token exchange rejected or unreachable. Retryable by the caller after credential review."""


class ValidationError(AccessControlError):
    """Malformed ingestion payload. Rejected at the boundary."""


class ProcessingAnomaly(AccessControlError):
    """Non-fatal per-event condition: the event is processed but flagged."""

    DUPLICATE_ENTRY = "duplicate_entry"
    ORPHAN_EXIT = "orphan_exit"

    def __init__(self, kind: str, message: str):
        self.kind = kind
        super().__init__(message, code=kind)


class UnknownPersonError(AccessControlError):
    """Event references a person with no member mapping at the branch."""


class SyncFailure(AccessControlError):
    """Device push failed after the one-shot token refresh retry."""


class DeviceApiError(AccessControlError):
    """Non-success response (or transport failure) from the vendor API."""

    def __init__(self, message: str, status_code: Optional[int] = None, code: Optional[str] = None):
        self.status_code = status_code
        super().__init__(message, code=code)


class TokenRejectedError(DeviceApiError):
    """Vendor refused the bearer token (HTTP 401 or a token error code)."""
