"""Error taxonomy shared by the access, pipeline and reconciliation layers."""

from __future__ import annotations

from typing import Optional


class StreamVaultError(Exception):
    """Base class for errors raised by streamvault."""


class ConfigurationError(StreamVaultError, ValueError):
    """Missing or invalid credentials/configuration. Fatal to any operation."""


class AuthorizationDenied(StreamVaultError):
    """Expected, user-facing denial. Never logged as a system fault."""

    def __init__(self, reason: str, message: str = "") -> None:
        super().__init__(message or reason)
        self.reason = reason
        self.message = message or reason


class ValidationError(StreamVaultError):
    """Token or request validation failure carrying a stable reason code."""

    def __init__(self, reason: str, message: str = "") -> None:
        super().__init__(message or reason)
        self.reason = reason


class InvalidTransitionError(StreamVaultError):
    """Raised when an asset status change is not in the transition table."""


class RemoteClientError(StreamVaultError):
    """Raised when the remote streaming service request fails."""

    retryable = False

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientRemoteError(RemoteClientError):
    """Network failure, 5xx or 429. Retried with backoff."""

    retryable = True


class PermanentRemoteError(RemoteClientError):
    """4xx other than 429. Not retried."""


class RemoteNotFoundError(PermanentRemoteError):
    """The remote service has no asset with the requested id."""


class IntegrityError(StreamVaultError):
    """Local/remote state mismatch found by reconciliation."""

    def __init__(self, kind: str, message: str, *, asset_id: Optional[str] = None, remote_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.asset_id = asset_id
        self.remote_id = remote_id

    def as_dict(self) -> dict[str, Optional[str]]:
        return {
            "kind": self.kind,
            "message": str(self),
            "asset_id": self.asset_id,
            "remote_id": self.remote_id,
        }


class AlertDeliveryError(StreamVaultError):
    """Raised when an alert or notification could not be delivered."""
