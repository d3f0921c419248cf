"""
Error taxonomy for tracking, persistence and auth.

Nothing here is fatal to the process: every error is recoverable at the
session or API layer.
"""
from typing import Optional


class TrackingError(Exception):
    """Base class for all tracker errors."""

    title = "Error"


class Unauthenticated(TrackingError):
    """No authenticated session exists."""

    title = "Authentication Required"

    def __init__(self, message: str = "Please log in to start tracking"):
        super().__init__(message)


class AlreadyActive(TrackingError):
    """start() called while the session is not idle."""

    title = "Already Tracking"

    def __init__(self, state: str):
        self.state = state
        super().__init__(f"Tracking session is {state}, stop it before starting again")


class PermissionDenied(TrackingError):
    """A provider refused location permission."""

    title = "Permission Denied"

    def __init__(self, provider: str, permission: str):
        self.provider = provider
        self.permission = permission
        super().__init__(f"Location permission {permission} for provider '{provider}'")


class WatchStartError(TrackingError):
    """A provider could not open a watch (device missing, feed unreachable)."""

    def __init__(self, provider: str, reason: str):
        self.provider = provider
        self.reason = reason
        super().__init__(f"Provider '{provider}' failed to start: {reason}")


class ProviderUnavailable(TrackingError):
    """Every configured provider failed to start."""

    title = "Tracking Unavailable"

    def __init__(self, failures: Optional[dict[str, Exception]] = None):
        self.failures = failures or {}
        detail = "; ".join(f"{name}: {err}" for name, err in self.failures.items())
        super().__init__(
            "Failed to start location tracking" + (f" ({detail})" if detail else "")
        )


# Name used by the UI layer for the same condition.
TrackingUnavailable = ProviderUnavailable


class SinkWriteFailed(TrackingError):
    """Persisting a track record failed. Non-fatal."""

    title = "Save Failed"


class FetchFailed(TrackingError):
    """Loading track history failed. Non-fatal."""

    title = "Error"


class AuthError(TrackingError):
    """The auth service rejected a sign-in, sign-up or sign-out request."""

    title = "Authentication Failed"

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)
