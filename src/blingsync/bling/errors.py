"""
Error taxonomy for the Bling integration.

Only ItemPersistError is absorbed by the sync loop (recorded, run continues).
FetchError fails the current run. Everything else fails the run and
propagates to the caller, which turns it into a short user-facing message.
"""
from typing import Optional


class BlingError(RuntimeError):
    """Base class for every error raised by the Bling integration."""


# ── Credentials ───────────────────────────────────────────────────────────────

class AuthExchangeError(BlingError):
    """Raised when Bling rejects an authorization code (expired, reused, bad credentials).

    Never retried: the user must restart the OAuth flow.
    """


class RefreshError(BlingError):
    """Raised when the refresh token is missing or rejected.

    Fatal for the stored TokenState: the tenant must re-run OAuth.
    """


class ConfigurationError(BlingError):
    """Raised when a tenant has no active connection or no usable credentials."""


class AccessDeniedError(BlingError):
    """Raised when the requesting user has no access to the tenant."""


# ── Sync ──────────────────────────────────────────────────────────────────────

class FetchError(BlingError):
    """Raised when a page request fails (HTTP error, timeout, transport error)."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


class ItemPersistError(BlingError):
    """Raised when a single record could not be saved locally."""

    def __init__(self, item_id: str, message: str):
        super().__init__(f"Failed to persist {item_id}: {message}")
        self.item_id = item_id
        self.reason = message


class SyncAlreadyRunningError(BlingError):
    """Raised when an in_progress run already exists for (company_id, sync_type)."""


class InvalidTransitionError(BlingError):
    """Raised when a sync log is moved out of a terminal state."""
