"""Error taxonomy for the Garmin extraction pipeline.

Every failure that crosses a module boundary is one of these classes.  Library
exceptions (garth, asyncpg, botocore, OSError) are translated at the seam where
they enter, always with ``raise ... from exc`` so the original traceback stays
attached.

Each class carries a ``category`` slug.  ``ExtractionReport.first_errors`` is
keyed by it.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from src.extraction.base import ExtractionReport


class ExtractionError(Exception):
    """Base class for all extraction failures."""

    category: str = "extraction_error"


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


class AuthError(ExtractionError):
    """Any failure to obtain or keep an authenticated provider session."""

    category = "auth_error"


class AuthExpired(AuthError):
    """The provider rejected a call because the session is no longer valid."""

    category = "auth_expired"


class TokenValidationFailed(AuthError):
    """The provider's CSRF / login-ticket validation failed during login."""

    category = "token_validation_failed"


class RateLimited(AuthError):
    """The provider throttled the login or a data call."""

    category = "rate_limited"


class InvalidCredentials(AuthError):
    """The login identifier or secret was rejected."""

    category = "invalid_credentials"


class MfaUnsupported(AuthError):
    """The account requires an MFA challenge that cannot be answered headlessly.

    Permanent for the account: callers must not retry.
    """

    category = "mfa_unsupported"

    REMEDIATION = (
        "Garmin requested a two-step verification code. Disable two-step "
        "verification on the Garmin account or run an interactive login once."
    )

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.REMEDIATION)


class UnknownAuthError(AuthError):
    """A login failure that matched no known category."""

    category = "unknown_auth_error"


class NoCredentialsFound(AuthError):
    """The credential store holds nothing for the requested user."""

    category = "no_credentials_found"


class NotAuthenticated(AuthError):
    """A session was requested before any successful authenticate()."""

    category = "not_authenticated"


# ---------------------------------------------------------------------------
# Discovery / provider / storage
# ---------------------------------------------------------------------------


class DeviceNotFound(ExtractionError):
    """The requested device filter matched none of the discovered devices."""

    category = "device_not_found"

    def __init__(self, device_filter: str, available: list[str]) -> None:
        self.device_filter = device_filter
        self.available = available
        super().__init__(
            f"No registered device matches '{device_filter}'. "
            f"Available: {available}"
        )


class ProviderUnavailable(ExtractionError):
    """The provider could not be reached (connection refused, timeout, 5xx)."""

    category = "provider_unavailable"


class ProviderError(ExtractionError):
    """A provider call failed for a reason that is neither auth nor availability."""

    category = "provider_error"


class StorageError(ExtractionError):
    """A sink or the credential store failed to persist or load data.

    Attributes:
        sink: Which target failed ('file', 'remote', 'credentials').
    """

    category = "storage_error"

    def __init__(self, sink: str, message: str) -> None:
        self.sink = sink
        super().__init__(f"[{sink}] {message}")


class ExtractionAborted(ExtractionError):
    """A mid-run failure that ended the whole run.

    Raised when a re-authentication (or the retry after it) fails.  The
    partial report of everything processed before the abort is attached.
    """

    category = "extraction_aborted"

    def __init__(self, message: str, report: "ExtractionReport") -> None:
        self.report = report
        super().__init__(message)
