"""Session / auth manager for the telemetry provider.

State machine per user::

    NO_SESSION → AUTHENTICATING → AUTHENTICATED ⇄ AUTH_EXPIRED
                        │
                        └──→ UNRECOVERABLE   (MFA challenge; never retried)

Exactly one live session per user.  Re-authentication is serialized by a
per-user ``asyncio.Lock`` so concurrent callers that hit an expired session
share a single login instead of each triggering their own.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable

from src.extraction.base import Credentials, utcnow
from src.extraction.auth.storage import CredentialStore
from src.extraction.errors import (
    AuthError,
    InvalidCredentials,
    MfaUnsupported,
    NoCredentialsFound,
    NotAuthenticated,
    ProviderUnavailable,
    RateLimited,
    TokenValidationFailed,
    UnknownAuthError,
)
from src.extraction.provider.base import ProviderFactory, TelemetryProvider

logger = logging.getLogger("garmin_extract.extraction.auth")

DEFAULT_SESSION_TTL = timedelta(hours=1)


class SessionState(str, Enum):
    NO_SESSION = "no_session"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    AUTH_EXPIRED = "auth_expired"
    UNRECOVERABLE = "unrecoverable"


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------

# (substrings, error class), checked in order against the lowercased message.
# garth's ticket exchange URL contains "?ticket=", so HTTP status buckets go first.
_LOGIN_ERROR_PATTERNS: list[tuple[tuple[str, ...], type[AuthError]]] = [
    (("rate limit", "429", "too many requests"), RateLimited),
    (("credentials", "401", "unauthorized", "invalid username or password"), InvalidCredentials),
    (("mfa", "two-factor", "2fa", "verification code"), MfaUnsupported),
    (("csrf", "token validation", "find ticket"), TokenValidationFailed),
]


def classify_login_error(exc: BaseException) -> Exception:
    """Map a provider login failure onto the auth error taxonomy.

    Already-classified errors are returned unchanged.  Network failures become
    ProviderUnavailable; anything unmatched becomes UnknownAuthError with the
    original message as context.
    """
    if isinstance(exc, (AuthError, ProviderUnavailable)):
        return exc

    message = str(exc).lower()
    for needles, error_cls in _LOGIN_ERROR_PATTERNS:
        if any(n in message for n in needles):
            if error_cls is MfaUnsupported:
                return MfaUnsupported()
            return error_cls(f"Garmin login failed: {exc}")

    if isinstance(exc, (ConnectionError, TimeoutError, OSError)):
        return ProviderUnavailable(f"Garmin unreachable during login: {exc}")
    return UnknownAuthError(f"Garmin login failed ({type(exc).__name__}): {exc}")


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


@dataclass
class _UserSession:
    """In-process session bookkeeping for one user."""

    state: SessionState = SessionState.NO_SESSION
    credentials: Credentials | None = None
    session: TelemetryProvider | None = None
    failure: Exception | None = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class AuthManager:
    """Owns the login lifecycle and credential persistence for provider sessions."""

    def __init__(
        self,
        store: CredentialStore,
        provider_factory: ProviderFactory,
        session_ttl: timedelta = DEFAULT_SESSION_TTL,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """Initialize the manager.

        Args:
            store:            Credential store for long-lived logins.
            provider_factory: Builds an unauthenticated provider from (login, secret).
            session_ttl:      Fixed session lifetime written as the credential expiry.
            clock:            UTC clock (injectable for tests).
        """
        self._store = store
        self._provider_factory = provider_factory
        self._session_ttl = session_ttl
        self._clock = clock
        self._users: dict[str, _UserSession] = {}

    def _entry(self, user_id: str) -> _UserSession:
        if user_id not in self._users:
            self._users[user_id] = _UserSession()
        return self._users[user_id]

    def state(self, user_id: str) -> SessionState:
        return self._entry(user_id).state

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    async def _login(self, login_identifier: str, secret: str) -> TelemetryProvider:
        provider = self._provider_factory(login_identifier, secret)
        try:
            await provider.login()
        except Exception as exc:
            classified = classify_login_error(exc)
            if classified is exc:
                raise
            raise classified from exc
        return provider

    async def _establish(self, entry: _UserSession, credentials: Credentials) -> Credentials:
        """Log in with ``credentials``, persist the new expiry, install the session.

        Caller holds ``entry.lock``.
        """
        entry.state = SessionState.AUTHENTICATING
        try:
            session = await self._login(credentials.login_identifier, credentials.secret)
        except MfaUnsupported as exc:
            entry.state = SessionState.UNRECOVERABLE
            entry.failure = exc
            entry.session = None
            logger.error("Auth unrecoverable for %s: %s", credentials.user_id, exc)
            raise
        except Exception:
            entry.state = SessionState.NO_SESSION
            entry.session = None
            raise

        renewed = replace(credentials, session_expiry=self._clock() + self._session_ttl)
        try:
            await self._store.put(renewed)
        except Exception:
            entry.state = SessionState.NO_SESSION
            entry.session = None
            raise

        entry.credentials = renewed
        entry.session = session
        entry.failure = None
        entry.state = SessionState.AUTHENTICATED
        logger.info("Authenticated %s", renewed.redacted())
        return renewed

    async def authenticate(
        self, user_id: str, login_identifier: str, secret: str
    ) -> Credentials:
        """Log in with explicit credentials and persist them on success.

        Raises:
            TokenValidationFailed, RateLimited, InvalidCredentials,
            MfaUnsupported, UnknownAuthError: classified login failures.
            ProviderUnavailable: the provider could not be reached.
            StorageError: credentials could not be persisted.
        """
        entry = self._entry(user_id)
        async with entry.lock:
            credentials = Credentials(
                user_id=user_id, login_identifier=login_identifier, secret=secret
            )
            return await self._establish(entry, credentials)

    async def refresh(self, user_id: str) -> Credentials:
        """Re-run the login with stored credentials and rewrite the expiry.

        Raises:
            NoCredentialsFound: nothing stored for this user.
            MfaUnsupported: the user is in the unrecoverable state.
        """
        entry = self._entry(user_id)
        async with entry.lock:
            return await self._refresh_locked(entry, user_id)

    async def _refresh_locked(self, entry: _UserSession, user_id: str) -> Credentials:
        if entry.state is SessionState.UNRECOVERABLE and entry.failure is not None:
            raise entry.failure
        stored = await self._store.get(user_id)
        if stored is None:
            raise NoCredentialsFound(f"No stored Garmin credentials for user {user_id}")
        logger.info("Refreshing Garmin session for %s", user_id)
        return await self._establish(entry, stored)

    async def validate(self, user_id: str) -> bool:
        """Check whether the stored credentials still log in.  Never raises.

        The login runs on a throwaway provider: the live session, the session
        state and the credential store are left untouched.
        """
        if self._entry(user_id).state is SessionState.UNRECOVERABLE:
            return False
        try:
            stored = await self._store.get(user_id)
            if stored is None:
                return False
            await self._login(stored.login_identifier, stored.secret)
        except Exception as exc:
            logger.info("Credential validation failed for %s: %s", user_id, exc)
            return False
        return True

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def get_session(self, user_id: str) -> TelemetryProvider:
        """Return the live session, re-authenticating if it has expired.

        Raises:
            NotAuthenticated: authenticate() never succeeded in this process.
            MfaUnsupported: the account is unrecoverable.
            Any error from refresh() if re-authentication fails.
        """
        entry = self._entry(user_id)
        async with entry.lock:
            if entry.state is SessionState.UNRECOVERABLE and entry.failure is not None:
                raise entry.failure
            if entry.credentials is None:
                raise NotAuthenticated(
                    f"No session for user {user_id}: call authenticate() first"
                )
            if (
                entry.session is None
                or entry.state is not SessionState.AUTHENTICATED
                or entry.credentials.is_expired(self._clock())
            ):
                logger.info("Session for %s expired; re-authenticating", user_id)
                await self._refresh_locked(entry, user_id)
            return entry.session  # type: ignore[return-value]

    async def handle_auth_expired(
        self, user_id: str, stale_session: TelemetryProvider
    ) -> TelemetryProvider:
        """React to a provider AuthExpired raised while using ``stale_session``.

        Re-authenticates once.  If another caller already replaced the stale
        session, the newer session is returned without a second login.
        """
        entry = self._entry(user_id)
        async with entry.lock:
            if entry.session is not None and entry.session is not stale_session:
                return entry.session
            if entry.credentials is None:
                raise NotAuthenticated(
                    f"No session for user {user_id}: call authenticate() first"
                )
            entry.state = SessionState.AUTH_EXPIRED
            await self._refresh_locked(entry, user_id)
            return entry.session  # type: ignore[return-value]
