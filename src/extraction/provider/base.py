"""Remote telemetry provider interface.

The provider's protocol (cookies, CSRF tickets, OAuth exchange, MFA) is opaque
to the pipeline: the core only sees success, one of the taxonomy errors from
``src.extraction.errors``, or raw provider-shaped JSON.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import date
from typing import Any, Callable


class TelemetryProvider(ABC):
    """One authenticated (after ``login()``) connection to the provider.

    A logged-in provider instance *is* the session handle returned by
    ``AuthManager.get_session()``.

    Data calls raise:
        AuthExpired:         the session is no longer accepted.
        RateLimited:         the provider throttled the call.
        ProviderUnavailable: the provider could not be reached.
        ProviderError:       any other failed call.
    """

    #: Provider slug used in logs.
    SOURCE_ID: str = "unknown"

    @abstractmethod
    async def login(self) -> None:
        """Authenticate with the credentials the provider was built with.

        Raises whatever the underlying client raises; the auth manager
        classifies it.  ``MfaUnsupported`` is raised directly when the
        provider asks for an MFA code.
        """

    @abstractmethod
    async def get_user_profile(self) -> dict[str, Any]:
        """Return the account's profile JSON."""

    @abstractmethod
    async def get_activities(self, offset: int, limit: int) -> list[dict[str, Any]]:
        """Return up to ``limit`` activities, newest first, skipping ``offset``."""

    @abstractmethod
    async def get_heart_rate(self, day: date) -> dict[str, Any]:
        """Return the daily heart-rate payload for ``day``."""

    @abstractmethod
    async def get_sleep_data(self, day: date) -> dict[str, Any]:
        """Return the sleep payload for the night ending on ``day``."""

    @abstractmethod
    async def get_steps(self, day: date) -> list[dict[str, Any]]:
        """Return the step intervals recorded on ``day``."""

    @abstractmethod
    async def get_device_info(self) -> list[dict[str, Any]]:
        """Return the devices registered to the account."""


#: (login_identifier, secret) → unauthenticated provider
ProviderFactory = Callable[[str, str], TelemetryProvider]
