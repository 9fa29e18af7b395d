"""Garmin Connect provider built on the garth library (unofficial API).

Uses a regular Garmin Connect login, no developer account needed.  Each
provider instance owns its own ``garth.Client`` so that one process never
shares tokens between sessions.

garth is synchronous; every call runs in a worker thread via
``asyncio.to_thread`` so the orchestrator's event loop is never blocked.

Connect API paths used:
    /userprofile-service/socialProfile                    — profile, displayName
    /activitylist-service/activities/search/activities    — activity list
    /wellness-service/wellness/dailyHeartRate/{name}      — heart rate
    /wellness-service/wellness/dailySleepData/{name}      — sleep
    /wellness-service/wellness/dailySummaryChart/{name}   — step intervals
    /device-service/deviceregistration/devices            — registered devices
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date
from typing import Any

import garth
from garth.exc import GarthException, GarthHTTPError

from src.extraction.errors import (
    AuthExpired,
    MfaUnsupported,
    ProviderError,
    ProviderUnavailable,
    RateLimited,
)
from src.extraction.provider.base import TelemetryProvider

logger = logging.getLogger("garmin_extract.extraction.provider.garmin")

_PROFILE_PATH = "/userprofile-service/socialProfile"
_ACTIVITIES_PATH = "/activitylist-service/activities/search/activities"
_HEART_RATE_PATH = "/wellness-service/wellness/dailyHeartRate/{name}"
_SLEEP_PATH = "/wellness-service/wellness/dailySleepData/{name}"
_STEPS_PATH = "/wellness-service/wellness/dailySummaryChart/{name}"
_DEVICES_PATH = "/device-service/deviceregistration/devices"


def _refuse_mfa() -> str:
    """MFA prompt for headless runs: there is nobody to type the code."""
    raise MfaUnsupported()


def _http_status(exc: GarthHTTPError) -> int | None:
    response = getattr(exc.error, "response", None)
    return getattr(response, "status_code", None)


class GarminConnectProvider(TelemetryProvider):
    """Garmin Connect via garth."""

    SOURCE_ID = "garmin"

    def __init__(
        self,
        login_identifier: str,
        secret: str,
        client: garth.Client | None = None,
        domain: str = "garmin.com",
    ) -> None:
        """Initialize the provider.

        Args:
            login_identifier: Garmin Connect e-mail.
            secret:           Garmin Connect password.
            client:           Optional pre-configured garth client (useful for testing).
            domain:           garmin.com, or garmin.cn for China accounts.
        """
        self._login_identifier = login_identifier
        self._secret = secret
        self._client = client or garth.Client(domain=domain)
        self._display_name: str | None = None

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    async def login(self) -> None:
        logger.info("Garmin: logging in")
        await asyncio.to_thread(
            self._client.login,
            self._login_identifier,
            self._secret,
            prompt_mfa=_refuse_mfa,
        )
        self._display_name = None
        logger.info("Garmin: login successful")

    async def _display_name_for_wellness(self) -> str:
        if self._display_name is None:
            profile = await self.get_user_profile()
            name = profile.get("displayName")
            if not name:
                raise ProviderError("Garmin profile has no displayName")
            self._display_name = str(name)
        return self._display_name

    async def _connectapi(self, path: str, **params: Any) -> Any:
        """Call one Connect API path, translating garth/requests failures."""
        try:
            return await asyncio.to_thread(
                self._client.connectapi, path, params=params or None
            )
        except GarthHTTPError as exc:
            status = _http_status(exc)
            if status in (401, 403):
                raise AuthExpired(f"Garmin rejected session ({status}) for {path}") from exc
            if status == 429:
                raise RateLimited(f"Garmin rate limit hit on {path}") from exc
            if status is not None and status >= 500:
                raise ProviderUnavailable(f"Garmin returned {status} for {path}") from exc
            raise ProviderError(f"Garmin request failed for {path}: {exc}") from exc
        except GarthException as exc:
            # garth raises this when it has no usable OAuth token
            raise AuthExpired(f"Garmin session unusable: {exc}") from exc
        except (ConnectionError, TimeoutError, OSError) as exc:
            raise ProviderUnavailable(f"Garmin unreachable for {path}: {exc}") from exc

    # ------------------------------------------------------------------
    # Data calls
    # ------------------------------------------------------------------

    async def get_user_profile(self) -> dict[str, Any]:
        return await self._connectapi(_PROFILE_PATH) or {}

    async def get_activities(self, offset: int, limit: int) -> list[dict[str, Any]]:
        result = await self._connectapi(
            _ACTIVITIES_PATH, start=str(offset), limit=str(limit)
        )
        return list(result or [])

    async def get_heart_rate(self, day: date) -> dict[str, Any]:
        name = await self._display_name_for_wellness()
        return await self._connectapi(
            _HEART_RATE_PATH.format(name=name), date=day.isoformat()
        ) or {}

    async def get_sleep_data(self, day: date) -> dict[str, Any]:
        name = await self._display_name_for_wellness()
        return await self._connectapi(
            _SLEEP_PATH.format(name=name),
            date=day.isoformat(),
            nonSleepBufferMinutes=60,
        ) or {}

    async def get_steps(self, day: date) -> list[dict[str, Any]]:
        name = await self._display_name_for_wellness()
        result = await self._connectapi(
            _STEPS_PATH.format(name=name), date=day.isoformat()
        )
        return list(result or [])

    async def get_device_info(self) -> list[dict[str, Any]]:
        return list(await self._connectapi(_DEVICES_PATH) or [])


def garmin_provider_factory(login_identifier: str, secret: str) -> GarminConnectProvider:
    """ProviderFactory for the auth manager."""
    return GarminConnectProvider(login_identifier, secret)
