"""Shared fixtures and in-memory fakes for extraction tests."""

from __future__ import annotations

from collections import defaultdict
from datetime import date, datetime, timedelta, timezone
from typing import Any

import pytest

from src.extraction.auth.manager import AuthManager
from src.extraction.auth.storage import CredentialStore
from src.extraction.base import Credentials
from src.extraction.devices.registry import CapabilityRegistry, load_capability_registry
from src.extraction.errors import StorageError
from src.extraction.provider.base import TelemetryProvider
from src.extraction.sinks import DualSink, FileSink, RemoteSink

TEST_USER_ID = "user-123"
TEST_EMAIL = "runner@example.com"
TEST_PASSWORD = "hunter2"
TEST_DATE = date(2026, 2, 23)
T0 = datetime(2026, 2, 23, 8, 0, 0, tzinfo=timezone.utc)

FR235_DEVICE = {"deviceId": "d1", "productDisplayName": "Forerunner 235", "deviceTypePk": 1}
VENU_DEVICE = {"deviceId": "d2", "productDisplayName": "Venu 2", "deviceTypePk": 2}


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


def sleep_payload(day: date) -> dict:
    return {
        "dailySleepDTO": {
            "calendarDate": day.isoformat(),
            "deepSleepSeconds": 5400,
            "lightSleepSeconds": 12600,
            "awakeSleepSeconds": 900,
            "remSleepSeconds": 4800,
            "sleepScore": 81,
        },
        "sleepMovement": [{"startGMT": f"{day.isoformat()}T00:00:00.0", "activityLevel": 0.4}],
    }


def heart_rate_payload(day: date) -> dict:
    return {
        "calendarDate": day.isoformat(),
        "restingHeartRate": 52,
        "maxHeartRate": 151,
        "heartRateValues": [[1771801200000, 58], [1771801320000, 61]],
        "hrvStatus": "BALANCED",
    }


def steps_payload(day: date) -> list[dict]:
    return [
        {"startGMT": f"{day.isoformat()}T07:00:00.0", "steps": 1200},
        {"startGMT": f"{day.isoformat()}T07:15:00.0", "steps": 800},
    ]


class FakeProvider(TelemetryProvider):
    """In-memory provider.  Data is generated per day; errors are injectable.

    Attributes:
        calls:       (method, argument) for every data call, in order.
        errors:      method → queue of exceptions raised on the next calls.
        fail_always: method → exception raised on every call.
    """

    SOURCE_ID = "fake"

    def __init__(
        self,
        devices: list[dict] | None = None,
        activities: list[dict] | None = None,
        login_error: Exception | None = None,
    ) -> None:
        self.devices = devices if devices is not None else [FR235_DEVICE]
        self.activities = activities or []
        self.login_error = login_error
        self.logged_in = False
        self.calls: list[tuple[str, Any]] = []
        self.errors: dict[str, list[Exception]] = defaultdict(list)
        self.fail_always: dict[str, Exception] = {}

    def _record(self, method: str, arg: Any = None) -> None:
        self.calls.append((method, arg))
        if method in self.fail_always:
            raise self.fail_always[method]
        if self.errors[method]:
            raise self.errors[method].pop(0)

    @property
    def data_calls(self) -> list[tuple[str, Any]]:
        return [c for c in self.calls if c[0] != "devices"]

    async def login(self) -> None:
        if self.login_error is not None:
            raise self.login_error
        self.logged_in = True

    async def get_user_profile(self) -> dict:
        self._record("profile")
        return {"displayName": "runner", "fullName": "Test Runner"}

    async def get_activities(self, offset: int, limit: int) -> list[dict]:
        self._record("activities", (offset, limit))
        return list(self.activities)[offset:offset + limit]

    async def get_heart_rate(self, day: date) -> dict:
        self._record("heart-rate", day)
        return heart_rate_payload(day)

    async def get_sleep_data(self, day: date) -> dict:
        self._record("sleep", day)
        return sleep_payload(day)

    async def get_steps(self, day: date) -> list[dict]:
        self._record("steps", day)
        return steps_payload(day)

    async def get_device_info(self) -> list[dict]:
        self._record("devices")
        return list(self.devices)


class FakeProviderFactory:
    """ProviderFactory that keeps every provider it builds.

    Attributes:
        created:      Providers in creation order (one per login attempt).
        login_errors: Queue of errors for the next login attempts.
        fail_always:  Applied to every provider created after it is set.
    """

    def __init__(self, **provider_kwargs: Any) -> None:
        self.provider_kwargs = provider_kwargs
        self.created: list[FakeProvider] = []
        self.login_errors: list[Exception] = []
        self.fail_always: dict[str, Exception] = {}

    def __call__(self, login_identifier: str, secret: str) -> FakeProvider:
        provider = FakeProvider(**self.provider_kwargs)
        if self.login_errors:
            provider.login_error = self.login_errors.pop(0)
        provider.fail_always = dict(self.fail_always)
        self.created.append(provider)
        return provider

    @property
    def logins(self) -> int:
        return len(self.created)

    @property
    def data_calls(self) -> list[tuple[str, Any]]:
        return [c for p in self.created for c in p.data_calls]


class FakeCredentialStore(CredentialStore):
    def __init__(self) -> None:
        self.rows: dict[str, Credentials] = {}
        self.puts: list[Credentials] = []
        self.fail_put: Exception | None = None

    async def get(self, user_id: str) -> Credentials | None:
        return self.rows.get(user_id)

    async def put(self, credentials: Credentials) -> None:
        if self.fail_put is not None:
            raise self.fail_put
        self.puts.append(credentials)
        self.rows[credentials.user_id] = credentials


class FakeRemoteSink(RemoteSink):
    """Upserting in-memory remote store keyed by (collection, user, unit key)."""

    def __init__(self) -> None:
        self.rows: dict[tuple, Any] = {}
        self.writes = 0
        self.fail: Exception | None = None

    async def write_remote(
        self,
        collection: str,
        payload: Any,
        *,
        user_id: str,
        unit_key: tuple[str, str, str],
        approximate_fields: list[str] | None = None,
    ) -> None:
        if self.fail is not None:
            raise self.fail
        self.writes += 1
        self.rows[(collection, user_id, unit_key)] = payload


class FakeClock:
    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def registry() -> CapabilityRegistry:
    """The bundled device capability table."""
    return load_capability_registry()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> FakeCredentialStore:
    return FakeCredentialStore()


@pytest.fixture
def provider_factory() -> FakeProviderFactory:
    return FakeProviderFactory(devices=[FR235_DEVICE, VENU_DEVICE])


@pytest.fixture
def auth(store, provider_factory, clock) -> AuthManager:
    return AuthManager(store, provider_factory, clock=clock)


@pytest.fixture
def remote_sink() -> FakeRemoteSink:
    return FakeRemoteSink()


@pytest.fixture
def file_sink(tmp_path) -> FileSink:
    return FileSink(tmp_path / "data")


@pytest.fixture
def dual_sink(file_sink, remote_sink) -> DualSink:
    return DualSink(file_sink, remote_sink)


@pytest.fixture
def unreachable_remote() -> StorageError:
    return StorageError("remote", "connection refused")
