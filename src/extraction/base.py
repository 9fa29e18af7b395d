"""Canonical data models for the Garmin extraction pipeline.

These types are shared by the capability registry, the auth manager, the
orchestrator and the sinks.  Metric payloads are provider-shaped JSON: only the
identity fields listed in ``IDENTITY_FIELDS`` are interpreted, everything else
is carried through as opaque data.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Iterator


def utcnow() -> datetime:
    """Timezone-aware UTC now.  Injected as the default clock everywhere."""
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class MetricKind(str, Enum):
    """The four metric kinds extracted per day.

    The value doubles as the artifact filename prefix.
    """

    ACTIVITY = "activities"
    HEART_RATE = "heart-rate"
    SLEEP = "sleep"
    STEPS = "steps"

    @property
    def table(self) -> str:
        """Remote collection name, e.g. ``garmin_heart_rate``."""
        return "garmin_" + self.value.replace("-", "_")

    @classmethod
    def parse(cls, value: str) -> "MetricKind":
        """Accept the enum value or the common YAML spellings (heart_rate, heartRate)."""
        normalized = value.strip().lower().replace("_", "-")
        aliases = {"heartrate": "heart-rate", "activity": "activities"}
        normalized = aliases.get(normalized, normalized)
        return cls(normalized)


#: Iteration order for the metric kinds of one day.
METRIC_KINDS: tuple[MetricKind, ...] = (
    MetricKind.ACTIVITY,
    MetricKind.HEART_RATE,
    MetricKind.SLEEP,
    MetricKind.STEPS,
)


class FieldSupport(str, Enum):
    """How well a device model produces a given metric field."""

    SUPPORTED = "supported"
    UNSUPPORTED = "unsupported"
    PARTIAL = "partial"


class UnitState(str, Enum):
    """Lifecycle of one extraction unit."""

    PENDING = "pending"
    FETCHED = "fetched"
    FILTERED = "filtered"
    PERSISTED = "persisted"
    FAILED = "failed"


# Keys that survive capability filtering for every record of a kind.
_COMMON_IDENTITY = frozenset({"deviceId", "calendarDate", "timestamp"})

IDENTITY_FIELDS: dict[MetricKind, frozenset[str]] = {
    MetricKind.ACTIVITY: _COMMON_IDENTITY | {"activityId", "startTimeLocal"},
    MetricKind.HEART_RATE: _COMMON_IDENTITY,
    MetricKind.SLEEP: _COMMON_IDENTITY,
    MetricKind.STEPS: _COMMON_IDENTITY,
}


# ---------------------------------------------------------------------------
# Credentials / devices
# ---------------------------------------------------------------------------


@dataclass
class Credentials:
    """Long-lived Garmin login credentials for one user.

    Attributes:
        user_id:          Internal user identifier (credential store key).
        login_identifier: Garmin Connect login (e-mail).
        secret:           Garmin Connect password.  Never logged.
        session_expiry:   UTC datetime after which the session is re-established.
    """

    user_id: str
    login_identifier: str
    secret: str = field(repr=False)
    session_expiry: datetime | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        """True when there is no expiry recorded or it has passed."""
        if self.session_expiry is None:
            return True
        return self.session_expiry <= (now or utcnow())

    def redacted(self) -> dict[str, Any]:
        """Loggable view: masked login, no secret."""
        login = self.login_identifier
        if "@" in login:
            name, _, domain = login.partition("@")
            masked = f"{name[:1]}***@{domain}"
        else:
            masked = f"{login[:1]}***" if login else ""
        return {
            "user_id": self.user_id,
            "login": masked,
            "session_expiry": (
                self.session_expiry.isoformat() if self.session_expiry else None
            ),
        }


@dataclass(frozen=True)
class Device:
    """A device registered to the Garmin account.  Discovered fresh each run."""

    device_id: str
    model_name: str
    device_type: str | None = None

    @classmethod
    def from_payload(cls, payload: dict) -> "Device":
        """Build from one entry of Garmin's device registration list."""
        device_id = payload.get("deviceId", payload.get("unitId"))
        if device_id is None:
            raise ValueError(f"Device payload has no deviceId: {sorted(payload)}")
        model = (
            payload.get("productDisplayName")
            or payload.get("displayName")
            or payload.get("partNumber")
            or "unknown"
        )
        device_type = payload.get("deviceTypePk", payload.get("deviceType"))
        return cls(
            device_id=str(device_id),
            model_name=str(model),
            device_type=str(device_type) if device_type is not None else None,
        )


# ---------------------------------------------------------------------------
# Metric records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MetricRecord:
    """One provider record of a metric kind, as a field-name → value mapping.

    Treated as immutable: capability filtering derives a new record.

    Attributes:
        kind:               Metric kind of this record.
        fields:             Provider-shaped fields, always including ``deviceId``
                            and ``calendarDate``.
        approximate_fields: Fields the device only partially supports; their
                            values must be treated as approximate.
    """

    kind: MetricKind
    fields: dict[str, Any]
    approximate_fields: frozenset[str] = frozenset()

    @property
    def device_id(self) -> str | None:
        value = self.fields.get("deviceId")
        return str(value) if value is not None else None

    @property
    def calendar_date(self) -> str | None:
        return self.fields.get("calendarDate")

    def with_fields(
        self, fields: dict[str, Any], approximate: frozenset[str] = frozenset()
    ) -> "MetricRecord":
        return replace(self, fields=dict(fields), approximate_fields=approximate)

    def to_json(self) -> dict[str, Any]:
        return dict(self.fields)


# ---------------------------------------------------------------------------
# Scheduling grain and outcomes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DateRange:
    """Inclusive calendar date range."""

    start: date
    end: date

    def __post_init__(self) -> None:
        if self.start > self.end:
            raise ValueError(
                f"DateRange start {self.start} is after end {self.end}"
            )

    def days(self) -> Iterator[date]:
        """Yield each date from start to end, earliest first."""
        current = self.start
        while current <= self.end:
            yield current
            current += timedelta(days=1)

    def __len__(self) -> int:
        return (self.end - self.start).days + 1

    @classmethod
    def last_n_days(cls, n: int, today: date | None = None) -> "DateRange":
        """The ``n`` days ending today (inclusive)."""
        if n < 1:
            raise ValueError(f"last_n_days requires n >= 1, got {n}")
        end = today or date.today()
        return cls(start=end - timedelta(days=n - 1), end=end)


@dataclass(frozen=True)
class ExtractionUnit:
    """The atomic scheduling grain: one date × one metric kind × one device."""

    day: date
    kind: MetricKind
    device_id: str | None = None

    @property
    def key(self) -> tuple[str, str, str]:
        """Upsert key (date, kind, device).  No device maps to ''."""
        return (self.day.isoformat(), self.kind.value, self.device_id or "")

    @property
    def artifact_name(self) -> str:
        name = f"{self.kind.value}-{self.day.isoformat()}"
        if self.device_id is not None:
            name += f"-device-{self.device_id}"
        return name + ".json"

    def __str__(self) -> str:
        return f"{self.kind.value}/{self.day.isoformat()}/{self.device_id or '-'}"


@dataclass
class PersistenceOutcome:
    """Result of processing one unit.  File and remote writes are independent.

    Attributes:
        unit:         The unit processed.
        state:        Final lifecycle state.
        file_ok:      True if the file sink write succeeded.
        remote_ok:    True if the remote sink write succeeded.
        fetch_error:  Error raised while fetching / filtering, if any.
        file_error:   Error raised by the file sink, if any.
        remote_error: Error raised by the remote sink, if any.
        records:      Number of records written for the unit.
    """

    unit: ExtractionUnit
    state: UnitState = UnitState.PENDING
    file_ok: bool = False
    remote_ok: bool = False
    fetch_error: Exception | None = None
    file_error: Exception | None = None
    remote_error: Exception | None = None
    records: int = 0

    @property
    def status(self) -> str:
        """'succeeded', 'partial' (exactly one sink failed) or 'failed'."""
        if self.file_ok and self.remote_ok:
            return "succeeded"
        if self.file_ok or self.remote_ok:
            return "partial"
        return "failed"

    @property
    def errors(self) -> list[Exception]:
        return [
            e for e in (self.fetch_error, self.file_error, self.remote_error)
            if e is not None
        ]


@dataclass
class ExtractionReport:
    """Run-level summary.  Always produced, even if every unit failed.

    Attributes:
        user_id:      User the run extracted for.
        date_range:   Requested date range.
        outcomes:     One PersistenceOutcome per attempted unit, in unit order.
        planned:      Number of units scheduled before the run started.
        cancelled:    True if the run was stopped between units.
        started_at:   UTC start timestamp.
        finished_at:  UTC completion timestamp.
    """

    user_id: str
    date_range: DateRange
    outcomes: list[PersistenceOutcome] = field(default_factory=list)
    planned: int = 0
    cancelled: bool = False
    started_at: datetime = field(default_factory=utcnow)
    finished_at: datetime | None = None

    @property
    def counts(self) -> Counter:
        return Counter(o.status for o in self.outcomes)

    @property
    def succeeded(self) -> int:
        return self.counts["succeeded"]

    @property
    def partial(self) -> int:
        return self.counts["partial"]

    @property
    def failed(self) -> int:
        return self.counts["failed"]

    @property
    def degraded(self) -> int:
        """Units that did not fully succeed."""
        return self.partial + self.failed

    @property
    def first_errors(self) -> dict[str, str]:
        """First error message observed per failure category, in unit order."""
        first: dict[str, str] = {}
        for outcome in self.outcomes:
            for exc in outcome.errors:
                category = getattr(exc, "category", type(exc).__name__)
                first.setdefault(category, str(exc))
        return first

    @property
    def status(self) -> str:
        """'success', 'partial' or 'failed' (nothing attempted or all failed)."""
        if not self.outcomes or self.failed == len(self.outcomes):
            return "failed"
        if self.degraded:
            return "partial"
        return "success"

    @property
    def exit_code(self) -> int:
        return 1 if self.status == "failed" else 0

    def summary(self) -> str:
        text = (
            f"{self.user_id} {self.date_range.start}..{self.date_range.end}: "
            f"{len(self.outcomes)}/{self.planned} units, "
            f"{self.succeeded} ok, {self.partial} partial, {self.failed} failed"
        )
        if self.cancelled:
            text += " (cancelled)"
        return text
