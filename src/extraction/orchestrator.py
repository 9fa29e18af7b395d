"""Extraction orchestrator: dates × metric kinds × devices → filtered dual writes.

Workflow for one run:
1. Obtain a live session from the auth manager (failure ends the run)
2. Discover the account's devices once and apply the device filter
3. For each date (earliest first), each metric kind and each device:
   fetch → shape → capability-filter → write to both sinks
4. Aggregate per-unit outcomes into an ExtractionReport

A failed fetch for one unit is recorded and the run continues.  A session
rejected mid-run triggers one shared re-authentication and one retry of the
unit; a second rejection aborts the run with ``ExtractionAborted``.

Usage::

    orchestrator = ExtractionOrchestrator(auth, DualSink(file_sink, remote_sink))
    report = await orchestrator.extract(user_id, DateRange.last_n_days(7))
    logger.info(report.summary())
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from src.extraction.auth.manager import AuthManager
from src.extraction.base import (
    METRIC_KINDS,
    DateRange,
    Device,
    ExtractionReport,
    ExtractionUnit,
    MetricKind,
    PersistenceOutcome,
    UnitState,
    utcnow,
)
from src.extraction.devices.filter import filter_records
from src.extraction.devices.registry import CapabilityRegistry, get_capability_registry
from src.extraction.errors import AuthExpired, DeviceNotFound, ExtractionAborted
from src.extraction.provider.base import TelemetryProvider
from src.extraction.records import activity_day, shape_records
from src.extraction.sinks import DualSink

logger = logging.getLogger("garmin_extract.extraction.orchestrator")

PROFILE_ARTIFACT = "user-profile.json"
RECENT_ACTIVITIES_ARTIFACT = "recent-activities.json"


def resolve_date_range(
    mode: str = "default",
    today: date | None = None,
    *,
    days: int = 7,
    recent_days: int = 2,
    historic_days: int = 365,
    start: date | None = None,
    end: date | None = None,
) -> DateRange:
    """Turn an extraction mode (or an explicit range) into a DateRange.

    Modes:
        default  — the last ``days`` days (7)
        recent   — the last ``recent_days`` days (yesterday + today)
        historic — the last ``historic_days`` days

    An explicit ``start``/``end`` overrides the mode; a missing bound
    defaults to ``today``.
    """
    today = today or date.today()
    if start is not None or end is not None:
        return DateRange(start=start or today, end=end or today)
    if mode == "default":
        return DateRange.last_n_days(days, today)
    if mode == "recent":
        return DateRange.last_n_days(recent_days, today)
    if mode == "historic":
        return DateRange.last_n_days(historic_days, today)
    raise ValueError(f"Unknown extraction mode '{mode}' (expected default / recent / historic)")


class _RunAbort(Exception):
    """Internal signal: the session could not be re-established mid-run."""


@dataclass
class _RunContext:
    user_id: str
    session: TelemetryProvider
    date_range: DateRange | None = None
    cancel_event: asyncio.Event | None = None
    aborted: BaseException | None = None
    # activity list back to date_range.start, fetched by the first activity unit
    activities: list[dict[str, Any]] | None = None
    activities_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def stopping(self) -> bool:
        cancelled = self.cancel_event is not None and self.cancel_event.is_set()
        return cancelled or self.aborted is not None


class ExtractionOrchestrator:
    """Drives one user's extraction runs.

    Not safe to run concurrently for the same user: the credential store's
    last-write-wins semantics assume one orchestrator per user per process.
    """

    def __init__(
        self,
        auth: AuthManager,
        sink: DualSink,
        registry: CapabilityRegistry | None = None,
        activity_page_size: int = 100,
        max_concurrency: int = 1,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            auth:               Session source; consulted per unit and on AuthExpired.
            sink:               Dual sink for filtered records.
            registry:           Device capability table (defaults to the bundled one).
            activity_page_size: Page size when listing the account's activities.
            max_concurrency:    Units in flight at once; 1 processes strictly in order.
        """
        self._auth = auth
        self._sink = sink
        self._registry = registry or get_capability_registry()
        self._activity_page_size = max(1, activity_page_size)
        self._max_concurrency = max(1, max_concurrency)

    # ------------------------------------------------------------------
    # Discovery / planning
    # ------------------------------------------------------------------

    async def _discover_devices(self, ctx: _RunContext) -> list[Device]:
        """Enumerate the account's devices (fresh every run)."""
        payloads = await self._call(ctx, lambda s: s.get_device_info(), "device discovery")
        devices: list[Device] = []
        for payload in payloads or []:
            try:
                devices.append(Device.from_payload(payload))
            except ValueError as exc:
                logger.warning("Skipping unusable device entry: %s", exc)
        logger.info(
            "Discovered %d device(s): %s",
            len(devices),
            ", ".join(f"{d.device_id} ({d.model_name})" for d in devices) or "none",
        )
        return devices

    @staticmethod
    def select_devices(devices: list[Device], device_filter: str | None) -> list[Device]:
        """Apply an optional filter matching a device id or a model name.

        Raises:
            DeviceNotFound: The filter matches none of ``devices``.
        """
        if device_filter is None:
            return list(devices)
        wanted = device_filter.strip()
        selected = [
            d for d in devices
            if d.device_id == wanted or d.model_name.casefold() == wanted.casefold()
        ]
        if not selected:
            raise DeviceNotFound(device_filter, [d.device_id for d in devices])
        return selected

    @staticmethod
    def plan(
        date_range: DateRange, devices: list[Device]
    ) -> list[tuple[ExtractionUnit, Device | None]]:
        """Units ordered by date, then metric kind, then device.

        With no registered devices, units are account-level (no device id,
        no filtering).
        """
        targets: list[Device | None] = list(devices) or [None]
        return [
            (ExtractionUnit(day, kind, device.device_id if device else None), device)
            for day in date_range.days()
            for kind in METRIC_KINDS
            for device in targets
        ]

    # ------------------------------------------------------------------
    # Provider calls with one re-authentication
    # ------------------------------------------------------------------

    async def _call(self, ctx: _RunContext, call, what: str) -> Any:
        """Run ``call(session)``; on AuthExpired re-authenticate once and retry once."""
        session = ctx.session
        try:
            return await call(session)
        except AuthExpired as exc:
            logger.warning("Session rejected during %s: %s; re-authenticating", what, exc)
            try:
                ctx.session = await self._auth.handle_auth_expired(ctx.user_id, session)
            except Exception as reauth_exc:
                raise _RunAbort(f"Re-authentication failed during {what}: {reauth_exc}") from reauth_exc

        try:
            return await call(ctx.session)
        except AuthExpired as exc:
            raise _RunAbort(f"Session rejected again after re-authentication during {what}") from exc

    async def _activity_window(
        self, ctx: _RunContext, session: TelemetryProvider
    ) -> list[dict[str, Any]]:
        """Every activity back to the run's first day, listed once per run.

        Garmin returns activities newest first.  Pages are read until one comes
        back short or reaches past ``date_range.start``.
        """
        async with ctx.activities_lock:
            if ctx.activities is not None:
                return ctx.activities
            oldest_wanted = ctx.date_range.start.isoformat() if ctx.date_range else None
            activities: list[dict[str, Any]] = []
            offset = 0
            while True:
                page = list(await session.get_activities(offset, self._activity_page_size) or [])
                activities.extend(page)
                if len(page) < self._activity_page_size:
                    break
                days = [d for d in map(activity_day, page) if d]
                if oldest_wanted is None or (days and min(days) < oldest_wanted):
                    break
                offset += len(page)
            logger.info(
                "Listed %d activities in %d page(s) for %s",
                len(activities), offset // self._activity_page_size + 1, ctx.user_id,
            )
            ctx.activities = activities
            return activities

    async def _fetch(
        self, ctx: _RunContext, session: TelemetryProvider, unit: ExtractionUnit
    ) -> Any:
        if unit.kind is MetricKind.ACTIVITY:
            return await self._activity_window(ctx, session)
        if unit.kind is MetricKind.HEART_RATE:
            return await session.get_heart_rate(unit.day)
        if unit.kind is MetricKind.SLEEP:
            return await session.get_sleep_data(unit.day)
        return await session.get_steps(unit.day)

    # ------------------------------------------------------------------
    # Units
    # ------------------------------------------------------------------

    async def _run_unit(
        self, ctx: _RunContext, unit: ExtractionUnit, device: Device | None
    ) -> PersistenceOutcome:
        """Fetch → filter → dual write for one unit.  Only _RunAbort escapes."""
        outcome = PersistenceOutcome(unit=unit)
        try:
            try:
                ctx.session = await self._auth.get_session(ctx.user_id)
            except Exception as exc:
                raise _RunAbort(f"Session unavailable for {unit}: {exc}") from exc

            payload = await self._call(ctx, lambda s: self._fetch(ctx, s, unit), str(unit))
            outcome.state = UnitState.FETCHED

            records = shape_records(unit.kind, payload, unit.day, unit.device_id)
            profile = self._registry.lookup(device.model_name if device else None)
            filtered = filter_records(records, profile)
            outcome.state = UnitState.FILTERED
        except _RunAbort:
            raise
        except Exception as exc:
            logger.warning("Fetch failed for %s: %s", unit, exc)
            outcome.state = UnitState.FAILED
            outcome.fetch_error = exc
            return outcome

        return await self._sink.write_unit(ctx.user_id, unit, filtered)

    async def _run_sequential(
        self,
        ctx: _RunContext,
        planned: list[tuple[ExtractionUnit, Device | None]],
        slots: list[PersistenceOutcome | None],
    ) -> None:
        for index, (unit, device) in enumerate(planned):
            if ctx.stopping:
                return
            slots[index] = await self._run_unit(ctx, unit, device)

    async def _run_pooled(
        self,
        ctx: _RunContext,
        planned: list[tuple[ExtractionUnit, Device | None]],
        slots: list[PersistenceOutcome | None],
    ) -> None:
        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def worker(index: int, unit: ExtractionUnit, device: Device | None) -> None:
            async with semaphore:
                if ctx.stopping:
                    return
                try:
                    slots[index] = await self._run_unit(ctx, unit, device)
                except _RunAbort as exc:
                    if ctx.aborted is None:
                        ctx.aborted = exc
                    raise

        results = await asyncio.gather(
            *(worker(i, u, d) for i, (u, d) in enumerate(planned)),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def extract(
        self,
        user_id: str,
        date_range: DateRange,
        device_filter: str | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ExtractionReport:
        """Extract every metric kind for every date in ``date_range``.

        Args:
            user_id:       User whose session to use.
            date_range:    Inclusive range, processed earliest first.
            device_filter: Optional device id or model name to restrict to.
            cancel_event:  Set to stop between units; the unit in progress finishes.

        Returns:
            ExtractionReport, even when every unit failed.

        Raises:
            AuthError / ProviderUnavailable: No session could be obtained.
            DeviceNotFound: ``device_filter`` matched no device (no fetch was made).
            ExtractionAborted: The session was lost mid-run and could not be
                               re-established; carries the partial report.
        """
        session = await self._auth.get_session(user_id)
        ctx = _RunContext(
            user_id=user_id, session=session, date_range=date_range, cancel_event=cancel_event
        )
        report = ExtractionReport(user_id=user_id, date_range=date_range)

        try:
            devices = self.select_devices(await self._discover_devices(ctx), device_filter)
        except _RunAbort as exc:
            report.finished_at = utcnow()
            raise ExtractionAborted(str(exc), report) from exc.__cause__ or exc

        planned = self.plan(date_range, devices)
        report.planned = len(planned)
        slots: list[PersistenceOutcome | None] = [None] * len(planned)
        logger.info(
            "Extracting %d unit(s) for %s: %s..%s, %d device(s)",
            len(planned), user_id, date_range.start, date_range.end, len(devices),
        )

        try:
            if self._max_concurrency == 1:
                await self._run_sequential(ctx, planned, slots)
            else:
                await self._run_pooled(ctx, planned, slots)
        except _RunAbort as exc:
            report.outcomes = [o for o in slots if o is not None]
            report.finished_at = utcnow()
            logger.error("Extraction aborted for %s: %s (%s)", user_id, exc, report.summary())
            raise ExtractionAborted(str(exc), report) from exc.__cause__ or exc

        report.outcomes = [o for o in slots if o is not None]
        report.cancelled = len(report.outcomes) < len(planned)
        report.finished_at = utcnow()
        logger.info("Extraction %s: %s", report.status, report.summary())
        for category, message in report.first_errors.items():
            logger.warning("First %s: %s", category, message)
        return report

    async def extract_profile(
        self, user_id: str, recent_limit: int = 10, today: date | None = None
    ) -> dict[str, str]:
        """Write ``user-profile.json`` and ``recent-activities.json`` to both sinks.

        Returns:
            artifact name → 'succeeded' | 'partial' | 'failed'.
        """
        session = await self._auth.get_session(user_id)
        ctx = _RunContext(user_id=user_id, session=session)
        today = today or date.today()

        artifacts = [
            (PROFILE_ARTIFACT, "garmin_user_profile", lambda s: s.get_user_profile()),
            (
                RECENT_ACTIVITIES_ARTIFACT,
                "garmin_recent_activities",
                lambda s: s.get_activities(0, recent_limit),
            ),
        ]
        results: dict[str, str] = {}
        for name, collection, call in artifacts:
            try:
                payload = await self._call(ctx, call, name)
            except _RunAbort as exc:
                report = ExtractionReport(user_id=user_id, date_range=DateRange(today, today))
                raise ExtractionAborted(str(exc), report) from exc.__cause__ or exc
            except Exception as exc:
                logger.warning("Could not fetch %s: %s", name, exc)
                results[name] = "failed"
                continue

            file_error, remote_error = await self._sink.write_named(
                user_id, name, collection, today, payload
            )
            ok = [file_error is None, remote_error is None]
            results[name] = "succeeded" if all(ok) else "partial" if any(ok) else "failed"
            for error in (file_error, remote_error):
                if error is not None:
                    logger.warning("Writing %s failed: %s", name, error)
        return results
