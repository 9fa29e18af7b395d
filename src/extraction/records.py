"""Shape raw Garmin payloads into MetricRecords for one extraction unit.

Pure functions: no I/O, no side effects, tolerant of missing or null fields.
Every record is stamped with the unit's ``deviceId`` and ``calendarDate``
unless the payload already carries its own.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any

from src.extraction.base import MetricKind, MetricRecord

logger = logging.getLogger("garmin_extract.extraction.records")


def _stamp(fields: dict[str, Any], day: date, device_id: str | None) -> dict[str, Any]:
    if fields.get("deviceId") is None:
        fields["deviceId"] = device_id
    if not fields.get("calendarDate"):
        fields["calendarDate"] = day.isoformat()
    return fields


def activity_day(activity: dict[str, Any]) -> str | None:
    """Local calendar date of an activity ('2026-02-23 07:15:00' → '2026-02-23')."""
    start = activity.get("startTimeLocal")
    if not start or not isinstance(start, str):
        return None
    return start[:10]


def sleep_records(
    payload: dict[str, Any] | None, day: date, device_id: str | None
) -> list[MetricRecord]:
    """Flatten ``dailySleepDTO`` over the other top-level sleep keys."""
    payload = payload or {}
    fields = {k: v for k, v in payload.items() if k != "dailySleepDTO"}
    fields.update(payload.get("dailySleepDTO") or {})
    return [MetricRecord(MetricKind.SLEEP, _stamp(fields, day, device_id))]


def heart_rate_records(
    payload: dict[str, Any] | None, day: date, device_id: str | None
) -> list[MetricRecord]:
    return [MetricRecord(MetricKind.HEART_RATE, _stamp(dict(payload or {}), day, device_id))]


def steps_records(
    intervals: list[dict[str, Any]] | None, day: date, device_id: str | None
) -> list[MetricRecord]:
    """One daily record: total ``steps`` plus the raw 15-minute ``intervals``."""
    intervals = list(intervals or [])
    total = sum(int(i.get("steps") or 0) for i in intervals)
    fields = {"steps": total, "intervals": intervals}
    return [MetricRecord(MetricKind.STEPS, _stamp(fields, day, device_id))]


def activity_records(
    activities: list[dict[str, Any]] | None, day: date, device_id: str | None
) -> list[MetricRecord]:
    """Activities that started on ``day`` and, when attributed, on ``device_id``."""
    target = day.isoformat()
    records: list[MetricRecord] = []
    for activity in activities or []:
        start_day = activity_day(activity)
        if start_day is None:
            logger.debug("Skipping activity %s without startTimeLocal", activity.get("activityId"))
            continue
        if start_day != target:
            continue
        owner = activity.get("deviceId")
        if device_id is not None and owner is not None and str(owner) != device_id:
            continue
        records.append(MetricRecord(MetricKind.ACTIVITY, _stamp(dict(activity), day, device_id)))
    return records


SHAPERS = {
    MetricKind.ACTIVITY: activity_records,
    MetricKind.HEART_RATE: heart_rate_records,
    MetricKind.SLEEP: sleep_records,
    MetricKind.STEPS: steps_records,
}


def shape_records(
    kind: MetricKind, payload: Any, day: date, device_id: str | None
) -> list[MetricRecord]:
    """Dispatch to the shaper for ``kind``."""
    return SHAPERS[kind](payload, day, device_id)
