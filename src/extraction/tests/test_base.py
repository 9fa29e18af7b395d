"""Tests for the canonical data model: units, devices, outcomes and the run report."""

from __future__ import annotations

from datetime import date, timedelta

import pytest

from src.extraction.base import (
    Credentials,
    DateRange,
    Device,
    ExtractionReport,
    ExtractionUnit,
    MetricKind,
    PersistenceOutcome,
)
from src.extraction.errors import ProviderUnavailable, StorageError
from src.extraction.tests.conftest import T0, TEST_DATE, TEST_USER_ID


def _outcome(file_ok: bool, remote_ok: bool, error: Exception | None = None) -> PersistenceOutcome:
    return PersistenceOutcome(
        unit=ExtractionUnit(TEST_DATE, MetricKind.STEPS, "d1"),
        file_ok=file_ok,
        remote_ok=remote_ok,
        remote_error=error,
    )


class TestMetricKind:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("heart_rate", MetricKind.HEART_RATE),
            ("heartRate", MetricKind.HEART_RATE),
            ("Activity", MetricKind.ACTIVITY),
            (" sleep ", MetricKind.SLEEP),
        ],
    )
    def test_parse_aliases(self, raw: str, expected: MetricKind) -> None:
        assert MetricKind.parse(raw) is expected

    def test_parse_unknown(self) -> None:
        with pytest.raises(ValueError):
            MetricKind.parse("naps")

    def test_table_names(self) -> None:
        assert {k.table for k in MetricKind} == {
            "garmin_activities",
            "garmin_heart_rate",
            "garmin_sleep",
            "garmin_steps",
        }


class TestExtractionUnit:
    def test_device_scoped_artifact_name(self) -> None:
        unit = ExtractionUnit(TEST_DATE, MetricKind.HEART_RATE, "3944")
        assert unit.artifact_name == "heart-rate-2026-02-23-device-3944.json"
        assert unit.key == ("2026-02-23", "heart-rate", "3944")

    def test_account_level_artifact_name(self) -> None:
        unit = ExtractionUnit(TEST_DATE, MetricKind.SLEEP)
        assert unit.artifact_name == "sleep-2026-02-23.json"
        assert unit.key == ("2026-02-23", "sleep", "")
        assert str(unit) == "sleep/2026-02-23/-"


class TestDateRange:
    def test_days_are_inclusive_and_ordered(self) -> None:
        days = list(DateRange(date(2026, 2, 27), date(2026, 3, 2)).days())
        assert days == [date(2026, 2, 27), date(2026, 2, 28), date(2026, 3, 1), date(2026, 3, 2)]

    def test_single_day(self) -> None:
        assert len(DateRange(TEST_DATE, TEST_DATE)) == 1

    def test_last_n_days(self) -> None:
        assert DateRange.last_n_days(7, TEST_DATE).start == TEST_DATE - timedelta(days=6)

    def test_rejects_bad_input(self) -> None:
        with pytest.raises(ValueError):
            DateRange(TEST_DATE, TEST_DATE - timedelta(days=1))
        with pytest.raises(ValueError):
            DateRange.last_n_days(0, TEST_DATE)


class TestDevice:
    def test_from_payload(self) -> None:
        device = Device.from_payload(
            {"deviceId": 3944, "productDisplayName": "Forerunner 235", "deviceTypePk": 12}
        )
        assert device == Device("3944", "Forerunner 235", "12")

    def test_falls_back_to_unit_id_and_part_number(self) -> None:
        device = Device.from_payload({"unitId": 7, "partNumber": "006-B2431-00"})
        assert device.device_id == "7"
        assert device.model_name == "006-B2431-00"
        assert device.device_type is None

    def test_requires_an_id(self) -> None:
        with pytest.raises(ValueError, match="no deviceId"):
            Device.from_payload({"productDisplayName": "Forerunner 235"})


class TestCredentials:
    def test_expiry(self) -> None:
        credentials = Credentials(TEST_USER_ID, "a@b.c", "pw", T0)
        assert credentials.is_expired(T0)
        assert not credentials.is_expired(T0 - timedelta(seconds=1))
        assert Credentials(TEST_USER_ID, "a@b.c", "pw").is_expired(T0)

    def test_redacted_without_email(self) -> None:
        assert Credentials(TEST_USER_ID, "runner", "pw").redacted()["login"] == "r***"


class TestPersistenceOutcome:
    def test_status(self) -> None:
        assert _outcome(True, True).status == "succeeded"
        assert _outcome(True, False).status == "partial"
        assert _outcome(False, True).status == "partial"
        assert _outcome(False, False).status == "failed"


class TestExtractionReport:
    def _report(self, *outcomes: PersistenceOutcome) -> ExtractionReport:
        report = ExtractionReport(
            user_id=TEST_USER_ID, date_range=DateRange(TEST_DATE, TEST_DATE)
        )
        report.outcomes = list(outcomes)
        report.planned = len(outcomes)
        return report

    def test_empty_report_is_failed(self) -> None:
        report = self._report()
        assert report.status == "failed"
        assert report.exit_code == 1

    def test_all_succeeded(self) -> None:
        report = self._report(_outcome(True, True), _outcome(True, True))
        assert report.status == "success"
        assert report.exit_code == 0

    def test_degraded_is_partial_and_exits_zero(self) -> None:
        report = self._report(_outcome(True, True), _outcome(False, False))
        assert report.status == "partial"
        assert report.degraded == 1
        assert report.exit_code == 0

    def test_all_failed(self) -> None:
        report = self._report(_outcome(False, False), _outcome(False, False))
        assert report.status == "failed"
        assert report.exit_code == 1

    def test_first_error_per_category(self) -> None:
        report = self._report(
            _outcome(True, False, StorageError("remote", "first")),
            _outcome(True, False, StorageError("remote", "second")),
            _outcome(False, False, ProviderUnavailable("down")),
        )
        assert report.first_errors == {
            "storage_error": "[remote] first",
            "provider_unavailable": "down",
        }

    def test_summary(self) -> None:
        report = self._report(_outcome(True, True), _outcome(True, False))
        assert report.summary() == (
            "user-123 2026-02-23..2026-02-23: 2/2 units, 1 ok, 1 partial, 0 failed"
        )
