"""Tests for per-device capability filtering."""

import pytest

from src.extraction.base import METRIC_KINDS, FieldSupport, MetricKind, MetricRecord
from src.extraction.devices.filter import filter_record, filter_records
from src.extraction.devices.registry import CapabilityRegistry, DeviceCapabilityProfile


class TestForerunner235:
    def test_drops_rem_sleep(self, registry: CapabilityRegistry) -> None:
        record = MetricRecord(
            MetricKind.SLEEP,
            {"deviceId": "d1", "deepSleepSeconds": 100, "remSleepSeconds": 50},
        )
        filtered = filter_record(record, registry.lookup("Forerunner 235"))
        assert filtered.fields == {"deviceId": "d1", "deepSleepSeconds": 100}
        assert filtered.approximate_fields == frozenset()

    def test_does_not_mutate_input(self, registry: CapabilityRegistry) -> None:
        fields = {"deviceId": "d1", "deepSleepSeconds": 100, "remSleepSeconds": 50}
        record = MetricRecord(MetricKind.SLEEP, fields)
        filter_record(record, registry.lookup("Forerunner 235"))
        assert record.fields == {"deviceId": "d1", "deepSleepSeconds": 100, "remSleepSeconds": 50}

    def test_partial_fields_are_kept_and_flagged(self, registry: CapabilityRegistry) -> None:
        record = MetricRecord(
            MetricKind.ACTIVITY,
            {
                "activityId": 42,
                "deviceId": "d1",
                "distance": 5000.0,
                "elevationGain": 12.0,
                "runningPower": 250,
            },
        )
        filtered = filter_record(record, registry.lookup("Forerunner 235"))
        assert "runningPower" not in filtered.fields
        assert filtered.fields["elevationGain"] == 12.0
        assert filtered.approximate_fields == {"elevationGain"}

    def test_unlisted_fields_pass_through(self, registry: CapabilityRegistry) -> None:
        record = MetricRecord(MetricKind.SLEEP, {"deviceId": "d1", "sleepWindowConfirmed": True})
        filtered = filter_record(record, registry.lookup("Forerunner 235"))
        assert filtered.fields == record.fields

    @pytest.mark.parametrize("kind", METRIC_KINDS)
    def test_no_unsupported_field_survives(self, registry: CapabilityRegistry, kind) -> None:
        profile = registry.lookup("Forerunner 235")
        declared = profile.fields.get(kind, {})
        record = MetricRecord(
            kind,
            {"deviceId": "d1", "calendarDate": "2026-02-23", **{name: 1 for name in declared}},
        )
        filtered = filter_record(record, profile)
        assert not (set(filtered.fields) & profile.unsupported_fields(kind))
        assert filtered.approximate_fields == profile.partial_fields(kind) & set(filtered.fields)


class TestPassthrough:
    def test_unknown_model_returns_equal_record(self, registry: CapabilityRegistry) -> None:
        record = MetricRecord(
            MetricKind.SLEEP,
            {"deviceId": "d2", "deepSleepSeconds": 100, "remSleepSeconds": 50},
        )
        filtered = filter_record(record, registry.lookup("Venu 2"))
        assert filtered == record

    def test_filter_records_maps_every_record(self, registry: CapabilityRegistry) -> None:
        records = [
            MetricRecord(MetricKind.ACTIVITY, {"activityId": i, "runningPower": 200})
            for i in range(3)
        ]
        filtered = filter_records(records, registry.lookup("Forerunner 235"))
        assert [r.fields for r in filtered] == [{"activityId": i} for i in range(3)]


class TestIdentityFields:
    def test_identity_fields_survive_even_when_marked_unsupported(self) -> None:
        profile = DeviceCapabilityProfile(
            model_name="Odd",
            fields={
                MetricKind.STEPS: {
                    "deviceId": FieldSupport.UNSUPPORTED,
                    "calendarDate": FieldSupport.UNSUPPORTED,
                    "steps": FieldSupport.UNSUPPORTED,
                }
            },
        )
        record = MetricRecord(
            MetricKind.STEPS, {"deviceId": "d9", "calendarDate": "2026-02-23", "steps": 900}
        )
        filtered = filter_record(record, profile)
        assert filtered.fields == {"deviceId": "d9", "calendarDate": "2026-02-23"}

    def test_existing_approximate_fields_dropped_with_their_field(self) -> None:
        profile = DeviceCapabilityProfile(
            model_name="Odd",
            fields={MetricKind.SLEEP: {"sleepScore": FieldSupport.UNSUPPORTED}},
        )
        record = MetricRecord(
            MetricKind.SLEEP,
            {"deviceId": "d9", "sleepScore": 70},
            approximate_fields=frozenset({"sleepScore"}),
        )
        assert filter_record(record, profile).approximate_fields == frozenset()
