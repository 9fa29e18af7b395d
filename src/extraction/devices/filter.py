"""Capability filter: shrink a metric record to what its device can produce.

Pure functions, no I/O.  The registry narrows known-bad fields, it never
whitelists: identity fields always survive, unsupported fields are dropped,
everything else (supported, partial, or not mentioned) is kept.
"""

from __future__ import annotations

from src.extraction.base import IDENTITY_FIELDS, FieldSupport, MetricRecord
from src.extraction.devices.registry import DeviceCapabilityProfile


def filter_record(
    record: MetricRecord, profile: DeviceCapabilityProfile
) -> MetricRecord:
    """Return a derived copy of ``record`` without fields the device cannot produce.

    Partial fields that remain are listed in ``approximate_fields``.  A
    pass-through profile yields a record equal to the input.

    Args:
        record:  Record as shaped from the provider payload.
        profile: Capability profile of the record's device.

    Returns:
        A new MetricRecord; the input is never mutated.
    """
    identity = IDENTITY_FIELDS[record.kind]
    kept: dict = {}
    approximate: set[str] = set(record.approximate_fields)

    for name, value in record.fields.items():
        if name in identity:
            kept[name] = value
            continue
        support = profile.support(record.kind, name)
        if support is FieldSupport.UNSUPPORTED:
            continue
        if support is FieldSupport.PARTIAL:
            approximate.add(name)
        kept[name] = value

    return record.with_fields(kept, frozenset(approximate.intersection(kept)))


def filter_records(
    records: list[MetricRecord], profile: DeviceCapabilityProfile
) -> list[MetricRecord]:
    return [filter_record(r, profile) for r in records]
