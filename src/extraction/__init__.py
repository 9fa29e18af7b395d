"""Garmin telemetry extraction.

Authenticates against Garmin Connect, discovers the account's devices, and
extracts activities, heart rate, sleep and steps for a date range.  Each
record is narrowed to the fields its device model can actually produce before
it is written to a local JSON file and a remote store.

Subpackages:
    auth/     — Session state machine, login error classification, credential store
    devices/  — Device capability registry (device_profiles.yaml) and field filter
    provider/ — Remote telemetry provider interface and the garth-based Garmin client

Core modules:
    base          — Canonical data model (records, units, outcomes, report)
    errors        — Error taxonomy
    records       — Payload → MetricRecord shaping
    sinks         — File / Supabase / R2 sinks and the dual sink
    orchestrator  — Extraction runs
"""

from src.extraction.base import (
    Credentials,
    DateRange,
    Device,
    ExtractionReport,
    ExtractionUnit,
    FieldSupport,
    MetricKind,
    MetricRecord,
    PersistenceOutcome,
)
from src.extraction.orchestrator import ExtractionOrchestrator, resolve_date_range

__all__ = [
    "Credentials",
    "DateRange",
    "Device",
    "ExtractionOrchestrator",
    "ExtractionReport",
    "ExtractionUnit",
    "FieldSupport",
    "MetricKind",
    "MetricRecord",
    "PersistenceOutcome",
    "resolve_date_range",
]
