"""Device capability profiles and the field filter built on them."""

from src.extraction.devices.filter import filter_record, filter_records
from src.extraction.devices.registry import (
    CapabilityRegistry,
    ConfigValidationError,
    DeviceCapabilityProfile,
    get_capability_registry,
)

__all__ = [
    "CapabilityRegistry",
    "ConfigValidationError",
    "DeviceCapabilityProfile",
    "filter_record",
    "filter_records",
    "get_capability_registry",
]
