"""Remote telemetry providers.

Available providers:
    GarminConnectProvider — Garmin Connect via garth (regular account login)
"""

from src.extraction.provider.base import ProviderFactory, TelemetryProvider
from src.extraction.provider.garmin import GarminConnectProvider, garmin_provider_factory

__all__ = [
    "GarminConnectProvider",
    "ProviderFactory",
    "TelemetryProvider",
    "garmin_provider_factory",
]
