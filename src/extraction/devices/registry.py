"""Device capability registry: which metric fields each device model produces.

The table lives in ``device_profiles.yaml`` alongside this module.  It is
loaded once, validated, and cached.  Call ``reload_capability_registry()`` to
re-read it from disk.  Adding a model means adding a YAML entry, never new
filtering code.

Usage::

    from src.extraction.devices.registry import get_capability_registry

    profile = get_capability_registry().lookup("Forerunner 235")
    profile.support(MetricKind.SLEEP, "remSleepSeconds")   # FieldSupport.UNSUPPORTED
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from src.extraction.base import FieldSupport, MetricKind

logger = logging.getLogger("garmin_extract.extraction.devices.registry")

# Path to the YAML file sitting next to this module
_PROFILES_PATH = Path(__file__).parent / "device_profiles.yaml"


# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DeviceCapabilityProfile:
    """Per-model field support table.

    Attributes:
        model_name: Device model as reported by Garmin (e.g. 'Forerunner 235').
        fields:     metric kind → field name → FieldSupport.  An empty mapping
                    is the pass-through profile used for unknown models.
    """

    model_name: str
    fields: dict[MetricKind, dict[str, FieldSupport]] = field(default_factory=dict)

    @property
    def is_passthrough(self) -> bool:
        return not any(self.fields.values())

    def support(self, kind: MetricKind, field_name: str) -> FieldSupport | None:
        """Return the declared support for a field, or None if not mentioned."""
        return self.fields.get(kind, {}).get(field_name)

    def unsupported_fields(self, kind: MetricKind) -> frozenset[str]:
        return frozenset(
            name for name, s in self.fields.get(kind, {}).items()
            if s is FieldSupport.UNSUPPORTED
        )

    def partial_fields(self, kind: MetricKind) -> frozenset[str]:
        return frozenset(
            name for name, s in self.fields.get(kind, {}).items()
            if s is FieldSupport.PARTIAL
        )


def passthrough_profile(model_name: str) -> DeviceCapabilityProfile:
    """Profile that filters nothing."""
    return DeviceCapabilityProfile(model_name=model_name)


def _normalize_model(model_name: str) -> str:
    return " ".join(model_name.split()).casefold()


class CapabilityRegistry:
    """Immutable lookup table of device capability profiles."""

    def __init__(
        self, profiles: list[DeviceCapabilityProfile], version: str = "1.0"
    ) -> None:
        self.version = version
        self._profiles = {_normalize_model(p.model_name): p for p in profiles}

    def lookup(self, model_name: str | None) -> DeviceCapabilityProfile:
        """Return the profile for a model, or a pass-through one if unknown.

        Filtering is opt-in per model: unknown hardware is never filtered.
        """
        if model_name:
            profile = self._profiles.get(_normalize_model(model_name))
            if profile is not None:
                return profile
        logger.debug("No capability profile for %r; passing through", model_name)
        return passthrough_profile(model_name or "unknown")

    def models(self) -> list[str]:
        return sorted(p.model_name for p in self._profiles.values())

    def __contains__(self, model_name: str) -> bool:
        return _normalize_model(model_name) in self._profiles

    def __len__(self) -> int:
        return len(self._profiles)


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when device_profiles.yaml fails validation."""


_BOOL_SUPPORT = {True: FieldSupport.SUPPORTED, False: FieldSupport.UNSUPPORTED}


def _parse_support(value: Any) -> FieldSupport:
    if isinstance(value, bool):
        return _BOOL_SUPPORT[value]
    if isinstance(value, str):
        return FieldSupport(value.strip().lower())
    raise ValueError(value)


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    if not path.exists():
        raise FileNotFoundError(f"Device profiles not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc


def _validate_and_build(raw: dict) -> CapabilityRegistry:
    """Validate the raw YAML dict and construct a CapabilityRegistry.

    All problems are collected and reported together.

    Raises:
        ConfigValidationError: If any profile entry is invalid.
    """
    errors: list[str] = []
    version = str(raw.get("version", "1.0"))

    profiles_raw = raw.get("profiles", {})
    if not isinstance(profiles_raw, dict):
        raise ConfigValidationError("'profiles' must be a mapping of model → metrics")

    profiles: list[DeviceCapabilityProfile] = []
    seen: set[str] = set()
    for model, metrics in profiles_raw.items():
        model_name = str(model)
        key = _normalize_model(model_name)
        if key in seen:
            errors.append(f"Duplicate profile for model '{model_name}'")
            continue
        seen.add(key)

        if not isinstance(metrics, dict):
            errors.append(f"profiles.{model_name} must be a mapping of metric → fields")
            continue

        fields: dict[MetricKind, dict[str, FieldSupport]] = {}
        for metric, field_map in metrics.items():
            try:
                kind = MetricKind.parse(str(metric))
            except ValueError:
                errors.append(f"profiles.{model_name}: unknown metric kind '{metric}'")
                continue
            if not isinstance(field_map, dict):
                errors.append(
                    f"profiles.{model_name}.{metric} must be a mapping of field → support"
                )
                continue
            fields[kind] = {}
            for name, value in field_map.items():
                try:
                    fields[kind][str(name)] = _parse_support(value)
                except ValueError:
                    errors.append(
                        f"profiles.{model_name}.{metric}.{name}: invalid support "
                        f"{value!r} (expected supported / partial / unsupported)"
                    )

        profiles.append(DeviceCapabilityProfile(model_name=model_name, fields=fields))

    if errors:
        raise ConfigValidationError(
            f"device_profiles.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return CapabilityRegistry(profiles, version=version)


def load_capability_registry(path: Path | None = None) -> CapabilityRegistry:
    """Load and validate the capability table from disk.

    Args:
        path: Override path to YAML. Uses the bundled device_profiles.yaml by default.
    """
    target = path or _PROFILES_PATH
    registry = _validate_and_build(_load_yaml(target))
    logger.info(
        "Loaded %d device profile(s) v%s from %s", len(registry), registry.version, target
    )
    return registry


# ---------------------------------------------------------------------------
# Global singleton with reload support
# ---------------------------------------------------------------------------

_registry: CapabilityRegistry | None = None
_registry_lock = threading.Lock()


def get_capability_registry() -> CapabilityRegistry:
    """Return the global registry, loading it on first call.  Thread-safe."""
    global _registry
    if _registry is None:
        with _registry_lock:
            if _registry is None:  # double-checked locking
                _registry = load_capability_registry()
    return _registry


def reload_capability_registry(path: Path | None = None) -> CapabilityRegistry:
    """Reload the table and replace the global singleton.

    If validation fails, the old registry is retained and the error re-raised.
    """
    global _registry
    new_registry = load_capability_registry(path)  # validate before acquiring lock
    with _registry_lock:
        _registry = new_registry
    return new_registry
