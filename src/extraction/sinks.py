"""Persistence sinks for extracted metrics.

Every extraction unit is written to two independent targets: a local JSON
file and a remote store (Supabase table or R2 object).  They are not
transactional with each other.  ``DualSink`` runs both writes concurrently
and records each outcome separately, so one failing sink never stops the other.

All writes are idempotent: file names and remote keys are derived from the
unit's (date, kind, device) key, and the remote write is an upsert.
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from datetime import date
from pathlib import Path
from typing import Any, Awaitable, Callable

import asyncpg
from botocore.exceptions import BotoCoreError, ClientError

from src.config import Settings
from src.extraction.base import (
    ExtractionUnit,
    MetricKind,
    MetricRecord,
    PersistenceOutcome,
    UnitState,
)
from src.extraction.dedup import build_upsert_query, payload_content_hash, unit_object_key
from src.extraction.errors import StorageError
from src.services import r2, supabase

logger = logging.getLogger("garmin_extract.extraction.sinks")

#: (calendar date ISO, kind / artifact, device id or '')
UnitKey = tuple[str, str, str]


def dumps(payload: Any) -> str:
    """Deterministic JSON: same input, same bytes."""
    return json.dumps(payload, indent=2, sort_keys=True, default=str)


# ---------------------------------------------------------------------------
# File sink
# ---------------------------------------------------------------------------


class FileSink:
    """Writes named JSON artifacts into a local directory."""

    name = "file"

    def __init__(self, output_dir: str | Path = "data") -> None:
        self.output_dir = Path(output_dir)

    def _write(self, name: str, payload: Any) -> Path:
        target = self.output_dir / name
        tmp = target.with_name(target.name + ".tmp")
        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
            tmp.write_text(dumps(payload), encoding="utf-8")
            tmp.replace(target)
        except OSError as exc:
            tmp.unlink(missing_ok=True)
            raise StorageError("file", f"Failed to write {target}: {exc}") from exc
        return target

    async def write_file(self, name: str, payload: Any) -> Path:
        """Write ``payload`` to ``output_dir/name``, replacing it atomically."""
        path = await asyncio.to_thread(self._write, name, payload)
        logger.debug("Wrote %s", path)
        return path


# ---------------------------------------------------------------------------
# Remote sinks
# ---------------------------------------------------------------------------


class RemoteSink(ABC):
    """A remote store that upserts one payload per unit key."""

    name = "remote"

    @abstractmethod
    async def write_remote(
        self,
        collection: str,
        payload: Any,
        *,
        user_id: str,
        unit_key: UnitKey,
        approximate_fields: list[str] | None = None,
    ) -> None:
        """Upsert ``payload`` into ``collection`` under ``(user_id, unit_key)``.

        Raises:
            StorageError: If the write fails.
        """


class SupabaseRemoteSink(RemoteSink):
    """One row per unit in a per-kind table.

    Expected table shape (one per collection)::

        user_id            text
        calendar_date      date
        device_id          text          -- '' for account-level data
        kind               text
        payload            jsonb
        content_hash       text
        approximate_fields text[]
        updated_at         timestamptz
        UNIQUE (user_id, calendar_date, device_id)
    """

    _COLUMNS = [
        "user_id",
        "calendar_date",
        "device_id",
        "kind",
        "payload",
        "content_hash",
        "approximate_fields",
    ]
    _CONFLICT = ["user_id", "calendar_date", "device_id"]

    def __init__(self, execute: Callable[..., Awaitable[str]] | None = None) -> None:
        self._execute = execute or supabase.execute
        self._queries: dict[str, str] = {}

    def _query(self, collection: str) -> str:
        if collection not in self._queries:
            self._queries[collection] = build_upsert_query(
                collection, self._COLUMNS, self._CONFLICT
            )
        return self._queries[collection]

    async def write_remote(
        self,
        collection: str,
        payload: Any,
        *,
        user_id: str,
        unit_key: UnitKey,
        approximate_fields: list[str] | None = None,
    ) -> None:
        day, kind, device_id = unit_key
        try:
            await self._execute(
                self._query(collection),
                user_id,
                date.fromisoformat(day),
                device_id,
                kind,
                json.dumps(payload, sort_keys=True, default=str),
                payload_content_hash(payload),
                sorted(approximate_fields or []),
            )
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
            raise StorageError(
                "remote", f"Upsert into {collection} failed for {unit_key}: {exc}"
            ) from exc


class R2RemoteSink(RemoteSink):
    """One object per unit at ``{prefix}/{user}/{collection}/{date}/{device}.json``."""

    def __init__(
        self, prefix: str = "garmin", client: Any = None, settings: Settings | None = None
    ) -> None:
        self._prefix = prefix
        self._client = client
        self._settings = settings

    async def write_remote(
        self,
        collection: str,
        payload: Any,
        *,
        user_id: str,
        unit_key: UnitKey,
        approximate_fields: list[str] | None = None,
    ) -> None:
        day, kind, device_id = unit_key
        key = unit_object_key(self._prefix, user_id, collection, day, device_id or None)
        metadata = {"kind": kind}
        if approximate_fields:
            metadata["approximate_fields"] = ",".join(sorted(approximate_fields))
        try:
            await asyncio.to_thread(
                r2.put_json,
                key,
                payload,
                metadata=metadata,
                settings=self._settings,
                client=self._client,
            )
        except (BotoCoreError, ClientError) as exc:
            raise StorageError("remote", f"R2 put failed for {key}: {exc}") from exc


# ---------------------------------------------------------------------------
# Dual sink
# ---------------------------------------------------------------------------


def unit_payload(kind: MetricKind, records: list[MetricRecord]) -> Any:
    """Activities are stored as a list; every other kind as a single object."""
    if kind is MetricKind.ACTIVITY:
        return [r.to_json() for r in records]
    return records[0].to_json() if records else {}


class DualSink:
    """Writes each unit to the file sink and the remote sink independently."""

    def __init__(self, file_sink: FileSink, remote_sink: RemoteSink) -> None:
        self.file_sink = file_sink
        self.remote_sink = remote_sink

    async def _both(
        self, file_write: Awaitable[Any], remote_write: Awaitable[Any]
    ) -> tuple[Exception | None, Exception | None]:
        results = await asyncio.gather(file_write, remote_write, return_exceptions=True)
        file_result, remote_result = results
        for result in results:
            if isinstance(result, BaseException) and not isinstance(result, Exception):
                raise result  # cancellation / interpreter exit
        return (
            file_result if isinstance(file_result, Exception) else None,
            remote_result if isinstance(remote_result, Exception) else None,
        )

    async def write_unit(
        self, user_id: str, unit: ExtractionUnit, records: list[MetricRecord]
    ) -> PersistenceOutcome:
        """Write one unit's filtered records to both sinks.

        Returns:
            PersistenceOutcome with per-sink success flags and errors.  State is
            PERSISTED if at least one sink succeeded, FAILED otherwise.
        """
        payload = unit_payload(unit.kind, records)
        approximate = sorted(set().union(*(r.approximate_fields for r in records)))

        file_error, remote_error = await self._both(
            self.file_sink.write_file(unit.artifact_name, payload),
            self.remote_sink.write_remote(
                unit.kind.table,
                payload,
                user_id=user_id,
                unit_key=unit.key,
                approximate_fields=approximate,
            ),
        )

        outcome = PersistenceOutcome(
            unit=unit,
            file_ok=file_error is None,
            remote_ok=remote_error is None,
            file_error=file_error,
            remote_error=remote_error,
            records=len(records),
        )
        outcome.state = (
            UnitState.PERSISTED if outcome.file_ok or outcome.remote_ok else UnitState.FAILED
        )
        for sink_name, error in (("file", file_error), ("remote", remote_error)):
            if error is not None:
                logger.warning("%s sink failed for %s: %s", sink_name, unit, error)
        return outcome

    async def write_named(
        self, user_id: str, name: str, collection: str, day: date, payload: Any
    ) -> tuple[Exception | None, Exception | None]:
        """Write an account-level artifact (e.g. user-profile.json) to both sinks."""
        return await self._both(
            self.file_sink.write_file(name, payload),
            self.remote_sink.write_remote(
                collection,
                payload,
                user_id=user_id,
                unit_key=(day.isoformat(), name.removesuffix(".json"), ""),
            ),
        )
