"""Idempotency helpers for extraction writes.

Re-extracting a unit must never produce two conflicting stored copies.

Dedup keys:
    - file sink:      artifact name ``{kind}-{date}[-device-{id}].json`` (overwrite)
    - supabase sink:  (user_id, calendar_date, device_id), UNIQUE per metric table
    - r2 sink:        ``{prefix}/{user_id}/{table}/{date}/{device}.json`` (overwrite)
"""

from __future__ import annotations

import hashlib
import json
from datetime import date


def unit_object_key(
    prefix: str, user_id: str, collection: str, day: date | str, device_id: str | None
) -> str:
    """Object-store key for one extraction unit.

    Args:
        prefix:     Bucket prefix (e.g. 'garmin').
        user_id:    Internal user identifier.
        collection: Remote collection (metric table name).
        day:        Calendar date of the unit.
        device_id:  Device of the unit, or None for account-level data.

    Returns:
        Slash-separated object key.
    """
    day_str = day.isoformat() if isinstance(day, date) else day
    return f"{prefix}/{user_id}/{collection}/{day_str}/{device_id or 'account'}.json"


def payload_content_hash(payload: object) -> str:
    """SHA-256 of the canonicalized JSON.

    Identical input always hashes identically, so a repeated upsert of the
    same unit is detectable as a no-op.
    """
    canonical = json.dumps(payload, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def build_upsert_query(
    table: str,
    columns: list[str],
    conflict_columns: list[str],
    update_columns: list[str] | None = None,
) -> str:
    """Build a PostgreSQL INSERT ... ON CONFLICT DO UPDATE (upsert) query.

    Generates idempotent writes — safe to call multiple times with the same
    data.  On conflict, updates the non-key columns.

    Args:
        table:            Target table name.
        columns:          All columns to insert.
        conflict_columns: Columns that define the UNIQUE constraint.
        update_columns:   Columns to update on conflict (defaults to non-key columns).

    Returns:
        Parameterized SQL string.
    """
    if update_columns is None:
        update_columns = [c for c in columns if c not in conflict_columns]

    placeholders = ", ".join(f"${i + 1}" for i in range(len(columns)))
    col_list = ", ".join(columns)
    conflict_target = ", ".join(conflict_columns)

    if update_columns:
        update_set = ", ".join(
            f"{col} = EXCLUDED.{col}" for col in update_columns
        )
        update_set += ", updated_at = NOW()"
        do_clause = f"DO UPDATE SET {update_set}"
    else:
        do_clause = "DO NOTHING"

    return (
        f"INSERT INTO {table} ({col_list}) "
        f"VALUES ({placeholders}) "
        f"ON CONFLICT ({conflict_target}) {do_clause}"
    )
