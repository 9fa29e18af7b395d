"""Credential store: long-lived Garmin login credentials per user.

The Supabase implementation keeps one row per user in ``garmin_auth``::

    user_id          text primary key
    garmin_email     text
    garmin_password  text
    token_expires_at timestamptz
    updated_at       timestamptz

Writes are upserts (last write wins).  Exactly one orchestrator drives one
user per process, so no concurrent-writer protection is needed.
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable

import asyncpg

from src.extraction.base import Credentials
from src.extraction.dedup import build_upsert_query
from src.extraction.errors import StorageError
from src.services import supabase

logger = logging.getLogger("garmin_extract.extraction.auth.storage")

_QUOTES = re.compile(r"[\"']")


def clean_user_id(user_id: str) -> str:
    """Strip whitespace and quote characters picked up from env files."""
    return _QUOTES.sub("", user_id.strip())


class CredentialStore(ABC):
    """Key-value persistence for Credentials, keyed by user id."""

    @abstractmethod
    async def get(self, user_id: str) -> Credentials | None:
        """Return stored credentials, or None if the user has none.

        Raises:
            StorageError: If the store cannot be read.
        """

    @abstractmethod
    async def put(self, credentials: Credentials) -> None:
        """Create or overwrite the user's credentials.

        Raises:
            StorageError: If the store cannot be written.
        """


class SupabaseCredentialStore(CredentialStore):
    """Credential store backed by a Supabase Postgres table."""

    _COLUMNS = ["user_id", "garmin_email", "garmin_password", "token_expires_at"]

    def __init__(
        self,
        table: str = "garmin_auth",
        execute: Callable[..., Awaitable[str]] | None = None,
        fetchrow: Callable[..., Awaitable[Any]] | None = None,
    ) -> None:
        """Initialize the store.

        Args:
            table:    Credentials table name.
            execute:  Statement executor (defaults to src.services.supabase.execute).
            fetchrow: Single-row fetcher (defaults to src.services.supabase.fetchrow).
        """
        self._table = table
        self._execute = execute or supabase.execute
        self._fetchrow = fetchrow or supabase.fetchrow
        self._upsert_sql = build_upsert_query(table, self._COLUMNS, ["user_id"])

    async def get(self, user_id: str) -> Credentials | None:
        uid = clean_user_id(user_id)
        logger.debug("Loading credentials for user %s", uid)
        try:
            row = await self._fetchrow(
                f"SELECT user_id, garmin_email, garmin_password, token_expires_at "
                f"FROM {self._table} WHERE user_id = $1",
                uid,
            )
        except (asyncpg.PostgresError, OSError) as exc:
            raise StorageError("credentials", f"Failed to get credentials: {exc}") from exc

        if row is None:
            return None
        return Credentials(
            user_id=row["user_id"],
            login_identifier=row["garmin_email"],
            secret=row["garmin_password"],
            session_expiry=row["token_expires_at"],
        )

    async def put(self, credentials: Credentials) -> None:
        uid = clean_user_id(credentials.user_id)
        logger.info("Storing credentials: %s", credentials.redacted())
        try:
            await self._execute(
                self._upsert_sql,
                uid,
                credentials.login_identifier,
                credentials.secret,
                credentials.session_expiry,
            )
        except (asyncpg.PostgresError, OSError) as exc:
            raise StorageError("credentials", f"Failed to store credentials: {exc}") from exc
