"""Tests for the process entry point wiring and exit codes."""

from __future__ import annotations

from datetime import date
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from src import main
from src.config import Settings
from src.extraction.base import DateRange, ExtractionReport
from src.extraction.errors import ExtractionAborted, InvalidCredentials
from src.extraction.sinks import R2RemoteSink, SupabaseRemoteSink
from src.extraction.tests.conftest import TEST_DATE, TEST_EMAIL, TEST_PASSWORD, TEST_USER_ID


def _settings(**overrides) -> Settings:
    return Settings(
        garmin_user_id=TEST_USER_ID,
        garmin_email=TEST_EMAIL,
        garmin_password=TEST_PASSWORD,
        _env_file=None,
        **overrides,
    )


def _report(status: str) -> MagicMock:
    report = MagicMock(spec=ExtractionReport)
    report.status = status
    report.exit_code = 1 if status == "failed" else 0
    report.degraded = 0 if status == "success" else 1
    return report


@pytest.fixture
def wired():
    """Patch the pool and the orchestrator factory; yield (auth, orchestrator)."""
    auth = MagicMock()
    auth.authenticate = AsyncMock()
    orchestrator = MagicMock()
    orchestrator.extract = AsyncMock(return_value=_report("success"))
    orchestrator.extract_profile = AsyncMock(return_value={})
    with (
        patch.object(main, "init_pool", AsyncMock()) as init_pool,
        patch.object(main, "close_pool", AsyncMock()) as close_pool,
        patch.object(main, "build_orchestrator", return_value=(auth, orchestrator)),
    ):
        yield auth, orchestrator, init_pool, close_pool


class TestBuildOrchestrator:
    def test_supabase_remote_by_default(self) -> None:
        _, orchestrator = main.build_orchestrator(_settings())
        assert isinstance(orchestrator._sink.remote_sink, SupabaseRemoteSink)

    def test_r2_remote(self) -> None:
        _, orchestrator = main.build_orchestrator(_settings(remote_sink="r2"))
        assert isinstance(orchestrator._sink.remote_sink, R2RemoteSink)


class TestRun:
    @pytest.mark.asyncio
    async def test_success_exit_code_and_range(self, wired) -> None:
        auth, orchestrator, init_pool, close_pool = wired

        code = await main.run(_settings(extract_mode="recent"), today=TEST_DATE)

        assert code == 0
        auth.authenticate.assert_awaited_once_with(TEST_USER_ID, TEST_EMAIL, TEST_PASSWORD)
        orchestrator.extract_profile.assert_awaited_once_with(TEST_USER_ID, 10, TEST_DATE)
        orchestrator.extract.assert_awaited_once_with(
            TEST_USER_ID, DateRange(date(2026, 2, 22), TEST_DATE), device_filter=None
        )
        init_pool.assert_awaited_once()
        close_pool.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_partial_run_exits_zero(self, wired) -> None:
        _, orchestrator, _, _ = wired
        orchestrator.extract.return_value = _report("partial")

        assert await main.run(_settings(include_profile=False), today=TEST_DATE) == 0
        orchestrator.extract_profile.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_run_exits_one(self, wired) -> None:
        _, orchestrator, _, _ = wired
        orchestrator.extract.return_value = _report("failed")

        assert await main.run(_settings(), today=TEST_DATE) == 1

    @pytest.mark.asyncio
    async def test_auth_failure_exits_one_and_closes_pool(self, wired) -> None:
        auth, orchestrator, _, close_pool = wired
        auth.authenticate.side_effect = InvalidCredentials("bad password")

        assert await main.run(_settings(), today=TEST_DATE) == 1
        orchestrator.extract.assert_not_awaited()
        close_pool.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_abort_exits_one(self, wired) -> None:
        _, orchestrator, _, _ = wired
        report = ExtractionReport(user_id=TEST_USER_ID, date_range=DateRange(TEST_DATE, TEST_DATE))
        orchestrator.extract.side_effect = ExtractionAborted("session lost", report)

        assert await main.run(_settings(), today=TEST_DATE) == 1
