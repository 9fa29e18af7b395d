"""Garmin extraction entry point.

Run locally:
    python -m src.main          (or the ``garmin-extract`` console script)

All configuration comes from environment variables / .env (see src.config).
"""

from __future__ import annotations

import asyncio
import logging
import sys
from datetime import date, timedelta

from src.config import Settings, get_settings
from src.extraction.auth.manager import AuthManager
from src.extraction.auth.storage import SupabaseCredentialStore
from src.extraction.errors import ExtractionAborted, ExtractionError
from src.extraction.orchestrator import ExtractionOrchestrator, resolve_date_range
from src.extraction.provider.garmin import garmin_provider_factory
from src.extraction.sinks import DualSink, FileSink, R2RemoteSink, RemoteSink, SupabaseRemoteSink
from src.services.supabase import close_pool, init_pool

logger = logging.getLogger("garmin_extract")


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )


def build_orchestrator(settings: Settings) -> tuple[AuthManager, ExtractionOrchestrator]:
    """Wire store, auth manager, provider and sinks from settings."""
    store = SupabaseCredentialStore(table=settings.credentials_table)
    auth = AuthManager(
        store,
        garmin_provider_factory,
        session_ttl=timedelta(seconds=settings.session_ttl_seconds),
    )
    remote: RemoteSink
    if settings.remote_sink == "r2":
        remote = R2RemoteSink(prefix=settings.r2_prefix, settings=settings)
    else:
        remote = SupabaseRemoteSink()
    orchestrator = ExtractionOrchestrator(
        auth,
        DualSink(FileSink(settings.output_dir), remote),
        activity_page_size=settings.activity_page_size,
        max_concurrency=settings.max_concurrency,
    )
    return auth, orchestrator


async def run(settings: Settings, today: date | None = None) -> int:
    """One extraction run.  Returns the process exit code."""
    logger.info("Starting %s v%s [%s]", settings.app_name, settings.app_version, settings.environment)
    date_range = resolve_date_range(
        settings.extract_mode,
        today,
        days=settings.extract_days,
        recent_days=settings.recent_days,
        historic_days=settings.historic_days,
        start=settings.start_date,
        end=settings.end_date,
    )
    auth, orchestrator = build_orchestrator(settings)

    await init_pool(settings)
    try:
        await auth.authenticate(
            settings.garmin_user_id, settings.garmin_email, settings.garmin_password
        )
        if settings.include_profile:
            await orchestrator.extract_profile(
                settings.garmin_user_id, settings.recent_activities_limit, today
            )
        report = await orchestrator.extract(
            settings.garmin_user_id, date_range, device_filter=settings.device_filter
        )
    except ExtractionAborted as exc:
        logger.error("Run aborted: %s — %s", exc, exc.report.summary())
        return 1
    except ExtractionError as exc:
        logger.error("Run failed before extraction: %s", exc)
        return 1
    finally:
        await close_pool()

    if report.status == "partial":
        logger.warning("Completed with %d degraded unit(s)", report.degraded)
    return report.exit_code


def main() -> None:
    settings = get_settings()
    configure_logging(settings.log_level)
    sys.exit(asyncio.run(run(settings)))


if __name__ == "__main__":
    main()
