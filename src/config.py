"""Application configuration loaded from environment variables."""

from datetime import date
from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file)."""

    # --- App ---
    app_name: str = "garmin-extract"
    app_version: str = "0.1.0"
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Garmin account ---
    garmin_user_id: str
    garmin_email: str
    garmin_password: str  # never logged
    session_ttl_seconds: int = 3600

    # --- Supabase ---
    supabase_db_url: str = ""  # direct postgres connection string for asyncpg
    credentials_table: str = "garmin_auth"

    # --- Cloudflare R2 ---
    r2_account_id: str = ""
    r2_access_key_id: str = ""
    r2_secret_access_key: str = ""
    r2_bucket_name: str = "garmin-extract"
    r2_prefix: str = "garmin"

    # --- Extraction run ---
    remote_sink: Literal["supabase", "r2"] = "supabase"
    output_dir: str = "data"
    extract_mode: Literal["default", "recent", "historic"] = "default"
    extract_days: int = 7
    recent_days: int = 2
    historic_days: int = 365
    start_date: date | None = None  # explicit range overrides extract_mode
    end_date: date | None = None
    device_filter: str | None = None  # device id or model name
    include_profile: bool = True
    recent_activities_limit: int = 10
    activity_page_size: int = 100
    max_concurrency: int = 1

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]
