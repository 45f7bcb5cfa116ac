"""Configuration helpers for the profile harvester."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional
from urllib.parse import parse_qs

from dotenv import load_dotenv
from sqlalchemy.engine import URL, make_url
from sqlalchemy.exc import ArgumentError

PROJECT_ROOT = Path(__file__).resolve().parents[1]
ENV_PATH = PROJECT_ROOT / ".env"

# Load environment variables early so downstream modules can rely on them.
load_dotenv(ENV_PATH, override=False)

DATABASE_URL_ENV = "DATABASE_URL"
DB_HOST_ENV = "DB_HOST"
DB_PORT_ENV = "DB_PORT"
DB_USER_ENV = "DB_USER"
DB_PASSWORD_ENV = "DB_PASSWORD"
DB_NAME_ENV = "DB_NAME"
DB_SSL_ENV = "DB_SSL"
DB_POOL_SIZE_ENV = "DB_POOL_SIZE"
HARVEST_DB_PATH_ENV = "HARVEST_DB_PATH"

WINDOW_START_ENV = "SCHEDULE_WINDOW_START"
WINDOW_END_ENV = "SCHEDULE_WINDOW_END"
UTC_OFFSET_ENV = "SCHEDULE_UTC_OFFSET_HOURS"
STALE_TASK_ENV = "STALE_TASK_MINUTES"
FAILURE_BACKOFF_ENV = "FAILURE_BACKOFF_MINUTES"

CONTINUE_ON_ERROR_ENV = "BATCH_CONTINUE_ON_ERROR"
TASK_PAUSE_ENV = "BATCH_TASK_PAUSE_SECONDS"
TASK_TIMEOUT_ENV = "BATCH_TASK_TIMEOUT_SECONDS"
SAMPLE_SIZE_ENV = "BATCH_SAMPLE_SIZE"
REPORT_PATH_ENV = "BATCH_REPORT_PATH"

COOKIES_PATH_ENV = "HARVEST_COOKIES_PATH"
HEADLESS_ENV = "HEADLESS"
CHROME_BINARY_ENV = "CHROME_BINARY"
POST_EXTENSION_DIR_ENV = "POST_EXPORT_EXTENSION_DIR"
FOLLOW_EXTENSION_DIR_ENV = "FOLLOW_EXPORT_EXTENSION_DIR"
POST_DASHBOARD_URL_ENV = "POST_EXPORT_DASHBOARD_URL"
FOLLOW_DASHBOARD_URL_ENV = "FOLLOW_EXPORT_DASHBOARD_URL"

DEFAULT_SQLITE_DB = PROJECT_ROOT / "data" / "harvest.db"
DEFAULT_MYSQL_PORT = 3306
DEFAULT_MYSQL_DATABASE = "twitter_data"
DEFAULT_POOL_SIZE = 10
DEFAULT_WINDOW_START = 8
DEFAULT_WINDOW_END = 24
DEFAULT_UTC_OFFSET_HOURS = 8
DEFAULT_RATE_PER_DAY = 2.0
DEFAULT_STALE_MINUTES = 180
DEFAULT_TASK_PAUSE_SECONDS = 10.0
DEFAULT_TASK_TIMEOUT_SECONDS = 900.0
DEFAULT_SAMPLE_SIZE = 50
DEFAULT_REPORT_PATH = PROJECT_ROOT / "output" / "batch-report.json"
DEFAULT_COOKIES_PATH = PROJECT_ROOT / "secrets" / "twitter_cookies.pkl"


@dataclass(frozen=True)
class DatabaseSettings:
    """Connection settings for the entity store."""

    url: str
    ssl: bool = False
    pool_size: int = DEFAULT_POOL_SIZE

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")

    @property
    def connect_args(self) -> Dict[str, object]:
        if self.ssl and not self.is_sqlite:
            # No CA configured: encrypt without verifying the server certificate.
            return {"ssl": {"check_hostname": False}}
        return {}


@dataclass(frozen=True)
class ScheduleSettings:
    """Operational window and rate-model constants."""

    window_start_hour: int = DEFAULT_WINDOW_START
    window_end_hour: int = DEFAULT_WINDOW_END
    utc_offset_hours: int = DEFAULT_UTC_OFFSET_HOURS
    default_rate: float = DEFAULT_RATE_PER_DAY
    stale_after_minutes: int = DEFAULT_STALE_MINUTES
    failure_backoff_minutes: Optional[int] = None

    def __post_init__(self) -> None:
        if not 0 <= self.window_start_hour < self.window_end_hour <= 24:
            raise RuntimeError(
                "Operational window must satisfy 0 <= start < end <= 24; "
                f"received start={self.window_start_hour}, end={self.window_end_hour}."
            )


@dataclass(frozen=True)
class BatchSettings:
    """Runtime knobs for serial batch execution."""

    continue_on_error: bool = True
    task_pause_seconds: float = DEFAULT_TASK_PAUSE_SECONDS
    task_timeout_seconds: float = DEFAULT_TASK_TIMEOUT_SECONDS
    sample_size: int = DEFAULT_SAMPLE_SIZE
    report_path: Path = DEFAULT_REPORT_PATH


@dataclass(frozen=True)
class MergeSettings:
    """Chunk sizes bounding a single multi-row statement."""

    post_chunk_size: int = 1000
    user_chunk_size: int = 500
    edge_chunk_size: int = 5000


@dataclass(frozen=True)
class BrowserSettings:
    cookies_path: Path = DEFAULT_COOKIES_PATH
    headless: bool = False
    chrome_binary: Optional[Path] = None
    extension_dirs: List[Path] = field(default_factory=list)
    post_dashboard_url: Optional[str] = None
    follow_dashboard_url: Optional[str] = None
    window_size: str = "1920,1080"
    poll_interval_seconds: float = 1.0
    max_stable_polls: int = 20
    max_no_progress_polls: int = 30
    free_tier_cap: int = 300


def _get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value


def _get_int(name: str, default: int) -> int:
    raw = _get_env(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be an integer; received '{raw}'.") from exc


def _get_float(name: str, default: float) -> float:
    raw = _get_env(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be a number; received '{raw}'.") from exc


def _get_bool(name: str, default: bool) -> bool:
    raw = _get_env(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _url_from_database_url(raw: str) -> tuple[str, bool]:
    """Normalize a DATABASE_URL into a SQLAlchemy URL plus TLS flag."""

    base, _, query = raw.partition("?")
    params = parse_qs(query)
    ssl_mode = (params.get("ssl-mode") or params.get("ssl_mode") or [""])[0].upper()
    if base.startswith("mysql://"):
        base = "mysql+pymysql://" + base[len("mysql://"):]
    try:
        url = make_url(base)
    except ArgumentError as exc:
        raise RuntimeError(f"DATABASE_URL is not a valid database URL: {exc}") from exc
    return url.render_as_string(hide_password=False), ssl_mode in {"REQUIRED", "VERIFY_CA", "VERIFY_IDENTITY"}


def get_database_settings() -> DatabaseSettings:
    """Resolve store connection settings from the environment."""

    pool_size = _get_int(DB_POOL_SIZE_ENV, DEFAULT_POOL_SIZE)

    raw_url = _get_env(DATABASE_URL_ENV)
    if raw_url:
        url, ssl = _url_from_database_url(raw_url)
        return DatabaseSettings(url=url, ssl=ssl or _get_bool(DB_SSL_ENV, False), pool_size=pool_size)

    host = _get_env(DB_HOST_ENV)
    if host:
        url = URL.create(
            "mysql+pymysql",
            username=_get_env(DB_USER_ENV, "root"),
            password=_get_env(DB_PASSWORD_ENV, ""),
            host=host,
            port=_get_int(DB_PORT_ENV, DEFAULT_MYSQL_PORT),
            database=_get_env(DB_NAME_ENV, DEFAULT_MYSQL_DATABASE),
            query={"charset": "utf8mb4"},
        )
        return DatabaseSettings(
            url=url.render_as_string(hide_password=False),
            ssl=_get_bool(DB_SSL_ENV, False),
            pool_size=pool_size,
        )

    raw_path = _get_env(HARVEST_DB_PATH_ENV, str(DEFAULT_SQLITE_DB))
    db_path = Path(raw_path).expanduser().resolve()
    return DatabaseSettings(url=f"sqlite:///{db_path}", ssl=False, pool_size=pool_size)


def get_schedule_settings() -> ScheduleSettings:
    """Resolve operational window and rate constants."""

    backoff_raw = _get_env(FAILURE_BACKOFF_ENV)
    backoff = _get_int(FAILURE_BACKOFF_ENV, 0) if backoff_raw is not None else None
    return ScheduleSettings(
        window_start_hour=_get_int(WINDOW_START_ENV, DEFAULT_WINDOW_START),
        window_end_hour=_get_int(WINDOW_END_ENV, DEFAULT_WINDOW_END),
        utc_offset_hours=_get_int(UTC_OFFSET_ENV, DEFAULT_UTC_OFFSET_HOURS),
        stale_after_minutes=_get_int(STALE_TASK_ENV, DEFAULT_STALE_MINUTES),
        failure_backoff_minutes=backoff or None,
    )


def get_batch_settings() -> BatchSettings:
    raw_report = _get_env(REPORT_PATH_ENV, str(DEFAULT_REPORT_PATH))
    return BatchSettings(
        continue_on_error=_get_bool(CONTINUE_ON_ERROR_ENV, True),
        task_pause_seconds=_get_float(TASK_PAUSE_ENV, DEFAULT_TASK_PAUSE_SECONDS),
        task_timeout_seconds=_get_float(TASK_TIMEOUT_ENV, DEFAULT_TASK_TIMEOUT_SECONDS),
        sample_size=_get_int(SAMPLE_SIZE_ENV, DEFAULT_SAMPLE_SIZE),
        report_path=Path(raw_report).expanduser().resolve(),
    )


def get_browser_settings() -> BrowserSettings:
    """Resolve Chrome/extension settings for the Selenium collector."""

    extension_dirs = [
        Path(raw).expanduser().resolve()
        for raw in (_get_env(POST_EXTENSION_DIR_ENV), _get_env(FOLLOW_EXTENSION_DIR_ENV))
        if raw
    ]
    chrome_binary = _get_env(CHROME_BINARY_ENV)
    return BrowserSettings(
        cookies_path=Path(_get_env(COOKIES_PATH_ENV, str(DEFAULT_COOKIES_PATH))).expanduser(),
        headless=_get_bool(HEADLESS_ENV, False),
        chrome_binary=Path(chrome_binary) if chrome_binary else None,
        extension_dirs=extension_dirs,
        post_dashboard_url=_get_env(POST_DASHBOARD_URL_ENV),
        follow_dashboard_url=_get_env(FOLLOW_DASHBOARD_URL_ENV),
    )
