"""
CONFIG.PY: SINGLE SOURCE OF TRUTH (SSOT)

This module is the ONLY place allowed to read environment variables.

Required variables MUST exist; tuning knobs fall back to the documented
defaults. If any variable is missing or invalid, the system MUST fail early.

All config is loaded ONCE and cached in a single in-memory Config object.
No dynamic reload. No direct env reads outside this module.

To use a config value, import:

    from delivery_watch.config import get_config

Do not access os.getenv directly from any other module.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Mapping
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv


PROJECT_ROOT = Path(__file__).resolve().parents[1]

# Load variables from .env if it exists; OS env overrides these automatically
load_dotenv(PROJECT_ROOT / ".env")

if os.getenv("DEBUG_CONFIG") == "1":
    print("[CONFIG] Loaded .env from:", PROJECT_ROOT / ".env")


logger = logging.getLogger(__name__)

REQUIRED_KEYS = [
    "RUN_ENV",
    "DASHBOARD_URL",
    "DATA_DIR",
    "PROFILE_DIR_TEMPLATE",
    "CONTROL_API_TOKENS",
]

DEFAULTS: dict[str, str] = {
    "PIPELINE_TIMEZONE": "America/New_York",
    "JSON_LOG_FILE": "",
    "BROWSER_EXECUTABLE": "",
    "BROWSER_HEADLESS": "true",
    "POOL_SIZE": "3",
    "PROFILE_MAX_AGE_SECONDS": "900",
    "AGE_SWEEP_INTERVAL_SECONDS": "10",
    "PROFILE_CLOSE_GRACE_SECONDS": "2",
    "CYCLE_INTERVAL_SECONDS": "60",
    "BREAKER_BACKOFF_SECONDS": "10",
    "BREAKER_THRESHOLD": "3",
    "STATE_CHECK_RETRIES": "3",
    "MAX_ACTIONS_PER_CYCLE": "0",
    "WINDOW_BEFORE_MINUTES": "3",
    "WINDOW_AFTER_MINUTES": "3",
    "SECONDARY_ANCHOR": "delivery_offset",
    "SECONDARY_OFFSET_MINUTES": "15",
    "REAUTH_SECRET": "",
    "DETECTION_LOG_RETENTION_DAYS": "7",
    "DATABASE_URL": "",
    "ALERT_EMAIL_SMTP_HOST": "",
    "ALERT_EMAIL_SMTP_PORT": "587",
    "ALERT_EMAIL_SMTP_USERNAME": "",
    "ALERT_EMAIL_SMTP_PASSWORD": "",
    "ALERT_EMAIL_USE_TLS": "true",
    "ALERT_EMAIL_FROM": "",
    "ALERT_EMAIL_TO": "",
    "CONTROL_API_HOST": "127.0.0.1",
    "CONTROL_API_PORT": "8080",
    "CONTROL_API_BASE_PATH": "/api",
}

SECONDARY_ANCHORS = {"delivery_offset", "pickup"}

TRUE_VALUES = {"1", "true", "yes", "on"}
FALSE_VALUES = {"0", "false", "no", "off"}


class ConfigError(RuntimeError):
    """Raised when configuration cannot be loaded."""


def _require(values: Mapping[str, str | None], key: str) -> str:
    value = values.get(key)
    if value is None:
        message = f"Missing required environment variable: {key}"
        logger.error(message)
        raise ConfigError(message)
    stripped = value.strip()
    if not stripped:
        message = f"Environment variable {key} cannot be blank"
        logger.error(message)
        raise ConfigError(message)
    return stripped


def _optional(values: Mapping[str, str | None], key: str) -> str:
    value = values.get(key)
    if value is None or not value.strip():
        return DEFAULTS[key]
    return value.strip()


def _parse_bool(value: str, *, key: str) -> bool:
    normalized = value.strip().lower()
    if normalized in TRUE_VALUES:
        return True
    if normalized in FALSE_VALUES:
        return False
    message = f"Config key {key} must be a boolean string; got {value!r}"
    logger.error(message)
    raise ConfigError(message)


def _parse_int(value: str, *, key: str, minimum: int | None = None) -> int:
    try:
        parsed = int(value.strip())
    except (TypeError, ValueError):
        message = f"Config key {key} must be an integer; got {value!r}"
        logger.error(message)
        raise ConfigError(message)
    if minimum is not None and parsed < minimum:
        message = f"Config key {key} must be >= {minimum}; got {parsed}"
        logger.error(message)
        raise ConfigError(message)
    return parsed


def _parse_float(value: str, *, key: str) -> float:
    try:
        parsed = float(value.strip())
    except (TypeError, ValueError):
        message = f"Config key {key} must be a number; got {value!r}"
        logger.error(message)
        raise ConfigError(message)
    if parsed < 0:
        message = f"Config key {key} cannot be negative; got {parsed}"
        logger.error(message)
        raise ConfigError(message)
    return parsed


def _parse_list(value: str) -> list[str]:
    if not value:
        return []
    tokens = re.split(r"[,\n]", value)
    return [token.strip() for token in tokens if token and token.strip()]


def _parse_timezone(value: str, *, key: str) -> str:
    try:
        ZoneInfo(value)
    except (ZoneInfoNotFoundError, ValueError):
        message = f"Config key {key} must be an IANA timezone name; got {value!r}"
        logger.error(message)
        raise ConfigError(message)
    return value


def _clean_url(value: str, *, key: str) -> str:
    stripped = value.strip().rstrip("/")
    if not stripped:
        message = f"Config key {key} cannot be blank"
        logger.error(message)
        raise ConfigError(message)
    return stripped


@dataclass(slots=True, frozen=True)
class Config:
    run_env: str
    pipeline_timezone: str
    json_log_file: str
    dashboard_url: str
    data_dir: Path
    profile_dir_template: str

    browser_executable: str
    browser_headless: bool
    pool_size: int
    profile_max_age_seconds: float
    age_sweep_interval_seconds: float
    profile_close_grace_seconds: float

    cycle_interval_seconds: float
    breaker_backoff_seconds: float
    breaker_threshold: int
    state_check_retries: int
    max_actions_per_cycle: int | None

    window_before_minutes: int
    window_after_minutes: int
    secondary_anchor: str
    secondary_offset_minutes: int
    reauth_secret: str | None

    detection_log_retention_days: int
    database_url: str | None

    alert_email_smtp_host: str | None
    alert_email_smtp_port: int
    alert_email_smtp_username: str | None
    alert_email_smtp_password: str | None
    alert_email_use_tls: bool
    alert_email_from: str | None
    alert_email_to: list[str]

    control_api_tokens: list[str]
    control_api_host: str
    control_api_port: int
    control_api_base_path: str

    @classmethod
    def load_from_env(cls, environ: Mapping[str, str | None] | None = None) -> Config:
        values = os.environ if environ is None else environ

        profile_dir_template = _require(values, "PROFILE_DIR_TEMPLATE")
        if "{slot}" not in profile_dir_template:
            message = "PROFILE_DIR_TEMPLATE must contain the {slot} placeholder"
            logger.error(message)
            raise ConfigError(message)

        tokens = _parse_list(_require(values, "CONTROL_API_TOKENS"))
        if not tokens:
            message = "CONTROL_API_TOKENS must list at least one token"
            logger.error(message)
            raise ConfigError(message)

        secondary_anchor = _optional(values, "SECONDARY_ANCHOR").lower()
        if secondary_anchor not in SECONDARY_ANCHORS:
            message = (
                f"Config key SECONDARY_ANCHOR must be one of {sorted(SECONDARY_ANCHORS)}; "
                f"got {secondary_anchor!r}"
            )
            logger.error(message)
            raise ConfigError(message)

        max_actions = _parse_int(
            _optional(values, "MAX_ACTIONS_PER_CYCLE"), key="MAX_ACTIONS_PER_CYCLE", minimum=0
        )
        base_path = "/" + _optional(values, "CONTROL_API_BASE_PATH").strip("/")

        return cls(
            run_env=_require(values, "RUN_ENV"),
            pipeline_timezone=_parse_timezone(_optional(values, "PIPELINE_TIMEZONE"), key="PIPELINE_TIMEZONE"),
            json_log_file=_optional(values, "JSON_LOG_FILE"),
            dashboard_url=_clean_url(_require(values, "DASHBOARD_URL"), key="DASHBOARD_URL"),
            data_dir=Path(_require(values, "DATA_DIR")).expanduser(),
            profile_dir_template=profile_dir_template,
            browser_executable=_optional(values, "BROWSER_EXECUTABLE"),
            browser_headless=_parse_bool(_optional(values, "BROWSER_HEADLESS"), key="BROWSER_HEADLESS"),
            pool_size=_parse_int(_optional(values, "POOL_SIZE"), key="POOL_SIZE", minimum=1),
            profile_max_age_seconds=_parse_float(
                _optional(values, "PROFILE_MAX_AGE_SECONDS"), key="PROFILE_MAX_AGE_SECONDS"
            ),
            age_sweep_interval_seconds=_parse_float(
                _optional(values, "AGE_SWEEP_INTERVAL_SECONDS"), key="AGE_SWEEP_INTERVAL_SECONDS"
            ),
            profile_close_grace_seconds=_parse_float(
                _optional(values, "PROFILE_CLOSE_GRACE_SECONDS"), key="PROFILE_CLOSE_GRACE_SECONDS"
            ),
            cycle_interval_seconds=_parse_float(
                _optional(values, "CYCLE_INTERVAL_SECONDS"), key="CYCLE_INTERVAL_SECONDS"
            ),
            breaker_backoff_seconds=_parse_float(
                _optional(values, "BREAKER_BACKOFF_SECONDS"), key="BREAKER_BACKOFF_SECONDS"
            ),
            breaker_threshold=_parse_int(
                _optional(values, "BREAKER_THRESHOLD"), key="BREAKER_THRESHOLD", minimum=1
            ),
            state_check_retries=_parse_int(
                _optional(values, "STATE_CHECK_RETRIES"), key="STATE_CHECK_RETRIES", minimum=1
            ),
            max_actions_per_cycle=max_actions or None,
            window_before_minutes=_parse_int(
                _optional(values, "WINDOW_BEFORE_MINUTES"), key="WINDOW_BEFORE_MINUTES", minimum=0
            ),
            window_after_minutes=_parse_int(
                _optional(values, "WINDOW_AFTER_MINUTES"), key="WINDOW_AFTER_MINUTES", minimum=0
            ),
            secondary_anchor=secondary_anchor,
            secondary_offset_minutes=_parse_int(
                _optional(values, "SECONDARY_OFFSET_MINUTES"), key="SECONDARY_OFFSET_MINUTES", minimum=0
            ),
            reauth_secret=_optional(values, "REAUTH_SECRET") or None,
            detection_log_retention_days=_parse_int(
                _optional(values, "DETECTION_LOG_RETENTION_DAYS"),
                key="DETECTION_LOG_RETENTION_DAYS",
                minimum=0,
            ),
            database_url=_optional(values, "DATABASE_URL") or None,
            alert_email_smtp_host=_optional(values, "ALERT_EMAIL_SMTP_HOST") or None,
            alert_email_smtp_port=_parse_int(
                _optional(values, "ALERT_EMAIL_SMTP_PORT"), key="ALERT_EMAIL_SMTP_PORT", minimum=1
            ),
            alert_email_smtp_username=_optional(values, "ALERT_EMAIL_SMTP_USERNAME") or None,
            alert_email_smtp_password=_optional(values, "ALERT_EMAIL_SMTP_PASSWORD") or None,
            alert_email_use_tls=_parse_bool(
                _optional(values, "ALERT_EMAIL_USE_TLS"), key="ALERT_EMAIL_USE_TLS"
            ),
            alert_email_from=_optional(values, "ALERT_EMAIL_FROM") or None,
            alert_email_to=_parse_list(_optional(values, "ALERT_EMAIL_TO")),
            control_api_tokens=tokens,
            control_api_host=_optional(values, "CONTROL_API_HOST"),
            control_api_port=_parse_int(
                _optional(values, "CONTROL_API_PORT"), key="CONTROL_API_PORT", minimum=1
            ),
            control_api_base_path=base_path if base_path != "/" else "",
        )


@lru_cache(maxsize=1)
def get_config() -> Config:
    return Config.load_from_env()
