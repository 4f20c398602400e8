"""
Config loader — reads environment variables (and .env) into a typed config object.
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

# Load .env from the project root (one level above belt_monitor/)
_ROOT = Path(__file__).resolve().parent.parent
load_dotenv(_ROOT / ".env")

DEFAULT_INDEXER_URL = "https://belt-indexer-production.up.railway.app/sql"
DEFAULT_STATE_STORE_URL = f"sqlite:///{_ROOT / 'data' / 'state.db'}"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}
_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


@dataclass
class AppConfig:
    indexer_url: str
    discord_webhook_url: str
    webhook_username: str
    webhook_min_interval_seconds: float
    state_store_url: str
    state_store_required: bool
    poll_interval_seconds: int
    batch_size: int
    dedup_ttl_seconds: int
    chain_id: int
    entry_point_version: str
    log_level: str


def _get_int(name: str, default: int, *, minimum: int = 1) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value}")
    return value


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None
    if value < 0:
        raise ValueError(f"{name} must not be negative, got {value}")
    return value


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    lowered = raw.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise ValueError(f"{name} must be a boolean (true/false), got {raw!r}")


def _get_log_level() -> str:
    level = os.getenv("LOG_LEVEL", "").strip().upper() or "INFO"
    if level not in _LOG_LEVELS:
        allowed = ", ".join(sorted(_LOG_LEVELS))
        raise ValueError(f"LOG_LEVEL must be one of {allowed}, got {level!r}")
    return level


def load_config() -> AppConfig:
    """Load and validate configuration from the environment."""
    return AppConfig(
        indexer_url=os.getenv("BELT_INDEXER_URL", "").strip() or DEFAULT_INDEXER_URL,
        discord_webhook_url=os.getenv("DISCORD_WEBHOOK_URL", "").strip(),
        webhook_username=os.getenv("WEBHOOK_USERNAME", "").strip() or "Belt Indexer",
        webhook_min_interval_seconds=_get_float("WEBHOOK_MIN_INTERVAL_SECONDS", 2.0),
        state_store_url=os.getenv("STATE_STORE_URL", DEFAULT_STATE_STORE_URL).strip(),
        state_store_required=_get_bool("STATE_STORE_REQUIRED", False),
        poll_interval_seconds=_get_int("POLL_INTERVAL_SECONDS", 15),
        batch_size=_get_int("BATCH_SIZE", 100),
        dedup_ttl_seconds=_get_int("DEDUP_TTL_SECONDS", 86400),
        chain_id=_get_int("CHAIN_ID", 369),
        entry_point_version=os.getenv("ENTRY_POINT_VERSION", "").strip() or "v0.7",
        log_level=_get_log_level(),
    )
