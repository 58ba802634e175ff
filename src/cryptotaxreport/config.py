# config.py
"""
Runtime settings.

Values come from environment variables; a `.env` file at the project root is
loaded first (python-dotenv) so local runs don't need exported variables.
Tests build `Settings(...)` directly instead of going through the environment.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from zoneinfo import ZoneInfo

from dotenv import load_dotenv

# src/cryptotaxreport/config.py -> parents[2] == project root
PROJECT_ROOT = Path(__file__).resolve().parents[2]

LOT_METHODS = ("FIFO", "LIFO")
# Modelo 100/720/714 follow the Spanish calendar year
DEFAULT_FISCAL_TIMEZONE = "Europe/Madrid"

LOG_FORMAT = "%(asctime)s %(levelname)-7s [%(name)s] %(message)s"


def _env_str(name: str, default: str) -> str:
    value = os.getenv(name)
    return value.strip() if value and value.strip() else default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {value!r}")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}")


@dataclass(frozen=True)
class Settings:
    db_url: str = "sqlite:///./cryptotaxreport.db"
    artifact_dir: str = "storage_reports"

    # progress gateway / generation budget (seconds)
    poll_interval: float = 1.0
    generation_timeout: float = 300.0
    watchdog_interval: float = 30.0

    # outbound HTTP
    http_timeout: float = 15.0
    retry_attempts: int = 4
    retry_base_delay: float = 0.5
    retry_backoff: float = 2.0

    coingecko_base_url: str = "https://api.coingecko.com/api/v3"
    coingecko_api_key: str = ""
    etherscan_base_url: str = "https://api.etherscan.io/v2/api"
    etherscan_api_key: str = ""
    blockstream_base_url: str = "https://blockstream.info/api"
    binance_base_url: str = "https://api.binance.com"
    coinbase_base_url: str = "https://api.coinbase.com"

    # cost-basis defaults
    default_lot_method: str = "FIFO"
    excess_disposal_policy: str = "zero-basis"
    max_workers: int = 4

    fiscal_timezone: str = DEFAULT_FISCAL_TIMEZONE

    log_level: str = "INFO"

    @property
    def fiscal_tz(self) -> ZoneInfo:
        return ZoneInfo(self.fiscal_timezone)

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv(PROJECT_ROOT / ".env")
        lot_method = _env_str("DEFAULT_LOT_METHOD", cls.default_lot_method).upper()
        if lot_method not in LOT_METHODS:
            raise ValueError(f"DEFAULT_LOT_METHOD must be one of {LOT_METHODS}, got {lot_method!r}")
        return cls(
            db_url=_env_str("CRYPTOTAXREPORT_DB_URL", cls.db_url),
            artifact_dir=_env_str("CRYPTOTAXREPORT_ARTIFACT_DIR", cls.artifact_dir),
            poll_interval=_env_float("PROGRESS_POLL_INTERVAL", cls.poll_interval),
            generation_timeout=_env_float("GENERATION_TIMEOUT_SECONDS", cls.generation_timeout),
            watchdog_interval=_env_float("WATCHDOG_INTERVAL_SECONDS", cls.watchdog_interval),
            http_timeout=_env_float("HTTP_TIMEOUT_SECONDS", cls.http_timeout),
            retry_attempts=_env_int("RETRY_ATTEMPTS", cls.retry_attempts),
            retry_base_delay=_env_float("RETRY_BASE_DELAY", cls.retry_base_delay),
            retry_backoff=_env_float("RETRY_BACKOFF", cls.retry_backoff),
            coingecko_base_url=_env_str("COINGECKO_BASE_URL", cls.coingecko_base_url),
            coingecko_api_key=_env_str("COINGECKO_API_KEY", cls.coingecko_api_key),
            etherscan_base_url=_env_str("ETHERSCAN_BASE_URL", cls.etherscan_base_url),
            etherscan_api_key=_env_str("ETHERSCAN_API_KEY", cls.etherscan_api_key),
            blockstream_base_url=_env_str("BLOCKSTREAM_BASE_URL", cls.blockstream_base_url),
            binance_base_url=_env_str("BINANCE_BASE_URL", cls.binance_base_url),
            coinbase_base_url=_env_str("COINBASE_BASE_URL", cls.coinbase_base_url),
            default_lot_method=lot_method,
            excess_disposal_policy=_env_str("EXCESS_DISPOSAL_POLICY", cls.excess_disposal_policy).lower(),
            max_workers=_env_int("COST_BASIS_MAX_WORKERS", cls.max_workers),
            fiscal_timezone=_env_str("FISCAL_TIMEZONE", cls.fiscal_timezone),
            log_level=_env_str("LOG_LEVEL", cls.log_level).upper(),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()


def configure_logging(level: str = "INFO") -> None:
    """Install one root handler. Safe to call more than once."""
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
    logging.getLogger().setLevel(getattr(logging, level.upper(), logging.INFO))
    # requests/urllib3 are chatty at DEBUG about every connection
    logging.getLogger("urllib3").setLevel(logging.WARNING)
