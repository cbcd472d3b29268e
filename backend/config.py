"""
backend/config.py

Environment-driven settings for SatLedger.

Key Roles:
 - Loads the .env file at the project root (same convention as database.py)
 - Exposes a Settings object with chain/price endpoints, CORS origins and
   invoice watcher tuning
 - Configures root logging once, using LOG_LEVEL

Malformed numeric values never abort startup; the default is used and a
warning is logged.
"""

import os
import logging
from dataclasses import dataclass, field
from typing import List

from dotenv import load_dotenv

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
PROJECT_ROOT = os.path.dirname(BASE_DIR)

load_dotenv(dotenv_path=os.path.join(PROJECT_ROOT, ".env"))

# ------------------------------------------------------------------
# Logging Setup
# ------------------------------------------------------------------
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

DEFAULT_ESPLORA_URL = "https://blockstream.info/api"
DEFAULT_COINGECKO_API_URL = "https://api.coingecko.com/api/v3"
DEFAULT_KRAKEN_API_URL = "https://api.kraken.com/0/public"

# Default CORS origins if none specified (dev environment)
DEFAULT_ORIGINS = (
    "http://127.0.0.1:3000,"
    "http://localhost:3000,"
    "http://127.0.0.1:5173,"
    "http://localhost:5173"
)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Invalid integer for {name}={raw!r}; using {default}")
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Invalid number for {name}={raw!r}; using {default}")
        return default


def _env_url(name: str, default: str) -> str:
    return os.getenv(name, default).rstrip("/")


@dataclass
class Settings:
    esplora_url: str = DEFAULT_ESPLORA_URL
    coingecko_api_url: str = DEFAULT_COINGECKO_API_URL
    kraken_api_url: str = DEFAULT_KRAKEN_API_URL
    http_timeout_seconds: float = 10.0
    cors_allow_origins: List[str] = field(
        default_factory=lambda: [o.strip() for o in DEFAULT_ORIGINS.split(",")]
    )
    invoice_watcher_enabled: bool = True
    invoice_check_interval_seconds: float = 60.0
    invoice_check_batch_size: int = 10
    invoice_check_delay_seconds: float = 0.5

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the current process environment."""
        raw_origins = os.getenv("CORS_ALLOW_ORIGINS", DEFAULT_ORIGINS)
        batch_size = _env_int("INVOICE_CHECK_BATCH_SIZE", 10)
        if batch_size < 1:
            logger.warning(f"INVOICE_CHECK_BATCH_SIZE={batch_size} is not positive; using 10")
            batch_size = 10
        return cls(
            esplora_url=_env_url("ESPLORA_URL", DEFAULT_ESPLORA_URL),
            coingecko_api_url=_env_url("COINGECKO_API_URL", DEFAULT_COINGECKO_API_URL),
            kraken_api_url=_env_url("KRAKEN_API_URL", DEFAULT_KRAKEN_API_URL),
            http_timeout_seconds=_env_float("HTTP_TIMEOUT_SECONDS", 10.0),
            cors_allow_origins=[o.strip() for o in raw_origins.split(",") if o.strip()],
            invoice_watcher_enabled=_env_bool("INVOICE_WATCHER_ENABLED", True),
            invoice_check_interval_seconds=_env_float("INVOICE_CHECK_INTERVAL_SECONDS", 60.0),
            invoice_check_batch_size=batch_size,
            invoice_check_delay_seconds=_env_float("INVOICE_CHECK_DELAY_SECONDS", 0.5),
        )


settings = Settings.from_env()
