"""
Device sync configuration with environment variable overrides.
"""

import logging
import os
from dataclasses import dataclass

logger = logging.getLogger(__name__)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except (TypeError, ValueError):
        logger.warning("Invalid %s value; falling back to default %s", name, default)
        return default


@dataclass
class SyncConfig:
    api_base_url: str = "http://localhost:8000/api/v1"
    max_batch_size: int = 50
    sync_interval_seconds: float = 3600.0
    initial_backoff_seconds: float = 5.0
    max_backoff_seconds: float = 900.0
    http_timeout_seconds: float = 10.0

    @classmethod
    def from_env(cls) -> "SyncConfig":
        config = cls(
            api_base_url=os.getenv("ARIA_API_URL", cls.api_base_url),
            max_batch_size=int(_env_float("ARIA_SYNC_BATCH_SIZE", cls.max_batch_size)),
            sync_interval_seconds=_env_float("ARIA_SYNC_INTERVAL", cls.sync_interval_seconds),
            max_backoff_seconds=_env_float("ARIA_SYNC_MAX_BACKOFF", cls.max_backoff_seconds),
            http_timeout_seconds=_env_float("ARIA_HTTP_TIMEOUT", cls.http_timeout_seconds),
        )
        if config.max_batch_size < 1:
            logger.warning("ARIA_SYNC_BATCH_SIZE must be positive; using %s", cls.max_batch_size)
            config.max_batch_size = cls.max_batch_size
        return config
