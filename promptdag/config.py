"""
Engine settings and logging setup.

Settings are read from ``PROMPTDAG_*`` environment variables or a ``.env``
file.
"""

import logging
import re
from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineSettings(BaseSettings):
    """Runtime settings for the engine and its backends."""

    model_config = SettingsConfigDict(
        env_prefix="PROMPTDAG_",
        env_file=".env",
        extra="ignore",
    )

    # Scheduling
    concurrency: Optional[int] = Field(default=None, ge=1)
    max_outbound_calls: int = Field(default=4, ge=1)
    retry_count: int = Field(default=0, ge=0)
    retry_base_delay_seconds: float = Field(default=0.5, ge=0)
    node_timeout_seconds: Optional[float] = Field(default=None, gt=0)

    # Result cache
    cache_enabled: bool = True
    cache_ttl_seconds: float = 300.0

    # Circuit breaker per outbound node type
    circuit_breaker_threshold: int = Field(default=5, ge=1)
    circuit_breaker_reset_seconds: float = 60.0

    # Cost estimation when backends report no unit counts
    chars_per_unit: int = Field(default=4, ge=1)

    # External backends
    llm_base_url: Optional[str] = None
    llm_api_key: Optional[str] = None
    retrieval_base_url: Optional[str] = None
    retrieval_api_key: Optional[str] = None
    http_timeout_seconds: float = 30.0

    log_level: str = "INFO"


@lru_cache
def get_settings() -> EngineSettings:
    return EngineSettings()


class OneLineFormatter(logging.Formatter):
    """Collapses multi-line messages onto a single line."""

    _ws_re = re.compile(r"\s+")

    def format(self, record: logging.LogRecord) -> str:
        return self._ws_re.sub(" ", super().format(record)).strip()


def configure_logging(level: Optional[str] = None) -> None:
    """
    Attach a stream handler to the root logger for scripts and services.

    Does nothing beyond setting the level when handlers already exist.
    """
    level_name = (level or get_settings().log_level).upper()
    numeric_level = getattr(logging, level_name, logging.INFO)

    root = logging.getLogger()
    root.setLevel(numeric_level)
    if root.handlers:
        return

    handler = logging.StreamHandler()
    handler.setFormatter(OneLineFormatter(
        fmt="%(asctime)s %(levelname)s [%(name)s] - %(message)s",
        datefmt="%H:%M:%S",
    ))
    root.addHandler(handler)

    logging.getLogger("httpx").setLevel(max(logging.WARNING, numeric_level))
