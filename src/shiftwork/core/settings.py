"""Runtime settings for every shiftwork process.

Workers, processors, the API and the CLI all read the same settings object
so that timeouts and intervals agree across processes sharing one store.

Manifesto:
    Configuration should be explicit, validated, and environment-driven.

    - **Pydantic validation:** Type-checked at startup, not runtime
    - **Environment-driven:** Reads ``SHIFTWORK_*`` env vars and ``.env``
    - **Sensible defaults:** A local SQLite file works out of the box

Examples:
    >>> from shiftwork.core.settings import ShiftworkSettings
    >>> settings = ShiftworkSettings(database_url="sqlite:///:memory:")
    >>> settings.default_queue
    '@default'

Tags:
    settings, configuration, pydantic, environment

Doc-Types:
    - API Reference
    - Configuration Guide
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_QUEUE = "@default"


class ShiftworkSettings(BaseSettings):
    """Settings shared by workers, processors and the API.

    Fields
    ──────
    database_url              : SQLAlchemy URL of the shared store
    log_level / log_json      : structlog configuration
    default_queue             : queue used when a command names none
    poll_interval             : idle wait between claim attempts (seconds)
    heartbeat_timeout         : worker silence before its execution is reaped
    cancel_timeout            : CANCELING tokens forced to CANCELED after this
    output_flush_interval     : how often a worker persists buffered output
    max_output_bytes          : cap on the stored output of one execution
    memory_sample_interval    : seconds between RSS samples of a running job
    default_memory_expectancy : KiB threshold when a definition has none (0 = off)
    archive_after             : seconds a terminal instance keeps its tokens
    """

    model_config = SettingsConfigDict(
        env_prefix="SHIFTWORK_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Store ────────────────────────────────────────────────────
    database_url: str = "sqlite:///shiftwork.db"
    echo_sql: bool = False

    # ── Observability ────────────────────────────────────────────
    log_level: str = "INFO"
    log_json: bool | None = None

    # ── Dispatch ─────────────────────────────────────────────────
    default_queue: str = DEFAULT_QUEUE
    poll_interval: float = Field(default=1.0, gt=0)
    heartbeat_timeout: float = Field(default=120.0, gt=0)
    cancel_timeout: float = Field(default=300.0, gt=0)

    # ── Worker ───────────────────────────────────────────────────
    output_flush_interval: float = Field(default=1.0, gt=0)
    max_output_bytes: int = Field(default=1_048_576, ge=1024)
    memory_sample_interval: float = Field(default=5.0, gt=0)
    default_memory_expectancy: int = Field(default=0, ge=0)
    shell: str = "/bin/sh"

    # ── History ──────────────────────────────────────────────────
    archive_after: float = Field(default=86_400.0, ge=0)

    # ── API ──────────────────────────────────────────────────────
    host: str = "0.0.0.0"
    port: int = 9292
    api_prefix: str = "/api/v1"


@lru_cache(maxsize=1)
def get_settings() -> ShiftworkSettings:
    """Settings loaded once per process."""
    return ShiftworkSettings()
