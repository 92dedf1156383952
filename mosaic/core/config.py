"""Environment-driven configuration for the event host."""

import os
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from mosaic.core.events.types import EventQueueConfig, EventSystemConfig, RetryPolicy

ENV_PREFIX = "MOSAIC_EVENTS_"
DEFAULT_PLUGIN_DIR = str(Path(__file__).resolve().parent.parent / "plugins")

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


class Settings(BaseModel):
    """Server settings read from the environment."""

    api_host: str = "127.0.0.1"
    api_port: int = Field(default=8001, gt=0, lt=65536)
    api_key: str = ""
    log_level: str = "INFO"
    log_dir: str = "logs"
    plugin_dir: str = DEFAULT_PLUGIN_DIR
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])


def load_settings(env_file: str | os.PathLike | None = None) -> Settings:
    """Load ``.env`` (without overriding the process environment) and build Settings."""
    load_dotenv(env_file)

    return Settings(
        api_host=os.getenv("API_HOST", "127.0.0.1"),
        api_port=_parse_int("API_PORT", os.getenv("API_PORT", "8001")),
        api_key=os.getenv("API_KEY", ""),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        log_dir=os.getenv("LOG_DIR", "logs"),
        plugin_dir=os.getenv("PLUGIN_DIR", DEFAULT_PLUGIN_DIR),
        cors_origins=[
            origin.strip()
            for origin in os.getenv("CORS_ORIGINS", "*").split(",")
            if origin.strip()
        ],
    )


def load_event_system_config() -> EventSystemConfig:
    """Build an EventSystemConfig from ``MOSAIC_EVENTS_*`` variables.

    Unset variables keep the model defaults.

    Raises:
        ValueError: If a variable cannot be parsed or fails validation
    """
    system = _collect(
        {
            "history_limit": ("HISTORY_LIMIT", _parse_int),
            "max_listeners": ("MAX_LISTENERS", _parse_int),
            "default_timeout": ("DEFAULT_TIMEOUT", _parse_float),
            "enable_metrics": ("ENABLE_METRICS", _parse_bool),
            "metrics_interval": ("METRICS_INTERVAL", _parse_float),
        }
    )
    retry = _collect(
        {
            "max_retries": ("MAX_RETRIES", _parse_int),
            "initial_delay": ("RETRY_INITIAL_DELAY", _parse_float),
            "backoff_multiplier": ("RETRY_BACKOFF", _parse_float),
            "max_delay": ("RETRY_MAX_DELAY", _parse_float),
            "jitter": ("RETRY_JITTER", _parse_bool),
        }
    )
    queue = _collect(
        {
            "max_size": ("QUEUE_MAX_SIZE", _parse_int),
            "processing_concurrency": ("PROCESSING_CONCURRENCY", _parse_int),
            "dead_letter_queue": ("DEAD_LETTER_QUEUE", _parse_bool),
            "dead_letter_limit": ("DEAD_LETTER_LIMIT", _parse_int),
        }
    )

    retry_policy = RetryPolicy(**retry)
    # queue_config.retry_policy is informational only; it mirrors the default
    return EventSystemConfig(
        **system,
        default_retry_policy=retry_policy,
        queue_config=EventQueueConfig(**queue, retry_policy=retry_policy),
    )


def _collect(fields: dict[str, tuple[str, Any]]) -> dict[str, Any]:
    values = {}
    for field_name, (suffix, parse) in fields.items():
        name = f"{ENV_PREFIX}{suffix}"
        raw = os.getenv(name)
        if raw is None or raw.strip() == "":
            continue
        values[field_name] = parse(name, raw)
    return values


def _parse_int(name: str, raw: str) -> int:
    try:
        return int(raw.strip())
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _parse_float(name: str, raw: str) -> float:
    try:
        return float(raw.strip())
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


def _parse_bool(name: str, raw: str) -> bool:
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ValueError(f"{name} must be a boolean, got {raw!r}")
