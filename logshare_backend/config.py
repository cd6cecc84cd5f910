from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


# Persisted layout, relative to the storage root.
INPUT_FILENAME = "session.jsonl"
OUTPUT_FILENAME = "conversation.html"
MARKER_FILENAME = ".cache-marker"
GENERATION_CONFIG_FILENAME = "generation.config.json"
GENERATION_MARKER_FILENAME = ".generation-marker"

ENV_PREFIX = "LOGSHARE_"


def _env_str(key: str, default: str) -> str:
    val = os.environ.get(ENV_PREFIX + key)
    return val.strip() if val and val.strip() else default


def _env_optional(key: str) -> Optional[str]:
    val = os.environ.get(ENV_PREFIX + key)
    return val.strip() if val and val.strip() else None


def _env_bool(key: str, default: bool = False) -> bool:
    raw = os.environ.get(ENV_PREFIX + key)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "t", "yes", "y", "on"}


def _env_int(key: str, default: int) -> int:
    raw = os.environ.get(ENV_PREFIX + key)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{ENV_PREFIX}{key} must be an integer, got {raw!r}") from None


@dataclass(frozen=True)
class Settings:
    storage_path: Path = Path("./storage")
    # None lets binary.resolve_tool_path look in the usual install locations.
    tool_path: Optional[Path] = None
    tool_timeout_ms: int = 60_000
    max_file_size_mb: int = 50
    max_jsonl_lines: int = 10_000_000
    upload_window_ms: int = 900_000
    upload_max: int = 10
    view_window_ms: int = 60_000
    view_max: int = 100
    sweep_interval_seconds: int = 60
    # Only enable behind a reverse proxy that sets X-Forwarded-For itself.
    trust_proxy_headers: bool = False
    base_url: str = "http://localhost:8721"
    host: str = "0.0.0.0"
    port: int = 8721
    log_level: str = "INFO"

    @property
    def max_file_size_bytes(self) -> int:
        return self.max_file_size_mb * 1024 * 1024

    @property
    def tool_timeout_seconds(self) -> float:
        return self.tool_timeout_ms / 1000.0


def load_settings() -> Settings:
    """Read settings from LOGSHARE_* environment variables."""
    tool_raw = _env_optional("TOOL_PATH")
    return Settings(
        storage_path=Path(_env_str("STORAGE_PATH", "./storage")),
        tool_path=Path(tool_raw) if tool_raw else None,
        tool_timeout_ms=_env_int("TOOL_TIMEOUT_MS", 60_000),
        max_file_size_mb=_env_int("MAX_FILE_SIZE_MB", 50),
        max_jsonl_lines=_env_int("MAX_JSONL_LINES", 10_000_000),
        upload_window_ms=_env_int("RATE_LIMIT_UPLOAD_WINDOW_MS", 900_000),
        upload_max=_env_int("RATE_LIMIT_UPLOAD_MAX", 10),
        view_window_ms=_env_int("RATE_LIMIT_VIEW_WINDOW_MS", 60_000),
        view_max=_env_int("RATE_LIMIT_VIEW_MAX", 100),
        sweep_interval_seconds=_env_int("RATE_LIMIT_SWEEP_SECONDS", 60),
        trust_proxy_headers=_env_bool("TRUST_PROXY_HEADERS"),
        base_url=_env_str("BASE_URL", "http://localhost:8721").rstrip("/"),
        host=_env_str("HOST", "0.0.0.0"),
        port=_env_int("PORT", 8721),
        log_level=_env_str("LOG_LEVEL", "INFO"),
    )


def setup_logging(level: str) -> None:
    """Configure the root logger once."""
    if getattr(setup_logging, "_configured", False):
        return
    logging.basicConfig(
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        level=getattr(logging, level.upper(), logging.INFO),
    )
    setup_logging._configured = True  # type: ignore[attr-defined]
