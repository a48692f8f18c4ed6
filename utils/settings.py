"""Environment-driven configuration for the guidance service."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Tuple

LAPTOP_RESOLUTION_MAP: Dict[str, Tuple[int, int]] = {
    "macbook-pro-14": (3024, 1964),
    "macbook-pro-13": (2560, 1600),
    "macbook-air-13": (2560, 1664),
    "surface-laptop": (2256, 1504),
    "default": (1920, 1080),
}


def _env_str(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip()


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def resolution_for(laptop_version: str) -> Tuple[int, int]:
    """Return the synthetic screen size for a `LAPTOP_VERSION` value."""
    return LAPTOP_RESOLUTION_MAP.get(laptop_version, LAPTOP_RESOLUTION_MAP["default"])


@dataclass(frozen=True)
class GuidanceSettings:
    """Settings read once at startup; see `from_env` for the variable names."""

    openai_model: str = "gpt-4o"
    openai_base_url: Optional[str] = None
    openai_temperature: float = 0.2
    openai_max_output_tokens: int = 1000
    model_timeout_seconds: float = 60.0
    use_real_capture: bool = True
    allow_synthetic_fallback: bool = True
    laptop_version: str = "default"
    capture_max_dimension: int = 1920
    capture_timeout_seconds: float = 10.0
    capture_monitor_index: int = 1
    database_dir: Optional[Path] = None
    database_reset_on_start: bool = False
    structured_logs: bool = False
    max_log_size_mb: float = 10.0
    log_retention_days: int = 0
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "GuidanceSettings":
        database_dir = os.getenv("DATABASE_DIR")
        return cls(
            openai_model=_env_str("OPENAI_MODEL", cls.openai_model),
            openai_base_url=os.getenv("OPENAI_BASE_URL") or None,
            openai_temperature=min(max(_env_float("OPENAI_TEMPERATURE", cls.openai_temperature), 0.0), 1.0),
            openai_max_output_tokens=_env_int("OPENAI_MAX_OUTPUT_TOKENS", cls.openai_max_output_tokens),
            model_timeout_seconds=_env_float("MODEL_TIMEOUT_SECONDS", cls.model_timeout_seconds),
            use_real_capture=_env_bool("GUIDE_USE_REAL_CAPTURE", cls.use_real_capture),
            allow_synthetic_fallback=_env_bool("GUIDE_ALLOW_SYNTHETIC_FALLBACK", cls.allow_synthetic_fallback),
            laptop_version=_env_str("LAPTOP_VERSION", cls.laptop_version),
            capture_max_dimension=_env_int("CAPTURE_MAX_DIMENSION", cls.capture_max_dimension),
            capture_timeout_seconds=_env_float("CAPTURE_TIMEOUT_SECONDS", cls.capture_timeout_seconds),
            capture_monitor_index=_env_int("CAPTURE_MONITOR_INDEX", cls.capture_monitor_index),
            database_dir=Path(database_dir).expanduser() if database_dir and database_dir.strip() else None,
            database_reset_on_start=_env_bool("DATABASE_RESET_ON_START", cls.database_reset_on_start),
            structured_logs=_env_bool("GUIDE_STRUCTURED_LOGS", cls.structured_logs),
            max_log_size_mb=_env_float("GUIDE_MAX_LOG_SIZE_MB", cls.max_log_size_mb),
            log_retention_days=_env_int("LOG_RETENTION_DAYS", cls.log_retention_days),
            log_level=_env_str("LOG_LEVEL", cls.log_level).upper(),
        )
