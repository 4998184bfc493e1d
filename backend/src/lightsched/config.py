"""Configuration helpers for the scheduling service."""

from __future__ import annotations

import os
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

DEFAULT_DEVICE_CONTROL_URL = "http://localhost:3002"
DEFAULT_DISPATCH_TIMEOUT = 10.0
DEFAULT_RECONCILE_INTERVAL = 60.0


def _candidate_env_paths(start: Path) -> Iterable[Path]:
    """Yield plausible .env locations from closest to farthest."""
    override = os.environ.get("LIGHTSCHED_ENV_FILE")
    if override:
        yield Path(override).expanduser()

    for directory in (start, *start.parents):
        yield directory / ".env"


def _discover_env_path() -> Path | None:
    package_dir = Path(__file__).resolve().parent
    for candidate in _candidate_env_paths(package_dir):
        if candidate.exists():
            return candidate
    return None


def load_env_file(path: Path | None = None) -> None:
    """Populate os.environ with values from a .env file if present."""
    env_path = path or _discover_env_path()
    if env_path is None or not env_path.exists():
        logger.debug("No .env file discovered for configuration")
        return

    logger.bind(path=str(env_path)).info("Loading environment variables from .env")
    for raw_line in env_path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue

        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        # Existing environment variables win over the file.
        os.environ.setdefault(key, value)


def _positive_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be a number, got {raw!r}.") from exc
    if value <= 0:
        raise RuntimeError(f"{name} must be positive, got {raw!r}.")
    return value


@dataclass(frozen=True)
class Settings:
    """Typed accessors for configuration derived from the environment."""

    device_control_url: str
    device_control_api_key: str | None
    dispatch_timeout_seconds: float
    reconcile_interval_seconds: float
    default_timezone: str

    @classmethod
    def from_env(cls) -> Settings:
        load_env_file()

        base_url = os.environ.get("DEVICE_CONTROL_URL") or os.environ.get(
            "DEVICE_MANAGEMENT_SERVICE_URL", DEFAULT_DEVICE_CONTROL_URL
        )
        api_key = os.environ.get("DEVICE_CONTROL_API_KEY") or None

        settings = cls(
            device_control_url=base_url,
            device_control_api_key=api_key,
            dispatch_timeout_seconds=_positive_float(
                "LIGHTSCHED_DISPATCH_TIMEOUT", DEFAULT_DISPATCH_TIMEOUT
            ),
            reconcile_interval_seconds=_positive_float(
                "LIGHTSCHED_RECONCILE_INTERVAL", DEFAULT_RECONCILE_INTERVAL
            ),
            default_timezone=os.environ.get("LIGHTSCHED_DEFAULT_TIMEZONE", "UTC"),
        )
        logger.bind(
            device_control_url=settings.device_control_url,
            reconcile_interval=settings.reconcile_interval_seconds,
        ).info("Configuration loaded from environment")
        return settings


__all__ = ["Settings", "load_env_file"]
