"""Logging helpers for the scheduling service."""

from __future__ import annotations

import os
import sys

from loguru import logger

_LOGGER_CONFIGURED = False


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


def configure_logging(*, force: bool = False) -> None:
    """Set up the global Loguru logger with application defaults."""
    global _LOGGER_CONFIGURED
    if _LOGGER_CONFIGURED and not force:
        return

    log_level = os.getenv("LIGHTSCHED_LOG_LEVEL", "INFO")

    logger.remove()
    logger.add(
        sys.stderr,
        level=log_level,
        backtrace=False,
        diagnose=_env_flag("LIGHTSCHED_LOG_DIAGNOSE"),
        enqueue=False,
        colorize=_env_flag("LIGHTSCHED_LOG_COLOR", "true"),
    )

    _LOGGER_CONFIGURED = True


__all__ = ["configure_logging", "logger"]
