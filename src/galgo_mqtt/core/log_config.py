"""
Apply log level from service config or env.

Single log level for all loggers. An explicit level (ServiceConfig.log_level)
takes precedence over the GALGO_LOG_LEVEL env var; INFO otherwise.
"""

from __future__ import annotations

import logging
import os
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _parse_level(raw: str) -> int:
    if not raw or not str(raw).strip():
        return logging.INFO
    raw = str(raw).strip().upper()
    if raw.isdigit():
        return int(raw)
    level = getattr(logging, raw, None)
    return level if isinstance(level, int) else logging.INFO


def level_from_config_or_env(log_level: Optional[str] = None) -> int:
    """Resolve log level: explicit value if given, else GALGO_LOG_LEVEL env, else INFO."""
    if log_level:
        return _parse_level(log_level)
    raw = os.environ.get("GALGO_LOG_LEVEL", "").strip()
    return _parse_level(raw) if raw else logging.INFO


def apply_log_level(level: int) -> None:
    """Set root logger level so every module logger uses it."""
    logging.getLogger().setLevel(level)


def configure_logging(log_level: Optional[str] = None) -> None:
    """Install the root handler once and apply the resolved level."""
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
    apply_log_level(level_from_config_or_env(log_level))
