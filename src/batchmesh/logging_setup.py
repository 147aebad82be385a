"""Root logger configuration for CLI processes."""

from __future__ import annotations

import logging
import os
import sys

_NOISY_LOGGERS = ("sqlalchemy.engine", "alembic.runtime.migration")


def setup_logging(level: str | None = None) -> None:
    """Configure the root logger with a console handler.

    Args:
        level: Logging level name. Falls back to BATCHMESH_LOG_LEVEL, then INFO.
    """

    if level is None:
        level = os.getenv("BATCHMESH_LOG_LEVEL", "INFO")
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
        force=True,
    )
    for logger_name in _NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(logging.WARNING)


def mask_identity(value: str) -> str:
    """Shorten a credential identity for log output."""

    if len(value) <= 5:
        return "***"
    return f"{value[:5]}***"
