"""Logging helpers for the gatherer.

Modules only ask for a named logger and never touch the root logger. The
process embedding the gatherer (a test runner entrypoint, for example) decides
whether to call `configure_logging`.
"""

from __future__ import annotations

import logging
import os

PACKAGE_LOGGER = "k8s_artifact_gatherer"
LOG_LEVEL_ENV = "KAG_LOG_LEVEL"
LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

logging.getLogger(PACKAGE_LOGGER).addHandler(logging.NullHandler())


def _resolve_level(level: str | int | None) -> int:
    if level is None:
        level = os.environ.get(LOG_LEVEL_ENV, "INFO")
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(level.strip().upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def configure_logging(level: str | int | None = None, *, force: bool = False) -> None:
    """Install a stderr handler on the root logger.

    The level is `level` when given, else `$KAG_LOG_LEVEL`, else INFO.
    """
    logging.basicConfig(
        level=_resolve_level(level),
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
        force=force,
    )


def get_logger(name: str | None = None) -> logging.Logger:
    return logging.getLogger(name or PACKAGE_LOGGER)


__all__ = ["configure_logging", "get_logger"]
