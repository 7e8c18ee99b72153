"""Logging configuration for flotilla.

Logging goes through loguru. As a library, flotilla is silent by default;
call ``setup_logging`` (or ``FleetBuilder.use_term_logger``) to see what the
provisioning engine is doing.

Example:
    from flotilla.logging import LogConfig, setup_logging, teardown_logging

    handler_ids = setup_logging(LogConfig(level="DEBUG", file="flotilla.log"))
    try:
        ...
    finally:
        teardown_logging(handler_ids)

Region and machine context is attached with ``logger.bind``, so a record
emitted while polling us-east-1 carries ``extra["region"] == "us-east-1"``.
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal

from loguru import logger

if TYPE_CHECKING:
    from loguru import Logger

# Disable by default (library behavior)
logger.disable("flotilla")

type LogLevel = Literal["TRACE", "DEBUG", "INFO", "WARNING", "ERROR"]

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<magenta>{extra[region]}</magenta> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)

FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {extra[region]} | "
    "{name}:{function}:{line} - {message}"
)


@dataclass(frozen=True, slots=True)
class LogConfig:
    """Logging configuration.

    Attributes:
        level: Minimum log level for the console sink.
        file: Path to log file. If provided, logs are written to this file.
        console: Whether to log to stderr. Defaults to True.
        rotation: File rotation policy (e.g., "50 MB", "1 day").
        retention: Number of old log files to keep.
    """

    level: LogLevel = "INFO"
    file: str | None = None
    console: bool = True
    rotation: str = "50 MB"
    retention: int = 10


def _with_region(record: dict) -> bool:
    record["extra"].setdefault("region", "-")
    return record["name"] is not None and record["name"].startswith("flotilla")


def setup_logging(config: LogConfig) -> list[int]:
    """Enable flotilla logging and return handler IDs for later removal."""
    logger.enable("flotilla")
    handler_ids: list[int] = []

    if config.console:
        handler_ids.append(
            logger.add(
                sys.stderr,
                level=config.level,
                format=CONSOLE_FORMAT,
                colorize=True,
                filter=_with_region,
            )
        )

    if config.file:
        handler_ids.append(
            logger.add(
                config.file,
                level="TRACE",  # File always captures everything
                format=FILE_FORMAT,
                rotation=config.rotation,
                retention=config.retention,
                compression="zip",
                diagnose=False,  # Don't expose credentials in tracebacks
                enqueue=True,
                filter=_with_region,
            )
        )

    return handler_ids


def teardown_logging(handler_ids: list[int]) -> None:
    """Remove handlers added by ``setup_logging`` and silence flotilla again."""
    for hid in handler_ids:
        logger.remove(hid)
    logger.disable("flotilla")


def root_logger() -> Logger:
    """The logger used when the caller does not supply one."""
    return logger.bind(region="-")


__all__ = ["LogConfig", "LogLevel", "setup_logging", "teardown_logging", "root_logger"]
