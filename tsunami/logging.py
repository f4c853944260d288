"""Logging configuration for Tsunami.

Structured logging via loguru. The library logger is disabled by
default and enabled by ``setup_logging`` (the facade and the CLI call it).

Example:
    from tsunami import Tsunami, LogConfig

    tsunami = Tsunami(logging=LogConfig(level="DEBUG", file="tsunami.log"))
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal

from loguru import logger
from rich.console import Console
from rich.logging import RichHandler

# Disable by default (library behavior)
logger.disable("tsunami")

type LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "TRACE"]

_CONTEXT_KEYS = ("component", "provider", "group", "instance_id", "host")


def _format_context(record: Any) -> str:
    extra = record.get("extra", {})
    parts = [f"{k}={extra[k]}" for k in _CONTEXT_KEYS if k in extra]
    return f" [{' '.join(parts)}]" if parts else ""


CONSOLE_FORMAT = "{message}<dim>{extra[_ctx]}</dim>"

FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | "
    "{name}:{function}:{line}{extra[_ctx]} - {message}"
)


@dataclass(frozen=True, slots=True)
class LogConfig:
    """Logging configuration.

    Attributes:
        level: Minimum console log level.
        file: Path to log file. None disables file logging.
        console: Whether to log to stderr through rich.
        rotation: File rotation policy (e.g., "50 MB", "1 day").
        retention: Number of old log files to keep.
    """

    level: LogLevel = "INFO"
    file: str | None = None
    console: bool = True
    rotation: str = "50 MB"
    retention: int = 10


def setup_logging(config: LogConfig) -> list[int]:
    """Configure logging and return handler IDs for cleanup."""
    from pathlib import Path

    logger.remove()
    logger.enable("tsunami")
    logger.configure(patcher=lambda r: r["extra"].update(_ctx=_format_context(r)))

    handler_ids: list[int] = []

    if config.console:
        hid = logger.add(
            RichHandler(
                console=Console(stderr=True),
                show_path=False,
                markup=False,
                rich_tracebacks=True,
            ),
            level=config.level,
            format=CONSOLE_FORMAT,
            filter="tsunami",
        )
        handler_ids.append(hid)

    if config.file:
        Path(config.file).parent.mkdir(parents=True, exist_ok=True)
        hid = logger.add(
            config.file,
            level="DEBUG",
            format=FILE_FORMAT,
            rotation=config.rotation,
            retention=config.retention,
            compression="zip",
            diagnose=False,
            enqueue=False,
        )
        handler_ids.append(hid)

    return handler_ids


def teardown_logging(handler_ids: list[int]) -> None:
    """Remove handlers and disable logging."""
    for hid in handler_ids:
        logger.remove(hid)
    logger.disable("tsunami")
