# repertoire_builder/utils/logging_config.py
"""
Configures application-wide structured logging using structlog.

structlog events and plain stdlib records (python-chess, aiosqlite) are both
rendered by one `ProcessorFormatter`, so every line carries the same timestamp,
level and bound context (run and correlation IDs).
"""

import logging
import sys
from pathlib import Path
from typing import List, Optional

import structlog
from structlog.types import Processor

# Libraries that log every UCI line or SQL statement at DEBUG.
_NOISY_LOGGERS = ("chess.engine", "aiosqlite", "urllib3")


def _shared_processors() -> List[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[Path] = None,
    json_console: bool = False,
) -> None:
    """
    Routes structlog through the standard library's logging.

    Args:
        log_level: Root level name, e.g. "DEBUG".
        log_file: Optional file that receives JSON lines in addition to the console.
        json_console: Render the console as JSON instead of colored key/value text.
    """
    shared = _shared_processors()
    structlog.configure(
        processors=shared + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    console_renderer: Processor = (
        structlog.processors.JSONRenderer() if json_console else structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
    )
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(foreign_pre_chain=shared, processor=console_renderer)
    )
    handlers: List[logging.Handler] = [console_handler]

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        file_handler.setFormatter(
            structlog.stdlib.ProcessorFormatter(foreign_pre_chain=shared, processor=structlog.processors.JSONRenderer())
        )
        handlers.append(file_handler)

    logging.basicConfig(handlers=handlers, level=log_level.upper(), force=True)
    if log_level.upper() != "DEBUG":
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
