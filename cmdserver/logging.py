"""
Logging setup for the command server.

Events are rendered as JSON lines by structlog and written through stdlib
logging to the console and, unless disabled, to a rotating file named after
the component. The component is bound as a context variable so every event
carries it.
"""
from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import List, Optional, Union

import structlog
import structlog.contextvars
import structlog.stdlib

from cmdserver.config import Settings, settings as default_settings

_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def _resolve_level(level: Union[int, str]) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(level.upper())
    if not isinstance(resolved, int):
        raise ValueError(f"Unknown log level: {level!r}")
    return resolved


def _file_handler(component: str, log_dir: Path, config: Settings) -> RotatingFileHandler:
    log_dir.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        log_dir / f"{component}.log",
        maxBytes=config.log_max_bytes,
        backupCount=config.log_backup_count,
    )
    handler.setFormatter(logging.Formatter(_FORMAT))
    return handler


def setup_logging(
    component: str = "server",
    level: Union[int, str, None] = None,
    log_dir: Optional[Path] = None,
    log_to_file: Optional[bool] = None,
    config: Optional[Settings] = None,
) -> None:
    """
    Configure stdlib logging and structlog for one component.

    Unset arguments fall back to the settings (log_level, log_dir,
    log_to_file).
    """
    config = config or default_settings
    resolved = _resolve_level(level if level is not None else config.log_level)
    if log_to_file is None:
        log_to_file = config.log_to_file

    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_to_file:
        handlers.append(_file_handler(component, log_dir or config.log_dir, config))
    logging.basicConfig(level=resolved, handlers=handlers, format=_FORMAT, force=True)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    structlog.contextvars.bind_contextvars(component=component)

    structlog.get_logger(__name__).info(
        "logging_initialized",
        level=logging.getLevelName(resolved),
        log_to_file=log_to_file,
    )
