"""Centralized logging factory for consistent logger creation across the application.

This module provides a singleton-based logging factory that ensures consistent
logger configuration throughout the application. It handles:
- One-time initialization of the logging system
- Rich console output and an optional log file
- Consistent formatting across all loggers

Usage:
    # Explicit initialization (optional - auto-initializes on first use)
    LoggingFactory.initialize(log_file=Path("logs/farmflow.log"), level=logging.INFO)

    # Get a logger for your module
    logger = LoggingFactory.get_logger(__name__)
    logger.info("Executor started")
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional, Union

from rich.logging import RichHandler

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
PACKAGE_LOGGER = "farmflow"


class LoggingFactory:
    """Factory for creating and configuring loggers consistently.

    Initialization happens once per process; later calls to initialize()
    are ignored until reset() is called. Handlers are attached to the root
    logger, the level is applied to the ``farmflow`` package logger only.

    Class Attributes:
        _initialized: Flag to ensure single initialization
        _log_file: Log file path, when file output is enabled
        _handlers: Handlers installed by initialize()
    """

    _initialized = False
    _log_file: Optional[Path] = None
    _handlers: List[logging.Handler] = []

    @classmethod
    def initialize(
        cls,
        log_file: Optional[Union[str, Path]] = None,
        level: Union[int, str] = logging.INFO,
        format_string: Optional[str] = None,
        console: bool = True,
    ) -> None:
        """Initialize the logging system once for the entire application.

        Args:
            log_file: Optional file that receives plain-text log records
            level: Level for the ``farmflow`` loggers (name or number)
            format_string: Format for file output. Console output is
                rendered by rich and ignores it.
            console: Attach a rich console handler
        """
        if cls._initialized:
            return

        if isinstance(level, str):
            level = logging.getLevelName(level.upper())
            if not isinstance(level, int):
                level = logging.INFO

        handlers: List[logging.Handler] = []
        if console:
            handlers.append(RichHandler(rich_tracebacks=True, show_path=False, markup=False))

        if log_file:
            cls._log_file = Path(log_file)
            cls._log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(cls._log_file, encoding="utf-8")
            file_handler.setFormatter(logging.Formatter(format_string or DEFAULT_FORMAT))
            handlers.append(file_handler)

        root = logging.getLogger()
        for handler in handlers:
            root.addHandler(handler)
        logging.getLogger(PACKAGE_LOGGER).setLevel(level)

        cls._handlers = handlers
        cls._initialized = True

    @classmethod
    def get_logger(cls, name: str) -> logging.Logger:
        """Get a configured logger for the given module name.

        Initializes the logging system with defaults if initialize() has not
        been called.
        """
        if not cls._initialized:
            cls.initialize()

        return logging.getLogger(name)

    @classmethod
    def reset(cls) -> None:
        """Remove installed handlers so the next initialize() applies again."""
        root = logging.getLogger()
        for handler in cls._handlers:
            root.removeHandler(handler)
            handler.close()
        logging.getLogger(PACKAGE_LOGGER).setLevel(logging.NOTSET)
        cls._handlers = []
        cls._initialized = False
        cls._log_file = None


def get_logger(name: str) -> logging.Logger:
    """Get a configured logger for the given module name."""
    return LoggingFactory.get_logger(name)
