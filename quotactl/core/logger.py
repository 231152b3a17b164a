# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Logging setup for quotactl.

Components log through ``logging.getLogger("quotactl.<component>")``.
This module attaches console and rotating-file handlers to the
``quotactl`` logger tree so every component shares one configuration.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, Optional

LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def parse_level(level: str) -> int:
    """Convert string level to logging constant"""
    return LEVELS.get(level.upper(), logging.INFO)


class QuotactlLogger:
    """
    Handler setup for one quotactl logger.

    Features:
    - Console and file logging
    - Automatic log rotation
    - Structured log format with timestamps
    """

    def __init__(
        self,
        name: str = "quotactl",
        level: str = "INFO",
        log_dir: Optional[Path] = None,
        console_output: bool = True,
        file_output: bool = True,
    ):
        self.name = name
        self.logger = logging.getLogger(name)

        self.logger.handlers.clear()
        self.logger.setLevel(parse_level(level))

        console_formatter = logging.Formatter(
            fmt="[%(asctime)s] [%(name)s:%(levelname)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

        file_formatter = logging.Formatter(
            fmt="%(asctime)s | %(name)s | %(levelname)s | %(filename)s:%(lineno)d | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

        if console_output:
            console_handler = logging.StreamHandler(sys.stderr)
            console_handler.setFormatter(console_formatter)
            console_handler.setLevel(parse_level(level))
            self.logger.addHandler(console_handler)

        if file_output:
            if log_dir is None:
                log_dir = Path.home() / ".quotactl" / "logs"

            log_dir.mkdir(parents=True, exist_ok=True)

            # Rotate after 10MB, keep 5 backup files
            file_handler = RotatingFileHandler(
                log_dir / f"{name}.log",
                maxBytes=10 * 1024 * 1024,
                backupCount=5,
                encoding="utf-8",
            )
            file_handler.setFormatter(file_formatter)
            file_handler.setLevel(logging.DEBUG)
            self.logger.addHandler(file_handler)

    def set_level(self, level: str):
        """Change log level dynamically"""
        self.logger.setLevel(parse_level(level))


_loggers: Dict[str, QuotactlLogger] = {}


def get_logger(
    name: str = "quotactl",
    level: Optional[str] = None,
    log_dir: Optional[Path] = None,
    file_output: bool = True,
) -> QuotactlLogger:
    """
    Get or create a configured logger.

    Args:
        name: Logger name (children of it propagate to its handlers)
        level: Log level, defaults to QUOTACTL_LOG_LEVEL or INFO
        log_dir: Directory for rotating log files
        file_output: Whether to attach the rotating file handler

    Returns:
        QuotactlLogger instance
    """
    if name not in _loggers:
        log_level = level or os.getenv("QUOTACTL_LOG_LEVEL", "INFO")

        # CI and tests run without log files
        if os.getenv("QUOTACTL_NO_FILE_LOGS", "false").lower() == "true":
            file_output = False

        _loggers[name] = QuotactlLogger(
            name=name,
            level=log_level,
            log_dir=log_dir,
            file_output=file_output,
        )
    elif level:
        _loggers[name].set_level(level)

    return _loggers[name]


def setup_logging(config) -> QuotactlLogger:
    """Configure the ``quotactl`` logger tree from a QuotactlConfig"""
    return get_logger(
        "quotactl",
        level=config.observability.log_level,
        log_dir=config.paths.log_dir,
        file_output=config.observability.file_logging,
    )
