"""
Logging module for Twitch Recorder.
Provides structured logging with split log files and colored console output.
"""

import logging
import re
import sys
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Union


ROOT_LOGGER = 'twitch_recorder'


# ANSI color codes for console output
class Colors:
    RESET = "\033[0m"
    RED = "\033[91m"
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    BLUE = "\033[94m"
    MAGENTA = "\033[95m"
    CYAN = "\033[96m"
    GRAY = "\033[90m"


class ColoredFormatter(logging.Formatter):
    """Custom formatter with colors for console output."""

    LEVEL_COLORS = {
        logging.DEBUG: Colors.GRAY,
        logging.INFO: Colors.GREEN,
        logging.WARNING: Colors.YELLOW,
        logging.ERROR: Colors.RED,
        logging.CRITICAL: Colors.MAGENTA,
    }

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelno, Colors.RESET)

        timestamp = datetime.fromtimestamp(record.created).strftime('%H:%M:%S')

        channel = getattr(record, 'channel', None)
        channel_str = f"{Colors.CYAN}[{channel}]{Colors.RESET} " if channel else ""

        level_str = f"{color}{record.levelname:8}{Colors.RESET}"
        message = f"{Colors.GRAY}{timestamp}{Colors.RESET} {level_str} {channel_str}{record.getMessage()}"

        if record.exc_info:
            message += f"\n{self.formatException(record.exc_info)}"

        return message


class FileFormatter(logging.Formatter):
    """Plain formatter for file output (ANSI codes stripped)."""

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime('%Y-%m-%d %H:%M:%S')
        channel = getattr(record, 'channel', '-')

        message = f"{timestamp} | {record.levelname:8} | {channel:20} | {strip_ansi(record.getMessage())}"

        if record.exc_info:
            message += f"\n{self.formatException(record.exc_info)}"

        return message


class LevelRangeFilter(logging.Filter):
    """Pass only records whose level lies in [min_level, max_level]."""

    def __init__(self, min_level: int, max_level: int = logging.CRITICAL):
        super().__init__()
        self.min_level = min_level
        self.max_level = max_level

    def filter(self, record: logging.LogRecord) -> bool:
        return self.min_level <= record.levelno <= self.max_level


class ChannelLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that adds channel context to log messages."""

    def __init__(self, logger: logging.Logger, channel: str):
        super().__init__(logger, {'channel': channel})

    def process(self, msg, kwargs):
        kwargs.setdefault('extra', {})
        kwargs['extra']['channel'] = self.extra['channel']
        return msg, kwargs


def strip_ansi(text: str) -> str:
    """Remove ANSI color sequences from text."""
    return re.sub(r'\x1b\[[0-9;]*m', '', text)


# Log files written to the log directory: name -> (min level, max level)
LOG_FILES = {
    'out.log': (logging.INFO, logging.INFO),
    'dbg.log': (logging.DEBUG, logging.DEBUG),
    'err.log': (logging.ERROR, logging.CRITICAL),
    'all.log': (logging.DEBUG, logging.CRITICAL),
}


def setup_logging(
    debug: bool = False,
    log_dir: Optional[Union[str, Path]] = None,
    max_size_mb: int = 10,
    backup_count: int = 5
) -> logging.Logger:
    """
    Set up the main application logger.

    Args:
        debug: Show DEBUG records on the console.
        log_dir: Directory for out/dbg/err/all log files. If None, logs only to console.
        max_size_mb: Maximum log file size before rotation.
        backup_count: Number of backup log files to keep.

    Returns:
        Configured logger instance.
    """
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(logging.DEBUG)

    # Remove existing handlers
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(ColoredFormatter())
    console_handler.setLevel(logging.DEBUG if debug else logging.INFO)
    logger.addHandler(console_handler)

    if log_dir:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)

        for filename, (min_level, max_level) in LOG_FILES.items():
            file_handler = RotatingFileHandler(
                log_path / filename,
                maxBytes=max_size_mb * 1024 * 1024,
                backupCount=backup_count,
                encoding='utf-8'
            )
            file_handler.setFormatter(FileFormatter())
            file_handler.addFilter(LevelRangeFilter(min_level, max_level))
            logger.addHandler(file_handler)

    if debug:
        logger.debug(f"{Colors.MAGENTA}Debug Mode Enabled{Colors.RESET}")

    return logger


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """
    Get the application logger.

    Args:
        name: Optional name for child logger.

    Returns:
        Logger instance.
    """
    if name:
        return logging.getLogger(f'{ROOT_LOGGER}.{name}')
    return logging.getLogger(ROOT_LOGGER)


def get_channel_logger(channel: str, name: Optional[str] = None) -> ChannelLoggerAdapter:
    """
    Get a logger adapter for a specific channel.

    Args:
        channel: Twitch channel name.
        name: Optional child logger name.

    Returns:
        ChannelLoggerAdapter with channel context.
    """
    return ChannelLoggerAdapter(get_logger(name), channel)


def status_line(logger, color: str, message: str) -> None:
    """Write one bullet-prefixed status line for a recording state change."""
    logger.info(f"{color}•{Colors.RESET} {message}")
