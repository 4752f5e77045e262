"""Logging configuration for the colony server."""

import logging
import os
import time
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

DEFAULT_LOG_DIR = ".colony/logs"
DEFAULT_LOG_FILE = "colony.log"
LOG_FORMAT = "%(asctime)s - %(levelname)s - %(threadName)s - %(name)s - %(message)s"

# Chatty third-party loggers kept at WARNING unless running at DEBUG
QUIET_LOGGERS = ("httpx", "httpcore", "urllib3")


class SizeAndTimeRotatingHandler(TimedRotatingFileHandler):
    """Rolls the file over at each time boundary or once it reaches max_bytes."""

    def __init__(self, filename: str, max_bytes: int, backup_count: int = 0, **kwargs):
        self.max_bytes = max_bytes
        super().__init__(filename, backupCount=backup_count, **kwargs)

    def shouldRollover(self, record: logging.LogRecord) -> int:
        if int(time.time()) >= self.rolloverAt:
            return 1
        if self.stream is None or self.max_bytes <= 0:
            return 0
        self.stream.seek(0, os.SEEK_END)
        return 1 if self.stream.tell() >= self.max_bytes else 0

    def doRollover(self) -> None:
        super().doRollover()
        self.rolloverAt = self.computeRollover(int(time.time()))


def parse_level(level: int | str) -> int:
    """Accept a logging level number or name such as ``"debug"``."""
    if isinstance(level, int):
        return level
    value = logging.getLevelName(level.upper())
    if not isinstance(value, int):
        raise ValueError(f"Unknown log level: {level}")
    return value


def configure_logging(
    log_dir: str | Path = DEFAULT_LOG_DIR,
    log_file: str = DEFAULT_LOG_FILE,
    level: int | str = logging.INFO,
    max_bytes: int = 5 * 1024 * 1024,  # 5 MB
    backup_count: int = 7,
    console: bool = True,
) -> logging.Logger:
    """Install a rotating file handler, and optionally a console handler, on the root logger.

    Args:
        log_dir: Directory for log files, created if missing.
        log_file: Log file name.
        level: Logging level, as a number or a name.
        max_bytes: File size that triggers a rollover before midnight.
        backup_count: Rotated files to keep.
        console: Whether to also log to stderr.

    Returns:
        The root logger.
    """
    level = parse_level(level)
    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT)

    file_handler = SizeAndTimeRotatingHandler(
        filename=str(log_path / log_file),
        when="midnight",
        interval=1,
        max_bytes=max_bytes,
        backup_count=backup_count,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)

    if console:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        root.addHandler(console_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(level if level <= logging.DEBUG else logging.WARNING)

    return root
