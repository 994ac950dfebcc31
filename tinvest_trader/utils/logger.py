# tinvest_trader/utils/logger.py
import logging
import sys
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

# Raw broker request/response bodies are logged below DEBUG
TRACE = 5
logging.addLevelName(TRACE, "TRACE")


class TimezoneFormatter(logging.Formatter):
    """Formatter that renders timestamps in a fixed exchange-local timezone"""

    def __init__(self, fmt: str = None, datefmt: str = None, tz_name: Optional[str] = None):
        super().__init__(fmt, datefmt)
        self.tz = None
        if tz_name:
            try:
                self.tz = ZoneInfo(tz_name)
            except (ZoneInfoNotFoundError, ValueError):
                self.tz = None

    def formatTime(self, record, datefmt=None):
        if self.tz is None:
            return super().formatTime(record, datefmt)
        moment = datetime.fromtimestamp(record.created, tz=self.tz)
        return moment.strftime(datefmt or "%Y-%m-%d %H:%M:%S")


def resolve_level(level: Union[int, str, None]) -> int:
    """Turn a level name such as 'TRACE' or 'info' into its numeric value"""
    if level is None:
        return logging.INFO
    if isinstance(level, int):
        return level
    value = logging.getLevelName(level.upper())
    return value if isinstance(value, int) else logging.INFO


def setup_logger(
    name: str,
    log_file: str = None,
    level: Union[int, str, None] = None,
    force_console_only: bool = False
) -> logging.Logger:
    """Configure logger with console, dated-file and persistent warning handlers.

    With ``log_file="trading"`` and file logging enabled, records go to
    ``<LOG_DIR>/trading_YYYY-MM-DD.log`` at the configured level and to
    ``<LOG_DIR>/trading.log`` at WARNING and above.
    """
    from config.settings import settings

    level = resolve_level(level if level is not None else settings.LOG_LEVEL)

    logger = logging.getLogger(name)
    logger.setLevel(level)

    if logger.handlers:
        return logger

    formatter = TimezoneFormatter(
        '[%(asctime)s] %(levelname)s [%(name)s:%(lineno)d] - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        tz_name=settings.LOG_TIMEZONE
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file and settings.LOG_TO_FILE and not force_console_only:
        try:
            log_path = Path(settings.LOG_DIR)
            log_path.mkdir(parents=True, exist_ok=True)
            stem = Path(log_file).stem

            today = datetime.now(formatter.tz).strftime('%Y-%m-%d')
            daily_handler = logging.FileHandler(
                log_path / f"{stem}_{today}.log", encoding='utf-8'
            )
            daily_handler.setLevel(level)
            daily_handler.setFormatter(formatter)
            logger.addHandler(daily_handler)

            warning_handler = RotatingFileHandler(
                log_path / f"{stem}.log",
                maxBytes=10*1024*1024,
                backupCount=5,
                encoding='utf-8'
            )
            warning_handler.setLevel(logging.WARNING)
            warning_handler.setFormatter(formatter)
            logger.addHandler(warning_handler)
            logger.info(f"File logging enabled: {log_path / stem}")
        except (OSError, PermissionError) as e:
            logger.warning(f"Failed to setup file logging: {e}, using console only")
    elif not settings.LOG_TO_FILE:
        logger.info("File logging disabled by configuration")

    return logger
