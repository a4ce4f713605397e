"""Centralized logging configuration for the Reminder Bot backend.

Each component (api, parser, quota, worker, mcp, ...) gets its own rotating
log file under ``settings.LOG_DIR`` and shares the console stream.
"""

import logging
from logging.handlers import RotatingFileHandler
import os

from config import settings

LOG_FORMAT = '[%(asctime)s] %(levelname)s - %(name)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

# Libraries that log every request at INFO
QUIET_LOGGERS = ('uvicorn', 'uvicorn.access', 'fastapi', 'sqlalchemy', 'httpx', 'openai', 'mcp')


def log_dir() -> str:
    path = settings.LOG_DIR or os.path.join(os.path.dirname(os.path.abspath(__file__)), 'logs')
    os.makedirs(path, exist_ok=True)
    return path


def log_level() -> int:
    level = logging.getLevelName(settings.LOG_LEVEL.upper())
    return level if isinstance(level, int) else logging.INFO


def setup_logger(name: str, log_file: str = 'service.log') -> logging.Logger:
    """Return the component logger ``name``, attaching handlers on first use.

    Args:
        name: Logger name (usually __name__)
        log_file: Component log file (e.g., 'api.log', 'parser.log')
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    level = log_level()
    logger.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    if settings.LOG_TO_FILE:
        # 10MB per file, 5 backups
        file_handler = RotatingFileHandler(
            os.path.join(log_dir(), log_file),
            maxBytes=10 * 1024 * 1024,
            backupCount=5,
            encoding='utf-8'
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger


def configure_root_logger():
    for noisy in QUIET_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING)


configure_root_logger()
