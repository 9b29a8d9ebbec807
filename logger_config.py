"""Logging setup for the Reminder Assistant.

Each area of the service writes its own rotating file under LOG_DIR
(conversation.log, worker.log, api.log, ...) and echoes to the console.
"""

import logging
import os
from logging.handlers import RotatingFileHandler

from config import settings

_FORMAT = '[%(asctime)s] %(levelname)s %(name)s - %(message)s'
_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

_NOISY_LIBRARIES = ('uvicorn', 'uvicorn.access', 'fastapi', 'sqlalchemy', 'httpx')


def log_dir() -> str:
    path = settings.LOG_DIR or os.path.join(os.path.dirname(os.path.abspath(__file__)), 'logs')
    os.makedirs(path, exist_ok=True)
    return path


def setup_logger(name: str, log_file: str = 'assistant.log') -> logging.Logger:
    """Return the logger for ``name``, attaching file and console handlers once.

    Args:
        name: Logger name (usually __name__)
        log_file: File under LOG_DIR shared by one area of the service

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    logger.setLevel(settings.LOG_LEVEL.upper())
    formatter = logging.Formatter(_FORMAT, datefmt=_DATE_FORMAT)

    file_handler = RotatingFileHandler(
        os.path.join(log_dir(), log_file),
        maxBytes=settings.LOG_MAX_BYTES,
        backupCount=settings.LOG_BACKUP_COUNT,
        encoding='utf-8',
    )
    console_handler = logging.StreamHandler()
    for handler in (file_handler, console_handler):
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    return logger


def configure_root_logger():
    """Keep library INFO chatter out of our logs."""
    for library in _NOISY_LIBRARIES:
        logging.getLogger(library).setLevel(logging.WARNING)


configure_root_logger()
