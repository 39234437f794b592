"""
Backup Courier.

Snapshots folders and a containerized PostgreSQL database, archives and
optionally encrypts the result, and delivers it to Telegram or S3.
"""

import os
import logging
from logging.handlers import RotatingFileHandler
from typing import Optional

__version__ = '1.0.0'


def configure_logging(level: int = logging.INFO, log_file: Optional[str] = None):
    """
    Configure application logging.

    Args:
        level: Log level for all handlers
        log_file: Optional path of a rotating log file
    """
    handlers = []

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    ))
    handlers.append(console_handler)

    # File handler
    if log_file:
        log_dir = os.path.dirname(os.path.abspath(log_file))
        os.makedirs(log_dir, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=10485760,  # 10MB
            backupCount=10
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(
            '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
        ))
        handlers.append(file_handler)

    logging.basicConfig(level=level, handlers=handlers, force=True)

    # boto3 and urllib3 are noisy at DEBUG
    for noisy in ('botocore', 'boto3', 's3transfer', 'urllib3'):
        logging.getLogger(noisy).setLevel(max(level, logging.INFO))

    logging.getLogger(__name__).debug(f"Logging configured (level: {logging.getLevelName(level)})")
