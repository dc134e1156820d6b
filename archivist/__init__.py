import os
import logging
from logging.handlers import RotatingFileHandler


__version__ = '0.1.0'


def configure_logging(settings=None):
    """Configure application logging"""

    if settings is None:
        from archivist.config import get_config
        settings = get_config()

    log_dir = settings.LOG_DIR
    log_level = logging.DEBUG if settings.DEBUG else logging.INFO

    handlers = []

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)
    handlers.append(console_handler)

    # File handler (disabled with an empty LOG_DIR)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, 'archivist.log'),
            maxBytes=10485760,  # 10MB
            backupCount=10
        )
        file_handler.setLevel(log_level)
        file_formatter = logging.Formatter(
            '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
        )
        file_handler.setFormatter(file_formatter)
        handlers.append(file_handler)

    # Configure root logger
    logging.basicConfig(level=log_level, handlers=handlers, force=True)

    # boto and paramiko are noisy at DEBUG
    for name in ('botocore', 'boto3', 's3transfer', 'urllib3', 'paramiko'):
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).info(f"Logging configured (level: {logging.getLevelName(log_level)})")
