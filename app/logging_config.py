"""
Centralized logging configuration.

Sets up:
- Console handler (INFO level)
- Rotating file handler for the application log (DEBUG level)
- Separate file handler for the error log (ERROR level)

The API process and the Celery worker share this setup; the worker passes
its own prefix so both processes do not rotate the same file.
"""

import logging
import logging.config
from typing import Optional

from configs.config import get_config

cfg = get_config()

# Third-party loggers that are too chatty at DEBUG
_QUIET_LOGGERS = ("pymongo", "httpx", "httpcore", "openai", "botocore", "urllib3")


def _prefixed(filename: str, prefix: Optional[str]) -> str:
    return f"{prefix}-{filename}" if prefix else filename


def setup_logging(prefix: Optional[str] = None) -> None:
    """Configure logging once at process startup."""
    logging_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": "INFO",
                "formatter": "default",
            },
            "app_log_handler": {
                "class": "logging.handlers.RotatingFileHandler",
                "level": "DEBUG",
                "formatter": "default",
                "filename": _prefixed(cfg.LOG_FILE_APP, prefix),
                "maxBytes": cfg.LOG_MAX_BYTES,
                "backupCount": cfg.LOG_BACKUP_COUNT,
                "encoding": "utf8",
            },
            "error_log_handler": {
                "class": "logging.FileHandler",
                "level": "ERROR",
                "formatter": "default",
                "filename": _prefixed(cfg.LOG_FILE_ERRORS, prefix),
                "encoding": "utf8",
            },
        },
        "loggers": {
            name: {"level": "WARNING"} for name in _QUIET_LOGGERS
        },
        "root": {
            "level": "DEBUG",
            "handlers": ["console", "app_log_handler", "error_log_handler"],
        },
    }

    logging.config.dictConfig(logging_config)
    logging.info("Logging configured successfully (prefix=%s).", prefix or "api")
