import logging
import logging.config
from typing import Optional

from .config import settings


def configure_logging(level: Optional[str] = None) -> None:
    """Configure console logging for the API and the worker processes."""
    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "format": "%(asctime)s %(levelname)s [%(name)s] %(message)s",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "default",
            },
        },
        "loggers": {
            "hotspot": {"level": level or settings.LOG_LEVEL, "propagate": True},
        },
        "root": {"handlers": ["console"], "level": "WARNING"},
    })
