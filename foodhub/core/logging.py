"""
Foodhub - Logging configuration

Application loggers write to the console. Delivery attempts go to the
dedicated "foodhub.audit" logger so they can be routed separately.
"""
import logging.config

from foodhub.core.config import get_settings

AUDIT_LOGGER = "foodhub.audit"


def configure_logging(level: str | None = None) -> None:
    level = (level or get_settings().LOG_LEVEL).upper()
    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "verbose": {
                "format": "[{asctime}] [{levelname}] {name}: {message}",
                "style": "{",
            },
            "audit": {
                "format": "[{asctime}] AUDIT {message}",
                "style": "{",
            },
        },
        "handlers": {
            "console": {"class": "logging.StreamHandler", "formatter": "verbose"},
            "audit_console": {"class": "logging.StreamHandler", "formatter": "audit"},
        },
        "loggers": {
            "foodhub": {"handlers": ["console"], "level": level, "propagate": False},
            AUDIT_LOGGER: {"handlers": ["audit_console"], "level": "INFO", "propagate": False},
        },
    })
