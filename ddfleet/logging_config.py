"""
Logging configuration for the API server and CLI.

Health probe requests are filtered out of the uvicorn access log.
"""

import logging
import logging.config
from typing import Any, Dict

HEALTH_PATHS = ("/health", "/healthz")


class HealthCheckFilter(logging.Filter):
    """Filter to suppress health check endpoint logs."""

    def filter(self, record: logging.LogRecord) -> bool:
        """Filter out health check requests from uvicorn access logs."""
        if record.name == "uvicorn.access":
            message = record.getMessage()
            if "GET" in message and any(f"{path} " in message for path in HEALTH_PATHS):
                return False
        return True


def get_logging_config(level: str = "INFO", stream: str = "ext://sys.stdout") -> Dict[str, Any]:
    """Get logging configuration with health check suppression."""
    level = level.upper()
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {
            "health_check_filter": {
                "()": HealthCheckFilter
            }
        },
        "formatters": {
            "default": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
            },
            "access": {
                "format": "%(message)s"
            }
        },
        "handlers": {
            "default": {
                "class": "logging.StreamHandler",
                "formatter": "default",
                "stream": stream
            },
            "access": {
                "class": "logging.StreamHandler",
                "formatter": "access",
                "stream": stream,
                "filters": ["health_check_filter"]
            }
        },
        "loggers": {
            "uvicorn": {
                "handlers": ["default"],
                "level": level,
                "propagate": False
            },
            "uvicorn.error": {
                "handlers": ["default"],
                "level": level,
                "propagate": False
            },
            "uvicorn.access": {
                "handlers": ["access"],
                "level": level,
                "propagate": False
            },
            "ddfleet": {
                "handlers": ["default"],
                "level": level,
                "propagate": False
            }
        },
        "root": {
            "level": level,
            "handlers": ["default"]
        }
    }


def configure_logging(level: str = "INFO", stream: str = "ext://sys.stdout") -> None:
    """Apply the logging configuration."""
    logging.config.dictConfig(get_logging_config(level, stream))
