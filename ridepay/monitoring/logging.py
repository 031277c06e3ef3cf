"""
Structured logging configuration.

Uses structlog for JSON-formatted logs; request and correlation ids are bound
through contextvars. Checkout signatures and gateway secrets are redacted and
bank account numbers masked before rendering.
"""
import logging
import sys
from typing import Any

import structlog
from pythonjsonlogger import jsonlogger

from ridepay.config import get_settings

# Keys that must never reach the log stream in clear text
SECRET_FIELDS = frozenset(
    {"signature", "razorpay_signature", "key_secret", "webhook_secret", "api_key", "authorization"}
)
MASKED_FIELDS = frozenset({"account_number", "bank_account_number"})

NOISY_LOGGERS = ("urllib3", "httpx", "aiosqlite", "asyncpg", "sqlalchemy.engine")


def mask_value(value: Any, visible: int = 4) -> str:
    """Mask all but the last ``visible`` characters."""
    text = str(value)
    if len(text) <= visible:
        return "*" * len(text)
    return "*" * (len(text) - visible) + text[-visible:]


def redact_sensitive_fields(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Drop signatures and secrets, mask bank account numbers."""
    for key in list(event_dict):
        lowered = key.lower()
        if lowered in SECRET_FIELDS:
            event_dict[key] = "[REDACTED]"
        elif lowered in MASKED_FIELDS and event_dict[key] is not None:
            event_dict[key] = mask_value(event_dict[key])
    return event_dict


def add_app_context(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Add application name and environment to log events."""
    settings = get_settings()
    event_dict["app_name"] = settings.app_name
    event_dict["app_env"] = settings.app_env
    return event_dict


def setup_logging() -> None:
    """
    Configure structured logging with a JSON formatter.

    structlog renders each event as JSON and hands it to the stdlib root
    logger, whose stdout handler uses python-json-logger.
    """
    settings = get_settings()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            add_app_context,
            redact_sensitive_fields,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    json_handler = logging.StreamHandler(sys.stdout)
    formatter = jsonlogger.JsonFormatter(
        "%(timestamp)s %(level)s %(name)s %(message)s",
        rename_fields={
            "timestamp": "@timestamp",
            "level": "level",
            "name": "logger",
            "message": "message",
        },
    )
    json_handler.setFormatter(formatter)
    root_logger.addHandler(json_handler)

    # Quiet the HTTP clients used by the gateway SDKs and the database drivers
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        app_env=settings.app_env,
    )
