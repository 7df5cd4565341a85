"""
Structured Logging

Features:
- JSON-formatted logs (console rendering in development)
- Log levels through the stdlib logging bridge
- Scrubbing of PHI-bearing and secret fields before rendering
"""

from typing import Any, MutableMapping
import logging
import sys

import structlog


# Keys that may carry resource content, search values or credentials
SCRUBBED_KEYS = frozenset({
    "body",
    "payload",
    "resource",
    "params",
    "client_secret",
    "access_token",
    "refresh_token",
    "authorization",
})

SCRUBBED = "[SCRUBBED]"


def scrub_sensitive_fields(
    logger: Any,
    method_name: str,
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    """Mask values of keys that could contain PHI or secrets."""
    for key in list(event_dict.keys()):
        if key.lower() in SCRUBBED_KEYS:
            event_dict[key] = SCRUBBED
    return event_dict


def configure_logging(level: str = "INFO", json: bool = True) -> None:
    """
    Configure structlog and the stdlib root logger.

    Args:
        level: Minimum log level name
        json: Render JSON lines; otherwise a human-readable console format
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level.upper(), logging.INFO),
    )

    renderer = (
        structlog.processors.JSONRenderer()
        if json
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            scrub_sensitive_fields,
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = "fhirbridge") -> structlog.stdlib.BoundLogger:
    """Get a structlog logger."""
    return structlog.get_logger(name)
