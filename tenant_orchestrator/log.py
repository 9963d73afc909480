"""
Structlog configuration for the orchestrator.

Console output when attached to a terminal, JSON lines otherwise. Secret
material is masked before any renderer sees it.
"""

import logging
import sys
from typing import Any, Optional

import structlog

SENSITIVE_MARKERS = ("password", "token", "secret", "ca_data", "private_key")
MASK = "********"


def redact_secrets(_logger: Any, _method: str, event_dict: dict) -> dict:
    """Mask values whose key names a credential."""
    for key, value in event_dict.items():
        if key == "event" or value is None:
            continue
        lowered = key.lower()
        if any(marker in lowered for marker in SENSITIVE_MARKERS):
            event_dict[key] = MASK
    return event_dict


def configure_logging(level: str = "INFO", json_output: Optional[bool] = None) -> None:
    """Configure structlog processors and the output renderer."""
    if json_output is None:
        json_output = not sys.stderr.isatty()

    shared_processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        redact_secrets,
        structlog.processors.StackInfoRenderer(),
    ]

    if json_output:
        processors = [
            *shared_processors,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = [
            *shared_processors,
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
        context_class=dict,
        # stdout carries the summary table and one-time credential display
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )
