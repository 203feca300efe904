"""
Logging utilities for the mission kernel.
Consistent, contextual log lines for transitions, replays and failures.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from mission_kernel import config


def setup_logging() -> None:
    """Initialize logging with the configured level and format."""
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
        format=config.LOG_FORMAT,
    )


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance for a module."""
    return logging.getLogger(name)


def log_transition(logger: logging.Logger, transition: str, entity_id: str, **kwargs) -> None:
    """Log a committed state transition."""
    logger.info(
        f"{transition} {entity_id}",
        extra={"transition": transition, "entity_id": entity_id, **kwargs},
    )


def log_error(logger: logging.Logger, error_type: str, message: str, exc_info=False, **kwargs) -> None:
    """Log an error with context."""
    logger.error(
        f"{error_type}: {message}",
        exc_info=exc_info,
        extra={"error_type": error_type, "error_message": message, **kwargs},
    )


def create_error_response(
    error_code: str,
    detail: str,
    context: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Standardized error envelope returned by the API."""
    return {
        "ok": False,
        "error_code": error_code,
        "detail": detail,
        "timestamp": datetime.utcnow().isoformat(),
        "context": context or {},
    }
