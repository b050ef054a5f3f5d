"""Centralised logging setup for the Brewhouse installer."""

from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, ContextManager

import structlog
from structlog.types import FilteringBoundLogger

_CONFIGURED = False


def sanitise_context(logger: Any, method_name: str, event_dict: dict) -> dict:
    """Sanitize context by removing None values.

    Args:
        logger: The logger instance.
        method_name: The name of the method called on the logger.
        event_dict: The event dictionary to sanitize.

    Returns:
        The sanitized event dictionary.
    """
    return {k: v for k, v in event_dict.items() if v is not None}


def configure_logging(level: str = "INFO", log_file: Path | None = None) -> None:
    """Configure logging for the Brewhouse installer.

    Events are written as JSON lines to a rotating file; the terminal
    belongs to the CLI renderers.

    Args:
        level: The logging level as a string (e.g., "DEBUG", "INFO").
        log_file: Optional path to a log file. Defaults to
            `$BREWHOUSE_LOGS/brewhouse.log`.
    """
    global _CONFIGURED
    if _CONFIGURED:
        return

    if log_file is None:
        log_dir = Path(os.environ.get("BREWHOUSE_LOGS", Path.home() / ".brewhouse" / "logs"))
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file = log_dir / "brewhouse.log"

    file_handler = RotatingFileHandler(log_file, maxBytes=2_000_000, backupCount=2)
    file_handler.setLevel(getattr(logging, level.upper()))

    shared_processors = [
        sanitise_context,
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]

    structlog.configure(
        processors=shared_processors
        + [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()],
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level.upper())),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.root.setLevel(getattr(logging, level.upper()))
    logging.root.addHandler(file_handler)

    _CONFIGURED = True


def bound_install_context(formula: str, state: str) -> ContextManager[None]:
    """Bind `formula` and `state` to every event logged inside the block.

    Nested installs rebind both keys; leaving the block restores the
    values of the enclosing install.
    """
    return structlog.contextvars.bound_contextvars(formula=formula, state=state)


def bind_install_state(state: str) -> None:
    structlog.contextvars.bind_contextvars(state=state)


def get_logger(name: str = "brewhouse") -> FilteringBoundLogger:
    """Get a structlog logger instance.

    Args:
        name: Optional name for the logger, typically the module name.

    Returns:
        A structlog FilteringBoundLogger instance.

    Usage:
        log = get_logger(__name__)
        log.info("install_state", formula="foo", to_state="building")

    Standard context keys (`formula` and `state` are bound automatically
    while an install runs):
        - event (str): Name of operation or event
        - formula (str): Name of the formula being processed
        - dependent (str): Formula that introduced a dependency or requirement
        - state (str): Installer state machine state
        - duration_ms (int): Operation duration in milliseconds
        - error (str): Error message if applicable
        - exc_info (bool): Whether exception info is included
    """
    if not _CONFIGURED:
        configure_logging()
    return structlog.get_logger(name)
