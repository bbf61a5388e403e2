"""
Centralized logging configuration.

Configure once at the entry point (scripts/ask_wallet.py), not per module.
"""

import logging
import os
import sys

import structlog


def configure_logging(level: int | str | None = None, json_logs: bool = False) -> None:
    """
    Configure stdlib logging and structlog for the application.

    Idempotent: the stdlib root logger is only configured when it has no
    handlers yet. The level defaults to the LOG_LEVEL environment variable.

    Args:
        level: Log level name or number (default: LOG_LEVEL or INFO)
        json_logs: Render structlog events as JSON lines (for log analysis)
    """
    if level is None:
        level = os.getenv("LOG_LEVEL", "INFO")
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    root_logger = logging.getLogger()
    if not root_logger.handlers:
        logging.basicConfig(
            level=level,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            handlers=[logging.StreamHandler(sys.stdout)],
        )

    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Reduce noise
    logging.getLogger("sentence_transformers").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
