"""Structured logging setup shared by the entry-point scripts."""
import logging
import sys

import structlog

from docqa import config


def configure_logging(level: str = None, json_output: bool = True) -> None:
    """Configure structlog and the stdlib root logger once for the process.

    Args:
        level: Log level name (default from config)
        json_output: Render JSON lines; otherwise a human-friendly console format
    """
    level_name = (level or config.LOG_LEVEL).upper()
    numeric_level = getattr(logging, level_name, logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=numeric_level,
        force=True,
    )

    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=False)
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Model loading libraries are chatty at INFO
    for noisy in ("sentence_transformers", "transformers", "urllib3", "filelock"):
        logging.getLogger(noisy).setLevel(max(numeric_level, logging.WARNING))
