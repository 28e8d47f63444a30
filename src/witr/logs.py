"""structlog configuration for witr."""

import logging
import sys

import structlog


def configure_logging(verbose: bool = False) -> None:
    """Route structlog output to stderr, WARNING and up unless verbose."""
    level = logging.DEBUG if verbose else logging.WARNING
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="%H:%M:%S"),
            structlog.dev.ConsoleRenderer(colors=False),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )


def ensure_configured() -> None:
    """Install the quiet stderr default unless the host application configured structlog."""
    if not structlog.is_configured():
        configure_logging()
