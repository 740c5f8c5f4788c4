from __future__ import annotations

import logging

import structlog


def configure_logging(level: str = "INFO") -> None:
    """Console structlog output at ``level`` for every deploy-watch entry point."""
    numeric = getattr(logging, str(level or "INFO").upper(), logging.INFO)
    if not isinstance(numeric, int):
        numeric = logging.INFO

    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric),
        logger_factory=structlog.PrintLoggerFactory(),
        # Loggers resolve sys.stdout per call so redirected output is honoured.
        cache_logger_on_first_use=False,
    )

    # Webhook URLs and API tokens travel in request URLs/headers.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
