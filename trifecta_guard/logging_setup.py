"""structlog configuration for host processes."""

import logging

import structlog


def configure_logging(level: str = "INFO", json_output: bool = False) -> None:
    """Configure structlog for the orchestrator process.

    Args:
        level: Minimum log level name (DEBUG, INFO, WARNING, ...)
        json_output: Render JSON lines instead of console output
    """
    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )
