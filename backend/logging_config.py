"""
Structured Logging
==================
One structlog configuration for the whole process.

Every module binds its own component name:

    logger = structlog.get_logger().bind(component="gateway")

Request- and webhook-scoped values (correlation_id, provider) are bound
through structlog.contextvars and merged into every line.
"""

import logging

import structlog


def configure_logging(level: str = "INFO", json_output: bool = True) -> None:
    """Configure structlog processors and the level filter."""
    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
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
