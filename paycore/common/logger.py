import logging
import os

import structlog


def configure_logging():
    '''
    Console rendering for local runs, JSON lines when LOG_JSON=true so the
    payment and webhook logs can be shipped as-is.
    '''
    renderer = (
        structlog.processors.JSONRenderer()
        if os.getenv("LOG_JSON", "false").lower() == "true"
        else structlog.dev.ConsoleRenderer()
    )
    level = getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,  # request_id / correlation_id
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
    )
