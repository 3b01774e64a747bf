import logging
import sys

import structlog

from .config import settings


def setup_logging(level: str | None = None) -> None:
    """JSON lines on stdout; request context comes from structlog contextvars."""
    resolved_level = getattr(logging, (level or settings.LOG_LEVEL or "INFO").upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=resolved_level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    # request_finished already covers what the access log would print.
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
