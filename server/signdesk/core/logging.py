import logging
import sys
from typing import Any

import structlog


def configure_logging(level: int = logging.INFO) -> None:
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
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )


def get_logger(*args: Any, **kwargs: Any) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(*args, **kwargs)


def bind_document_context(document_id: str, **extra: Any) -> None:
    """Attach the document id to every log line emitted by the current task."""
    structlog.contextvars.bind_contextvars(document_id=document_id, **extra)


def clear_document_context() -> None:
    structlog.contextvars.clear_contextvars()
