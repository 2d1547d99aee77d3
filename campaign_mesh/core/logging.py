from __future__ import annotations

import logging
from typing import Any

import structlog


def configure_logging(level: str = "INFO") -> None:
    """Configure structlog and standard logging for the whole service."""
    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, level.upper(), logging.INFO),
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(*, name: str | None = None, **kwargs: Any) -> structlog.stdlib.BoundLogger:
    logger = structlog.get_logger(name)
    if kwargs:
        return logger.bind(**kwargs)
    return logger


def bind_campaign_context(*, campaign_id: str | None = None, plan_id: str | None = None) -> None:
    """Attach campaign/plan identifiers to every log line emitted in the current context."""
    values = {key: value for key, value in {"campaign_id": campaign_id, "plan_id": plan_id}.items() if value}
    if values:
        structlog.contextvars.bind_contextvars(**values)


def clear_campaign_context() -> None:
    structlog.contextvars.unbind_contextvars("campaign_id", "plan_id")
