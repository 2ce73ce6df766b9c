"""
Structured logging for the API and the arq worker.

Every line is a JSON object carrying the process (``api`` or ``worker``), the
logger name and an ISO timestamp. Values bound with ``job_context`` ride along
on every line logged while a job runs.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog
from structlog.stdlib import LoggerFactory

_NOISY_LOGGERS = ("httpx", "httpcore", "uvicorn.access", "arq")
_SECRET_KEYS = frozenset({"token", "magic_token", "access_token", "refresh_token"})


def setup_logging(log_level: str = "INFO", process: str = "api") -> None:
    """Configure structlog over stdlib logging with JSON output."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            _drop_secrets,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.contextvars.bind_contextvars(process=process)


def _drop_secrets(logger, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Raw bearer material is never emitted; token ids are logged instead."""
    for key in _SECRET_KEYS & event_dict.keys():
        event_dict[key] = "[redacted]"
    return event_dict


def get_logger(name: str = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


@contextmanager
def job_context(ctx: dict[str, Any], **fields: Any) -> Iterator[None]:
    """
    Bind arq's job id and attempt number, plus any extra fields, for the
    duration of a job.
    """
    bound = {"job_id": ctx.get("job_id"), "job_try": ctx.get("job_try"), **fields}
    with structlog.contextvars.bound_contextvars(**bound):
        yield


def log_health_check(component: str, healthy: bool, latency_ms: float, error: str = None):
    logger = get_logger("health")
    fields = {"component": component, "healthy": healthy, "latency_ms": latency_ms}
    if error:
        fields["error"] = error

    if healthy:
        logger.info("Readiness check passed", **fields)
    else:
        logger.error("Readiness check failed", **fields)


def log_request(method: str, path: str, status_code: int, duration_ms: float, user_id: str = None):
    """One line per HTTP request; 4xx/5xx are logged at warning."""
    logger = get_logger("http")
    fields = {
        "method": method,
        "path": path,
        "status_code": status_code,
        "duration_ms": duration_ms,
    }
    if user_id:
        fields["user_id"] = user_id

    if status_code >= 400:
        logger.warning("HTTP request failed", **fields)
    else:
        logger.info("HTTP request completed", **fields)
