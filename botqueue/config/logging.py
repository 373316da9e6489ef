import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog

from .settings import settings


def add_service_name(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Tag every entry with the service name so bot and worker logs can be split."""
    event_dict.setdefault("service", settings.app_name)
    return event_dict


def setup_logging() -> None:
    """Configure structlog for the API process, the workers and the CLI."""
    level = getattr(logging, settings.log_level)

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        add_service_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
    ]
    if settings.debug:
        processors.append(
            structlog.processors.CallsiteParameterAdder(
                parameters=[structlog.processors.CallsiteParameter.FUNC_NAME]
            )
        )
    processors.append(structlog.processors.format_exc_info)
    processors.append(
        structlog.dev.ConsoleRenderer()
        if settings.debug
        else structlog.processors.JSONRenderer()
    )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.WriteLoggerFactory(),
        cache_logger_on_first_use=not settings.debug,
    )


def get_logger(name: str = __name__) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


def bind_log_context(**context: Any) -> None:
    """Replace the log context bound to the current task."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(**context)


@contextmanager
def job_log_context(
    queue: str, worker_id: str, job_id: int, job_type: str, attempt: int
) -> Iterator[None]:
    """
    Bind the identity of a claimed job for the duration of its run.

    Anything a handler logs while the job runs carries these keys. The
    previous context is restored on exit.
    """
    with structlog.contextvars.bound_contextvars(
        queue=queue,
        worker_id=worker_id,
        job_id=job_id,
        job_type=job_type,
        attempt=attempt,
    ):
        yield
