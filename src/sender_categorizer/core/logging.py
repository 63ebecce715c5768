"""structlog setup and the per-run correlation ID.

Every categorization run gets a run_id (a UUID string) stored in a
ContextVar. The add_run_id processor stamps it onto each event, and the same
ID is written to llm_request_log rows, so one page of work can be followed
from discovery through the Claude calls to persistence.
"""

import logging
import sys
from contextvars import ContextVar
from typing import Any

import structlog

_current_run: ContextVar[str | None] = ContextVar("run_id", default=None)


def set_run_id(run_id: str | None) -> None:
    """Bind run_id to the current context; None clears it."""
    _current_run.set(run_id)


def get_run_id() -> str | None:
    return _current_run.get()


def add_run_id(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Processor that copies the active run_id into the event, if any."""
    run_id = _current_run.get()
    if run_id is not None:
        event_dict["run_id"] = run_id
    return event_dict


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Route structlog through stdlib logging on stdout.

    Args:
        log_level: Name of a stdlib level, case-insensitive
        json_output: JSON lines when True, coloured console output otherwise
    """
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    renderer: list[structlog.types.Processor]
    if json_output:
        renderer = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        renderer = [structlog.dev.ConsoleRenderer(colors=True)]

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            add_run_id,
            *renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
