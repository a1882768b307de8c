"""structlog setup for the ingestion service and its scripts.

Log lines carry the service name and a ``pipeline`` field derived from the
bound context: ``backfill`` once an ``operation_id`` is bound, ``events``
otherwise. Slack tokens are masked before rendering.
"""

import logging
import re
import sys
from typing import Any, Final

import structlog
from structlog.types import EventDict, Processor

SERVICE_NAME: Final[str] = "slack_ingest"
QUIET_LOGGERS: Final[tuple[str, ...]] = ("aiohttp", "slack_sdk", "asyncio", "psycopg2")
_SLACK_TOKEN_RE: Final[re.Pattern[str]] = re.compile(r"\bxox[abposr]-[A-Za-z0-9-]+")


def add_service_context(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    event_dict["service"] = SERVICE_NAME
    event_dict.setdefault(
        "pipeline", "backfill" if "operation_id" in event_dict else "events"
    )
    return event_dict


def mask_slack_tokens(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Replace anything shaped like a Slack token in string values."""
    for key, value in event_dict.items():
        if isinstance(value, str) and "xox" in value:
            event_dict[key] = _SLACK_TOKEN_RE.sub("xox*-***", value)
    return event_dict


def _shared_processors() -> list[Processor]:
    return [
        structlog.stdlib.filter_by_level,
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        add_service_context,
        mask_slack_tokens,
    ]


def setup_logging(
    log_level: str = "INFO",
    json_logs: bool = False,
    verbose: bool = False,
) -> None:
    """Configure structlog over the stdlib root logger.

    ``verbose`` keeps HTTP client and driver loggers at the requested level.
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=numeric_level)

    if not verbose:
        for name in QUIET_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    processors = _shared_processors()
    if json_logs:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)  # type: ignore[no-any-return]


def bind_context(**kwargs: Any) -> None:
    """Bind keys for subsequent log lines in the current task.

    Context variables are task-local under asyncio, so a backfill task can bind
    its operation id without leaking it into concurrent webhook processing.
    """
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()
