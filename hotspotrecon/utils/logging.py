"""
Structured logging for hotspotrecon (structlog on top of stdlib logging).

Output goes to stderr so command output on stdout (CSV exports) stays
clean. Every event carries:

- a correlation id, so one matching pass or payout run can be followed
  across services and worker threads
- the app name and version
- redacted Daraja credentials and masked subscriber phone numbers
"""

import logging
import sys
import time
import uuid
from collections.abc import Generator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, cast

import structlog
from structlog.types import EventDict, Processor

_correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)

SENSITIVE_KEYS = frozenset(
    {
        "password",
        "api_key",
        "secret",
        "token",
        "consumer_secret",
        "passkey",
        "security_credential",
    }
)

# Subscriber identifiers: only the last 3 digits survive.
MASKED_KEYS = frozenset({"phone", "msisdn", "mpesa_number", "destination"})


# ============================================================================
# Correlation ids
# ============================================================================


def set_correlation_id(correlation_id: str | None = None) -> str:
    """Set the correlation id of the current context (a new UUID if None)."""
    correlation_id = correlation_id or str(uuid.uuid4())
    _correlation_id_var.set(correlation_id)
    return correlation_id


def get_correlation_id() -> str | None:
    return _correlation_id_var.get()


def clear_correlation_id() -> None:
    _correlation_id_var.set(None)


@contextmanager
def correlation_scope(correlation_id: str | None = None) -> Generator[str, None, None]:
    """Run a block under its own correlation id, restoring the previous one after.

    Usage:
        with correlation_scope() as run_id:
            logger.info("match_pass_started")  # carries run_id
    """
    token = _correlation_id_var.set(correlation_id or str(uuid.uuid4()))
    try:
        yield cast(str, _correlation_id_var.get())
    finally:
        _correlation_id_var.reset(token)


# ============================================================================
# Processors
# ============================================================================


def add_correlation_id(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict.setdefault("correlation_id", get_correlation_id())
    return event_dict


def mask_phone(value: Any) -> str:
    """Mask all but the last 3 characters of a phone-like value."""
    text = str(value)
    if len(text) <= 3:
        return "***"
    return "*" * (len(text) - 3) + text[-3:]


def filter_sensitive_data(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Redact credentials and mask subscriber phone numbers."""
    for key in SENSITIVE_KEYS & event_dict.keys():
        event_dict[key] = "***REDACTED***"

    for key in MASKED_KEYS & event_dict.keys():
        if event_dict[key] is not None:
            event_dict[key] = mask_phone(event_dict[key])

    return event_dict


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    from hotspotrecon import __version__

    event_dict["app"] = "hotspotrecon"
    event_dict["version"] = __version__
    return event_dict


def _renderer(json_logs: bool, dev_mode: bool) -> list[Processor]:
    if json_logs:
        return [structlog.processors.dict_tracebacks, structlog.processors.JSONRenderer()]
    if dev_mode:
        return [structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())]
    return [structlog.processors.KeyValueRenderer(key_order=["timestamp", "level", "event"])]


# ============================================================================
# Configuration
# ============================================================================


def configure_logging(
    log_level: str = "INFO",
    json_logs: bool = False,
    dev_mode: bool = True,
) -> None:
    """
    Configure structlog and the stdlib root logger.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_logs: One JSON object per line, for log aggregation
        dev_mode: Console renderer when not emitting JSON; key=value otherwise
    """
    processors: list[Processor] = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        add_correlation_id,
        add_app_context,
        filter_sensitive_data,
        *_renderer(json_logs, dev_mode),
    ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, log_level.upper()),
    )
    logging.getLogger().setLevel(getattr(logging, log_level.upper()))


def configure_from_settings(settings) -> None:
    """Configure logging from a :class:`~hotspotrecon.utils.config.Settings` instance."""
    configure_logging(
        log_level="DEBUG" if settings.debug else settings.log_level,
        json_logs=settings.json_logs,
        dev_mode=not settings.json_logs,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Usage:
        logger = get_logger(__name__)
        logger.info("commission_recorded", merchant_id="m-1", amount="100.00")
    """
    return cast(structlog.stdlib.BoundLogger, structlog.get_logger(name))


class LogPerformance:
    """
    Time a block and log ``<operation>_completed`` or ``<operation>_failed``.

    Extra keyword fields are attached to every event.

    Usage:
        with LogPerformance("match_pass", logger, merchant_id="m-1"):
            engine.find_candidates(providers, systems)
    """

    def __init__(self, operation: str, logger: structlog.stdlib.BoundLogger, **fields: Any):
        self.operation = operation
        self.logger = logger
        self.fields = fields
        self.start_time: float = 0

    def __enter__(self) -> "LogPerformance":
        self.start_time = time.perf_counter()
        self.logger.debug(f"{self.operation}_started", **self.fields)
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        fields = {
            "operation": self.operation,
            "duration_ms": round((time.perf_counter() - self.start_time) * 1000, 2),
            **self.fields,
        }
        if exc_type is None:
            self.logger.info(f"{self.operation}_completed", **fields)
        else:
            self.logger.error(
                f"{self.operation}_failed",
                error=str(exc_val),
                error_type=exc_type.__name__,
                **fields,
            )


configure_logging()
