import logging
import time
from typing import Any

from app.core.config import LOG_LEVEL

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
SLOW_OPERATION_MS = 1000

log = logging.getLogger("app.timing")


def configure_logging(level: str = LOG_LEVEL) -> None:
    """Configures the root logger once for the whole process."""
    logging.basicConfig(level=level, format=LOG_FORMAT)
    # Tortoise is chatty at DEBUG
    logging.getLogger("tortoise").setLevel(logging.INFO)


def _format_context(context: dict[str, Any]) -> str:
    return " ".join(f"{key}={value}" for key, value in context.items())


def elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


def log_timing(operation: str, started: float, **context: Any) -> int:
    """Logs the completion of an operation started at `started` (perf_counter)."""
    duration = elapsed_ms(started)
    log.info(f"Request completed operation={operation} duration_ms={duration} {_format_context(context)}".rstrip())
    if duration > SLOW_OPERATION_MS:
        log.warning(f"Slow operation detected operation={operation} duration_ms={duration}")
    return duration


def log_transaction(event: str, duration_ms: int | None = None, **context: Any) -> None:
    """Transaction lifecycle events: start, commit, rollback."""
    message = f"Transaction {event}"
    if duration_ms is None:
        log.debug(f"{message} {_format_context(context)}".rstrip())
    else:
        log.info(f"{message} duration_ms={duration_ms} {_format_context(context)}".rstrip())
