"""Error-handling helpers used at the coordinator's isolation boundaries."""

import logging
from typing import Any, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def log_and_ignore(
    error: Exception,
    message: str,
    *,
    logger_instance: Optional[logging.Logger] = None,
    level: int = logging.WARNING,
) -> None:
    """Log a non-fatal error without re-raising it."""
    log = logger_instance or logger
    log.log(level, f"{message}: {error}")


def safe_call(
    func: Callable[..., T],
    *args,
    default: Optional[T] = None,
    error_message: str = "Error in function call",
    logger_instance: Optional[logging.Logger] = None,
    **kwargs,
) -> Optional[T]:
    """Call func, returning `default` (and logging) if it raises."""
    try:
        return func(*args, **kwargs)
    except Exception as e:
        (logger_instance or logger).error(f"{error_message}: {e}")
        return default


class ErrorContext:
    """
    Context manager that logs and optionally suppresses an exception.

    Usage:
        with ErrorContext(f"polling {key}", raise_on_error=False) as ctx:
            poll(workspace)
        if ctx.error:
            report.errors.append(...)
    """

    def __init__(
        self,
        operation: str,
        *,
        raise_on_error: bool = True,
        logger_instance: Optional[logging.Logger] = None,
        log_level: int = logging.ERROR,
    ):
        self.operation = operation
        self.raise_on_error = raise_on_error
        self.logger = logger_instance or logger
        self.log_level = log_level
        self.error: Optional[BaseException] = None

    def __enter__(self) -> "ErrorContext":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        if exc_type is None or not issubclass(exc_type, Exception):
            return False
        self.error = exc_val
        self.logger.log(self.log_level, f"Error during {self.operation}: {exc_val}")
        return not self.raise_on_error
