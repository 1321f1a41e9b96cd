"""
Utility functions for exception logging at the request-handling boundary.
"""

import logging


def _safe_str(obj) -> str:
    """
    Safely convert an object to string, handling cases where __str__ or __repr__ might fail.

    Args:
        obj: The object to convert to string

    Returns:
        A string representation of the object, falling back to safe alternatives
    """
    try:
        return str(obj)
    except Exception:
        try:
            return repr(obj)
        except Exception:
            return f"<{type(obj).__name__} object (string conversion failed)>"


def _exception_chain(exception: BaseException) -> list:
    """Collect the explicit ``raise ... from`` chain, outermost first."""
    chain = []
    seen = set()
    current = exception
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        chain.append(current)
        current = current.__cause__
    return chain


def format_exception_message(exception: BaseException) -> str:
    """
    Format an exception message including its causes, e.g.
    ``UpstreamError: Cannot reach upstream (caused by ConnectError: refused)``.
    This function never raises.

    Args:
        exception: The exception to format

    Returns:
        A formatted string describing the exception
    """
    if exception is None:
        return "None"
    try:
        parts = [
            f"{type(exc).__name__}: {_safe_str(exc)}"
            for exc in _exception_chain(exception)
        ]
        head, causes = parts[0], parts[1:]
        if causes:
            return f"{head} (caused by {'; '.join(causes)})"
        return head
    except Exception:
        return f"<{type(exception).__name__} (formatting failed)>"


def log_exception_with_details(
    logger: logging.Logger,
    prefix: str,
    exception: BaseException,
    level: int = logging.ERROR,
    with_traceback: bool = True,
) -> None:
    """
    Log an exception with its cause chain. Designed to never raise itself,
    so it is safe to call from the last-resort error boundary.

    Args:
        logger: The logger instance to use
        prefix: Prefix for the log message (e.g., "[Proxy]", "[Envelope]")
        exception: The exception to log
        level: The logging level to use (default: ERROR)
        with_traceback: Attach the traceback (disable for expected failures)
    """
    message = f"{prefix} {format_exception_message(exception)}"
    try:
        logger.log(
            level,
            message,
            exc_info=exception if with_traceback and exception is not None else False,
        )
    except Exception:
        try:
            logger.log(level, message)
        except Exception:
            # Logging itself is broken; nothing left to report to
            pass
