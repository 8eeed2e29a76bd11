"""
Helpers for logging upstream failures, which can arrive wrapped in
exception groups raised by anyio task groups.
"""

import logging
from typing import List, Optional


def _safe_str(obj) -> str:
    """Convert an object to a string without ever raising."""
    try:
        text = str(obj)
    except Exception:
        try:
            return repr(obj)
        except Exception:
            return f"<{type(obj).__name__} (string conversion failed)>"
    if not text and isinstance(obj, BaseException):
        return type(obj).__name__
    return text


def _leaf_exceptions(exception: BaseException) -> List[BaseException]:
    """Flatten nested exception groups into their leaf exceptions."""
    sub_exceptions = getattr(exception, "exceptions", None)
    if not sub_exceptions:
        return [exception]
    leaves: List[BaseException] = []
    try:
        for sub_exc in sub_exceptions:
            leaves.extend(_leaf_exceptions(sub_exc))
    except Exception:
        return [exception]
    return leaves


def format_exception_message(exception: Optional[BaseException]) -> str:
    """
    Format an exception as ``Type: message``; exception groups list their
    leaves. Never raises.
    """
    if exception is None:
        return "None"
    try:
        leaves = _leaf_exceptions(exception)
        if len(leaves) == 1 and leaves[0] is exception:
            return f"{type(exception).__name__}: {_safe_str(exception)}"
        formatted = "; ".join(
            f"{type(leaf).__name__}: {_safe_str(leaf)}" for leaf in leaves
        )
        return f"{_safe_str(exception)} (Sub-exceptions: {formatted})"
    except Exception:
        return f"<{type(exception).__name__} (formatting failed)>"


def log_exception_with_details(
    logger: logging.Logger,
    prefix: str,
    exception: Optional[BaseException],
    level: int = logging.ERROR,
    include_traceback: bool = False,
) -> None:
    """
    Log an exception in one line, plus one line per sub-exception for
    exception groups. Logging failures are swallowed so a broken exception
    object can never take the request handler down with it.
    """
    try:
        message = format_exception_message(exception)
        exc_info = exception if include_traceback and exception is not None else None
        logger.log(level, f"{prefix} {message}", exc_info=exc_info)
        if exception is None:
            return
        leaves = _leaf_exceptions(exception)
        if len(leaves) > 1:
            for i, leaf in enumerate(leaves):
                logger.log(
                    level,
                    f"{prefix} Sub-exception {i + 1}: {type(leaf).__name__}: {_safe_str(leaf)}",
                )
    except Exception:
        try:
            logger.log(logging.ERROR, f"{prefix} Exception logging failed")
        except Exception:
            pass
