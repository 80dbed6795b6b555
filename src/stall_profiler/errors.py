"""Out-of-band reporting for errors nobody up the stack can handle."""

from __future__ import annotations

from collections.abc import Callable

import structlog

log = structlog.get_logger()

ErrorHandler = Callable[[BaseException], None]


def _log_error(err: BaseException) -> None:
    log.error(
        "unexpected_error",
        error=str(err),
        error_type=type(err).__name__,
        exc_info=err,
    )


_handler: ErrorHandler = _log_error


def set_unexpected_error_handler(handler: ErrorHandler | None) -> ErrorHandler:
    """Install a handler for unexpected errors, returning the previous one.

    Passing None restores the default handler, which logs the error.
    """
    global _handler
    previous = _handler
    _handler = handler or _log_error
    return previous


def on_unexpected_error(err: BaseException) -> None:
    """Report an error that is not fatal but should not go unnoticed.

    Never raises: a failing handler is logged and otherwise ignored.
    """
    try:
        _handler(err)
    except Exception as e:
        log.warning("unexpected_error_handler_failed", error=str(e))
