"""
Process-level crash handling.

Uncaught exceptions terminate the process immediately. Unhandled failures on
the event loop (exceptions nobody retrieved from a task or future) close the
listening socket first, let in-flight requests finish, then terminate.
"""

import asyncio
import logging
import os
import sys
import threading
from typing import Any, Awaitable, Callable, Optional

from utils.logging import get_logger

logger = get_logger(__name__)

UNCAUGHT_EXCEPTION_NOTICE = "Uncaught Exception occured! Shutting down..."
UNHANDLED_REJECTION_NOTICE = "Unhandled rejection occured! Shutting down..."

CloseCallback = Callable[[], Awaitable[Any]]


class FatalErrorPolicy:
    """Log an unrecoverable error, optionally drain the server, then exit.

    ``exit_func`` defaults to ``os._exit`` so nothing else runs once the
    policy has decided to terminate; tests pass a recorder instead.
    """

    def __init__(self, exit_func: Callable[[int], Any] = os._exit, exit_code: int = 1):
        self.exit_func = exit_func
        self.exit_code = exit_code
        self.triggered = False
        self.shutdown_task: Optional[asyncio.Task] = None

    def report(self, exc: BaseException, notice: str) -> None:
        self.triggered = True
        logger.critical(
            f"{type(exc).__name__}: {exc}",
            error_name=type(exc).__name__,
            error_message=str(exc),
        )
        logger.critical(notice)

    def _exit(self) -> None:
        for handler in logging.getLogger().handlers:
            handler.flush()
        self.exit_func(self.exit_code)

    def terminate(self, exc: BaseException, *, notice: str) -> None:
        """Exit right away, without closing anything."""
        self.report(exc, notice)
        self._exit()

    def shutdown(
        self,
        exc: BaseException,
        *,
        notice: str,
        close: CloseCallback,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> asyncio.Task:
        """Schedule ``close()`` on the loop and exit once it has returned."""
        self.report(exc, notice)
        loop = loop or asyncio.get_running_loop()
        self.shutdown_task = loop.create_task(self._close_then_exit(close), name="fatal-shutdown")
        return self.shutdown_task

    async def _close_then_exit(self, close: CloseCallback) -> None:
        try:
            await close()
        except Exception:
            logger.exception("Error while closing the server")
        finally:
            self._exit()


def install_uncaught_exception_hook(policy: FatalErrorPolicy) -> Callable[[], None]:
    """Route uncaught exceptions (main and worker threads) to ``policy.terminate``.

    Returns a callable restoring the previous hooks.
    """
    previous_hook = sys.excepthook
    previous_thread_hook = threading.excepthook

    def excepthook(exc_type, exc, tb) -> None:
        if issubclass(exc_type, KeyboardInterrupt):
            previous_hook(exc_type, exc, tb)
            return
        policy.terminate(exc if exc is not None else exc_type(), notice=UNCAUGHT_EXCEPTION_NOTICE)

    def thread_excepthook(args: threading.ExceptHookArgs) -> None:
        if issubclass(args.exc_type, SystemExit):
            return
        exc = args.exc_value if args.exc_value is not None else args.exc_type()
        policy.terminate(exc, notice=UNCAUGHT_EXCEPTION_NOTICE)

    sys.excepthook = excepthook
    threading.excepthook = thread_excepthook

    def restore() -> None:
        sys.excepthook = previous_hook
        threading.excepthook = previous_thread_hook

    return restore


def is_callback_error(context: dict) -> bool:
    """Whether a loop context reports an exception raised synchronously by a callback."""
    return "handle" in context and "future" not in context and "task" not in context


def install_unhandled_rejection_handler(
    loop: asyncio.AbstractEventLoop,
    policy: FatalErrorPolicy,
    close: CloseCallback,
) -> Callable[[], None]:
    """Shut down when the loop reports an exception nobody handled.

    A failed task or future nobody awaited is an unhandled rejection: the
    server is closed gracefully before exiting. An exception raised by a plain
    callback (``call_soon``, ``call_later``) is an uncaught exception and exits
    at once. Contexts without an exception go to the previous handler.
    Returns a callable restoring it.
    """
    previous_handler = loop.get_exception_handler()

    def delegate(context: dict) -> None:
        if previous_handler is not None:
            previous_handler(loop, context)
        else:
            loop.default_exception_handler(context)

    def handler(_loop: asyncio.AbstractEventLoop, context: dict) -> None:
        exc = context.get("exception")
        if exc is None:
            delegate(context)
            return
        if policy.triggered:
            logger.error(f"Unhandled error during shutdown: {type(exc).__name__}: {exc}")
            return
        if is_callback_error(context):
            policy.terminate(exc, notice=UNCAUGHT_EXCEPTION_NOTICE)
            return
        policy.shutdown(exc, notice=UNHANDLED_REJECTION_NOTICE, close=close, loop=loop)

    loop.set_exception_handler(handler)

    def restore() -> None:
        loop.set_exception_handler(previous_handler)

    return restore
