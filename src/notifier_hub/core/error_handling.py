"""Exception logging shared by the stores, the hub and the platform adapters.

Everything funnels into `log_exception`, which renders an optional context
mapping as ``message | key=value, ...`` with the keys sorted, so log lines
from different sessions can be grepped and compared.
"""

from __future__ import annotations

import asyncio
import logging
import sys
import threading
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping
    from types import TracebackType

    ExcInfo = tuple[type[BaseException], BaseException, TracebackType | None]

LOGGER = logging.getLogger(__name__)
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
# Libraries that log every heartbeat or request at INFO
CHATTY_LOGGERS = ("discord.gateway", "discord.client", "httpx", "aiohttp.access")

# Errors a listener, handler or adapter session may raise without taking
# its caller down. Cancellation is never part of this.
COMMON_HANDLER_EXCEPTIONS = (
    AssertionError,
    AttributeError,
    LookupError,
    OSError,
    RuntimeError,
    TimeoutError,
    TypeError,
    ValueError,
)


def configure_logging(level: str | int = logging.INFO) -> None:
    """Set up root logging for a session process."""
    logging.basicConfig(level=level, format=LOG_FORMAT)
    for name in CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def format_context(context: Mapping[str, object]) -> str:
    return ", ".join(f"{key}={context[key]!r}" for key in sorted(context))


def _with_context(message: str, context: Mapping[str, object] | None) -> str:
    if not context:
        return message
    return f"{message} | {format_context(context)}"


def log_exception(
    *,
    logger: logging.Logger,
    message: str,
    error: BaseException | ExcInfo | None,
    context: Mapping[str, object] | None = None,
) -> None:
    """Log `message` at ERROR with the traceback of `error`.

    `error` may also be an ``exc_info`` triple, or None when the failure
    carries no exception object.
    """
    logger.error("%s", _with_context(message, context), exc_info=error)


def call_listener(
    listener: Callable[..., object],
    *args: object,
    logger: logging.Logger,
    message: str,
    context: Mapping[str, object] | None = None,
) -> None:
    """Invoke a subscriber callback, logging instead of propagating failures.

    One misbehaving subscriber must not stop delivery to the others.
    """
    try:
        listener(*args)
    except COMMON_HANDLER_EXCEPTIONS as exc:
        log_exception(logger=logger, message=message, error=exc, context=context)


def log_discord_event_error(
    *,
    logger: logging.Logger,
    event_name: str,
    args: tuple[object, ...],
    kwargs: Mapping[str, object],
) -> None:
    """Log the exception a discord.py event handler is unwinding with."""
    log_exception(
        logger=logger,
        message="Unhandled Discord event error",
        error=sys.exc_info()[1],
        context={
            "event": event_name,
            "args_count": len(args),
            "kwargs_keys": tuple(sorted(kwargs)),
        },
    )


def _describe_loop_value(value: object) -> object:
    # Task and future reprs embed whole coroutine frames; the name is enough
    if isinstance(value, asyncio.Task):
        return value.get_name()
    if isinstance(value, asyncio.Future):
        return type(value).__name__
    return value


def register_asyncio_exception_handler(
    loop: asyncio.AbstractEventLoop,
    *,
    logger: logging.Logger | None = None,
) -> None:
    """Route errors the event loop cannot hand to anyone into the log."""
    target = logger or LOGGER

    def _handle(_loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
        error = context.get("exception")
        details = {
            key: _describe_loop_value(value)
            for key, value in context.items()
            if key != "exception"
        }
        log_exception(
            logger=target,
            message=str(context.get("message") or "Unhandled asyncio exception"),
            error=error if isinstance(error, BaseException) else None,
            context=details,
        )

    loop.set_exception_handler(_handle)


def install_global_exception_hooks(
    *,
    logger: logging.Logger | None = None,
) -> Callable[[], None]:
    """Log uncaught exceptions from the main thread and worker threads.

    Ctrl+C keeps its default behaviour. Returns a callable that puts the
    previous hooks back.
    """
    target = logger or LOGGER
    previous_excepthook = sys.excepthook
    previous_thread_hook = threading.excepthook

    def _excepthook(
        exc_type: type[BaseException],
        exc_value: BaseException,
        exc_traceback: TracebackType | None,
    ) -> None:
        if issubclass(exc_type, KeyboardInterrupt):
            previous_excepthook(exc_type, exc_value, exc_traceback)
            return
        log_exception(
            logger=target,
            message="Unhandled exception at process boundary",
            error=(exc_type, exc_value, exc_traceback),
        )

    def _thread_excepthook(args: threading.ExceptHookArgs) -> None:
        if issubclass(args.exc_type, KeyboardInterrupt):
            previous_thread_hook(args)
            return
        error = None
        if isinstance(args.exc_value, BaseException):
            error = (args.exc_type, args.exc_value, args.exc_traceback)
        log_exception(
            logger=target,
            message="Unhandled thread exception",
            error=error,
            context={"thread": args.thread.name if args.thread else "unknown"},
        )

    def _restore() -> None:
        sys.excepthook = previous_excepthook
        threading.excepthook = previous_thread_hook

    sys.excepthook = _excepthook
    threading.excepthook = _thread_excepthook
    return _restore
