from __future__ import annotations

import ast
import asyncio
import logging
import sys
import threading
from pathlib import Path

import pytest

from notifier_hub.core.error_handling import (
    call_listener,
    install_global_exception_hooks,
    log_discord_event_error,
    log_exception,
    register_asyncio_exception_handler,
)

SRC_ROOT = Path(__file__).resolve().parents[1] / "src"
BROAD_EXCEPTION_IDENTIFIERS = {"Exception", "BaseException"}
DIRECT_EXCEPTION_LOGGING = ("logger.exception(", "LOGGER.exception(", "logging.exception(")

_TEST_LOGGER = logging.getLogger("tests.error_handling")


def _raise_runtime_error() -> None:
    msg = "listener broke"
    raise RuntimeError(msg)


def test_log_exception_renders_sorted_context(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.ERROR, logger=_TEST_LOGGER.name):
        log_exception(
            logger=_TEST_LOGGER,
            message="Session failed",
            error=ValueError("boom"),
            context={"platform": "twitch", "attempt": 2},
        )

    record = caplog.records[-1]
    assert record.getMessage() == "Session failed | attempt=2, platform='twitch'"
    assert record.exc_info is not None
    assert record.exc_info[0] is ValueError


def test_call_listener_logs_and_swallows_common_errors(
    caplog: pytest.LogCaptureFixture,
) -> None:
    calls: list[int] = []

    with caplog.at_level(logging.ERROR, logger=_TEST_LOGGER.name):
        call_listener(
            _raise_runtime_error,
            logger=_TEST_LOGGER,
            message="Listener failed",
        )
        call_listener(calls.append, 1, logger=_TEST_LOGGER, message="unused")

    assert calls == [1]
    assert "Listener failed" in caplog.text


def test_call_listener_propagates_cancellation() -> None:
    def _cancelled() -> None:
        raise asyncio.CancelledError

    with pytest.raises(asyncio.CancelledError):
        call_listener(_cancelled, logger=_TEST_LOGGER, message="unused")


def test_discord_event_errors_include_event_metadata(
    caplog: pytest.LogCaptureFixture,
) -> None:
    with caplog.at_level(logging.ERROR, logger=_TEST_LOGGER.name):
        try:
            _raise_runtime_error()
        except RuntimeError:
            log_discord_event_error(
                logger=_TEST_LOGGER,
                event_name="on_message",
                args=(object(),),
                kwargs={"b": 1, "a": 2},
            )

    record = caplog.records[-1]
    assert "event='on_message'" in record.getMessage()
    assert "kwargs_keys=('a', 'b')" in record.getMessage()
    assert record.exc_info is not None


def test_asyncio_handler_logs_loop_errors(caplog: pytest.LogCaptureFixture) -> None:
    loop = asyncio.new_event_loop()
    try:
        register_asyncio_exception_handler(loop, logger=_TEST_LOGGER)
        with caplog.at_level(logging.ERROR, logger=_TEST_LOGGER.name):
            loop.call_exception_handler(
                {"message": "Task exception was never retrieved", "exception": OSError()},
            )
            loop.call_exception_handler({"message": "Unclosed transport"})
    finally:
        loop.close()

    messages = [record.getMessage() for record in caplog.records]
    assert messages == [
        "Task exception was never retrieved | message='Task exception was never retrieved'",
        "Unclosed transport | message='Unclosed transport'",
    ]


def test_asyncio_handler_names_tasks_instead_of_dumping_them(
    caplog: pytest.LogCaptureFixture,
) -> None:
    loop = asyncio.new_event_loop()
    try:
        register_asyncio_exception_handler(loop, logger=_TEST_LOGGER)
        task = loop.create_task(asyncio.sleep(0), name="hub-leadership-a")
        with caplog.at_level(logging.ERROR, logger=_TEST_LOGGER.name):
            loop.call_exception_handler(
                {"message": "Task was destroyed", "task": task, "exception": ValueError()},
            )
        loop.run_until_complete(task)
    finally:
        loop.close()

    record = caplog.records[-1]
    assert record.getMessage() == (
        "Task was destroyed | message='Task was destroyed', task='hub-leadership-a'"
    )
    assert record.exc_info is not None


def test_global_hooks_log_uncaught_errors_and_can_be_restored(
    caplog: pytest.LogCaptureFixture,
) -> None:
    original_hook = sys.excepthook
    original_thread_hook = threading.excepthook
    restore = install_global_exception_hooks(logger=_TEST_LOGGER)
    try:
        with caplog.at_level(logging.ERROR, logger=_TEST_LOGGER.name):
            try:
                _raise_runtime_error()
            except RuntimeError as exc:
                sys.excepthook(RuntimeError, exc, exc.__traceback__)
            worker = threading.Thread(target=_raise_runtime_error, name="storage-poller")
            worker.start()
            worker.join()
    finally:
        restore()

    messages = [record.getMessage() for record in caplog.records]
    assert messages == [
        "Unhandled exception at process boundary",
        "Unhandled thread exception | thread='storage-poller'",
    ]
    assert all(record.exc_info is not None for record in caplog.records)
    assert sys.excepthook is original_hook
    assert threading.excepthook is original_thread_hook


def _src_files() -> list[Path]:
    return sorted(SRC_ROOT.rglob("*.py"))


def test_src_logs_exceptions_through_log_exception() -> None:
    violations = [
        f"{path.relative_to(SRC_ROOT).as_posix()}: {pattern}"
        for path in _src_files()
        for pattern in DIRECT_EXCEPTION_LOGGING
        if pattern in path.read_text(encoding="utf-8")
    ]

    assert not violations, "\n".join(violations)


def test_src_has_no_bare_or_broad_except_clauses() -> None:
    violations: list[str] = []

    for path in _src_files():
        tree = ast.parse(path.read_text(encoding="utf-8"))
        relative_path = path.relative_to(SRC_ROOT).as_posix()
        for node in ast.walk(tree):
            if not isinstance(node, ast.ExceptHandler):
                continue
            if node.type is None:
                violations.append(f"{relative_path}:{node.lineno}: bare except")
            elif (
                isinstance(node.type, ast.Name)
                and node.type.id in BROAD_EXCEPTION_IDENTIFIERS
            ):
                violations.append(
                    f"{relative_path}:{node.lineno}: except {node.type.id}",
                )

    assert not violations, "\n".join(violations)
