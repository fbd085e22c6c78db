"""Tests for executor.py module."""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from executor import InlineExecutor, build_executor


def test_inline_executor_runs_in_calling_thread():
    executor = InlineExecutor()

    future = executor.submit(threading.current_thread)

    assert future.done()
    assert future.result() is threading.current_thread()


def test_inline_executor_captures_exceptions():
    def boom():
        raise ValueError("boom")

    future = InlineExecutor().submit(boom)

    with pytest.raises(ValueError, match="boom"):
        future.result()


def test_inline_executor_rejects_after_shutdown():
    executor = InlineExecutor()
    executor.shutdown()

    with pytest.raises(RuntimeError):
        executor.submit(lambda: None)


def test_build_executor_zero_threads_is_inline():
    assert isinstance(build_executor(0), InlineExecutor)


def test_build_executor_uses_thread_pool():
    executor = build_executor(2)
    try:
        assert isinstance(executor, ThreadPoolExecutor)
        assert executor.submit(lambda: 41 + 1).result(timeout=5) == 42
    finally:
        executor.shutdown(wait=True)


def test_build_executor_rejects_negative():
    with pytest.raises(ValueError):
        build_executor(-1)
