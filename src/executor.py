"""Task execution module.

The planner submits its broker calls to an injected executor so the
concurrency model is a configuration choice. Both options are standard
concurrent.futures executors.
"""

import logging
import threading
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from typing import Any, Callable

logger = logging.getLogger(__name__)


class InlineExecutor(Executor):
    """Executor that runs each task in the submitting thread.

    The returned Future is already resolved, so callers can treat it the same
    way as one coming from a thread pool.
    """

    def __init__(self) -> None:
        self._shutdown = False
        self._lock = threading.Lock()

    def submit(self, fn: Callable[..., Any], /, *args: Any, **kwargs: Any) -> Future:
        with self._lock:
            if self._shutdown:
                raise RuntimeError("cannot schedule new futures after shutdown")

        future: Future = Future()
        if not future.set_running_or_notify_cancel():
            return future
        try:
            result = fn(*args, **kwargs)
        except BaseException as e:
            future.set_exception(e)
        else:
            future.set_result(result)
        return future

    def shutdown(self, wait: bool = True, *, cancel_futures: bool = False) -> None:
        with self._lock:
            self._shutdown = True


def build_executor(worker_threads: int) -> Executor:
    """Return the executor for the configured number of worker threads.

    Args:
        worker_threads: 0 runs broker calls inline, anything above uses a
                        thread pool of that size

    Returns:
        Executor: The configured executor
    """
    if worker_threads < 0:
        raise ValueError(f"worker_threads must be >= 0, got {worker_threads}")
    if worker_threads == 0:
        logger.debug("Using inline executor for broker calls")
        return InlineExecutor()
    logger.debug(f"Using thread pool executor with {worker_threads} worker(s)")
    return ThreadPoolExecutor(max_workers=worker_threads, thread_name_prefix="broker")
