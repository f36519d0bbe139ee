"""Worker pools behind a single ``map`` interface.

The executor hands a pool a picklable function and a list of items; the pool
returns one result per item, in item order, regardless of completion order.
Serial, thread and process strategies are interchangeable.
"""

from __future__ import annotations

import logging
import os
import threading
from collections.abc import Callable, Sequence
from concurrent.futures import FIRST_COMPLETED, Executor, Future, ProcessPoolExecutor, ThreadPoolExecutor, wait
from typing import Any, Literal, Protocol, TypeVar

from design_foundry.errors import EvaluationCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

PoolKind = Literal["serial", "thread", "process"]

DEFAULT_POLL_INTERVAL_SEC = 0.05

ResultCallback = Callable[[int, Any], None]
ErrorHandler = Callable[[int, BaseException], Any]


class CancellationToken:
    """Cooperative cancellation flag shared between a caller and a pool."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise EvaluationCancelled("Evaluation was cancelled")


def default_worker_count(limit: int | None = None) -> int:
    """Available cores, optionally capped at ``limit``."""
    cores = os.cpu_count() or 1
    if limit is not None:
        cores = min(cores, limit)
    return max(1, cores)


class WorkerPool(Protocol):
    max_workers: int

    def map(
        self,
        fn: Callable[[T], R],
        items: Sequence[T],
        *,
        cancel_token: CancellationToken | None = None,
        on_result: ResultCallback | None = None,
        on_error: ErrorHandler | None = None,
    ) -> list[R]: ...


class SerialPool:
    """Runs every item in the calling thread."""

    max_workers = 1

    def map(
        self,
        fn: Callable[[T], R],
        items: Sequence[T],
        *,
        cancel_token: CancellationToken | None = None,
        on_result: ResultCallback | None = None,
        on_error: ErrorHandler | None = None,
    ) -> list[R]:
        results: list[R] = []
        for index, item in enumerate(items):
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            try:
                result = fn(item)
            except Exception as e:
                if on_error is None:
                    raise
                result = on_error(index, e)
            results.append(result)
            if on_result is not None:
                on_result(index, result)
        return results


class _ExecutorPool:
    """Shared submit/collect loop for concurrent.futures executors."""

    def __init__(self, max_workers: int | None = None, *, poll_interval_sec: float = DEFAULT_POLL_INTERVAL_SEC) -> None:
        if max_workers is not None and max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self.max_workers = max_workers or default_worker_count()
        self.poll_interval_sec = poll_interval_sec

    def _create_executor(self, n_items: int) -> Executor:
        raise NotImplementedError

    def map(
        self,
        fn: Callable[[T], R],
        items: Sequence[T],
        *,
        cancel_token: CancellationToken | None = None,
        on_result: ResultCallback | None = None,
        on_error: ErrorHandler | None = None,
    ) -> list[R]:
        if not items:
            return []
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        results: list[Any] = [None] * len(items)
        executor = self._create_executor(len(items))
        abandoned = False
        try:
            future_to_index: dict[Future[R], int] = {executor.submit(fn, item): i for i, item in enumerate(items)}
            pending = set(future_to_index)
            while pending:
                done, pending = wait(pending, timeout=self.poll_interval_sec, return_when=FIRST_COMPLETED)
                for future in done:
                    index = future_to_index[future]
                    try:
                        result = future.result()
                    except Exception as e:
                        if on_error is None:
                            raise
                        result = on_error(index, e)
                    results[index] = result
                    if on_result is not None:
                        on_result(index, result)
                if cancel_token is not None and cancel_token.cancelled and pending:
                    logger.info("Cancelling %d pending work items", len(pending))
                    raise EvaluationCancelled("Evaluation was cancelled")
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
        except BaseException:
            abandoned = True
            raise
        finally:
            # In-flight work is abandoned rather than awaited
            executor.shutdown(wait=not abandoned, cancel_futures=True)
        return results


class ThreadPool(_ExecutorPool):
    """Runs items on a ThreadPoolExecutor."""

    def _create_executor(self, n_items: int) -> Executor:
        return ThreadPoolExecutor(
            max_workers=min(self.max_workers, n_items),
            thread_name_prefix="design-foundry",
        )


class ProcessPool(_ExecutorPool):
    """Runs items on a ProcessPoolExecutor; ``fn`` and items must be picklable."""

    def _create_executor(self, n_items: int) -> Executor:
        return ProcessPoolExecutor(max_workers=min(self.max_workers, n_items))


def make_pool(kind: PoolKind = "thread", max_workers: int | None = None) -> WorkerPool:
    """Create a worker pool by name."""
    if kind == "serial":
        return SerialPool()
    if kind == "thread":
        return ThreadPool(default_worker_count(max_workers))
    if kind == "process":
        return ProcessPool(default_worker_count(max_workers))
    raise ValueError(f"Unknown pool kind: {kind}")
