"""At most one in-flight computation per cache key within a process.

The first caller for a key becomes the leader and computes; concurrent callers
for the same key wait for the leader's result instead of recomputing. If the
leader is cancelled, one waiting caller takes over as the new leader.
"""

from __future__ import annotations

import copy
import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Generic, TypeVar

from design_foundry.errors import EvaluationCancelled

from .pool import DEFAULT_POLL_INTERVAL_SEC, CancellationToken

logger = logging.getLogger(__name__)

T = TypeVar("T")


class InFlightRegistry(Generic[T]):
    """Coalesces concurrent computations that share a key."""

    def __init__(self, *, poll_interval_sec: float = DEFAULT_POLL_INTERVAL_SEC) -> None:
        self.poll_interval_sec = poll_interval_sec
        self._mutex = threading.Lock()
        self._inflight: dict[str, Future[T]] = {}

    def in_flight(self) -> list[str]:
        with self._mutex:
            return sorted(self._inflight)

    def run(
        self,
        key: str,
        compute: Callable[[], T],
        *,
        cancel_token: CancellationToken | None = None,
    ) -> T:
        """Return ``compute()`` for ``key``, sharing work with concurrent callers.

        Followers receive a deep copy of the leader's value, or the leader's
        exception. ``cancel_token`` cancels only this caller's wait.

        Raises:
            EvaluationCancelled: If this caller's token is cancelled.
        """
        while True:
            with self._mutex:
                future = self._inflight.get(key)
                leader = future is None
                if future is None:
                    future = Future()
                    self._inflight[key] = future

            if leader:
                return self._lead(key, future, compute)

            logger.debug("Waiting for in-flight computation: %s", key[:12])
            try:
                return copy.deepcopy(self._wait(future, cancel_token))
            except EvaluationCancelled:
                if cancel_token is not None and cancel_token.cancelled:
                    raise
                logger.debug("Leader for %s was cancelled, retrying", key[:12])

    def _lead(self, key: str, future: Future[T], compute: Callable[[], T]) -> T:
        try:
            value = compute()
        except BaseException as e:
            future.set_exception(e)
            raise
        else:
            future.set_result(value)
            return value
        finally:
            with self._mutex:
                if self._inflight.get(key) is future:
                    del self._inflight[key]

    def _wait(self, future: Future[T], cancel_token: CancellationToken | None) -> T:
        while True:
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            try:
                return future.result(timeout=self.poll_interval_sec)
            except FutureTimeoutError:
                continue
