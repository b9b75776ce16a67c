"""Adaptive admission control (additive increase, multiplicative decrease)."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import replace

from batch_heal.engine.models import ThrottleSnapshot, ThrottleTotals

logger = logging.getLogger(__name__)

DEFAULT_INITIAL_CONCURRENCY = 4
DEFAULT_INCREASE_AFTER_SUCCESSES = 5


class ConcurrencyController:
    """Owns the concurrency limit and admits at most that many units at once.

    All state lives behind one condition variable: admission, release and the
    three feedback hooks are each a single critical section. Lowering the
    limit never interrupts admitted units; it only delays future admissions
    until enough of them have released.
    """

    def __init__(
        self,
        initial_limit: int = DEFAULT_INITIAL_CONCURRENCY,
        *,
        start_limit: int | None = None,
        increase_after_successes: int = DEFAULT_INCREASE_AFTER_SUCCESSES,
    ) -> None:
        if initial_limit < 1:
            raise ValueError("initial_limit must be >= 1")
        if start_limit is not None and not 1 <= start_limit <= initial_limit:
            raise ValueError("start_limit must be between 1 and initial_limit")
        self._condition = threading.Condition()
        self._ceiling = initial_limit
        self._limit = start_limit if start_limit is not None else initial_limit
        self._increase_after = increase_after_successes
        self._consecutive_successes = 0
        self._in_flight = 0
        self._totals = ThrottleTotals()

    @property
    def ceiling(self) -> int:
        return self._ceiling

    @property
    def concurrency_limit(self) -> int:
        with self._condition:
            return self._limit

    def acquire(self, timeout: float | None = None) -> bool:
        """Block until fewer than ``concurrency_limit`` units are in flight."""

        with self._condition:
            admitted = self._condition.wait_for(
                lambda: self._in_flight < self._limit,
                timeout=timeout,
            )
            if admitted:
                self._in_flight += 1
            return admitted

    def release(self) -> None:
        with self._condition:
            if self._in_flight <= 0:
                raise RuntimeError("release() called without a matching acquire()")
            self._in_flight -= 1
            self._condition.notify_all()

    @contextmanager
    def admitted(self) -> Iterator[None]:
        self.acquire()
        try:
            yield
        finally:
            self.release()

    def report_success(self) -> None:
        with self._condition:
            self._totals.succeeded += 1
            self._consecutive_successes += 1
            if self._consecutive_successes > self._increase_after and self._limit < self._ceiling:
                self._limit += 1
                self._consecutive_successes = 0
                logger.info("Increasing concurrency to %d", self._limit)
                self._condition.notify_all()

    def report_rate_limited(self, *, will_retry: bool = True) -> None:
        with self._condition:
            self._totals.failed += 1
            if will_retry:
                self._totals.retried += 1
            self._limit = max(1, self._limit // 2)
            self._consecutive_successes = 0
            logger.info("Rate limited - reducing concurrency to %d", self._limit)

    def report_other_failure(self, *, will_retry: bool = True) -> None:
        with self._condition:
            self._totals.failed += 1
            if will_retry:
                self._totals.retried += 1
            self._consecutive_successes = 0

    def snapshot(self) -> ThrottleSnapshot:
        with self._condition:
            return ThrottleSnapshot(
                concurrency_limit=self._limit,
                ceiling=self._ceiling,
                consecutive_successes=self._consecutive_successes,
                in_flight=self._in_flight,
                totals=replace(self._totals),
            )

    def describe(self) -> str:
        totals = self.snapshot().totals
        return f"{totals.succeeded} success, {totals.failed} failures, {totals.retried} retries"
