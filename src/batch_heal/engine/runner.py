"""BatchOrchestrator: plan, dispatch, checkpoint and merge one run."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Sequence
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from batch_heal.engine.checkpoint import CheckpointStore
from batch_heal.engine.contracts import (
    Chunker,
    DiagnosticOracle,
    Merger,
    RunJournal,
    UnitProcessor,
)
from batch_heal.engine.merge import collect_payloads
from batch_heal.engine.models import (
    BatchRunResult,
    RunState,
    RunSummary,
    UnitFailure,
    UnitResult,
    WorkUnit,
)
from batch_heal.engine.planning import validate_plan
from batch_heal.engine.retry import RetryExecutor, TerminalUnitError
from batch_heal.engine.throttle import ConcurrencyController

if TYPE_CHECKING:
    from batch_heal.config import Settings

logger = logging.getLogger(__name__)

RESUME_HINT = "Partial progress is preserved in checkpoints; rerun to resume instead of restarting."

REASON_CHECKPOINT_FAILED = "checkpoint_failed"
REASON_WORKER_ERROR = "worker_error"


class BatchRunError(RuntimeError):
    """Run ended in the ``failed`` state."""

    def __init__(self, message: str, *, run_id: str, summary: RunSummary) -> None:
        super().__init__(message)
        self.run_id = run_id
        self.summary = summary


class UnitsFailedError(BatchRunError):
    """One or more units failed terminally."""

    def __init__(self, *, run_id: str, summary: RunSummary, failures: list[UnitFailure]) -> None:
        details = "; ".join(failure.describe() for failure in failures)
        super().__init__(
            f"Run {run_id}: {len(failures)} unit(s) failed: {details}. {RESUME_HINT}",
            run_id=run_id,
            summary=summary,
        )
        self.failures = failures


class MergeFailedError(BatchRunError):
    """All units succeeded but the merge step kept failing."""


@dataclass(slots=True)
class _DispatchOutcome:
    cached: int = 0
    succeeded: int = 0
    failures: list[UnitFailure] = field(default_factory=list)
    lock: threading.Lock = field(default_factory=threading.Lock)
    failure_observed: threading.Event = field(default_factory=threading.Event)


class BatchOrchestrator:
    """Coordinates Planning -> Dispatching -> Merging -> Done for one source.

    Units already present in the checkpoint store are skipped. The rest are
    admitted through the :class:`ConcurrencyController`, executed by the
    :class:`RetryExecutor` on a thread pool, and checkpointed before the
    worker reports completion. After the first terminal unit failure no new
    units are dispatched, but units already running are allowed to finish.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        chunker: Chunker,
        executor: RetryExecutor,
        controller: ConcurrencyController,
        store: CheckpointStore,
        merger: Merger = collect_payloads,
        journal: RunJournal | None = None,
        merge_max_attempts: int = 2,
        merge_retry_delay_seconds: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        on_progress: Callable[[str], None] | None = None,
    ) -> None:
        if merge_max_attempts < 1:
            raise ValueError("merge_max_attempts must be >= 1")
        self.chunker = chunker
        self.executor = executor
        self.controller = controller
        self.store = store
        self.merger = merger
        self.journal = journal
        self.merge_max_attempts = merge_max_attempts
        self.merge_retry_delay_seconds = merge_retry_delay_seconds
        self._sleep = sleep
        self._on_progress = on_progress or (lambda _msg: None)
        self.state = RunState.PLANNING
        self.state_history: list[RunState] = [RunState.PLANNING]

    @classmethod
    def from_settings(  # noqa: PLR0913
        cls,
        settings: Settings,
        *,
        chunker: Chunker,
        processor: UnitProcessor,
        store: CheckpointStore,
        merger: Merger = collect_payloads,
        oracle: DiagnosticOracle | None = None,
        journal: RunJournal | None = None,
        on_progress: Callable[[str], None] | None = None,
    ) -> BatchOrchestrator:
        settings.validate()
        controller = ConcurrencyController(
            settings.throttle.initial_concurrency,
            increase_after_successes=settings.throttle.increase_after_successes,
        )
        executor = RetryExecutor(
            processor=processor,
            controller=controller,
            max_attempts=settings.retry.max_attempts,
            oracle=oracle,
        )
        return cls(
            chunker=chunker,
            executor=executor,
            controller=controller,
            store=store,
            merger=merger,
            journal=journal,
            merge_max_attempts=settings.merge.max_attempts,
            merge_retry_delay_seconds=settings.merge.retry_delay_seconds,
            on_progress=on_progress,
        )

    # -- run ------------------------------------------------------------------

    def run(self, source: Any, *, run_id: str) -> BatchRunResult:
        """Process ``source`` end to end; raise :class:`BatchRunError` on failure."""

        self.state_history = []
        self._transition(RunState.PLANNING)
        units = validate_plan(self.chunker.plan(source))
        self._emit(f"Run {run_id} planned: {len(units)} units")
        if self.journal is not None:
            self.journal.record_run_started(
                run_id=run_id,
                source=_describe_source(source),
                total_units=len(units),
            )

        self._transition(RunState.DISPATCHING)
        retried_before = self.controller.snapshot().totals.retried
        outcome = self._dispatch(units)
        summary = RunSummary(
            total_units=len(units),
            succeeded=outcome.succeeded,
            failed=len(outcome.failures),
            retried=self.controller.snapshot().totals.retried - retried_before,
            cached=outcome.cached,
            concurrency_limit=self.controller.concurrency_limit,
        )

        if outcome.failures:
            failures = sorted(outcome.failures, key=lambda failure: failure.index)
            for failure in failures:
                logger.error("Run %s %s", run_id, failure.describe())
            error = UnitsFailedError(run_id=run_id, summary=summary, failures=failures)
            self._fail(run_id=run_id, summary=summary, error=error)
            raise error

        self._transition(RunState.MERGING)
        self._emit("Merging unit results")
        try:
            results, merged = self._merge(units)
        except Exception as merge_error:
            error = MergeFailedError(
                f"Run {run_id}: merge failed after {self.merge_max_attempts} attempt(s): "
                f"{merge_error}. {RESUME_HINT}",
                run_id=run_id,
                summary=summary,
            )
            self._fail(run_id=run_id, summary=summary, error=error)
            raise error from merge_error

        self._transition(RunState.DONE)
        if self.journal is not None:
            self.journal.record_run_finished(
                run_id=run_id,
                state=RunState.DONE,
                summary=summary,
                error_summary=None,
            )
        self._emit(f"Run {run_id} done: {summary.describe()}")
        return BatchRunResult(
            run_id=run_id,
            state=RunState.DONE,
            merged=merged,
            results=results,
            summary=summary,
        )

    # -- dispatching ----------------------------------------------------------

    def _dispatch(self, units: Sequence[WorkUnit]) -> _DispatchOutcome:
        outcome = _DispatchOutcome()
        total = len(units)
        futures: list[Future[None]] = []
        pool = ThreadPoolExecutor(
            max_workers=self.controller.ceiling,
            thread_name_prefix="batch-heal-unit",
        )
        try:
            for unit in units:
                if outcome.failure_observed.is_set():
                    break
                if self.store.has(unit.index):
                    with outcome.lock:
                        outcome.cached += 1
                    self._emit(f"Unit {unit.index + 1}/{total} (cached)")
                    continue

                self.controller.acquire()
                if outcome.failure_observed.is_set():
                    self.controller.release()
                    break
                futures.append(pool.submit(self._run_unit, unit, total, outcome))

            if outcome.failure_observed.is_set():
                self._emit("Unit failure observed; waiting for in-flight units, no new dispatch")
            wait(futures)
        finally:
            pool.shutdown(wait=True)
        return outcome

    def _run_unit(self, unit: WorkUnit, total: int, outcome: _DispatchOutcome) -> None:
        """Worker body; the admission slot is held for the whole call.

        Every exit path either counts the unit as succeeded or records a
        failure, so no unit can leave dispatching unresolved.
        """

        try:
            self._process_unit(unit, total, outcome)
        except Exception as error:  # noqa: BLE001
            logger.exception("Worker for unit %d crashed", unit.index)
            with outcome.lock:
                already_failed = any(failure.index == unit.index for failure in outcome.failures)
            if already_failed:
                return
            self._record_failure(
                outcome,
                UnitFailure(
                    index=unit.index,
                    attempts=None,
                    classification=None,
                    reason=REASON_WORKER_ERROR,
                    message=f"{type(error).__name__}: {error}",
                ),
            )
        finally:
            self.controller.release()

    def _process_unit(self, unit: WorkUnit, total: int, outcome: _DispatchOutcome) -> None:
        self._emit(f"Unit {unit.index + 1}/{total} starting")
        try:
            result = self.executor.execute(unit, total_units=total)
        except TerminalUnitError as error:
            self._record_failure(
                outcome,
                UnitFailure(
                    index=unit.index,
                    attempts=error.attempts,
                    classification=error.classification,
                    reason=error.reason,
                    message=error.detail,
                ),
            )
            return

        try:
            self.store.put(unit.index, result)
        except Exception as error:  # noqa: BLE001
            logger.exception("Checkpoint write failed for unit %d", unit.index)
            self._record_failure(
                outcome,
                UnitFailure(
                    index=unit.index,
                    attempts=None,
                    classification=None,
                    reason=REASON_CHECKPOINT_FAILED,
                    message=str(error),
                ),
            )
            return

        # Counted only once the progress callback has returned.
        with outcome.lock:
            done = outcome.succeeded + outcome.cached + 1
        self._emit(f"Unit {unit.index + 1}/{total} done ({done}/{total})")
        with outcome.lock:
            outcome.succeeded += 1

    def _record_failure(self, outcome: _DispatchOutcome, failure: UnitFailure) -> None:
        with outcome.lock:
            outcome.failures.append(failure)
        outcome.failure_observed.set()
        self._emit(f"Unit {failure.index + 1} failed: {failure.reason}")

    # -- merging --------------------------------------------------------------

    def _merge(self, units: Sequence[WorkUnit]) -> tuple[list[UnitResult], Any]:
        last_error: Exception | None = None
        for attempt in range(1, self.merge_max_attempts + 1):
            try:
                results = self._load_results(units)
                return results, self.merger(units, results)
            except Exception as error:  # noqa: BLE001
                last_error = error
                logger.warning(
                    "Merge attempt %d/%d failed: %s",
                    attempt,
                    self.merge_max_attempts,
                    error,
                )
                if attempt < self.merge_max_attempts:
                    self._sleep(self.merge_retry_delay_seconds)
        assert last_error is not None
        raise last_error

    def _load_results(self, units: Sequence[WorkUnit]) -> list[UnitResult]:
        results: list[UnitResult] = []
        for unit in units:
            result = self.store.get(unit.index)
            if result is None:
                raise LookupError(f"Checkpoint missing for unit {unit.index}")
            results.append(result)
        return results

    # -- state ----------------------------------------------------------------

    def _fail(self, *, run_id: str, summary: RunSummary, error: BatchRunError) -> None:
        self._transition(RunState.FAILED)
        if self.journal is not None:
            self.journal.record_run_finished(
                run_id=run_id,
                state=RunState.FAILED,
                summary=summary,
                error_summary=str(error),
            )
        self._emit(f"Run {run_id} failed: {summary.describe()}")
        self._emit(RESUME_HINT)

    def _transition(self, state: RunState) -> None:
        logger.info("Run state -> %s", state.value)
        self.state = state
        self.state_history.append(state)

    def _emit(self, msg: str) -> None:
        """Log and notify progress callback."""
        logger.info(msg)
        self._on_progress(msg)


def _describe_source(source: Any) -> str:
    path = getattr(source, "path", None)
    return str(path) if path is not None else str(source)
