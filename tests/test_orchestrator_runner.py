from __future__ import annotations

import json
import threading
import time
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any

import allure
import pytest

from batch_heal.config import MergeSettings, RetrySettings, Settings, ThrottleSettings
from batch_heal.engine.checkpoint import (
    CheckpointConflictError,
    CheckpointStore,
    InMemoryCheckpointStore,
)
from batch_heal.engine.contracts import UnitProcessingError
from batch_heal.engine.merge import merge_transcripts
from batch_heal.engine.models import RunState, UnitResult, WorkUnit
from batch_heal.engine.planning import FixedWindowChunker, MediaSource, PlanningError
from batch_heal.engine.repository import CheckpointRepository
from batch_heal.engine.retry import REASON_FAIL_FAST, RetryExecutor
from batch_heal.engine.runner import (
    REASON_CHECKPOINT_FAILED,
    REASON_WORKER_ERROR,
    RESUME_HINT,
    BatchOrchestrator,
    MergeFailedError,
    UnitsFailedError,
)
from batch_heal.engine.throttle import ConcurrencyController

pytestmark = [
    allure.epic("Batch Engine"),
    allure.feature("Orchestration & Resume"),
]

SOURCE = MediaSource(path="meeting.wav", duration_seconds=3000)


class ListChunker:
    def __init__(self, count: int) -> None:
        self.count = count

    def plan(self, source: Any) -> list[WorkUnit]:
        return [WorkUnit(index=n, locator=f"{source}#{n}") for n in range(self.count)]


class FakeProcessor:
    """Thread-safe processor whose behaviour is chosen per unit index."""

    def __init__(
        self,
        *,
        fail: dict[int, Exception] | None = None,
        delays: dict[int, float] | None = None,
        on_call: Callable[[WorkUnit], None] | None = None,
    ) -> None:
        self.fail = dict(fail or {})
        self.delays = delays or {}
        self.on_call = on_call
        self.calls: list[int] = []
        self._lock = threading.Lock()

    def process(self, unit: WorkUnit) -> dict[str, Any]:
        with self._lock:
            self.calls.append(unit.index)
        if self.on_call is not None:
            self.on_call(unit)
        time.sleep(self.delays.get(unit.index, 0.0))
        error = self.fail.get(unit.index)
        if error is not None:
            raise error
        return {
            "text": f"chunk {unit.index}",
            "segments": [{"start": 1.5, "text": f"segment {unit.index}"}],
        }


class RecordingJournal:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def record_run_started(self, *, run_id: str, source: str, total_units: int) -> None:
        self.events.append(
            ("started", {"run_id": run_id, "source": source, "total_units": total_units}),
        )

    def record_run_finished(self, **kwargs: Any) -> None:
        self.events.append(("finished", kwargs))


def _orchestrator(  # noqa: PLR0913
    *,
    processor: FakeProcessor,
    store: CheckpointStore,
    chunker: Any = None,
    concurrency: int = 4,
    merger: Any = merge_transcripts,
    journal: RecordingJournal | None = None,
    merge_max_attempts: int = 2,
) -> BatchOrchestrator:
    controller = ConcurrencyController(concurrency)
    executor = RetryExecutor(
        processor=processor,
        controller=controller,
        sleep=lambda _seconds: None,
    )
    return BatchOrchestrator(
        chunker=chunker or FixedWindowChunker(chunk_seconds=600),
        executor=executor,
        controller=controller,
        store=store,
        merger=merger,
        journal=journal,
        merge_max_attempts=merge_max_attempts,
        sleep=lambda _seconds: None,
    )


def test_all_units_succeed_and_merge_in_index_order() -> None:
    # Later units finish first.
    processor = FakeProcessor(delays={0: 0.05, 1: 0.04, 2: 0.03, 3: 0.02, 4: 0.0})
    orchestrator = _orchestrator(processor=processor, store=InMemoryCheckpointStore())

    result = orchestrator.run(SOURCE, run_id="run-1")

    assert result.state is RunState.DONE
    assert [r.index for r in result.results] == [0, 1, 2, 3, 4]
    assert result.merged["full_text"] == "chunk 0 chunk 1 chunk 2 chunk 3 chunk 4"
    assert [seg["start_seconds"] for seg in result.merged["segments"]] == [
        1.5,
        601.5,
        1201.5,
        1801.5,
        2401.5,
    ]
    assert result.merged["segments"][2]["timestamp"] == "20:01"
    assert result.summary.succeeded == 5
    assert result.summary.cached == 0
    assert result.summary.failed == 0
    assert orchestrator.state_history == [
        RunState.PLANNING,
        RunState.DISPATCHING,
        RunState.MERGING,
        RunState.DONE,
    ]


def test_unit_failure_preserves_checkpoints_and_rerun_processes_only_failed_unit() -> None:
    store = InMemoryCheckpointStore()
    failing = FakeProcessor(fail={2: UnitProcessingError("Invalid API key", status_code=401)})
    first = _orchestrator(processor=failing, store=store)

    with pytest.raises(UnitsFailedError) as raised:
        first.run(SOURCE, run_id="run-1")

    error = raised.value
    assert first.state is RunState.FAILED
    assert first.state_history[-1] is RunState.FAILED
    assert RunState.MERGING not in first.state_history
    assert [failure.index for failure in error.failures] == [2]
    assert error.failures[0].reason == REASON_FAIL_FAST
    assert error.failures[0].attempts == 1
    assert RESUME_HINT in str(error)
    assert failing.calls.count(2) == 1
    assert 2 not in store.indices()
    checkpointed_before = store.indices()
    assert set(checkpointed_before) <= {0, 1, 3, 4}

    healthy = FakeProcessor()
    second = _orchestrator(processor=healthy, store=store)
    result = second.run(SOURCE, run_id="run-1")

    assert result.state is RunState.DONE
    assert sorted(healthy.calls) == sorted({0, 1, 2, 3, 4} - set(checkpointed_before))
    assert result.summary.cached == len(checkpointed_before)
    assert store.indices() == [0, 1, 2, 3, 4]


def test_resumed_output_is_byte_identical_to_uninterrupted_run(tmp_path: Path) -> None:
    uninterrupted = _orchestrator(
        processor=FakeProcessor(),
        store=InMemoryCheckpointStore(),
    ).run(SOURCE, run_id="run-1")

    repository = CheckpointRepository(tmp_path / "resume.db")
    repository.init_schema()
    try:
        store = repository.store_for("run-1")
        with pytest.raises(UnitsFailedError):
            _orchestrator(
                processor=FakeProcessor(fail={1: UnitProcessingError("too large", status_code=413)}),
                store=store,
            ).run(SOURCE, run_id="run-1")
        resumed = _orchestrator(processor=FakeProcessor(), store=store).run(
            SOURCE,
            run_id="run-1",
        )
    finally:
        repository.close()

    assert json.dumps(resumed.merged, sort_keys=True) == json.dumps(
        uninterrupted.merged,
        sort_keys=True,
    )
    assert resumed.summary.cached >= 1


def test_no_new_dispatch_after_first_failure() -> None:
    chunker = ListChunker(6)
    processor = FakeProcessor(fail={1: UnitProcessingError("bad key", status_code=401)})
    orchestrator = _orchestrator(
        processor=processor,
        store=InMemoryCheckpointStore(),
        chunker=chunker,
        concurrency=1,
        merger=lambda units, results: None,
    )

    with pytest.raises(UnitsFailedError):
        orchestrator.run("src", run_id="run-1")

    assert processor.calls == [0, 1]


def test_in_flight_units_finish_after_failure() -> None:
    store = InMemoryCheckpointStore()
    processor = FakeProcessor(
        fail={0: UnitProcessingError("bad key", status_code=401)},
        delays={1: 0.1, 0: 0.01},
    )
    orchestrator = _orchestrator(
        processor=processor,
        store=store,
        chunker=ListChunker(2),
        concurrency=2,
        merger=lambda units, results: None,
    )

    with pytest.raises(UnitsFailedError) as raised:
        orchestrator.run("src", run_id="run-1")

    assert store.indices() == [1]
    assert raised.value.summary.succeeded == 1
    assert raised.value.summary.failed == 1


def test_active_units_never_exceed_concurrency_ceiling() -> None:
    lock = threading.Lock()
    active = 0
    peak = 0

    def track(_unit: WorkUnit) -> None:
        nonlocal active, peak
        with lock:
            active += 1
            peak = max(peak, active)
        time.sleep(0.01)
        with lock:
            active -= 1

    processor = FakeProcessor(on_call=track)
    orchestrator = _orchestrator(
        processor=processor,
        store=InMemoryCheckpointStore(),
        chunker=ListChunker(20),
        concurrency=3,
        merger=lambda units, results: len(results),
    )

    result = orchestrator.run("src", run_id="run-1")

    assert result.merged == 20
    assert 1 <= peak <= 3


def test_cached_units_do_not_touch_controller() -> None:
    store = InMemoryCheckpointStore()
    for index in range(3):
        store.put(index, UnitResult(index=index, payload={"text": f"cached {index}"}))
    processor = FakeProcessor()
    orchestrator = _orchestrator(
        processor=processor,
        store=store,
        chunker=ListChunker(3),
        merger=lambda units, results: [r.payload["text"] for r in results],
    )

    result = orchestrator.run("src", run_id="run-1")

    assert processor.calls == []
    assert result.merged == ["cached 0", "cached 1", "cached 2"]
    assert result.summary.cached == 3
    snapshot = orchestrator.controller.snapshot()
    assert snapshot.totals.succeeded == 0
    assert snapshot.in_flight == 0


def test_merge_retry_recovers_from_one_failure() -> None:
    attempts: list[int] = []

    def flaky_merger(units: Sequence[WorkUnit], results: Sequence[UnitResult]) -> str:
        attempts.append(len(results))
        if len(attempts) == 1:
            raise RuntimeError("disk full")
        return "merged"

    orchestrator = _orchestrator(
        processor=FakeProcessor(),
        store=InMemoryCheckpointStore(),
        chunker=ListChunker(2),
        merger=flaky_merger,
    )

    result = orchestrator.run("src", run_id="run-1")

    assert result.merged == "merged"
    assert attempts == [2, 2]


def test_merge_failure_fails_run_and_keeps_checkpoints() -> None:
    store = InMemoryCheckpointStore()
    journal = RecordingJournal()

    def broken_merger(units: Sequence[WorkUnit], results: Sequence[UnitResult]) -> None:
        raise RuntimeError("cannot write output")

    orchestrator = _orchestrator(
        processor=FakeProcessor(),
        store=store,
        chunker=ListChunker(3),
        merger=broken_merger,
        journal=journal,
    )

    with pytest.raises(MergeFailedError) as raised:
        orchestrator.run("src", run_id="run-1")

    assert isinstance(raised.value.__cause__, RuntimeError)
    assert "cannot write output" in str(raised.value)
    assert orchestrator.state_history[-2:] == [RunState.MERGING, RunState.FAILED]
    assert store.indices() == [0, 1, 2]
    finished = journal.events[-1]
    assert finished[0] == "finished"
    assert finished[1]["state"] is RunState.FAILED


def test_journal_records_start_and_done() -> None:
    journal = RecordingJournal()
    orchestrator = _orchestrator(
        processor=FakeProcessor(),
        store=InMemoryCheckpointStore(),
        journal=journal,
    )

    orchestrator.run(SOURCE, run_id="run-1")

    assert journal.events[0] == (
        "started",
        {"run_id": "run-1", "source": "meeting.wav", "total_units": 5},
    )
    kind, finished = journal.events[1]
    assert kind == "finished"
    assert finished["state"] is RunState.DONE
    assert finished["summary"].succeeded == 5
    assert finished["error_summary"] is None


def test_planning_error_stops_before_dispatch() -> None:
    class GappyChunker:
        def plan(self, source: Any) -> list[WorkUnit]:
            return [WorkUnit(index=0, locator="a"), WorkUnit(index=2, locator="c")]

    processor = FakeProcessor()
    orchestrator = _orchestrator(
        processor=processor,
        store=InMemoryCheckpointStore(),
        chunker=GappyChunker(),
    )

    with pytest.raises(PlanningError, match="dense"):
        orchestrator.run("src", run_id="run-1")

    assert orchestrator.state is RunState.PLANNING
    assert processor.calls == []


def test_empty_plan_merges_nothing() -> None:
    orchestrator = _orchestrator(
        processor=FakeProcessor(),
        store=InMemoryCheckpointStore(),
        chunker=ListChunker(0),
        merger=lambda units, results: list(results),
    )

    result = orchestrator.run("src", run_id="run-1")

    assert result.state is RunState.DONE
    assert result.merged == []


def test_progress_callback_receives_messages() -> None:
    messages: list[str] = []
    controller = ConcurrencyController(2)
    orchestrator = BatchOrchestrator(
        chunker=ListChunker(2),
        executor=RetryExecutor(processor=FakeProcessor(), controller=controller),
        controller=controller,
        store=InMemoryCheckpointStore(),
        on_progress=messages.append,
    )

    orchestrator.run("src", run_id="run-1")

    assert messages[0] == "Run run-1 planned: 2 units"
    assert messages[-1].startswith("Run run-1 done: succeeded=2")


def test_from_settings_wires_configuration() -> None:
    settings = Settings(
        throttle=ThrottleSettings(initial_concurrency=2, increase_after_successes=3),
        retry=RetrySettings(max_attempts=5),
        merge=MergeSettings(max_attempts=4, retry_delay_seconds=0.0),
    )

    orchestrator = BatchOrchestrator.from_settings(
        settings,
        chunker=ListChunker(1),
        processor=FakeProcessor(),
        store=InMemoryCheckpointStore(),
    )

    assert orchestrator.controller.ceiling == 2
    assert orchestrator.executor.max_attempts == 5
    assert orchestrator.merge_max_attempts == 4
    assert orchestrator.run("src", run_id="run-1").merged == [
        {"text": "chunk 0", "segments": [{"start": 1.5, "text": "segment 0"}]},
    ]


class FailingPutStore(InMemoryCheckpointStore):
    """Memory store whose writes for selected indices raise."""

    def __init__(self, errors: dict[int, Exception]) -> None:
        super().__init__()
        self.errors = errors

    def put(self, index: int, result: UnitResult) -> None:
        error = self.errors.get(index)
        if error is not None:
            raise error
        super().put(index, result)


@pytest.mark.parametrize(
    "write_error",
    [OSError(28, "No space left on device"), CheckpointConflictError(1)],
)
def test_checkpoint_write_failure_fails_unit_and_stops_dispatch(write_error: Exception) -> None:
    store = FailingPutStore({1: write_error})
    processor = FakeProcessor()
    orchestrator = _orchestrator(
        processor=processor,
        store=store,
        chunker=ListChunker(4),
        concurrency=1,
        merger=lambda units, results: None,
    )

    with pytest.raises(UnitsFailedError) as raised:
        orchestrator.run("src", run_id="run-1")

    failures = raised.value.failures
    assert [(failure.index, failure.reason) for failure in failures] == [
        (1, REASON_CHECKPOINT_FAILED),
    ]
    assert failures[0].attempts is None
    assert raised.value.summary.succeeded == 1
    assert raised.value.summary.failed == 1
    assert processor.calls == [0, 1]
    assert store.indices() == [0]
    assert orchestrator.state is RunState.FAILED
    assert RunState.MERGING not in orchestrator.state_history


def _orchestrator_with_progress(
    *,
    processor: FakeProcessor,
    store: CheckpointStore,
    units: int,
    on_progress: Callable[[str], None],
) -> BatchOrchestrator:
    controller = ConcurrencyController(1)
    return BatchOrchestrator(
        chunker=ListChunker(units),
        executor=RetryExecutor(
            processor=processor,
            controller=controller,
            sleep=lambda _seconds: None,
        ),
        controller=controller,
        store=store,
        merger=lambda units, results: None,
        sleep=lambda _seconds: None,
        on_progress=on_progress,
    )


def test_worker_crash_is_reported_as_unit_failure_before_merge() -> None:
    def progress(message: str) -> None:
        if message == "Unit 2/3 starting":
            raise RuntimeError("progress sink closed")

    processor = FakeProcessor()
    orchestrator = _orchestrator_with_progress(
        processor=processor,
        store=InMemoryCheckpointStore(),
        units=3,
        on_progress=progress,
    )

    with pytest.raises(UnitsFailedError) as raised:
        orchestrator.run("src", run_id="run-1")

    failures = raised.value.failures
    assert [(failure.index, failure.reason) for failure in failures] == [(1, REASON_WORKER_ERROR)]
    assert "progress sink closed" in failures[0].message
    assert orchestrator.state_history == [
        RunState.PLANNING,
        RunState.DISPATCHING,
        RunState.FAILED,
    ]
    assert processor.calls == [0]
    assert orchestrator.controller.snapshot().in_flight == 0


def test_crash_after_checkpoint_is_not_counted_as_success() -> None:
    def progress(message: str) -> None:
        if message.startswith("Unit 1/2 done"):
            raise RuntimeError("progress sink closed")

    store = InMemoryCheckpointStore()
    orchestrator = _orchestrator_with_progress(
        processor=FakeProcessor(),
        store=store,
        units=2,
        on_progress=progress,
    )

    with pytest.raises(UnitsFailedError) as raised:
        orchestrator.run("src", run_id="run-1")

    assert raised.value.summary.succeeded == 0
    assert raised.value.summary.failed == 1
    assert store.indices() == [0]


def test_failure_notification_crash_records_unit_once() -> None:
    def progress(message: str) -> None:
        if message.startswith("Unit 1 failed"):
            raise RuntimeError("progress sink closed")

    processor = FakeProcessor(fail={0: UnitProcessingError("bad key", status_code=401)})
    orchestrator = _orchestrator_with_progress(
        processor=processor,
        store=InMemoryCheckpointStore(),
        units=2,
        on_progress=progress,
    )

    with pytest.raises(UnitsFailedError) as raised:
        orchestrator.run("src", run_id="run-1")

    assert [(failure.index, failure.reason) for failure in raised.value.failures] == [
        (0, REASON_FAIL_FAST),
    ]
    assert processor.calls == [0]


def test_from_settings_rejects_invalid_configuration() -> None:
    settings = Settings(merge=MergeSettings(retry_delay_seconds=-1.0))

    with pytest.raises(ValueError, match="BATCH_HEAL_MERGE_RETRY_DELAY_SECONDS"):
        BatchOrchestrator.from_settings(
            settings,
            chunker=ListChunker(1),
            processor=FakeProcessor(),
            store=InMemoryCheckpointStore(),
        )
