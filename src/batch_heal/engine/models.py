"""Domain models for batch planning, execution and checkpointing."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class FailureKind(str, Enum):
    """Normalized failure taxonomy used by the retry policy."""

    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"
    TIMEOUT = "timeout"
    UNAUTHORIZED = "unauthorized"
    PAYLOAD_TOO_LARGE = "payload_too_large"
    SERVICE_UNAVAILABLE = "service_unavailable"
    UNKNOWN = "unknown"


class RecoveryAction(str, Enum):
    """What the retry executor does after a classified failure."""

    FAIL_FAST = "fail_fast"
    WAIT_AND_REDUCE_CONCURRENCY = "wait_and_reduce_concurrency"
    RETRY_FRESH = "retry_fresh"
    WAIT_AND_RETRY = "wait_and_retry"
    DIAGNOSE = "diagnose"


class RunState(str, Enum):
    """Orchestrator lifecycle states."""

    PLANNING = "planning"
    DISPATCHING = "dispatching"
    MERGING = "merging"
    DONE = "done"
    FAILED = "failed"


@dataclass(slots=True, frozen=True)
class WorkUnit:
    """One independently processable slice of the source."""

    index: int
    locator: str
    sequence_offset: float = 0.0


@dataclass(slots=True, frozen=True)
class UnitResult:
    """Successful output of one work unit."""

    index: int
    payload: Any


@dataclass(slots=True, frozen=True)
class FailureClassification:
    """Deterministic classification of one raised failure."""

    kind: FailureKind
    action: RecoveryAction
    wait_ms: int
    matched_pattern: str | None = field(default=None, compare=False)

    @property
    def wait_seconds(self) -> float:
        return self.wait_ms / 1000.0


@dataclass(slots=True)
class ThrottleTotals:
    """Attempt-level counters accumulated by the concurrency controller."""

    succeeded: int = 0
    failed: int = 0
    retried: int = 0


@dataclass(slots=True, frozen=True)
class ThrottleSnapshot:
    """Point-in-time copy of throttle state for reporting and tests."""

    concurrency_limit: int
    ceiling: int
    consecutive_successes: int
    in_flight: int
    totals: ThrottleTotals


@dataclass(slots=True, frozen=True)
class Diagnosis:
    """Advice returned by a diagnostic oracle."""

    recoverable: bool
    explanation: str
    suggestion: str = ""


@dataclass(slots=True, frozen=True)
class DiagnosisContext:
    """What the oracle is told about the failing unit."""

    unit_index: int
    total_units: int | None
    locator: str
    attempt: int
    status_code: int | None = None


@dataclass(slots=True, frozen=True)
class UnitFailure:
    """Terminal failure record for one unit, used in run reporting."""

    index: int
    attempts: int | None
    classification: FailureClassification | None
    reason: str
    message: str

    def describe(self) -> str:
        kind = self.classification.kind.value if self.classification else "-"
        attempts = f" after {self.attempts} attempt(s)" if self.attempts is not None else ""
        return (
            f"unit {self.index}: {self.reason}{attempts}, "
            f"last_classification={kind}: {self.message}"
        )


@dataclass(slots=True)
class RunSummary:
    """Aggregate run counters for CLI reporting."""

    total_units: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    cached: int = 0
    concurrency_limit: int | None = None

    def describe(self) -> str:
        return (
            f"succeeded={self.succeeded} failed={self.failed} retried={self.retried} "
            f"cached={self.cached} total={self.total_units} "
            f"concurrency_limit={self.concurrency_limit if self.concurrency_limit else '-'}"
        )


@dataclass(slots=True)
class BatchRunResult:
    """Outcome of a completed run."""

    run_id: str
    state: RunState
    merged: Any
    results: list[UnitResult]
    summary: RunSummary
