"""Collaborator contracts consumed by the batch engine.

Chunking, unit processing and diagnosis are supplied by the caller; the
engine only depends on these narrow protocols.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any, Protocol, runtime_checkable

from batch_heal.engine.models import (
    Diagnosis,
    DiagnosisContext,
    RunState,
    RunSummary,
    UnitResult,
    WorkUnit,
)


class UnitProcessingError(RuntimeError):
    """Classifiable failure raised by a unit processor."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@runtime_checkable
class Chunker(Protocol):
    """Turns a source into a deterministic, densely indexed unit sequence."""

    def plan(self, source: Any) -> Sequence[WorkUnit]: ...


@runtime_checkable
class UnitProcessor(Protocol):
    """Turns one work unit into a JSON-serializable payload or raises."""

    def process(self, unit: WorkUnit) -> Any: ...


@runtime_checkable
class DiagnosticOracle(Protocol):
    """Advisory service consulted for unclassified failures."""

    def diagnose(self, failure: BaseException, context: DiagnosisContext) -> Diagnosis: ...


class Merger(Protocol):
    """Combines ordered unit results into the final output."""

    def __call__(self, units: Sequence[WorkUnit], results: Sequence[UnitResult]) -> Any: ...


class RunJournal(Protocol):
    """Optional durable record of run starts and finishes."""

    def record_run_started(self, *, run_id: str, source: str, total_units: int) -> None: ...

    def record_run_finished(
        self,
        *,
        run_id: str,
        state: RunState,
        summary: RunSummary,
        error_summary: str | None,
    ) -> None: ...
