"""Adaptive, self-healing batch execution engine.

A long recording is planned into densely indexed work units, each unit is
run through a classified retry loop under an AIMD admission gate, and every
successful unit is checkpointed before it counts as done. A crashed or
failed run is resumed by running it again with the same run id: checkpointed
units are skipped and the final merge is identical to an uninterrupted run.
"""

from batch_heal.engine.checkpoint import (
    CheckpointConflictError,
    CheckpointStore,
    FileCheckpointStore,
    InMemoryCheckpointStore,
)
from batch_heal.engine.contracts import UnitProcessingError
from batch_heal.engine.failure_classifier import classify_exception, classify_failure
from batch_heal.engine.models import (
    BatchRunResult,
    Diagnosis,
    DiagnosisContext,
    FailureClassification,
    FailureKind,
    RecoveryAction,
    RunState,
    RunSummary,
    UnitResult,
    WorkUnit,
)
from batch_heal.engine.retry import RetryExecutor, TerminalUnitError
from batch_heal.engine.runner import (
    BatchOrchestrator,
    BatchRunError,
    MergeFailedError,
    UnitsFailedError,
)
from batch_heal.engine.throttle import ConcurrencyController

__all__ = [
    "BatchOrchestrator",
    "BatchRunError",
    "BatchRunResult",
    "CheckpointConflictError",
    "CheckpointStore",
    "ConcurrencyController",
    "Diagnosis",
    "DiagnosisContext",
    "FailureClassification",
    "FailureKind",
    "FileCheckpointStore",
    "InMemoryCheckpointStore",
    "MergeFailedError",
    "RecoveryAction",
    "RetryExecutor",
    "RunState",
    "RunSummary",
    "TerminalUnitError",
    "UnitProcessingError",
    "UnitResult",
    "UnitsFailedError",
    "WorkUnit",
    "classify_exception",
    "classify_failure",
]
