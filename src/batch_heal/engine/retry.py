"""Per-unit attempt loop driven by the failure classifier."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from batch_heal.engine.contracts import DiagnosticOracle, UnitProcessor
from batch_heal.engine.failure_classifier import classify_exception, failure_status
from batch_heal.engine.models import (
    Diagnosis,
    DiagnosisContext,
    FailureClassification,
    RecoveryAction,
    UnitResult,
    WorkUnit,
)
from batch_heal.engine.throttle import ConcurrencyController

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3

REASON_FAIL_FAST = "fail_fast"
REASON_DIAGNOSED_UNRECOVERABLE = "diagnosed_unrecoverable"
REASON_EXHAUSTED = "exhausted"


class TerminalUnitError(RuntimeError):
    """A unit failed and will not be retried in this run."""

    def __init__(
        self,
        *,
        index: int,
        attempts: int,
        classification: FailureClassification,
        reason: str,
        message: str,
    ) -> None:
        super().__init__(
            f"Unit {index} failed ({reason}, {classification.kind.value}) "
            f"after {attempts} attempt(s): {message}",
        )
        self.index = index
        self.attempts = attempts
        self.classification = classification
        self.reason = reason
        self.detail = message


class RetryExecutor:
    """Runs one unit through up to ``max_attempts`` classified attempts."""

    def __init__(
        self,
        *,
        processor: UnitProcessor,
        controller: ConcurrencyController,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        oracle: DiagnosticOracle | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.processor = processor
        self.controller = controller
        self.max_attempts = max_attempts
        self.oracle = oracle
        self._sleep = sleep

    def execute(self, unit: WorkUnit, *, total_units: int | None = None) -> UnitResult:
        """Return the unit result or raise :class:`TerminalUnitError`."""

        for attempt in range(1, self.max_attempts + 1):
            try:
                payload = self.processor.process(unit)
            except Exception as error:  # noqa: BLE001
                classification = classify_exception(error)
                final_attempt = attempt == self.max_attempts
                logger.warning(
                    "Unit %d attempt %d/%d: %s (%s)",
                    unit.index,
                    attempt,
                    self.max_attempts,
                    classification.kind.value,
                    error,
                )
                delay = self._recover(
                    unit=unit,
                    error=error,
                    classification=classification,
                    attempt=attempt,
                    final_attempt=final_attempt,
                    total_units=total_units,
                )
                if final_attempt:
                    raise TerminalUnitError(
                        index=unit.index,
                        attempts=attempt,
                        classification=classification,
                        reason=REASON_EXHAUSTED,
                        message=str(error),
                    ) from error
                self._sleep(delay)
                continue

            self.controller.report_success()
            return UnitResult(index=unit.index, payload=payload)

        raise AssertionError("unreachable: attempt loop always returns or raises")

    def _recover(  # noqa: PLR0913
        self,
        *,
        unit: WorkUnit,
        error: Exception,
        classification: FailureClassification,
        attempt: int,
        final_attempt: bool,
        total_units: int | None,
    ) -> float:
        """Apply the classified action and return the backoff in seconds."""

        will_retry = not final_attempt
        action = classification.action
        if action is RecoveryAction.FAIL_FAST:
            raise TerminalUnitError(
                index=unit.index,
                attempts=attempt,
                classification=classification,
                reason=REASON_FAIL_FAST,
                message=str(error),
            ) from error

        if action is RecoveryAction.WAIT_AND_REDUCE_CONCURRENCY:
            self.controller.report_rate_limited(will_retry=will_retry)
            return classification.wait_seconds

        if action in {RecoveryAction.RETRY_FRESH, RecoveryAction.WAIT_AND_RETRY}:
            self.controller.report_other_failure(will_retry=will_retry)
            return classification.wait_seconds

        self.controller.report_other_failure(will_retry=will_retry)
        if final_attempt:
            diagnosis = self._diagnose(
                error=error,
                context=DiagnosisContext(
                    unit_index=unit.index,
                    total_units=total_units,
                    locator=unit.locator,
                    attempt=attempt,
                    status_code=failure_status(error),
                ),
            )
            if not diagnosis.recoverable:
                raise TerminalUnitError(
                    index=unit.index,
                    attempts=attempt,
                    classification=classification,
                    reason=REASON_DIAGNOSED_UNRECOVERABLE,
                    message=diagnosis.explanation,
                ) from error
        return classification.wait_seconds * attempt

    def _diagnose(self, *, error: Exception, context: DiagnosisContext) -> Diagnosis:
        if self.oracle is None:
            return Diagnosis(recoverable=True, explanation="no diagnostic oracle configured")

        logger.info("Invoking diagnosis for unit %d", context.unit_index)
        try:
            diagnosis = self.oracle.diagnose(error, context)
        except Exception as oracle_error:  # noqa: BLE001
            logger.warning(
                "Diagnosis failed for unit %d, using default recovery: %s",
                context.unit_index,
                oracle_error,
            )
            return Diagnosis(
                recoverable=True,
                explanation="diagnostic oracle unavailable",
                suggestion="Retry with backoff",
            )
        logger.info(
            "Diagnosis for unit %d: %s (suggestion: %s)",
            context.unit_index,
            diagnosis.explanation,
            diagnosis.suggestion or "-",
        )
        return diagnosis
