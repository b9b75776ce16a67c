"""Deterministic failure classification for the unit retry policy."""

from __future__ import annotations

from dataclasses import dataclass

from batch_heal.engine.models import FailureClassification, FailureKind, RecoveryAction

FAILURE_CLASSIFIER_VERSION = 1

UNKNOWN_FAILURE_WAIT_MS = 1_000


@dataclass(slots=True, frozen=True)
class ClassificationRule:
    """One row of the classification table; first matching row wins."""

    kind: FailureKind
    action: RecoveryAction
    wait_ms: int
    status_codes: tuple[int, ...] = ()
    patterns: tuple[str, ...] = ()


CLASSIFICATION_RULES: tuple[ClassificationRule, ...] = (
    ClassificationRule(
        kind=FailureKind.RATE_LIMITED,
        action=RecoveryAction.WAIT_AND_REDUCE_CONCURRENCY,
        wait_ms=60_000,
        status_codes=(429,),
        patterns=("rate limit",),
    ),
    ClassificationRule(
        kind=FailureKind.TRANSIENT,
        action=RecoveryAction.RETRY_FRESH,
        wait_ms=2_000,
        patterns=("connection", "network", "econnreset"),
    ),
    ClassificationRule(
        kind=FailureKind.TIMEOUT,
        action=RecoveryAction.RETRY_FRESH,
        wait_ms=5_000,
        patterns=("timeout", "timed out"),
    ),
    ClassificationRule(
        kind=FailureKind.UNAUTHORIZED,
        action=RecoveryAction.FAIL_FAST,
        wait_ms=0,
        status_codes=(401,),
        patterns=("api key", "unauthorized"),
    ),
    ClassificationRule(
        kind=FailureKind.PAYLOAD_TOO_LARGE,
        action=RecoveryAction.FAIL_FAST,
        wait_ms=0,
        status_codes=(413,),
        patterns=("too large",),
    ),
    ClassificationRule(
        kind=FailureKind.SERVICE_UNAVAILABLE,
        action=RecoveryAction.WAIT_AND_RETRY,
        wait_ms=30_000,
        status_codes=(503,),
        patterns=("overloaded", "unavailable"),
    ),
)


def classify_failure(
    *,
    message: str,
    status_code: int | None = None,
    rules: tuple[ClassificationRule, ...] = CLASSIFICATION_RULES,
) -> FailureClassification:
    """Classify a failure from its message text and optional status code."""

    haystack = message.lower()
    for rule in rules:
        if status_code is not None and status_code in rule.status_codes:
            return FailureClassification(
                kind=rule.kind,
                action=rule.action,
                wait_ms=rule.wait_ms,
                matched_pattern=f"status:{status_code}",
            )
        pattern = _first_match(haystack, rule.patterns)
        if pattern is not None:
            return FailureClassification(
                kind=rule.kind,
                action=rule.action,
                wait_ms=rule.wait_ms,
                matched_pattern=pattern,
            )

    return FailureClassification(
        kind=FailureKind.UNKNOWN,
        action=RecoveryAction.DIAGNOSE,
        wait_ms=UNKNOWN_FAILURE_WAIT_MS,
    )


def classify_exception(error: BaseException) -> FailureClassification:
    """Classify any raised exception.

    Empty messages fall back to the exception class name, so a bare
    ``TimeoutError()`` still lands in the timeout bucket.
    """

    return classify_failure(message=failure_message(error), status_code=failure_status(error))


def failure_message(error: BaseException) -> str:
    return str(error) or type(error).__name__


def failure_status(error: BaseException) -> int | None:
    for attribute in ("status_code", "status"):
        value = getattr(error, attribute, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    return None


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
