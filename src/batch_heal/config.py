"""Runtime configuration for batch execution and checkpoint storage."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(slots=True)
class ThrottleSettings:
    """Admission control settings."""

    initial_concurrency: int = 4
    increase_after_successes: int = 5


@dataclass(slots=True)
class RetrySettings:
    """Per-unit retry settings."""

    max_attempts: int = 3


@dataclass(slots=True)
class MergeSettings:
    """Retry budget of the merge step."""

    max_attempts: int = 2
    retry_delay_seconds: float = 1.0


@dataclass(slots=True)
class PlanningSettings:
    """Work-unit planning settings."""

    chunk_seconds: int = 600


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".batch_heal.db")
    checkpoint_dir: Path = Path(".batch_heal_checkpoints")
    sqlite_busy_timeout_ms: int = 5_000
    throttle: ThrottleSettings = field(default_factory=ThrottleSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    merge: MergeSettings = field(default_factory=MergeSettings)
    planning: PlanningSettings = field(default_factory=PlanningSettings)

    @classmethod
    def from_env(
        cls,
        db_path: Path | None = None,
        checkpoint_dir: Path | None = None,
    ) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("BATCH_HEAL_DB_PATH", ".batch_heal.db")),
            checkpoint_dir=checkpoint_dir
            or Path(os.getenv("BATCH_HEAL_CHECKPOINT_DIR", ".batch_heal_checkpoints")),
            sqlite_busy_timeout_ms=_env_int("BATCH_HEAL_SQLITE_BUSY_TIMEOUT_MS", 5_000),
            throttle=ThrottleSettings(
                initial_concurrency=_env_int("BATCH_HEAL_INITIAL_CONCURRENCY", 4),
                increase_after_successes=_env_int("BATCH_HEAL_INCREASE_AFTER_SUCCESSES", 5),
            ),
            retry=RetrySettings(
                max_attempts=_env_int("BATCH_HEAL_MAX_ATTEMPTS", 3),
            ),
            merge=MergeSettings(
                max_attempts=_env_int("BATCH_HEAL_MERGE_MAX_ATTEMPTS", 2),
                retry_delay_seconds=_env_float("BATCH_HEAL_MERGE_RETRY_DELAY_SECONDS", 1.0),
            ),
            planning=PlanningSettings(
                chunk_seconds=_env_int("BATCH_HEAL_CHUNK_SECONDS", 600),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for out-of-range values."""

        if self.throttle.initial_concurrency <= 0:
            raise ValueError("BATCH_HEAL_INITIAL_CONCURRENCY must be > 0.")
        if self.throttle.increase_after_successes <= 0:
            raise ValueError("BATCH_HEAL_INCREASE_AFTER_SUCCESSES must be > 0.")
        if self.retry.max_attempts <= 0:
            raise ValueError("BATCH_HEAL_MAX_ATTEMPTS must be > 0.")
        if self.merge.max_attempts <= 0:
            raise ValueError("BATCH_HEAL_MERGE_MAX_ATTEMPTS must be > 0.")
        if self.merge.retry_delay_seconds < 0:
            raise ValueError("BATCH_HEAL_MERGE_RETRY_DELAY_SECONDS must be >= 0.")
        if self.planning.chunk_seconds <= 0:
            raise ValueError("BATCH_HEAL_CHUNK_SECONDS must be > 0.")
        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("BATCH_HEAL_SQLITE_BUSY_TIMEOUT_MS must be > 0.")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid float value for {name}: {value!r}") from error
