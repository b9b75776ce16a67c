"""Deterministic work-unit planning and run identity."""

from __future__ import annotations

import hashlib
import math
from collections.abc import Sequence
from dataclasses import dataclass

from batch_heal.engine.models import WorkUnit

DEFAULT_CHUNK_SECONDS = 600


class PlanningError(ValueError):
    """Chunker produced a sequence that cannot be resumed safely."""


@dataclass(slots=True, frozen=True)
class MediaSource:
    """A recording to be processed in fixed-length windows."""

    path: str
    duration_seconds: float


def derive_run_id(*parts: object) -> str:
    """Stable short identity for checkpoints of one (source, chunking) pair."""

    digest = hashlib.sha256("\x1f".join(str(part) for part in parts).encode("utf-8"))
    return digest.hexdigest()[:16]


def plan_fixed_windows(
    *,
    path: str,
    duration_seconds: float,
    chunk_seconds: int = DEFAULT_CHUNK_SECONDS,
) -> list[WorkUnit]:
    """Split ``[0, duration)`` into ``ceil(duration / chunk)`` windows."""

    if chunk_seconds <= 0:
        raise ValueError("chunk_seconds must be > 0")
    if duration_seconds < 0:
        raise ValueError("duration_seconds must be >= 0")

    count = math.ceil(duration_seconds / chunk_seconds)
    units: list[WorkUnit] = []
    for index in range(count):
        start = index * chunk_seconds
        end = min(start + chunk_seconds, duration_seconds)
        units.append(
            WorkUnit(
                index=index,
                locator=f"{path}#t={_format_seconds(start)},{_format_seconds(end)}",
                sequence_offset=float(start),
            ),
        )
    return units


class FixedWindowChunker:
    """Chunker for :class:`MediaSource` inputs."""

    def __init__(self, chunk_seconds: int = DEFAULT_CHUNK_SECONDS) -> None:
        if chunk_seconds <= 0:
            raise ValueError("chunk_seconds must be > 0")
        self.chunk_seconds = chunk_seconds

    def plan(self, source: MediaSource) -> list[WorkUnit]:
        return plan_fixed_windows(
            path=source.path,
            duration_seconds=source.duration_seconds,
            chunk_seconds=self.chunk_seconds,
        )

    def run_id_for(self, source: MediaSource) -> str:
        return derive_run_id(source.path, source.duration_seconds, self.chunk_seconds)


def validate_plan(units: Sequence[WorkUnit]) -> list[WorkUnit]:
    """Return units sorted by index, requiring dense zero-based indices."""

    ordered = sorted(units, key=lambda unit: unit.index)
    for expected, unit in enumerate(ordered):
        if unit.index != expected:
            raise PlanningError(
                f"Work unit indices must be dense and zero-based; "
                f"expected {expected}, got {unit.index}",
            )
    return ordered


def _format_seconds(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return f"{value:.3f}"
