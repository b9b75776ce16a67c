"""Controllers for planning and checkpoint inspection CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from batch_heal.config import Settings
from batch_heal.engine.checkpoint import FileCheckpointStore
from batch_heal.engine.merge import parse_vtt, render_transcript_text
from batch_heal.engine.planning import FixedWindowChunker, MediaSource
from batch_heal.engine.repository import CheckpointRepository


@dataclass(slots=True)
class PlanCommand:
    """CLI input for a planning preview."""

    source: str
    duration_seconds: float
    chunk_seconds: int | None


@dataclass(slots=True)
class VttCommand:
    """CLI input for rendering an existing WebVTT transcript."""

    path: Path


@dataclass(slots=True)
class RunsListCommand:
    """CLI input for listing journaled runs."""

    db_path: Path | None
    limit: int


@dataclass(slots=True)
class RunInspectCommand:
    """CLI input for run details."""

    db_path: Path | None
    run_id: str


@dataclass(slots=True)
class CheckpointsListCommand:
    """CLI input for checkpoint listing."""

    db_path: Path | None
    run_id: str


@dataclass(slots=True)
class CheckpointFilesCommand:
    """CLI input for listing file-store checkpoints."""

    checkpoint_dir: Path | None
    run_id: str


class BatchCliController:
    """Coordinates planning preview and run/checkpoint inspection."""

    def plan(self, command: PlanCommand) -> list[str]:
        settings = _load_settings()
        chunk_seconds = command.chunk_seconds or settings.planning.chunk_seconds
        chunker = FixedWindowChunker(chunk_seconds=chunk_seconds)
        source = MediaSource(path=command.source, duration_seconds=command.duration_seconds)
        units = chunker.plan(source)

        lines = [
            f"Run id: {chunker.run_id_for(source)}",
            f"Units: {len(units)} (chunk_seconds={chunk_seconds})",
        ]
        lines.extend(
            f"  [{unit.index}] offset={unit.sequence_offset:g}s locator={unit.locator}"
            for unit in units
        )
        return lines

    def render_vtt(self, command: VttCommand) -> list[str]:
        merged = parse_vtt(command.path.read_text("utf-8"))
        if not merged["segments"]:
            return [f"No cues found in {command.path}."]
        return render_transcript_text(merged).split("\n")

    def list_runs(self, command: RunsListCommand) -> list[str]:
        settings = _load_settings(db_path=command.db_path)
        with _repository(settings) as repository:
            runs = repository.list_runs(limit=command.limit)

        if not runs:
            return ["No runs recorded."]
        return [
            f"{run.run_id} status={run.status} units={run.total_units} "
            f"succeeded={run.succeeded} failed={run.failed} cached={run.cached} "
            f"retried={run.retried} started={_format_dt(run.started_at)} source={run.source}"
            for run in runs
        ]

    def inspect_run(self, command: RunInspectCommand) -> list[str]:
        settings = _load_settings(db_path=command.db_path)
        with _repository(settings) as repository:
            run = repository.get_run(run_id=command.run_id)
            indices = repository.list_checkpoint_indices(run_id=command.run_id)

        if run is None:
            return [f"Run not found: {command.run_id}"]
        checkpointed = set(indices)
        missing = [index for index in range(run.total_units) if index not in checkpointed]
        lines = [
            f"Run: {run.run_id}",
            f"Source: {run.source}",
            f"Status: {run.status}",
            f"Units: total={run.total_units} checkpointed={len(indices)}",
            f"Counts: succeeded={run.succeeded} failed={run.failed} "
            f"retried={run.retried} cached={run.cached}",
            f"Concurrency limit at finish: {run.concurrency_limit or '-'}",
            f"Started: {_format_dt(run.started_at)}",
            f"Finished: {_format_dt(run.finished_at)}",
            f"Pending units: {', '.join(str(index) for index in missing) or '-'}",
        ]
        if run.error_summary:
            lines.append(f"Error: {run.error_summary}")
        return lines

    def list_checkpoints(self, command: CheckpointsListCommand) -> list[str]:
        settings = _load_settings(db_path=command.db_path)
        with _repository(settings) as repository:
            checkpoints = repository.list_checkpoints(run_id=command.run_id)

        if not checkpoints:
            return [f"No checkpoints for run {command.run_id}."]
        return [
            f"[{checkpoint.unit_index}] sha256={checkpoint.checksum_sha256[:12]} "
            f"chars={checkpoint.size_chars} created={_format_dt(checkpoint.created_at)}"
            for checkpoint in checkpoints
        ]

    def list_checkpoint_files(self, command: CheckpointFilesCommand) -> list[str]:
        settings = _load_settings(checkpoint_dir=command.checkpoint_dir)
        store = FileCheckpointStore.from_settings(settings, command.run_id)
        indices = store.indices()

        if not indices:
            return [f"No checkpoint files in {store.run_dir}."]
        lines = [f"Directory: {store.run_dir}"]
        lines.extend(f"[{index}] {store.path_for(index).name}" for index in indices)
        return lines


def _load_settings(
    *,
    db_path: Path | None = None,
    checkpoint_dir: Path | None = None,
) -> Settings:
    settings = Settings.from_env(db_path=db_path, checkpoint_dir=checkpoint_dir)
    settings.validate()
    return settings


def _format_dt(value: datetime | None) -> str:
    return value.isoformat(timespec="seconds") if value is not None else "-"


@contextmanager
def _repository(settings: Settings) -> Iterator[CheckpointRepository]:
    repository = CheckpointRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
