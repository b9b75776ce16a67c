"""SQLite persistence for unit checkpoints and the run journal."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from batch_heal.engine.checkpoint import (
    CheckpointConflictError,
    decode_payload,
    encode_payload,
    payload_checksum,
    validate_checkpoint_index,
)
from batch_heal.engine.models import RunState, RunSummary, UnitResult
from batch_heal.storage.alembic_runner import upgrade_head
from batch_heal.storage.common import build_sqlite_engine, to_utc_aware, utc_now
from batch_heal.storage.sqlmodel_models import BatchRun, UnitCheckpoint


@dataclass(slots=True)
class BatchRunView:
    """Readable run journal entry for CLI."""

    run_id: str
    source: str
    status: str
    total_units: int
    succeeded: int
    failed: int
    retried: int
    cached: int
    concurrency_limit: int | None
    error_summary: str | None
    started_at: datetime
    finished_at: datetime | None


@dataclass(slots=True)
class CheckpointView:
    """Stored checkpoint metadata without the payload."""

    run_id: str
    unit_index: int
    checksum_sha256: str
    size_chars: int
    created_at: datetime


class CheckpointRepository:
    """Checkpoint and run journal facade backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def store_for(self, run_id: str) -> SqliteCheckpointStore:
        return SqliteCheckpointStore(repository=self, run_id=run_id)

    # -- checkpoints -----------------------------------------------------------

    def has_checkpoint(self, *, run_id: str, index: int) -> bool:
        with Session(self.engine) as session:
            return session.get(UnitCheckpoint, (run_id, index)) is not None

    def get_checkpoint(self, *, run_id: str, index: int) -> UnitResult | None:
        with Session(self.engine) as session:
            row = session.get(UnitCheckpoint, (run_id, index))
            if row is None:
                return None
            return UnitResult(index=index, payload=decode_payload(row.payload_json))

    def put_checkpoint(self, *, run_id: str, index: int, result: UnitResult) -> None:
        """Insert a checkpoint; identical re-puts are no-ops, different ones raise."""

        validate_checkpoint_index(index, result)
        text = encode_payload(result.payload)
        checksum = payload_checksum(text)
        with Session(self.engine) as session:
            existing = session.get(UnitCheckpoint, (run_id, index))
            if existing is not None:
                _ensure_same_content(existing, index=index, text=text)
                return
            session.add(
                UnitCheckpoint(
                    run_id=run_id,
                    unit_index=index,
                    payload_json=text,
                    checksum_sha256=checksum,
                    created_at=utc_now(),
                ),
            )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                concurrent = session.get(UnitCheckpoint, (run_id, index))
                if concurrent is None:
                    raise
                _ensure_same_content(concurrent, index=index, text=text)

    def list_checkpoint_indices(self, *, run_id: str) -> list[int]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(UnitCheckpoint.unit_index)
                .where(UnitCheckpoint.run_id == run_id)
                .order_by(col(UnitCheckpoint.unit_index).asc()),
            ).all()
            return list(rows)

    def list_checkpoints(self, *, run_id: str) -> list[CheckpointView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(UnitCheckpoint)
                .where(UnitCheckpoint.run_id == run_id)
                .order_by(col(UnitCheckpoint.unit_index).asc()),
            ).all()
            return [
                CheckpointView(
                    run_id=row.run_id,
                    unit_index=row.unit_index,
                    checksum_sha256=row.checksum_sha256,
                    size_chars=len(row.payload_json),
                    created_at=to_utc_aware(row.created_at),
                )
                for row in rows
            ]

    # -- run journal -------------------------------------------------------------

    def record_run_started(self, *, run_id: str, source: str, total_units: int) -> None:
        """Create or reset the journal row for a (re)started run."""

        with Session(self.engine) as session:
            row = session.get(BatchRun, run_id)
            if row is None:
                row = BatchRun(
                    run_id=run_id,
                    source=source,
                    status=RunState.DISPATCHING.value,
                    total_units=total_units,
                    started_at=utc_now(),
                )
            else:
                row.source = source
                row.status = RunState.DISPATCHING.value
                row.total_units = total_units
                row.error_summary = None
                row.started_at = utc_now()
                row.finished_at = None
            session.add(row)
            session.commit()

    def record_run_finished(
        self,
        *,
        run_id: str,
        state: RunState,
        summary: RunSummary,
        error_summary: str | None,
    ) -> None:
        with Session(self.engine) as session:
            row = session.get(BatchRun, run_id)
            if row is None:
                raise KeyError(f"Run not found: {run_id}")
            row.status = state.value
            row.total_units = summary.total_units
            row.succeeded_count = summary.succeeded
            row.failed_count = summary.failed
            row.retried_count = summary.retried
            row.cached_count = summary.cached
            row.concurrency_limit = summary.concurrency_limit
            row.error_summary = error_summary
            row.finished_at = utc_now()
            session.add(row)
            session.commit()

    def get_run(self, *, run_id: str) -> BatchRunView | None:
        with Session(self.engine) as session:
            row = session.get(BatchRun, run_id)
            return _to_run_view(row) if row is not None else None

    def list_runs(self, *, limit: int = 20) -> list[BatchRunView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(BatchRun).order_by(col(BatchRun.started_at).desc()).limit(limit),
            ).all()
            return [_to_run_view(row) for row in rows]


class SqliteCheckpointStore:
    """:class:`CheckpointStore` view of one run inside a repository."""

    def __init__(self, *, repository: CheckpointRepository, run_id: str) -> None:
        self.repository = repository
        self.run_id = run_id

    def has(self, index: int) -> bool:
        return self.repository.has_checkpoint(run_id=self.run_id, index=index)

    def get(self, index: int) -> UnitResult | None:
        return self.repository.get_checkpoint(run_id=self.run_id, index=index)

    def put(self, index: int, result: UnitResult) -> None:
        self.repository.put_checkpoint(run_id=self.run_id, index=index, result=result)

    def indices(self) -> list[int]:
        return self.repository.list_checkpoint_indices(run_id=self.run_id)


def _ensure_same_content(row: UnitCheckpoint, *, index: int, text: str) -> None:
    if row.payload_json != text:
        raise CheckpointConflictError(index)


def _to_run_view(row: BatchRun) -> BatchRunView:
    return BatchRunView(
        run_id=row.run_id,
        source=row.source,
        status=row.status,
        total_units=row.total_units,
        succeeded=row.succeeded_count,
        failed=row.failed_count,
        retried=row.retried_count,
        cached=row.cached_count,
        concurrency_limit=row.concurrency_limit,
        error_summary=row.error_summary,
        started_at=to_utc_aware(row.started_at),
        finished_at=to_utc_aware(row.finished_at) if row.finished_at is not None else None,
    )
