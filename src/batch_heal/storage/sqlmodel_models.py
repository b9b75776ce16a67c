"""SQLModel ORM tables for the run journal and unit checkpoints."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, PrimaryKeyConstraint, Text
from sqlmodel import Field, SQLModel


class BatchRun(SQLModel, table=True):
    __tablename__ = "batch_runs"  # type: ignore[bad-override]

    run_id: str = Field(primary_key=True)
    source: str = Field(sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    total_units: int = 0
    succeeded_count: int = 0
    failed_count: int = 0
    retried_count: int = 0
    cached_count: int = 0
    concurrency_limit: int | None = None
    error_summary: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    finished_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )


class UnitCheckpoint(SQLModel, table=True):
    __tablename__ = "unit_checkpoints"  # type: ignore[bad-override]
    __table_args__ = (PrimaryKeyConstraint("run_id", "unit_index", name="pk_unit_checkpoints"),)

    run_id: str = Field(index=True)
    unit_index: int
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    checksum_sha256: str
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
