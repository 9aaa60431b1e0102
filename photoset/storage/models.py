"""SQLAlchemy ORM models for generation jobs and the per-unit task ledger."""

from __future__ import annotations

from datetime import datetime
from typing import Optional
import uuid

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from photoset.storage.db import Base


def _uuid() -> str:
    return str(uuid.uuid4())


class GenerationJob(Base):
    __tablename__ = "generation_jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    owner_ref: Mapped[str] = mapped_column(String(64), nullable=False)
    subject_ref: Mapped[str] = mapped_column(String(64), nullable=False)
    style_id: Mapped[str] = mapped_column(String(40), nullable=False)
    total_units: Mapped[int] = mapped_column(Integer, nullable=False)
    completed_units: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    error_message: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)
    reference_inputs_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    explicit_unit_texts_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    ledger_entries: Mapped[list[TaskLedgerEntry]] = relationship(
        "TaskLedgerEntry",
        back_populates="job",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        UniqueConstraint("owner_ref", "idempotency_key", name="uq_generation_jobs_owner_idempotency"),
        CheckConstraint("total_units >= 1", name="ck_generation_jobs_total_units_positive"),
        CheckConstraint(
            "completed_units >= 0 AND completed_units <= total_units",
            name="ck_generation_jobs_completed_units_range",
        ),
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="ck_generation_jobs_status",
        ),
        Index("ix_generation_jobs_status_updated_at", "status", "updated_at"),
        Index("ix_generation_jobs_owner_created_at", "owner_ref", "created_at"),
    )


class TaskLedgerEntry(Base):
    __tablename__ = "task_ledger_entries"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    job_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("generation_jobs.id", ondelete="CASCADE"),
        nullable=False,
    )
    unit_index: Mapped[int] = mapped_column(Integer, nullable=False)
    external_task_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    prompt_snapshot: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    error_message: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    result_url: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    job: Mapped[GenerationJob] = relationship("GenerationJob", back_populates="ledger_entries")

    __table_args__ = (
        UniqueConstraint("job_id", "unit_index", name="uq_task_ledger_job_unit"),
        CheckConstraint("status IN ('pending', 'completed', 'failed')", name="ck_task_ledger_status"),
        Index("ix_task_ledger_status_created_at", "status", "created_at"),
        Index("ix_task_ledger_external_task_id", "external_task_id"),
    )
