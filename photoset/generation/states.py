"""Job and ledger state machines with their persistence helpers.

Each writer touches only the columns its actor owns. The dispatcher claims
jobs (pending -> processing), annotates errors and inserts ledger rows. The
poller terminalizes ledger rows, raises progress and finalizes jobs. Every
status change is a conditional UPDATE, so concurrent writers arbitrate in the
store instead of in application memory.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from photoset.storage.models import GenerationJob, TaskLedgerEntry


JOB_STATUS_PENDING = "pending"
JOB_STATUS_PROCESSING = "processing"
JOB_STATUS_COMPLETED = "completed"
JOB_STATUS_FAILED = "failed"

LEDGER_STATUS_PENDING = "pending"
LEDGER_STATUS_COMPLETED = "completed"
LEDGER_STATUS_FAILED = "failed"

TERMINAL_JOB_STATUSES = {JOB_STATUS_COMPLETED, JOB_STATUS_FAILED}
ACTIVE_JOB_STATUSES = (JOB_STATUS_PENDING, JOB_STATUS_PROCESSING)

MAX_ERROR_CHARS = 500


@dataclass(frozen=True)
class LedgerCounts:
    total: int = 0
    pending: int = 0
    completed: int = 0
    failed: int = 0


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _truncate(message: str) -> str:
    return str(message)[:MAX_ERROR_CHARS]


def is_terminal(status: str) -> bool:
    return status in TERMINAL_JOB_STATUSES


def get_job(session: Session, job_id: str) -> Optional[GenerationJob]:
    statement = (
        select(GenerationJob)
        .where(GenerationJob.id == job_id)
        .execution_options(populate_existing=True)
    )
    return session.scalar(statement)


def claim_job(session: Session, job_id: str) -> bool:
    """Atomically move a job from pending to processing.

    Returns True only for the caller whose UPDATE changed the row.
    """

    result = session.execute(
        update(GenerationJob)
        .where(
            GenerationJob.id == job_id,
            GenerationJob.status == JOB_STATUS_PENDING,
        )
        .values(status=JOB_STATUS_PROCESSING, updated_at=_now_utc())
        .execution_options(synchronize_session=False)
    )
    session.commit()
    return int(result.rowcount or 0) == 1


def annotate_job_error(session: Session, job_id: str, message: str) -> bool:
    """Record a non-terminal error on an active job without changing its status."""

    result = session.execute(
        update(GenerationJob)
        .where(
            GenerationJob.id == job_id,
            GenerationJob.status.in_(ACTIVE_JOB_STATUSES),
        )
        .values(error_message=_truncate(message), updated_at=_now_utc())
        .execution_options(synchronize_session=False)
    )
    session.commit()
    return int(result.rowcount or 0) == 1


def clear_job_error(session: Session, job_id: str) -> None:
    session.execute(
        update(GenerationJob)
        .where(
            GenerationJob.id == job_id,
            GenerationJob.status == JOB_STATUS_PROCESSING,
            GenerationJob.error_message.is_not(None),
        )
        .values(error_message=None, updated_at=_now_utc())
        .execution_options(synchronize_session=False)
    )
    session.commit()


def touch_job(session: Session, job_id: str) -> None:
    session.execute(
        update(GenerationJob)
        .where(
            GenerationJob.id == job_id,
            GenerationJob.status == JOB_STATUS_PROCESSING,
        )
        .values(updated_at=_now_utc())
        .execution_options(synchronize_session=False)
    )
    session.commit()


def ledger_entry_exists(session: Session, job_id: str, unit_index: int) -> bool:
    entry_id = session.scalar(
        select(TaskLedgerEntry.id).where(
            TaskLedgerEntry.job_id == job_id,
            TaskLedgerEntry.unit_index == unit_index,
        )
    )
    return entry_id is not None


def record_ledger_entry(
    session: Session,
    *,
    job_id: str,
    unit_index: int,
    prompt_snapshot: str,
    external_task_id: Optional[str] = None,
    error_message: Optional[str] = None,
) -> bool:
    """Insert the single ledger row for ``(job_id, unit_index)``.

    A row with a task id starts as pending, a row without one is recorded as
    failed. Returns False when the unique key already holds a row.
    """

    status = LEDGER_STATUS_PENDING if external_task_id else LEDGER_STATUS_FAILED
    entry = TaskLedgerEntry(
        job_id=job_id,
        unit_index=unit_index,
        external_task_id=external_task_id,
        prompt_snapshot=prompt_snapshot,
        status=status,
        error_message=_truncate(error_message) if error_message else None,
    )
    session.add(entry)
    try:
        session.commit()
        return True
    except IntegrityError:
        session.rollback()
        return False


def ledger_counts(session: Session, job_id: str) -> LedgerCounts:
    rows = session.execute(
        select(TaskLedgerEntry.status, func.count(TaskLedgerEntry.id))
        .where(TaskLedgerEntry.job_id == job_id)
        .group_by(TaskLedgerEntry.status)
    ).all()
    by_status = {str(status): int(count) for status, count in rows}
    return LedgerCounts(
        total=sum(by_status.values()),
        pending=by_status.get(LEDGER_STATUS_PENDING, 0),
        completed=by_status.get(LEDGER_STATUS_COMPLETED, 0),
        failed=by_status.get(LEDGER_STATUS_FAILED, 0),
    )


def list_pending_ledger_entries(session: Session, *, limit: int) -> list[TaskLedgerEntry]:
    statement = (
        select(TaskLedgerEntry)
        .where(
            TaskLedgerEntry.status == LEDGER_STATUS_PENDING,
            TaskLedgerEntry.external_task_id.is_not(None),
        )
        .order_by(TaskLedgerEntry.created_at.asc(), TaskLedgerEntry.unit_index.asc())
        .limit(max(1, limit))
        .execution_options(populate_existing=True)
    )
    return list(session.scalars(statement).all())


def _terminalize_ledger_entry(
    session: Session,
    entry_id: str,
    *,
    status: str,
    result_url: Optional[str] = None,
    error_message: Optional[str] = None,
) -> bool:
    result = session.execute(
        update(TaskLedgerEntry)
        .where(
            TaskLedgerEntry.id == entry_id,
            TaskLedgerEntry.status == LEDGER_STATUS_PENDING,
        )
        .values(
            status=status,
            result_url=result_url,
            error_message=_truncate(error_message) if error_message else None,
            updated_at=_now_utc(),
        )
        .execution_options(synchronize_session=False)
    )
    session.commit()
    return int(result.rowcount or 0) == 1


def mark_ledger_completed(session: Session, entry_id: str, *, result_url: str) -> bool:
    return _terminalize_ledger_entry(
        session,
        entry_id,
        status=LEDGER_STATUS_COMPLETED,
        result_url=result_url,
    )


def mark_ledger_failed(session: Session, entry_id: str, *, error_message: str) -> bool:
    return _terminalize_ledger_entry(
        session,
        entry_id,
        status=LEDGER_STATUS_FAILED,
        error_message=error_message,
    )


def bump_ledger_attempts(session: Session, entry_id: str) -> None:
    session.execute(
        update(TaskLedgerEntry)
        .where(
            TaskLedgerEntry.id == entry_id,
            TaskLedgerEntry.status == LEDGER_STATUS_PENDING,
        )
        .values(attempts=TaskLedgerEntry.attempts + 1, updated_at=_now_utc())
        .execution_options(synchronize_session=False)
    )
    session.commit()


def sync_job_progress(session: Session, job_id: str) -> int:
    """Raise completed_units to the ledger's completed count; never lowers it."""

    counts = ledger_counts(session, job_id)
    completed = counts.completed
    session.execute(
        update(GenerationJob)
        .where(
            GenerationJob.id == job_id,
            GenerationJob.completed_units < completed,
            GenerationJob.total_units >= completed,
        )
        .values(completed_units=completed, updated_at=_now_utc())
        .execution_options(synchronize_session=False)
    )
    session.commit()
    return completed


def finalize_job(session: Session, job_id: str, *, completion_threshold: float) -> Optional[str]:
    """Terminalize a processing job once every unit has a terminal ledger row.

    Returns the terminal status applied, or None when the job is not ready or
    another writer got there first.
    """

    job = get_job(session, job_id)
    if job is None or job.status != JOB_STATUS_PROCESSING:
        return None

    counts = ledger_counts(session, job_id)
    if counts.total < job.total_units or counts.pending > 0:
        return None

    success_ratio = counts.completed / job.total_units
    final_status = JOB_STATUS_COMPLETED if success_ratio >= completion_threshold else JOB_STATUS_FAILED
    values = {
        "status": final_status,
        "finished_at": _now_utc(),
        "updated_at": _now_utc(),
    }
    if final_status == JOB_STATUS_FAILED:
        values["error_message"] = _truncate(
            f"{counts.completed} of {job.total_units} units completed; below completion threshold"
        )

    result = session.execute(
        update(GenerationJob)
        .where(
            GenerationJob.id == job_id,
            GenerationJob.status == JOB_STATUS_PROCESSING,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    session.commit()
    if int(result.rowcount or 0) != 1:
        return None
    return final_status


def force_fail_job(session: Session, job_id: str, *, reason: str) -> bool:
    """Operator override: fail any job that has not reached a terminal status."""

    result = session.execute(
        update(GenerationJob)
        .where(
            GenerationJob.id == job_id,
            GenerationJob.status.in_(ACTIVE_JOB_STATUSES),
        )
        .values(
            status=JOB_STATUS_FAILED,
            error_message=_truncate(reason),
            finished_at=_now_utc(),
            updated_at=_now_utc(),
        )
        .execution_options(synchronize_session=False)
    )
    session.commit()
    return int(result.rowcount or 0) == 1
