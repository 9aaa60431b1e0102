"""Completion poller and stale-job sweeper.

The poller owns the terminal transitions of ledger rows and the completion
of jobs. It runs on an external schedule (see ``/cron/poll-tasks``) and does
bounded work per invocation.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import time
from typing import Callable, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from photoset.core.config import get_settings
from photoset.core.logger import get_logger
from photoset.core.metrics import record_job_finalized, record_ledger_transition
from photoset.generation.providers.base import (
    TASK_STATE_COMPLETED,
    TASK_STATE_FAILED,
    ImageTaskProvider,
    ProviderStatusError,
)
from photoset.generation.states import (
    JOB_STATUS_FAILED,
    JOB_STATUS_PENDING,
    JOB_STATUS_PROCESSING,
    LEDGER_STATUS_COMPLETED,
    LEDGER_STATUS_FAILED,
    bump_ledger_attempts,
    finalize_job,
    force_fail_job,
    list_pending_ledger_entries,
    mark_ledger_completed,
    mark_ledger_failed,
    sync_job_progress,
)
from photoset.storage.models import GenerationJob


TIMEOUT_ERROR = "timeout"


@dataclass
class PollSummary:
    scanned: int = 0
    completed: int = 0
    failed: int = 0
    timed_out: int = 0
    still_pending: int = 0
    check_errors: int = 0
    budget_exhausted: bool = False
    finalized: Dict[str, str] = field(default_factory=dict)


@dataclass
class StaleSweepSummary:
    failed_processing: List[str] = field(default_factory=list)
    failed_pending: List[str] = field(default_factory=list)


def reconcile_pending_tasks(
    session: Session,
    provider: ImageTaskProvider,
    *,
    clock: Callable[[], float] = time.monotonic,
) -> PollSummary:
    settings = get_settings()
    logger = get_logger("photoset.poller")
    summary = PollSummary()
    deadline = clock() + settings.poller_time_budget_seconds

    entries = list_pending_ledger_entries(session, limit=settings.poller_batch_size)
    work = [(entry.id, entry.job_id, entry.unit_index, entry.external_task_id, entry.attempts) for entry in entries]

    for entry_id, job_id, unit_index, task_id, attempts in work:
        if clock() >= deadline:
            summary.budget_exhausted = True
            logger.info("poller_time_budget_exhausted", scanned=summary.scanned)
            break
        summary.scanned += 1

        try:
            result = provider.check_task(str(task_id))
        except ProviderStatusError as exc:
            summary.check_errors += 1
            logger.warning(
                "ledger_status_check_failed",
                job_id=job_id,
                unit_index=unit_index,
                external_task_id=task_id,
                error=str(exc),
            )
            continue
        except Exception as exc:
            summary.check_errors += 1
            logger.warning(
                "ledger_status_check_failed",
                job_id=job_id,
                unit_index=unit_index,
                external_task_id=task_id,
                error=f"{type(exc).__name__}: {exc}",
                unexpected=True,
            )
            continue

        if result.state == TASK_STATE_COMPLETED and result.result_url:
            if mark_ledger_completed(session, entry_id, result_url=result.result_url):
                summary.completed += 1
                record_ledger_transition(status=LEDGER_STATUS_COMPLETED)
                sync_job_progress(session, job_id)
                logger.info("ledger_entry_completed", job_id=job_id, unit_index=unit_index)
            continue

        if result.state in {TASK_STATE_COMPLETED, TASK_STATE_FAILED}:
            error = result.error or "provider_reported_failure"
            if mark_ledger_failed(session, entry_id, error_message=error):
                summary.failed += 1
                record_ledger_transition(status=LEDGER_STATUS_FAILED)
                logger.warning("ledger_entry_failed", job_id=job_id, unit_index=unit_index, error=error)
            continue

        if attempts + 1 >= settings.poller_max_attempts:
            if mark_ledger_failed(session, entry_id, error_message=TIMEOUT_ERROR):
                summary.timed_out += 1
                record_ledger_transition(status=LEDGER_STATUS_FAILED)
                logger.warning("ledger_entry_timed_out", job_id=job_id, unit_index=unit_index, attempts=attempts + 1)
            continue

        bump_ledger_attempts(session, entry_id)
        summary.still_pending += 1

    summary.finalized = finalize_ready_jobs(session)
    return summary


def finalize_ready_jobs(session: Session, *, limit: Optional[int] = None) -> Dict[str, str]:
    """Terminalize processing jobs whose every unit has a terminal ledger row."""

    settings = get_settings()
    logger = get_logger("photoset.poller")
    statement = (
        select(GenerationJob.id)
        .where(GenerationJob.status == JOB_STATUS_PROCESSING)
        .order_by(GenerationJob.updated_at.asc())
    )
    if limit is not None:
        statement = statement.limit(limit)
    job_ids = list(session.scalars(statement).all())

    finalized: Dict[str, str] = {}
    for job_id in job_ids:
        sync_job_progress(session, job_id)
        final_status = finalize_job(
            session,
            job_id,
            completion_threshold=settings.generation_completion_threshold,
        )
        if final_status is None:
            continue
        finalized[job_id] = final_status
        record_job_finalized(status=final_status)
        logger.info("generation_job_finalized", job_id=job_id, status=final_status)
    return finalized


def fail_stale_jobs(session: Session, *, now: Optional[datetime] = None) -> StaleSweepSummary:
    """Fail jobs that stopped making progress.

    Processing jobs idle for ``STALE_PROCESSING_MINUTES`` and pending jobs
    older than ``STALE_PENDING_MINUTES`` are failed. The dispatcher skips any
    later delivery for them.
    """

    settings = get_settings()
    logger = get_logger("photoset.poller")
    current = now or datetime.now(timezone.utc)
    processing_cutoff = current - timedelta(minutes=settings.stale_processing_minutes)
    pending_cutoff = current - timedelta(minutes=settings.stale_pending_minutes)

    stale_processing = list(
        session.scalars(
            select(GenerationJob.id).where(
                GenerationJob.status == JOB_STATUS_PROCESSING,
                GenerationJob.updated_at < processing_cutoff,
            )
        ).all()
    )
    stale_pending = list(
        session.scalars(
            select(GenerationJob.id).where(
                GenerationJob.status == JOB_STATUS_PENDING,
                GenerationJob.created_at < pending_cutoff,
            )
        ).all()
    )

    summary = StaleSweepSummary()
    for job_id in stale_processing:
        if force_fail_job(session, job_id, reason="stale_processing_timeout"):
            summary.failed_processing.append(job_id)
            record_job_finalized(status=JOB_STATUS_FAILED)
            logger.warning("stale_job_failed", job_id=job_id, previous_status=JOB_STATUS_PROCESSING)
    for job_id in stale_pending:
        if force_fail_job(session, job_id, reason="stale_pending_timeout"):
            summary.failed_pending.append(job_id)
            record_job_finalized(status=JOB_STATUS_FAILED)
            logger.warning("stale_job_failed", job_id=job_id, previous_status=JOB_STATUS_PENDING)
    return summary
