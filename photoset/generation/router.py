"""Generation job API routes: chunk dispatch, trigger, status and cron."""

from __future__ import annotations

import secrets
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from photoset.core.config import get_settings
from photoset.generation.dispatcher import Retry, Skipped, dispatch_chunk
from photoset.generation.errors import DispatchRejected, TransientInfrastructureError
from photoset.generation.poller import fail_stale_jobs, reconcile_pending_tasks
from photoset.generation.providers import ImageTaskProvider, get_image_provider
from photoset.generation.states import JOB_STATUS_FAILED, get_job, ledger_counts
from photoset.generation.trigger import InvalidGenerationRequest, start_generation_job
from photoset.queue.client import QueueClient, QueuePublishError, get_queue_client
from photoset.schemas.generation import (
    ChunkDispatchResponse,
    GenerationJobCreateRequest,
    GenerationJobCreateResponse,
    GenerationJobStatusResponse,
    LedgerCountsItem,
    PollTasksResponse,
    StaleJobsResponse,
)
from photoset.storage.db import get_session


NON_RETRYABLE_HEADER = "Upstash-NonRetryable-Error"
GENERIC_FAILURE = "generation_failed"

router = APIRouter(prefix="/jobs", tags=["generation"])
cron_router = APIRouter(prefix="/cron", tags=["cron"])


def _enforce_internal_key(internal_key: Optional[str]) -> None:
    expected = get_settings().internal_api_key.strip()
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="internal_api_misconfigured",
        )
    received = (internal_key or "").strip()
    if not received or not secrets.compare_digest(received, expected):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="invalid_internal_key")


def _enforce_cron_secret(authorization: Optional[str]) -> None:
    expected = get_settings().cron_secret.strip()
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="cron_secret_misconfigured",
        )
    received = (authorization or "").strip()
    if not secrets.compare_digest(received, f"Bearer {expected}"):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_cron_secret")


@router.post("/process", response_model=ChunkDispatchResponse)
async def process_chunk(
    request: Request,
    session: Session = Depends(get_session),
    provider: ImageTaskProvider = Depends(get_image_provider),
    queue: QueueClient = Depends(get_queue_client),
    upstash_signature: Optional[str] = Header(default=None, alias="Upstash-Signature"),
):
    raw_body = await request.body()
    try:
        outcome = await run_in_threadpool(
            dispatch_chunk,
            session,
            raw_body=raw_body,
            signature=upstash_signature,
            provider=provider,
            queue=queue,
        )
    except DispatchRejected as exc:
        raise HTTPException(
            status_code=exc.status_code,
            detail=str(exc) or exc.code,
            headers={NON_RETRYABLE_HEADER: "true"},
        ) from exc

    if isinstance(outcome, Retry):
        payload = ChunkDispatchResponse(outcome="retry", job_id=outcome.job_id, error=outcome.error)
        return JSONResponse(status_code=TransientInfrastructureError.status_code, content=payload.model_dump())
    if isinstance(outcome, Skipped):
        return ChunkDispatchResponse(outcome="skipped", job_id=outcome.job_id, reason=outcome.reason)
    return ChunkDispatchResponse(
        outcome="processed",
        job_id=outcome.job_id,
        window_start=outcome.window_start,
        window_end=outcome.window_end,
        created=outcome.created,
        failed=outcome.failed,
        existing=outcome.existing,
        continuation_message_id=outcome.continuation_message_id,
    )


@router.post("", response_model=GenerationJobCreateResponse, status_code=status.HTTP_202_ACCEPTED)
def create_generation_job(
    payload: GenerationJobCreateRequest,
    session: Session = Depends(get_session),
    queue: QueueClient = Depends(get_queue_client),
    internal_key: Optional[str] = Header(default=None, alias="X-Photoset-Internal-Key"),
) -> GenerationJobCreateResponse:
    _enforce_internal_key(internal_key)
    try:
        result = start_generation_job(
            session,
            queue,
            owner_ref=payload.owner_ref,
            subject_ref=payload.subject_ref,
            style_id=payload.style_id,
            requested_units=payload.requested_units,
            reference_inputs=payload.reference_inputs,
            explicit_unit_texts=payload.explicit_unit_texts,
            idempotency_key=payload.idempotency_key,
        )
    except InvalidGenerationRequest as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except QueuePublishError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="queue_publish_failed") from exc

    return GenerationJobCreateResponse(
        job_id=result.job_id,
        status=result.status,
        total_units=result.total_units,
        reused=result.reused,
        message_id=result.message_id,
    )


@router.get("/{job_id}", response_model=GenerationJobStatusResponse)
def get_generation_job(
    job_id: str,
    session: Session = Depends(get_session),
) -> GenerationJobStatusResponse:
    job = get_job(session, job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="job_not_found")

    counts = ledger_counts(session, job_id)
    progress = round(job.completed_units / job.total_units, 4) if job.total_units else 0.0
    return GenerationJobStatusResponse(
        job_id=job.id,
        status=job.status,
        style_id=job.style_id,
        total_units=job.total_units,
        completed_units=job.completed_units,
        progress=progress,
        ledger=LedgerCountsItem(
            total=counts.total,
            pending=counts.pending,
            completed=counts.completed,
            failed=counts.failed,
        ),
        error=GENERIC_FAILURE if job.status == JOB_STATUS_FAILED else None,
        created_at=job.created_at,
        finished_at=job.finished_at,
    )


@cron_router.get("/poll-tasks", response_model=PollTasksResponse)
def poll_tasks(
    session: Session = Depends(get_session),
    provider: ImageTaskProvider = Depends(get_image_provider),
    authorization: Optional[str] = Header(default=None),
) -> PollTasksResponse:
    _enforce_cron_secret(authorization)
    summary = reconcile_pending_tasks(session, provider)
    return PollTasksResponse(
        scanned=summary.scanned,
        completed=summary.completed,
        failed=summary.failed,
        timed_out=summary.timed_out,
        still_pending=summary.still_pending,
        check_errors=summary.check_errors,
        budget_exhausted=summary.budget_exhausted,
        finalized=summary.finalized,
    )


@cron_router.get("/stale-jobs", response_model=StaleJobsResponse)
def stale_jobs(
    session: Session = Depends(get_session),
    authorization: Optional[str] = Header(default=None),
) -> StaleJobsResponse:
    _enforce_cron_secret(authorization)
    summary = fail_stale_jobs(session)
    return StaleJobsResponse(
        failed_processing=summary.failed_processing,
        failed_pending=summary.failed_pending,
    )
