"""Job trigger: create a generation job and publish its first chunk."""

from __future__ import annotations

from dataclasses import dataclass
import json
from typing import Optional, Sequence

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from photoset.core.config import get_settings
from photoset.core.logger import get_logger
from photoset.generation.catalog import UnitResolutionError, load_prompt_catalog
from photoset.generation.dispatcher import dispatch_endpoint_url
from photoset.generation.messages import ChunkMessage
from photoset.generation.states import JOB_STATUS_PENDING
from photoset.queue.client import QueueClient, QueuePublishError
from photoset.storage.models import GenerationJob


class InvalidGenerationRequest(ValueError):
    """Raised when a generation request cannot produce any unit."""


@dataclass(frozen=True)
class TriggerResult:
    job_id: str
    status: str
    total_units: int
    reused: bool
    message_id: Optional[str] = None


def _resolve_total_units(
    *,
    style_id: str,
    requested_units: Optional[int],
    explicit_unit_texts: Optional[Sequence[str]],
) -> int:
    settings = get_settings()
    if explicit_unit_texts is not None:
        available = len([text for text in explicit_unit_texts if str(text).strip()])
        if available != len(explicit_unit_texts):
            raise InvalidGenerationRequest("explicit_unit_texts must not contain empty entries")
    else:
        try:
            available = load_prompt_catalog().size(style_id)
        except UnitResolutionError as exc:
            raise InvalidGenerationRequest(f"Unknown style: {style_id}") from exc

    total = min(available, settings.generation_max_units)
    if requested_units is not None:
        if requested_units <= 0:
            raise InvalidGenerationRequest("requested_units must be positive")
        total = min(total, requested_units)
    if total <= 0:
        raise InvalidGenerationRequest("Generation request resolves to zero units")
    return total


def _find_existing_job(session: Session, *, owner_ref: str, idempotency_key: str) -> Optional[GenerationJob]:
    return session.scalar(
        select(GenerationJob).where(
            GenerationJob.owner_ref == owner_ref,
            GenerationJob.idempotency_key == idempotency_key,
        )
    )


def first_chunk_message(job: GenerationJob) -> ChunkMessage:
    settings = get_settings()
    explicit = json.loads(job.explicit_unit_texts_json) if job.explicit_unit_texts_json else None
    return ChunkMessage(
        job_id=job.id,
        owner_ref=job.owner_ref,
        subject_ref=job.subject_ref,
        style_id=job.style_id,
        total_units=job.total_units,
        reference_inputs=json.loads(job.reference_inputs_json or "[]"),
        start_index=0,
        chunk_size=settings.generation_chunk_size,
        explicit_unit_texts=explicit,
    )


def _publish_first_chunk(job: GenerationJob, queue: QueueClient, destination_url: str) -> Optional[str]:
    logger = get_logger("photoset.trigger")
    try:
        receipt = queue.publish(
            first_chunk_message(job).to_payload(),
            destination_url=destination_url,
            deduplication_id=f"{job.id}:0",
        )
    except QueuePublishError as exc:
        logger.error("first_chunk_publish_failed", job_id=job.id, error=str(exc))
        raise
    logger.info("first_chunk_published", job_id=job.id, message_id=receipt.message_id)
    return receipt.message_id


def start_generation_job(
    session: Session,
    queue: QueueClient,
    *,
    owner_ref: str,
    subject_ref: str,
    style_id: str,
    requested_units: Optional[int] = None,
    reference_inputs: Sequence[str] = (),
    explicit_unit_texts: Optional[Sequence[str]] = None,
    idempotency_key: Optional[str] = None,
    destination_url: Optional[str] = None,
) -> TriggerResult:
    """Create exactly one job per request and hand its first chunk to the queue.

    A repeated idempotency key returns the existing job. Its first chunk is
    republished only while the job is still pending, so a trigger retried
    after a publish failure completes the hand-off.
    """

    logger = get_logger("photoset.trigger")
    target_url = destination_url or dispatch_endpoint_url()
    key = idempotency_key.strip() if idempotency_key else None

    if key:
        existing = _find_existing_job(session, owner_ref=owner_ref, idempotency_key=key)
        if existing is not None:
            return _reuse_job(existing, queue, target_url)

    total_units = _resolve_total_units(
        style_id=style_id,
        requested_units=requested_units,
        explicit_unit_texts=explicit_unit_texts,
    )
    explicit = list(explicit_unit_texts)[:total_units] if explicit_unit_texts is not None else None
    job = GenerationJob(
        owner_ref=owner_ref,
        subject_ref=subject_ref,
        style_id=style_id,
        total_units=total_units,
        completed_units=0,
        status=JOB_STATUS_PENDING,
        idempotency_key=key,
        reference_inputs_json=json.dumps([value for value in reference_inputs if value]),
        explicit_unit_texts_json=json.dumps(explicit) if explicit is not None else None,
    )
    session.add(job)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        if not key:
            raise
        existing = _find_existing_job(session, owner_ref=owner_ref, idempotency_key=key)
        if existing is None:
            raise
        return _reuse_job(existing, queue, target_url)

    logger.info("generation_job_created", job_id=job.id, total_units=total_units, style_id=style_id)
    message_id = _publish_first_chunk(job, queue, target_url)
    return TriggerResult(
        job_id=job.id,
        status=job.status,
        total_units=job.total_units,
        reused=False,
        message_id=message_id,
    )


def _reuse_job(job: GenerationJob, queue: QueueClient, destination_url: str) -> TriggerResult:
    get_logger("photoset.trigger").info("generation_job_reused", job_id=job.id, status=job.status)
    message_id = None
    if job.status == JOB_STATUS_PENDING:
        message_id = _publish_first_chunk(job, queue, destination_url)
    return TriggerResult(
        job_id=job.id,
        status=job.status,
        total_units=job.total_units,
        reused=True,
        message_id=message_id,
    )
