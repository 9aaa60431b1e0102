"""Chunk dispatcher: processes one window of a generation job per delivery.

Each delivery claims or re-reads its job, submits one provider task per unit
that has no ledger row yet, records the outcome in the ledger and publishes
the next window. The ledger's ``(job_id, unit_index)`` key makes redelivery
of any message a no-op for units already recorded.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple, Union

from sqlalchemy.orm import Session

from photoset.core.config import get_settings
from photoset.core.logger import bind_job_context, get_logger, unbind_job_context
from photoset.core.metrics import record_chunk_outcome, record_continuation_published, record_provider_task
from photoset.core.observability import capture_exception, sentry_scope
from photoset.generation.catalog import UnitResolutionError, resolve_unit_text
from photoset.generation.errors import (
    DispatchRejected,
    JobAlreadyTerminalError,
    JobNotFoundError,
    MalformedPayloadError,
)
from photoset.generation.messages import ChunkMessage, parse_chunk_message
from photoset.generation.providers.base import ImageTaskProvider, ProviderTaskCreationError, UnitPayload
from photoset.generation.states import (
    JOB_STATUS_PROCESSING,
    annotate_job_error,
    claim_job,
    clear_job_error,
    get_job,
    is_terminal,
    ledger_entry_exists,
    record_ledger_entry,
    touch_job,
)
from photoset.queue.client import QueueClient
from photoset.queue.signing import verify_queue_signature


SKIP_JOB_TERMINAL = "job_terminal"
SKIP_ALREADY_CLAIMED = "already_claimed"


@dataclass(frozen=True)
class Skipped:
    job_id: str
    reason: str


@dataclass(frozen=True)
class Processed:
    job_id: str
    window_start: int
    window_end: int
    created: int
    failed: int
    existing: int
    continuation_message_id: Optional[str] = None


@dataclass(frozen=True)
class Retry:
    job_id: str
    error: str


ChunkOutcome = Union[Skipped, Processed, Retry]


@dataclass
class _WindowTally:
    created: int = 0
    failed: int = 0
    existing: int = 0


def dispatch_endpoint_url() -> str:
    settings = get_settings()
    return settings.app_public_base_url.rstrip("/") + "/jobs/process"


def _admit_chunk(session: Session, message: ChunkMessage) -> Tuple[Optional[str], bool]:
    """Decide whether this delivery may work on its window.

    Returns ``(skip_reason, annotated)``. ``skip_reason`` is set when the
    delivery is a no-op; ``annotated`` is True when the job carries a
    transient-error annotation that a successful pass should clear.
    """

    job = get_job(session, message.job_id)
    if job is None:
        raise JobNotFoundError(f"Job {message.job_id} does not exist")
    if is_terminal(job.status):
        raise JobAlreadyTerminalError(job.id, job.status)
    if job.total_units != message.total_units:
        raise MalformedPayloadError(
            f"totalUnits={message.total_units} does not match job total_units={job.total_units}"
        )

    logger = get_logger("photoset.dispatcher")
    if not message.is_first_chunk:
        return None, bool(job.error_message)

    if claim_job(session, message.job_id):
        logger.info("chunk_claimed", total_units=job.total_units)
        return None, False

    job = get_job(session, message.job_id)
    if job is None:
        raise JobNotFoundError(f"Job {message.job_id} does not exist")
    if is_terminal(job.status):
        raise JobAlreadyTerminalError(job.id, job.status)
    if job.status == JOB_STATUS_PROCESSING and job.error_message:
        # A prior delivery of this window failed transiently after the claim.
        logger.info("chunk_reentered_after_transient_error", previous_error=job.error_message)
        return None, True
    return SKIP_ALREADY_CLAIMED, False


def _unit_payload(text: str, message: ChunkMessage) -> UnitPayload:
    settings = get_settings()
    references = tuple(value for value in message.reference_inputs if value)
    return UnitPayload(
        prompt=text,
        reference_inputs=references[: settings.generation_max_reference_inputs],
        aspect_ratio=settings.generation_aspect_ratio,
        output_format=settings.generation_output_format,
    )


def _record_unit_failure(
    session: Session,
    message: ChunkMessage,
    unit_index: int,
    tally: _WindowTally,
    *,
    prompt_snapshot: str,
    error: str,
) -> None:
    inserted = record_ledger_entry(
        session,
        job_id=message.job_id,
        unit_index=unit_index,
        prompt_snapshot=prompt_snapshot,
        error_message=error,
    )
    if inserted:
        tally.failed += 1
    else:
        tally.existing += 1


def _process_unit(
    session: Session,
    message: ChunkMessage,
    unit_index: int,
    provider: ImageTaskProvider,
    tally: _WindowTally,
) -> None:
    logger = get_logger("photoset.dispatcher")
    if ledger_entry_exists(session, message.job_id, unit_index):
        tally.existing += 1
        logger.info("unit_already_recorded", unit_index=unit_index)
        return

    try:
        text = resolve_unit_text(
            style_id=message.style_id,
            unit_index=unit_index,
            explicit_unit_texts=message.explicit_unit_texts,
        )
    except UnitResolutionError as exc:
        logger.warning("unit_text_unresolved", unit_index=unit_index, error=str(exc))
        _record_unit_failure(session, message, unit_index, tally, prompt_snapshot="", error=str(exc))
        return

    try:
        task = provider.create_task(_unit_payload(text, message))
    except ProviderTaskCreationError as exc:
        record_provider_task(provider=provider.provider_name, result="failed")
        logger.warning("unit_task_failed", unit_index=unit_index, error=str(exc))
        _record_unit_failure(session, message, unit_index, tally, prompt_snapshot=text, error=str(exc))
        return
    except Exception as exc:
        # Any adapter error fails this unit only. Store errors are raised outside this try.
        error = f"{type(exc).__name__}: {exc}"
        record_provider_task(provider=provider.provider_name, result="failed")
        logger.warning("unit_task_failed", unit_index=unit_index, error=error, unexpected=True)
        _record_unit_failure(session, message, unit_index, tally, prompt_snapshot=text, error=error[:500])
        return

    record_provider_task(provider=provider.provider_name, result="created")
    inserted = record_ledger_entry(
        session,
        job_id=message.job_id,
        unit_index=unit_index,
        prompt_snapshot=text,
        external_task_id=task.task_id,
    )
    if inserted:
        tally.created += 1
        logger.info("unit_task_created", unit_index=unit_index, external_task_id=task.task_id)
    else:
        # A concurrent delivery recorded this unit first; its row stands.
        tally.existing += 1
        logger.warning("unit_task_duplicate_discarded", unit_index=unit_index, external_task_id=task.task_id)


def _publish_continuation(
    session: Session,
    message: ChunkMessage,
    queue: QueueClient,
    destination_url: str,
) -> Optional[str]:
    if not message.has_continuation():
        return None
    next_message = message.next_message()
    if ledger_entry_exists(session, message.job_id, next_message.start_index):
        # The next window already ran, so its message was delivered before.
        get_logger("photoset.dispatcher").info(
            "continuation_already_consumed",
            next_start_index=next_message.start_index,
        )
        return None
    receipt = queue.publish(
        next_message.to_payload(),
        destination_url=destination_url,
        deduplication_id=f"{message.job_id}:{next_message.start_index}",
    )
    record_continuation_published(status="deduplicated" if receipt.deduplicated else "published")
    get_logger("photoset.dispatcher").info(
        "continuation_published",
        next_start_index=next_message.start_index,
        message_id=receipt.message_id,
    )
    return receipt.message_id


def _schedule_retry(session: Session, job_id: str, exc: Exception) -> Retry:
    logger = get_logger("photoset.dispatcher")
    session.rollback()
    error = f"{type(exc).__name__}: {exc}"
    logger.error("chunk_retry_scheduled", error=error)
    try:
        annotate_job_error(session, job_id, f"transient_error {error}")
    except Exception as annotate_exc:
        session.rollback()
        logger.error("chunk_error_annotation_failed", error=str(annotate_exc))
    with sentry_scope(job_id=job_id):
        capture_exception(exc)
    record_chunk_outcome(outcome="retry")
    return Retry(job_id=job_id, error=error)


def dispatch_chunk(
    session: Session,
    *,
    raw_body: bytes,
    signature: Optional[str],
    provider: ImageTaskProvider,
    queue: QueueClient,
    destination_url: Optional[str] = None,
) -> ChunkOutcome:
    """Process one chunk delivery.

    Rejections (bad signature, malformed payload, unknown job) raise a
    ``DispatchRejected`` subclass and leave the store untouched. Store and
    queue failures return ``Retry`` so the queue redelivers the message.
    """

    try:
        verify_queue_signature(raw_body, signature)
        message = parse_chunk_message(raw_body)
    except DispatchRejected as exc:
        record_chunk_outcome(outcome="rejected", reason=exc.code)
        raise

    target_url = destination_url or dispatch_endpoint_url()
    logger = get_logger("photoset.dispatcher")
    bind_job_context(message.job_id, message.start_index)
    try:
        window_start, window_end = message.window()
        try:
            skip_reason, annotated = _admit_chunk(session, message)
        except JobAlreadyTerminalError as exc:
            logger.info("chunk_skipped", reason=SKIP_JOB_TERMINAL, job_status=exc.status)
            record_chunk_outcome(outcome="skipped", reason=SKIP_JOB_TERMINAL)
            return Skipped(job_id=message.job_id, reason=SKIP_JOB_TERMINAL)
        if skip_reason is not None:
            logger.info("chunk_skipped", reason=skip_reason)
            record_chunk_outcome(outcome="skipped", reason=skip_reason)
            return Skipped(job_id=message.job_id, reason=skip_reason)

        tally = _WindowTally()
        for unit_index in range(window_start, window_end):
            _process_unit(session, message, unit_index, provider, tally)
        touch_job(session, message.job_id)

        continuation_message_id = _publish_continuation(session, message, queue, target_url)
        if annotated:
            clear_job_error(session, message.job_id)

        logger.info(
            "chunk_processed",
            window_start=window_start,
            window_end=window_end,
            created=tally.created,
            failed=tally.failed,
            existing=tally.existing,
        )
        record_chunk_outcome(outcome="processed")
        return Processed(
            job_id=message.job_id,
            window_start=window_start,
            window_end=window_end,
            created=tally.created,
            failed=tally.failed,
            existing=tally.existing,
            continuation_message_id=continuation_message_id,
        )
    except DispatchRejected as exc:
        record_chunk_outcome(outcome="rejected", reason=exc.code)
        raise
    except Exception as exc:
        return _schedule_retry(session, message.job_id, exc)
    finally:
        unbind_job_context()
