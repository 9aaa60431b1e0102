from __future__ import annotations

import json

import httpx
import pytest
from sqlalchemy import select

from photoset.generation.dispatcher import Processed, Retry, Skipped, dispatch_chunk
from photoset.generation.errors import AuthenticationError, JobNotFoundError, MalformedPayloadError
from photoset.generation.providers import KieImageProvider
from photoset.generation.states import get_job
from photoset.storage.models import TaskLedgerEntry


DESTINATION_URL = "https://photoset.test/jobs/process"


def _dispatch(session_factory, body, provider, queue, *, signature):
    with session_factory() as session:
        return dispatch_chunk(
            session,
            raw_body=body,
            signature=signature,
            provider=provider,
            queue=queue,
            destination_url=DESTINATION_URL,
        )


def _ledger(session_factory, job_id):
    with session_factory() as session:
        return list(
            session.scalars(
                select(TaskLedgerEntry)
                .where(TaskLedgerEntry.job_id == job_id)
                .order_by(TaskLedgerEntry.unit_index.asc())
            ).all()
        )


def _job(session_factory, job_id):
    with session_factory() as session:
        return get_job(session, job_id)


def _published_body(fake_queue, index=-1) -> bytes:
    return json.dumps(fake_queue.published[index].message).encode("utf-8")


def test_first_chunk_claims_job_records_window_and_publishes_continuation(
    session_factory, seed_job, chunk_body, signer, fake_provider, fake_queue
) -> None:
    job = seed_job(total_units=7)
    body = chunk_body(job, start_index=0, chunk_size=3)

    outcome = _dispatch(session_factory, body, fake_provider, fake_queue, signature=signer(body))

    assert outcome == Processed(
        job_id=job.id,
        window_start=0,
        window_end=3,
        created=3,
        failed=0,
        existing=0,
        continuation_message_id="msg-1",
    )
    assert _job(session_factory, job.id).status == "processing"
    rows = _ledger(session_factory, job.id)
    assert [row.unit_index for row in rows] == [0, 1, 2]
    assert all(row.status == "pending" and row.external_task_id for row in rows)

    assert len(fake_queue.published) == 1
    published = fake_queue.published[0]
    assert published.message["startIndex"] == 3
    assert published.message["chunkSize"] == 3
    assert published.message["jobId"] == job.id
    assert published.destination_url == DESTINATION_URL
    assert published.deduplication_id == f"{job.id}:3"


def test_chain_of_seven_units_runs_three_windows_and_stops(
    session_factory, seed_job, chunk_body, signer, fake_provider, fake_queue
) -> None:
    job = seed_job(total_units=7)
    body = chunk_body(job, start_index=0, chunk_size=3)

    windows = []
    while True:
        outcome = _dispatch(session_factory, body, fake_provider, fake_queue, signature=signer(body))
        assert isinstance(outcome, Processed)
        windows.append((outcome.window_start, outcome.window_end))
        if outcome.continuation_message_id is None:
            break
        body = _published_body(fake_queue)

    assert windows == [(0, 3), (3, 6), (6, 7)]
    assert len(fake_queue.published) == 2
    assert [item.message["startIndex"] for item in fake_queue.published] == [3, 6]
    assert [row.unit_index for row in _ledger(session_factory, job.id)] == list(range(7))
    assert len(fake_provider.created) == 7


def test_duplicate_first_chunk_claims_job_exactly_once(
    session_factory, seed_job, chunk_body, signer, fake_provider, fake_queue
) -> None:
    job = seed_job(total_units=4)
    body = chunk_body(job, start_index=0, chunk_size=2)

    first = _dispatch(session_factory, body, fake_provider, fake_queue, signature=signer(body))
    second = _dispatch(session_factory, body, fake_provider, fake_queue, signature=signer(body))

    assert isinstance(first, Processed)
    assert second == Skipped(job_id=job.id, reason="already_claimed")
    assert len(fake_provider.created) == 2
    assert len(fake_queue.published) == 1
    assert len(_ledger(session_factory, job.id)) == 2


def test_redelivered_processed_chunk_creates_nothing_and_publishes_nothing(
    session_factory, seed_job, chunk_body, signer, fake_provider, fake_queue
) -> None:
    job = seed_job(total_units=7)
    first_body = chunk_body(job, start_index=0, chunk_size=3)
    _dispatch(session_factory, first_body, fake_provider, fake_queue, signature=signer(first_body))
    second_body = _published_body(fake_queue)
    _dispatch(session_factory, second_body, fake_provider, fake_queue, signature=signer(second_body))
    third_body = _published_body(fake_queue)
    _dispatch(session_factory, third_body, fake_provider, fake_queue, signature=signer(third_body))

    provider_calls = len(fake_provider.created)
    publishes = len(fake_queue.published)

    replay = _dispatch(session_factory, second_body, fake_provider, fake_queue, signature=signer(second_body))
    assert replay == Processed(
        job_id=job.id,
        window_start=3,
        window_end=6,
        created=0,
        failed=0,
        existing=3,
        continuation_message_id=None,
    )
    replay_first = _dispatch(session_factory, first_body, fake_provider, fake_queue, signature=signer(first_body))
    assert replay_first == Skipped(job_id=job.id, reason="already_claimed")

    assert len(fake_provider.created) == provider_calls
    assert len(fake_queue.published) == publishes
    assert len(_ledger(session_factory, job.id)) == 7


def test_redelivery_of_last_window_leaves_single_ledger_row_per_unit(
    session_factory, seed_job, chunk_body, signer, fake_provider, fake_queue
) -> None:
    job = seed_job(total_units=7, status="processing")
    body = chunk_body(job, start_index=6, chunk_size=3)

    for _ in range(3):
        outcome = _dispatch(session_factory, body, fake_provider, fake_queue, signature=signer(body))
        assert isinstance(outcome, Processed)
        assert outcome.continuation_message_id is None

    rows = _ledger(session_factory, job.id)
    assert [row.unit_index for row in rows] == [6]
    assert len(fake_provider.created) == 1
    assert fake_queue.published == []


def test_partial_provider_failure_records_failed_rows_and_still_continues(
    session_factory, seed_job, chunk_body, signer, fake_queue
) -> None:
    from conftest import FakeProvider

    texts = [f"portrait {index}" for index in range(6)]
    texts[1] = "portrait 1 REJECT"
    texts[2] = "portrait 2 REJECT"
    job = seed_job(total_units=6, explicit_unit_texts=texts)
    provider = FakeProvider(fail_prompts_containing={"REJECT"})
    body = chunk_body(job, start_index=0, chunk_size=4)

    outcome = _dispatch(session_factory, body, provider, fake_queue, signature=signer(body))

    assert isinstance(outcome, Processed)
    assert (outcome.created, outcome.failed, outcome.existing) == (2, 2, 0)
    rows = _ledger(session_factory, job.id)
    assert [row.status for row in rows] == ["pending", "failed", "failed", "pending"]
    assert rows[1].external_task_id is None
    assert rows[1].error_message == "fake_provider_rejected"
    assert rows[1].prompt_snapshot == "portrait 1 REJECT"
    assert len(fake_queue.published) == 1
    assert fake_queue.published[0].message["startIndex"] == 4
    assert fake_queue.published[0].message["explicitUnitTexts"] == texts


def test_unexpected_provider_error_fails_only_that_unit(
    session_factory, seed_job, chunk_body, signer, fake_queue
) -> None:
    from conftest import FakeProvider

    texts = [f"portrait {index}" for index in range(6)]
    texts[2] = "portrait 2 CRASH"
    job = seed_job(total_units=6, explicit_unit_texts=texts)
    provider = FakeProvider(crash_prompts_containing={"CRASH"})
    body = chunk_body(job, start_index=0, chunk_size=4)

    outcome = _dispatch(session_factory, body, provider, fake_queue, signature=signer(body))

    assert isinstance(outcome, Processed)
    assert (outcome.created, outcome.failed, outcome.existing) == (3, 1, 0)
    rows = _ledger(session_factory, job.id)
    assert [row.status for row in rows] == ["pending", "pending", "failed", "pending"]
    assert rows[2].error_message == "RuntimeError: fake_adapter_bug"
    assert rows[2].prompt_snapshot == "portrait 2 CRASH"
    assert len(fake_queue.published) == 1
    assert fake_queue.published[0].message["startIndex"] == 4


def test_non_object_provider_reply_records_failed_rows(
    session_factory, seed_job, chunk_body, signer, fake_queue
) -> None:
    provider = KieImageProvider(
        api_key="kie-test-key",
        base_url="https://kie.test/api/v1",
        client=httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(200, json=["unexpected"]))),
    )
    job = seed_job(total_units=3)
    body = chunk_body(job, start_index=0, chunk_size=3)

    outcome = _dispatch(session_factory, body, provider, fake_queue, signature=signer(body))

    assert isinstance(outcome, Processed)
    assert (outcome.created, outcome.failed, outcome.existing) == (0, 3, 0)
    rows = _ledger(session_factory, job.id)
    assert [row.status for row in rows] == ["failed", "failed", "failed"]
    assert {row.error_message for row in rows} == {"kie_create_task_invalid_json_response"}
    assert _job(session_factory, job.id).error_message is None
    assert fake_queue.published == []


def test_units_beyond_catalog_are_recorded_as_failed(
    session_factory, seed_job, chunk_body, signer, fake_provider, fake_queue
) -> None:
    job = seed_job(total_units=7, style_id="professional", status="processing")
    body = chunk_body(job, start_index=3, chunk_size=5)

    outcome = _dispatch(session_factory, body, fake_provider, fake_queue, signature=signer(body))

    assert isinstance(outcome, Processed)
    assert (outcome.created, outcome.failed) == (2, 2)
    rows = _ledger(session_factory, job.id)
    assert [(row.unit_index, row.status) for row in rows] == [
        (3, "pending"),
        (4, "pending"),
        (5, "failed"),
        (6, "failed"),
    ]
    assert "catalog_exhausted" in rows[2].error_message


def test_reference_inputs_are_capped_per_unit(
    session_factory, seed_job, chunk_body, signer, fake_provider, fake_queue
) -> None:
    references = [f"https://cdn.test/ref-{index}.jpg" for index in range(6)]
    job = seed_job(total_units=1, reference_inputs=references)
    body = chunk_body(job, start_index=0, chunk_size=5)

    _dispatch(session_factory, body, fake_provider, fake_queue, signature=signer(body))

    assert len(fake_provider.created) == 1
    unit = fake_provider.created[0]
    assert unit.reference_inputs == tuple(references[:4])
    assert unit.aspect_ratio == "3:4"
    assert unit.output_format == "jpg"
    assert unit.prompt


def test_signature_from_next_key_is_accepted(
    session_factory, seed_job, chunk_body, signer, fake_provider, fake_queue
) -> None:
    from conftest import NEXT_SIGNING_KEY

    job = seed_job(total_units=2)
    body = chunk_body(job, start_index=0, chunk_size=5)

    outcome = _dispatch(
        session_factory, body, fake_provider, fake_queue, signature=signer(body, key=NEXT_SIGNING_KEY)
    )

    assert isinstance(outcome, Processed)


@pytest.mark.parametrize(
    "signature_kwargs",
    [
        {"key": "some-other-signing-key-0123456789abcdef"},
        {"issuer": "someone-else"},
        {"expires_in": -600},
        {"digest": "tampered-digest"},
    ],
)
def test_invalid_signature_is_rejected_without_mutation(
    session_factory, seed_job, chunk_body, signer, fake_provider, fake_queue, signature_kwargs
) -> None:
    job = seed_job(total_units=3)
    body = chunk_body(job, start_index=0, chunk_size=3)

    with pytest.raises(AuthenticationError):
        _dispatch(session_factory, body, fake_provider, fake_queue, signature=signer(body, **signature_kwargs))

    assert _job(session_factory, job.id).status == "pending"
    assert _ledger(session_factory, job.id) == []
    assert fake_provider.created == []
    assert fake_queue.published == []


def test_missing_signature_is_rejected(session_factory, seed_job, chunk_body, fake_provider, fake_queue) -> None:
    job = seed_job(total_units=3)
    body = chunk_body(job, start_index=0, chunk_size=3)

    with pytest.raises(AuthenticationError):
        _dispatch(session_factory, body, fake_provider, fake_queue, signature=None)


def test_unsigned_delivery_is_accepted_in_development_without_keys(
    monkeypatch, session_factory, seed_job, chunk_body, fake_provider, fake_queue
) -> None:
    from photoset.core.config import get_settings

    monkeypatch.setenv("ENV", "development")
    monkeypatch.setenv("QUEUE_CURRENT_SIGNING_KEY", "")
    monkeypatch.setenv("QUEUE_NEXT_SIGNING_KEY", "")
    get_settings.cache_clear()

    job = seed_job(total_units=1)
    body = chunk_body(job, start_index=0, chunk_size=1)

    outcome = _dispatch(session_factory, body, fake_provider, fake_queue, signature=None)

    assert isinstance(outcome, Processed)


@pytest.mark.parametrize(
    "body",
    [
        b"{not json",
        b"[]",
        json.dumps({"jobId": "abc"}).encode("utf-8"),
    ],
)
def test_malformed_payload_is_rejected(session_factory, signer, fake_provider, fake_queue, body) -> None:
    with pytest.raises(MalformedPayloadError):
        _dispatch(session_factory, body, fake_provider, fake_queue, signature=signer(body))
    assert fake_provider.created == []


def test_window_and_total_mismatches_are_malformed(
    session_factory, seed_job, chunk_body, signer, fake_provider, fake_queue
) -> None:
    job = seed_job(total_units=7)

    out_of_range = chunk_body(job, start_index=7, chunk_size=3)
    with pytest.raises(MalformedPayloadError):
        _dispatch(session_factory, out_of_range, fake_provider, fake_queue, signature=signer(out_of_range))

    wrong_total = chunk_body(job, start_index=0, chunk_size=3, totalUnits=9)
    with pytest.raises(MalformedPayloadError):
        _dispatch(session_factory, wrong_total, fake_provider, fake_queue, signature=signer(wrong_total))

    assert _job(session_factory, job.id).status == "pending"


def test_unknown_style_without_explicit_texts_is_malformed(
    session_factory, seed_job, chunk_body, signer, fake_provider, fake_queue
) -> None:
    job = seed_job(total_units=2, style_id="does-not-exist")
    body = chunk_body(job, start_index=0, chunk_size=2)

    with pytest.raises(MalformedPayloadError):
        _dispatch(session_factory, body, fake_provider, fake_queue, signature=signer(body))


def test_unknown_job_is_rejected(session_factory, seed_job, chunk_body, signer, fake_provider, fake_queue) -> None:
    job = seed_job(total_units=2)
    body = chunk_body(job, start_index=0, chunk_size=2, jobId="00000000-0000-0000-0000-000000000000")

    with pytest.raises(JobNotFoundError):
        _dispatch(session_factory, body, fake_provider, fake_queue, signature=signer(body))


@pytest.mark.parametrize("terminal_status", ["completed", "failed"])
@pytest.mark.parametrize("start_index", [0, 3])
def test_terminal_job_delivery_is_skipped(
    session_factory, seed_job, chunk_body, signer, fake_provider, fake_queue, terminal_status, start_index
) -> None:
    job = seed_job(total_units=7, status=terminal_status)
    body = chunk_body(job, start_index=start_index, chunk_size=3)

    outcome = _dispatch(session_factory, body, fake_provider, fake_queue, signature=signer(body))

    assert outcome == Skipped(job_id=job.id, reason="job_terminal")
    assert fake_provider.created == []
    assert fake_queue.published == []
    assert _job(session_factory, job.id).status == terminal_status


@pytest.mark.parametrize("terminal_status", ["completed", "failed"])
def test_stale_mismatched_delivery_for_terminal_job_is_skipped(
    session_factory, seed_job, chunk_body, signer, fake_provider, fake_queue, terminal_status
) -> None:
    job = seed_job(total_units=7, status=terminal_status)
    body = chunk_body(job, start_index=0, chunk_size=3, totalUnits=9)

    outcome = _dispatch(session_factory, body, fake_provider, fake_queue, signature=signer(body))

    assert outcome == Skipped(job_id=job.id, reason="job_terminal")
    assert fake_provider.created == []
    assert fake_queue.published == []


def test_queue_failure_schedules_retry_and_redelivery_completes_the_window(
    session_factory, seed_job, chunk_body, signer, fake_provider, fake_queue
) -> None:
    job = seed_job(total_units=5)
    body = chunk_body(job, start_index=0, chunk_size=3)
    fake_queue.fail = True

    outcome = _dispatch(session_factory, body, fake_provider, fake_queue, signature=signer(body))

    assert isinstance(outcome, Retry)
    assert "QueuePublishError" in outcome.error
    stored = _job(session_factory, job.id)
    assert stored.status == "processing"
    assert stored.error_message and "fake_queue_down" in stored.error_message
    assert len(_ledger(session_factory, job.id)) == 3

    fake_queue.fail = False
    redelivered = _dispatch(session_factory, body, fake_provider, fake_queue, signature=signer(body))

    assert redelivered == Processed(
        job_id=job.id,
        window_start=0,
        window_end=3,
        created=0,
        failed=0,
        existing=3,
        continuation_message_id="msg-1",
    )
    assert len(fake_provider.created) == 3
    assert _job(session_factory, job.id).error_message is None


def test_store_failure_schedules_retry_without_changing_status(
    monkeypatch, session_factory, seed_job, chunk_body, signer, fake_provider, fake_queue
) -> None:
    import photoset.generation.dispatcher as dispatcher

    def broken_exists(session, job_id, unit_index):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(dispatcher, "ledger_entry_exists", broken_exists)
    job = seed_job(total_units=3, status="processing")
    body = chunk_body(job, start_index=1, chunk_size=3)
    outcome = _dispatch(session_factory, body, fake_provider, fake_queue, signature=signer(body))

    assert isinstance(outcome, Retry)
    stored = _job(session_factory, job.id)
    assert stored.status == "processing"
    assert "database unavailable" in stored.error_message
    assert fake_queue.published == []
