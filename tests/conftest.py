from __future__ import annotations

from dataclasses import dataclass
import json
from pathlib import Path
import time
from typing import Any, Dict, List, Optional, Set
import uuid

import jwt
import pytest
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from photoset.core.config import get_settings
from photoset.core.metrics import reset_metrics_for_tests
from photoset.generation.catalog import reset_prompt_catalog_cache
from photoset.generation.providers import reset_image_provider_cache
from photoset.generation.providers.base import (
    TASK_STATE_PENDING,
    ProviderStatusError,
    ProviderTaskCreationError,
    TaskCreationOutput,
    TaskStatusOutput,
    UnitPayload,
)
from photoset.queue.client import PublishReceipt, QueuePublishError, reset_queue_client_cache
from photoset.queue.signing import body_digest
from photoset.storage.db import build_engine, create_schema
from photoset.storage.models import GenerationJob


CATALOG_PATH = Path(__file__).resolve().parents[1] / "config" / "prompt_catalog.yaml"
CURRENT_SIGNING_KEY = "sig_current_test_key_0123456789abcdef"
NEXT_SIGNING_KEY = "sig_next_test_key_0123456789abcdef012"
DESTINATION_URL = "https://photoset.test/jobs/process"


def _clear_caches() -> None:
    get_settings.cache_clear()
    reset_prompt_catalog_cache()
    reset_image_provider_cache()
    reset_queue_client_cache()


@pytest.fixture(autouse=True)
def photoset_env(monkeypatch):
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("PROMPT_CATALOG_PATH", str(CATALOG_PATH))
    monkeypatch.setenv("QUEUE_CURRENT_SIGNING_KEY", CURRENT_SIGNING_KEY)
    monkeypatch.setenv("QUEUE_NEXT_SIGNING_KEY", NEXT_SIGNING_KEY)
    monkeypatch.setenv("APP_PUBLIC_BASE_URL", "https://photoset.test")
    monkeypatch.setenv("IMAGE_PROVIDER", "mock")
    monkeypatch.setenv("INTERNAL_API_KEY", "internal-key-test")
    monkeypatch.setenv("CRON_SECRET", "cron-secret-test")
    _clear_caches()
    reset_metrics_for_tests()
    yield
    _clear_caches()


@pytest.fixture
def session_factory():
    engine = build_engine("sqlite+pysqlite://", poolclass=StaticPool)
    create_schema(engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    yield factory
    engine.dispose()


class FakeProvider:
    provider_name = "fake"

    def __init__(
        self,
        *,
        fail_prompts_containing: Optional[Set[str]] = None,
        crash_prompts_containing: Optional[Set[str]] = None,
    ) -> None:
        self.fail_prompts_containing = fail_prompts_containing or set()
        self.crash_prompts_containing = crash_prompts_containing or set()
        self.created: List[UnitPayload] = []
        self.checked: List[str] = []
        self.statuses: Dict[str, TaskStatusOutput] = {}
        self.unavailable: Set[str] = set()
        self.broken: Set[str] = set()

    def create_task(self, unit: UnitPayload) -> TaskCreationOutput:
        self.created.append(unit)
        if any(marker in unit.prompt for marker in self.fail_prompts_containing):
            raise ProviderTaskCreationError("fake_provider_rejected")
        if any(marker in unit.prompt for marker in self.crash_prompts_containing):
            raise RuntimeError("fake_adapter_bug")
        return TaskCreationOutput(provider=self.provider_name, task_id=f"task-{len(self.created)}")

    def check_task(self, task_id: str) -> TaskStatusOutput:
        self.checked.append(task_id)
        if task_id in self.unavailable:
            raise ProviderStatusError("fake_provider_unavailable")
        if task_id in self.broken:
            raise AttributeError("'str' object has no attribute 'get'")
        return self.statuses.get(
            task_id,
            TaskStatusOutput(provider=self.provider_name, task_id=task_id, state=TASK_STATE_PENDING),
        )


@dataclass
class PublishedMessage:
    message: Dict[str, Any]
    destination_url: str
    deduplication_id: Optional[str]


class FakeQueue:
    def __init__(self) -> None:
        self.published: List[PublishedMessage] = []
        self.fail = False

    def publish(
        self,
        message: Dict[str, Any],
        *,
        destination_url: str,
        deduplication_id: Optional[str] = None,
    ) -> PublishReceipt:
        if self.fail:
            raise QueuePublishError("fake_queue_down")
        self.published.append(PublishedMessage(dict(message), destination_url, deduplication_id))
        return PublishReceipt(message_id=f"msg-{len(self.published)}")


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def fake_queue() -> FakeQueue:
    return FakeQueue()


def sign_body(
    body: bytes,
    *,
    key: str = CURRENT_SIGNING_KEY,
    issuer: str = "Upstash",
    expires_in: int = 300,
    digest: Optional[str] = None,
) -> str:
    now = int(time.time())
    claims = {
        "iss": issuer,
        "sub": DESTINATION_URL,
        "body": digest if digest is not None else body_digest(body),
        "iat": now,
        "nbf": now,
        "exp": now + expires_in,
        "jti": str(uuid.uuid4()),
    }
    return jwt.encode(claims, key, algorithm="HS256")


@pytest.fixture
def signer():
    return sign_body


def build_chunk_body(job: GenerationJob, *, start_index: int, chunk_size: int, **overrides: Any) -> bytes:
    payload: Dict[str, Any] = {
        "jobId": job.id,
        "ownerRef": job.owner_ref,
        "subjectRef": job.subject_ref,
        "styleId": job.style_id,
        "totalUnits": job.total_units,
        "referenceInputs": json.loads(job.reference_inputs_json),
        "startIndex": start_index,
        "chunkSize": chunk_size,
    }
    if job.explicit_unit_texts_json:
        payload["explicitUnitTexts"] = json.loads(job.explicit_unit_texts_json)
    payload.update(overrides)
    return json.dumps(payload).encode("utf-8")


@pytest.fixture
def chunk_body():
    return build_chunk_body


@pytest.fixture
def seed_job(session_factory):
    def _seed(
        *,
        total_units: int = 7,
        status: str = "pending",
        style_id: str = "signature",
        explicit_unit_texts: Optional[List[str]] = None,
        reference_inputs: Optional[List[str]] = None,
        error_message: Optional[str] = None,
    ) -> GenerationJob:
        with session_factory() as session:
            job = GenerationJob(
                owner_ref="owner-1",
                subject_ref="subject-1",
                style_id=style_id,
                total_units=total_units,
                completed_units=0,
                status=status,
                error_message=error_message,
                reference_inputs_json=json.dumps(reference_inputs or ["https://cdn.test/ref-1.jpg"]),
                explicit_unit_texts_json=json.dumps(explicit_unit_texts) if explicit_unit_texts else None,
            )
            session.add(job)
            session.commit()
            session.refresh(job)
            return job

    return _seed
