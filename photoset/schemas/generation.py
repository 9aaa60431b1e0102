"""Schemas for generation job endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class GenerationJobCreateRequest(BaseModel):
    owner_ref: str = Field(min_length=1, max_length=64)
    subject_ref: str = Field(min_length=1, max_length=64)
    style_id: str = Field(min_length=1, max_length=40)
    requested_units: Optional[int] = Field(default=None, ge=1)
    reference_inputs: list[str] = Field(default_factory=list, max_length=14)
    explicit_unit_texts: Optional[list[str]] = Field(default=None, min_length=1)
    idempotency_key: Optional[str] = Field(default=None, max_length=80)


class GenerationJobCreateResponse(BaseModel):
    job_id: str
    status: str
    total_units: int
    reused: bool = False
    message_id: Optional[str] = None


class LedgerCountsItem(BaseModel):
    total: int
    pending: int
    completed: int
    failed: int


class GenerationJobStatusResponse(BaseModel):
    job_id: str
    status: str
    style_id: str
    total_units: int
    completed_units: int
    progress: float
    ledger: LedgerCountsItem
    error: Optional[str] = None
    created_at: datetime
    finished_at: Optional[datetime] = None


class ChunkDispatchResponse(BaseModel):
    outcome: str
    job_id: str
    reason: Optional[str] = None
    window_start: Optional[int] = None
    window_end: Optional[int] = None
    created: int = 0
    failed: int = 0
    existing: int = 0
    continuation_message_id: Optional[str] = None
    error: Optional[str] = None


class PollTasksResponse(BaseModel):
    scanned: int
    completed: int
    failed: int
    timed_out: int
    still_pending: int
    check_errors: int
    budget_exhausted: bool
    finalized: dict[str, str]


class StaleJobsResponse(BaseModel):
    failed_processing: list[str]
    failed_pending: list[str]
