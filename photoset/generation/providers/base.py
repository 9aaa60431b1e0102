"""Provider contracts for asynchronous image generation backends."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol, Tuple


TASK_STATE_PENDING = "pending"
TASK_STATE_COMPLETED = "completed"
TASK_STATE_FAILED = "failed"


class ProviderTaskCreationError(RuntimeError):
    """Raised when a provider cannot accept a generation task."""


class ProviderStatusError(RuntimeError):
    """Raised when a provider status check cannot be completed."""


@dataclass(frozen=True)
class UnitPayload:
    prompt: str
    reference_inputs: Tuple[str, ...] = ()
    aspect_ratio: str = "3:4"
    output_format: str = "jpg"


@dataclass(frozen=True)
class TaskCreationOutput:
    provider: str
    task_id: str
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TaskStatusOutput:
    provider: str
    task_id: str
    state: str
    result_url: Optional[str] = None
    error: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)


class ImageTaskProvider(Protocol):
    provider_name: str

    def create_task(self, unit: UnitPayload) -> TaskCreationOutput:
        raise NotImplementedError

    def check_task(self, task_id: str) -> TaskStatusOutput:
        raise NotImplementedError
