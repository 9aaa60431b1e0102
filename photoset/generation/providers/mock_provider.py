"""Deterministic mock provider for local/dev usage."""

from __future__ import annotations

import hashlib

from photoset.generation.providers.base import (
    TASK_STATE_COMPLETED,
    ImageTaskProvider,
    TaskCreationOutput,
    TaskStatusOutput,
    UnitPayload,
)


class MockImageProvider(ImageTaskProvider):
    provider_name = "mock"

    def create_task(self, unit: UnitPayload) -> TaskCreationOutput:
        seed_source = f"{unit.prompt}:{unit.aspect_ratio}:{','.join(unit.reference_inputs)}".encode("utf-8")
        seed = hashlib.sha1(seed_source).hexdigest()[:16]
        return TaskCreationOutput(
            provider=self.provider_name,
            task_id=f"mock-{seed}",
            payload={"seed": seed},
        )

    def check_task(self, task_id: str) -> TaskStatusOutput:
        seed = task_id.removeprefix("mock-")
        return TaskStatusOutput(
            provider=self.provider_name,
            task_id=task_id,
            state=TASK_STATE_COMPLETED,
            result_url=f"https://picsum.photos/seed/{seed}/768/1024",
            payload={"seed": seed},
        )
