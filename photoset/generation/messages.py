"""Chunk message wire model and parsing."""

from __future__ import annotations

import json
from typing import Any, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from photoset.generation.catalog import UnitResolutionError, load_prompt_catalog
from photoset.generation.errors import MalformedPayloadError


class ChunkMessage(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )

    job_id: str = Field(min_length=1, max_length=36)
    owner_ref: str = Field(min_length=1, max_length=64)
    subject_ref: str = Field(min_length=1, max_length=64)
    style_id: str = Field(min_length=1, max_length=40)
    total_units: int = Field(ge=1)
    reference_inputs: list[str] = Field(default_factory=list)
    start_index: int = Field(ge=0)
    chunk_size: int = Field(ge=1)
    explicit_unit_texts: Optional[list[str]] = None

    @model_validator(mode="after")
    def _check_window(self) -> "ChunkMessage":
        if self.start_index >= self.total_units:
            raise ValueError("startIndex must be lower than totalUnits")
        if self.explicit_unit_texts is not None and len(self.explicit_unit_texts) < self.total_units:
            raise ValueError("explicitUnitTexts must cover every unit")
        return self

    @property
    def is_first_chunk(self) -> bool:
        return self.start_index == 0

    def window(self) -> Tuple[int, int]:
        return self.start_index, min(self.start_index + self.chunk_size, self.total_units)

    def has_continuation(self) -> bool:
        return self.window()[1] < self.total_units

    def next_message(self) -> "ChunkMessage":
        _, window_end = self.window()
        return self.model_copy(update={"start_index": window_end})

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


def parse_chunk_message(payload: bytes) -> ChunkMessage:
    try:
        raw = json.loads(payload.decode("utf-8"))
    except Exception as exc:
        raise MalformedPayloadError("Invalid chunk JSON payload") from exc
    if not isinstance(raw, dict):
        raise MalformedPayloadError("Chunk payload must be a JSON object")

    try:
        message = ChunkMessage.model_validate(raw)
    except ValidationError as exc:
        fields = sorted({".".join(str(part) for part in error["loc"]) or "payload" for error in exc.errors()})
        raise MalformedPayloadError(f"Chunk payload failed validation: {', '.join(fields)}") from exc

    if message.explicit_unit_texts is None:
        try:
            load_prompt_catalog().style(message.style_id)
        except UnitResolutionError as exc:
            raise MalformedPayloadError(f"Unknown style: {message.style_id}") from exc
    return message
