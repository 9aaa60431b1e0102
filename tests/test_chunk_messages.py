from __future__ import annotations

import json

import pytest

from photoset.generation.catalog import (
    UnitResolutionError,
    load_prompt_catalog,
    resolve_unit_text,
)
from photoset.generation.errors import MalformedPayloadError
from photoset.generation.messages import parse_chunk_message


def _payload(**overrides) -> bytes:
    payload = {
        "jobId": "job-1",
        "ownerRef": "owner-1",
        "subjectRef": "subject-1",
        "styleId": "signature",
        "totalUnits": 7,
        "referenceInputs": ["https://cdn.test/ref.jpg"],
        "startIndex": 0,
        "chunkSize": 3,
    }
    payload.update(overrides)
    return json.dumps(payload).encode("utf-8")


def test_window_arithmetic_walks_the_job() -> None:
    message = parse_chunk_message(_payload())
    windows = []
    while True:
        windows.append(message.window())
        if not message.has_continuation():
            break
        message = message.next_message()

    assert windows == [(0, 3), (3, 6), (6, 7)]


def test_next_message_keeps_job_fields_and_serializes_camel_case() -> None:
    message = parse_chunk_message(_payload(explicitUnitTexts=[f"text {i}" for i in range(7)]))
    payload = message.next_message().to_payload()

    assert payload["startIndex"] == 3
    assert payload["jobId"] == "job-1"
    assert payload["referenceInputs"] == ["https://cdn.test/ref.jpg"]
    assert len(payload["explicitUnitTexts"]) == 7
    assert "start_index" not in payload


def test_unknown_fields_are_ignored_and_optional_texts_omitted() -> None:
    message = parse_chunk_message(_payload(traceId="abc"))
    assert message.is_first_chunk
    assert "explicitUnitTexts" not in message.to_payload()


@pytest.mark.parametrize(
    "overrides",
    [
        {"totalUnits": 0},
        {"chunkSize": 0},
        {"startIndex": -1},
        {"startIndex": 7},
        {"explicitUnitTexts": ["only one"]},
        {"styleId": "unknown-style"},
        {"jobId": ""},
    ],
)
def test_invalid_messages_are_malformed(overrides) -> None:
    with pytest.raises(MalformedPayloadError):
        parse_chunk_message(_payload(**overrides))


def test_catalog_loads_styles() -> None:
    catalog = load_prompt_catalog()
    assert catalog.size("signature") == 12
    assert catalog.size("professional") == 5
    with pytest.raises(UnitResolutionError):
        catalog.style("nope")


def test_unit_text_resolution_is_deterministic() -> None:
    first = resolve_unit_text(style_id="lifestyle", unit_index=2)
    second = resolve_unit_text(style_id="lifestyle", unit_index=2)
    assert first == second
    assert first != resolve_unit_text(style_id="lifestyle", unit_index=3)


def test_explicit_texts_take_precedence_over_catalog() -> None:
    assert resolve_unit_text(style_id="signature", unit_index=1, explicit_unit_texts=["a", " b "]) == "b"
    with pytest.raises(UnitResolutionError):
        resolve_unit_text(style_id="signature", unit_index=2, explicit_unit_texts=["a", "b"])
    with pytest.raises(UnitResolutionError):
        resolve_unit_text(style_id="signature", unit_index=0, explicit_unit_texts=["  "])


def test_catalog_exhaustion_raises() -> None:
    with pytest.raises(UnitResolutionError):
        resolve_unit_text(style_id="professional", unit_index=5)
