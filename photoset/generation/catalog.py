"""Static prompt catalog and deterministic unit resolution."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Tuple

import yaml

from photoset.core.config import get_settings


class UnitResolutionError(LookupError):
    """Raised when a unit index has no content to resolve to."""


@dataclass(frozen=True)
class StyleConfig:
    style_id: str
    name: str
    prompt_prefix: str
    prompt_suffix: str
    selected_prompts: Tuple[int, ...]


@dataclass(frozen=True)
class PromptCatalog:
    prompts: Tuple[str, ...]
    styles: Dict[str, StyleConfig]

    def style(self, style_id: str) -> StyleConfig:
        style = self.styles.get(style_id)
        if style is None:
            raise UnitResolutionError(f"unknown_style style_id={style_id}")
        return style

    def size(self, style_id: str) -> int:
        return len(self.style(style_id).selected_prompts)


def _resolve_catalog_path() -> Path:
    settings = get_settings()
    configured = Path(settings.prompt_catalog_path)
    if configured.is_absolute():
        return configured
    return Path.cwd() / configured


def _parse_style(style_id: str, raw: Dict[str, Any], prompt_count: int) -> StyleConfig:
    selected = raw.get("selected_prompts") or []
    if not isinstance(selected, list) or not all(isinstance(value, int) for value in selected):
        raise ValueError(f"Style '{style_id}' selected_prompts must be a list of integers")
    out_of_range = [value for value in selected if value < 0 or value >= prompt_count]
    if out_of_range:
        raise ValueError(f"Style '{style_id}' references unknown prompts: {out_of_range}")
    return StyleConfig(
        style_id=style_id,
        name=str(raw.get("name") or style_id),
        prompt_prefix=str(raw.get("prompt_prefix") or ""),
        prompt_suffix=str(raw.get("prompt_suffix") or ""),
        selected_prompts=tuple(selected),
    )


@lru_cache(maxsize=1)
def load_prompt_catalog() -> PromptCatalog:
    catalog_path = _resolve_catalog_path()
    with catalog_path.open("r", encoding="utf-8") as file:
        content = yaml.safe_load(file) or {}
    if not isinstance(content, dict):
        raise ValueError("Invalid prompt catalog format")

    raw_prompts = content.get("prompts") or []
    if not isinstance(raw_prompts, list) or not all(isinstance(value, str) for value in raw_prompts):
        raise ValueError("Prompt catalog 'prompts' must be a list of strings")
    prompts = tuple(" ".join(value.split()) for value in raw_prompts)

    raw_styles = content.get("styles") or {}
    if not isinstance(raw_styles, dict):
        raise ValueError("Prompt catalog 'styles' must be a mapping")

    styles: Dict[str, StyleConfig] = {}
    for style_id, raw_style in raw_styles.items():
        if not isinstance(style_id, str) or not isinstance(raw_style, dict):
            continue
        styles[style_id] = _parse_style(style_id, raw_style, len(prompts))
    return PromptCatalog(prompts=prompts, styles=styles)


def reset_prompt_catalog_cache() -> None:
    load_prompt_catalog.cache_clear()


def resolve_unit_text(
    *,
    style_id: str,
    unit_index: int,
    explicit_unit_texts: Optional[Sequence[str]] = None,
) -> str:
    """Return the content for one unit of a job.

    Pure in its inputs: an explicit list wins, otherwise the style's catalog
    entry at the same position is wrapped in the style prefix and suffix.
    """

    if unit_index < 0:
        raise UnitResolutionError(f"negative_unit_index index={unit_index}")

    if explicit_unit_texts is not None:
        if unit_index >= len(explicit_unit_texts):
            raise UnitResolutionError(f"explicit_unit_text_missing index={unit_index}")
        text = str(explicit_unit_texts[unit_index]).strip()
        if not text:
            raise UnitResolutionError(f"explicit_unit_text_empty index={unit_index}")
        return text

    catalog = load_prompt_catalog()
    style = catalog.style(style_id)
    if unit_index >= len(style.selected_prompts):
        raise UnitResolutionError(f"catalog_exhausted style_id={style_id} index={unit_index}")
    base_prompt = catalog.prompts[style.selected_prompts[unit_index]]
    return f"{style.prompt_prefix}{base_prompt}{style.prompt_suffix}".strip()
