"""Factory to resolve active image provider."""

from __future__ import annotations

from functools import lru_cache

from photoset.core.config import get_settings
from photoset.generation.providers.base import ImageTaskProvider
from photoset.generation.providers.kie_provider import KieImageProvider
from photoset.generation.providers.mock_provider import MockImageProvider


@lru_cache(maxsize=1)
def get_image_provider() -> ImageTaskProvider:
    settings = get_settings()
    provider = settings.image_provider.strip().lower()
    if provider == "kie":
        return KieImageProvider(
            api_key=settings.kie_api_key,
            model=settings.kie_model,
            base_url=settings.kie_api_base_url,
            timeout_seconds=settings.kie_timeout_seconds,
        )
    return MockImageProvider()


def reset_image_provider_cache() -> None:
    get_image_provider.cache_clear()
