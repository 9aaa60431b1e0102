"""Image generation provider integrations."""

from photoset.generation.providers.base import (
    ImageTaskProvider,
    ProviderStatusError,
    ProviderTaskCreationError,
    TaskCreationOutput,
    TaskStatusOutput,
    UnitPayload,
)
from photoset.generation.providers.factory import get_image_provider, reset_image_provider_cache
from photoset.generation.providers.kie_provider import KieImageProvider
from photoset.generation.providers.mock_provider import MockImageProvider

__all__ = [
    "ImageTaskProvider",
    "KieImageProvider",
    "MockImageProvider",
    "ProviderStatusError",
    "ProviderTaskCreationError",
    "TaskCreationOutput",
    "TaskStatusOutput",
    "UnitPayload",
    "get_image_provider",
    "reset_image_provider_cache",
]
