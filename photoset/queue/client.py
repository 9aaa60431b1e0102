"""HTTP client for the durable message queue (Upstash QStash publish API)."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Dict, Optional, Protocol

import httpx

from photoset.core.config import get_settings


class QueuePublishError(RuntimeError):
    """Raised when a message cannot be handed to the queue."""


@dataclass(frozen=True)
class PublishReceipt:
    message_id: Optional[str]
    deduplicated: bool = False


class QueueClient(Protocol):
    def publish(
        self,
        message: Dict[str, Any],
        *,
        destination_url: str,
        deduplication_id: Optional[str] = None,
    ) -> PublishReceipt:
        raise NotImplementedError


class UpstashQueueClient:
    def __init__(
        self,
        *,
        base_url: str,
        token: str,
        retries: int = 3,
        timeout: str = "5m",
        http_timeout_seconds: int = 20,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token.strip()
        self.retries = max(0, retries)
        self.timeout = timeout
        self.http_timeout_seconds = max(1, http_timeout_seconds)
        self._client = client

    def _post(self, url: str, **kwargs: Any) -> httpx.Response:
        if self._client is not None:
            return self._client.post(url, **kwargs)
        with httpx.Client(timeout=self.http_timeout_seconds) as client:
            return client.post(url, **kwargs)

    def publish(
        self,
        message: Dict[str, Any],
        *,
        destination_url: str,
        deduplication_id: Optional[str] = None,
    ) -> PublishReceipt:
        if not self.token:
            raise QueuePublishError("QUEUE_TOKEN is not configured")
        if not destination_url:
            raise QueuePublishError("Destination URL is required")

        headers = {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/json",
            "Upstash-Retries": str(self.retries),
            "Upstash-Timeout": self.timeout,
        }
        if deduplication_id:
            headers["Upstash-Deduplication-Id"] = deduplication_id

        try:
            response = self._post(
                f"{self.base_url}/v2/publish/{destination_url}",
                headers=headers,
                json=message,
            )
        except httpx.HTTPError as exc:
            raise QueuePublishError("Queue publish request failed") from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise QueuePublishError(f"Queue publish failed with status {response.status_code}")

        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}
        message_id = payload.get("messageId")
        return PublishReceipt(
            message_id=str(message_id) if message_id else None,
            deduplicated=bool(payload.get("deduplicated", False)),
        )


@lru_cache(maxsize=1)
def get_queue_client() -> QueueClient:
    settings = get_settings()
    return UpstashQueueClient(
        base_url=settings.queue_api_base_url,
        token=settings.queue_token,
        retries=settings.queue_publish_retries,
        timeout=settings.queue_publish_timeout,
        http_timeout_seconds=settings.queue_http_timeout_seconds,
    )


def reset_queue_client_cache() -> None:
    get_queue_client.cache_clear()
