"""Queue delivery signature verification.

Deliveries carry an ``Upstash-Signature`` header holding an HS256 JWT signed
with the current or the next signing key. Its ``body`` claim is the unpadded
base64url SHA-256 digest of the raw request body.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
from typing import Any, Dict, Optional

import jwt

from photoset.core.config import get_settings
from photoset.core.logger import get_logger
from photoset.generation.errors import AuthenticationError


SIGNATURE_ISSUER = "Upstash"


def body_digest(body: bytes) -> str:
    digest = hashlib.sha256(body).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def _decode_with_key(token: str, key: str, *, leeway: int) -> Dict[str, Any]:
    return jwt.decode(
        token,
        key,
        algorithms=["HS256"],
        issuer=SIGNATURE_ISSUER,
        leeway=leeway,
        options={"require": ["iss", "exp", "nbf", "body"]},
    )


def _claimed_body_matches(claims: Dict[str, Any], body: bytes) -> bool:
    claimed = str(claims.get("body") or "").rstrip("=")
    return hmac.compare_digest(claimed, body_digest(body))


def verify_queue_signature(body: bytes, signature: Optional[str]) -> None:
    """Raise ``AuthenticationError`` unless the delivery was signed by the queue."""

    settings = get_settings()
    logger = get_logger("photoset.queue.signing")
    keys = [
        key.strip()
        for key in (settings.queue_current_signing_key, settings.queue_next_signing_key)
        if key and key.strip()
    ]

    if not keys:
        if settings.env.lower() == "development":
            logger.warning("queue_signature_verification_skipped", reason="signing_keys_not_configured")
            return
        raise AuthenticationError("Queue signing keys are not configured")

    token = (signature or "").strip()
    if not token:
        raise AuthenticationError("Missing Upstash-Signature header")

    last_error: Optional[Exception] = None
    for key in keys:
        try:
            claims = _decode_with_key(token, key, leeway=settings.queue_signature_leeway_seconds)
        except jwt.PyJWTError as exc:
            last_error = exc
            continue
        if not _claimed_body_matches(claims, body):
            raise AuthenticationError("Queue signature body digest mismatch")
        return

    logger.warning("queue_signature_rejected", error=str(last_error))
    raise AuthenticationError("Invalid queue signature") from last_error
