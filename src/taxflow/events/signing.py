"""Webhook payload construction and HMAC-SHA256 signing."""

import hashlib
import hmac
import json
from datetime import datetime
from typing import Any

SIGNATURE_PREFIX = "sha256="


def build_payload(
    event_id: str,
    event_type: str,
    timestamp: datetime,
    data: dict[str, Any],
    entity_type: str,
    entity_id: str | None,
    correlation_id: str | None,
) -> dict[str, Any]:
    """Canonical delivery body sent to subscribers."""
    return {
        "id": event_id,
        "eventType": str(event_type),
        "timestamp": timestamp.isoformat(),
        "data": data,
        "entityType": str(entity_type),
        "entityId": entity_id,
        "correlationId": correlation_id,
    }


def encode_payload(payload: dict[str, Any]) -> bytes:
    """Compact JSON bytes; these exact bytes are signed and sent."""
    return json.dumps(payload, separators=(",", ":"), default=str).encode("utf-8")


def sign_payload(body: bytes, secret: str) -> str:
    """Compute HMAC-SHA256 over the raw body, hex encoded."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def signature_header(body: bytes, secret: str) -> str:
    return f"{SIGNATURE_PREFIX}{sign_payload(body, secret)}"


def verify_signature(body: bytes, signature: str | None, secret: str) -> bool:
    """Constant-time check of a signature header against ``body``.

    Accepts the bare hex digest or the ``sha256=`` prefixed header value.
    """
    if not signature or not secret:
        return False
    if signature.startswith(SIGNATURE_PREFIX):
        signature = signature[len(SIGNATURE_PREFIX):]
    return hmac.compare_digest(sign_payload(body, secret), signature)
