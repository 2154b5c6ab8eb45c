"""
Webhook payload signing.

The signature input is the canonical JSON of ``{"event", "timestamp", "data"}``:
sorted keys, no whitespace, camelCase field names. Receivers recompute it from
the payload they got (minus ``signature``) with the shared secret.
"""
import hashlib
import hmac
import json
from datetime import datetime
from typing import Any, Dict

from pydantic import TypeAdapter

from tracking_service.models.requests import WebhookEvent, WebhookPayload
from tracking_service.models.tracking import TrackingEvent

_DATETIME = TypeAdapter(datetime)


def canonical_json(value: Any) -> bytes:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def signature_input(event: str, timestamp: str, data: Dict[str, Any]) -> bytes:
    return canonical_json({"event": event, "timestamp": timestamp, "data": data})


def sign(payload: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify(payload: bytes, signature: str, secret: str) -> bool:
    """Constant-time check of a hex HMAC-SHA256 signature."""
    return hmac.compare_digest(sign(payload, secret), signature)


def build_webhook(event_name: WebhookEvent, event: TrackingEvent, secret: str, at: datetime) -> WebhookPayload:
    data = event.to_wire()
    timestamp = _DATETIME.dump_python(at, mode="json")
    signature = sign(signature_input(event_name.value, timestamp, data), secret)
    return WebhookPayload(event=event_name, timestamp=at, data=data, signature=signature)


def verify_webhook(body: Dict[str, Any], secret: str) -> bool:
    """Verify a received webhook body (as decoded JSON)."""
    signature = body.get("signature")
    if not isinstance(signature, str):
        return False
    payload = signature_input(body.get("event", ""), body.get("timestamp", ""), body.get("data") or {})
    return verify(payload, signature, secret)
