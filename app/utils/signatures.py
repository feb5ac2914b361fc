import hashlib
import hmac
import json
import logging
from datetime import datetime, timezone
from typing import Any

security_logger = logging.getLogger("app.security")


def compute_signature(payload: bytes | str | dict[str, Any], secret: str) -> str:
    if isinstance(payload, dict):
        # Gateway signs the raw body; dicts are only for locally built payloads.
        payload = json.dumps(payload, separators=(",", ":"))
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_signature(payload: bytes | str | dict[str, Any], provided_signature: str | None, secret: str | None) -> bool:
    """Constant-time HMAC-SHA256 check. Missing secret or signature never verifies."""
    if not secret or not provided_signature:
        return False
    expected_signature = compute_signature(payload, secret)
    return hmac.compare_digest(expected_signature, provided_signature.strip())


def payment_signature_payload(order_id: str, payment_id: str) -> str:
    return f"{order_id}|{payment_id}"


def verify_payment_signature(order_id: str, payment_id: str, signature: str | None, key_secret: str | None) -> bool:
    return verify_signature(payment_signature_payload(order_id, payment_id), signature, key_secret)


def verify_webhook_signature(raw_body: bytes, signature: str | None, webhook_secret: str | None) -> bool:
    return verify_signature(raw_body, signature, webhook_secret)


def log_security_alert(event: str, **fields: Any) -> None:
    """Audit line for signature, amount and order-id anomalies."""
    fields.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
    details = " ".join(f"{key}={value}" for key, value in fields.items())
    security_logger.error("SECURITY ALERT: %s %s", event, details)
