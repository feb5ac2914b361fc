import asyncio
import json
import logging

from fastapi import APIRouter, HTTPException, Request

from app import config
from app.services.razorpay_webhooks import log_webhook, parse_webhook_event
from app.utils.client_ip import extract_client_ip
from app.utils.signatures import log_security_alert, verify_webhook_signature

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])
logger = logging.getLogger(__name__)


@router.post("/razorpay")
async def razorpay_webhook(request: Request):
    """Verify, acknowledge and queue. Business logic runs on the dispatcher.

    Once the signature passes the response is always 200, even for payloads
    we cannot use, so the gateway does not keep redelivering them.
    """
    webhook_secret = getattr(request.app.state, "razorpay_webhook_secret", None)
    if webhook_secret is None:
        webhook_secret = config.RAZORPAY_WEBHOOK_SECRET
    if not webhook_secret:
        raise HTTPException(status_code=503, detail="Webhook verification is not configured.")

    try:
        body = await asyncio.wait_for(request.body(), timeout=config.WEBHOOK_BODY_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.warning("Timed out reading webhook body from %s", extract_client_ip(request))
        raise HTTPException(status_code=408, detail="Request timed out.")

    webhook_id = (request.headers.get("x-razorpay-event-id") or "").strip()
    provided_signature = (request.headers.get("x-razorpay-signature") or "").strip()
    log_webhook("unknown", "received", webhook_id=webhook_id, size=len(body))

    if not provided_signature or not verify_webhook_signature(body, provided_signature, webhook_secret):
        log_security_alert(
            "WEBHOOK_SIGNATURE_VERIFICATION_FAILED",
            webhook_id=webhook_id,
            signature_present=bool(provided_signature),
            source_ip=extract_client_ip(request),
        )
        log_webhook("unknown", "signature_verification_failed", webhook_id=webhook_id)
        detail = "Missing webhook signature." if not provided_signature else "Invalid webhook signature."
        raise HTTPException(status_code=400, detail=detail)

    try:
        payload = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        log_webhook("unknown", "invalid_payload", webhook_id=webhook_id)
        return {"status": "ok"}
    if not isinstance(payload, dict):
        log_webhook("unknown", "invalid_payload", webhook_id=webhook_id)
        return {"status": "ok"}

    event = parse_webhook_event(payload, webhook_id=webhook_id)
    if not event.has_required_entity:
        log_webhook(event.event_name, "missing_entity", webhook_id=event.webhook_id)
        return {"status": "ok"}

    dispatcher = request.app.state.webhook_dispatcher
    dispatcher.submit(event)
    log_webhook(event.event_name, "acknowledged", webhook_id=event.webhook_id)
    return {"status": "ok"}
