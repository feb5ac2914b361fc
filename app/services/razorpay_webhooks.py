"""Deferred handlers for Razorpay webhook events.

The HTTP endpoint verifies the signature, acknowledges and queues; the
functions here run later on a worker thread. Each handler re-checks the
payment record state before writing because the same event can arrive
several times, and can race the synchronous checkout verification.
"""
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app import models
from app import payment_records as records
from app.billing_notifications import notify_payment_failed, notify_subscription_change
from app.services.checkout import finalize_captured_payment
from app.services.razorpay_client import RazorpayClient
from app.subscriptions import (
    STATUS_CANCELLED,
    STATUS_EXPIRED,
    get_subscription_for_user,
    mark_gateway_subscription_cancelled,
    mark_gateway_subscription_completed,
    renew_from_gateway_charge,
)
from app.utils.signatures import log_security_alert

logger = logging.getLogger(__name__)
webhook_logger = logging.getLogger("app.webhooks")


class WebhookEventType(str, Enum):
    PAYMENT_CAPTURED = "payment.captured"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_AUTHORIZED = "payment.authorized"
    ORDER_PAID = "order.paid"
    SUBSCRIPTION_CHARGED = "subscription.charged"
    SUBSCRIPTION_CANCELLED = "subscription.cancelled"
    SUBSCRIPTION_COMPLETED = "subscription.completed"
    UNHANDLED = "unhandled"

    @classmethod
    def from_name(cls, event_name: str) -> "WebhookEventType":
        try:
            return cls(event_name)
        except ValueError:
            return cls.UNHANDLED


@dataclass
class WebhookEvent:
    event_type: WebhookEventType
    event_name: str
    webhook_id: str
    payment: Optional[dict[str, Any]] = None
    order: Optional[dict[str, Any]] = None
    subscription: Optional[dict[str, Any]] = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def has_required_entity(self) -> bool:
        if self.event_type in (
            WebhookEventType.PAYMENT_CAPTURED,
            WebhookEventType.PAYMENT_FAILED,
            WebhookEventType.PAYMENT_AUTHORIZED,
        ):
            return bool(self.payment)
        if self.event_type == WebhookEventType.ORDER_PAID:
            return bool(self.order or self.payment)
        if self.event_type in (
            WebhookEventType.SUBSCRIPTION_CHARGED,
            WebhookEventType.SUBSCRIPTION_CANCELLED,
            WebhookEventType.SUBSCRIPTION_COMPLETED,
        ):
            return bool(self.subscription)
        return True


def log_webhook(event: str, status: str, **details: Any) -> None:
    """One JSON line per processing stage."""
    entry = {
        "event": event,
        "status": status,
        **details,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    level = logging.ERROR if status in {"processing_error", "dropped", "signature_verification_failed"} else logging.INFO
    webhook_logger.log(level, json.dumps(entry, default=str))


def _entity(payload: dict[str, Any], name: str) -> Optional[dict[str, Any]]:
    container = (payload.get("payload") or {}).get(name) or {}
    if not isinstance(container, dict):
        return None
    entity = container.get("entity")
    return entity if isinstance(entity, dict) and entity else None


def parse_webhook_event(payload: dict[str, Any], webhook_id: Optional[str] = None) -> WebhookEvent:
    event_name = str(payload.get("event") or "").strip()
    return WebhookEvent(
        event_type=WebhookEventType.from_name(event_name),
        event_name=event_name or "unknown",
        webhook_id=(webhook_id or str(payload.get("id") or "")).strip(),
        payment=_entity(payload, "payment"),
        order=_entity(payload, "order"),
        subscription=_entity(payload, "subscription"),
        raw=payload,
    )


def _cross_check_payment(
    db: Session,
    event: WebhookEvent,
    payment: models.SubscriptionPayment,
    payment_entity: dict[str, Any],
) -> bool:
    """Amount and order id must match the stored record, else the record fails."""
    amount = int(payment_entity.get("amount", 0) or 0)
    if amount != int(payment.amount_paise):
        error_code = records.ERROR_AMOUNT_MISMATCH
        expected, actual = payment.amount_paise, amount
    elif str(payment_entity.get("order_id") or "") != payment.razorpay_order_id:
        error_code = records.ERROR_ORDER_ID_MISMATCH
        expected, actual = payment.razorpay_order_id, payment_entity.get("order_id")
    else:
        return True

    log_security_alert(
        error_code,
        source="webhook",
        webhook_id=event.webhook_id,
        order_id=payment.razorpay_order_id,
        payment_id=payment_entity.get("id"),
        expected=expected,
        actual=actual,
    )
    log_webhook(event.event_name, error_code.lower(), webhook_id=event.webhook_id, expected=expected, actual=actual)
    records.mark_payment_failed(
        db,
        payment,
        error_code=error_code,
        description="Webhook payment details do not match the order.",
        source="webhook",
        step=error_code.lower(),
        reason=error_code.lower(),
    )
    return False


def _find_payment_record(db: Session, payment_entity: dict[str, Any]) -> Optional[models.SubscriptionPayment]:
    order_id = str(payment_entity.get("order_id") or "").strip()
    payment = records.get_payment_by_order_id(db, order_id)
    if payment is None:
        payment = records.get_payment_by_payment_id(db, str(payment_entity.get("id") or "").strip())
    return payment


def _capture_from_entity(db: Session, event: WebhookEvent, payment_entity: dict[str, Any]) -> dict[str, Any]:
    payment = _find_payment_record(db, payment_entity)
    if payment is None:
        logger.warning(
            "Webhook references unknown order order_id=%s payment_id=%s webhook_id=%s",
            payment_entity.get("order_id"),
            payment_entity.get("id"),
            event.webhook_id,
        )
        return {"status": "ignored", "reason": "order_not_found"}

    records.mark_webhook_received(db, payment)

    if payment.status == records.STATUS_CAPTURED:
        if payment.activated_at is None:
            finalize_captured_payment(db, payment)
        return {"status": "duplicate", "order_id": payment.razorpay_order_id}
    if payment.status in (records.STATUS_FAILED, records.STATUS_REFUNDED):
        logger.warning(
            "Capture webhook for closed payment order_id=%s status=%s",
            payment.razorpay_order_id,
            payment.status,
        )
        return {"status": "ignored", "reason": f"payment_{payment.status}"}

    if not _cross_check_payment(db, event, payment, payment_entity):
        return {"status": "rejected", "order_id": payment.razorpay_order_id}

    captured = records.mark_payment_captured(
        db,
        payment,
        payment_id=str(payment_entity.get("id") or ""),
        method=payment_entity.get("method"),
    )
    if not captured and payment.status != records.STATUS_CAPTURED:
        return {"status": "ignored", "reason": f"payment_{payment.status}"}

    subscription, activated = finalize_captured_payment(db, payment)
    if activated:
        log_webhook(
            event.event_name,
            "subscription_activated",
            webhook_id=event.webhook_id,
            order_id=payment.razorpay_order_id,
            user_id=subscription.user_id,
            plan=subscription.plan,
        )
    return {
        "status": "processed" if captured else "duplicate",
        "order_id": payment.razorpay_order_id,
        "activated": activated,
    }


def handle_payment_captured(db: Session, client: RazorpayClient, event: WebhookEvent) -> dict[str, Any]:
    return _capture_from_entity(db, event, event.payment or {})


def handle_payment_authorized(db: Session, client: RazorpayClient, event: WebhookEvent) -> dict[str, Any]:
    payment_entity = event.payment or {}
    payment = _find_payment_record(db, payment_entity)
    if payment is None:
        logger.warning("Authorized webhook for unknown order order_id=%s", payment_entity.get("order_id"))
        return {"status": "ignored", "reason": "order_not_found"}

    records.mark_webhook_received(db, payment)
    guard = records.check_payment_idempotency(db, payment.razorpay_order_id)
    if guard["is_processed"]:
        return {"status": "duplicate", "order_id": payment.razorpay_order_id}
    if payment.status not in (records.STATUS_CREATED, records.STATUS_PENDING):
        return {"status": "ignored", "reason": f"payment_{payment.status}"}
    if not _cross_check_payment(db, event, payment, payment_entity):
        return {"status": "rejected", "order_id": payment.razorpay_order_id}

    authorized = records.mark_payment_authorized(
        db,
        payment,
        payment_id=str(payment_entity.get("id") or ""),
        method=payment_entity.get("method"),
    )
    return {"status": "processed" if authorized else "duplicate", "order_id": payment.razorpay_order_id}


def handle_payment_failed(db: Session, client: RazorpayClient, event: WebhookEvent) -> dict[str, Any]:
    payment_entity = event.payment or {}
    payment = _find_payment_record(db, payment_entity)
    if payment is None:
        logger.warning("Failed-payment webhook for unknown order order_id=%s", payment_entity.get("order_id"))
        return {"status": "ignored", "reason": "order_not_found"}

    records.mark_webhook_received(db, payment)
    if payment.status == records.STATUS_FAILED:
        return {"status": "duplicate", "order_id": payment.razorpay_order_id}
    if not records.can_transition(payment.status, records.STATUS_FAILED):
        # A later failed attempt cannot undo a capture on the same order.
        return {"status": "ignored", "reason": f"payment_{payment.status}"}

    failed = records.mark_payment_failed(
        db,
        payment,
        error_code=str(payment_entity.get("error_code") or records.ERROR_GATEWAY_PAYMENT_FAILED),
        description=str(payment_entity.get("error_description") or "Payment failed at gateway."),
        source=payment_entity.get("error_source"),
        step=payment_entity.get("error_step"),
        reason=payment_entity.get("error_reason"),
    )
    if failed:
        notify_payment_failed(db, payment)
    return {"status": "processed" if failed else "duplicate", "order_id": payment.razorpay_order_id}


def handle_order_paid(db: Session, client: RazorpayClient, event: WebhookEvent) -> dict[str, Any]:
    if event.payment:
        return _capture_from_entity(db, event, event.payment)

    order_entity = event.order or {}
    order_id = str(order_entity.get("id") or "")
    payment = records.get_payment_by_order_id(db, order_id)
    if payment is None:
        logger.warning("order.paid for unknown order order_id=%s", order_id)
        return {"status": "ignored", "reason": "order_not_found"}
    records.mark_webhook_received(db, payment)
    if payment.status in records.PROCESSED_STATUSES:
        return {"status": "duplicate", "order_id": order_id}
    # Capture needs a payment id; payment.captured for this order will carry it.
    logger.warning("order.paid without payment entity order_id=%s status=%s", order_id, payment.status)
    return {"status": "ignored", "reason": "missing_payment_entity"}


def _find_gateway_subscription(db: Session, event: WebhookEvent) -> Optional[models.Subscription]:
    entity = event.subscription or {}
    subscription_id = str(entity.get("id") or "").strip()
    if not subscription_id:
        return None
    subscription = db.query(models.Subscription).filter(
        models.Subscription.razorpay_subscription_id == subscription_id
    ).first()
    if subscription is not None:
        return subscription

    # First event for a recurring plan: link it through the user id in its notes.
    notes = entity.get("notes") or {}
    raw_user_id = str(notes.get("user_id") or "").strip() if isinstance(notes, dict) else ""
    if not raw_user_id.isdigit():
        return None
    subscription = get_subscription_for_user(db, int(raw_user_id))
    if subscription is None or subscription.razorpay_subscription_id:
        return None
    subscription.razorpay_subscription_id = subscription_id
    db.commit()
    db.refresh(subscription)
    logger.info("Linked gateway subscription id=%s user_id=%s", subscription_id, subscription.user_id)
    return subscription


def handle_subscription_charged(db: Session, client: RazorpayClient, event: WebhookEvent) -> dict[str, Any]:
    subscription = _find_gateway_subscription(db, event)
    gateway_subscription_id = str((event.subscription or {}).get("id") or "")
    if subscription is None:
        logger.warning("subscription.charged for unknown subscription id=%s", gateway_subscription_id)
        return {"status": "ignored", "reason": "subscription_not_found"}

    payment_entity = event.payment or {}
    payment_id = str(payment_entity.get("id") or "").strip()
    if not payment_id:
        return {"status": "ignored", "reason": "missing_payment_entity"}
    if records.get_payment_by_payment_id(db, payment_id) is not None:
        return {"status": "duplicate", "payment_id": payment_id}

    order_ref = str(payment_entity.get("order_id") or "").strip() or f"{gateway_subscription_id}:{payment_id}"
    try:
        payment = records.create_payment_record(
            db,
            user_id=subscription.user_id,
            subscription_id=subscription.id,
            order_id=order_ref,
            amount_paise=int(payment_entity.get("amount", 0) or 0),
            currency=str(payment_entity.get("currency") or subscription.currency or "INR").upper(),
            plan=subscription.plan,
            billing_cycle=subscription.billing_cycle,
            purpose="renewal",
            razorpay_subscription_id=gateway_subscription_id,
        )
    except IntegrityError:
        db.rollback()
        return {"status": "duplicate", "payment_id": payment_id}

    records.mark_webhook_received(db, payment)
    if not records.mark_payment_captured(db, payment, payment_id=payment_id, method=payment_entity.get("method")):
        return {"status": "duplicate", "payment_id": payment_id}

    if not records.claim_activation(db, payment, datetime.utcnow()):
        db.rollback()
        return {"status": "duplicate", "payment_id": payment_id}
    renewed = renew_from_gateway_charge(db, subscription, int(payment.amount_paise))
    notify_subscription_change(db, renewed, "subscription_renewed", payment=payment)
    return {"status": "processed", "payment_id": payment_id, "expiry_date": renewed.expiry_date}


def handle_subscription_cancelled(db: Session, client: RazorpayClient, event: WebhookEvent) -> dict[str, Any]:
    subscription = _find_gateway_subscription(db, event)
    if subscription is None:
        return {"status": "ignored", "reason": "subscription_not_found"}
    if subscription.status == STATUS_CANCELLED:
        return {"status": "duplicate"}
    updated = mark_gateway_subscription_cancelled(db, subscription)
    notify_subscription_change(db, updated, "subscription_cancelled")
    return {"status": "processed"}


def handle_subscription_completed(db: Session, client: RazorpayClient, event: WebhookEvent) -> dict[str, Any]:
    subscription = _find_gateway_subscription(db, event)
    if subscription is None:
        return {"status": "ignored", "reason": "subscription_not_found"}
    if subscription.status == STATUS_EXPIRED:
        return {"status": "duplicate"}
    updated = mark_gateway_subscription_completed(db, subscription)
    notify_subscription_change(db, updated, "subscription_expired")
    return {"status": "processed"}


WebhookHandler = Callable[[Session, RazorpayClient, WebhookEvent], dict[str, Any]]

WEBHOOK_HANDLERS: dict[WebhookEventType, WebhookHandler] = {
    WebhookEventType.PAYMENT_CAPTURED: handle_payment_captured,
    WebhookEventType.PAYMENT_FAILED: handle_payment_failed,
    WebhookEventType.PAYMENT_AUTHORIZED: handle_payment_authorized,
    WebhookEventType.ORDER_PAID: handle_order_paid,
    WebhookEventType.SUBSCRIPTION_CHARGED: handle_subscription_charged,
    WebhookEventType.SUBSCRIPTION_CANCELLED: handle_subscription_cancelled,
    WebhookEventType.SUBSCRIPTION_COMPLETED: handle_subscription_completed,
}


def process_webhook_event(db: Session, client: RazorpayClient, event: WebhookEvent) -> dict[str, Any]:
    """Run the handler for one event. Exceptions propagate to the dispatcher."""
    log_webhook(event.event_name, "processing", webhook_id=event.webhook_id)
    handler = WEBHOOK_HANDLERS.get(event.event_type)
    if handler is None:
        log_webhook(event.event_name, "unhandled", webhook_id=event.webhook_id)
        return {"status": "ignored", "reason": "unhandled_event"}

    result = handler(db, client, event)
    status = "duplicate" if result.get("status") == "duplicate" else "success"
    log_webhook(event.event_name, status, webhook_id=event.webhook_id, result=result)
    return result
