"""Payment record store and lifecycle.

Every status change goes through ``_transition``: a conditional UPDATE that
only matches while the row is still in an allowed source state. The caller
whose UPDATE matched owns the downstream effects; everyone else gets
``False`` and must treat the event as already handled. Together with the
unique order id this is the whole concurrency story, no row locks are held
between the synchronous verification path and webhook delivery.
"""
import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app import models

logger = logging.getLogger(__name__)

STATUS_CREATED = "created"
STATUS_PENDING = "pending"
STATUS_AUTHORIZED = "authorized"
STATUS_CAPTURED = "captured"
STATUS_FAILED = "failed"
STATUS_REFUNDED = "refunded"

PROCESSED_STATUSES = (STATUS_AUTHORIZED, STATUS_CAPTURED)
SUCCESS_STATUSES = (STATUS_AUTHORIZED, STATUS_CAPTURED)
TERMINAL_STATUSES = (STATUS_CAPTURED, STATUS_FAILED, STATUS_REFUNDED)

TRANSITIONS: dict[str, tuple[str, ...]] = {
    STATUS_CREATED: (STATUS_PENDING, STATUS_AUTHORIZED, STATUS_CAPTURED, STATUS_FAILED),
    STATUS_PENDING: (STATUS_AUTHORIZED, STATUS_CAPTURED, STATUS_FAILED),
    STATUS_AUTHORIZED: (STATUS_CAPTURED, STATUS_FAILED, STATUS_REFUNDED),
    STATUS_CAPTURED: (STATUS_REFUNDED,),
    STATUS_FAILED: (),
    STATUS_REFUNDED: (),
}

PAYMENT_METHODS = {"card", "netbanking", "wallet", "upi", "emi"}

# Error codes stored on failed records.
ERROR_SIGNATURE_VERIFICATION_FAILED = "SIGNATURE_VERIFICATION_FAILED"
ERROR_AMOUNT_MISMATCH = "AMOUNT_MISMATCH"
ERROR_ORDER_ID_MISMATCH = "ORDER_ID_MISMATCH"
ERROR_CURRENCY_MISMATCH = "CURRENCY_MISMATCH"
ERROR_GATEWAY_PAYMENT_FAILED = "GATEWAY_PAYMENT_FAILED"


def allowed_sources(target: str) -> list[str]:
    return [source for source, targets in TRANSITIONS.items() if target in targets]


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, ())


def normalize_payment_method(method: Optional[str]) -> str:
    normalized = str(method or "").strip().lower()
    return normalized if normalized in PAYMENT_METHODS else "other"


def _transition(db: Session, payment: models.SubscriptionPayment, target: str, **fields: Any) -> bool:
    sources = allowed_sources(target)
    values = {"status": target, **fields}
    try:
        updated = (
            db.query(models.SubscriptionPayment)
            .filter(
                models.SubscriptionPayment.id == payment.id,
                models.SubscriptionPayment.status.in_(sources),
            )
            .update(values, synchronize_session=False)
        )
        db.commit()
    except IntegrityError:
        # Payment id already attached to another record.
        db.rollback()
        logger.warning(
            "Payment transition rejected by unique constraint payment_id=%s target=%s",
            payment.id,
            target,
        )
        updated = 0
    db.refresh(payment)
    if not updated:
        logger.info(
            "Payment transition skipped payment_id=%s order_id=%s current=%s target=%s",
            payment.id,
            payment.razorpay_order_id,
            payment.status,
            target,
        )
        return False
    logger.info(
        "Payment transition applied payment_id=%s order_id=%s target=%s",
        payment.id,
        payment.razorpay_order_id,
        target,
    )
    return True


def get_payment_by_order_id(db: Session, order_id: str) -> Optional[models.SubscriptionPayment]:
    if not order_id:
        return None
    return db.query(models.SubscriptionPayment).filter(
        models.SubscriptionPayment.razorpay_order_id == order_id
    ).first()


def get_payment_by_payment_id(db: Session, payment_id: str) -> Optional[models.SubscriptionPayment]:
    if not payment_id:
        return None
    return db.query(models.SubscriptionPayment).filter(
        models.SubscriptionPayment.razorpay_payment_id == payment_id
    ).first()


def check_payment_idempotency(db: Session, order_id: str) -> dict[str, Any]:
    payment = get_payment_by_order_id(db, order_id)
    if payment is None:
        return {"exists": False, "is_processed": False, "status": None, "payment": None}
    return {
        "exists": True,
        "is_processed": payment.status in PROCESSED_STATUSES,
        "status": payment.status,
        "payment": payment,
    }


def create_payment_record(
    db: Session,
    *,
    user_id: int,
    subscription_id: Optional[int],
    order_id: str,
    amount_paise: int,
    currency: str,
    plan: str,
    billing_cycle: str,
    base_amount_paise: int = 0,
    discount_amount_paise: int = 0,
    discount_percentage: int = 0,
    discount_code: Optional[str] = None,
    referral_credit_paise: int = 0,
    purpose: str = "purchase",
    receipt: Optional[str] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    razorpay_subscription_id: Optional[str] = None,
    notes: Optional[str] = None,
) -> models.SubscriptionPayment:
    payment = models.SubscriptionPayment(
        user_id=user_id,
        subscription_id=subscription_id,
        provider="razorpay",
        razorpay_order_id=order_id,
        razorpay_subscription_id=razorpay_subscription_id,
        amount_paise=int(amount_paise),
        base_amount_paise=int(base_amount_paise or amount_paise),
        currency=currency,
        discount_amount_paise=int(discount_amount_paise),
        discount_percentage=int(discount_percentage),
        discount_code=discount_code,
        referral_credit_paise=int(referral_credit_paise),
        plan=plan,
        billing_cycle=billing_cycle,
        purpose=purpose,
        status=STATUS_CREATED,
        receipt=receipt,
        attempt_count=1,
        ip_address=(ip_address or None),
        user_agent=(user_agent or "")[:500] or None,
        notes=notes,
        transaction_date=datetime.utcnow(),
    )
    db.add(payment)
    db.commit()
    db.refresh(payment)
    return payment


def mark_payment_pending(db: Session, payment: models.SubscriptionPayment) -> bool:
    return _transition(db, payment, STATUS_PENDING)


def mark_payment_authorized(
    db: Session,
    payment: models.SubscriptionPayment,
    payment_id: str,
    method: Optional[str] = None,
) -> bool:
    return _transition(
        db,
        payment,
        STATUS_AUTHORIZED,
        razorpay_payment_id=payment_id,
        payment_method=normalize_payment_method(method),
        authorized_at=datetime.utcnow(),
    )


def mark_payment_captured(
    db: Session,
    payment: models.SubscriptionPayment,
    payment_id: str,
    signature: Optional[str] = None,
    method: Optional[str] = None,
) -> bool:
    # A payment id, once set on authorization, never changes.
    if payment.razorpay_payment_id and payment.razorpay_payment_id != payment_id:
        logger.warning(
            "Refusing capture with different payment id order_id=%s stored=%s received=%s",
            payment.razorpay_order_id,
            payment.razorpay_payment_id,
            payment_id,
        )
        return False
    fields: dict[str, Any] = {
        "razorpay_payment_id": payment_id,
        "payment_method": normalize_payment_method(method),
        "captured_at": datetime.utcnow(),
        "error_code": None,
        "error_description": None,
    }
    if signature:
        fields["razorpay_signature"] = signature
    return _transition(db, payment, STATUS_CAPTURED, **fields)


def mark_payment_failed(
    db: Session,
    payment: models.SubscriptionPayment,
    error_code: str,
    description: str,
    source: Optional[str] = None,
    step: Optional[str] = None,
    reason: Optional[str] = None,
) -> bool:
    return _transition(
        db,
        payment,
        STATUS_FAILED,
        error_code=error_code,
        error_description=(description or "")[:1000],
        error_source=source,
        error_step=step,
        error_reason=reason,
        failed_at=datetime.utcnow(),
    )


def mark_payment_refunded(
    db: Session,
    payment: models.SubscriptionPayment,
    refund_amount_paise: int,
    refund_reason: str,
    refund_id: Optional[str],
) -> bool:
    return _transition(
        db,
        payment,
        STATUS_REFUNDED,
        refund_amount_paise=int(refund_amount_paise),
        refund_reason=refund_reason,
        refund_id=refund_id,
        refunded_at=datetime.utcnow(),
    )


def claim_activation(db: Session, payment: models.SubscriptionPayment, now: datetime) -> bool:
    """Stamp ``activated_at`` on a captured payment. Does not commit.

    Only one caller ever sees True for a given payment; that caller applies
    the subscription change in the same transaction.
    """
    claimed = (
        db.query(models.SubscriptionPayment)
        .filter(
            models.SubscriptionPayment.id == payment.id,
            models.SubscriptionPayment.status == STATUS_CAPTURED,
            models.SubscriptionPayment.activated_at.is_(None),
        )
        .update({"activated_at": now}, synchronize_session=False)
    )
    return bool(claimed)


def increment_payment_attempt(db: Session, payment: models.SubscriptionPayment) -> None:
    db.query(models.SubscriptionPayment).filter(
        models.SubscriptionPayment.id == payment.id
    ).update(
        {models.SubscriptionPayment.attempt_count: models.SubscriptionPayment.attempt_count + 1},
        synchronize_session=False,
    )
    db.commit()
    db.refresh(payment)


def mark_webhook_received(db: Session, payment: models.SubscriptionPayment) -> None:
    db.query(models.SubscriptionPayment).filter(
        models.SubscriptionPayment.id == payment.id
    ).update(
        {"webhook_received": True, "webhook_received_at": datetime.utcnow()},
        synchronize_session=False,
    )
    db.commit()
    db.refresh(payment)


def list_user_payments(
    db: Session,
    user_id: int,
    status: Optional[str] = None,
    limit: int = 10,
    offset: int = 0,
) -> tuple[list[models.SubscriptionPayment], int]:
    query = db.query(models.SubscriptionPayment).filter(models.SubscriptionPayment.user_id == user_id)
    if status:
        query = query.filter(models.SubscriptionPayment.status == status)
    total = query.count()
    rows = (
        query.order_by(models.SubscriptionPayment.transaction_date.desc(), models.SubscriptionPayment.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return rows, total


def calculate_revenue(db: Session, start: Optional[datetime] = None, end: Optional[datetime] = None) -> dict[str, int]:
    """Revenue summary. Refunded amounts are subtracted from the gross figure."""
    query = db.query(models.SubscriptionPayment).filter(
        models.SubscriptionPayment.status.in_(SUCCESS_STATUSES + (STATUS_REFUNDED,))
    )
    if start is not None:
        query = query.filter(models.SubscriptionPayment.transaction_date >= start)
    if end is not None:
        query = query.filter(models.SubscriptionPayment.transaction_date <= end)

    total_revenue = 0
    total_discounts = 0
    total_refunded = 0
    successful = 0
    for payment in query.all():
        if payment.status == STATUS_REFUNDED:
            total_refunded += int(payment.refund_amount_paise or 0)
        else:
            successful += 1
        total_revenue += int(payment.amount_paise or 0)
        total_discounts += int(payment.discount_amount_paise or 0)

    net_revenue = total_revenue - total_refunded
    return {
        "total_revenue": total_revenue,
        "total_discounts": total_discounts,
        "total_refunded": total_refunded,
        "net_revenue": net_revenue,
        "successful_payments": successful,
        "average_transaction_value": round(net_revenue / successful) if successful else 0,
    }


def payment_stats_by_plan(db: Session) -> list[dict[str, Any]]:
    rows = (
        db.query(
            models.SubscriptionPayment.plan,
            func.count(models.SubscriptionPayment.id),
            func.coalesce(func.sum(models.SubscriptionPayment.amount_paise), 0),
        )
        .filter(models.SubscriptionPayment.status.in_(SUCCESS_STATUSES))
        .group_by(models.SubscriptionPayment.plan)
        .order_by(models.SubscriptionPayment.plan.asc())
        .all()
    )
    return [
        {
            "plan": plan,
            "count": int(count),
            "revenue": int(revenue),
            "average_amount": round(int(revenue) / int(count)) if count else 0,
        }
        for plan, count, revenue in rows
    ]


def payment_failure_analysis(db: Session, start: Optional[datetime] = None) -> list[dict[str, Any]]:
    query = db.query(
        models.SubscriptionPayment.error_code,
        func.count(models.SubscriptionPayment.id),
    ).filter(models.SubscriptionPayment.status == STATUS_FAILED)
    if start is not None:
        query = query.filter(models.SubscriptionPayment.transaction_date >= start)
    rows = query.group_by(models.SubscriptionPayment.error_code).all()
    results = [{"error_code": code or "UNKNOWN", "count": int(count)} for code, count in rows]
    return sorted(results, key=lambda item: item["count"], reverse=True)
