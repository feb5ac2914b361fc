import logging
import re
import secrets
import string
import time
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy.orm import Session

from app import models
from app import payment_records as records
from app.billing_notifications import notify_subscription_change
from app.exceptions import (
    PaymentGatewayError,
    PaymentGatewayUnavailable,
    PaymentNotFoundError,
    PaymentSecurityError,
    PaymentValidationError,
)
from app.plans import PLAN_FREE, quote_plan, validate_purchase
from app.referrals import award_referral_credit
from app.services.razorpay_client import RazorpayClient
from app.subscriptions import activate_subscription, get_or_create_user_subscription
from app.utils.signatures import log_security_alert, verify_payment_signature

logger = logging.getLogger(__name__)

RECEIPT_SUFFIX_CHARS = string.ascii_uppercase + string.digits
GATEWAY_SUCCESS_STATUSES = {"captured", "authorized"}


@dataclass
class VerificationResult:
    success: bool
    is_duplicate: bool
    payment: models.SubscriptionPayment
    subscription: models.Subscription


def looks_like_razorpay_id(value: Optional[str], prefix: str) -> bool:
    return bool(re.fullmatch(rf"{prefix}_[A-Za-z0-9]+", (value or "").strip()))


def validate_payment_ids(order_id: str, payment_id: str) -> None:
    if not looks_like_razorpay_id(order_id, "order"):
        raise PaymentValidationError("Invalid order id format.")
    if not looks_like_razorpay_id(payment_id, "pay"):
        raise PaymentValidationError("Invalid payment id format.")


def build_receipt(plan: str, billing_cycle: str) -> str:
    """Receipt like ``ORD-PRO-M-1717171717171-X7K2QZ``, within the gateway's 40 chars."""
    suffix = "".join(secrets.choice(RECEIPT_SUFFIX_CHARS) for _ in range(6))
    timestamp_ms = int(time.time() * 1000)
    return f"ORD-{plan[:3].upper()}-{billing_cycle[:1].upper()}-{timestamp_ms}-{suffix}"


def _create_gateway_order(
    db: Session,
    client: RazorpayClient,
    user: models.User,
    plan_details: dict[str, Any],
    purpose: str,
    ip_address: Optional[str],
    user_agent: Optional[str],
) -> dict[str, Any]:
    if not client.is_configured:
        raise PaymentGatewayUnavailable("Payment service is not configured.")

    plan = plan_details["plan"]
    billing_cycle = plan_details["billing_cycle"]
    amount = int(plan_details["final_amount"])
    currency = plan_details.get("currency") or "INR"
    subscription = get_or_create_user_subscription(db, user.id)
    receipt = build_receipt(plan, billing_cycle)

    order_data = client.create_order(
        amount_paise=amount,
        currency=currency,
        receipt=receipt,
        notes={
            "user_id": str(user.id),
            "plan": plan,
            "billing_cycle": billing_cycle,
            "purpose": purpose,
        },
    )
    order_id = str(order_data.get("id") or "").strip()
    if not looks_like_razorpay_id(order_id, "order"):
        raise PaymentGatewayError("Payment gateway returned an invalid order.")
    if int(order_data.get("amount", 0) or 0) != amount:
        logger.error("Gateway order amount differs order_id=%s expected=%s got=%s", order_id, amount, order_data.get("amount"))
        raise PaymentGatewayError("Payment gateway returned an unexpected amount.")

    payment = records.create_payment_record(
        db,
        user_id=user.id,
        subscription_id=subscription.id,
        order_id=order_id,
        amount_paise=amount,
        currency=str(order_data.get("currency") or currency).upper(),
        plan=plan,
        billing_cycle=billing_cycle,
        base_amount_paise=int(plan_details.get("base_amount") or amount),
        discount_amount_paise=int(plan_details.get("discount_amount") or 0),
        discount_percentage=int(plan_details.get("discount_percentage") or 0),
        discount_code=plan_details.get("discount_code"),
        purpose=purpose,
        receipt=receipt,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    logger.info(
        "Created order order_id=%s user_id=%s plan=%s cycle=%s amount=%s purpose=%s",
        order_id,
        user.id,
        plan,
        billing_cycle,
        amount,
        purpose,
    )
    return {
        "order_id": order_id,
        "amount": amount,
        "currency": payment.currency,
        "payment_id": payment.id,
        "key": client.key_id,
        "receipt": receipt,
        "plan_details": plan_details,
    }


def create_order(
    db: Session,
    client: RazorpayClient,
    user: models.User,
    plan: str,
    billing_cycle: str,
    discount_code: Optional[str] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    currency: str = "INR",
) -> dict[str, Any]:
    plan, billing_cycle = validate_purchase(plan, billing_cycle)
    plan_details = quote_plan(db, plan, billing_cycle, discount_code)
    plan_details["currency"] = currency
    return _create_gateway_order(db, client, user, plan_details, "purchase", ip_address, user_agent)


def create_upgrade_order(
    db: Session,
    client: RazorpayClient,
    user: models.User,
    quote: dict[str, Any],
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    currency: str = "INR",
) -> dict[str, Any]:
    """Gateway order for a prorated upgrade quote from ``upgrade_subscription``."""
    amount = int(quote["amount"])
    plan_details = {
        "plan": quote["new_plan"],
        "billing_cycle": quote["billing_cycle"],
        "base_amount": int(quote["new_price"]),
        "discount_amount": int(quote["new_price"]) - amount,
        "discount_percentage": 0,
        "discount_code": None,
        "final_amount": amount,
        "currency": currency,
    }
    return _create_gateway_order(db, client, user, plan_details, "upgrade", ip_address, user_agent)


def finalize_captured_payment(
    db: Session,
    payment: models.SubscriptionPayment,
) -> tuple[models.Subscription, bool]:
    """Activate the subscription for a captured payment, at most once."""
    subscription, activated = activate_subscription(db, payment.id)
    if activated:
        db.refresh(payment)
        try:
            award_referral_credit(db, payment)
        except Exception:
            db.rollback()
            logger.exception("Failed to award referral credit payment_id=%s", payment.id)
        notify_subscription_change(db, subscription, "plan_activated", payment=payment)
    return subscription, activated


def _reject_as_fraud(
    db: Session,
    payment: models.SubscriptionPayment,
    error_code: str,
    user_message: str,
    step: str,
    **alert_fields: Any,
) -> None:
    log_security_alert(
        error_code,
        order_id=payment.razorpay_order_id,
        payment_record_id=payment.id,
        user_id=payment.user_id,
        **alert_fields,
    )
    records.mark_payment_failed(
        db,
        payment,
        error_code=error_code,
        description=user_message,
        source="verification",
        step=step,
        reason=error_code.lower(),
    )
    raise PaymentSecurityError(user_message, error_code=error_code)


def verify_payment(
    db: Session,
    client: RazorpayClient,
    order_id: Optional[str],
    payment_id: Optional[str],
    signature: Optional[str],
    user_id: Optional[int] = None,
    source_ip: Optional[str] = None,
) -> VerificationResult:
    """Verify a client-submitted checkout confirmation and capture the payment.

    Each check short-circuits. Duplicates return early without touching the
    gateway; security failures mark the record failed with a machine-readable
    code; gateway outages propagate without marking anything so the client
    can retry.
    """
    order_id = (order_id or "").strip()
    payment_id = (payment_id or "").strip()
    signature = (signature or "").strip()
    if not order_id or not payment_id or not signature:
        raise PaymentValidationError("Missing payment verification parameters.")
    validate_payment_ids(order_id, payment_id)

    guard = records.check_payment_idempotency(db, order_id)
    payment = guard["payment"]
    if payment is None or (user_id is not None and payment.user_id != user_id):
        logger.warning(
            "Verification for unknown order order_id=%s user_id=%s source_ip=%s",
            order_id,
            user_id,
            source_ip,
        )
        raise PaymentNotFoundError("Payment record not found.")

    if guard["is_processed"]:
        subscription = get_or_create_user_subscription(db, payment.user_id)
        if payment.status == records.STATUS_CAPTURED and payment.activated_at is None:
            subscription, _ = finalize_captured_payment(db, payment)
        logger.info("Duplicate verification order_id=%s status=%s", order_id, payment.status)
        return VerificationResult(success=True, is_duplicate=True, payment=payment, subscription=subscription)

    if payment.status in (records.STATUS_FAILED, records.STATUS_REFUNDED):
        raise PaymentValidationError("This payment attempt is closed. Please start a new checkout.")

    # Without the key secret no signature can match; the record must stay open.
    if not client.is_configured:
        logger.error("Verification unavailable, gateway not configured order_id=%s", order_id)
        raise PaymentGatewayUnavailable("Payment service is not configured.")

    if not verify_payment_signature(order_id, payment_id, signature, client.key_secret):
        _reject_as_fraud(
            db,
            payment,
            records.ERROR_SIGNATURE_VERIFICATION_FAILED,
            "Payment signature verification failed.",
            step="signature",
            payment_id=payment_id,
            source_ip=source_ip,
        )

    payment_data = client.fetch_payment(payment_id)

    gateway_amount = int(payment_data.get("amount", 0) or 0)
    if gateway_amount != int(payment.amount_paise):
        _reject_as_fraud(
            db,
            payment,
            records.ERROR_AMOUNT_MISMATCH,
            "Payment amount does not match the order.",
            step="amount",
            payment_id=payment_id,
            expected=payment.amount_paise,
            actual=gateway_amount,
            source_ip=source_ip,
        )

    gateway_order_id = str(payment_data.get("order_id") or "")
    if gateway_order_id != payment.razorpay_order_id:
        _reject_as_fraud(
            db,
            payment,
            records.ERROR_ORDER_ID_MISMATCH,
            "Payment does not belong to this order.",
            step="order_id",
            payment_id=payment_id,
            expected=payment.razorpay_order_id,
            actual=gateway_order_id,
            source_ip=source_ip,
        )

    gateway_currency = str(payment_data.get("currency") or payment.currency).upper()
    if gateway_currency != str(payment.currency).upper():
        _reject_as_fraud(
            db,
            payment,
            records.ERROR_CURRENCY_MISMATCH,
            "Payment currency does not match the order.",
            step="currency",
            payment_id=payment_id,
            expected=payment.currency,
            actual=gateway_currency,
            source_ip=source_ip,
        )

    gateway_status = str(payment_data.get("status") or "").lower()
    if gateway_status not in GATEWAY_SUCCESS_STATUSES:
        logger.info("Payment not complete order_id=%s gateway_status=%s", order_id, gateway_status)
        records.increment_payment_attempt(db, payment)
        if gateway_status == "created" and payment.status == records.STATUS_CREATED:
            records.mark_payment_pending(db, payment)
        raise PaymentValidationError(f"Payment is not complete yet (status: {gateway_status or 'unknown'}).")

    captured = records.mark_payment_captured(
        db,
        payment,
        payment_id=payment_id,
        signature=signature,
        method=payment_data.get("method"),
    )
    if not captured and payment.status != records.STATUS_CAPTURED:
        # Lost to a concurrent transition that did not end in capture.
        raise PaymentValidationError("Payment could not be confirmed. Please contact support.")

    subscription, _ = finalize_captured_payment(db, payment)
    return VerificationResult(
        success=True,
        is_duplicate=not captured,
        payment=payment,
        subscription=subscription,
    )


def refund_payment(
    db: Session,
    client: RazorpayClient,
    payment_row_id: int,
    amount_paise: Optional[int] = None,
    reason: Optional[str] = None,
) -> models.SubscriptionPayment:
    payment = db.query(models.SubscriptionPayment).filter(models.SubscriptionPayment.id == payment_row_id).first()
    if payment is None:
        raise PaymentNotFoundError("Payment not found.")
    if payment.status == records.STATUS_REFUNDED:
        raise PaymentValidationError("Payment already refunded.")
    if payment.status not in records.SUCCESS_STATUSES or not payment.razorpay_payment_id:
        raise PaymentValidationError("Only successful payments can be refunded.")

    refund_amount = int(payment.amount_paise) if amount_paise is None else int(amount_paise)
    if refund_amount <= 0 or refund_amount > int(payment.amount_paise):
        raise PaymentValidationError("Invalid refund amount.")

    refund_reason = (reason or "requested_by_customer").strip()[:500]
    refund_data = client.refund_payment(
        payment.razorpay_payment_id,
        refund_amount,
        notes={"reason": refund_reason, "order_id": payment.razorpay_order_id},
    )
    refunded = records.mark_payment_refunded(
        db,
        payment,
        refund_amount_paise=refund_amount,
        refund_reason=refund_reason,
        refund_id=refund_data.get("id"),
    )
    if not refunded:
        logger.error(
            "Gateway refund issued but record not updated payment_id=%s refund_id=%s status=%s",
            payment.id,
            refund_data.get("id"),
            payment.status,
        )
        raise PaymentValidationError("Payment already refunded.")

    logger.info("Refunded payment_id=%s amount=%s refund_id=%s", payment.id, refund_amount, payment.refund_id)
    subscription = get_or_create_user_subscription(db, payment.user_id)
    if subscription.plan != PLAN_FREE:
        notify_subscription_change(db, subscription, "payment_refunded", payment=payment)
    return payment
