import logging
from typing import Optional

from sqlalchemy.orm import Session

from app import email_service, models

logger = logging.getLogger(__name__)


def _get_user(db: Session, user_id: int) -> Optional[models.User]:
    return db.query(models.User).filter(models.User.id == user_id).first()


def notify_subscription_change(
    db: Session,
    subscription: models.Subscription,
    event_type: str,
    payment: Optional[models.SubscriptionPayment] = None,
) -> None:
    """Best effort. Email failures never reach the payment pipeline."""
    user = _get_user(db, subscription.user_id)
    if not user or not user.email:
        return
    try:
        email_service.send_subscription_change_email(
            email=user.email,
            full_name=user.full_name,
            event_type=event_type,
            plan=subscription.plan,
            status=subscription.status,
            access_until=subscription.expiry_date,
            payment_amount_paise=int(payment.amount_paise) if payment else None,
            payment_currency=(payment.currency if payment else subscription.currency) or "INR",
        )
    except Exception:
        logger.exception(
            "Failed to send subscription change email user_id=%s event_type=%s",
            user.id,
            event_type,
        )


def notify_payment_failed(db: Session, payment: models.SubscriptionPayment) -> None:
    user = _get_user(db, payment.user_id)
    if not user or not user.email:
        return
    try:
        email_service.send_payment_failed_email(
            email=user.email,
            full_name=user.full_name,
            plan=payment.plan,
            amount_paise=int(payment.amount_paise),
            currency=payment.currency or "INR",
            reason=payment.error_reason or payment.error_description,
        )
    except Exception:
        logger.exception("Failed to send payment failed email user_id=%s payment_id=%s", user.id, payment.id)
