import logging
import secrets
from typing import Optional

from sqlalchemy.orm import Session

from app import models
from app.exceptions import SubscriptionStateError
from app.subscriptions import get_or_create_user_subscription

logger = logging.getLogger(__name__)

REFERRAL_CODE_PREFIX = "REF"
REFERRAL_CODE_BYTES = 4
# Credit, in paise, granted to the referrer when a referred user first pays.
REFERRAL_CREDIT_PAISE = 10000


def normalize_referral_code(code: Optional[str]) -> Optional[str]:
    if code is None:
        return None
    normalized = code.strip().upper()
    return normalized or None


def _build_referral_code_candidate() -> str:
    return f"{REFERRAL_CODE_PREFIX}{secrets.token_hex(REFERRAL_CODE_BYTES).upper()}"


def generate_unique_referral_code(db: Session, max_attempts: int = 50) -> str:
    for _ in range(max_attempts):
        candidate = _build_referral_code_candidate()
        existing = db.query(models.Subscription).filter(models.Subscription.referral_code == candidate).first()
        if not existing:
            return candidate
    raise RuntimeError("Unable to generate a unique referral code.")


def ensure_referral_code(db: Session, subscription: models.Subscription, commit: bool = True) -> str:
    if subscription.referral_code:
        return subscription.referral_code

    subscription.referral_code = generate_unique_referral_code(db)
    if commit:
        db.commit()
        db.refresh(subscription)
    else:
        db.flush()
    return subscription.referral_code


def get_subscription_by_referral_code(db: Session, referral_code: Optional[str]) -> Optional[models.Subscription]:
    normalized = normalize_referral_code(referral_code)
    if not normalized:
        return None
    return db.query(models.Subscription).filter(models.Subscription.referral_code == normalized).first()


def apply_referral_code(db: Session, user_id: int, referral_code: str) -> models.Subscription:
    subscription = get_or_create_user_subscription(db, user_id)
    if subscription.referred_by_user_id:
        raise SubscriptionStateError("A referral code has already been applied.")

    referrer = get_subscription_by_referral_code(db, referral_code)
    if referrer is None:
        raise SubscriptionStateError("Invalid referral code.")
    if referrer.user_id == user_id:
        raise SubscriptionStateError("You cannot use your own referral code.")

    subscription.referred_by_user_id = referrer.user_id
    db.commit()
    db.refresh(subscription)
    return subscription


def award_referral_credit(db: Session, payment: models.SubscriptionPayment) -> bool:
    """Credit the referrer once, on the referred user's first activated payment."""
    subscription = get_or_create_user_subscription(db, payment.user_id)
    if not subscription.referred_by_user_id:
        return False

    earlier_activation = db.query(models.SubscriptionPayment).filter(
        models.SubscriptionPayment.user_id == payment.user_id,
        models.SubscriptionPayment.id != payment.id,
        models.SubscriptionPayment.activated_at.isnot(None),
    ).first()
    if earlier_activation:
        return False

    referrer = get_or_create_user_subscription(db, subscription.referred_by_user_id)
    referrer.referral_credits_paise = int(referrer.referral_credits_paise or 0) + REFERRAL_CREDIT_PAISE
    referrer.referral_count = int(referrer.referral_count or 0) + 1
    db.commit()
    logger.info(
        "Referral credit awarded referrer_user_id=%s referred_user_id=%s payment_id=%s",
        referrer.user_id,
        payment.user_id,
        payment.id,
    )
    return True
