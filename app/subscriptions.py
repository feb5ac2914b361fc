import calendar
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from app import config, models
from app.exceptions import PaymentNotFoundError, SubscriptionStateError
from app.payment_records import STATUS_CAPTURED, claim_activation
from app.plans import (
    CYCLE_ANNUAL,
    CYCLE_MONTHLY,
    PLAN_FREE,
    PLAN_PRO,
    PLAN_ENTERPRISE,
    PLAN_RANK,
    UNLIMITED,
    cycle_length_days,
    get_plan_limits,
    normalize_billing_cycle,
    plan_price_paise,
    round_half_up,
    validate_purchase,
)

logger = logging.getLogger(__name__)

STATUS_ACTIVE = "active"
STATUS_CANCELLED = "cancelled"
STATUS_EXPIRED = "expired"
STATUS_TRIAL = "trial"

REASON_PURCHASE = "user_upgrade"
REASON_RENEWAL = "renewal"
REASON_TRIAL_START = "trial_started"
REASON_TRIAL_END = "trial_ended"


def _normalize_datetime(value):
    if value is None:
        return None
    if getattr(value, "tzinfo", None):
        return value.replace(tzinfo=None)
    return value


def add_months(value: datetime, months: int) -> datetime:
    """Calendar month arithmetic, clamping to the last day of shorter months."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def period_end(start: datetime, billing_cycle: str) -> datetime:
    if normalize_billing_cycle(billing_cycle) == CYCLE_ANNUAL:
        return add_months(start, 12)
    return add_months(start, 1)


def _apply_plan_limits(subscription: models.Subscription, plan: str, reset_usage: bool) -> None:
    limits = get_plan_limits(plan)
    total = limits["ai_credits"]
    used = 0 if reset_usage else int(subscription.ai_credits_used or 0)

    subscription.resume_limit = limits["resume_limit"]
    subscription.ai_credits_total = total
    if total == UNLIMITED:
        subscription.ai_credits_used = used
        subscription.ai_credits_remaining = UNLIMITED
        return
    used = min(used, total)
    subscription.ai_credits_used = used
    subscription.ai_credits_remaining = total - used


def _append_history(
    db: Session,
    subscription: models.Subscription,
    from_plan: str,
    to_plan: str,
    reason: str,
    payment_id: Optional[int] = None,
) -> None:
    db.add(
        models.SubscriptionUpgradeHistory(
            subscription_id=subscription.id,
            from_plan=from_plan or PLAN_FREE,
            to_plan=to_plan,
            reason=reason,
            payment_id=payment_id,
            created_at=datetime.utcnow(),
        )
    )


def get_subscription_for_user(db: Session, user_id: int) -> Optional[models.Subscription]:
    return db.query(models.Subscription).filter(models.Subscription.user_id == user_id).first()


def get_or_create_user_subscription(
    db: Session,
    user_id: int,
    commit: bool = True,
) -> models.Subscription:
    subscription = get_subscription_for_user(db, user_id)
    if subscription:
        return subscription

    limits = get_plan_limits(PLAN_FREE)
    now = datetime.utcnow()
    subscription = models.Subscription(
        user_id=user_id,
        plan=PLAN_FREE,
        status=STATUS_ACTIVE,
        billing_cycle=CYCLE_MONTHLY,
        amount_paise=0,
        currency=config.PAYMENT_CURRENCY,
        start_date=now,
        ai_credits_total=limits["ai_credits"],
        ai_credits_used=0,
        ai_credits_remaining=limits["ai_credits"],
        ai_credits_last_reset_at=now,
        resume_limit=limits["resume_limit"],
    )
    db.add(subscription)
    if commit:
        db.commit()
        db.refresh(subscription)
    else:
        db.flush()
    return subscription


def activate_subscription(
    db: Session,
    payment_row_id: int,
    now: Optional[datetime] = None,
) -> tuple[models.Subscription, bool]:
    """Apply the plan change for a captured payment.

    Returns ``(subscription, activated)``. ``activated`` is False when this
    payment was already applied; the subscription is returned untouched so a
    repeated call never recomputes the expiry from the current time.
    """
    payment = db.query(models.SubscriptionPayment).filter(
        models.SubscriptionPayment.id == payment_row_id
    ).first()
    if payment is None:
        raise PaymentNotFoundError("Payment not found.")
    if payment.status != STATUS_CAPTURED:
        raise SubscriptionStateError("Payment not captured.")

    now = now or datetime.utcnow()

    if not claim_activation(db, payment, now):
        db.rollback()
        subscription = get_or_create_user_subscription(db, payment.user_id)
        logger.info(
            "Subscription already activated for payment_id=%s order_id=%s",
            payment.id,
            payment.razorpay_order_id,
        )
        return subscription, False

    subscription = get_or_create_user_subscription(db, payment.user_id, commit=False)
    from_plan = subscription.plan
    # Trial allowances are not carried into a paid period.
    from_trial = subscription.status == STATUS_TRIAL or bool(subscription.is_trial)
    expiry = period_end(now, payment.billing_cycle)

    subscription.plan = payment.plan
    subscription.billing_cycle = payment.billing_cycle
    subscription.amount_paise = int(payment.amount_paise)
    subscription.currency = payment.currency
    subscription.status = STATUS_ACTIVE
    subscription.start_date = now
    subscription.expiry_date = expiry
    subscription.next_billing_date = expiry
    subscription.last_payment_date = now
    subscription.last_payment_amount_paise = int(payment.amount_paise)
    subscription.cancelled_at = None
    subscription.cancellation_reason = None
    subscription.is_trial = False
    _apply_plan_limits(subscription, payment.plan, reset_usage=from_trial)

    if payment.subscription_id is None:
        payment.subscription_id = subscription.id
    _append_history(db, subscription, from_plan, payment.plan, REASON_PURCHASE, payment_id=payment.id)
    db.commit()
    db.refresh(subscription)
    logger.info(
        "Subscription activated user_id=%s plan=%s cycle=%s expiry=%s payment_id=%s",
        subscription.user_id,
        subscription.plan,
        subscription.billing_cycle,
        subscription.expiry_date,
        payment.id,
    )
    return subscription, True


def cancel_subscription(db: Session, user_id: int, reason: Optional[str] = None) -> models.Subscription:
    """Stop auto-renewal. Access stays valid until the paid expiry date."""
    subscription = get_subscription_for_user(db, user_id)
    if subscription is None or subscription.status != STATUS_ACTIVE or subscription.plan == PLAN_FREE:
        raise SubscriptionStateError("No active subscription found.")

    subscription.status = STATUS_CANCELLED
    subscription.cancelled_at = datetime.utcnow()
    subscription.cancellation_reason = (reason or "").strip()[:1000] or None
    subscription.auto_renew = False
    db.commit()
    db.refresh(subscription)
    return subscription


def days_remaining(subscription: models.Subscription, now: Optional[datetime] = None) -> int:
    expiry = _normalize_datetime(subscription.expiry_date)
    if expiry is None:
        return 0
    now = now or datetime.utcnow()
    seconds = (expiry - now).total_seconds()
    if seconds <= 0:
        return 0
    return int(-(-seconds // 86400))


def has_paid_access(subscription: models.Subscription, now: Optional[datetime] = None) -> bool:
    if subscription.plan == PLAN_FREE:
        return False
    if subscription.status not in {STATUS_ACTIVE, STATUS_CANCELLED, STATUS_TRIAL}:
        return False
    return days_remaining(subscription, now) > 0


def basis_days_remaining(
    subscription: models.Subscription,
    total_days: int,
    now: Optional[datetime] = None,
) -> int:
    """Days left in the current period, expressed on the proration day basis.

    Periods follow calendar months, so a February period has 28 days while
    the basis is fixed. The unused fraction of the real period is scaled onto
    ``total_days``; a period that has not used any time maps to the full basis.
    """
    remaining = days_remaining(subscription, now)
    expiry = _normalize_datetime(subscription.expiry_date)
    if remaining <= 0 or expiry is None:
        return 0

    months = 12 if normalize_billing_cycle(subscription.billing_cycle) == CYCLE_ANNUAL else 1
    period_start = add_months(expiry, -months)
    start_date = _normalize_datetime(subscription.start_date)
    if start_date is not None and period_start < start_date < expiry:
        period_start = start_date

    period_days = max(1, int(-(-(expiry - period_start).total_seconds() // 86400)))
    remaining = min(remaining, period_days)
    return min(total_days, round_half_up(remaining * total_days / period_days))


def calculate_prorated_amount(
    current_price_paise: int,
    new_price_paise: int,
    remaining_days: int,
    total_days: int,
) -> int:
    remaining_days = max(0, min(int(remaining_days), int(total_days)))
    unused_credit = current_price_paise * remaining_days / total_days
    return round_half_up(max(0, new_price_paise - unused_credit))


def upgrade_subscription(
    db: Session,
    user_id: int,
    new_plan: str,
    new_billing_cycle: str,
    now: Optional[datetime] = None,
) -> dict:
    """Quote the charge for moving to a new plan.

    The plan itself changes only after the resulting payment is captured.
    """
    new_plan, new_billing_cycle = validate_purchase(new_plan, new_billing_cycle)
    subscription = get_or_create_user_subscription(db, user_id)
    now = now or datetime.utcnow()

    if (
        subscription.plan == new_plan
        and subscription.billing_cycle == new_billing_cycle
        and subscription.status == STATUS_ACTIVE
        and days_remaining(subscription, now) > 0
    ):
        raise SubscriptionStateError("You are already on this plan.")
    if PLAN_RANK.get(new_plan, 0) < PLAN_RANK.get(subscription.plan, 0) and subscription.status == STATUS_ACTIVE:
        raise SubscriptionStateError("Downgrades take effect by cancelling the current plan.")

    new_price = plan_price_paise(new_plan, new_billing_cycle)
    total_days = cycle_length_days(subscription.billing_cycle)
    remaining = days_remaining(subscription, now)
    prorated = (
        subscription.status == STATUS_ACTIVE
        and subscription.plan != PLAN_FREE
        and remaining > 0
    )
    if prorated:
        current_price = plan_price_paise(subscription.plan, subscription.billing_cycle)
        remaining = basis_days_remaining(subscription, total_days, now)
        amount = calculate_prorated_amount(current_price, new_price, remaining, total_days)
    else:
        current_price = 0
        amount = new_price

    return {
        "current_plan": subscription.plan,
        "new_plan": new_plan,
        "billing_cycle": new_billing_cycle,
        "current_price": current_price,
        "new_price": new_price,
        "days_remaining": remaining if prorated else 0,
        "total_days": total_days,
        "amount": amount,
        "prorated": prorated,
    }


def start_trial(db: Session, user_id: int, now: Optional[datetime] = None) -> models.Subscription:
    subscription = get_or_create_user_subscription(db, user_id)
    if subscription.trial_used:
        raise SubscriptionStateError("Trial already used.")
    if subscription.plan != PLAN_FREE and has_paid_access(subscription, now):
        raise SubscriptionStateError("Trial is only available on the free plan.")

    now = now or datetime.utcnow()
    from_plan = subscription.plan
    subscription.is_trial = True
    subscription.trial_used = True
    subscription.trial_start_date = now
    subscription.trial_end_date = now + timedelta(days=config.TRIAL_DAYS)
    subscription.status = STATUS_TRIAL
    subscription.plan = PLAN_PRO
    subscription.expiry_date = subscription.trial_end_date
    subscription.next_billing_date = None
    _apply_plan_limits(subscription, PLAN_PRO, reset_usage=True)
    _append_history(db, subscription, from_plan, PLAN_PRO, REASON_TRIAL_START)
    db.commit()
    db.refresh(subscription)
    return subscription


def _revert_trial_to_free(db: Session, subscription: models.Subscription, reason: str) -> None:
    subscription.status = STATUS_ACTIVE
    subscription.plan = PLAN_FREE
    subscription.is_trial = False
    subscription.amount_paise = 0
    subscription.expiry_date = None
    subscription.next_billing_date = None
    _apply_plan_limits(subscription, PLAN_FREE, reset_usage=True)
    _append_history(db, subscription, PLAN_PRO, PLAN_FREE, reason)


def cancel_trial(db: Session, user_id: int) -> models.Subscription:
    subscription = get_subscription_for_user(db, user_id)
    if subscription is None or subscription.status != STATUS_TRIAL:
        raise SubscriptionStateError("No active trial found.")
    _revert_trial_to_free(db, subscription, REASON_TRIAL_END)
    db.commit()
    db.refresh(subscription)
    return subscription


def expire_trial(db: Session, subscription: models.Subscription, now: Optional[datetime] = None) -> bool:
    now = now or datetime.utcnow()
    trial_end = _normalize_datetime(subscription.trial_end_date)
    if subscription.status != STATUS_TRIAL or trial_end is None or trial_end > now:
        return False
    _revert_trial_to_free(db, subscription, REASON_TRIAL_END)
    db.commit()
    return True


def expire_subscription(db: Session, subscription: models.Subscription, now: Optional[datetime] = None) -> bool:
    """Mark an active subscription whose expiry has passed as expired."""
    now = now or datetime.utcnow()
    expiry = _normalize_datetime(subscription.expiry_date)
    if subscription.status != STATUS_ACTIVE or expiry is None or expiry >= now:
        return False
    updated = (
        db.query(models.Subscription)
        .filter(
            models.Subscription.id == subscription.id,
            models.Subscription.status == STATUS_ACTIVE,
        )
        .update({"status": STATUS_EXPIRED, "auto_renew": False}, synchronize_session=False)
    )
    db.commit()
    db.refresh(subscription)
    return bool(updated)


@dataclass
class CreditDeduction:
    success: bool
    remaining: int
    message: Optional[str] = None


def deduct_credits(db: Session, subscription: models.Subscription, amount: int = 1) -> CreditDeduction:
    """Consume AI credits. Insufficient balance is a result, not an exception."""
    amount = int(amount)
    if amount <= 0:
        return CreditDeduction(success=False, remaining=int(subscription.ai_credits_remaining), message="Invalid amount.")

    if subscription.plan == PLAN_ENTERPRISE or int(subscription.ai_credits_total) == UNLIMITED:
        subscription.ai_credits_used = int(subscription.ai_credits_used or 0) + amount
        db.commit()
        return CreditDeduction(success=True, remaining=UNLIMITED)

    remaining = int(subscription.ai_credits_remaining or 0)
    if remaining < amount:
        return CreditDeduction(success=False, remaining=remaining, message="Insufficient credits.")

    subscription.ai_credits_used = int(subscription.ai_credits_used or 0) + amount
    subscription.ai_credits_remaining = int(subscription.ai_credits_total) - subscription.ai_credits_used
    db.commit()
    db.refresh(subscription)
    return CreditDeduction(success=True, remaining=subscription.ai_credits_remaining)


def reset_monthly_credits(db: Session, subscription: models.Subscription, now: Optional[datetime] = None) -> None:
    _apply_plan_limits(subscription, subscription.plan, reset_usage=True)
    subscription.ai_credits_last_reset_at = now or datetime.utcnow()
    subscription.resumes_created = 0
    subscription.ai_analyses_used = 0
    subscription.interview_sessions_used = 0
    subscription.portfolios_generated = 0


def can_create_resume(subscription: models.Subscription) -> bool:
    if int(subscription.resume_limit) == UNLIMITED:
        return True
    return int(subscription.resumes_created or 0) < int(subscription.resume_limit)


USAGE_COUNTERS = {
    "resume": "resumes_created",
    "ai_analysis": "ai_analyses_used",
    "interview_session": "interview_sessions_used",
    "portfolio": "portfolios_generated",
}


def record_usage(db: Session, subscription: models.Subscription, usage_type: str) -> models.Subscription:
    field = USAGE_COUNTERS.get(usage_type)
    if field is None:
        raise SubscriptionStateError("Unknown usage type.")
    if usage_type == "resume" and not can_create_resume(subscription):
        raise SubscriptionStateError("Resume limit reached for your plan.")
    setattr(subscription, field, int(getattr(subscription, field) or 0) + 1)
    db.commit()
    db.refresh(subscription)
    return subscription


def credit_usage_percentage(subscription: models.Subscription) -> int:
    total = int(subscription.ai_credits_total or 0)
    if total in (0, UNLIMITED):
        return 0
    return round(int(subscription.ai_credits_used or 0) * 100 / total)


def renew_from_gateway_charge(
    db: Session,
    subscription: models.Subscription,
    amount_paise: int,
    now: Optional[datetime] = None,
) -> models.Subscription:
    """Extend a gateway-managed recurring subscription by one billing period."""
    now = now or datetime.utcnow()
    current_expiry = _normalize_datetime(subscription.expiry_date)
    start_from = current_expiry if current_expiry and current_expiry > now else now
    expiry = period_end(start_from, subscription.billing_cycle)

    subscription.status = STATUS_ACTIVE
    subscription.expiry_date = expiry
    subscription.next_billing_date = expiry
    subscription.last_payment_date = now
    subscription.last_payment_amount_paise = int(amount_paise)
    subscription.renewal_attempts = 0
    _append_history(db, subscription, subscription.plan, subscription.plan, REASON_RENEWAL)
    db.commit()
    db.refresh(subscription)
    return subscription


def mark_gateway_subscription_cancelled(db: Session, subscription: models.Subscription) -> models.Subscription:
    subscription.status = STATUS_CANCELLED
    subscription.auto_renew = False
    subscription.cancelled_at = datetime.utcnow()
    subscription.cancellation_reason = subscription.cancellation_reason or "cancelled_at_gateway"
    db.commit()
    db.refresh(subscription)
    return subscription


def mark_gateway_subscription_completed(db: Session, subscription: models.Subscription) -> models.Subscription:
    subscription.status = STATUS_EXPIRED
    subscription.auto_renew = False
    db.commit()
    db.refresh(subscription)
    return subscription
