import math
import re
from typing import Dict

from sqlalchemy.orm import Session

from app import config, models
from app.exceptions import PaymentValidationError

PLAN_FREE = "free"
PLAN_PRO = "pro"
PLAN_ENTERPRISE = "enterprise"
PLANS = (PLAN_FREE, PLAN_PRO, PLAN_ENTERPRISE)
PAID_PLANS = (PLAN_PRO, PLAN_ENTERPRISE)
PLAN_RANK = {PLAN_FREE: 0, PLAN_PRO: 1, PLAN_ENTERPRISE: 2}

CYCLE_MONTHLY = "monthly"
CYCLE_ANNUAL = "annual"
BILLING_CYCLES = (CYCLE_MONTHLY, CYCLE_ANNUAL)

UNLIMITED = -1

PLAN_LIMITS: Dict[str, Dict[str, int]] = {
    PLAN_FREE: {"ai_credits": 5, "resume_limit": 2},
    PLAN_PRO: {"ai_credits": 100, "resume_limit": UNLIMITED},
    PLAN_ENTERPRISE: {"ai_credits": UNLIMITED, "resume_limit": UNLIMITED},
}


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def normalize_plan(plan: str | None) -> str:
    return str(plan or "").strip().lower()


def normalize_billing_cycle(billing_cycle: str | None) -> str:
    cycle = str(billing_cycle or "").strip().lower()
    # "yearly" is accepted from older clients.
    if cycle == "yearly":
        return CYCLE_ANNUAL
    return cycle


def get_plan_limits(plan: str) -> Dict[str, int]:
    return dict(PLAN_LIMITS.get(normalize_plan(plan), PLAN_LIMITS[PLAN_FREE]))


def monthly_price_paise(plan: str) -> int:
    normalized_plan = normalize_plan(plan)
    if normalized_plan == PLAN_PRO:
        return config.PRO_MONTHLY_AMOUNT_PAISE
    if normalized_plan == PLAN_ENTERPRISE:
        return config.ENTERPRISE_MONTHLY_AMOUNT_PAISE
    return 0


def full_price_paise(plan: str, billing_cycle: str) -> int:
    """Undiscounted price for one billing period."""
    monthly = monthly_price_paise(plan)
    if normalize_billing_cycle(billing_cycle) == CYCLE_ANNUAL:
        return monthly * 12
    return monthly


def apply_percent_off(base_amount_paise: int, percent_off: int) -> int:
    if percent_off <= 0:
        return base_amount_paise
    return max(round_half_up(base_amount_paise * (100 - percent_off) / 100), 1)


def plan_price_paise(plan: str, billing_cycle: str) -> int:
    """List price for a plan and cycle, annual discount included."""
    base = full_price_paise(plan, billing_cycle)
    if normalize_billing_cycle(billing_cycle) == CYCLE_ANNUAL:
        return apply_percent_off(base, config.ANNUAL_DISCOUNT_PERCENT)
    return base


def cycle_length_days(billing_cycle: str) -> int:
    if normalize_billing_cycle(billing_cycle) == CYCLE_ANNUAL:
        return config.PRORATION_DAYS_ANNUAL
    return config.PRORATION_DAYS_MONTHLY


def validate_purchase(plan: str | None, billing_cycle: str | None) -> tuple[str, str]:
    normalized_plan = normalize_plan(plan)
    normalized_cycle = normalize_billing_cycle(billing_cycle)
    if normalized_plan == PLAN_FREE:
        raise PaymentValidationError("The free plan cannot be purchased.")
    if normalized_plan not in PAID_PLANS:
        raise PaymentValidationError("Invalid plan selected.")
    if normalized_cycle not in BILLING_CYCLES:
        raise PaymentValidationError("Invalid billing cycle. Use 'monthly' or 'annual'.")
    return normalized_plan, normalized_cycle


def normalize_discount_code(raw_code: str | None) -> str:
    code = str(raw_code or "").strip().upper()
    if not code:
        return ""
    return re.sub(r"[^A-Z0-9_-]", "", code)


def get_discount_percent(db: Session, discount_code: str | None) -> int:
    """Percent off for a code. Unknown codes are a client error, blank means none."""
    normalized_code = normalize_discount_code(discount_code)
    if not normalized_code:
        return 0

    coupon_row = db.query(models.CouponCode).filter(
        models.CouponCode.coupon_code == normalized_code,
        models.CouponCode.is_active.is_(True),
    ).first()
    if coupon_row:
        try:
            percent_off = int(coupon_row.percent_off)
        except (TypeError, ValueError):
            raise PaymentValidationError("Discount code configuration is invalid.")
        if percent_off <= 0 or percent_off >= 100:
            raise PaymentValidationError("Discount code must be between 1% and 99% off.")
        return percent_off

    if normalized_code in config.DISCOUNT_CODES:
        return config.DISCOUNT_CODES[normalized_code]

    raise PaymentValidationError("Invalid discount code.")


def quote_plan(
    db: Session,
    plan: str,
    billing_cycle: str,
    discount_code: str | None = None,
) -> dict:
    """Price breakdown for a purchase.

    Annual billing carries a fixed percentage discount against twelve monthly
    payments. A discount code only applies when it beats that discount; the
    two are never stacked.
    """
    base_amount = full_price_paise(plan, billing_cycle)
    cycle_percent = config.ANNUAL_DISCOUNT_PERCENT if billing_cycle == CYCLE_ANNUAL else 0
    code_percent = get_discount_percent(db, discount_code)

    if code_percent > cycle_percent:
        percent_off = code_percent
        applied_code = normalize_discount_code(discount_code)
    else:
        percent_off = cycle_percent
        applied_code = None

    final_amount = apply_percent_off(base_amount, percent_off)
    return {
        "plan": plan,
        "billing_cycle": billing_cycle,
        "base_amount": base_amount,
        "discount_amount": base_amount - final_amount,
        "discount_percentage": percent_off,
        "discount_code": applied_code,
        "final_amount": final_amount,
    }
