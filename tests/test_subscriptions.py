from datetime import datetime, timedelta

import pytest

from app import models
from app import payment_records as records
from app.exceptions import PaymentValidationError, SubscriptionStateError
from app.subscriptions import (
    activate_subscription,
    add_months,
    calculate_prorated_amount,
    can_create_resume,
    cancel_subscription,
    cancel_trial,
    days_remaining,
    deduct_credits,
    expire_subscription,
    expire_trial,
    get_or_create_user_subscription,
    has_paid_access,
    record_usage,
    reset_monthly_credits,
    start_trial,
    upgrade_subscription,
)
from conftest import make_active_subscription


def _captured_payment(db, user, order_id="order_Sub0001", plan="pro", billing_cycle="monthly", amount=49900):
    payment = records.create_payment_record(
        db,
        user_id=user.id,
        subscription_id=None,
        order_id=order_id,
        amount_paise=amount,
        currency="INR",
        plan=plan,
        billing_cycle=billing_cycle,
    )
    records.mark_payment_captured(db, payment, order_id.replace("order_", "pay_"))
    return payment


def test_new_user_gets_free_plan(db, user):
    subscription = get_or_create_user_subscription(db, user.id)

    assert subscription.plan == "free"
    assert subscription.status == "active"
    assert subscription.ai_credits_total == 5
    assert subscription.ai_credits_remaining == 5
    assert subscription.resume_limit == 2
    assert has_paid_access(subscription) is False
    assert get_or_create_user_subscription(db, user.id).id == subscription.id


def test_add_months_clamps_to_month_end():
    assert add_months(datetime(2024, 1, 31, 10, 30), 1) == datetime(2024, 2, 29, 10, 30)
    assert add_months(datetime(2023, 1, 31), 1) == datetime(2023, 2, 28)
    assert add_months(datetime(2024, 12, 15), 1) == datetime(2025, 1, 15)
    assert add_months(datetime(2024, 2, 29), 12) == datetime(2025, 2, 28)


def test_activation_sets_plan_and_period(db, user):
    payment = _captured_payment(db, user, billing_cycle="annual", amount=479040)
    now = datetime(2024, 3, 15, 9, 0)

    subscription, activated = activate_subscription(db, payment.id, now=now)

    assert activated is True
    assert subscription.plan == "pro"
    assert subscription.billing_cycle == "annual"
    assert subscription.start_date == now
    assert subscription.expiry_date == datetime(2025, 3, 15, 9, 0)
    assert subscription.amount_paise == 479040
    assert subscription.ai_credits_total == 100
    assert subscription.ai_credits_remaining == 100


def test_activation_applies_once(db, user):
    payment = _captured_payment(db, user)
    first, activated = activate_subscription(db, payment.id, now=datetime(2024, 3, 1))
    expiry = first.expiry_date

    second, activated_again = activate_subscription(db, payment.id, now=datetime(2024, 3, 20))

    assert activated is True
    assert activated_again is False
    assert second.expiry_date == expiry
    assert db.query(models.SubscriptionUpgradeHistory).count() == 1


def test_activation_requires_captured_payment(db, user):
    payment = records.create_payment_record(
        db,
        user_id=user.id,
        subscription_id=None,
        order_id="order_NotPaid1",
        amount_paise=49900,
        currency="INR",
        plan="pro",
        billing_cycle="monthly",
    )

    with pytest.raises(SubscriptionStateError):
        activate_subscription(db, payment.id)
    assert get_or_create_user_subscription(db, user.id).plan == "free"


def test_activation_keeps_used_credits_within_new_total(db, user):
    subscription = get_or_create_user_subscription(db, user.id)
    deduct_credits(db, subscription, 4)
    payment = _captured_payment(db, user)

    subscription, _ = activate_subscription(db, payment.id)

    assert subscription.ai_credits_used == 4
    assert subscription.ai_credits_remaining == 96
    assert subscription.ai_credits_used + subscription.ai_credits_remaining == subscription.ai_credits_total


def test_proration_charges_difference_for_unused_days():
    assert calculate_prorated_amount(49900, 199900, 30, 30) == 150000
    assert calculate_prorated_amount(49900, 199900, 0, 30) == 199900
    assert calculate_prorated_amount(49900, 199900, 15, 30) == 174950
    assert calculate_prorated_amount(49900, 199900, 45, 30) == 150000
    assert calculate_prorated_amount(479040, 49900, 300, 365) == 0


def test_upgrade_quote_prorates_active_paid_plan(db, user):
    now = datetime.utcnow()
    make_active_subscription(db, user, expiry_date=now + timedelta(days=30))

    quote = upgrade_subscription(db, user.id, "enterprise", "monthly", now=now)

    assert quote["prorated"] is True
    assert quote["days_remaining"] == 30
    assert quote["total_days"] == 30
    assert quote["amount"] == 150000
    assert get_or_create_user_subscription(db, user.id).plan == "pro"


def test_upgrade_credits_list_price_after_discounted_purchase(db, user):
    bought_at = datetime(2025, 1, 10, 12, 0)
    payment = _captured_payment(db, user, order_id="order_Launch001", amount=24950)
    activate_subscription(db, payment.id, now=bought_at)

    quote = upgrade_subscription(db, user.id, "enterprise", "monthly", now=bought_at)

    assert quote["current_price"] == 49900
    assert quote["days_remaining"] == 30
    assert quote["amount"] == 150000


def test_upgrade_just_after_february_renewal_charges_price_difference(db, user):
    renewed_at = datetime(2025, 2, 1, 12, 0)
    payment = _captured_payment(db, user, order_id="order_Feb00001")
    subscription, _ = activate_subscription(db, payment.id, now=renewed_at)
    assert days_remaining(subscription, renewed_at) == 28

    quote = upgrade_subscription(db, user.id, "enterprise", "monthly", now=renewed_at)

    assert quote["days_remaining"] == 30
    assert quote["amount"] == 150000


def test_upgrade_in_31_day_month_scales_to_day_basis(db, user):
    started_at = datetime(2025, 1, 1)
    payment = _captured_payment(db, user, order_id="order_Jan00001")
    activate_subscription(db, payment.id, now=started_at)

    at_start = upgrade_subscription(db, user.id, "enterprise", "monthly", now=started_at)
    halfway = upgrade_subscription(db, user.id, "enterprise", "monthly", now=datetime(2025, 1, 16))

    assert at_start["amount"] == 150000
    # 16 of 31 days left is 15 days on a 30-day basis.
    assert halfway["days_remaining"] == 15
    assert halfway["amount"] == 174950


def test_upgrade_quote_from_free_is_full_price(db, user):
    quote = upgrade_subscription(db, user.id, "pro", "monthly")

    assert quote["prorated"] is False
    assert quote["amount"] == 49900


def test_upgrade_rejects_same_plan_and_downgrade(db, user):
    make_active_subscription(db, user, plan="enterprise", amount_paise=199900)

    with pytest.raises(SubscriptionStateError):
        upgrade_subscription(db, user.id, "enterprise", "monthly")
    with pytest.raises(SubscriptionStateError):
        upgrade_subscription(db, user.id, "pro", "monthly")
    with pytest.raises(PaymentValidationError):
        upgrade_subscription(db, user.id, "free", "monthly")


def test_credit_deduction_keeps_ledger_balanced(db, user):
    subscription = get_or_create_user_subscription(db, user.id)

    assert deduct_credits(db, subscription, 3).success is True
    result = deduct_credits(db, subscription, 3)

    assert result.success is False
    assert result.remaining == 2
    assert result.message == "Insufficient credits."
    assert subscription.ai_credits_used == 3
    assert subscription.ai_credits_used + subscription.ai_credits_remaining == subscription.ai_credits_total
    assert deduct_credits(db, subscription, 0).success is False


def test_enterprise_credits_are_unlimited(db, user):
    subscription = make_active_subscription(db, user, plan="enterprise", amount_paise=199900)

    result = deduct_credits(db, subscription, 500)

    assert result.success is True
    assert result.remaining == -1
    assert subscription.ai_credits_remaining == -1


def test_monthly_reset_restores_allowance(db, user):
    subscription = make_active_subscription(db, user)
    deduct_credits(db, subscription, 60)
    record_usage(db, subscription, "resume")
    now = datetime(2024, 5, 1)

    reset_monthly_credits(db, subscription, now)
    db.commit()

    assert subscription.ai_credits_used == 0
    assert subscription.ai_credits_remaining == 100
    assert subscription.resumes_created == 0
    assert subscription.ai_credits_last_reset_at == now


def test_free_plan_resume_limit(db, user):
    subscription = get_or_create_user_subscription(db, user.id)
    record_usage(db, subscription, "resume")
    record_usage(db, subscription, "resume")

    assert can_create_resume(subscription) is False
    with pytest.raises(SubscriptionStateError):
        record_usage(db, subscription, "resume")
    with pytest.raises(SubscriptionStateError):
        record_usage(db, subscription, "teleport")


def test_trial_can_only_be_used_once(db, user):
    now = datetime.utcnow()
    subscription = start_trial(db, user.id, now=now)

    assert subscription.status == "trial"
    assert subscription.plan == "pro"
    assert subscription.trial_end_date == now + timedelta(days=7)
    assert subscription.ai_credits_remaining == 100
    assert has_paid_access(subscription) is True

    cancelled = cancel_trial(db, user.id)
    assert cancelled.plan == "free"
    assert cancelled.ai_credits_total == 5
    assert cancelled.trial_used is True

    with pytest.raises(SubscriptionStateError, match="Trial already used."):
        start_trial(db, user.id)


def test_trial_expiry_reverts_to_free(db, user):
    start = datetime(2024, 6, 1)
    subscription = start_trial(db, user.id, now=start)

    assert expire_trial(db, subscription, now=start + timedelta(days=6)) is False
    assert expire_trial(db, subscription, now=start + timedelta(days=7, seconds=1)) is True
    assert subscription.plan == "free"
    assert subscription.status == "active"
    assert subscription.is_trial is False


def test_cancel_keeps_access_until_expiry(db, user):
    make_active_subscription(db, user)

    subscription = cancel_subscription(db, user.id, "Too expensive")

    assert subscription.status == "cancelled"
    assert subscription.cancellation_reason == "Too expensive"
    assert has_paid_access(subscription) is True
    with pytest.raises(SubscriptionStateError):
        cancel_subscription(db, user.id)


def test_cancel_free_plan_is_rejected(db, user):
    get_or_create_user_subscription(db, user.id)

    with pytest.raises(SubscriptionStateError):
        cancel_subscription(db, user.id)


def test_expired_subscription_loses_access(db, user):
    subscription = make_active_subscription(db, user, expiry_date=datetime.utcnow() - timedelta(hours=1))

    assert days_remaining(subscription) == 0
    assert has_paid_access(subscription) is False
    assert expire_subscription(db, subscription) is True
    assert subscription.status == "expired"
    assert expire_subscription(db, subscription) is False


def test_paying_during_trial_starts_fresh_allowance(db, user):
    subscription = start_trial(db, user.id)
    deduct_credits(db, subscription, 30)
    payment = _captured_payment(db, user, order_id="order_FromTrial1")

    subscription, _ = activate_subscription(db, payment.id)

    assert subscription.status == "active"
    assert subscription.is_trial is False
    assert subscription.trial_used is True
    assert subscription.ai_credits_used == 0
    assert subscription.ai_credits_remaining == 100
