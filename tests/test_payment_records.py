from datetime import datetime, timedelta

from app import models
from app import payment_records as records


def _record(db, user, order_id="order_Rec0001", amount=49900, plan="pro", **kwargs):
    return records.create_payment_record(
        db,
        user_id=user.id,
        subscription_id=None,
        order_id=order_id,
        amount_paise=amount,
        currency="INR",
        plan=plan,
        billing_cycle="monthly",
        **kwargs,
    )


def test_new_record_starts_created_with_one_attempt(db, user):
    payment = _record(db, user)

    assert payment.status == records.STATUS_CREATED
    assert payment.attempt_count == 1
    assert payment.base_amount_paise == 49900
    assert payment.razorpay_payment_id is None


def test_transition_table_only_allows_forward_moves():
    assert records.can_transition("created", "captured")
    assert records.can_transition("authorized", "refunded")
    assert not records.can_transition("captured", "failed")
    assert not records.can_transition("failed", "captured")
    assert not records.can_transition("refunded", "captured")
    assert sorted(records.allowed_sources("refunded")) == ["authorized", "captured"]


def test_capture_is_applied_once(db, user):
    payment = _record(db, user)

    assert records.mark_payment_captured(db, payment, "pay_Rec0001", method="card") is True
    assert payment.status == "captured"
    assert payment.payment_method == "card"
    assert payment.captured_at is not None

    assert records.mark_payment_captured(db, payment, "pay_Rec0001") is False
    assert payment.status == "captured"


def test_failed_cannot_move_to_captured(db, user):
    payment = _record(db, user)
    assert records.mark_payment_failed(db, payment, "GATEWAY_PAYMENT_FAILED", "Card declined") is True

    assert records.mark_payment_captured(db, payment, "pay_Rec0002") is False
    db.expire_all()
    stored = db.get(models.SubscriptionPayment, payment.id)
    assert stored.status == "failed"
    assert stored.error_code == "GATEWAY_PAYMENT_FAILED"
    assert stored.razorpay_payment_id is None


def test_capture_with_different_payment_id_is_refused(db, user):
    payment = _record(db, user)
    assert records.mark_payment_authorized(db, payment, "pay_First001", method="upi") is True

    assert records.mark_payment_captured(db, payment, "pay_Other001") is False
    assert payment.status == "authorized"
    assert payment.razorpay_payment_id == "pay_First001"


def test_payment_id_unique_across_records(db, user):
    first = _record(db, user, order_id="order_Rec0001")
    second = _record(db, user, order_id="order_Rec0002")
    assert records.mark_payment_captured(db, first, "pay_Shared01") is True

    assert records.mark_payment_captured(db, second, "pay_Shared01") is False
    assert second.status == "created"


def test_idempotency_guard_reports_processed_statuses(db, user):
    assert records.check_payment_idempotency(db, "order_Missing1") == {
        "exists": False,
        "is_processed": False,
        "status": None,
        "payment": None,
    }

    payment = _record(db, user)
    guard = records.check_payment_idempotency(db, payment.razorpay_order_id)
    assert guard["exists"] is True
    assert guard["is_processed"] is False

    records.mark_payment_authorized(db, payment, "pay_Rec0003")
    assert records.check_payment_idempotency(db, payment.razorpay_order_id)["is_processed"] is True

    records.mark_payment_captured(db, payment, "pay_Rec0003")
    guard = records.check_payment_idempotency(db, payment.razorpay_order_id)
    assert guard["is_processed"] is True
    assert guard["status"] == "captured"


def test_claim_activation_succeeds_once(db, user):
    payment = _record(db, user)
    now = datetime.utcnow()

    assert records.claim_activation(db, payment, now) is False
    records.mark_payment_captured(db, payment, "pay_Rec0004")

    assert records.claim_activation(db, payment, now) is True
    db.commit()
    assert records.claim_activation(db, payment, now) is False


def test_attempt_counter_and_webhook_flag(db, user):
    payment = _record(db, user)

    records.increment_payment_attempt(db, payment)
    records.increment_payment_attempt(db, payment)
    records.mark_webhook_received(db, payment)

    assert payment.attempt_count == 3
    assert payment.webhook_received is True
    assert payment.webhook_received_at is not None


def test_unknown_payment_method_is_stored_as_other(db, user):
    payment = _record(db, user)
    records.mark_payment_captured(db, payment, "pay_Rec0005", method="crypto")

    assert payment.payment_method == "other"


def test_revenue_subtracts_refunds(db, user):
    kept = _record(db, user, order_id="order_Rev0001", amount=49900, discount_amount_paise=0)
    refunded = _record(db, user, order_id="order_Rev0002", amount=199900, plan="enterprise")
    failed = _record(db, user, order_id="order_Rev0003", amount=49900)
    records.mark_payment_captured(db, kept, "pay_Rev0001")
    records.mark_payment_captured(db, refunded, "pay_Rev0002")
    records.mark_payment_refunded(db, refunded, 100000, "partial", "rfnd_Rev0001")
    records.mark_payment_failed(db, failed, "AMOUNT_MISMATCH", "Amount differs")

    revenue = records.calculate_revenue(db)

    assert revenue["total_revenue"] == 49900 + 199900
    assert revenue["total_refunded"] == 100000
    assert revenue["net_revenue"] == 49900 + 199900 - 100000
    assert revenue["successful_payments"] == 1

    stats = records.payment_stats_by_plan(db)
    assert stats == [{"plan": "pro", "count": 1, "revenue": 49900, "average_amount": 49900}]

    failures = records.payment_failure_analysis(db)
    assert failures == [{"error_code": "AMOUNT_MISMATCH", "count": 1}]


def test_revenue_counts_discounted_amount_once(db, user):
    payment = _record(
        db,
        user,
        order_id="order_Disc0001",
        amount=24950,
        base_amount_paise=49900,
        discount_amount_paise=24950,
        discount_percentage=50,
        discount_code="LAUNCH50",
    )
    records.mark_payment_captured(db, payment, "pay_Disc0001")

    revenue = records.calculate_revenue(db)

    assert revenue["total_revenue"] == 24950
    assert revenue["total_discounts"] == 24950
    assert revenue["net_revenue"] == 24950
    assert revenue["average_transaction_value"] == 24950


def test_list_user_payments_filters_and_paginates(db, user, other_user):
    for index in range(5):
        payment = _record(db, user, order_id=f"order_List{index:04d}")
        payment.transaction_date = datetime.utcnow() - timedelta(minutes=index)
        db.commit()
    _record(db, other_user, order_id="order_ListOther")
    records.mark_payment_failed(db, records.get_payment_by_order_id(db, "order_List0004"), "X", "failed")

    rows, total = records.list_user_payments(db, user.id, limit=2, offset=0)
    assert total == 5
    assert [row.razorpay_order_id for row in rows] == ["order_List0000", "order_List0001"]

    rows, total = records.list_user_payments(db, user.id, status="failed")
    assert total == 1
    assert rows[0].razorpay_order_id == "order_List0004"
