from app import models
from conftest import auth_headers, make_active_subscription, sign_payment


def _create_order(client, user, plan="pro", billing_cycle="monthly", **extra):
    return client.post(
        "/api/subscription/create-order",
        json={"plan": plan, "billingCycle": billing_cycle, **extra},
        headers=auth_headers(user),
    )


def _verify(client, user, order_id, payment_id, signature):
    return client.post(
        "/api/subscription/verify-payment",
        json={"razorpayOrderId": order_id, "razorpayPaymentId": payment_id, "razorpaySignature": signature},
        headers=auth_headers(user),
    )


def test_endpoints_require_authentication(client):
    assert client.get("/api/subscription/current").status_code == 401
    assert client.post("/api/subscription/create-order", json={"plan": "pro"}).status_code == 401


def test_health_check(client):
    assert client.get("/health").json() == {"status": "healthy"}


def test_current_subscription_defaults_to_free(client, user):
    response = client.get("/api/subscription/current", headers=auth_headers(user))

    assert response.status_code == 200
    body = response.json()
    assert body["plan"] == "free"
    assert body["ai_credits_remaining"] == 5
    assert body["has_paid_access"] is False


def test_checkout_flow_over_http(client, user, razorpay):
    order_response = _create_order(client, user, discountCode="LAUNCH50")
    assert order_response.status_code == 200
    order = order_response.json()
    assert order["amount"] == 24950
    assert order["plan_details"]["discount_code"] == "LAUNCH50"

    razorpay.add_payment("pay_Http0001", order["order_id"], 24950)
    signature = sign_payment(order["order_id"], "pay_Http0001")
    first = _verify(client, user, order["order_id"], "pay_Http0001", signature)
    second = _verify(client, user, order["order_id"], "pay_Http0001", signature)

    assert first.status_code == 200
    assert first.json()["is_duplicate"] is False
    assert first.json()["subscription"]["plan"] == "pro"
    assert first.json()["payment"]["status"] == "captured"
    assert second.status_code == 200
    assert second.json()["is_duplicate"] is True


def test_invalid_discount_code_is_bad_request(client, user, razorpay):
    response = _create_order(client, user, discountCode="NOTREAL")

    assert response.status_code == 400
    assert razorpay.calls == []


def test_free_plan_cannot_be_purchased(client, user):
    assert _create_order(client, user, plan="free").status_code == 400


def test_gateway_outage_returns_503(client, user, razorpay):
    razorpay.unavailable = True

    response = _create_order(client, user)

    assert response.status_code == 503
    assert "detail" in response.json()


def test_tampered_signature_is_rejected(client, user, razorpay):
    order = _create_order(client, user).json()
    razorpay.add_payment("pay_Http0002", order["order_id"], 49900)

    response = _verify(client, user, order["order_id"], "pay_Http0002", "0" * 64)

    assert response.status_code == 400
    assert response.json() == {"detail": "Payment signature verification failed."}


def test_verification_without_key_secret_returns_503(client, db, user, razorpay):
    order = _create_order(client, user).json()
    razorpay.add_payment("pay_Http0003", order["order_id"], 49900)
    signature = sign_payment(order["order_id"], "pay_Http0003")
    razorpay.key_secret = ""

    response = _verify(client, user, order["order_id"], "pay_Http0003", signature)

    assert response.status_code == 503
    db.expire_all()
    assert db.query(models.SubscriptionPayment).one().status == "created"


def test_missing_verification_fields_are_rejected(client, user):
    response = client.post("/api/subscription/verify-payment", json={}, headers=auth_headers(user))

    assert response.status_code == 400


def test_billing_history_paginates(client, user, razorpay):
    for _ in range(3):
        _create_order(client, user)

    page_one = client.get("/api/subscription/billing-history?page=1&limit=2", headers=auth_headers(user)).json()
    page_two = client.get("/api/subscription/billing-history?page=2&limit=2", headers=auth_headers(user)).json()
    failed = client.get("/api/subscription/billing-history?status=failed", headers=auth_headers(user)).json()

    assert page_one["total"] == 3
    assert page_one["pages"] == 2
    assert len(page_one["payments"]) == 2
    assert len(page_two["payments"]) == 1
    assert failed["total"] == 0


def test_trial_endpoints(client, user):
    started = client.post("/api/subscription/start-trial", headers=auth_headers(user))
    again = client.post("/api/subscription/start-trial", headers=auth_headers(user))
    cancelled = client.post("/api/subscription/cancel-trial", headers=auth_headers(user))

    assert started.status_code == 200
    assert started.json()["status"] == "trial"
    assert again.status_code == 409
    assert again.json()["detail"] == "Trial already used."
    assert cancelled.json()["plan"] == "free"


def test_consume_credits_and_usage(client, user):
    ok = client.post("/api/subscription/consume-credits", json={"amount": 4, "usage_type": "ai_analysis"}, headers=auth_headers(user))
    short = client.post("/api/subscription/consume-credits", json={"amount": 2}, headers=auth_headers(user))
    usage = client.get("/api/subscription/usage", headers=auth_headers(user)).json()

    assert ok.json() == {"success": True, "remaining": 1, "message": None}
    assert short.json()["success"] is False
    assert usage["ai_credits_used"] == 4
    assert usage["credit_usage_percentage"] == 80
    assert usage["ai_analyses_used"] == 1


def test_upgrade_returns_prorated_order(client, db, user):
    make_active_subscription(db, user)

    response = client.post("/api/subscription/upgrade", json={"plan": "enterprise"}, headers=auth_headers(user))

    assert response.status_code == 200
    body = response.json()
    assert body["quote"]["prorated"] is True
    assert body["order"]["amount"] == body["quote"]["amount"]
    payment = db.query(models.SubscriptionPayment).one()
    assert payment.purpose == "upgrade"
    assert payment.plan == "enterprise"


def test_cancel_subscription_endpoint(client, db, user):
    make_active_subscription(db, user)

    response = client.post("/api/subscription/cancel", json={"reason": "Switching jobs"}, headers=auth_headers(user))

    assert response.status_code == 200
    assert response.json()["status"] == "cancelled"
    assert response.json()["has_paid_access"] is True


def test_referral_endpoints(client, user, other_user):
    code = client.get("/api/subscription/referral-code", headers=auth_headers(other_user)).json()["referral_code"]
    own = client.post("/api/subscription/apply-referral", json={"referralCode": code}, headers=auth_headers(other_user))
    applied = client.post("/api/subscription/apply-referral", json={"referralCode": code}, headers=auth_headers(user))

    assert code.startswith("REF") and len(code) == 11
    assert own.status_code == 409
    assert applied.status_code == 200


def test_refund_requires_admin(client, user, admin_user, razorpay):
    order = _create_order(client, user).json()
    razorpay.add_payment("pay_Http0003", order["order_id"], 49900)
    _verify(client, user, order["order_id"], "pay_Http0003", sign_payment(order["order_id"], "pay_Http0003"))

    forbidden = client.post(f"/api/subscription/payments/{order['payment_id']}/refund", json={}, headers=auth_headers(user))
    refunded = client.post(
        f"/api/subscription/payments/{order['payment_id']}/refund",
        json={"reason": "goodwill"},
        headers=auth_headers(admin_user),
    )
    stats = client.get("/api/subscription/stats", headers=auth_headers(admin_user)).json()

    assert forbidden.status_code == 403
    assert refunded.status_code == 200
    assert refunded.json()["status"] == "refunded"
    assert stats["revenue"]["net_revenue"] == 0
