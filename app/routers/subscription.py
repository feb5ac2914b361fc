import logging
import math
from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from app import config, models, schemas
from app import payment_records as records
from app.auth import get_current_active_user, get_current_admin_user
from app.billing_notifications import notify_subscription_change
from app.database import get_db
from app.referrals import apply_referral_code, ensure_referral_code
from app.services import checkout
from app.services.razorpay_client import RazorpayClient
from app.subscriptions import (
    can_create_resume,
    cancel_subscription,
    cancel_trial,
    credit_usage_percentage,
    days_remaining,
    deduct_credits,
    get_or_create_user_subscription,
    has_paid_access,
    record_usage,
    start_trial,
    upgrade_subscription,
)
from app.utils.client_ip import extract_client_ip

router = APIRouter(prefix="/api/subscription", tags=["subscription"])
logger = logging.getLogger(__name__)

# Razorpay rejects orders below one rupee.
MIN_CHARGE_PAISE = 100


def get_razorpay_client(request: Request) -> RazorpayClient:
    client = getattr(request.app.state, "razorpay_client", None)
    if client is None:
        raise HTTPException(status_code=503, detail="Payment service is not configured.")
    return client


def _build_subscription_response(subscription: models.Subscription) -> schemas.SubscriptionResponse:
    response = schemas.SubscriptionResponse.model_validate(subscription)
    response.days_remaining = days_remaining(subscription)
    response.has_paid_access = has_paid_access(subscription)
    return response


@router.post("/create-order", response_model=schemas.CreateOrderResponse)
def create_order(
    payload: schemas.CreateOrderRequest,
    request: Request,
    current_user: models.User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
    client: RazorpayClient = Depends(get_razorpay_client),
):
    return checkout.create_order(
        db,
        client,
        current_user,
        plan=payload.plan,
        billing_cycle=payload.billing_cycle,
        discount_code=payload.discount_code,
        ip_address=extract_client_ip(request),
        user_agent=request.headers.get("user-agent"),
        currency=config.PAYMENT_CURRENCY,
    )


@router.post("/verify-payment", response_model=schemas.VerifyPaymentResponse)
def verify_payment(
    payload: schemas.RazorpayPaymentVerifyRequest,
    request: Request,
    current_user: models.User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
    client: RazorpayClient = Depends(get_razorpay_client),
):
    result = checkout.verify_payment(
        db,
        client,
        order_id=payload.razorpay_order_id,
        payment_id=payload.razorpay_payment_id,
        signature=payload.razorpay_signature,
        user_id=current_user.id,
        source_ip=extract_client_ip(request),
    )
    return schemas.VerifyPaymentResponse(
        success=result.success,
        is_duplicate=result.is_duplicate,
        subscription=_build_subscription_response(result.subscription),
        payment=schemas.PaymentResponse.model_validate(result.payment),
    )


@router.get("/current", response_model=schemas.SubscriptionResponse)
def get_current_subscription(
    current_user: models.User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
):
    subscription = get_or_create_user_subscription(db, current_user.id)
    return _build_subscription_response(subscription)


@router.post("/cancel", response_model=schemas.SubscriptionResponse)
def cancel_my_subscription(
    payload: schemas.CancelSubscriptionRequest,
    current_user: models.User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
):
    subscription = cancel_subscription(db, current_user.id, payload.reason)
    notify_subscription_change(db, subscription, "subscription_cancelled")
    return _build_subscription_response(subscription)


@router.post("/upgrade", response_model=schemas.UpgradeResponse)
def upgrade_my_subscription(
    payload: schemas.UpgradeRequest,
    request: Request,
    current_user: models.User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
    client: RazorpayClient = Depends(get_razorpay_client),
):
    quote = upgrade_subscription(db, current_user.id, payload.plan, payload.billing_cycle)
    order = None
    if quote["amount"] >= MIN_CHARGE_PAISE:
        order = checkout.create_upgrade_order(
            db,
            client,
            current_user,
            quote,
            ip_address=extract_client_ip(request),
            user_agent=request.headers.get("user-agent"),
            currency=config.PAYMENT_CURRENCY,
        )
    return {"quote": quote, "order": order}


@router.get("/usage", response_model=schemas.UsageResponse)
def get_usage(
    current_user: models.User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
):
    subscription = get_or_create_user_subscription(db, current_user.id)
    return schemas.UsageResponse(
        plan=subscription.plan,
        ai_credits_total=subscription.ai_credits_total,
        ai_credits_used=subscription.ai_credits_used,
        ai_credits_remaining=subscription.ai_credits_remaining,
        credit_usage_percentage=credit_usage_percentage(subscription),
        resumes_created=subscription.resumes_created,
        resume_limit=subscription.resume_limit,
        can_create_resume=can_create_resume(subscription),
        ai_analyses_used=subscription.ai_analyses_used,
        interview_sessions_used=subscription.interview_sessions_used,
        portfolios_generated=subscription.portfolios_generated,
        ai_credits_last_reset_at=subscription.ai_credits_last_reset_at,
    )


@router.post("/consume-credits", response_model=schemas.ConsumeCreditsResponse)
def consume_credits(
    payload: schemas.ConsumeCreditsRequest,
    current_user: models.User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
):
    subscription = get_or_create_user_subscription(db, current_user.id)
    result = deduct_credits(db, subscription, payload.amount)
    if result.success and payload.usage_type:
        record_usage(db, subscription, payload.usage_type)
    return schemas.ConsumeCreditsResponse(success=result.success, remaining=result.remaining, message=result.message)


@router.get("/billing-history", response_model=schemas.BillingHistoryResponse)
def get_billing_history(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[str] = Query(None),
    current_user: models.User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
):
    rows, total = records.list_user_payments(
        db,
        current_user.id,
        status=(status or "").strip().lower() or None,
        limit=limit,
        offset=(page - 1) * limit,
    )
    return schemas.BillingHistoryResponse(
        payments=[schemas.PaymentResponse.model_validate(row) for row in rows],
        total=total,
        page=page,
        limit=limit,
        pages=math.ceil(total / limit) if total else 0,
    )


@router.post("/start-trial", response_model=schemas.SubscriptionResponse)
def start_my_trial(
    current_user: models.User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
):
    subscription = start_trial(db, current_user.id)
    notify_subscription_change(db, subscription, "trial_started")
    return _build_subscription_response(subscription)


@router.post("/cancel-trial", response_model=schemas.SubscriptionResponse)
def cancel_my_trial(
    current_user: models.User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
):
    subscription = cancel_trial(db, current_user.id)
    notify_subscription_change(db, subscription, "trial_ended")
    return _build_subscription_response(subscription)


@router.get("/referral-code", response_model=schemas.ReferralCodeResponse)
def get_referral_code(
    current_user: models.User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
):
    subscription = get_or_create_user_subscription(db, current_user.id)
    code = ensure_referral_code(db, subscription)
    return schemas.ReferralCodeResponse(
        referral_code=code,
        referral_count=subscription.referral_count,
        referral_credits_paise=subscription.referral_credits_paise,
    )


@router.post("/apply-referral", response_model=schemas.SubscriptionResponse)
def apply_referral(
    payload: schemas.ApplyReferralRequest,
    current_user: models.User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
):
    subscription = apply_referral_code(db, current_user.id, payload.referral_code)
    return _build_subscription_response(subscription)


@router.post("/payments/{payment_id}/refund", response_model=schemas.PaymentResponse)
def refund_payment(
    payment_id: int,
    payload: schemas.RefundRequest,
    current_user: models.User = Depends(get_current_admin_user),
    db: Session = Depends(get_db),
    client: RazorpayClient = Depends(get_razorpay_client),
):
    payment = checkout.refund_payment(db, client, payment_id, payload.amount_paise, payload.reason)
    logger.info("Refund issued by admin_user_id=%s payment_id=%s", current_user.id, payment.id)
    return schemas.PaymentResponse.model_validate(payment)


@router.get("/stats", response_model=schemas.PaymentStatsResponse)
def get_payment_stats(
    days: int = Query(30, ge=1, le=3650),
    current_user: models.User = Depends(get_current_admin_user),
    db: Session = Depends(get_db),
):
    start = datetime.utcnow() - timedelta(days=days)
    return schemas.PaymentStatsResponse(
        revenue=records.calculate_revenue(db, start=start),
        by_plan=records.payment_stats_by_plan(db),
        failures=records.payment_failure_analysis(db, start=start),
    )
