from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime


class CreateOrderRequest(BaseModel):
    plan: str
    billing_cycle: str = Field("monthly", alias="billingCycle")
    discount_code: Optional[str] = Field(None, alias="discountCode")

    class Config:
        populate_by_name = True


class PlanDetails(BaseModel):
    plan: str
    billing_cycle: str
    base_amount: int
    discount_amount: int
    discount_percentage: int
    discount_code: Optional[str] = None
    final_amount: int


class CreateOrderResponse(BaseModel):
    order_id: str
    amount: int
    currency: str
    payment_id: int
    key: str
    receipt: str
    plan_details: PlanDetails


class RazorpayPaymentVerifyRequest(BaseModel):
    razorpay_order_id: str = Field("", alias="razorpayOrderId")
    razorpay_payment_id: str = Field("", alias="razorpayPaymentId")
    razorpay_signature: str = Field("", alias="razorpaySignature")

    class Config:
        populate_by_name = True


class PaymentResponse(BaseModel):
    id: int
    razorpay_order_id: str
    razorpay_payment_id: Optional[str] = None
    amount_paise: int
    currency: str
    discount_amount_paise: int
    discount_code: Optional[str] = None
    plan: str
    billing_cycle: str
    purpose: str
    status: str
    payment_method: Optional[str] = None
    refund_amount_paise: Optional[int] = None
    transaction_date: Optional[datetime] = None
    captured_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class SubscriptionResponse(BaseModel):
    plan: str
    status: str
    billing_cycle: str
    amount_paise: int
    currency: str
    start_date: Optional[datetime] = None
    expiry_date: Optional[datetime] = None
    next_billing_date: Optional[datetime] = None
    auto_renew: bool
    is_trial: bool
    trial_end_date: Optional[datetime] = None
    trial_used: bool
    ai_credits_total: int
    ai_credits_used: int
    ai_credits_remaining: int
    resume_limit: int
    resumes_created: int
    cancelled_at: Optional[datetime] = None
    days_remaining: int = 0
    has_paid_access: bool = False

    class Config:
        from_attributes = True


class VerifyPaymentResponse(BaseModel):
    success: bool
    is_duplicate: bool
    subscription: SubscriptionResponse
    payment: PaymentResponse


class CancelSubscriptionRequest(BaseModel):
    reason: Optional[str] = None


class UpgradeRequest(BaseModel):
    plan: str
    billing_cycle: str = Field("monthly", alias="billingCycle")

    class Config:
        populate_by_name = True


class UpgradeQuote(BaseModel):
    current_plan: str
    new_plan: str
    billing_cycle: str
    current_price: int
    new_price: int
    days_remaining: int
    total_days: int
    amount: int
    prorated: bool


class UpgradeResponse(BaseModel):
    quote: UpgradeQuote
    order: Optional[CreateOrderResponse] = None


class UsageResponse(BaseModel):
    plan: str
    ai_credits_total: int
    ai_credits_used: int
    ai_credits_remaining: int
    credit_usage_percentage: int
    resumes_created: int
    resume_limit: int
    can_create_resume: bool
    ai_analyses_used: int
    interview_sessions_used: int
    portfolios_generated: int
    ai_credits_last_reset_at: Optional[datetime] = None


class ConsumeCreditsRequest(BaseModel):
    amount: int = Field(1, ge=1, le=1000)
    usage_type: Optional[str] = None


class ConsumeCreditsResponse(BaseModel):
    success: bool
    remaining: int
    message: Optional[str] = None


class BillingHistoryResponse(BaseModel):
    payments: List[PaymentResponse]
    total: int
    page: int
    limit: int
    pages: int


class ReferralCodeResponse(BaseModel):
    referral_code: str
    referral_count: int
    referral_credits_paise: int


class ApplyReferralRequest(BaseModel):
    referral_code: str = Field(..., alias="referralCode")

    class Config:
        populate_by_name = True


class RefundRequest(BaseModel):
    amount_paise: Optional[int] = Field(None, ge=1)
    reason: Optional[str] = None


class PaymentStatsResponse(BaseModel):
    revenue: dict
    by_plan: List[dict]
    failures: List[dict]
