from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Text, Boolean, Index, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.database import Base

class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    full_name = Column(String, nullable=True)
    is_active = Column(Boolean, default=True)
    is_admin = Column(Boolean, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    subscription = relationship(
        "Subscription",
        back_populates="user",
        uselist=False,
        foreign_keys="Subscription.user_id",
    )
    payments = relationship("SubscriptionPayment", back_populates="user")


class Subscription(Base):
    """One row per user. Plan/status move only through app.subscriptions."""
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, unique=True, index=True)

    plan = Column(String, nullable=False, default="free")
    status = Column(String, nullable=False, default="active", index=True)
    billing_cycle = Column(String, nullable=False, default="monthly")
    amount_paise = Column(Integer, nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="INR")
    start_date = Column(DateTime, nullable=True)
    expiry_date = Column(DateTime, nullable=True, index=True)
    next_billing_date = Column(DateTime, nullable=True)
    auto_renew = Column(Boolean, nullable=False, default=False)

    # Trial
    is_trial = Column(Boolean, nullable=False, default=False)
    trial_start_date = Column(DateTime, nullable=True)
    trial_end_date = Column(DateTime, nullable=True)
    trial_used = Column(Boolean, nullable=False, default=False)

    # AI credit ledger; -1 means unlimited
    ai_credits_total = Column(Integer, nullable=False, default=5)
    ai_credits_used = Column(Integer, nullable=False, default=0)
    ai_credits_remaining = Column(Integer, nullable=False, default=5)
    ai_credits_last_reset_at = Column(DateTime, nullable=True)

    # Monthly usage counters
    resumes_created = Column(Integer, nullable=False, default=0)
    resume_limit = Column(Integer, nullable=False, default=2)
    ai_analyses_used = Column(Integer, nullable=False, default=0)
    interview_sessions_used = Column(Integer, nullable=False, default=0)
    portfolios_generated = Column(Integer, nullable=False, default=0)

    # Referral
    referral_code = Column(String, nullable=True, unique=True, index=True)
    referred_by_user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    referral_credits_paise = Column(Integer, nullable=False, default=0)
    referral_count = Column(Integer, nullable=False, default=0)

    razorpay_subscription_id = Column(String, nullable=True, index=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    last_payment_date = Column(DateTime, nullable=True)
    last_payment_amount_paise = Column(Integer, nullable=True)
    renewal_attempts = Column(Integer, nullable=False, default=0)
    last_renewal_attempt_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="subscription", foreign_keys=[user_id])
    upgrade_history = relationship(
        "SubscriptionUpgradeHistory",
        back_populates="subscription",
        order_by="SubscriptionUpgradeHistory.id",
    )
    payments = relationship("SubscriptionPayment", back_populates="subscription")


class SubscriptionUpgradeHistory(Base):
    __tablename__ = "subscription_upgrade_history"

    id = Column(Integer, primary_key=True, index=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id"), nullable=False, index=True)
    from_plan = Column(String, nullable=False)
    to_plan = Column(String, nullable=False)
    reason = Column(String, nullable=False)
    payment_id = Column(Integer, ForeignKey("subscription_payments.id"), nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())

    subscription = relationship("Subscription", back_populates="upgrade_history")


class SubscriptionPayment(Base):
    """Payment record, one per gateway order. Never deleted."""
    __tablename__ = "subscription_payments"
    __table_args__ = (
        Index("ix_subscription_payments_user_status", "user_id", "status"),
        Index("ix_subscription_payments_transaction_date", "transaction_date"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id"), nullable=True, index=True)
    provider = Column(String, nullable=False, default="razorpay")
    razorpay_order_id = Column(String, nullable=False, unique=True)
    razorpay_payment_id = Column(String, nullable=True, unique=True)
    razorpay_signature = Column(String, nullable=True)
    razorpay_subscription_id = Column(String, nullable=True, index=True)
    invoice_id = Column(String, nullable=True)
    receipt = Column(String, nullable=True)

    amount_paise = Column(Integer, nullable=False)
    base_amount_paise = Column(Integer, nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="INR")
    discount_amount_paise = Column(Integer, nullable=False, default=0)
    discount_percentage = Column(Integer, nullable=False, default=0)
    discount_code = Column(String, nullable=True)
    referral_credit_paise = Column(Integer, nullable=False, default=0)

    plan = Column(String, nullable=False)
    billing_cycle = Column(String, nullable=False)
    purpose = Column(String, nullable=False, default="purchase")
    status = Column(String, nullable=False, default="created")
    payment_method = Column(String, nullable=True)

    error_code = Column(String, nullable=True)
    error_description = Column(Text, nullable=True)
    error_source = Column(String, nullable=True)
    error_step = Column(String, nullable=True)
    error_reason = Column(String, nullable=True)

    refund_amount_paise = Column(Integer, nullable=True)
    refund_reason = Column(Text, nullable=True)
    refund_id = Column(String, nullable=True)

    attempt_count = Column(Integer, nullable=False, default=1)
    webhook_received = Column(Boolean, nullable=False, default=False)
    webhook_received_at = Column(DateTime, nullable=True)
    ip_address = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)
    notes = Column(Text, nullable=True)

    transaction_date = Column(DateTime, nullable=False, server_default=func.now())
    authorized_at = Column(DateTime, nullable=True)
    captured_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)
    refunded_at = Column(DateTime, nullable=True)
    # Set exactly once, when the subscription transition for this payment is applied.
    activated_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="payments")
    subscription = relationship("Subscription", back_populates="payments")


class CouponCode(Base):
    __tablename__ = "coupon_codes"

    id = Column(Integer, primary_key=True, index=True)
    coupon_code = Column(String, nullable=False, unique=True, index=True)
    percent_off = Column(Integer, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class RenewalReminder(Base):
    __tablename__ = "renewal_reminders"
    __table_args__ = (
        UniqueConstraint("subscription_id", "expiry_date", "window_days", name="uq_renewal_reminder_window"),
    )

    id = Column(Integer, primary_key=True, index=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id"), nullable=False, index=True)
    expiry_date = Column(DateTime, nullable=False)
    window_days = Column(Integer, nullable=False)
    sent = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, server_default=func.now())


class SubscriptionJobRun(Base):
    __tablename__ = "subscription_job_runs"
    __table_args__ = (
        UniqueConstraint("job_name", "run_key", name="uq_subscription_job_run"),
    )

    id = Column(Integer, primary_key=True, index=True)
    job_name = Column(String, nullable=False, index=True)
    run_key = Column(String, nullable=False)
    status = Column(String, nullable=False, default="running")
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    processed_count = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
