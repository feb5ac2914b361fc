import html
import logging
import os
from datetime import datetime
from typing import Optional

import resend
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

RESEND_API_KEY = os.getenv("RESEND_API_KEY")
RESEND_FROM_EMAIL = os.getenv("RESEND_FROM_EMAIL", "billing@resumebuilder.app")
RESEND_FROM_NAME = os.getenv("RESEND_FROM_NAME", "Resume Builder")
# Resend's test sender works without domain verification.
USE_TEST_EMAIL = os.getenv("USE_TEST_EMAIL", "false").lower() == "true"
APP_BASE_URL = os.getenv("APP_BASE_URL", "http://localhost:8000").rstrip("/")

if RESEND_API_KEY:
    resend.api_key = RESEND_API_KEY
else:
    logger.warning("RESEND_API_KEY not found. Billing emails will be disabled.")

SUBSCRIPTION_EVENT_SUBJECTS = {
    "plan_activated": "Your plan is now active",
    "subscription_renewed": "Your subscription has been renewed",
    "subscription_cancelled": "Your subscription has been cancelled",
    "subscription_expired": "Your subscription has expired",
    "trial_started": "Your free trial has started",
    "trial_ended": "Your free trial has ended",
    "payment_refunded": "Your payment has been refunded",
}


def _format_amount(amount_paise: Optional[int], currency: str) -> str:
    if amount_paise is None:
        return ""
    return f"{currency} {amount_paise / 100:,.2f}"


def _format_date(value: Optional[datetime]) -> str:
    if value is None:
        return "-"
    return value.strftime("%d %b %Y")


def _render_html(title: str, greeting_name: Optional[str], lines: list[str]) -> str:
    name = html.escape(greeting_name or "there")
    body = "".join(f'<p style="font-size: 15px; margin: 0 0 14px;">{html.escape(line)}</p>' for line in lines)
    return f"""
    <!DOCTYPE html>
    <html>
    <body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, Arial, sans-serif; line-height: 1.6; color: #333; max-width: 600px; margin: 0 auto; padding: 20px;">
        <h2 style="margin: 0 0 20px;">{html.escape(title)}</h2>
        <p style="font-size: 15px; margin: 0 0 14px;">Hi {name},</p>
        {body}
        <p style="font-size: 13px; color: #6b7280; margin-top: 30px;">
            Manage your plan at <a href="{APP_BASE_URL}/billing">{APP_BASE_URL}/billing</a>.
        </p>
    </body>
    </html>
    """


def _send(email: str, subject: str, html_content: str, text_content: str) -> bool:
    if not RESEND_API_KEY:
        logger.info("Skipping email to %s (%s): Resend not configured", email, subject)
        return False

    from_email = "onboarding@resend.dev" if USE_TEST_EMAIL else RESEND_FROM_EMAIL
    params = {
        "from": f"{RESEND_FROM_NAME} <{from_email}>",
        "to": [email],
        "subject": subject,
        "html": html_content,
        "text": text_content,
    }
    try:
        email_response = resend.Emails.send(params)
    except Exception:
        logger.exception("Error sending email to %s subject=%s", email, subject)
        return False

    if email_response:
        logger.info("Email sent to %s subject=%s", email, subject)
        return True
    logger.warning("Failed to send email to %s subject=%s", email, subject)
    return False


def send_subscription_change_email(
    email: str,
    full_name: Optional[str],
    event_type: str,
    plan: str,
    status: str,
    access_until: Optional[datetime] = None,
    payment_amount_paise: Optional[int] = None,
    payment_currency: str = "INR",
) -> bool:
    subject = SUBSCRIPTION_EVENT_SUBJECTS.get(event_type, "Your subscription has been updated")
    lines = [f"Plan: {plan.title()} ({status})."]
    if access_until is not None:
        lines.append(f"Access valid until {_format_date(access_until)}.")
    if payment_amount_paise:
        lines.append(f"Amount: {_format_amount(payment_amount_paise, payment_currency)}.")
    text_content = f"Hi {full_name or 'there'},\n\n" + "\n".join(lines)
    return _send(email, subject, _render_html(subject, full_name, lines), text_content)


def send_renewal_reminder_email(
    email: str,
    full_name: Optional[str],
    plan: str,
    expiry_date: datetime,
    days_left: int,
) -> bool:
    subject = f"Your {plan.title()} plan renews in {days_left} day{'s' if days_left != 1 else ''}"
    lines = [
        f"Your {plan.title()} plan expires on {_format_date(expiry_date)}.",
        "Renew now to keep your credits and unlimited resumes.",
    ]
    text_content = f"Hi {full_name or 'there'},\n\n" + "\n".join(lines)
    return _send(email, subject, _render_html(subject, full_name, lines), text_content)


def send_payment_failed_email(
    email: str,
    full_name: Optional[str],
    plan: str,
    amount_paise: int,
    currency: str,
    reason: Optional[str] = None,
) -> bool:
    subject = "Your payment could not be completed"
    lines = [f"We could not process your payment of {_format_amount(amount_paise, currency)} for the {plan.title()} plan."]
    if reason:
        lines.append(f"Reason reported by the bank: {reason}.")
    lines.append("No money was taken for this attempt. You can try again from the billing page.")
    text_content = f"Hi {full_name or 'there'},\n\n" + "\n".join(lines)
    return _send(email, subject, _render_html(subject, full_name, lines), text_content)


def send_credit_usage_warning_email(
    email: str,
    full_name: Optional[str],
    used: int,
    total: int,
    percentage: int,
) -> bool:
    subject = f"You have used {percentage}% of your AI credits"
    lines = [
        f"You have used {used} of {total} AI credits this month.",
        "Credits reset on the 1st of every month, or upgrade for a bigger allowance.",
    ]
    text_content = f"Hi {full_name or 'there'},\n\n" + "\n".join(lines)
    return _send(email, subject, _render_html(subject, full_name, lines), text_content)
