import os

from dotenv import load_dotenv

load_dotenv()


def _is_truthy(value: str) -> bool:
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _int_env(name: str, default: int, minimum: int | None = None, maximum: int | None = None) -> int:
    raw_value = os.getenv(name, str(default))
    try:
        value = int(str(raw_value).strip() or default)
    except (TypeError, ValueError):
        value = default
    if minimum is not None:
        value = max(minimum, value)
    if maximum is not None:
        value = min(maximum, value)
    return value


def _float_env(name: str, default: float, minimum: float = 0.0) -> float:
    try:
        value = float(str(os.getenv(name, str(default))).strip() or default)
    except (TypeError, ValueError):
        value = default
    return max(minimum, value)


def _parse_discount_codes(raw: str) -> dict[str, int]:
    codes: dict[str, int] = {}
    for item in (raw or "").split(","):
        code, _, percent = item.partition(":")
        code = code.strip().upper()
        if not code:
            continue
        try:
            percent_off = int(percent.strip())
        except ValueError:
            continue
        if 0 < percent_off < 100:
            codes[code] = percent_off
    return codes


def _parse_int_list(raw: str, default: list[int]) -> list[int]:
    values: list[int] = []
    for item in (raw or "").split(","):
        item = item.strip()
        if not item:
            continue
        try:
            parsed = int(item)
        except ValueError:
            continue
        if parsed > 0:
            values.append(parsed)
    return sorted(set(values), reverse=True) or default


DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./resumebuilder.db")
if DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql://", 1)

LOG_LEVEL = (os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO")

# Razorpay
RAZORPAY_KEY_ID = os.getenv("RAZORPAY_KEY_ID", "").strip()
RAZORPAY_KEY_SECRET = os.getenv("RAZORPAY_KEY_SECRET", "").strip()
RAZORPAY_WEBHOOK_SECRET = os.getenv("RAZORPAY_WEBHOOK_SECRET", "").strip()
RAZORPAY_API_BASE = os.getenv("RAZORPAY_API_BASE", "https://api.razorpay.com/v1").rstrip("/")
RAZORPAY_TIMEOUT_SECONDS = _float_env("RAZORPAY_TIMEOUT_SECONDS", 15.0, minimum=1.0)
RAZORPAY_VERIFY_CREDENTIALS_ON_STARTUP = _is_truthy(os.getenv("RAZORPAY_VERIFY_CREDENTIALS_ON_STARTUP", "false"))

# Pricing, always in minor currency units (paise).
PAYMENT_CURRENCY = (os.getenv("PAYMENT_CURRENCY", "INR").strip().upper() or "INR")
PRO_MONTHLY_AMOUNT_PAISE = _int_env("PRO_MONTHLY_AMOUNT_PAISE", 49900, minimum=100)
ENTERPRISE_MONTHLY_AMOUNT_PAISE = _int_env("ENTERPRISE_MONTHLY_AMOUNT_PAISE", 199900, minimum=100)
ANNUAL_DISCOUNT_PERCENT = _int_env("ANNUAL_DISCOUNT_PERCENT", 20, minimum=0, maximum=99)
DISCOUNT_CODES = _parse_discount_codes(os.getenv("DISCOUNT_CODES", "LAUNCH50:50"))

# Day-count basis used for proration.
PRORATION_DAYS_MONTHLY = _int_env("PRORATION_DAYS_MONTHLY", 30, minimum=1)
PRORATION_DAYS_ANNUAL = _int_env("PRORATION_DAYS_ANNUAL", 365, minimum=1)

TRIAL_DAYS = _int_env("TRIAL_DAYS", 7, minimum=1)

# Webhook processing
WEBHOOK_QUEUE_SIZE = _int_env("WEBHOOK_QUEUE_SIZE", 1000, minimum=1)
WEBHOOK_WORKERS = _int_env("WEBHOOK_WORKERS", 2, minimum=1, maximum=32)
WEBHOOK_MAX_ATTEMPTS = _int_env("WEBHOOK_MAX_ATTEMPTS", 3, minimum=1)
WEBHOOK_RETRY_BACKOFF_SECONDS = _float_env("WEBHOOK_RETRY_BACKOFF_SECONDS", 2.0)
WEBHOOK_BODY_TIMEOUT_SECONDS = _float_env("WEBHOOK_BODY_TIMEOUT_SECONDS", 5.0, minimum=0.1)

# Scheduled reconciliation
SUBSCRIPTION_JOBS_ENABLED = _is_truthy(os.getenv("SUBSCRIPTION_JOBS_ENABLED", "true"))
SUBSCRIPTION_JOBS_POLL_SECONDS = _int_env("SUBSCRIPTION_JOBS_POLL_SECONDS", 300, minimum=30)
SUBSCRIPTION_JOBS_HOUR_UTC = _int_env("SUBSCRIPTION_JOBS_HOUR_UTC", 0, minimum=0, maximum=23)
RENEWAL_REMINDER_DAYS = _parse_int_list(os.getenv("RENEWAL_REMINDER_DAYS", "7,3,1"), [7, 3, 1])
CREDIT_USAGE_WARNING_PERCENT = _int_env("CREDIT_USAGE_WARNING_PERCENT", 80, minimum=1, maximum=100)

# Client IP resolution for audit logs
TRUST_PROXY_HEADERS = _is_truthy(os.getenv("TRUST_PROXY_HEADERS", "false"))
TRUSTED_PROXY_IPS = {item.strip() for item in os.getenv("TRUSTED_PROXY_IPS", "").split(",") if item.strip()}
