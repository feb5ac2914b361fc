import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app import config, email_service, models
from app.database import SessionLocal
from app.plans import PLAN_ENTERPRISE, PLAN_FREE, UNLIMITED
from app.subscriptions import (
    STATUS_ACTIVE,
    STATUS_TRIAL,
    credit_usage_percentage,
    expire_subscription,
    expire_trial,
    reset_monthly_credits,
)

logger = logging.getLogger(__name__)

JOB_EXPIRE_SUBSCRIPTIONS = "expire_subscriptions"
JOB_EXPIRE_TRIALS = "expire_trials"
JOB_RESET_MONTHLY_CREDITS = "reset_monthly_credits"
JOB_RENEWAL_REMINDERS = "renewal_reminders"
JOB_CREDIT_USAGE_WARNINGS = "credit_usage_warnings"

STALE_RUN_AFTER = timedelta(hours=2)


def expire_stale_subscriptions(db: Session, now: Optional[datetime] = None) -> int:
    now = now or datetime.utcnow()
    candidates = (
        db.query(models.Subscription)
        .filter(
            models.Subscription.status == STATUS_ACTIVE,
            models.Subscription.plan != PLAN_FREE,
            models.Subscription.expiry_date.isnot(None),
            models.Subscription.expiry_date < now,
        )
        .all()
    )
    expired = 0
    for subscription in candidates:
        if expire_subscription(db, subscription, now):
            expired += 1
            logger.info("Subscription expired user_id=%s plan=%s", subscription.user_id, subscription.plan)
    return expired


def expire_trials(db: Session, now: Optional[datetime] = None) -> int:
    now = now or datetime.utcnow()
    trials = (
        db.query(models.Subscription)
        .filter(
            models.Subscription.status == STATUS_TRIAL,
            models.Subscription.trial_end_date.isnot(None),
            models.Subscription.trial_end_date <= now,
        )
        .all()
    )
    ended = 0
    for subscription in trials:
        if expire_trial(db, subscription, now):
            ended += 1
            logger.info("Trial ended user_id=%s", subscription.user_id)
    return ended


def reset_all_monthly_credits(db: Session, now: Optional[datetime] = None) -> int:
    """Reset every active or trial subscription in one pass."""
    now = now or datetime.utcnow()
    subscriptions = (
        db.query(models.Subscription)
        .filter(models.Subscription.status.in_([STATUS_ACTIVE, STATUS_TRIAL]))
        .all()
    )
    for subscription in subscriptions:
        reset_monthly_credits(db, subscription, now)
    db.commit()
    return len(subscriptions)


def send_renewal_reminders(
    db: Session,
    now: Optional[datetime] = None,
    windows: Optional[list[int]] = None,
) -> int:
    """Email subscriptions expiring within each window, once per window per expiry.

    A subscription only gets the reminder for the smallest window it falls in.
    """
    now = now or datetime.utcnow()
    windows = sorted(windows or config.RENEWAL_REMINDER_DAYS)
    horizon = now + timedelta(days=windows[-1])
    subscriptions = (
        db.query(models.Subscription)
        .filter(
            models.Subscription.status == STATUS_ACTIVE,
            models.Subscription.plan != PLAN_FREE,
            models.Subscription.expiry_date.isnot(None),
            models.Subscription.expiry_date > now,
            models.Subscription.expiry_date <= horizon,
        )
        .all()
    )

    sent = 0
    for subscription in subscriptions:
        window = next(days for days in windows if subscription.expiry_date <= now + timedelta(days=days))
        reminder = models.RenewalReminder(
            subscription_id=subscription.id,
            expiry_date=subscription.expiry_date,
            window_days=window,
            sent=False,
        )
        db.add(reminder)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            continue

        user = db.query(models.User).filter(models.User.id == subscription.user_id).first()
        if not user or not user.email:
            continue
        days_left = max(1, (subscription.expiry_date - now).days + 1)
        try:
            delivered = email_service.send_renewal_reminder_email(
                email=user.email,
                full_name=user.full_name,
                plan=subscription.plan,
                expiry_date=subscription.expiry_date,
                days_left=min(days_left, window),
            )
        except Exception:
            logger.exception("Renewal reminder failed user_id=%s", user.id)
            continue
        if delivered:
            reminder.sent = True
            db.commit()
            sent += 1
    return sent


def send_credit_usage_warnings(db: Session, threshold_percent: Optional[int] = None) -> int:
    threshold = threshold_percent or config.CREDIT_USAGE_WARNING_PERCENT
    subscriptions = (
        db.query(models.Subscription)
        .filter(
            models.Subscription.status.in_([STATUS_ACTIVE, STATUS_TRIAL]),
            models.Subscription.plan != PLAN_ENTERPRISE,
            models.Subscription.ai_credits_total != UNLIMITED,
            models.Subscription.ai_credits_total > 0,
        )
        .all()
    )
    warned = 0
    for subscription in subscriptions:
        percentage = credit_usage_percentage(subscription)
        if percentage < threshold:
            continue
        user = db.query(models.User).filter(models.User.id == subscription.user_id).first()
        if not user or not user.email:
            continue
        try:
            if email_service.send_credit_usage_warning_email(
                email=user.email,
                full_name=user.full_name,
                used=subscription.ai_credits_used,
                total=subscription.ai_credits_total,
                percentage=percentage,
            ):
                warned += 1
        except Exception:
            logger.exception("Credit usage warning failed user_id=%s", user.id)
    return warned


def run_subscription_job(
    job_name: str,
    run_key: str,
    job: Callable[[Session], int],
    session_factory: Callable[[], Session] = SessionLocal,
    force: bool = False,
) -> dict:
    """Run ``job`` at most once per ``(job_name, run_key)``.

    The run row is the guard across app instances: a completed run, or one
    started recently and still running, makes later calls skip.
    """
    db = session_factory()
    run_row: Optional[models.SubscriptionJobRun] = None
    try:
        existing_run = (
            db.query(models.SubscriptionJobRun)
            .filter(
                models.SubscriptionJobRun.job_name == job_name,
                models.SubscriptionJobRun.run_key == run_key,
            )
            .first()
        )
        if existing_run and not force and existing_run.status == "completed":
            return {"status": "skipped", "reason": "already_ran", "job": job_name, "run_key": run_key}
        if (
            existing_run
            and not force
            and existing_run.status == "running"
            and existing_run.started_at
            and (datetime.utcnow() - existing_run.started_at) < STALE_RUN_AFTER
        ):
            return {"status": "skipped", "reason": "run_already_in_progress", "job": job_name, "run_key": run_key}

        if existing_run:
            run_row = existing_run
            run_row.status = "running"
            run_row.started_at = datetime.utcnow()
            run_row.completed_at = None
            run_row.processed_count = 0
            run_row.error_message = None
            db.commit()
        else:
            run_row = models.SubscriptionJobRun(
                job_name=job_name,
                run_key=run_key,
                status="running",
                started_at=datetime.utcnow(),
                processed_count=0,
            )
            db.add(run_row)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                return {"status": "skipped", "reason": "already_ran", "job": job_name, "run_key": run_key}
        db.refresh(run_row)

        processed = job(db)

        run_row.status = "completed"
        run_row.completed_at = datetime.utcnow()
        run_row.processed_count = int(processed)
        db.commit()
        return {"status": "completed", "job": job_name, "run_key": run_key, "processed": int(processed)}
    except Exception as exc:  # noqa: BLE001
        db.rollback()
        logger.exception("Subscription job failed job=%s run_key=%s", job_name, run_key)
        if run_row is not None and run_row.id is not None:
            run_row.status = "failed"
            run_row.completed_at = datetime.utcnow()
            run_row.error_message = str(exc)[:2000]
            db.commit()
        return {"status": "failed", "job": job_name, "run_key": run_key, "error": str(exc)}
    finally:
        db.close()


def run_due_jobs(
    now_utc: datetime,
    session_factory: Callable[[], Session] = SessionLocal,
) -> list[dict]:
    if now_utc.tzinfo is None:
        now_utc = now_utc.replace(tzinfo=timezone.utc)
    if now_utc.hour < config.SUBSCRIPTION_JOBS_HOUR_UTC:
        return []

    now = now_utc.replace(tzinfo=None)
    day_key = now_utc.date().isoformat()
    results = [
        run_subscription_job(JOB_EXPIRE_SUBSCRIPTIONS, day_key, lambda db: expire_stale_subscriptions(db, now), session_factory),
        run_subscription_job(JOB_EXPIRE_TRIALS, day_key, lambda db: expire_trials(db, now), session_factory),
    ]
    # Keyed by month: the first poll of a month resets everyone, even if the 1st was missed.
    results.append(
        run_subscription_job(
            JOB_RESET_MONTHLY_CREDITS,
            now_utc.strftime("%Y-%m"),
            lambda db: reset_all_monthly_credits(db, now),
            session_factory,
        )
    )
    results.append(
        run_subscription_job(JOB_RENEWAL_REMINDERS, day_key, lambda db: send_renewal_reminders(db, now), session_factory)
    )
    results.append(
        run_subscription_job(JOB_CREDIT_USAGE_WARNINGS, day_key, send_credit_usage_warnings, session_factory)
    )
    return results


class SubscriptionJobScheduler:
    def __init__(self, session_factory: Callable[[], Session] = SessionLocal) -> None:
        self._session_factory = session_factory
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if not config.SUBSCRIPTION_JOBS_ENABLED:
            logger.info("Subscription jobs: disabled (SUBSCRIPTION_JOBS_ENABLED=false)")
            return
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="subscription-jobs",
            daemon=True,
        )
        self._thread.start()
        logger.info(
            "Subscription jobs: started (schedule=%02d:00 UTC, poll=%ss)",
            config.SUBSCRIPTION_JOBS_HOUR_UTC,
            config.SUBSCRIPTION_JOBS_POLL_SECONDS,
        )

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5)

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                for result in run_due_jobs(datetime.now(timezone.utc), self._session_factory):
                    if result.get("status") != "skipped":
                        logger.info("Subscription job result: %s", result)
            except Exception:  # noqa: BLE001
                logger.exception("Subscription job loop error")
            self._stop_event.wait(config.SUBSCRIPTION_JOBS_POLL_SECONDS)
