import logging
import queue
import threading
from dataclasses import dataclass
from typing import Callable

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from app import config
from app.exceptions import PaymentGatewayUnavailable
from app.services.razorpay_client import RazorpayClient
from app.services.razorpay_webhooks import WebhookEvent, log_webhook, process_webhook_event

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (PaymentGatewayUnavailable, OperationalError)


@dataclass
class _WebhookJob:
    event: WebhookEvent
    attempt: int = 1


class WebhookDispatcher:
    """Bounded queue plus worker threads for deferred webhook processing.

    ``submit`` never blocks the request. Transient failures are retried with
    linear backoff up to ``max_attempts``; everything else is logged once and
    left to the gateway's own redelivery.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        client: RazorpayClient,
        queue_size: int = config.WEBHOOK_QUEUE_SIZE,
        workers: int = config.WEBHOOK_WORKERS,
        max_attempts: int = config.WEBHOOK_MAX_ATTEMPTS,
        retry_backoff_seconds: float = config.WEBHOOK_RETRY_BACKOFF_SECONDS,
    ) -> None:
        self._session_factory = session_factory
        self._client = client
        self._queue: "queue.Queue[_WebhookJob]" = queue.Queue(maxsize=queue_size)
        self._worker_count = workers
        self._max_attempts = max_attempts
        self._retry_backoff_seconds = retry_backoff_seconds
        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []

    def start(self) -> None:
        if any(thread.is_alive() for thread in self._threads):
            return
        self._stop_event.clear()
        self._threads = [
            threading.Thread(target=self._run_worker, name=f"webhook-worker-{index}", daemon=True)
            for index in range(self._worker_count)
        ]
        for thread in self._threads:
            thread.start()
        logger.info("Webhook dispatcher started (workers=%s, queue=%s)", self._worker_count, self._queue.maxsize)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        for thread in self._threads:
            if thread.is_alive():
                thread.join(timeout=timeout)
        self._threads = []
        pending = self._queue.qsize()
        if pending:
            logger.warning("Webhook dispatcher stopped with %s queued events", pending)

    def join(self) -> None:
        """Block until every queued event has been processed."""
        self._queue.join()

    def submit(self, event: WebhookEvent) -> bool:
        return self._enqueue(_WebhookJob(event=event))

    def _enqueue(self, job: _WebhookJob) -> bool:
        try:
            self._queue.put_nowait(job)
        except queue.Full:
            log_webhook(
                job.event.event_name,
                "dropped",
                webhook_id=job.event.webhook_id,
                attempt=job.attempt,
                payload=job.event.raw,
            )
            return False
        log_webhook(job.event.event_name, "queued", webhook_id=job.event.webhook_id, attempt=job.attempt)
        return True

    def _run_worker(self) -> None:
        while not self._stop_event.is_set():
            try:
                job = self._queue.get(timeout=0.5)
            except queue.Empty:
                continue
            try:
                self._process(job)
            finally:
                self._queue.task_done()

    def _process(self, job: _WebhookJob) -> None:
        db = self._session_factory()
        try:
            process_webhook_event(db, self._client, job.event)
        except TRANSIENT_ERRORS as exc:
            db.rollback()
            if job.attempt >= self._max_attempts:
                log_webhook(
                    job.event.event_name,
                    "processing_error",
                    webhook_id=job.event.webhook_id,
                    attempt=job.attempt,
                    error=str(exc),
                    payload=job.event.raw,
                )
                return
            log_webhook(
                job.event.event_name,
                "retry_scheduled",
                webhook_id=job.event.webhook_id,
                attempt=job.attempt,
                error=str(exc),
            )
            self._stop_event.wait(self._retry_backoff_seconds * job.attempt)
            self._enqueue(_WebhookJob(event=job.event, attempt=job.attempt + 1))
        except Exception as exc:  # noqa: BLE001
            db.rollback()
            logger.exception("Webhook processing failed webhook_id=%s", job.event.webhook_id)
            log_webhook(
                job.event.event_name,
                "processing_error",
                webhook_id=job.event.webhook_id,
                attempt=job.attempt,
                error=str(exc),
                payload=job.event.raw,
            )
        finally:
            db.close()
