"""
Worker loop that delivers queued notification jobs.

Each job is one email or one downstream webhook call. Failed deliveries are
re-enqueued until ``notification_max_attempts`` is reached, then marked FAILED.
"""

from __future__ import annotations

import logging
import time
from typing import Optional

from dispatch_backend.config import get_settings
from dispatch_backend.db import DbClient, NotificationJob, NotificationStatus
from dispatch_backend.dependencies import (
    get_db_client,
    get_email_client,
    get_queue_client,
    get_webhook_forwarder,
)
from dispatch_backend.errors import NotificationError
from dispatch_backend.notifications import EmailClient, WebhookForwarder
from dispatch_backend.queue import JobQueue

logger = logging.getLogger(__name__)

CHANNEL_EMAIL = "email"
CHANNEL_WEBHOOK = "webhook"


def deliver(
    job: NotificationJob,
    email_client: EmailClient,
    forwarder: WebhookForwarder,
) -> None:
    if job.channel == CHANNEL_EMAIL:
        email_client.send_email(
            to=job.target,
            subject=job.payload.get("subject", ""),
            html_body=job.payload.get("html_body", ""),
        )
    elif job.channel == CHANNEL_WEBHOOK:
        forwarder.forward(job.target, job.payload)
    else:
        raise NotificationError(f"Unknown notification channel: {job.channel}")


def process_job(
    job: NotificationJob,
    db: DbClient,
    queue: JobQueue,
    email_client: EmailClient,
    forwarder: WebhookForwarder,
    max_attempts: Optional[int] = None,
) -> NotificationStatus:
    """
    Deliver a single job and record the outcome. Returns the new status.
    """
    if max_attempts is None:
        max_attempts = get_settings().notification_max_attempts

    attempts = job.attempts + 1
    db.update_notification_job(
        job.job_id, status=NotificationStatus.SENDING, attempts=attempts
    )
    try:
        deliver(job, email_client, forwarder)
    except NotificationError as exc:
        return _record_failure(job, db, queue, attempts, max_attempts, str(exc))
    except Exception as exc:
        logger.exception("[%s] Unexpected error delivering %s", job.job_id, job.channel)
        return _record_failure(
            job, db, queue, attempts, max_attempts, f"{type(exc).__name__}: {exc}"
        )

    logger.info("[%s] %s delivered to %s", job.job_id, job.channel, job.target)
    db.update_notification_job(job.job_id, status=NotificationStatus.SENT)
    return NotificationStatus.SENT


def _record_failure(
    job: NotificationJob,
    db: DbClient,
    queue: JobQueue,
    attempts: int,
    max_attempts: int,
    error: str,
) -> NotificationStatus:
    if attempts >= max_attempts:
        logger.error(
            "[%s] %s to %s failed permanently after %d attempts: %s",
            job.job_id,
            job.channel,
            job.target,
            attempts,
            error,
        )
        db.update_notification_job(
            job.job_id, status=NotificationStatus.FAILED, last_error=error
        )
        queue.dead_letter(job.job_id)
        return NotificationStatus.FAILED
    logger.warning(
        "[%s] %s to %s failed (attempt %d/%d), requeueing: %s",
        job.job_id,
        job.channel,
        job.target,
        attempts,
        max_attempts,
        error,
    )
    db.update_notification_job(
        job.job_id, status=NotificationStatus.WAITING, last_error=error
    )
    queue.enqueue(job.job_id)
    return NotificationStatus.WAITING


def process_next(
    db: Optional[DbClient] = None,
    queue: Optional[JobQueue] = None,
    email_client: Optional[EmailClient] = None,
    forwarder: Optional[WebhookForwarder] = None,
    *,
    block: bool = True,
    timeout: Optional[int] = None,
) -> bool:
    """
    Fetch and process one job from the queue. Returns True if processed.
    """
    db = db or get_db_client()
    queue = queue or get_queue_client()
    email_client = email_client or get_email_client()
    forwarder = forwarder or get_webhook_forwarder()

    job_id = queue.dequeue(block=block, timeout=timeout)
    if not job_id:
        return False

    job = db.get_notification_job(job_id)
    if not job:
        logger.warning("Received job_id %s from queue but no DB record found", job_id)
        return False
    if job.status in (NotificationStatus.SENT, NotificationStatus.FAILED):
        logger.info("[%s] Skipping job already %s", job_id, job.status.name)
        return False

    process_job(job, db, queue, email_client, forwarder)
    return True


def run_loop(poll_interval_seconds: float = 2.0) -> None:
    """
    Polling loop that blocks on the queue. Intended to be run under systemd/supervisor.
    """
    db = get_db_client()
    queue = get_queue_client()
    email_client = get_email_client()
    forwarder = get_webhook_forwarder()
    while True:
        processed = process_next(
            db,
            queue,
            email_client,
            forwarder,
            block=True,
            timeout=int(poll_interval_seconds),
        )
        if not processed:
            time.sleep(poll_interval_seconds)


if __name__ == "__main__":
    logging.basicConfig(level=get_settings().log_level)
    run_loop()
