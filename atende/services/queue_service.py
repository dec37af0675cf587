from __future__ import annotations

import uuid
from datetime import datetime, timedelta

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from atende.database import utcnow
from atende.logging_config import get_logger
from atende.models import InboundJob
from atende.schemas.job import InboundJobPayload
from atende.services.alert_service import alert_error

logger = get_logger("queue_service")

PENDING = "PENDING"
PROCESSING = "PROCESSING"
DONE = "DONE"
FAILED = "FAILED"

MAX_ERROR_CHARS = 2000


def build_dedupe_key(payload: InboundJobPayload) -> str:
    message_id = (payload.messageData.messageId or "").strip()
    if message_id:
        return f"{payload.session}:{message_id}"
    return f"{payload.session}:{uuid.uuid4()}"


def enqueue_job(db: Session, payload: InboundJobPayload) -> InboundJob | None:
    """Queue an inbound message; returns None if the gateway already delivered it."""
    job = InboundJob(
        session_name=payload.session,
        dedupe_key=build_dedupe_key(payload),
        payload=payload.dump(),
        status=PENDING,
        attempts=0,
    )
    try:
        with db.begin_nested():
            db.add(job)
    except IntegrityError:
        logger.info("Duplicate inbound message skipped", extra={"context": {"dedupe_key": job.dedupe_key}})
        return None
    db.commit()
    return job


def claim_jobs(db: Session, *, limit: int = 1, now: datetime | None = None) -> list[InboundJob]:
    """Lock due jobs (SKIP LOCKED), mark them PROCESSING and count the attempt."""
    now = now or utcnow()
    jobs = (
        db.query(InboundJob)
        .filter(
            InboundJob.status == PENDING,
            (InboundJob.next_attempt_at.is_(None)) | (InboundJob.next_attempt_at <= now),
        )
        .order_by(InboundJob.created_at)
        .limit(limit)
        .with_for_update(skip_locked=True)
        .all()
    )
    for job in jobs:
        job.status = PROCESSING
        job.attempts = (job.attempts or 0) + 1
        job.updated_at = now
    db.commit()
    return jobs


def complete_job(db: Session, job_id) -> None:
    db.query(InboundJob).filter(InboundJob.id == job_id).update(
        {"status": DONE, "last_error": None, "updated_at": utcnow()},
        synchronize_session=False,
    )
    db.commit()


def fail_job(
    db: Session,
    job_id,
    error: str,
    *,
    max_attempts: int,
    backoff_seconds: float,
) -> str:
    """Reschedule with exponential backoff, or dead-letter once attempts run out."""
    job = db.get(InboundJob, job_id)
    if job is None:
        return FAILED
    now = utcnow()
    job.last_error = (error or "")[:MAX_ERROR_CHARS]
    job.updated_at = now
    if (job.attempts or 0) >= max_attempts:
        job.status = FAILED
        db.commit()
        logger.error(
            "Inbound job dead-lettered",
            extra={"context": {"job_id": str(job_id), "attempts": job.attempts, "error": job.last_error}},
        )
        alert_error(
            "Inbound job dead-lettered",
            {"job_id": str(job_id), "session": job.session_name, "error": job.last_error[:200]},
        )
        return FAILED

    delay = backoff_seconds * (2 ** max((job.attempts or 1) - 1, 0))
    job.status = PENDING
    job.next_attempt_at = now + timedelta(seconds=delay)
    db.commit()
    logger.warning(
        "Inbound job rescheduled",
        extra={"context": {"job_id": str(job_id), "attempts": job.attempts, "delay": delay}},
    )
    return PENDING


def requeue_stale_jobs(db: Session, *, visibility_timeout_seconds: int) -> int:
    """Return PROCESSING jobs abandoned by a crashed worker to the queue."""
    cutoff = utcnow() - timedelta(seconds=visibility_timeout_seconds)
    count = (
        db.query(InboundJob)
        .filter(InboundJob.status == PROCESSING, InboundJob.updated_at < cutoff)
        .update({"status": PENDING, "updated_at": utcnow()}, synchronize_session=False)
    )
    db.commit()
    if count:
        logger.warning("Requeued stale inbound jobs", extra={"context": {"count": count}})
    return count


def queue_stats(db: Session) -> dict:
    rows = db.query(InboundJob.status, func.count(InboundJob.id)).group_by(InboundJob.status).all()
    stats = {PENDING: 0, PROCESSING: 0, DONE: 0, FAILED: 0}
    stats.update({status: count for status, count in rows})
    return stats
