from __future__ import annotations

import logging
import smtplib
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from email.message import EmailMessage
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from fieldops.audit import log_audit
from fieldops.db import SessionLocal
from fieldops.models import NotificationJob, NotificationJobStatus
from fieldops.settings import get_notification_recipients, get_settings

logger = logging.getLogger("fieldops.notifications")

EVENT_TICKET_OPENED = "TICKET_OPENED"
EVENT_TICKET_CLOSED_PENDING = "TICKET_CLOSED_PENDING"


@dataclass(frozen=True, slots=True)
class NotificationMessage:
    recipients: list[str]
    subject: str
    body: str


class NotificationChannel:
    configured: bool = False

    def send(self, message: NotificationMessage) -> dict[str, Any]:
        raise NotImplementedError


class LoggingChannel(NotificationChannel):
    configured = True

    def send(self, message: NotificationMessage) -> dict[str, Any]:
        logger.info(
            "notification_logged",
            extra={
                "subject": message.subject,
                "recipients": list(message.recipients),
                "body": message.body,
            },
        )
        return {"mode": "logged", "sent": 1, "recipients": list(message.recipients)}


class EmailChannel(NotificationChannel):
    def __init__(self) -> None:
        settings = get_settings()
        self.enabled = bool(settings.notification_email_enabled)
        self.smtp_host = (settings.smtp_host or "").strip()
        self.smtp_port = int(settings.smtp_port or 587)
        self.smtp_user = (settings.smtp_user or "").strip()
        self.smtp_pass = settings.smtp_pass or ""
        self.smtp_from = (settings.smtp_from or "").strip()
        self.smtp_use_tls = bool(settings.smtp_use_tls)
        self.configured = bool(self.smtp_host and self.smtp_from)

    def send(self, message: NotificationMessage) -> dict[str, Any]:
        recipients = [item.strip() for item in message.recipients if item and item.strip()]
        if not self.enabled:
            logger.info(
                "email_channel_disabled",
                extra={"subject": message.subject, "recipient_count": len(recipients)},
            )
            return {"mode": "disabled", "sent": 0, "recipients": recipients}
        if not recipients:
            logger.info("email_channel_skip_no_recipients", extra={"subject": message.subject})
            return {"mode": "skipped_no_recipients", "sent": 0, "recipients": []}
        if not self.configured:
            logger.info(
                "email_channel_not_configured",
                extra={"subject": message.subject, "recipients": recipients},
            )
            return {"mode": "not_configured", "sent": 0, "recipients": recipients}

        email_message = EmailMessage()
        email_message["From"] = self.smtp_from
        email_message["To"] = ", ".join(recipients)
        email_message["Subject"] = message.subject
        email_message.set_content(message.body)

        with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=15) as smtp_client:
            if self.smtp_use_tls:
                smtp_client.starttls()
            if self.smtp_user:
                smtp_client.login(self.smtp_user, self.smtp_pass)
            smtp_client.send_message(email_message)
        return {"mode": "sent", "sent": len(recipients), "recipients": recipients}


def get_default_channel() -> NotificationChannel:
    if get_settings().notification_email_enabled:
        return EmailChannel()
    return LoggingChannel()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def build_idempotency_key(*, entity_type: str, entity_id: str | int, event: str, discriminator: str) -> str:
    return f"{entity_type}:{entity_id}:{event}:{discriminator}"


def enqueue_notification(
    db: Session,
    *,
    entity_type: str,
    entity_id: str | int,
    event: str,
    payload: dict[str, Any],
    idempotency_key: str,
    recipients: list[str] | None = None,
    scheduled_at_utc: datetime | None = None,
) -> NotificationJob | None:
    """Stage an outbox job unless one with the same key already exists; the caller commits."""
    existing = db.scalar(select(NotificationJob.id).where(NotificationJob.idempotency_key == idempotency_key))
    if existing is not None:
        return None

    job = NotificationJob(
        entity_type=entity_type,
        entity_id=str(entity_id),
        event=event,
        payload=payload,
        recipients=recipients if recipients is not None else get_notification_recipients(),
        scheduled_at_utc=scheduled_at_utc or _utcnow(),
        status=NotificationJobStatus.PENDING,
        attempts=0,
        last_error=None,
        idempotency_key=idempotency_key,
    )
    db.add(job)
    return job


def build_message_for_job(job: NotificationJob) -> NotificationMessage:
    payload = job.payload if isinstance(job.payload, dict) else {}
    title = payload.get("title") or "-"
    if job.event == EVENT_TICKET_OPENED:
        subject = f"Ticket #{job.entity_id} opened"
        body = f"Ticket #{job.entity_id} ({title}) was opened and is waiting for assignment."
    elif job.event == EVENT_TICKET_CLOSED_PENDING:
        subject = f"Ticket #{job.entity_id} awaiting closure"
        body = (
            f"Ticket #{job.entity_id} ({title}) was marked CLOSED_PENDING"
            f" by user {payload.get('changed_by_id', '-')} and needs administrator review."
        )
    else:
        subject = f"{job.entity_type} #{job.entity_id}: {job.event}"
        body = f"Event {job.event} on {job.entity_type} #{job.entity_id}."
    comments = payload.get("comments")
    if comments:
        body = f"{body}\n\nComments: {comments}"
    return NotificationMessage(recipients=list(job.recipients or []), subject=subject, body=body)


def _claim_due_pending_jobs(session: Session, *, now_utc: datetime, limit: int) -> list[NotificationJob]:
    stmt = (
        select(NotificationJob)
        .where(
            NotificationJob.status == NotificationJobStatus.PENDING,
            NotificationJob.scheduled_at_utc <= now_utc,
        )
        .order_by(NotificationJob.scheduled_at_utc.asc(), NotificationJob.id.asc())
        .limit(limit)
        .with_for_update(skip_locked=True)
    )
    jobs = list(session.scalars(stmt).all())
    for job in jobs:
        job.status = NotificationJobStatus.SENDING
    session.commit()
    return jobs


def _mark_job_sent(session: Session, *, job: NotificationJob, delivery: dict[str, Any]) -> NotificationJob:
    payload = dict(job.payload) if isinstance(job.payload, dict) else {}
    payload["delivery"] = delivery
    job.payload = payload
    job.attempts = (job.attempts or 0) + 1
    job.status = NotificationJobStatus.SENT
    job.last_error = None
    session.commit()
    return job


def _mark_job_failure(
    session: Session,
    *,
    job: NotificationJob,
    error: Exception,
    now_utc: datetime,
    max_attempts: int,
) -> NotificationJob:
    next_attempts = (job.attempts or 0) + 1
    job.attempts = next_attempts
    job.last_error = str(error)[:4000]
    if next_attempts < max_attempts:
        job.status = NotificationJobStatus.PENDING
        job.scheduled_at_utc = now_utc + timedelta(minutes=2**next_attempts)
    else:
        # Dead-letter: kept for inspection, never picked up again.
        job.status = NotificationJobStatus.FAILED
    session.commit()
    return job


def send_pending_notifications(
    limit: int = 100,
    *,
    now_utc: datetime | None = None,
    db: Session | None = None,
    channel: NotificationChannel | None = None,
) -> list[NotificationJob]:
    if db is None:
        with SessionLocal() as managed_db:
            return send_pending_notifications(limit=limit, now_utc=now_utc, db=managed_db, channel=channel)

    session = db
    reference_utc = now_utc or _utcnow()
    max_attempts = max(1, get_settings().notification_max_attempts)
    active_channel = channel or get_default_channel()

    claimed_jobs = _claim_due_pending_jobs(session, now_utc=reference_utc, limit=max(1, limit))
    processed: list[NotificationJob] = []
    for job in claimed_jobs:
        try:
            result = active_channel.send(build_message_for_job(job))
            if int(result.get("sent", 0)) <= 0:
                raise RuntimeError(f"Notification delivery failed (mode={result.get('mode')})")
        except Exception as exc:
            session.rollback()
            failed = _mark_job_failure(
                session,
                job=job,
                error=exc,
                now_utc=reference_utc,
                max_attempts=max_attempts,
            )
            processed.append(failed)
            logger.warning(
                "notification_job_failed",
                extra={"job_id": failed.id, "attempts": failed.attempts, "status": failed.status.value},
            )
            log_audit(
                session,
                actor_id="notification_runner",
                action="NOTIFICATION_JOB_FAILED",
                success=False,
                entity_type="notification_job",
                entity_id=failed.id,
                details={
                    "event": failed.event,
                    "attempts": failed.attempts,
                    "status": failed.status.value,
                    "error": failed.last_error,
                },
            )
            continue

        sent = _mark_job_sent(session, job=job, delivery={"mode": result.get("mode"), "sent": result.get("sent")})
        processed.append(sent)
        log_audit(
            session,
            actor_id="notification_runner",
            action="NOTIFICATION_JOB_SENT",
            success=True,
            entity_type="notification_job",
            entity_id=sent.id,
            details={"event": sent.event, "attempts": sent.attempts, "idempotency_key": sent.idempotency_key},
        )

    return processed
