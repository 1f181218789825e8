from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import select

from db_support import make_session_factory
from fieldops.models import AuditLog, NotificationJob, NotificationJobStatus
from fieldops.services.notifications import (
    EVENT_TICKET_CLOSED_PENDING,
    EVENT_TICKET_OPENED,
    EmailChannel,
    LoggingChannel,
    NotificationChannel,
    NotificationMessage,
    build_idempotency_key,
    build_message_for_job,
    enqueue_notification,
    send_pending_notifications,
)

NOW = datetime(2024, 3, 15, 6, 0, tzinfo=timezone.utc)


class _RecordingChannel(NotificationChannel):
    configured = True

    def __init__(self, *, sent: int = 1, error: Exception | None = None):
        self.sent = sent
        self.error = error
        self.messages: list[NotificationMessage] = []

    def send(self, message: NotificationMessage) -> dict[str, Any]:
        self.messages.append(message)
        if self.error is not None:
            raise self.error
        return {"mode": "test", "sent": self.sent}


class NotificationServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session_factory()()

    def tearDown(self) -> None:
        self.db.close()

    def _enqueue(self, *, event: str = EVENT_TICKET_OPENED, discriminator: str = "1", **kwargs) -> NotificationJob | None:
        job = enqueue_notification(
            self.db,
            entity_type="ticket",
            entity_id=42,
            event=event,
            payload={"ticket_id": 42, "title": "Printer jammed", "changed_by_id": 7, "comments": kwargs.pop("comments", None)},
            idempotency_key=build_idempotency_key(
                entity_type="ticket",
                entity_id=42,
                event=event,
                discriminator=discriminator,
            ),
            recipients=["ops@example.com"],
            scheduled_at_utc=kwargs.pop("scheduled_at_utc", NOW),
        )
        self.db.commit()
        return job

    def test_enqueue_is_idempotent(self) -> None:
        first = self._enqueue()
        second = self._enqueue()

        self.assertIsNotNone(first)
        self.assertIsNone(second)
        self.assertEqual(first.idempotency_key, "ticket:42:TICKET_OPENED:1")
        self.assertEqual(len(self.db.scalars(select(NotificationJob)).all()), 1)

    def test_messages_per_event(self) -> None:
        opened = build_message_for_job(self._enqueue())
        closing = build_message_for_job(
            self._enqueue(event=EVENT_TICKET_CLOSED_PENDING, discriminator="2", comments="Part swapped")
        )

        self.assertEqual(opened.subject, "Ticket #42 opened")
        self.assertEqual(opened.recipients, ["ops@example.com"])
        self.assertEqual(closing.subject, "Ticket #42 awaiting closure")
        self.assertIn("by user 7", closing.body)
        self.assertTrue(closing.body.endswith("Comments: Part swapped"))

    def test_due_job_is_sent_and_audited(self) -> None:
        job = self._enqueue()
        channel = _RecordingChannel()

        processed = send_pending_notifications(now_utc=NOW, db=self.db, channel=channel)

        self.assertEqual([item.id for item in processed], [job.id])
        self.assertEqual(processed[0].status, NotificationJobStatus.SENT)
        self.assertEqual(processed[0].attempts, 1)
        self.assertEqual(processed[0].payload["delivery"], {"mode": "test", "sent": 1})
        self.assertEqual(len(channel.messages), 1)
        actions = self.db.scalars(select(AuditLog.action)).all()
        self.assertEqual(actions, ["NOTIFICATION_JOB_SENT"])

    def test_future_jobs_wait(self) -> None:
        self._enqueue(scheduled_at_utc=NOW + timedelta(minutes=5))

        processed = send_pending_notifications(now_utc=NOW, db=self.db, channel=_RecordingChannel())

        self.assertEqual(processed, [])

    def test_failure_is_retried_with_backoff(self) -> None:
        self._enqueue()

        processed = send_pending_notifications(
            now_utc=NOW,
            db=self.db,
            channel=_RecordingChannel(error=RuntimeError("smtp down")),
        )

        job = processed[0]
        self.assertEqual(job.status, NotificationJobStatus.PENDING)
        self.assertEqual(job.attempts, 1)
        self.assertEqual(job.last_error, "smtp down")
        self.assertEqual(job.scheduled_at_utc, NOW + timedelta(minutes=2))
        audit = self.db.scalar(select(AuditLog))
        self.assertEqual(audit.action, "NOTIFICATION_JOB_FAILED")
        self.assertFalse(audit.success)

    def test_undelivered_result_counts_as_failure(self) -> None:
        self._enqueue()

        processed = send_pending_notifications(now_utc=NOW, db=self.db, channel=_RecordingChannel(sent=0))

        self.assertEqual(processed[0].status, NotificationJobStatus.PENDING)
        self.assertIn("mode=test", processed[0].last_error)

    def test_job_is_dead_lettered_after_max_attempts(self) -> None:
        job = self._enqueue()
        job.attempts = 4
        self.db.commit()

        processed = send_pending_notifications(
            now_utc=NOW,
            db=self.db,
            channel=_RecordingChannel(error=RuntimeError("still down")),
        )

        self.assertEqual(processed[0].status, NotificationJobStatus.FAILED)
        self.assertEqual(processed[0].attempts, 5)
        rerun = send_pending_notifications(now_utc=NOW + timedelta(days=1), db=self.db, channel=_RecordingChannel())
        self.assertEqual(rerun, [])


class EmailChannelTests(unittest.TestCase):
    def test_disabled_channel_reports_nothing_sent(self) -> None:
        channel = EmailChannel()
        channel.enabled = False

        result = channel.send(NotificationMessage(recipients=["a@example.com"], subject="s", body="b"))

        self.assertEqual(result["mode"], "disabled")
        self.assertEqual(result["sent"], 0)

    def test_enabled_channel_without_smtp_host_is_not_configured(self) -> None:
        channel = EmailChannel()
        channel.enabled = True
        channel.configured = False

        result = channel.send(NotificationMessage(recipients=["a@example.com"], subject="s", body="b"))

        self.assertEqual(result["mode"], "not_configured")

    def test_enabled_channel_without_recipients_skips(self) -> None:
        channel = EmailChannel()
        channel.enabled = True

        result = channel.send(NotificationMessage(recipients=[" "], subject="s", body="b"))

        self.assertEqual(result["mode"], "skipped_no_recipients")

    def test_logging_channel_counts_as_delivered(self) -> None:
        result = LoggingChannel().send(NotificationMessage(recipients=["ops@example.com"], subject="s", body="b"))

        self.assertEqual(result["mode"], "logged")
        self.assertEqual(result["sent"], 1)


if __name__ == "__main__":
    unittest.main()
