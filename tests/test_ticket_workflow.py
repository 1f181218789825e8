from __future__ import annotations

import unittest
from datetime import timedelta
from unittest.mock import patch

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError

from db_support import FakeGeocoder, FakePhotoStore, actor_for, add_user, add_zone, ist, make_session_factory
from fieldops.errors import (
    AuthorizationError,
    InvalidTransitionError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from fieldops.models import (
    AuditLog,
    DailyActivityLog,
    NotificationJob,
    OnsiteVisitEvent,
    Ticket,
    TicketFeedback,
    TicketLocationSnapshot,
    TicketStatus,
    TicketStatusHistory,
    UserRole,
)
from fieldops.services.photo_storage import PhotoUpload
from fieldops.services.tickets import (
    LocationInput,
    allowed_transitions_for,
    can_access_ticket,
    change_ticket_status,
    close_ticket,
    create_ticket,
    get_location_snapshots,
    get_ticket,
    get_ticket_history,
)

T0 = ist(2024, 3, 15, 9, 0)


class TicketWorkflowTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session_factory()()
        zone = add_zone(self.db, "North")
        self.admin = actor_for(add_user(self.db, "Admin One", role=UserRole.ADMIN))
        self.engineer = actor_for(add_user(self.db, "Field Engineer", zone_ids=(zone.id,)))
        self.other_engineer = actor_for(add_user(self.db, "Other Engineer"))
        self.zone_id = zone.id
        self.ticket = create_ticket(
            self.db,
            self.admin,
            title="  Printer jammed  ",
            zone_id=zone.id,
            assigned_to_id=self.engineer.id,
            now=T0,
        )

    def tearDown(self) -> None:
        self.db.close()

    def _advance(self, actor, status: TicketStatus, minutes: int, **kwargs):  # type: ignore[no-untyped-def]
        return change_ticket_status(
            self.db,
            actor,
            self.ticket.id,
            status=status,
            now=T0 + timedelta(minutes=minutes),
            **kwargs,
        )

    def _count(self, model) -> int:  # type: ignore[no-untyped-def]
        return int(self.db.scalar(select(func.count()).select_from(model)) or 0)

    def test_create_ticket_writes_open_history_audit_and_outbox_job(self) -> None:
        self.assertEqual(self.ticket.status, TicketStatus.OPEN)
        self.assertEqual(self.ticket.title, "Printer jammed")
        self.assertEqual(self.ticket.created_by_id, self.admin.id)
        self.assertEqual(self.ticket.owner_id, self.admin.id)

        history = get_ticket_history(self.db, self.admin, self.ticket.id)
        self.assertEqual(len(history), 1)
        self.assertEqual(history[0].status, TicketStatus.OPEN)
        self.assertIsNone(history[0].previous_status)

        actions = self.db.scalars(select(AuditLog.action)).all()
        self.assertIn("TICKET_CREATED", actions)
        job = self.db.scalar(select(NotificationJob))
        self.assertIsNotNone(job)
        self.assertEqual(job.event, "TICKET_OPENED")

    def test_blank_title_is_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            create_ticket(self.db, self.admin, title="   ", now=T0)

    def test_transition_updates_time_metrics_and_history(self) -> None:
        first = self._advance(self.admin, TicketStatus.ASSIGNED, 90)
        second = self._advance(self.engineer, TicketStatus.IN_PROGRESS, 120)

        self.assertEqual(first.previous_status, TicketStatus.OPEN)
        self.assertEqual(first.history.time_in_status, 90)
        self.assertEqual(first.history.total_time_open, 90)
        self.assertEqual(second.history.time_in_status, 30)
        self.assertEqual(second.history.total_time_open, 120)
        self.assertEqual(second.ticket.status, TicketStatus.IN_PROGRESS)
        self.assertEqual(second.ticket.last_status_change, T0 + timedelta(minutes=120))

        statuses = [row.status for row in get_ticket_history(self.db, self.engineer, self.ticket.id)]
        self.assertEqual(statuses, [TicketStatus.OPEN, TicketStatus.ASSIGNED, TicketStatus.IN_PROGRESS])

    def test_transition_logs_a_ticket_work_activity(self) -> None:
        self._advance(self.admin, TicketStatus.ASSIGNED, 5)

        activity = self.db.scalar(select(DailyActivityLog).where(DailyActivityLog.ticket_id == self.ticket.id))
        self.assertIsNotNone(activity)
        self.assertEqual(activity.title, f"Ticket #{self.ticket.id}: OPEN to ASSIGNED")
        self.assertEqual(activity.extra["new_status"], "ASSIGNED")
        self.assertEqual(activity.duration, 0)

    def test_invalid_transition_changes_nothing(self) -> None:
        with self.assertRaises(InvalidTransitionError):
            self._advance(self.admin, TicketStatus.IN_PROGRESS, 10)

        self.db.expire_all()
        self.assertEqual(get_ticket(self.db, self.admin, self.ticket.id).status, TicketStatus.OPEN)
        self.assertEqual(self._count(TicketStatusHistory), 1)

    def test_unknown_status_is_a_validation_error(self) -> None:
        with self.assertRaises(ValidationError) as exc:
            self._advance(self.admin, "TELEPORTED", 10)  # type: ignore[arg-type]
        self.assertEqual(exc.exception.code, "INVALID_STATUS")

    def test_onsite_start_records_location_snapshot_and_visit_timestamp(self) -> None:
        geocoder = FakeGeocoder("MG Road, Bengaluru")
        self._advance(self.admin, TicketStatus.ASSIGNED, 1)
        self._advance(self.engineer, TicketStatus.ONSITE_VISIT, 2)
        self._advance(self.engineer, TicketStatus.ONSITE_VISIT_PLANNED, 3)
        result = self._advance(
            self.engineer,
            TicketStatus.ONSITE_VISIT_STARTED,
            4,
            location=LocationInput(latitude=12.9716, longitude=77.5946, accuracy=20.0),
            geocoder=geocoder,
        )

        ticket = result.ticket
        self.assertEqual(ticket.visit_started_at, T0 + timedelta(minutes=4))
        self.assertEqual(ticket.onsite_start_location["address"], "MG Road, Bengaluru")
        self.assertEqual(result.history.latitude, 12.9716)
        self.assertEqual(result.history.location_source, "gps")
        self.assertIn("Source: Accurate (20m)", result.history.notes)

        snapshots = get_location_snapshots(self.db, self.engineer, self.ticket.id)
        self.assertEqual(len(snapshots), 1)
        self.assertEqual(snapshots[0].event, OnsiteVisitEvent.STARTED)
        self.assertEqual(snapshots[0].status, TicketStatus.ONSITE_VISIT_STARTED)

    def test_low_accuracy_location_is_kept_as_snapshot_only(self) -> None:
        self._advance(self.admin, TicketStatus.ASSIGNED, 1)
        result = self._advance(
            self.engineer,
            TicketStatus.IN_PROGRESS,
            2,
            location=LocationInput(latitude=12.0, longitude=77.0, accuracy=450.0),
        )

        self.assertIsNone(result.history.latitude)
        self.assertIn("Source: Low accuracy (450m)", result.history.notes)
        self.assertEqual(self._count(TicketLocationSnapshot), 1)
        snapshot = self.db.scalar(select(TicketLocationSnapshot))
        self.assertIsNone(snapshot.event)
        self.assertEqual(snapshot.address, "12.0, 77.0")

    def test_failed_photo_storage_keeps_metadata(self) -> None:
        self._advance(self.admin, TicketStatus.ASSIGNED, 1)
        result = self._advance(
            self.engineer,
            TicketStatus.IN_PROGRESS,
            2,
            comments="Started diagnosis",
            photos=[PhotoUpload(data="aGVsbG8=", filename="before.jpg")],
            photo_store=FakePhotoStore(fail=True),
        )

        self.assertEqual(len(result.history.photos), 1)
        self.assertTrue(result.history.photos[0]["metadata_only"])
        self.assertTrue(result.history.notes.startswith("Started diagnosis"))
        self.assertIn("storage failed, metadata only", result.history.notes)

    def test_outbox_failure_rolls_the_transition_back(self) -> None:
        self._advance(self.admin, TicketStatus.ASSIGNED, 1)
        self._advance(self.engineer, TicketStatus.IN_PROGRESS, 2)

        with (
            patch(
                "fieldops.services.tickets.enqueue_notification",
                side_effect=SQLAlchemyError("outbox unavailable"),
            ),
            self.assertLogs("fieldops.tickets", level="ERROR"),
            self.assertRaises(PersistenceError),
        ):
            self._advance(self.engineer, TicketStatus.CLOSED_PENDING, 3)

        self.db.expire_all()
        self.assertEqual(get_ticket(self.db, self.admin, self.ticket.id).status, TicketStatus.IN_PROGRESS)
        pending_rows = self.db.scalars(
            select(TicketStatusHistory).where(TicketStatusHistory.status == TicketStatus.CLOSED_PENDING)
        ).all()
        self.assertEqual(pending_rows, [])
        self.assertEqual(self.db.scalars(select(NotificationJob.event)).all(), ["TICKET_OPENED"])

    def test_outbox_job_commits_with_the_transition(self) -> None:
        self._advance(self.admin, TicketStatus.ASSIGNED, 1)
        self._advance(self.engineer, TicketStatus.IN_PROGRESS, 2)
        result = self._advance(self.engineer, TicketStatus.CLOSED_PENDING, 3)

        job = self.db.scalar(select(NotificationJob).where(NotificationJob.event == "TICKET_CLOSED_PENDING"))
        self.assertIsNotNone(job)
        self.assertTrue(job.idempotency_key.endswith(f":{result.history.id}"))

    def test_activity_log_failure_keeps_the_committed_transition(self) -> None:
        self._advance(self.admin, TicketStatus.ASSIGNED, 1)
        self._advance(self.engineer, TicketStatus.IN_PROGRESS, 2)
        activities_before = self._count(DailyActivityLog)

        with (
            patch("fieldops.services.tickets.DailyActivityLog", side_effect=RuntimeError("activity store down")),
            self.assertLogs("fieldops.tickets", level="ERROR") as logs,
        ):
            self._advance(self.engineer, TicketStatus.CLOSED_PENDING, 3)

        self.assertIn("ticket_status_activity_log_failed", logs.output[0])
        self.db.expire_all()
        self.assertEqual(get_ticket(self.db, self.admin, self.ticket.id).status, TicketStatus.CLOSED_PENDING)
        statuses = [row.status for row in get_ticket_history(self.db, self.admin, self.ticket.id)]
        self.assertEqual(statuses[-1], TicketStatus.CLOSED_PENDING)
        self.assertEqual(self._count(DailyActivityLog), activities_before)
        self.assertIn("TICKET_CLOSED_PENDING", self.db.scalars(select(NotificationJob.event)).all())

    def test_photos_are_not_stored_when_the_locked_recheck_fails(self) -> None:
        self._advance(self.admin, TicketStatus.ASSIGNED, 1)
        store = FakePhotoStore()

        def cancel_concurrently(*args, **kwargs):  # type: ignore[no-untyped-def]
            self.db.execute(
                update(Ticket).where(Ticket.id == self.ticket.id).values(status=TicketStatus.CANCELLED)
            )
            return None

        with (
            patch("fieldops.services.tickets._resolve_location", side_effect=cancel_concurrently),
            self.assertRaises(InvalidTransitionError),
        ):
            self._advance(
                self.engineer,
                TicketStatus.IN_PROGRESS,
                2,
                photos=[PhotoUpload(data="aGVsbG8=", filename="before.jpg")],
                photo_store=store,
            )

        self.assertEqual(store.calls, [])

    def test_closure_requires_the_right_roles(self) -> None:
        self._advance(self.admin, TicketStatus.ASSIGNED, 1)
        self._advance(self.engineer, TicketStatus.IN_PROGRESS, 2)

        with self.assertRaises(AuthorizationError):
            self._advance(self.admin, TicketStatus.CLOSED_PENDING, 3)

        self._advance(self.engineer, TicketStatus.CLOSED_PENDING, 4)
        with self.assertRaises(AuthorizationError):
            close_ticket(self.db, self.engineer, self.ticket.id, now=T0 + timedelta(minutes=5))

        result = close_ticket(
            self.db,
            self.admin,
            self.ticket.id,
            rating=5,
            feedback="Quick fix",
            now=T0 + timedelta(minutes=6),
        )
        self.assertEqual(result.ticket.status, TicketStatus.CLOSED)
        feedback = self.db.scalar(select(TicketFeedback))
        self.assertEqual(feedback.rating, 5)
        self.assertEqual(feedback.submitted_by_id, self.admin.id)

        events = set(self.db.scalars(select(NotificationJob.event)).all())
        self.assertEqual(events, {"TICKET_OPENED", "TICKET_CLOSED_PENDING"})

    def test_feedback_rules(self) -> None:
        self._advance(self.admin, TicketStatus.ASSIGNED, 1)
        with self.assertRaises(ValidationError):
            self._advance(self.engineer, TicketStatus.IN_PROGRESS, 2, rating=4)

        self._advance(self.engineer, TicketStatus.IN_PROGRESS, 3)
        self._advance(self.engineer, TicketStatus.CLOSED_PENDING, 4)
        with self.assertRaises(ValidationError):
            close_ticket(self.db, self.admin, self.ticket.id, feedback="No rating", now=T0 + timedelta(minutes=5))
        self.assertEqual(self._count(TicketFeedback), 0)

    def test_access_rules(self) -> None:
        self.assertTrue(can_access_ticket(self.engineer, self.ticket))
        self.assertFalse(can_access_ticket(self.other_engineer, self.ticket))

        with self.assertRaises(AuthorizationError) as exc:
            get_ticket(self.db, self.other_engineer, self.ticket.id)
        self.assertEqual(exc.exception.code, "TICKET_ACCESS_DENIED")

        with self.assertRaises(NotFoundError):
            get_ticket(self.db, self.admin, 9999)

    def test_zone_user_cannot_create_outside_their_zones(self) -> None:
        zone_user = actor_for(add_user(self.db, "Zone Desk", role=UserRole.ZONE_USER, zone_ids=(self.zone_id,)))

        ticket = create_ticket(self.db, zone_user, title="Inside", zone_id=self.zone_id, now=T0)
        self.assertEqual(ticket.zone_id, self.zone_id)
        with self.assertRaises(AuthorizationError):
            create_ticket(self.db, zone_user, title="Outside", zone_id=self.zone_id + 100, now=T0)

    def test_allowed_transitions_for_actor(self) -> None:
        payload = allowed_transitions_for(self.db, self.engineer, self.ticket.id)

        self.assertEqual(payload["current"], "OPEN")
        self.assertEqual(set(payload["allowed"]), {"ASSIGNED", "CANCELLED", "PENDING"})


if __name__ == "__main__":
    unittest.main()
