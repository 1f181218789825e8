from __future__ import annotations

import unittest
from unittest.mock import patch

from db_support import FakePhotoStore, actor_for, add_user, ist, make_session_factory
from fieldops.errors import ConflictError, NotFoundError, ValidationError
from fieldops.models import ActivityStageName, ActivityType, UserRole
from fieldops.services.activities import (
    admin_add_activity_log,
    create_activity,
    create_stage,
    end_activity,
    end_stage,
    get_stage_template,
    list_activities,
    list_stages,
)
from fieldops.services.attendance import check_in
from fieldops.services.photo_storage import PhotoUpload

S = ActivityStageName


class StageTemplateTests(unittest.TestCase):
    def test_known_type_returns_its_template(self) -> None:
        template = get_stage_template("installation")

        self.assertEqual(template["activity_type"], "INSTALLATION")
        self.assertEqual(len(template["stages"]), 10)
        self.assertEqual(template["stages"][0]["stage"], "STARTED")
        self.assertEqual(template["stages"][-1]["stage"], "COMPLETED")

    def test_optional_steps_are_marked(self) -> None:
        stages = {item["stage"]: item["required"] for item in get_stage_template("SPARE_REPLACEMENT")["stages"]}

        self.assertFalse(stages["CUSTOMER_HANDOVER"])
        self.assertTrue(stages["EXECUTION"])

    def test_unknown_type_falls_back_to_default(self) -> None:
        template = get_stage_template("TRAVEL")

        self.assertEqual(
            [item["stage"] for item in template["stages"]],
            ["STARTED", "TRAVELING", "ARRIVED", "WORK_IN_PROGRESS", "COMPLETED"],
        )

    def test_returned_template_is_a_copy(self) -> None:
        get_stage_template("DEFAULT")["stages"][0]["required"] = False

        self.assertTrue(get_stage_template("DEFAULT")["stages"][0]["required"])


class ActivityStageTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session_factory()()
        self.engineer = actor_for(add_user(self.db, "Asha Rao"))
        self.colleague = actor_for(add_user(self.db, "Vikram Shah"))
        self.admin = actor_for(add_user(self.db, "Admin", role=UserRole.ADMIN))
        self.attendance = check_in(self.db, self.engineer, latitude=12.9, longitude=77.6, now=ist(2024, 3, 15, 9, 0))
        self.activity = create_activity(
            self.db,
            self.engineer,
            activity_type=ActivityType.SPARE_REPLACEMENT,
            title="Replace fan",
            metadata={"asset": "FAN-22"},
            now=ist(2024, 3, 15, 10, 0),
        )

    def tearDown(self) -> None:
        self.db.close()

    def _stage(self, stage: ActivityStageName, hour: int, minute: int = 0, **kwargs):  # type: ignore[no-untyped-def]
        return create_stage(
            self.db,
            self.engineer,
            self.activity.id,
            stage=stage,
            now=ist(2024, 3, 15, hour, minute),
            **kwargs,
        )

    def test_activity_requires_todays_check_in(self) -> None:
        with self.assertRaises(ValidationError) as exc:
            create_activity(
                self.db,
                self.colleague,
                activity_type=ActivityType.MEETING,
                title="Sync",
                now=ist(2024, 3, 15, 10, 0),
            )
        self.assertEqual(exc.exception.code, "CHECK_IN_REQUIRED")

        with self.assertRaises(ValidationError) as exc:
            create_activity(
                self.db,
                self.engineer,
                activity_type=ActivityType.MEETING,
                title="Sync",
                now=ist(2024, 3, 16, 10, 0),
            )
        self.assertEqual(exc.exception.code, "CHECK_IN_REQUIRED")

    def test_activity_keeps_metadata(self) -> None:
        self.assertEqual(self.activity.extra, {"asset": "FAN-22"})
        self.assertIsNone(self.activity.end_time)

    def test_new_stage_closes_the_previous_one(self) -> None:
        started = self._stage(S.STARTED, 10, 0)
        traveling = self._stage(S.TRAVELING, 10, 20)

        self.assertEqual(started.closed_stage_ids, [])
        self.assertEqual(traveling.closed_stage_ids, [started.stage.id])
        self.assertEqual(started.stage.end_time, ist(2024, 3, 15, 10, 20))
        self.assertEqual(started.stage.duration, 20)
        self.assertIsNone(traveling.stage.end_time)

        open_stages = [item for item in list_stages(self.db, self.engineer, self.activity.id) if item.end_time is None]
        self.assertEqual([item.id for item in open_stages], [traveling.stage.id])

    def test_completed_stage_closes_the_activity(self) -> None:
        self._stage(S.STARTED, 10, 0)
        completed = self._stage(S.COMPLETED, 11, 0)

        self.assertTrue(completed.activity_closed)
        self.assertEqual(completed.stage.end_time, ist(2024, 3, 15, 11, 0))
        self.assertEqual(completed.stage.duration, 0)
        self.assertEqual(completed.activity.end_time, ist(2024, 3, 15, 11, 0))
        self.assertEqual(completed.activity.duration, 60)

        with self.assertRaises(ConflictError) as exc:
            self._stage(S.TESTING, 11, 5)
        self.assertEqual(exc.exception.code, "ACTIVITY_CLOSED")

    def test_concurrent_stage_loses_on_the_open_stage_index(self) -> None:
        started = self._stage(S.STARTED, 10, 0)

        with (
            patch("fieldops.services.activities._open_stages", return_value=[]),
            self.assertRaises(ConflictError) as exc,
        ):
            self._stage(S.TRAVELING, 10, 20)

        self.assertEqual(exc.exception.code, "STAGE_ALREADY_OPEN")
        self.db.expire_all()
        open_stages = [item for item in list_stages(self.db, self.engineer, self.activity.id) if item.end_time is None]
        self.assertEqual([item.id for item in open_stages], [started.stage.id])

    def test_ending_the_last_open_stage_closes_the_activity(self) -> None:
        started = self._stage(S.STARTED, 10, 0)

        change = end_stage(self.db, self.engineer, self.activity.id, started.stage.id, now=ist(2024, 3, 15, 10, 45))

        self.assertTrue(change.activity_closed)
        self.assertEqual(change.stage.duration, 45)
        self.assertEqual(change.activity.end_time, ist(2024, 3, 15, 10, 45))

        with self.assertRaises(ConflictError) as exc:
            end_stage(self.db, self.engineer, self.activity.id, started.stage.id, now=ist(2024, 3, 15, 10, 50))
        self.assertEqual(exc.exception.code, "STAGE_ALREADY_CLOSED")

    def test_unknown_stage_is_not_found(self) -> None:
        with self.assertRaises(NotFoundError) as exc:
            end_stage(self.db, self.engineer, self.activity.id, 999, now=ist(2024, 3, 15, 10, 50))
        self.assertEqual(exc.exception.code, "STAGE_NOT_FOUND")

    def test_stage_photos_are_stored(self) -> None:
        store = FakePhotoStore()

        change = self._stage(
            S.ARRIVED,
            10,
            30,
            photos=[PhotoUpload(data="aGVsbG8=", filename="site.jpg")],
            photo_store=store,
        )

        self.assertEqual(len(change.stage.photos), 1)
        self.assertEqual(change.stage.photos[0]["url"], "/photos/p0.jpg")
        self.assertIn("1 verification photo stored", change.stage.extra["photo_summary"])
        self.assertEqual(store.calls[0][1]["activity_id"], self.activity.id)

    def test_photos_are_not_stored_for_a_closed_activity(self) -> None:
        self._stage(S.COMPLETED, 10, 0)
        store = FakePhotoStore()

        with self.assertRaises(ConflictError) as exc:
            self._stage(
                S.TESTING,
                10,
                5,
                photos=[PhotoUpload(data="aGVsbG8=", filename="late.jpg")],
                photo_store=store,
            )

        self.assertEqual(exc.exception.code, "ACTIVITY_CLOSED")
        self.assertEqual(store.calls, [])

    def test_end_activity_closes_open_stage(self) -> None:
        started = self._stage(S.STARTED, 10, 0)

        activity = end_activity(self.db, self.engineer, self.activity.id, now=ist(2024, 3, 15, 12, 0))

        self.assertEqual(activity.duration, 120)
        self.assertEqual(started.stage.end_time, ist(2024, 3, 15, 12, 0))
        with self.assertRaises(ConflictError) as exc:
            end_activity(self.db, self.engineer, self.activity.id, now=ist(2024, 3, 15, 12, 5))
        self.assertEqual(exc.exception.code, "ACTIVITY_ALREADY_CLOSED")

    def test_end_time_before_start_is_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            end_activity(self.db, self.engineer, self.activity.id, end_time=ist(2024, 3, 15, 9, 0))

    def test_other_users_cannot_touch_the_activity(self) -> None:
        with self.assertRaises(NotFoundError):
            list_stages(self.db, self.colleague, self.activity.id)

        check_in(self.db, self.colleague, latitude=12.9, longitude=77.6, now=ist(2024, 3, 15, 9, 0))
        with self.assertRaises(NotFoundError):
            create_stage(
                self.db,
                self.colleague,
                self.activity.id,
                stage=S.STARTED,
                now=ist(2024, 3, 15, 10, 0),
            )

    def test_list_activities_filters_by_type(self) -> None:
        create_activity(
            self.db,
            self.engineer,
            activity_type=ActivityType.MEETING,
            title="Review",
            now=ist(2024, 3, 15, 14, 0),
        )
        self._stage(S.STARTED, 10, 0)

        rows, total = list_activities(self.db, self.engineer, include_stages=True)
        self.assertEqual(total, 2)
        self.assertEqual([row.title for row in rows], ["Review", "Replace fan"])
        self.assertEqual(len(rows[1].stages), 1)

        rows, total = list_activities(self.db, self.engineer, activity_type=ActivityType.MEETING)
        self.assertEqual(total, 1)
        self.assertEqual(rows[0].title, "Review")

    def test_admin_can_add_a_log_to_any_session(self) -> None:
        activity = admin_add_activity_log(
            self.db,
            self.admin,
            self.attendance.id,
            activity_type=ActivityType.DOCUMENTATION,
            title="Backfilled report",
            description="Paper form",
            start_time=ist(2024, 3, 15, 15, 0),
            end_time=ist(2024, 3, 15, 15, 30),
        )

        self.assertEqual(activity.user_id, self.engineer.id)
        self.assertEqual(activity.description, "Paper form (Added by admin)")
        self.assertEqual(activity.duration, 30)
        self.assertTrue(activity.extra["added_by_admin"])

        with self.assertRaises(NotFoundError):
            admin_add_activity_log(
                self.db,
                self.admin,
                999,
                activity_type=ActivityType.OTHER,
                title="Nothing",
                start_time=ist(2024, 3, 15, 15, 0),
            )


if __name__ == "__main__":
    unittest.main()
