from __future__ import annotations

import unittest
from datetime import date
from unittest.mock import patch

from db_support import ist
from fieldops.worker import BackgroundWorker, auto_checkout_due


class AutoCheckoutScheduleTests(unittest.TestCase):
    def test_not_due_before_workday_end(self) -> None:
        self.assertFalse(auto_checkout_due(ist(2024, 3, 15, 18, 59), None))

    def test_due_once_per_local_day(self) -> None:
        self.assertTrue(auto_checkout_due(ist(2024, 3, 15, 19, 0), None))
        self.assertFalse(auto_checkout_due(ist(2024, 3, 15, 21, 0), date(2024, 3, 15)))
        self.assertTrue(auto_checkout_due(ist(2024, 3, 16, 19, 5), date(2024, 3, 15)))


class BackgroundWorkerTickTests(unittest.IsolatedAsyncioTestCase):
    async def test_tick_runs_sweep_then_outbox(self) -> None:
        worker = BackgroundWorker(interval_seconds=60)
        summary = {"processed": [1], "failed": []}

        with (
            patch("fieldops.worker._run_auto_checkout_tick", return_value=summary) as sweep,
            patch("fieldops.worker.send_pending_notifications", return_value=[]) as dispatch,
        ):
            await worker.tick(ist(2024, 3, 15, 19, 1))
            await worker.tick(ist(2024, 3, 15, 19, 2))

        self.assertEqual(sweep.call_count, 1)
        self.assertEqual(dispatch.call_count, 2)
        self.assertEqual(worker.last_auto_checkout_day, date(2024, 3, 15))

    async def test_failed_sweep_is_retried_on_the_next_tick(self) -> None:
        worker = BackgroundWorker(interval_seconds=60)

        with (
            patch("fieldops.worker._run_auto_checkout_tick", side_effect=RuntimeError("db down")) as sweep,
            patch("fieldops.worker.send_pending_notifications", return_value=[]),
        ):
            await worker.tick(ist(2024, 3, 15, 19, 1))
            await worker.tick(ist(2024, 3, 15, 19, 2))

        self.assertEqual(sweep.call_count, 2)
        self.assertIsNone(worker.last_auto_checkout_day)

    async def test_start_and_stop(self) -> None:
        worker = BackgroundWorker(interval_seconds=3600)

        with (
            patch("fieldops.worker._run_auto_checkout_tick", return_value={}),
            patch("fieldops.worker.send_pending_notifications", return_value=[]),
        ):
            worker.start()
            self.assertTrue(worker.running)
            await worker.stop()

        self.assertFalse(worker.running)


if __name__ == "__main__":
    unittest.main()
