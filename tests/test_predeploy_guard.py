from __future__ import annotations

import importlib.util
import sys
import unittest
from pathlib import Path

from fieldops.settings import Settings

SCRIPT_PATH = Path(__file__).resolve().parents[1] / "scripts" / "predeploy_guard.py"


def _load_guard():  # type: ignore[no-untyped-def]
    spec = importlib.util.spec_from_file_location("predeploy_guard", SCRIPT_PATH)
    module = importlib.util.module_from_spec(spec)
    sys.modules[spec.name] = module
    assert spec.loader is not None
    spec.loader.exec_module(module)
    return module


guard = _load_guard()


class PredeployGuardTests(unittest.TestCase):
    def test_shipped_migrations_carry_the_partial_indexes(self) -> None:
        result = guard.check_migrations()

        self.assertEqual(result.status, "ok", result.problems)
        self.assertIn("0001_initial.py", result.details["files"])

    def test_migration_problems_are_reported(self) -> None:
        result = guard.check_migrations(
            {
                "0002_bad.py": 'revision: str = "0002_a_revision_identifier_that_is_far_too_long"\n',
                "0003_none.py": "down_revision = None\n",
            }
        )

        self.assertEqual(result.status, "fail")
        self.assertIn("REVISION_ID_TOO_LONG:0002_a_revision_identifier_that_is_far_too_long", result.problems)
        self.assertIn("REVISION_ID_MISSING:0003_none.py", result.problems)
        self.assertIn("INDEX_NOT_MIGRATED:uq_attendances_user_open", result.problems)

    def test_transition_table_check_passes(self) -> None:
        self.assertEqual(guard.check_transition_table().status, "ok")

    def test_runtime_config_rejects_defaults_and_bad_timezone(self) -> None:
        result = guard.check_runtime_config(Settings(jwt_secret="dev-only-change-me", attendance_timezone="Mars/Olympus_Mons"))

        self.assertEqual(result.status, "fail")
        self.assertIn("JWT_SECRET_DEFAULT", result.problems)
        self.assertIn("UNKNOWN_TIMEZONE:Mars/Olympus_Mons", result.problems)

    def test_runtime_config_warns_without_geocoding(self) -> None:
        result = guard.check_runtime_config(Settings(jwt_secret="rotated", geocoding_api_key=""))

        self.assertEqual(result.status, "warn")
        self.assertEqual(result.warnings, ["GEOCODING_NOT_CONFIGURED"])

    def test_database_check_against_an_unmigrated_database(self) -> None:
        result = guard.check_database(Settings(database_url="sqlite://"))

        self.assertEqual(result.status, "fail")
        self.assertIn("SQLITE_DATABASE", result.warnings)
        self.assertTrue(result.problems[0].startswith("DATABASE_UNREACHABLE:"))


if __name__ == "__main__":
    unittest.main()
