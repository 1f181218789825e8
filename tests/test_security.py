from __future__ import annotations

import os
import unittest
from datetime import timedelta
from unittest.mock import patch

from jose import jwt

from fieldops.errors import ApiError
from fieldops.models import UserRole
from fieldops.security import create_access_token, decode_token
from fieldops.settings import get_settings


class TokenTests(unittest.TestCase):
    def setUp(self) -> None:
        get_settings.cache_clear()

    def tearDown(self) -> None:
        get_settings.cache_clear()

    def test_token_round_trip_carries_role_and_zones(self) -> None:
        token = create_access_token(user_id=12, role=UserRole.ZONE_MANAGER, zone_ids=[3, 5], name="Meera")

        actor = decode_token(token)

        self.assertEqual(actor.id, 12)
        self.assertEqual(actor.role, UserRole.ZONE_MANAGER)
        self.assertEqual(actor.zone_ids, (3, 5))
        self.assertEqual(actor.name, "Meera")
        self.assertFalse(actor.is_admin)

    def test_expired_token_is_rejected(self) -> None:
        token = create_access_token(user_id=1, role="ADMIN", expires_delta=timedelta(seconds=-5))

        with self.assertRaises(ApiError) as exc:
            decode_token(token)

        self.assertEqual(exc.exception.status_code, 401)
        self.assertEqual(exc.exception.code, "INVALID_TOKEN")

    def test_token_signed_with_another_secret_is_rejected(self) -> None:
        token = create_access_token(user_id=1, role=UserRole.ADMIN)

        with patch.dict(os.environ, {"JWT_SECRET": "rotated-secret"}, clear=False):
            get_settings.cache_clear()
            with self.assertRaises(ApiError) as exc:
                decode_token(token)

        self.assertEqual(exc.exception.code, "INVALID_TOKEN")

    def test_unknown_role_claim_is_rejected(self) -> None:
        settings = get_settings()
        token = create_access_token(user_id=1, role=UserRole.ADMIN)
        claims = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=["HS256"],
            audience=settings.jwt_audience,
            issuer=settings.jwt_issuer,
        )
        claims["role"] = "SUPERUSER"
        forged = jwt.encode(claims, settings.jwt_secret, algorithm="HS256")

        with self.assertRaises(ApiError) as exc:
            decode_token(forged)

        self.assertEqual(exc.exception.message, "Token claims are invalid.")


if __name__ == "__main__":
    unittest.main()
