from __future__ import annotations

import os
import unittest
from unittest.mock import patch

from jose import jwt

from payroll_ledger.errors import ApiError
from payroll_ledger.security import (
    actor_from_claims,
    create_access_token,
    decode_token,
    has_permission,
    normalize_permissions,
    require_admin_permission,
)
from payroll_ledger.settings import get_settings


class SecurityTests(unittest.TestCase):
    def setUp(self) -> None:
        self._env = patch.dict(os.environ, {"JWT_SECRET": "unit-test-secret"}, clear=False)
        self._env.start()
        get_settings.cache_clear()

    def tearDown(self) -> None:
        self._env.stop()
        get_settings.cache_clear()

    def test_access_token_roundtrip(self) -> None:
        token, expires_in, claims = create_access_token(
            sub="7",
            username="hr.admin",
            permissions={"consolidations": True, "unknown": True},
        )

        payload = decode_token(token)

        self.assertEqual(expires_in, get_settings().access_token_minutes * 60)
        self.assertEqual(payload["sub"], "7")
        self.assertEqual(payload["jti"], claims["jti"])
        self.assertEqual(payload["permissions"]["consolidations"], {"read": True, "write": True})
        self.assertNotIn("unknown", payload["permissions"])
        self.assertEqual(actor_from_claims(payload), "hr.admin")

    def test_decode_rejects_tampered_and_non_admin_tokens(self) -> None:
        token, _, claims = create_access_token(sub="7", username="hr.admin")

        with self.assertRaises(ApiError) as ctx:
            decode_token(token + "x")
        self.assertEqual(ctx.exception.status_code, 401)

        settings = get_settings()
        employee_token = jwt.encode({**claims, "role": "employee"}, settings.jwt_secret, algorithm="HS256")
        with self.assertRaises(ApiError) as ctx:
            decode_token(employee_token)
        self.assertEqual(ctx.exception.status_code, 403)

        refresh_token = jwt.encode({**claims, "typ": "refresh"}, settings.jwt_secret, algorithm="HS256")
        with self.assertRaises(ApiError) as ctx:
            decode_token(refresh_token)
        self.assertEqual(ctx.exception.code, "INVALID_TOKEN")

    def test_permission_checks(self) -> None:
        claims = {"permissions": {"variable_items": {"read": True}, "exports": {"write": True}}}

        self.assertTrue(has_permission(claims, "variable_items"))
        self.assertFalse(has_permission(claims, "variable_items", write=True))
        self.assertTrue(has_permission(claims, "exports"))
        self.assertFalse(has_permission(claims, "leave_counters"))
        self.assertFalse(has_permission(claims, "payroll_admin"))
        self.assertTrue(has_permission({"is_super_admin": True}, "audit", write=True))
        self.assertEqual(normalize_permissions(None)["audit"], {"read": False, "write": False})

    def test_unknown_permission_key_is_a_programming_error(self) -> None:
        with self.assertRaises(ValueError):
            require_admin_permission("timesheets")


if __name__ == "__main__":
    unittest.main()
