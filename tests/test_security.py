from __future__ import annotations

import unittest
from unittest.mock import patch

from fastapi import HTTPException
from jose import jwt
from werkzeug.security import generate_password_hash

from banksim.security import (
    SessionSettings,
    SessionTokenService,
    hash_session_token,
    load_session_settings,
    verify_password,
)

SECRET = "test-session-secret"
USER = {"id": "user-123", "email": "john@bank.com", "customer_id": "CUST7742", "role": "CLIENT"}


class FakeClock:
    def __init__(self, now: float) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class SessionTokenServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = FakeClock(1_700_000_000)
        self.service = SessionTokenService(SessionSettings(jwt_secret=SECRET, ttl_seconds=1800), clock=self.clock)

    def test_issue_and_verify(self) -> None:
        session = self.service.issue(USER)
        claims = self.service.verify(session.token)

        self.assertEqual(claims["sub"], "user-123")
        self.assertEqual(claims["customer_id"], "CUST7742")
        self.assertEqual(claims["exp"], 1_700_000_000 + 1800)
        self.assertEqual(int(session.expires_at.timestamp()), claims["exp"])

    def test_logins_in_same_second_get_distinct_tokens(self) -> None:
        self.assertNotEqual(self.service.issue(USER).token, self.service.issue(USER).token)

    def test_expired_session_rejected(self) -> None:
        session = self.service.issue(USER)
        self.clock.now += 1800
        with self.assertRaises(HTTPException) as ctx:
            self.service.verify(session.token)
        self.assertEqual(ctx.exception.status_code, 401)

    def test_capability_token_cannot_act_as_session(self) -> None:
        capability_like = jwt.encode(
            {"sub": "user-123", "purpose": "balance_reveal", "exp": self.clock.now + 300},
            SECRET,
            algorithm="HS256",
        )
        with self.assertRaises(HTTPException):
            self.service.verify(capability_like)

    def test_foreign_signature_rejected(self) -> None:
        foreign = SessionTokenService(SessionSettings(jwt_secret="other-secret"), clock=self.clock).issue(USER)
        with self.assertRaises(HTTPException):
            self.service.verify(foreign.token)


class PasswordAndSettingsTests(unittest.TestCase):
    def test_verify_password(self) -> None:
        password_hash = generate_password_hash("password123", method="pbkdf2:sha256:1000")
        self.assertTrue(verify_password("password123", password_hash))
        self.assertFalse(verify_password("password124", password_hash))
        self.assertFalse(verify_password("password123", ""))

    def test_session_token_hash_is_stable(self) -> None:
        self.assertEqual(hash_session_token("abc.def.sig1"), hash_session_token("abc.def.sig1"))
        self.assertNotEqual(hash_session_token("abc.def.sig1"), hash_session_token("abc.def.sig2"))
        self.assertEqual(len(hash_session_token("abc.def.sig1")), 64)

    def test_load_session_settings(self) -> None:
        with patch.dict("os.environ", {"JWT_SECRET": "s3cret", "SESSION_TTL_SECONDS": "900", "JWT_ALGORITHM": "hs512"}):
            settings = load_session_settings()
        self.assertEqual(settings.ttl_seconds, 900)
        self.assertEqual(settings.algorithm, "HS512")

    def test_load_session_settings_requires_secret(self) -> None:
        with patch.dict("os.environ", {"JWT_SECRET": "  "}):
            with self.assertRaises(ValueError):
                load_session_settings()

    def test_load_session_settings_rejects_asymmetric_algorithm(self) -> None:
        with patch.dict("os.environ", {"JWT_SECRET": "s3cret", "JWT_ALGORITHM": "RS256"}):
            with self.assertRaises(ValueError):
                load_session_settings()


if __name__ == "__main__":
    unittest.main()
