"""Secondary authorization for balance disclosure.

A caller proves possession of the current session by echoing the PIN derived
from it and receives a short-lived capability token. Balance reads then
require that token on top of the session credential.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
import hmac
import logging
import os
import time
from typing import Any, Callable
import uuid

from fastapi import Depends, HTTPException, Request, Security
from fastapi.security import APIKeyHeader
from jose import JWTError, jwt

from banksim.pin import derive_session_pin
from banksim.security import AuthContext, authenticate_banking_user

BALANCE_TOKEN_HEADER_NAME = "X-Balance-Token"
BALANCE_REVEAL_PURPOSE = "balance_reveal"
DEFAULT_BALANCE_TOKEN_TTL_SECONDS = 300
INVALID_CAPABILITY_DETAIL = "Secure session expired or invalid."
_balance_token_header = APIKeyHeader(name=BALANCE_TOKEN_HEADER_NAME, auto_error=False)
logger = logging.getLogger(__name__)


class CapabilityError(RuntimeError):
    """Base class for secondary-authorization failures. Messages are for logs only."""


class CodeMismatch(CapabilityError):
    pass


class InvalidOrExpiredCapability(CapabilityError):
    pass


class UpstreamIdentityMissing(CapabilityError):
    pass


@dataclass(frozen=True)
class CapabilitySettings:
    signing_secret: str
    algorithm: str = "HS256"
    ttl_seconds: int = DEFAULT_BALANCE_TOKEN_TTL_SECONDS
    purpose: str = BALANCE_REVEAL_PURPOSE

    def __post_init__(self) -> None:
        if not self.signing_secret:
            raise ValueError("Capability signing secret must not be empty.")
        if self.ttl_seconds <= 0:
            raise ValueError("BALANCE_TOKEN_TTL_SECONDS must be greater than 0.")
        if not self.purpose:
            raise ValueError("Capability purpose must not be empty.")


@dataclass(frozen=True)
class CapabilityToken:
    token: str
    subject: str
    purpose: str
    expires_at: datetime


def _codes_match(presented_code: str, expected_code: str) -> bool:
    return hmac.compare_digest(
        presented_code.encode("utf-8", "surrogatepass"),
        expected_code.encode("utf-8", "surrogatepass"),
    )


class CapabilityTokenIssuer:
    """Exchanges a correct session PIN for a balance capability token.

    Every successful call mints a fresh token; earlier tokens stay valid until
    they expire. A token always expires before the session it was derived from,
    and none is minted once that leaves no lifetime.
    """

    def __init__(self, settings: CapabilitySettings, clock: Callable[[], float] = time.time) -> None:
        self._settings = settings
        self._clock = clock

    def verify_and_issue(
        self,
        *,
        presented_code: str,
        caller_identity: str | None,
        session_token: str | None,
        session_expires_at: int | None = None,
    ) -> CapabilityToken:
        if not caller_identity or not session_token:
            raise UpstreamIdentityMissing("Caller identity or session credential is missing.")

        expected_code = derive_session_pin(session_token)
        if not _codes_match(presented_code, expected_code):
            raise CodeMismatch(f"Presented code rejected for principal {caller_identity}.")

        now = self._clock()
        issued_at = int(now)
        expires_at = issued_at + self._settings.ttl_seconds
        if session_expires_at is not None:
            # Strictly inside the session's remaining lifetime.
            expires_at = min(expires_at, int(session_expires_at) - 1)
        if expires_at <= now:
            raise InvalidOrExpiredCapability("Session has no lifetime left for a capability token.")

        claims = {
            "sub": caller_identity,
            "purpose": self._settings.purpose,
            "iat": issued_at,
            "exp": expires_at,
            "jti": uuid.uuid4().hex,
        }
        token = jwt.encode(claims, self._settings.signing_secret, algorithm=self._settings.algorithm)
        return CapabilityToken(
            token=token,
            subject=caller_identity,
            purpose=self._settings.purpose,
            expires_at=datetime.fromtimestamp(expires_at, tz=UTC),
        )


class CapabilityGate:
    """Stateless check of a capability token against the calling identity."""

    def __init__(self, settings: CapabilitySettings, clock: Callable[[], float] = time.time) -> None:
        self._settings = settings
        self._clock = clock

    def authorize(self, capability_token: str | None, caller_identity: str | None) -> dict[str, Any]:
        if not caller_identity:
            raise UpstreamIdentityMissing("Caller identity is missing.")
        if not capability_token:
            raise InvalidOrExpiredCapability("Capability token was not presented.")

        try:
            claims = jwt.decode(
                capability_token,
                self._settings.signing_secret,
                algorithms=[self._settings.algorithm],
                options={"verify_exp": False},
            )
        except JWTError as exc:
            raise InvalidOrExpiredCapability(f"Capability token failed verification: {exc}") from exc

        expires_at = claims.get("exp")
        if isinstance(expires_at, bool) or not isinstance(expires_at, (int, float)):
            raise InvalidOrExpiredCapability("Capability token has no usable expiry.")
        if self._clock() >= expires_at:
            raise InvalidOrExpiredCapability("Capability token has expired.")
        if claims.get("sub") != caller_identity:
            raise InvalidOrExpiredCapability("Capability token subject does not match caller.")
        if claims.get("purpose") != self._settings.purpose:
            raise InvalidOrExpiredCapability("Capability token purpose is not accepted here.")

        return claims


def load_capability_settings(*, signing_secret: str, algorithm: str, session_ttl_seconds: int) -> CapabilitySettings:
    raw_ttl = os.getenv("BALANCE_TOKEN_TTL_SECONDS", str(DEFAULT_BALANCE_TOKEN_TTL_SECONDS)).strip()
    try:
        ttl_seconds = int(raw_ttl)
    except ValueError as exc:
        raise ValueError("BALANCE_TOKEN_TTL_SECONDS must be an integer value.") from exc

    if ttl_seconds >= session_ttl_seconds:
        raise ValueError("BALANCE_TOKEN_TTL_SECONDS must be shorter than SESSION_TTL_SECONDS.")

    return CapabilitySettings(signing_secret=signing_secret, algorithm=algorithm, ttl_seconds=ttl_seconds)


def require_balance_capability(
    request: Request,
    auth_context: AuthContext = Depends(authenticate_banking_user),
    balance_token: str | None = Security(_balance_token_header),
) -> AuthContext:
    gate: CapabilityGate | None = getattr(request.app.state, "capability_gate", None)
    if gate is None:
        raise HTTPException(status_code=500, detail="Balance authorization is not configured.")

    request_id = getattr(request.state, "request_id", "unknown")
    try:
        gate.authorize(balance_token, auth_context.principal)
    except CapabilityError as exc:
        logger.warning(
            "balance_capability_rejected request_id=%s principal=%s reason=%s",
            request_id,
            auth_context.principal,
            str(exc),
        )
        raise HTTPException(status_code=401, detail=INVALID_CAPABILITY_DETAIL) from exc

    return auth_context
