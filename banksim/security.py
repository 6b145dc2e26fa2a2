from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
import hashlib
import logging
import os
import time
from typing import Any, Callable
import uuid

from fastapi import Depends, HTTPException, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from werkzeug.security import check_password_hash

from banksim.database import DatabaseError

AUTHORIZATION_HEADER_NAME = "Authorization"
DEFAULT_JWT_ALGORITHM = "HS256"
DEFAULT_SESSION_TTL_SECONDS = 1800
STAFF_ROLE = "STAFF"
_bearer_header = HTTPBearer(auto_error=False)
logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionSettings:
    jwt_secret: str
    algorithm: str = DEFAULT_JWT_ALGORITHM
    ttl_seconds: int = DEFAULT_SESSION_TTL_SECONDS

    def __post_init__(self) -> None:
        if not self.jwt_secret:
            raise ValueError("JWT_SECRET must not be empty.")
        if self.ttl_seconds <= 0:
            raise ValueError("SESSION_TTL_SECONDS must be greater than 0.")


@dataclass(frozen=True)
class AuthContext:
    principal: str
    session_token: str
    session_expires_at: int
    email: str | None = None
    customer_id: str | None = None
    role: str = "CLIENT"


@dataclass(frozen=True)
class IssuedSession:
    token: str
    expires_at: datetime


def hash_session_token(token: str) -> str:
    """Lookup key for the session store; raw credentials are never persisted."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def verify_password(password: str, password_hash: str) -> bool:
    if not password_hash:
        return False
    return check_password_hash(password_hash, password)


class SessionTokenService:
    """Mints and verifies the primary bearer credential handed out at login."""

    def __init__(self, settings: SessionSettings, clock: Callable[[], float] = time.time) -> None:
        self._settings = settings
        self._clock = clock

    def issue(self, user: dict[str, Any]) -> IssuedSession:
        issued_at = int(self._clock())
        expires_at = issued_at + self._settings.ttl_seconds
        claims = {
            "sub": str(user["id"]),
            "email": user.get("email"),
            "customer_id": user.get("customer_id"),
            "role": str(user.get("role") or "CLIENT"),
            "iat": issued_at,
            "exp": expires_at,
            # Two logins in the same second must still yield distinct credentials.
            "jti": uuid.uuid4().hex,
        }
        token = jwt.encode(claims, self._settings.jwt_secret, algorithm=self._settings.algorithm)
        return IssuedSession(token=token, expires_at=datetime.fromtimestamp(expires_at, tz=UTC))

    def verify(self, token: str) -> dict[str, Any]:
        try:
            claims = jwt.decode(
                token,
                self._settings.jwt_secret,
                algorithms=[self._settings.algorithm],
                options={"verify_exp": False},
            )
        except JWTError as exc:
            raise HTTPException(status_code=401, detail="Invalid or expired Bearer token.") from exc

        expires_at = claims.get("exp")
        if isinstance(expires_at, bool) or not isinstance(expires_at, (int, float)):
            raise HTTPException(status_code=401, detail="Invalid or expired Bearer token.")
        if self._clock() >= expires_at:
            raise HTTPException(status_code=401, detail="Invalid or expired Bearer token.")

        # Capability tokens share the signing secret but must never open a session.
        if "purpose" in claims or not claims.get("sub"):
            raise HTTPException(status_code=401, detail="Invalid or expired Bearer token.")

        return claims


def _parse_positive_int(raw_value: str, variable_name: str) -> int:
    try:
        value = int(raw_value)
    except ValueError as exc:
        raise ValueError(f"{variable_name} must be an integer value.") from exc
    if value <= 0:
        raise ValueError(f"{variable_name} must be greater than 0.")
    return value


def load_session_settings() -> SessionSettings:
    jwt_secret = os.getenv("JWT_SECRET", "").strip()
    if not jwt_secret:
        raise ValueError("JWT_SECRET is a required environment variable.")

    algorithm = os.getenv("JWT_ALGORITHM", DEFAULT_JWT_ALGORITHM).strip() or DEFAULT_JWT_ALGORITHM
    if not algorithm.upper().startswith("HS"):
        raise ValueError("JWT_ALGORITHM must be an HMAC algorithm (HS256, HS384, HS512).")

    ttl_seconds = _parse_positive_int(
        os.getenv("SESSION_TTL_SECONDS", str(DEFAULT_SESSION_TTL_SECONDS)).strip(),
        "SESSION_TTL_SECONDS",
    )
    return SessionSettings(jwt_secret=jwt_secret, algorithm=algorithm.upper(), ttl_seconds=ttl_seconds)


def authenticate_banking_user(
    request: Request,
    bearer_credentials: HTTPAuthorizationCredentials | None = Security(_bearer_header),
) -> AuthContext:
    service: SessionTokenService | None = getattr(request.app.state, "session_token_service", None)
    banking_repo = getattr(request.app.state, "banking_repo", None)
    if service is None or banking_repo is None:
        raise HTTPException(status_code=500, detail="Authentication is not configured.")

    if bearer_credentials is None or bearer_credentials.scheme.lower() != "bearer" or not bearer_credentials.credentials:
        raise HTTPException(status_code=401, detail="Invalid or missing Bearer token.")

    # Passed through untouched: the transaction PIN is derived from these exact bytes.
    session_token = bearer_credentials.credentials
    claims = service.verify(session_token)

    try:
        is_active = banking_repo.is_session_token_active(session_token)
    except DatabaseError as exc:
        logger.error("session_lookup_failed error=%s", str(exc))
        raise HTTPException(status_code=500, detail="Session store is unavailable.") from exc

    if not is_active:
        raise HTTPException(status_code=401, detail="Token has been revoked or session expired.")

    auth_context = AuthContext(
        principal=str(claims["sub"]),
        session_token=session_token,
        session_expires_at=int(claims["exp"]),
        email=claims.get("email"),
        customer_id=claims.get("customer_id"),
        role=str(claims.get("role") or "CLIENT"),
    )
    request.state.auth_context = auth_context
    return auth_context


def require_staff(auth_context: AuthContext = Depends(authenticate_banking_user)) -> AuthContext:
    if auth_context.role != STAFF_ROLE:
        raise HTTPException(status_code=403, detail="Staff access required.")
    return auth_context
