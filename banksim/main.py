from __future__ import annotations

from dataclasses import dataclass
import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field

from banksim.banking_repository import BankingConfig, BankingRepository
from banksim.capability import (
    INVALID_CAPABILITY_DETAIL,
    CapabilityError,
    CapabilityGate,
    CapabilityTokenIssuer,
    CodeMismatch,
    InvalidOrExpiredCapability,
    UpstreamIdentityMissing,
    load_capability_settings,
    require_balance_capability,
)
from banksim.database import DatabaseError, SupabaseConfig, create_supabase_client
from banksim.pin import derive_session_pin
from banksim.rate_limit import InMemoryRateLimiter, RateLimitSettings, enforce_rate_limit
from banksim.security import (
    AuthContext,
    SessionTokenService,
    authenticate_banking_user,
    load_session_settings,
    require_staff,
    verify_password,
)

load_dotenv()

DEFAULT_RATE_LIMIT_ENABLED = True
DEFAULT_RATE_LIMIT_REQUESTS = 10
DEFAULT_RATE_LIMIT_WINDOW_SECONDS = 60
DEFAULT_ENABLE_DEMO_PIN_IN_RESPONSE = True
DEFAULT_RETURN_BALANCE_ON_PIN_VERIFY = False
DEFAULT_LOG_LEVEL = "INFO"
REQUEST_ID_HEADER = "X-Request-ID"
INVALID_PIN_DETAIL = "Invalid transaction authorization."
AUTHENTICATION_REQUIRED_DETAIL = "Authentication required."
logger = logging.getLogger("banksim_api")


@dataclass(frozen=True)
class AccountSettings:
    enable_demo_pin_in_response: bool
    return_balance_on_pin_verify: bool


def _configure_logging() -> None:
    log_level_name = os.getenv("LOG_LEVEL", DEFAULT_LOG_LEVEL).strip().upper() or DEFAULT_LOG_LEVEL
    log_level = getattr(logging, log_level_name, logging.INFO)

    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=log_level,
            format="%(asctime)s %(levelname)s %(name)s %(message)s",
        )
    else:
        logging.getLogger().setLevel(log_level)

    logger.setLevel(log_level)


_configure_logging()


class LoginRequest(BaseModel):
    identifier: str = Field(..., min_length=1, max_length=320)
    password: str = Field(..., min_length=1, max_length=256)

    model_config = ConfigDict(extra="forbid")


class UserSummary(BaseModel):
    full_name: str | None = None
    email: str | None = None
    customer_id: str | None = None
    account_number: str | None = None
    role: str


class LoginResponse(BaseModel):
    token: str
    expires_at: datetime
    user: UserSummary
    transaction_pin: str | None = None


class LogoutResponse(BaseModel):
    message: str


class ProfileResponse(BaseModel):
    id: str
    customer_id: str | None = None
    account_number: str | None = None
    full_name: str | None = None
    email: str | None = None
    status: str
    created_at: datetime | None = None


class VerifyPinRequest(BaseModel):
    pin: str = Field(..., pattern=r"^[0-9]{4}$")

    model_config = ConfigDict(extra="forbid")


class BalanceTokenResponse(BaseModel):
    balance_token: str
    expires_at: datetime
    request_id: str
    account_number: str | None = None
    balance: float | None = None
    currency: str | None = None


class BalanceResponse(BaseModel):
    account_number: str
    balance: float
    currency: str


class SessionSummary(BaseModel):
    id: str
    created_at: datetime | None = None
    expires_at: datetime | None = None
    revoked: bool


class UserSessionsResponse(BaseModel):
    user_id: str
    sessions: list[SessionSummary]


def _parse_cors_origins(raw_origins: str | None) -> list[str]:
    if not raw_origins:
        return [
            "http://localhost:5173",
            "http://127.0.0.1:5173",
            "http://localhost:3000",
        ]
    if raw_origins.strip() == "*":
        return ["*"]
    return [origin.strip() for origin in raw_origins.split(",") if origin.strip()]


def _parse_bool_env(raw_value: str | None, default: bool, variable_name: str) -> bool:
    if raw_value is None or not raw_value.strip():
        return default
    normalized = raw_value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"{variable_name} must be a boolean value (true/false).")


def _load_rate_limit_settings() -> RateLimitSettings:
    enabled = _parse_bool_env(
        os.getenv("RATE_LIMIT_ENABLED"),
        DEFAULT_RATE_LIMIT_ENABLED,
        "RATE_LIMIT_ENABLED",
    )
    raw_requests = os.getenv("RATE_LIMIT_REQUESTS", str(DEFAULT_RATE_LIMIT_REQUESTS)).strip()
    raw_window_seconds = os.getenv("RATE_LIMIT_WINDOW_SECONDS", str(DEFAULT_RATE_LIMIT_WINDOW_SECONDS)).strip()

    try:
        requests = int(raw_requests)
        window_seconds = int(raw_window_seconds)
    except ValueError as exc:
        raise ValueError(
            "RATE_LIMIT_REQUESTS and RATE_LIMIT_WINDOW_SECONDS must be integer values."
        ) from exc

    return RateLimitSettings(enabled=enabled, requests=requests, window_seconds=window_seconds)


def _load_account_settings() -> AccountSettings:
    return AccountSettings(
        enable_demo_pin_in_response=_parse_bool_env(
            os.getenv("ENABLE_DEMO_PIN_IN_RESPONSE"),
            DEFAULT_ENABLE_DEMO_PIN_IN_RESPONSE,
            "ENABLE_DEMO_PIN_IN_RESPONSE",
        ),
        return_balance_on_pin_verify=_parse_bool_env(
            os.getenv("RETURN_BALANCE_ON_PIN_VERIFY"),
            DEFAULT_RETURN_BALANCE_ON_PIN_VERIFY,
            "RETURN_BALANCE_ON_PIN_VERIFY",
        ),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    session_settings = load_session_settings()
    capability_settings = load_capability_settings(
        signing_secret=session_settings.jwt_secret,
        algorithm=session_settings.algorithm,
        session_ttl_seconds=session_settings.ttl_seconds,
    )
    client = create_supabase_client(SupabaseConfig.from_env())
    banking_repo = BankingRepository(client=client, config=BankingConfig.from_env())
    rate_limit_settings = _load_rate_limit_settings()

    app.state.banking_repo = banking_repo
    app.state.session_token_service = SessionTokenService(session_settings)
    app.state.capability_issuer = CapabilityTokenIssuer(capability_settings)
    app.state.capability_gate = CapabilityGate(capability_settings)
    app.state.rate_limit_settings = rate_limit_settings
    app.state.rate_limiter = InMemoryRateLimiter(settings=rate_limit_settings)
    app.state.account_settings = _load_account_settings()

    yield


app = FastAPI(
    title="Private Banking Simulation API",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_parse_cors_origins(os.getenv("CORS_ALLOWED_ORIGINS")),
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Balance-Token", REQUEST_ID_HEADER],
)


@app.middleware("http")
async def request_context_and_logging_middleware(request: Request, call_next):
    request_id = request.headers.get(REQUEST_ID_HEADER, "").strip() or str(uuid.uuid4())
    request.state.request_id = request_id
    start_time = time.perf_counter()

    try:
        response = await call_next(request)
    except Exception:
        duration_ms = (time.perf_counter() - start_time) * 1000
        logger.exception(
            "request_failed request_id=%s method=%s path=%s duration_ms=%.2f",
            request_id,
            request.method,
            request.url.path,
            duration_ms,
        )
        raise

    duration_ms = (time.perf_counter() - start_time) * 1000
    response.headers[REQUEST_ID_HEADER] = request_id
    logger.info(
        "request_complete request_id=%s method=%s path=%s status_code=%s duration_ms=%.2f",
        request_id,
        request.method,
        request.url.path,
        response.status_code,
        duration_ms,
    )
    return response


@app.get("/health")
def health_check() -> dict[str, str]:
    return {"status": "ok", "service": "banksim-backend"}


@app.post("/api/auth/login", response_model=LoginResponse)
def login(
    request: Request,
    payload: LoginRequest,
    __: None = Depends(enforce_rate_limit("login")),
) -> LoginResponse:
    request_id = getattr(request.state, "request_id", "unknown")
    try:
        user = app.state.banking_repo.get_user_with_credentials(payload.identifier.strip())
        if not user:
            logger.warning("login_rejected request_id=%s reason=unknown_identifier", request_id)
            raise HTTPException(status_code=401, detail="Invalid credentials.")
        if not verify_password(payload.password, str(user.get("password_hash") or "")):
            logger.warning("login_rejected request_id=%s user_id=%s reason=bad_password", request_id, user["id"])
            raise HTTPException(status_code=401, detail="Invalid credentials.")
        if str(user.get("status", "")) != "ACTIVE":
            logger.warning(
                "login_rejected request_id=%s user_id=%s reason=status_%s",
                request_id,
                user["id"],
                user.get("status"),
            )
            raise HTTPException(status_code=403, detail="Account access is restricted or frozen.")

        session = app.state.session_token_service.issue(user)
        app.state.banking_repo.record_session_token(
            user_id=str(user["id"]),
            token=session.token,
            expires_at=session.expires_at,
        )
        logger.info("login_succeeded request_id=%s user_id=%s", request_id, user["id"])

        account_settings: AccountSettings = app.state.account_settings
        return LoginResponse(
            token=session.token,
            expires_at=session.expires_at,
            user=UserSummary(
                full_name=user.get("full_name"),
                email=user.get("email"),
                customer_id=user.get("customer_id"),
                account_number=user.get("account_number"),
                role=str(user.get("role") or "CLIENT"),
            ),
            transaction_pin=(
                derive_session_pin(session.token) if account_settings.enable_demo_pin_in_response else None
            ),
        )
    except HTTPException:
        raise
    except DatabaseError as exc:
        logger.error("login_db_error request_id=%s error=%s", request_id, str(exc))
        raise HTTPException(status_code=500, detail="Session store is unavailable.") from exc
    except Exception as exc:
        logger.exception("login_internal_error request_id=%s", request_id)
        raise HTTPException(status_code=500, detail="Internal server error during login.") from exc


@app.post("/api/auth/logout", response_model=LogoutResponse)
def logout(
    request: Request,
    auth_context: AuthContext = Depends(authenticate_banking_user),
) -> LogoutResponse:
    request_id = getattr(request.state, "request_id", "unknown")
    try:
        app.state.banking_repo.revoke_session_token(auth_context.session_token)
    except DatabaseError as exc:
        logger.error("logout_db_error request_id=%s error=%s", request_id, str(exc))
        raise HTTPException(status_code=500, detail="Session store is unavailable.") from exc

    logger.info("logout_succeeded request_id=%s user_id=%s", request_id, auth_context.principal)
    return LogoutResponse(message="Session terminated successfully.")


@app.get("/api/account/profile", response_model=ProfileResponse)
def get_profile(auth_context: AuthContext = Depends(authenticate_banking_user)) -> ProfileResponse:
    try:
        profile = app.state.banking_repo.get_user_profile(auth_context.principal)
    except DatabaseError as exc:
        raise HTTPException(status_code=500, detail="Account store is unavailable.") from exc

    if not profile:
        raise HTTPException(status_code=404, detail="User not found.")

    return ProfileResponse(
        id=str(profile["id"]),
        customer_id=profile.get("customer_id"),
        account_number=profile.get("account_number"),
        full_name=profile.get("full_name"),
        email=profile.get("email"),
        status=str(profile.get("status", "UNKNOWN")),
        created_at=profile.get("created_at"),
    )


@app.post("/api/account/verify-pin", response_model=BalanceTokenResponse)
def verify_pin(
    request: Request,
    payload: VerifyPinRequest,
    auth_context: AuthContext = Depends(authenticate_banking_user),
    __: None = Depends(enforce_rate_limit("verify_pin")),
) -> BalanceTokenResponse:
    request_id = getattr(request.state, "request_id", "unknown")
    try:
        capability = app.state.capability_issuer.verify_and_issue(
            presented_code=payload.pin,
            caller_identity=auth_context.principal,
            session_token=auth_context.session_token,
            session_expires_at=auth_context.session_expires_at,
        )
    except CodeMismatch as exc:
        logger.warning(
            "pin_verify_rejected request_id=%s principal=%s reason=code_mismatch",
            request_id,
            auth_context.principal,
        )
        raise HTTPException(status_code=401, detail=INVALID_PIN_DETAIL) from exc
    except UpstreamIdentityMissing as exc:
        logger.warning("pin_verify_rejected request_id=%s reason=identity_missing", request_id)
        raise HTTPException(status_code=401, detail=AUTHENTICATION_REQUIRED_DETAIL) from exc
    except InvalidOrExpiredCapability as exc:
        logger.warning(
            "pin_verify_rejected request_id=%s principal=%s reason=%s",
            request_id,
            auth_context.principal,
            str(exc),
        )
        raise HTTPException(status_code=401, detail=INVALID_CAPABILITY_DETAIL) from exc

    logger.info("balance_capability_issued request_id=%s principal=%s", request_id, auth_context.principal)
    response = BalanceTokenResponse(
        balance_token=capability.token,
        expires_at=capability.expires_at,
        request_id=request_id,
    )

    account_settings: AccountSettings = app.state.account_settings
    if not account_settings.return_balance_on_pin_verify:
        return response

    # Same-response disclosure still goes through the gate.
    try:
        app.state.capability_gate.authorize(capability.token, auth_context.principal)
    except CapabilityError as exc:
        logger.warning(
            "balance_capability_rejected request_id=%s principal=%s reason=%s",
            request_id,
            auth_context.principal,
            str(exc),
        )
        raise HTTPException(status_code=401, detail=INVALID_CAPABILITY_DETAIL) from exc

    try:
        balance = app.state.banking_repo.get_account_balance(auth_context.principal)
    except DatabaseError as exc:
        logger.error("pin_verify_balance_db_error request_id=%s error=%s", request_id, str(exc))
        raise HTTPException(status_code=500, detail="Account store is unavailable.") from exc

    if balance:
        response.account_number = balance["account_number"]
        response.balance = balance["balance"]
        response.currency = balance["currency"]
    return response


@app.get("/api/account/balance", response_model=BalanceResponse)
def get_balance(auth_context: AuthContext = Depends(require_balance_capability)) -> BalanceResponse:
    try:
        balance = app.state.banking_repo.get_account_balance(auth_context.principal)
    except DatabaseError as exc:
        raise HTTPException(status_code=500, detail="Account store is unavailable.") from exc

    if not balance:
        raise HTTPException(status_code=404, detail="User not found.")

    return BalanceResponse(**balance)


@app.get("/api/staff/sessions/{user_id}", response_model=UserSessionsResponse)
def list_user_sessions(
    user_id: str,
    _: AuthContext = Depends(require_staff),
) -> UserSessionsResponse:
    try:
        rows = app.state.banking_repo.list_user_sessions(user_id)
    except DatabaseError as exc:
        raise HTTPException(status_code=500, detail="Session store is unavailable.") from exc

    return UserSessionsResponse(
        user_id=user_id,
        sessions=[
            SessionSummary(
                id=str(row["id"]),
                created_at=row.get("created_at"),
                expires_at=row.get("expires_at"),
                revoked=bool(row.get("revoked", False)),
            )
            for row in rows
        ],
    )
