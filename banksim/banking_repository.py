from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
import os
from typing import Any

from supabase import Client

from banksim.database import DatabaseError
from banksim.security import hash_session_token

USERS_TABLE = "bank_users"
CREDENTIALS_TABLE = "user_credentials"
AUTH_TOKENS_TABLE = "auth_tokens"
PROFILE_COLUMNS = "id, customer_id, account_number, full_name, email, status, role, created_at"
SESSION_COLUMNS = "id, user_id, created_at, expires_at, revoked"


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


@dataclass(frozen=True)
class BankingConfig:
    default_currency: str = "USD"
    session_history_limit: int = 50

    @classmethod
    def from_env(cls) -> "BankingConfig":
        currency = os.getenv("DEFAULT_CURRENCY", "USD").strip() or "USD"
        raw_limit = os.getenv("SESSION_HISTORY_LIMIT", "50").strip()
        try:
            session_history_limit = int(raw_limit)
        except ValueError as exc:
            raise ValueError("SESSION_HISTORY_LIMIT must be an integer value.") from exc
        if session_history_limit <= 0:
            raise ValueError("SESSION_HISTORY_LIMIT must be greater than 0.")
        return cls(default_currency=currency, session_history_limit=session_history_limit)


class BankingRepository:
    def __init__(self, client: Client, config: BankingConfig) -> None:
        self.client = client
        self.config = config

    @staticmethod
    def _single_row(result: Any) -> dict[str, Any] | None:
        data = getattr(result, "data", None)
        if not data:
            return None
        if isinstance(data, list):
            return data[0] if data else None
        if isinstance(data, dict):
            return data
        return None

    @staticmethod
    def _rows(result: Any) -> list[dict[str, Any]]:
        data = getattr(result, "data", None)
        if isinstance(data, list):
            return data
        if isinstance(data, dict):
            return [data]
        return []

    def _find_user(self, column: str, value: str) -> dict[str, Any] | None:
        try:
            result = self.client.table(USERS_TABLE).select("*").eq(column, value).limit(1).execute()
        except Exception as exc:
            raise DatabaseError(f"Failed to look up user by {column}: {exc}") from exc
        return self._single_row(result)

    def get_user_with_credentials(self, identifier: str) -> dict[str, Any] | None:
        """Resolve a login identifier (email or customer id) to the user row plus its password hash."""
        user = self._find_user("email", identifier) or self._find_user("customer_id", identifier)
        if not user:
            return None

        try:
            result = (
                self.client.table(CREDENTIALS_TABLE)
                .select("password_hash")
                .eq("user_id", user["id"])
                .limit(1)
                .execute()
            )
        except Exception as exc:
            raise DatabaseError(f"Failed to load user credentials: {exc}") from exc

        credentials = self._single_row(result)
        if not credentials:
            return None
        return {**user, "password_hash": credentials.get("password_hash")}

    def get_user_profile(self, user_id: str) -> dict[str, Any] | None:
        try:
            result = self.client.table(USERS_TABLE).select(PROFILE_COLUMNS).eq("id", user_id).limit(1).execute()
        except Exception as exc:
            raise DatabaseError(f"Failed to load user profile: {exc}") from exc
        return self._single_row(result)

    def get_account_balance(self, user_id: str) -> dict[str, Any] | None:
        try:
            result = (
                self.client.table(USERS_TABLE)
                .select("account_number, balance, currency")
                .eq("id", user_id)
                .limit(1)
                .execute()
            )
        except Exception as exc:
            raise DatabaseError(f"Failed to load account balance: {exc}") from exc

        row = self._single_row(result)
        if not row:
            return None
        return {
            "account_number": str(row["account_number"]),
            "balance": float(row["balance"]),
            "currency": str(row.get("currency") or self.config.default_currency),
        }

    def record_session_token(self, *, user_id: str, token: str, expires_at: datetime) -> dict[str, Any]:
        payload = {
            "user_id": user_id,
            "token_hash": hash_session_token(token),
            "expires_at": expires_at.isoformat(),
            "revoked": False,
            "created_at": _utcnow_iso(),
        }
        try:
            result = self.client.table(AUTH_TOKENS_TABLE).insert(payload).execute()
        except Exception as exc:
            raise DatabaseError(f"Failed to record session token: {exc}") from exc
        return self._single_row(result) or payload

    def is_session_token_active(self, token: str) -> bool:
        try:
            result = (
                self.client.table(AUTH_TOKENS_TABLE)
                .select("revoked")
                .eq("token_hash", hash_session_token(token))
                .limit(1)
                .execute()
            )
        except Exception as exc:
            raise DatabaseError(f"Failed to check session token status: {exc}") from exc

        row = self._single_row(result)
        return bool(row) and not bool(row.get("revoked"))

    def revoke_session_token(self, token: str) -> None:
        try:
            (
                self.client.table(AUTH_TOKENS_TABLE)
                .update({"revoked": True, "revoked_at": _utcnow_iso()})
                .eq("token_hash", hash_session_token(token))
                .execute()
            )
        except Exception as exc:
            raise DatabaseError(f"Failed to revoke session token: {exc}") from exc

    def list_user_sessions(self, user_id: str) -> list[dict[str, Any]]:
        try:
            result = (
                self.client.table(AUTH_TOKENS_TABLE)
                .select(SESSION_COLUMNS)
                .eq("user_id", user_id)
                .order("created_at", desc=True)
                .limit(self.config.session_history_limit)
                .execute()
            )
        except Exception as exc:
            raise DatabaseError(f"Failed to list user sessions: {exc}") from exc
        return self._rows(result)
