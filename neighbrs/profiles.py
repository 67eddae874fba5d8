"""Identity/profile store: who can pay, who can be paid."""

from __future__ import annotations

import threading
from typing import Any, Dict, Optional, Protocol, runtime_checkable

from postgrest.exceptions import APIError
from supabase import Client

from .ledger import LedgerError
from .models import PaymentProfile

USERS_TABLE = "users"

# model field -> users column (the columns predate this service)
_COLUMNS = {
    "user_id": "id",
    "email": "email",
    "full_name": "full_name",
    "payment_customer_id": "stripe_customer_id",
    "default_payment_method_id": "default_payment_method_id",
    "payout_account_id": "stripe_connect_account_id",
    "payout_account_ready": "stripe_connect_onboarding_complete",
}


class UnknownUser(LookupError):
    pass


@runtime_checkable
class ProfileStore(Protocol):
    def get_user(self, user_id: str) -> PaymentProfile: ...

    def update_user(self, user_id: str, **fields: Any) -> PaymentProfile: ...

    def find_by_payout_account(self, payout_account_id: str) -> Optional[PaymentProfile]: ...

    def find_by_customer(self, customer_id: str) -> Optional[PaymentProfile]: ...


def _from_row(row: Dict[str, Any]) -> PaymentProfile:
    data = {field: row.get(col) for field, col in _COLUMNS.items()}
    data["payout_account_ready"] = bool(data["payout_account_ready"])
    return PaymentProfile(**data)


class SupabaseProfileStore:
    def __init__(self, client: Client) -> None:
        self._sb = client

    def get_user(self, user_id: str) -> PaymentProfile:
        profile = self._find("id", user_id)
        if profile is None:
            raise UnknownUser(user_id)
        return profile

    def update_user(self, user_id: str, **fields: Any) -> PaymentProfile:
        row = {_COLUMNS[k]: v for k, v in fields.items()}
        try:
            resp = self._sb.table(USERS_TABLE).update(row).eq("id", user_id).execute()
        except APIError as e:
            raise LedgerError(f"users update error: {e.message}") from e
        if not resp.data:
            raise UnknownUser(user_id)
        return _from_row(resp.data[0])

    def find_by_payout_account(self, payout_account_id: str) -> Optional[PaymentProfile]:
        return self._find("stripe_connect_account_id", payout_account_id)

    def find_by_customer(self, customer_id: str) -> Optional[PaymentProfile]:
        return self._find("stripe_customer_id", customer_id)

    def _find(self, column: str, value: str) -> Optional[PaymentProfile]:
        try:
            resp = self._sb.table(USERS_TABLE).select("*").eq(column, value).limit(1).execute()
        except APIError as e:
            raise LedgerError(f"users select error: {e.message}") from e
        return _from_row(resp.data[0]) if resp.data else None


class InMemoryProfileStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._profiles: Dict[str, PaymentProfile] = {}

    def put(self, profile: PaymentProfile) -> PaymentProfile:
        with self._lock:
            self._profiles[profile.user_id] = profile
            return profile

    def get_user(self, user_id: str) -> PaymentProfile:
        with self._lock:
            profile = self._profiles.get(user_id)
        if profile is None:
            raise UnknownUser(user_id)
        return profile

    def update_user(self, user_id: str, **fields: Any) -> PaymentProfile:
        with self._lock:
            profile = self._profiles.get(user_id)
            if profile is None:
                raise UnknownUser(user_id)
            profile = profile.model_copy(update=fields)
            self._profiles[user_id] = profile
            return profile

    def find_by_payout_account(self, payout_account_id: str) -> Optional[PaymentProfile]:
        with self._lock:
            return next((p for p in self._profiles.values() if p.payout_account_id == payout_account_id), None)

    def find_by_customer(self, customer_id: str) -> Optional[PaymentProfile]:
        with self._lock:
            return next((p for p in self._profiles.values() if p.payment_customer_id == customer_id), None)
