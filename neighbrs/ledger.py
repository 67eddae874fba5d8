"""Ledger store: the single source of truth for jobs, offers and payment state.

Every status change goes through ``conditional_update``, which only writes
when the row still has the status the caller read (``UPDATE ... WHERE id = ?
AND status = ?``). That check is the engine's only concurrency control.
"""

from __future__ import annotations

import logging
import threading
import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from postgrest.exceptions import APIError
from supabase import Client

from .errors import JobNotFound, LifecycleError, StaleState
from .models import DERIVED_JOB_FIELDS, Job, JobStatus, Offer

logger = logging.getLogger("neighbrs.ledger")

JOBS_TABLE = "jobs"
OFFERS_TABLE = "job_offers"


class LedgerError(LifecycleError):
    """The store itself failed (network, constraint, permissions)."""

    code = "store_unavailable"


@runtime_checkable
class LedgerStore(Protocol):
    def get(self, job_id: str) -> Job: ...

    def create(self, job: Job) -> Job: ...

    def conditional_update(self, job_id: str, expected_status: JobStatus, patch: Dict[str, Any]) -> Job: ...

    def append(self, collection: str, record: Dict[str, Any]) -> str: ...

    def find_by_payment_intent(self, payment_intent_id: str) -> Optional[Job]: ...

    def ping(self) -> bool: ...


def _encode(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, dict):
        return {k: _encode(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_encode(v) for v in value]
    return value


def _job_row(job: Job) -> Dict[str, Any]:
    return job.model_dump(mode="json", exclude=DERIVED_JOB_FIELDS)


# ──────────────────────────────────────────────────────────────────────────────
# Supabase (service role, bypasses RLS on the server)
# ──────────────────────────────────────────────────────────────────────────────
class SupabaseLedger:
    def __init__(self, client: Client) -> None:
        self._sb = client

    def get(self, job_id: str) -> Job:
        row = self._select_job(job_id)
        if row is None:
            raise JobNotFound(job_id)
        return self._hydrate(row)

    def create(self, job: Job) -> Job:
        try:
            resp = self._sb.table(JOBS_TABLE).insert(_job_row(job)).execute()
        except APIError as e:
            raise LedgerError(f"jobs insert error: {e.message}") from e
        return self._hydrate(resp.data[0])

    def conditional_update(self, job_id: str, expected_status: JobStatus, patch: Dict[str, Any]) -> Job:
        try:
            resp = (
                self._sb.table(JOBS_TABLE)
                .update(_encode(patch))
                .eq("id", job_id)
                .eq("status", expected_status.value)
                .execute()
            )
        except APIError as e:
            raise LedgerError(f"jobs update error: {e.message}") from e

        if resp.data:
            return self._hydrate(resp.data[0])

        # Nothing matched: either the job is gone or someone else moved it
        current = self._select_job(job_id)
        if current is None:
            raise JobNotFound(job_id)
        logger.warning(
            f"Conditional update lost on job {job_id}: "
            f"expected status '{expected_status.value}', found '{current['status']}'"
        )
        raise StaleState(f"Job {job_id} changed while you were working on it. Refresh and try again.")

    def append(self, collection: str, record: Dict[str, Any]) -> str:
        row = _encode(record)
        row.setdefault("id", str(uuid.uuid4()))
        try:
            resp = self._sb.table(collection).insert(row).execute()
        except APIError as e:
            raise LedgerError(f"{collection} insert error: {e.message}") from e
        return resp.data[0]["id"] if resp.data else row["id"]

    def find_by_payment_intent(self, payment_intent_id: str) -> Optional[Job]:
        try:
            resp = (
                self._sb.table(JOBS_TABLE)
                .select("*")
                .eq("payment_intent_id", payment_intent_id)
                .limit(1)
                .execute()
            )
        except APIError as e:
            raise LedgerError(f"jobs select error: {e.message}") from e
        return self._hydrate(resp.data[0]) if resp.data else None

    def ping(self) -> bool:
        self._sb.table(JOBS_TABLE).select("id").limit(1).execute()
        return True

    def _select_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        try:
            resp = self._sb.table(JOBS_TABLE).select("*").eq("id", job_id).limit(1).execute()
        except APIError as e:
            raise LedgerError(f"jobs select error: {e.message}") from e
        return resp.data[0] if resp.data else None

    def _hydrate(self, row: Dict[str, Any]) -> Job:
        try:
            resp = (
                self._sb.table(OFFERS_TABLE)
                .select("*")
                .eq("job_id", row["id"])
                .order("created_at")
                .execute()
            )
        except APIError as e:
            raise LedgerError(f"job_offers select error: {e.message}") from e
        offers = [Offer(**o) for o in resp.data or []]
        return Job(**{k: v for k, v in row.items() if k not in DERIVED_JOB_FIELDS}, offers=offers)


# ──────────────────────────────────────────────────────────────────────────────
# In-memory (local runs and tests). Same contract, one lock for all writes.
# ──────────────────────────────────────────────────────────────────────────────
class InMemoryLedger:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._jobs: Dict[str, Job] = {}
        self._collections: Dict[str, List[Dict[str, Any]]] = {}

    def get(self, job_id: str) -> Job:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFound(job_id)
            return self._hydrate(job)

    def create(self, job: Job) -> Job:
        with self._lock:
            if job.id in self._jobs:
                raise LedgerError(f"Job ID already exists: {job.id}")
            self._jobs[job.id] = job.model_copy(update={"offers": []})
            return self._hydrate(self._jobs[job.id])

    def conditional_update(self, job_id: str, expected_status: JobStatus, patch: Dict[str, Any]) -> Job:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFound(job_id)
            if job.status != expected_status:
                logger.warning(
                    f"Conditional update lost on job {job_id}: "
                    f"expected status '{expected_status.value}', found '{job.status.value}'"
                )
                raise StaleState(f"Job {job_id} changed while you were working on it. Refresh and try again.")
            updated = Job(**{**job.model_dump(exclude=DERIVED_JOB_FIELDS), **patch})
            self._jobs[job_id] = updated
            return self._hydrate(updated)

    def append(self, collection: str, record: Dict[str, Any]) -> str:
        with self._lock:
            row = dict(record)
            row.setdefault("id", str(uuid.uuid4()))
            self._collections.setdefault(collection, []).append(row)
            return row["id"]

    def find_by_payment_intent(self, payment_intent_id: str) -> Optional[Job]:
        with self._lock:
            for job in self._jobs.values():
                if job.payment_intent_id == payment_intent_id:
                    return self._hydrate(job)
            return None

    def ping(self) -> bool:
        return True

    def records(self, collection: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [dict(r) for r in self._collections.get(collection, [])]

    def _hydrate(self, job: Job) -> Job:
        offers = [Offer(**o) for o in self._collections.get(OFFERS_TABLE, []) if o["job_id"] == job.id]
        return job.model_copy(update={"offers": offers})
