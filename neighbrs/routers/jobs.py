# neighbrs/routers/jobs.py
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from ..auth import verify_and_get_user_id
from ..deps import get_engine, to_http
from ..errors import LifecycleError
from ..lifecycle import JobLifecycleEngine
from ..models import (
    Actor,
    ConfirmCompletionIn,
    Job,
    JobIn,
    OfferIn,
    Role,
    StartJobIn,
    TipIn,
)

logger = logging.getLogger("uvicorn")

router = APIRouter(prefix="/jobs", tags=["jobs"])


def _creator(user_id: str) -> Actor:
    return Actor(user_id=user_id, role=Role.CREATOR)


def _helper(user_id: str) -> Actor:
    return Actor(user_id=user_id, role=Role.HELPER)


# ──────────────────────────────────────────────────────────────────────────────
# POST /jobs: post a job, optionally as a direct request to one helper
# ──────────────────────────────────────────────────────────────────────────────
@router.post("", response_model=Job, status_code=201)
def create_job(
    payload: JobIn,
    user_id: str = Depends(verify_and_get_user_id),
    engine: JobLifecycleEngine = Depends(get_engine),
):
    try:
        return engine.create_job(
            _creator(user_id),
            payload.title,
            payload.payment_type,
            payment_amount=payload.payment_amount,
            description=payload.description,
            direct_request_helper_id=payload.direct_request_helper_id,
        )
    except LifecycleError as e:
        raise to_http(e)


@router.get("/{job_id}", response_model=Job)
def get_job(
    job_id: str,
    user_id: str = Depends(verify_and_get_user_id),
    engine: JobLifecycleEngine = Depends(get_engine),
):
    try:
        return engine.get_job(job_id)
    except LifecycleError as e:
        raise to_http(e)


# ──────────────────────────────────────────────────────────────────────────────
# Offers
# ──────────────────────────────────────────────────────────────────────────────
@router.post("/{job_id}/offers", response_model=Job, status_code=201)
def submit_offer(
    job_id: str,
    payload: OfferIn,
    user_id: str = Depends(verify_and_get_user_id),
    engine: JobLifecycleEngine = Depends(get_engine),
):
    try:
        return engine.submit_offer(job_id, _helper(user_id), amount=payload.amount, note=payload.note)
    except LifecycleError as e:
        raise to_http(e)


@router.post("/{job_id}/offers/{offer_id}/accept", response_model=Job)
def accept_offer(
    job_id: str,
    offer_id: str,
    user_id: str = Depends(verify_and_get_user_id),
    engine: JobLifecycleEngine = Depends(get_engine),
):
    try:
        return engine.accept_offer(job_id, offer_id, _creator(user_id))
    except LifecycleError as e:
        raise to_http(e)


# ──────────────────────────────────────────────────────────────────────────────
# Lifecycle transitions
# ──────────────────────────────────────────────────────────────────────────────
@router.post("/{job_id}/start", response_model=Job)
def start_job(
    job_id: str,
    payload: StartJobIn,
    user_id: str = Depends(verify_and_get_user_id),
    engine: JobLifecycleEngine = Depends(get_engine),
):
    try:
        return engine.start_job(
            job_id,
            Actor(user_id=user_id, role=payload.role),
            acknowledge_payee_not_ready=payload.acknowledge_payee_not_ready,
        )
    except LifecycleError as e:
        logger.warning(f"start_job {job_id} by {user_id} failed: {e.code}: {e.message}")
        raise to_http(e)


@router.post("/{job_id}/request-completion", response_model=Job)
def request_completion(
    job_id: str,
    user_id: str = Depends(verify_and_get_user_id),
    engine: JobLifecycleEngine = Depends(get_engine),
):
    try:
        return engine.request_completion(job_id, _helper(user_id))
    except LifecycleError as e:
        raise to_http(e)


@router.post("/{job_id}/confirm-completion", response_model=Job)
def confirm_completion(
    job_id: str,
    payload: ConfirmCompletionIn = ConfirmCompletionIn(),
    user_id: str = Depends(verify_and_get_user_id),
    engine: JobLifecycleEngine = Depends(get_engine),
):
    try:
        return engine.confirm_completion(job_id, _creator(user_id), skip_tip=payload.skip_tip)
    except LifecycleError as e:
        logger.warning(f"confirm_completion {job_id} by {user_id} failed: {e.code}: {e.message}")
        raise to_http(e)


@router.post("/{job_id}/tip", response_model=Job)
def add_tip(
    job_id: str,
    payload: TipIn,
    user_id: str = Depends(verify_and_get_user_id),
    engine: JobLifecycleEngine = Depends(get_engine),
):
    try:
        return engine.add_tip(job_id, _creator(user_id), payload.amount)
    except LifecycleError as e:
        logger.warning(f"add_tip {job_id} by {user_id} failed: {e.code}: {e.message}")
        raise to_http(e)


@router.post("/{job_id}/cancel", response_model=Job)
def cancel_job(
    job_id: str,
    user_id: str = Depends(verify_and_get_user_id),
    engine: JobLifecycleEngine = Depends(get_engine),
):
    try:
        return engine.cancel_job(job_id, _creator(user_id))
    except LifecycleError as e:
        raise to_http(e)
