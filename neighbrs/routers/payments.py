# neighbrs/routers/payments.py
import logging

from fastapi import APIRouter, Depends, HTTPException

from ..auth import verify_and_get_user_id
from ..deps import get_payment_setup, to_http
from ..errors import LifecycleError
from ..models import ConnectAccountOut, ConnectStatusOut, SetupIntentOut
from ..payment_setup import PaymentSetup
from ..profiles import UnknownUser

router = APIRouter(prefix="/payments", tags=["payments"])

logger = logging.getLogger("uvicorn")


# ---- Payer: customer + saved card -------------------------------------------
@router.post("/customer")
def create_customer(
    user_id: str = Depends(verify_and_get_user_id),
    setup: PaymentSetup = Depends(get_payment_setup),
):
    try:
        return {"customer_id": setup.ensure_customer(user_id)}
    except UnknownUser:
        raise HTTPException(status_code=404, detail="User not found")
    except LifecycleError as e:
        logger.error(f"Payment customer create failed for {user_id}: {e.message}")
        raise to_http(e)


@router.post("/setup-intent", response_model=SetupIntentOut)
def create_setup_intent(
    user_id: str = Depends(verify_and_get_user_id),
    setup: PaymentSetup = Depends(get_payment_setup),
):
    try:
        return {"client_secret": setup.create_setup_intent(user_id)}
    except UnknownUser:
        raise HTTPException(status_code=404, detail="User not found")
    except LifecycleError as e:
        raise to_http(e)


# ---- Payee: Connect account -------------------------------------------------
@router.post("/connect-account", response_model=ConnectAccountOut)
def create_connect_account(
    user_id: str = Depends(verify_and_get_user_id),
    setup: PaymentSetup = Depends(get_payment_setup),
):
    try:
        link = setup.create_payee_account(user_id)
    except UnknownUser:
        raise HTTPException(status_code=404, detail="User not found")
    except LifecycleError as e:
        logger.error(f"Connect account create failed for {user_id}: {e.message}")
        raise to_http(e)
    return {"account_id": link.payee_account, "account_link_url": link.onboarding_url}


@router.post("/account-link")
def create_account_link(
    user_id: str = Depends(verify_and_get_user_id),
    setup: PaymentSetup = Depends(get_payment_setup),
):
    try:
        return {"account_link_url": setup.create_onboarding_link(user_id)}
    except UnknownUser:
        raise HTTPException(status_code=404, detail="User not found")
    except LifecycleError as e:
        raise to_http(e)


@router.get("/connect-account/status", response_model=ConnectStatusOut)
def connect_account_status(
    user_id: str = Depends(verify_and_get_user_id),
    setup: PaymentSetup = Depends(get_payment_setup),
):
    try:
        has_account, readiness = setup.refresh_payee_status(user_id)
    except UnknownUser:
        raise HTTPException(status_code=404, detail="User not found")
    except LifecycleError as e:
        raise to_http(e)
    return {"has_account": has_account, "ready": readiness.ready, "reason": readiness.reason}
