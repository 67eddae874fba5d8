# neighbrs/routers/stripe_webhook.py
import logging

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request

from ..config import Settings, get_settings
from ..deps import get_engine, get_payment_setup
from ..errors import LifecycleError
from ..gateway import map_intent_status
from ..lifecycle import JobLifecycleEngine
from ..payment_setup import PaymentSetup

router = APIRouter(prefix="/stripe", tags=["stripe"])

logger = logging.getLogger("uvicorn")

_INTENT_EVENTS = {
    "payment_intent.succeeded",
    "payment_intent.canceled",
    "payment_intent.payment_failed",
    "payment_intent.amount_capturable_updated",
}


@router.post("/webhook")
async def webhook(
    req: Request,
    settings: Settings = Depends(get_settings),
    engine: JobLifecycleEngine = Depends(get_engine),
    setup: PaymentSetup = Depends(get_payment_setup),
):
    secret = settings.stripe_webhook_secret
    if not secret:
        logger.error("Stripe webhook secret missing (STRIPE_WEBHOOK_SECRET)")
        raise HTTPException(status_code=500, detail="Webhook secret not configured")

    payload = await req.body()
    sig = req.headers.get("stripe-signature")
    try:
        event = stripe.Webhook.construct_event(payload, sig, secret)
    except (ValueError, stripe.SignatureVerificationError) as e:
        logger.error(f"Stripe webhook verify FAILED: {e}; sig_header_present={bool(sig)}")
        raise HTTPException(status_code=400, detail=f"Webhook error: {e}")

    etype = event["type"]
    obj = event["data"]["object"]
    logger.info(f"Stripe webhook received: {etype}")

    try:
        if etype in _INTENT_EVENTS:
            job = engine.sync_payment_status(obj["id"], map_intent_status(obj))
            if job:
                logger.info(f"Job {job.id} payment status now {job.payment_status.value}")
        elif etype == "setup_intent.succeeded":
            if obj.get("customer") and obj.get("payment_method"):
                setup.record_payment_method(obj["customer"], obj["payment_method"])
        elif etype == "account.updated":
            ready = bool(obj.get("details_submitted") and obj.get("charges_enabled") and obj.get("payouts_enabled"))
            if setup.mark_payee_account(obj["id"], ready):
                logger.info(f"Connect account {obj['id']} ready={ready}")
        else:
            logger.info(f"Unhandled event type: {etype}")
    except LifecycleError as e:
        # non-2xx makes Stripe redeliver
        logger.error(f"Stripe webhook {etype} not applied: {e.message}")
        raise HTTPException(status_code=500, detail=e.message)

    return {"received": True}
