# neighbrs/gateway.py
"""Payment gateway adapter.

The engine only sees ``PaymentGateway``; ``StripeGateway`` is the one real
implementation. Amounts cross this boundary as integer minor units and every
money-moving call carries an idempotency key, so a retried request can't
charge twice.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Optional, Protocol, TypeVar, runtime_checkable

import stripe

from .errors import GatewayError
from .models import (
    ChargeResult,
    PayeeAccountLink,
    PayeeAccountStatus,
    PayerAccount,
    PaymentProfile,
    PaymentStatus,
)

logger = logging.getLogger("neighbrs.gateway")

T = TypeVar("T")


@runtime_checkable
class PaymentGateway(Protocol):
    def authorize_charge(
        self,
        amount_cents: int,
        payer: PayerAccount,
        payee_account: str,
        metadata: Dict[str, str],
        idempotency_key: str,
    ) -> ChargeResult: ...

    def capture_charge(self, charge_id: str, idempotency_key: str) -> ChargeResult: ...

    def confirm_charge(self, charge_id: str) -> ChargeResult: ...

    def charge_immediate(
        self,
        amount_cents: int,
        payer: PayerAccount,
        payee_account: str,
        metadata: Dict[str, str],
        idempotency_key: str,
    ) -> ChargeResult: ...

    def void_charge(self, charge_id: str, idempotency_key: str) -> ChargeResult: ...

    def get_payee_account_status(self, payee_account: Optional[str]) -> PayeeAccountStatus: ...

    def create_payee_account(self, owner: PaymentProfile) -> PayeeAccountLink: ...

    def create_onboarding_link(self, payee_account: str) -> str: ...

    def create_customer(self, owner: PaymentProfile) -> str: ...

    def create_setup_intent(self, customer_id: str) -> str: ...


def call_with_retry(
    op: str,
    fn: Callable[[], T],
    attempts: int = 3,
    backoff_s: float = 0.5,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run a gateway call, retrying transient failures with exponential backoff.

    Permanent failures and the last transient failure propagate unchanged.
    """
    attempt = 1
    while True:
        try:
            return fn()
        except GatewayError as e:
            if not e.transient or attempt >= attempts:
                raise
            delay = backoff_s * (2 ** (attempt - 1))  # 0.5, 1, 2...
            logger.warning(f"{op} failed transiently (attempt {attempt}/{attempts}): {e.message}; retrying in {delay}s")
            sleep(delay)
            attempt += 1


# ──────────────────────────────────────────────────────────────────────────────
# Stripe
# ──────────────────────────────────────────────────────────────────────────────
# A Stripe 500 (APIError) is stored under the idempotency key and replayed on resend
_TRANSIENT = (stripe.APIConnectionError, stripe.RateLimitError)

_INTENT_STATUS = {
    "requires_confirmation": PaymentStatus.REQUIRES_CONFIRMATION,
    "requires_action": PaymentStatus.REQUIRES_ACTION,
    "processing": PaymentStatus.PROCESSING,
    "requires_capture": PaymentStatus.AUTHORIZED,
    "canceled": PaymentStatus.VOIDED,
    "requires_payment_method": PaymentStatus.FAILED,
}


def map_intent_status(intent: Any) -> PaymentStatus:
    status = intent.get("status")
    if status == "succeeded":
        # a manual-capture intent only succeeds by being captured
        if intent.get("capture_method") == "manual":
            return PaymentStatus.CAPTURED
        return PaymentStatus.SUCCEEDED
    return _INTENT_STATUS.get(status, PaymentStatus.FAILED)


def _to_gateway_error(e: stripe.StripeError) -> GatewayError:
    message = getattr(e, "user_message", None) or str(e) or e.__class__.__name__
    return GatewayError(message, transient=isinstance(e, _TRANSIENT), processor_code=getattr(e, "code", None))


class StripeGateway:
    def __init__(
        self,
        api_key: str,
        currency: str = "gbp",
        timeout_s: float = 20.0,
        refresh_url: str = "",
        return_url: str = "",
    ) -> None:
        if not api_key:
            raise RuntimeError("Missing STRIPE_SECRET_KEY")
        self._api_key = api_key
        self._currency = currency
        self._refresh_url = refresh_url
        self._return_url = return_url
        # timeouts surface as APIConnectionError, i.e. transient
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout_s)

    def _call(self, op: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return fn(*args, api_key=self._api_key, **kwargs)
        except stripe.StripeError as e:
            logger.error(f"Stripe {op} failed: {e.__class__.__name__}: {e}")
            raise _to_gateway_error(e) from e

    def _charge(self, intent: Any) -> ChargeResult:
        return ChargeResult(charge_id=intent["id"], status=map_intent_status(intent))

    # ---- charges -------------------------------------------------------------
    def authorize_charge(self, amount_cents, payer, payee_account, metadata, idempotency_key) -> ChargeResult:
        intent = self._call(
            "authorize",
            stripe.PaymentIntent.create,
            amount=amount_cents,
            currency=self._currency,
            customer=payer.customer_id,
            payment_method=payer.payment_method_id,
            capture_method="manual",  # hold now, release on completion
            confirm=True,
            off_session=True,
            transfer_data={"destination": payee_account},
            metadata=metadata,
            idempotency_key=idempotency_key,
        )
        logger.info(f"Authorized {intent['id']} for {amount_cents} {self._currency} (job {metadata.get('job_id')})")
        return self._charge(intent)

    def capture_charge(self, charge_id, idempotency_key) -> ChargeResult:
        try:
            intent = stripe.PaymentIntent.capture(charge_id, api_key=self._api_key, idempotency_key=idempotency_key)
        except stripe.InvalidRequestError as e:
            # Capturing twice is an error at Stripe; report the existing state instead
            existing = self._call("retrieve", stripe.PaymentIntent.retrieve, charge_id)
            if existing.get("status") == "succeeded":
                logger.info(f"{charge_id} already captured")
                return ChargeResult(charge_id=charge_id, status=PaymentStatus.CAPTURED)
            raise _to_gateway_error(e) from e
        except stripe.StripeError as e:
            logger.error(f"Stripe capture failed: {e.__class__.__name__}: {e}")
            raise _to_gateway_error(e) from e
        logger.info(f"Captured {charge_id}")
        return self._charge(intent)

    def confirm_charge(self, charge_id) -> ChargeResult:
        intent = self._call("confirm", stripe.PaymentIntent.confirm, charge_id, off_session=True)
        return self._charge(intent)

    def charge_immediate(self, amount_cents, payer, payee_account, metadata, idempotency_key) -> ChargeResult:
        intent = self._call(
            "charge",
            stripe.PaymentIntent.create,
            amount=amount_cents,
            currency=self._currency,
            customer=payer.customer_id,
            payment_method=payer.payment_method_id,
            confirm=True,
            off_session=True,
            transfer_data={"destination": payee_account},
            metadata=metadata,
            idempotency_key=idempotency_key,
        )
        logger.info(f"Charged {intent['id']} for {amount_cents} {self._currency} (job {metadata.get('job_id')})")
        return self._charge(intent)

    def void_charge(self, charge_id, idempotency_key) -> ChargeResult:
        try:
            intent = stripe.PaymentIntent.cancel(charge_id, api_key=self._api_key, idempotency_key=idempotency_key)
        except stripe.InvalidRequestError as e:
            existing = self._call("retrieve", stripe.PaymentIntent.retrieve, charge_id)
            if existing.get("status") == "canceled":
                return ChargeResult(charge_id=charge_id, status=PaymentStatus.VOIDED)
            raise _to_gateway_error(e) from e
        except stripe.StripeError as e:
            logger.error(f"Stripe void failed: {e.__class__.__name__}: {e}")
            raise _to_gateway_error(e) from e
        logger.info(f"Voided {charge_id}")
        return self._charge(intent)

    # ---- payee (Connect) accounts ---------------------------------------------
    def get_payee_account_status(self, payee_account) -> PayeeAccountStatus:
        if not payee_account:
            return PayeeAccountStatus(exists=False)
        try:
            account = stripe.Account.retrieve(payee_account, api_key=self._api_key)
        except stripe.InvalidRequestError as e:
            if getattr(e, "code", None) == "resource_missing":
                return PayeeAccountStatus(exists=False)
            raise _to_gateway_error(e) from e
        except stripe.StripeError as e:
            raise _to_gateway_error(e) from e
        charges = bool(account.get("charges_enabled"))
        payouts = bool(account.get("payouts_enabled"))
        return PayeeAccountStatus(
            exists=True,
            ready_to_receive=charges and payouts,
            onboarding_complete=bool(account.get("details_submitted")) and charges and payouts,
        )

    def create_payee_account(self, owner) -> PayeeAccountLink:
        account = self._call(
            "create account",
            stripe.Account.create,
            type="standard",
            email=owner.email,
            metadata={"user_id": owner.user_id},
            idempotency_key=f"connect-account-{owner.user_id}",
        )
        return PayeeAccountLink(payee_account=account["id"], onboarding_url=self.create_onboarding_link(account["id"]))

    def create_onboarding_link(self, payee_account) -> str:
        link = self._call(
            "account link",
            stripe.AccountLink.create,
            account=payee_account,
            refresh_url=f"{self._refresh_url}?account_id={payee_account}",
            return_url=f"{self._return_url}?account_id={payee_account}",
            type="account_onboarding",
        )
        return link["url"]

    # ---- payer setup ---------------------------------------------------------
    def create_customer(self, owner) -> str:
        customer = self._call(
            "create customer",
            stripe.Customer.create,
            email=owner.email,
            name=owner.full_name,
            metadata={"user_id": owner.user_id},
            idempotency_key=f"customer-{owner.user_id}",
        )
        return customer["id"]

    def create_setup_intent(self, customer_id) -> str:
        intent = self._call("setup intent", stripe.SetupIntent.create, customer=customer_id, usage="off_session")
        return intent["client_secret"]
