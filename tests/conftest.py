"""Shared fixtures: in-memory stores, a scripted gateway and a ready-made cast.

alice  - creator with a saved card
dave   - creator without a payment method
bob    - helper with a finished payee account
carol  - helper with a finished payee account
erin   - helper whose payee account is still onboarding
"""

from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest

from neighbrs.eligibility import EligibilityChecker
from neighbrs.errors import GatewayError
from neighbrs.ledger import InMemoryLedger
from neighbrs.lifecycle import JobLifecycleEngine
from neighbrs.models import (
    Actor,
    ChargeResult,
    PayeeAccountLink,
    PayeeAccountStatus,
    PaymentProfile,
    PaymentStatus,
    PaymentType,
    Role,
)
from neighbrs.notifications import LedgerNotifier
from neighbrs.profiles import InMemoryProfileStore


class FakeGateway:
    """Scripted stand-in for the processor.

    ``fail[op]`` is a queue of exceptions raised (in order) by the next calls to ``op``.
    """

    def __init__(self) -> None:
        self.calls: List[tuple] = []
        self.charges: Dict[str, PaymentStatus] = {}
        self.payees: Dict[str, PayeeAccountStatus] = {}
        self.fail: Dict[str, List[Exception]] = {}
        self.authorize_status = PaymentStatus.AUTHORIZED

    def ops(self) -> List[str]:
        return [c[0] for c in self.calls]

    def _maybe_fail(self, op: str) -> None:
        queue = self.fail.get(op)
        if queue:
            raise queue.pop(0)

    def _new_charge(self, status: PaymentStatus) -> ChargeResult:
        charge_id = f"pi_{len(self.charges) + 1}"
        self.charges[charge_id] = status
        return ChargeResult(charge_id=charge_id, status=status)

    def authorize_charge(self, amount_cents, payer, payee_account, metadata, idempotency_key):
        self.calls.append(("authorize", amount_cents, payee_account, idempotency_key))
        self._maybe_fail("authorize")
        return self._new_charge(self.authorize_status)

    def capture_charge(self, charge_id, idempotency_key):
        self.calls.append(("capture", charge_id))
        self._maybe_fail("capture")
        if self.charges.get(charge_id) not in (PaymentStatus.AUTHORIZED, PaymentStatus.CAPTURED):
            raise GatewayError("This charge can't be captured", transient=False)
        self.charges[charge_id] = PaymentStatus.CAPTURED
        return ChargeResult(charge_id=charge_id, status=PaymentStatus.CAPTURED)

    def confirm_charge(self, charge_id):
        self.calls.append(("confirm", charge_id))
        self._maybe_fail("confirm")
        self.charges[charge_id] = PaymentStatus.AUTHORIZED
        return ChargeResult(charge_id=charge_id, status=PaymentStatus.AUTHORIZED)

    def charge_immediate(self, amount_cents, payer, payee_account, metadata, idempotency_key):
        self.calls.append(("charge", amount_cents, payee_account, idempotency_key))
        self._maybe_fail("charge")
        return self._new_charge(PaymentStatus.SUCCEEDED)

    def void_charge(self, charge_id, idempotency_key):
        self.calls.append(("void", charge_id))
        self._maybe_fail("void")
        self.charges[charge_id] = PaymentStatus.VOIDED
        return ChargeResult(charge_id=charge_id, status=PaymentStatus.VOIDED)

    def get_payee_account_status(self, payee_account):
        self.calls.append(("payee_status", payee_account))
        self._maybe_fail("payee_status")
        return self.payees.get(payee_account, PayeeAccountStatus(exists=False))

    def create_payee_account(self, owner):
        self.calls.append(("create_payee", owner.user_id))
        account = f"acct_{owner.user_id}"
        self.payees[account] = PayeeAccountStatus(exists=True)
        return PayeeAccountLink(payee_account=account, onboarding_url=f"https://connect.test/{account}")

    def create_onboarding_link(self, payee_account):
        self.calls.append(("onboarding_link", payee_account))
        return f"https://connect.test/{payee_account}/again"

    def create_customer(self, owner):
        self.calls.append(("create_customer", owner.user_id))
        return f"cus_{owner.user_id}"

    def create_setup_intent(self, customer_id):
        self.calls.append(("setup_intent", customer_id))
        return f"seti_{customer_id}_secret"


READY = PayeeAccountStatus(exists=True, ready_to_receive=True, onboarding_complete=True)
ONBOARDING = PayeeAccountStatus(exists=True, ready_to_receive=False, onboarding_complete=False)


class StepClock:
    """Deterministic clock that advances one minute per reading."""

    def __init__(self) -> None:
        self.current = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.current += timedelta(minutes=1)
        return self.current


@pytest.fixture
def clock() -> StepClock:
    return StepClock()


@pytest.fixture
def ledger() -> InMemoryLedger:
    return InMemoryLedger()


@pytest.fixture
def gateway() -> FakeGateway:
    gw = FakeGateway()
    gw.payees["acct_bob"] = READY
    gw.payees["acct_carol"] = READY
    gw.payees["acct_erin"] = ONBOARDING
    return gw


@pytest.fixture
def profiles() -> InMemoryProfileStore:
    store = InMemoryProfileStore()
    store.put(PaymentProfile(user_id="alice", email="alice@example.com", payment_customer_id="cus_alice",
                             default_payment_method_id="pm_alice"))
    store.put(PaymentProfile(user_id="dave", email="dave@example.com"))
    store.put(PaymentProfile(user_id="bob", payout_account_id="acct_bob", payout_account_ready=True))
    store.put(PaymentProfile(user_id="carol", payout_account_id="acct_carol", payout_account_ready=True))
    store.put(PaymentProfile(user_id="erin", payout_account_id="acct_erin"))
    store.put(PaymentProfile(user_id="frank"))
    return store


@pytest.fixture
def engine(ledger, profiles, gateway, clock) -> JobLifecycleEngine:
    return JobLifecycleEngine(
        ledger,
        profiles,
        gateway,
        LedgerNotifier(ledger, clock=clock),
        eligibility=EligibilityChecker(profiles, gateway, backoff_s=0, sleep=lambda _: None),
        clock=clock,
        retry_backoff_s=0,
        sleep=lambda _: None,
    )


def creator(user_id: str = "alice") -> Actor:
    return Actor(user_id=user_id, role=Role.CREATOR)


def helper(user_id: str = "bob") -> Actor:
    return Actor(user_id=user_id, role=Role.HELPER)


@pytest.fixture
def accepted_job(engine):
    """Factory: post a job, have a helper offer, accept it."""

    def _make(
        payment_type: PaymentType = PaymentType.FIXED,
        amount: str = "50.00",
        owner: str = "alice",
        helper_id: str = "bob",
        offer_amount: Optional[str] = None,
    ):
        job = engine.create_job(creator(owner), "Pick up groceries", payment_type, payment_amount=amount)
        job = engine.submit_offer(job.id, helper(helper_id), amount=offer_amount or amount, note="On my way")
        return engine.accept_offer(job.id, job.offers[-1].id, creator(owner))

    return _make
