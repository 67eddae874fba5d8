from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from .errors import GatewayError
from .gateway import PaymentGateway, call_with_retry
from .models import PayeeReadiness
from .profiles import ProfileStore, UnknownUser

logger = logging.getLogger("neighbrs.eligibility")


class EligibilityChecker:
    """Answers "can this user pay?" and "can this account be paid?".

    ``failure_policy`` decides what happens when the payee's status can't be
    fetched at all: "block" re-raises the gateway error, "allow" reports the
    payee as ready with reason "unverified".
    """

    def __init__(
        self,
        profiles: ProfileStore,
        gateway: PaymentGateway,
        failure_policy: str = "block",
        attempts: int = 3,
        backoff_s: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if failure_policy not in ("block", "allow"):
            raise ValueError(f"Unknown payee check failure policy: {failure_policy}")
        self._profiles = profiles
        self._gateway = gateway
        self._policy = failure_policy
        self._attempts = attempts
        self._backoff_s = backoff_s
        self._sleep = sleep

    def can_pay(self, user_id: str) -> bool:
        try:
            return self._profiles.get_user(user_id).has_payment_method
        except UnknownUser:
            return False

    def can_receive(self, payee_account: Optional[str]) -> PayeeReadiness:
        if not payee_account:
            return PayeeReadiness(ready=False, reason="no-account")
        try:
            status = call_with_retry(
                "payee status",
                lambda: self._gateway.get_payee_account_status(payee_account),
                attempts=self._attempts,
                backoff_s=self._backoff_s,
                sleep=self._sleep,
            )
        except GatewayError as e:
            if self._policy == "allow":
                logger.warning(f"Could not verify payee account {payee_account} ({e.message}); allowing per policy")
                return PayeeReadiness(ready=True, reason="unverified")
            raise
        if not status.exists:
            return PayeeReadiness(ready=False, reason="no-account")
        if status.onboarding_complete and status.ready_to_receive:
            return PayeeReadiness(ready=True, reason="ready")
        return PayeeReadiness(ready=False, reason="onboarding-incomplete")
