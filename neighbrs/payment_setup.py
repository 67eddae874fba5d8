"""Getting users ready to pay (customer + saved card) and to be paid (Connect account)."""

from __future__ import annotations

import logging
from typing import Optional, Tuple

from .eligibility import EligibilityChecker
from .errors import PaymentSetupRequired
from .gateway import PaymentGateway
from .models import PayeeAccountLink, PayeeReadiness, PaymentProfile
from .profiles import ProfileStore

logger = logging.getLogger("neighbrs.payment_setup")


class PaymentSetup:
    def __init__(self, profiles: ProfileStore, gateway: PaymentGateway, eligibility: EligibilityChecker) -> None:
        self._profiles = profiles
        self._gateway = gateway
        self._eligibility = eligibility

    # ---- payer side ----------------------------------------------------------
    def ensure_customer(self, user_id: str) -> str:
        profile = self._profiles.get_user(user_id)
        if profile.payment_customer_id:
            return profile.payment_customer_id
        customer_id = self._gateway.create_customer(profile)
        self._profiles.update_user(user_id, payment_customer_id=customer_id)
        logger.info(f"Created payment customer {customer_id} for {user_id}")
        return customer_id

    def create_setup_intent(self, user_id: str) -> str:
        profile = self._profiles.get_user(user_id)
        if not profile.payment_customer_id:
            raise PaymentSetupRequired("Create a payment customer before adding a card", party="payer")
        return self._gateway.create_setup_intent(profile.payment_customer_id)

    def record_payment_method(self, customer_id: str, payment_method_id: str) -> Optional[PaymentProfile]:
        profile = self._profiles.find_by_customer(customer_id)
        if profile is None:
            logger.info(f"No user found with customer ID {customer_id}")
            return None
        return self._profiles.update_user(profile.user_id, default_payment_method_id=payment_method_id)

    # ---- payee side ----------------------------------------------------------
    def create_payee_account(self, user_id: str) -> PayeeAccountLink:
        profile = self._profiles.get_user(user_id)
        if profile.payout_account_id:
            return PayeeAccountLink(payee_account=profile.payout_account_id, onboarding_url=None)
        link = self._gateway.create_payee_account(profile)
        self._profiles.update_user(user_id, payout_account_id=link.payee_account, payout_account_ready=False)
        logger.info(f"Created payee account {link.payee_account} for {user_id}")
        return link

    def create_onboarding_link(self, user_id: str) -> str:
        profile = self._profiles.get_user(user_id)
        if not profile.payout_account_id:
            raise PaymentSetupRequired("You don't have a payment account yet", party="payee")
        return self._gateway.create_onboarding_link(profile.payout_account_id)

    def refresh_payee_status(self, user_id: str) -> Tuple[bool, PayeeReadiness]:
        profile = self._profiles.get_user(user_id)
        readiness = self._eligibility.can_receive(profile.payout_account_id)
        # "unverified" means we couldn't check; don't persist a guess
        if readiness.reason != "unverified" and readiness.ready != profile.payout_account_ready:
            self._profiles.update_user(user_id, payout_account_ready=readiness.ready)
        return bool(profile.payout_account_id), readiness

    def mark_payee_account(self, payout_account_id: str, ready: bool) -> Optional[PaymentProfile]:
        profile = self._profiles.find_by_payout_account(payout_account_id)
        if profile is None:
            logger.info(f"No user found with payee account {payout_account_id}")
            return None
        return self._profiles.update_user(profile.user_id, payout_account_ready=ready)
