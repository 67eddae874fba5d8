"""Job lifecycle engine: job status transitions and the money that moves with them.

Lifecycle:
    open → accepted → in-progress → [completion-requested →] completed
    open | accepted | in-progress | completion-requested → cancelled

Payment by job type:
    fixed: authorize (hold) on start, capture on the creator's confirmation,
           void if cancelled before capture.
    tip:   nothing held; completing means charging a tip or explicitly skipping it.
    free:  no gateway calls at all.

Every operation names its actor explicitly and checks the role against the
job's creator/helper before anything else. Gateway calls happen before the
ledger write; the write is conditional on the status read at the start, so a
concurrent change surfaces as StaleState instead of being overwritten.
"""

from __future__ import annotations

import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Set

from .eligibility import EligibilityChecker
from .errors import (
    AlreadyAccepted,
    GatewayError,
    InvalidTransition,
    PayeeNotReady,
    PaymentSetupRequired,
    ReconciliationRequired,
    StaleState,
    TipDecisionRequired,
    ValidationError,
)
from .gateway import PaymentGateway, call_with_retry
from .ledger import OFFERS_TABLE, LedgerError, LedgerStore
from .models import (
    Actor,
    Job,
    JobStatus,
    NotificationKind,
    PayerAccount,
    PaymentProfile,
    PaymentStatus,
    PaymentType,
    Role,
)
from .money import Amount, positive_minor_units
from .notifications import Notifier
from .profiles import ProfileStore, UnknownUser

logger = logging.getLogger("neighbrs.lifecycle")

RECONCILIATION_TABLE = "payment_reconciliation"

# Valid transitions: {from_status: {allowed_to_statuses}}
_TRANSITIONS: Dict[JobStatus, Set[JobStatus]] = {
    JobStatus.OPEN: {JobStatus.ACCEPTED, JobStatus.CANCELLED},
    JobStatus.ACCEPTED: {JobStatus.IN_PROGRESS, JobStatus.CANCELLED},
    JobStatus.IN_PROGRESS: {
        JobStatus.COMPLETION_REQUESTED,
        JobStatus.COMPLETED,
        JobStatus.CANCELLED,
    },
    JobStatus.COMPLETION_REQUESTED: {JobStatus.COMPLETED, JobStatus.CANCELLED},
    # Terminal
    JobStatus.COMPLETED: set(),
    JobStatus.CANCELLED: set(),
}

# Processor states that must never be overwritten by a late webhook
_SETTLED = {PaymentStatus.CAPTURED, PaymentStatus.SUCCEEDED, PaymentStatus.VOIDED}

_CHARGED_NOT_RECORDED = (
    "Your payment went through but we couldn't update the job. "
    "It has been flagged for review; retrying is safe."
)
_RELEASED_NOT_RECORDED = (
    "The payment hold was released but we couldn't mark the job as cancelled. "
    "It has been flagged for review; retrying is safe."
)


def valid_transitions(status: JobStatus) -> Set[JobStatus]:
    return set(_TRANSITIONS.get(status, set()))


def is_terminal(status: JobStatus) -> bool:
    return not _TRANSITIONS.get(status)


class JobLifecycleEngine:
    def __init__(
        self,
        ledger: LedgerStore,
        profiles: ProfileStore,
        gateway: PaymentGateway,
        notifier: Notifier,
        eligibility: Optional[EligibilityChecker] = None,
        clock: Optional[Callable[[], datetime]] = None,
        retry_attempts: int = 3,
        retry_backoff_s: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._ledger = ledger
        self._profiles = profiles
        self._gateway = gateway
        self._notifier = notifier
        self._eligibility = eligibility or EligibilityChecker(
            profiles, gateway, attempts=retry_attempts, backoff_s=retry_backoff_s, sleep=sleep
        )
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._attempts = retry_attempts
        self._backoff_s = retry_backoff_s
        self._sleep = sleep

    def get_job(self, job_id: str) -> Job:
        return self._ledger.get(job_id)

    # ──────────────────────────────────────────────────────────────────────────
    # Posting and offers
    # ──────────────────────────────────────────────────────────────────────────
    def create_job(
        self,
        actor: Actor,
        title: str,
        payment_type: PaymentType,
        payment_amount: Amount = 0,
        description: Optional[str] = None,
        direct_request_helper_id: Optional[str] = None,
    ) -> Job:
        if actor.role != Role.CREATOR:
            raise InvalidTransition("Only a creator can post a job")
        if not title or not title.strip():
            raise ValidationError("A job needs a title")
        cents = 0
        if payment_type == PaymentType.FIXED:
            cents = positive_minor_units(payment_amount, "Payment amount")
        if direct_request_helper_id == actor.user_id:
            raise ValidationError("You can't request yourself for a job")

        job = self._ledger.create(
            Job(
                id=str(uuid.uuid4()),
                creator_id=actor.user_id,
                title=title.strip(),
                description=description,
                payment_type=payment_type,
                payment_amount_cents=cents,
                direct_request_helper_id=direct_request_helper_id,
                created_at=self._now(),
            )
        )
        logger.info(f"Job {job.id} posted by {actor.user_id} ({payment_type.value})")
        if direct_request_helper_id:
            self._notifier.notify(direct_request_helper_id, job.id, NotificationKind.JOB_OFFER)
        return job

    def submit_offer(self, job_id: str, actor: Actor, amount: Amount = 0, note: str = "") -> Job:
        job = self._ledger.get(job_id)
        if actor.role != Role.HELPER or actor.user_id == job.creator_id:
            raise InvalidTransition("You can't make an offer on your own job")
        self._require_status(job, {JobStatus.OPEN}, "make an offer on")
        if job.direct_request_helper_id and job.direct_request_helper_id != actor.user_id:
            raise InvalidTransition("This job was requested from another helper")
        cents = 0
        if job.payment_type == PaymentType.FIXED:
            cents = positive_minor_units(amount, "Offer amount")

        self._ledger.append(
            OFFERS_TABLE,
            {
                "id": str(uuid.uuid4()),
                "job_id": job.id,
                "helper_id": actor.user_id,
                "amount_cents": cents,
                "note": note or "",
                "created_at": self._now().isoformat(),
            },
        )
        self._notifier.notify(job.creator_id, job.id, NotificationKind.OFFER_RECEIVED)
        return self._ledger.get(job_id)

    def accept_offer(self, job_id: str, offer_id: str, actor: Actor) -> Job:
        job = self._ledger.get(job_id)
        self._authorize(job, actor, {Role.CREATOR}, "accept an offer")
        if job.status != JobStatus.OPEN:
            if job.helper_id:
                raise AlreadyAccepted("Another offer has already been accepted for this job")
            self._require_status(job, {JobStatus.OPEN}, "accept an offer on")

        offer = job.find_offer(offer_id)
        if offer is None:
            raise ValidationError("That offer doesn't belong to this job")
        if job.latest_offers()[offer.helper_id].id != offer.id:
            raise ValidationError("The helper has since updated this offer")

        patch: Dict[str, Any] = {
            "helper_id": offer.helper_id,
            "accepted_offer_id": offer.id,
            "accepted_at": self._now(),
        }
        if job.payment_type == PaymentType.FIXED:
            patch["payment_amount_cents"] = offer.amount_cents
        try:
            accepted = self._commit(job, JobStatus.ACCEPTED, patch)
        except StaleState:
            current = self._ledger.get(job_id)
            if current.helper_id:
                raise AlreadyAccepted("Another offer has already been accepted for this job")
            raise
        logger.info(f"Job {job_id}: offer {offer.id} from {offer.helper_id} accepted")
        return accepted

    # ──────────────────────────────────────────────────────────────────────────
    # Work
    # ──────────────────────────────────────────────────────────────────────────
    def start_job(self, job_id: str, actor: Actor, acknowledge_payee_not_ready: bool = False) -> Job:
        job = self._ledger.get(job_id)
        self._authorize(job, actor, {Role.CREATOR, Role.HELPER}, "start this job")
        self._require_status(job, {JobStatus.ACCEPTED}, "start")

        if job.payment_type != PaymentType.FIXED:
            return self._commit(job, JobStatus.IN_PROGRESS, {"started_at": self._now()})

        if job.payment_amount_cents <= 0:
            raise ValidationError("A fixed-price job needs a payment amount above zero")
        payer = self._payer(job.creator_id)
        payee_account = self._payee_account(job, acknowledge_payee_not_ready)

        charge = self._call(
            "authorize",
            lambda: self._gateway.authorize_charge(
                job.payment_amount_cents,
                payer,
                payee_account,
                {"job_id": job.id, "creator_id": job.creator_id, "helper_id": job.helper_id or ""},
                f"job-{job.id}-authorize-{payer.payment_method_id}",
            ),
        )
        if charge.status == PaymentStatus.REQUIRES_CONFIRMATION:
            charge = self._call("confirm", lambda: self._gateway.confirm_charge(charge.charge_id))
        if charge.status != PaymentStatus.AUTHORIZED:
            error = GatewayError(
                f"Your payment could not be authorized (status: {charge.status.value}). "
                "Check your payment method and try again.",
                transient=False,
            )
            # the intent exists at the processor but the job will never point at it
            self._record_reconciliation(job, charge.charge_id, f"left {charge.status.value}", error)
            raise error

        patch = {
            "started_at": self._now(),
            "payment_intent_id": charge.charge_id,
            "payment_status": PaymentStatus.AUTHORIZED,
        }
        try:
            started = self._commit(job, JobStatus.IN_PROGRESS, patch)
        except (StaleState, LedgerError) as e:
            # The hold exists at the processor but no job points at it
            self._record_reconciliation(job, charge.charge_id, "authorized", e)
            raise
        logger.info(f"Job {job_id} started with {charge.charge_id} holding {job.payment_amount_cents}")
        return started

    def request_completion(self, job_id: str, actor: Actor) -> Job:
        job = self._ledger.get(job_id)
        self._authorize(job, actor, {Role.HELPER}, "mark this job as done")
        self._require_status(job, {JobStatus.IN_PROGRESS}, "request completion of")
        updated = self._commit(job, JobStatus.COMPLETION_REQUESTED, {"helper_completed_at": self._now()})
        self._notifier.notify(job.creator_id, job.id, NotificationKind.COMPLETION_REQUESTED)
        return updated

    def confirm_completion(self, job_id: str, actor: Actor, skip_tip: bool = False) -> Job:
        job = self._ledger.get(job_id)
        self._authorize(job, actor, {Role.CREATOR}, "confirm completion")
        # The creator may finish directly from in-progress without waiting for the helper
        self._require_status(job, {JobStatus.IN_PROGRESS, JobStatus.COMPLETION_REQUESTED}, "complete")

        if job.payment_type == PaymentType.FIXED:
            if not job.payment_intent_id:
                raise InvalidTransition("This job has no authorized payment to release")
            charge = self._call(
                "capture",
                lambda: self._gateway.capture_charge(job.payment_intent_id, f"job-{job.id}-capture"),
            )
            if charge.status != PaymentStatus.CAPTURED:
                raise GatewayError(
                    f"The payment could not be released (status: {charge.status.value}). Try again.",
                    transient=False,
                )
            patch = {"completed_at": self._now(), "payment_status": PaymentStatus.CAPTURED}
            completed = self._commit_after_charge(job, JobStatus.COMPLETED, patch, charge.charge_id, "captured")
            logger.info(f"Job {job_id} completed; {charge.charge_id} captured")
        elif job.payment_type == PaymentType.TIP and not skip_tip:
            raise TipDecisionRequired("Add a tip or skip it to complete this job")
        else:
            completed = self._commit(job, JobStatus.COMPLETED, {"completed_at": self._now()})

        self._notifier.notify(job.helper_id, job.id, NotificationKind.COMPLETION_CONFIRMED)
        return completed

    def add_tip(self, job_id: str, actor: Actor, amount: Amount) -> Job:
        cents = positive_minor_units(amount, "Tip amount")
        job = self._ledger.get(job_id)
        self._authorize(job, actor, {Role.CREATOR}, "tip the helper")
        if job.payment_type != PaymentType.TIP:
            raise InvalidTransition("Only tip jobs take a tip")
        self._require_status(job, {JobStatus.IN_PROGRESS, JobStatus.COMPLETION_REQUESTED}, "tip on")

        payer = self._payer(job.creator_id)
        helper = self._profile(job.helper_id, "payee")
        if not helper.payout_account_id:
            raise PaymentSetupRequired("The helper has not set up their payment account yet", party="payee")

        charge = self._call(
            "tip",
            lambda: self._gateway.charge_immediate(
                cents,
                payer,
                helper.payout_account_id,
                {"job_id": job.id, "creator_id": job.creator_id, "helper_id": job.helper_id or "", "kind": "tip"},
                f"job-{job.id}-tip-{cents}-{payer.payment_method_id}",
            ),
        )
        if charge.status not in (PaymentStatus.SUCCEEDED, PaymentStatus.CAPTURED):
            raise GatewayError(
                f"Your tip could not be charged (status: {charge.status.value}). Check your payment method.",
                transient=False,
            )

        patch = {
            "completed_at": self._now(),
            "tip_amount_cents": cents,
            "tip_payment_intent_id": charge.charge_id,
        }
        completed = self._commit_after_charge(job, JobStatus.COMPLETED, patch, charge.charge_id, "tip charged")
        logger.info(f"Job {job_id} completed with a tip of {cents} ({charge.charge_id})")
        self._notifier.notify(job.helper_id, job.id, NotificationKind.COMPLETION_CONFIRMED)
        return completed

    def cancel_job(self, job_id: str, actor: Actor) -> Job:
        job = self._ledger.get(job_id)
        self._authorize(job, actor, {Role.CREATOR}, "cancel this job")
        self._require_status(
            job,
            {JobStatus.OPEN, JobStatus.ACCEPTED, JobStatus.IN_PROGRESS, JobStatus.COMPLETION_REQUESTED},
            "cancel",
        )
        patch: Dict[str, Any] = {"cancelled_at": self._now()}

        if job.payment_intent_id and job.payment_status not in _SETTLED:
            charge = self._call(
                "void",
                lambda: self._gateway.void_charge(job.payment_intent_id, f"job-{job.id}-void"),
            )
            patch["payment_status"] = charge.status
            cancelled = self._commit_after_charge(
                job, JobStatus.CANCELLED, patch, charge.charge_id, "voided", message=_RELEASED_NOT_RECORDED
            )
            logger.info(f"Job {job_id} cancelled; hold {charge.charge_id} released")
            return cancelled

        cancelled = self._commit(job, JobStatus.CANCELLED, patch)
        logger.info(f"Job {job_id} cancelled from {job.status.value}")
        return cancelled

    # ──────────────────────────────────────────────────────────────────────────
    # Processor → ledger
    # ──────────────────────────────────────────────────────────────────────────
    def sync_payment_status(self, payment_intent_id: str, status: PaymentStatus) -> Optional[Job]:
        """Mirror a processor-reported status onto the job holding that intent.

        Only ``payment_status`` changes; the job's own status never moves here.
        """
        job = self._ledger.find_by_payment_intent(payment_intent_id)
        if job is None:
            logger.info(f"No job holds payment intent {payment_intent_id}")
            return None
        if job.payment_status == status or job.payment_status in _SETTLED:
            return job
        return self._ledger.conditional_update(job.id, job.status, {"payment_status": status})

    # ──────────────────────────────────────────────────────────────────────────
    # Internals
    # ──────────────────────────────────────────────────────────────────────────
    def _now(self) -> datetime:
        return self._clock()

    def _authorize(self, job: Job, actor: Actor, roles: Set[Role], action: str) -> None:
        if actor.role not in roles:
            raise InvalidTransition(f"A {actor.role.value} can't {action}")
        if actor.role == Role.CREATOR and actor.user_id != job.creator_id:
            raise InvalidTransition(f"Only the job's creator can {action}")
        if actor.role == Role.HELPER and (not job.helper_id or actor.user_id != job.helper_id):
            raise InvalidTransition(f"Only the assigned helper can {action}")

    def _require_status(self, job: Job, allowed: Set[JobStatus], action: str) -> None:
        if job.status not in allowed:
            raise InvalidTransition(f"Can't {action} a job that is {job.status.value}")

    def _commit(self, job: Job, target: JobStatus, patch: Dict[str, Any]) -> Job:
        if target not in _TRANSITIONS[job.status]:
            raise InvalidTransition(f"Invalid job transition: {job.status.value} → {target.value}")
        return self._ledger.conditional_update(job.id, job.status, {**patch, "status": target})

    def _commit_after_charge(
        self,
        job: Job,
        target: JobStatus,
        patch: Dict[str, Any],
        charge_id: str,
        what: str,
        message: str = _CHARGED_NOT_RECORDED,
    ) -> Job:
        try:
            return self._commit(job, target, patch)
        except (StaleState, LedgerError) as e:
            self._record_reconciliation(job, charge_id, what, e)
            raise ReconciliationRequired(
                message,
                job_id=job.id,
                charge_id=charge_id,
            ) from e

    def _record_reconciliation(self, job: Job, charge_id: str, what: str, cause: Exception) -> None:
        logger.error(
            f"RECONCILE job {job.id}: charge {charge_id} {what} at the processor "
            f"but the job does not reflect it ({cause.__class__.__name__}: {cause})"
        )
        try:
            self._ledger.append(
                RECONCILIATION_TABLE,
                {
                    "job_id": job.id,
                    "charge_id": charge_id,
                    "event": what,
                    "job_status": job.status.value,
                    "error": str(cause),
                    "created_at": self._now().isoformat(),
                },
            )
        except Exception as e:
            logger.error(f"RECONCILE job {job.id}: could not store reconciliation record: {e}")

    def _call(self, op: str, fn: Callable[[], Any]) -> Any:
        return call_with_retry(op, fn, attempts=self._attempts, backoff_s=self._backoff_s, sleep=self._sleep)

    def _profile(self, user_id: Optional[str], party: str) -> PaymentProfile:
        try:
            return self._profiles.get_user(user_id or "")
        except UnknownUser:
            raise PaymentSetupRequired(f"No payment profile for user {user_id}", party=party)

    def _payer(self, creator_id: str) -> PayerAccount:
        if not self._eligibility.can_pay(creator_id):
            raise PaymentSetupRequired("Set up a payment method before paying for this job", party="payer")
        profile = self._profile(creator_id, "payer")
        return PayerAccount(
            customer_id=profile.payment_customer_id,
            payment_method_id=profile.default_payment_method_id,
        )

    def _payee_account(self, job: Job, acknowledge_not_ready: bool) -> str:
        helper = self._profile(job.helper_id, "payee")
        readiness = self._eligibility.can_receive(helper.payout_account_id)
        if readiness.reason == "no-account":
            raise PaymentSetupRequired("The helper has not set up a payment account yet", party="payee")
        if not readiness.ready:
            if not acknowledge_not_ready:
                raise PayeeNotReady(
                    "The helper hasn't finished payment setup. Start anyway? Their payout may be delayed.",
                    reason=readiness.reason,
                )
            logger.warning(f"Job {job.id} starting with payee {helper.payout_account_id} not ready ({readiness.reason})")
        return helper.payout_account_id
