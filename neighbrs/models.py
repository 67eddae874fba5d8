# neighbrs/models.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, computed_field

from .money import from_minor_units


class JobStatus(str, Enum):
    OPEN = "open"
    ACCEPTED = "accepted"
    IN_PROGRESS = "in-progress"
    COMPLETION_REQUESTED = "completion-requested"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PaymentType(str, Enum):
    FIXED = "fixed"
    TIP = "tip"
    FREE = "free"


class PaymentStatus(str, Enum):
    """Our mirror of the processor's charge status."""

    REQUIRES_CONFIRMATION = "requires_confirmation"
    REQUIRES_ACTION = "requires_action"
    PROCESSING = "processing"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    SUCCEEDED = "succeeded"
    VOIDED = "voided"
    FAILED = "failed"


class Role(str, Enum):
    CREATOR = "creator"
    HELPER = "helper"


class NotificationKind(str, Enum):
    COMPLETION_REQUESTED = "completion-requested"
    COMPLETION_CONFIRMED = "completion-confirmed"
    OFFER_RECEIVED = "offer-received"
    JOB_OFFER = "job-offer"


class Actor(BaseModel):
    user_id: str
    role: Role


class Offer(BaseModel):
    id: str
    job_id: str
    helper_id: str
    amount_cents: int = Field(0, ge=0)
    note: str = ""
    created_at: datetime

    @computed_field
    @property
    def amount(self) -> Decimal:
        return from_minor_units(self.amount_cents)


class Job(BaseModel):
    id: str
    creator_id: str
    helper_id: Optional[str] = None
    title: str
    description: Optional[str] = None
    payment_type: PaymentType
    payment_amount_cents: int = Field(0, ge=0)
    status: JobStatus = JobStatus.OPEN
    payment_intent_id: Optional[str] = None
    payment_status: Optional[PaymentStatus] = None
    tip_amount_cents: Optional[int] = None
    tip_payment_intent_id: Optional[str] = None
    accepted_offer_id: Optional[str] = None
    direct_request_helper_id: Optional[str] = None
    offers: List[Offer] = Field(default_factory=list)
    created_at: datetime
    accepted_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    helper_completed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    @computed_field
    @property
    def payment_amount(self) -> Decimal:
        return from_minor_units(self.payment_amount_cents)

    @computed_field
    @property
    def tip_amount(self) -> Optional[Decimal]:
        if self.tip_amount_cents is None:
            return None
        return from_minor_units(self.tip_amount_cents)

    def latest_offers(self) -> Dict[str, Offer]:
        """Each helper's most recent offer; resubmitting supersedes the earlier one."""
        latest: Dict[str, Offer] = {}
        for offer in self.offers:
            latest[offer.helper_id] = offer
        return latest

    def find_offer(self, offer_id: str) -> Optional[Offer]:
        return next((o for o in self.offers if o.id == offer_id), None)


# Columns that exist on the model but are never written back to the jobs table
DERIVED_JOB_FIELDS = {"offers", "payment_amount", "tip_amount"}


class PaymentProfile(BaseModel):
    user_id: str
    email: Optional[str] = None
    full_name: Optional[str] = None
    payment_customer_id: Optional[str] = None
    default_payment_method_id: Optional[str] = None
    payout_account_id: Optional[str] = None
    payout_account_ready: bool = False

    @property
    def has_payment_method(self) -> bool:
        return bool(self.payment_customer_id and self.default_payment_method_id)


# ──────────────────────────────────────────────────────────────────────────────
# Gateway data
# ──────────────────────────────────────────────────────────────────────────────
class PayerAccount(BaseModel):
    customer_id: str
    payment_method_id: str


class ChargeResult(BaseModel):
    charge_id: str
    status: PaymentStatus


class PayeeAccountStatus(BaseModel):
    exists: bool
    ready_to_receive: bool = False
    onboarding_complete: bool = False


class PayeeAccountLink(BaseModel):
    payee_account: str
    onboarding_url: Optional[str] = None


class PayeeReadiness(BaseModel):
    ready: bool
    reason: str  # "ready" | "no-account" | "onboarding-incomplete" | "unverified"


# ──────────────────────────────────────────────────────────────────────────────
# Request bodies
# ──────────────────────────────────────────────────────────────────────────────
class JobIn(BaseModel):
    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    payment_type: PaymentType
    payment_amount: Decimal = Decimal("0")
    direct_request_helper_id: Optional[str] = None


class OfferIn(BaseModel):
    amount: Decimal = Decimal("0")
    note: str = ""


class StartJobIn(BaseModel):
    role: Role
    acknowledge_payee_not_ready: bool = False


class ConfirmCompletionIn(BaseModel):
    skip_tip: bool = False


class TipIn(BaseModel):
    # float so NaN/inf reach the engine's validation instead of pydantic's
    amount: float


class SetupIntentOut(BaseModel):
    client_secret: str


class ConnectAccountOut(BaseModel):
    account_id: str
    account_link_url: Optional[str] = None


class ConnectStatusOut(BaseModel):
    has_account: bool
    ready: bool
    reason: str
