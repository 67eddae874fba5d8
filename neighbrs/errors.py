"""Typed failures raised by the job lifecycle core.

Every error carries a stable ``code`` and a message a client can show as-is.
The HTTP layer maps these onto status codes; nothing in the core knows about HTTP.
"""

from __future__ import annotations

from typing import Optional


class LifecycleError(Exception):
    code = "lifecycle_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(LifecycleError):
    """Bad input, rejected before any gateway or store call."""

    code = "validation_error"


class PaymentSetupRequired(LifecycleError):
    """Payer or payee is missing payment configuration."""

    code = "payment_setup_required"

    def __init__(self, message: str, party: str) -> None:
        super().__init__(message)
        self.party = party  # "payer" | "payee"


class PayeeNotReady(PaymentSetupRequired):
    """Payee has an account but onboarding isn't finished. Overridable by the actor."""

    code = "payee_not_ready"

    def __init__(self, message: str, reason: str) -> None:
        super().__init__(message, party="payee")
        self.reason = reason


class GatewayError(LifecycleError):
    code = "gateway_error"

    def __init__(self, message: str, transient: bool, processor_code: Optional[str] = None) -> None:
        super().__init__(message)
        self.transient = transient
        self.processor_code = processor_code

    def __repr__(self) -> str:
        kind = "transient" if self.transient else "permanent"
        return f"GatewayError({kind}, {self.message!r})"


class StaleState(LifecycleError):
    """The job changed between read and conditional write. Reload and retry."""

    code = "stale_state"


class InvalidTransition(LifecycleError):
    code = "invalid_transition"


class AlreadyAccepted(InvalidTransition):
    code = "already_accepted"


class TipDecisionRequired(InvalidTransition):
    code = "tip_decision_required"


class JobNotFound(LifecycleError):
    code = "job_not_found"

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class ReconciliationRequired(LifecycleError):
    """Money moved at the processor but the ledger write did not land."""

    code = "reconciliation_required"

    def __init__(self, message: str, job_id: str, charge_id: str) -> None:
        super().__init__(message)
        self.job_id = job_id
        self.charge_id = charge_id
