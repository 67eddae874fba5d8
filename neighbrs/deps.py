# neighbrs/deps.py
import logging
from functools import lru_cache

from fastapi import HTTPException
from supabase import Client, create_client

from .config import get_settings
from .eligibility import EligibilityChecker
from .errors import (
    GatewayError,
    InvalidTransition,
    JobNotFound,
    LifecycleError,
    PaymentSetupRequired,
    ReconciliationRequired,
    StaleState,
    ValidationError,
)
from .gateway import StripeGateway
from .ledger import LedgerError, SupabaseLedger
from .lifecycle import JobLifecycleEngine
from .notifications import LedgerNotifier
from .payment_setup import PaymentSetup
from .profiles import SupabaseProfileStore

logger = logging.getLogger("uvicorn")


@lru_cache
def get_supabase() -> Client:
    """Service-role client (bypasses RLS on the server)."""
    settings = get_settings()
    if not settings.supabase_url or not settings.supabase_service_role:
        raise RuntimeError("Missing SUPABASE_URL or SUPABASE_SERVICE_ROLE")
    return create_client(settings.supabase_url, settings.supabase_service_role)


@lru_cache
def get_ledger() -> SupabaseLedger:
    return SupabaseLedger(get_supabase())


@lru_cache
def get_profiles() -> SupabaseProfileStore:
    return SupabaseProfileStore(get_supabase())


@lru_cache
def get_gateway() -> StripeGateway:
    s = get_settings()
    return StripeGateway(
        s.stripe_secret_key,
        currency=s.stripe_currency,
        timeout_s=s.gateway_timeout_s,
        refresh_url=s.connect_refresh_url,
        return_url=s.connect_return_url,
    )


@lru_cache
def get_eligibility() -> EligibilityChecker:
    s = get_settings()
    return EligibilityChecker(
        get_profiles(),
        get_gateway(),
        failure_policy=s.payee_check_failure_policy,
        attempts=s.gateway_max_attempts,
        backoff_s=s.gateway_backoff_s,
    )


@lru_cache
def get_engine() -> JobLifecycleEngine:
    s = get_settings()
    ledger = get_ledger()
    return JobLifecycleEngine(
        ledger,
        get_profiles(),
        get_gateway(),
        LedgerNotifier(ledger),
        eligibility=get_eligibility(),
        retry_attempts=s.gateway_max_attempts,
        retry_backoff_s=s.gateway_backoff_s,
    )


@lru_cache
def get_payment_setup() -> PaymentSetup:
    return PaymentSetup(get_profiles(), get_gateway(), get_eligibility())


def to_http(e: LifecycleError) -> HTTPException:
    """Map a lifecycle failure onto a status code, keeping its code and message."""
    if isinstance(e, LedgerError):
        # the raw store error is for our logs, not the client
        logger.error(f"Store failure: {e.message}")
        return HTTPException(
            status_code=503,
            detail={"code": e.code, "message": "We couldn't reach our records just now. Please try again."},
        )
    if isinstance(e, ValidationError):
        status = 422
    elif isinstance(e, PaymentSetupRequired):
        status = 402
    elif isinstance(e, GatewayError):
        status = 503 if e.transient else 402
    elif isinstance(e, JobNotFound):
        status = 404
    elif isinstance(e, (StaleState, InvalidTransition)):
        status = 409
    elif isinstance(e, ReconciliationRequired):
        status = 500
    else:
        status = 400
    return HTTPException(status_code=status, detail={"code": e.code, "message": e.message})
