import pytest
import stripe
from fastapi.testclient import TestClient

from neighbrs.auth import verify_and_get_user_id
from neighbrs.config import Settings, get_settings
from neighbrs.deps import get_engine, get_ledger, get_payment_setup
from neighbrs.eligibility import EligibilityChecker
from neighbrs.errors import GatewayError
from neighbrs.ledger import LedgerError
from neighbrs.main import app
from neighbrs.payment_setup import PaymentSetup


class Session:
    """Test client that can switch which user the bearer token belongs to."""

    def __init__(self, client: TestClient) -> None:
        self.client = client
        self.user_id = "alice"

    def as_user(self, user_id: str) -> "Session":
        self.user_id = user_id
        return self

    def post(self, url, **kwargs):
        return self.client.post(url, **kwargs)

    def get(self, url, **kwargs):
        return self.client.get(url, **kwargs)


@pytest.fixture
def api(engine, ledger, profiles, gateway):
    session = None
    setup = PaymentSetup(profiles, gateway, EligibilityChecker(profiles, gateway, backoff_s=0))
    app.dependency_overrides[verify_and_get_user_id] = lambda: session.user_id
    app.dependency_overrides[get_engine] = lambda: engine
    app.dependency_overrides[get_ledger] = lambda: ledger
    app.dependency_overrides[get_payment_setup] = lambda: setup
    app.dependency_overrides[get_settings] = lambda: Settings(stripe_webhook_secret="whsec_test")
    with TestClient(app) as client:
        session = Session(client)
        yield session
    app.dependency_overrides.clear()


def _accepted(api, payment_type="fixed", amount="50.00", owner="alice", helper="bob") -> str:
    job = api.as_user(owner).post(
        "/jobs", json={"title": "Pick up groceries", "payment_type": payment_type, "payment_amount": amount}
    ).json()
    offer = api.as_user(helper).post(f"/jobs/{job['id']}/offers", json={"amount": amount}).json()["offers"][-1]
    r = api.as_user(owner).post(f"/jobs/{job['id']}/offers/{offer['id']}/accept")
    assert r.status_code == 200, r.text
    return job["id"]


class TestJobsApi:
    def test_fixed_job_end_to_end(self, api, gateway) -> None:
        job_id = _accepted(api)

        r = api.as_user("alice").post(f"/jobs/{job_id}/start", json={"role": "creator"})
        assert r.status_code == 200, r.text
        assert r.json()["status"] == "in-progress"
        assert r.json()["payment_status"] == "authorized"

        r = api.as_user("bob").post(f"/jobs/{job_id}/request-completion")
        assert r.json()["status"] == "completion-requested"

        r = api.as_user("alice").post(f"/jobs/{job_id}/confirm-completion")
        assert r.status_code == 200, r.text
        body = r.json()
        assert body["status"] == "completed"
        assert body["payment_status"] == "captured"
        assert body["payment_amount_cents"] == 5000
        assert gateway.ops().count("capture") == 1

    def test_create_job_validation(self, api) -> None:
        r = api.post("/jobs", json={"title": "Errand", "payment_type": "fixed", "payment_amount": "0"})
        assert r.status_code == 422
        assert r.json()["detail"]["code"] == "validation_error"

    def test_missing_payment_method(self, api) -> None:
        job_id = _accepted(api, owner="dave")
        r = api.as_user("dave").post(f"/jobs/{job_id}/start", json={"role": "creator"})
        assert r.status_code == 402
        assert r.json()["detail"]["code"] == "payment_setup_required"

    def test_payee_not_ready_then_acknowledged(self, api) -> None:
        job_id = _accepted(api, helper="erin")
        r = api.as_user("alice").post(f"/jobs/{job_id}/start", json={"role": "creator"})
        assert r.status_code == 402
        assert r.json()["detail"]["code"] == "payee_not_ready"

        r = api.post(f"/jobs/{job_id}/start", json={"role": "creator", "acknowledge_payee_not_ready": True})
        assert r.status_code == 200
        assert r.json()["status"] == "in-progress"

    def test_second_accept_conflicts(self, api) -> None:
        job = api.post("/jobs", json={"title": "Errand", "payment_type": "free"}).json()
        api.as_user("bob").post(f"/jobs/{job['id']}/offers", json={})
        offers = api.as_user("carol").post(f"/jobs/{job['id']}/offers", json={}).json()["offers"]

        assert api.as_user("alice").post(f"/jobs/{job['id']}/offers/{offers[0]['id']}/accept").status_code == 200
        r = api.post(f"/jobs/{job['id']}/offers/{offers[1]['id']}/accept")
        assert r.status_code == 409
        assert r.json()["detail"]["code"] == "already_accepted"

    def test_processor_outage_is_retryable(self, api, gateway) -> None:
        job_id = _accepted(api)
        gateway.fail["authorize"] = [GatewayError("Processor unavailable", transient=True) for _ in range(3)]
        r = api.as_user("alice").post(f"/jobs/{job_id}/start", json={"role": "creator"})
        assert r.status_code == 503

    def test_tip_flow(self, api) -> None:
        job_id = _accepted(api, payment_type="tip")
        api.as_user("bob").post(f"/jobs/{job_id}/start", json={"role": "helper"})

        r = api.as_user("alice").post(f"/jobs/{job_id}/confirm-completion")
        assert r.status_code == 409
        assert r.json()["detail"]["code"] == "tip_decision_required"

        assert api.post(f"/jobs/{job_id}/tip", json={"amount": 0}).status_code == 422
        r = api.post(f"/jobs/{job_id}/tip", json={"amount": 7.5})
        assert r.status_code == 200
        assert r.json()["tip_amount_cents"] == 750

    def test_cancel(self, api) -> None:
        job_id = _accepted(api)
        api.as_user("alice").post(f"/jobs/{job_id}/start", json={"role": "creator"})
        r = api.post(f"/jobs/{job_id}/cancel")
        assert r.json()["status"] == "cancelled"
        assert r.json()["payment_status"] == "voided"

    def test_unknown_job(self, api) -> None:
        assert api.get("/jobs/does-not-exist").status_code == 404

    def test_store_outage_is_retryable(self, api, ledger, monkeypatch) -> None:
        job_id = _accepted(api, payment_type="free")
        api.as_user("alice").post(f"/jobs/{job_id}/start", json={"role": "creator"})

        def down(*args, **kwargs):
            raise LedgerError("jobs update error: connection reset")

        monkeypatch.setattr(ledger, "conditional_update", down)
        r = api.as_user("bob").post(f"/jobs/{job_id}/request-completion")
        assert r.status_code == 503
        detail = r.json()["detail"]
        assert detail["code"] == "store_unavailable"
        assert "try again" in detail["message"]
        assert "connection reset" not in detail["message"]


class TestPaymentsApi:
    def test_customer_and_setup_intent(self, api) -> None:
        api.as_user("dave")
        assert api.post("/payments/setup-intent").status_code == 402
        assert api.post("/payments/customer").json() == {"customer_id": "cus_dave"}
        assert api.post("/payments/setup-intent").json() == {"client_secret": "seti_cus_dave_secret"}

    def test_connect_account(self, api) -> None:
        r = api.as_user("frank").post("/payments/connect-account")
        assert r.json() == {"account_id": "acct_frank", "account_link_url": "https://connect.test/acct_frank"}

        r = api.get("/payments/connect-account/status")
        assert r.json() == {"has_account": True, "ready": False, "reason": "onboarding-incomplete"}

    def test_unknown_user(self, api) -> None:
        assert api.as_user("ghost").post("/payments/customer").status_code == 404

    def test_profile_store_outage(self, api, profiles, monkeypatch) -> None:
        def down(user_id, **fields):
            raise LedgerError("users update error: connection reset")

        monkeypatch.setattr(profiles, "update_user", down)
        r = api.as_user("dave").post("/payments/customer")
        assert r.status_code == 503
        assert r.json()["detail"]["code"] == "store_unavailable"


class TestStripeWebhook:
    def _event(self, monkeypatch, etype, obj) -> None:
        monkeypatch.setattr(
            stripe.Webhook, "construct_event", lambda payload, sig, secret: {"type": etype, "data": {"object": obj}}
        )

    def test_bad_signature(self, api, monkeypatch) -> None:
        def reject(payload, sig, secret):
            raise stripe.SignatureVerificationError("No signatures found", sig)

        monkeypatch.setattr(stripe.Webhook, "construct_event", reject)
        r = api.post("/stripe/webhook", content=b"{}", headers={"stripe-signature": "t=1,v1=bad"})
        assert r.status_code == 400

    def test_missing_secret(self, api) -> None:
        app.dependency_overrides[get_settings] = lambda: Settings(stripe_webhook_secret="")
        assert api.post("/stripe/webhook", content=b"{}").status_code == 500

    def test_intent_status_is_mirrored(self, api, engine, monkeypatch) -> None:
        job_id = _accepted(api)
        api.as_user("alice").post(f"/jobs/{job_id}/start", json={"role": "creator"})

        self._event(monkeypatch, "payment_intent.payment_failed",
                    {"id": "pi_1", "status": "requires_payment_method", "capture_method": "manual"})
        r = api.post("/stripe/webhook", content=b"{}", headers={"stripe-signature": "t=1,v1=ok"})
        assert r.json() == {"received": True}
        job = engine.get_job(job_id)
        assert job.payment_status.value == "failed"
        assert job.status.value == "in-progress"

    def test_account_updated_marks_payee_ready(self, api, profiles, monkeypatch) -> None:
        self._event(monkeypatch, "account.updated",
                    {"id": "acct_erin", "details_submitted": True, "charges_enabled": True, "payouts_enabled": True})
        assert api.post("/stripe/webhook", content=b"{}").status_code == 200
        assert profiles.get_user("erin").payout_account_ready

    def test_saved_card_recorded(self, api, profiles, monkeypatch) -> None:
        self._event(monkeypatch, "setup_intent.succeeded", {"id": "seti_1", "customer": "cus_alice",
                                                            "payment_method": "pm_new"})
        api.post("/stripe/webhook", content=b"{}")
        assert profiles.get_user("alice").default_payment_method_id == "pm_new"


class TestHealth:
    def test_health(self, api) -> None:
        assert api.get("/health").json() == {"ok": True}
        assert api.get("/health/db").json() == {"ok": True, "db": "up"}
