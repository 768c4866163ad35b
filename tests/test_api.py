"""
Tests for the HTTP API

Runs the FastAPI app in-process with TestClient against the in-memory
system from conftest.
"""

from datetime import datetime, timedelta, timezone

import jwt
import pytest
from fastapi.testclient import TestClient

from loan_servicing.api import create_app
from loan_servicing.installments import InstallmentStatus
from loan_servicing.loans import LoanStatus
from loan_servicing.notifications import NotificationType
from loan_servicing.transactions import TransactionStatus

from conftest import ADMIN_ID, BORROWER_ID, CRON_SECRET, JWT_SECRET, LOAN_START


def make_token(user_id, role="user", expires_in=timedelta(hours=1)):
    payload = {"sub": user_id, "role": role, "exp": datetime.now(timezone.utc) + expires_in}
    return jwt.encode(payload, JWT_SECRET, algorithm="HS256")


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def client(system):
    return TestClient(create_app(system))


@pytest.fixture
def borrower():
    return bearer(make_token(BORROWER_ID))


@pytest.fixture
def admin():
    return bearer(make_token(ADMIN_ID, role="admin"))


@pytest.fixture
def session(client, borrower, first_installment):
    response = client.post("/payments/sessions", json={"installment_id": first_installment.id},
                           headers=borrower)
    assert response.status_code == 200
    return response.json()


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["scheduler_running"] is False


class TestAuthentication:
    """Test bearer token handling"""

    def test_missing_token(self, client):
        assert client.get("/payments/history").status_code == 401

    def test_invalid_token(self, client):
        response = client.get("/payments/history", headers=bearer("not-a-jwt"))
        assert response.status_code == 401

    def test_wrong_secret(self, client):
        token = jwt.encode({"sub": BORROWER_ID}, "other-secret", algorithm="HS256")
        assert client.get("/payments/history", headers=bearer(token)).status_code == 401

    def test_expired_token(self, client):
        token = make_token(BORROWER_ID, expires_in=timedelta(hours=-1))

        response = client.get("/payments/history", headers=bearer(token))

        assert response.status_code == 401
        assert response.json()["detail"] == "Token expired"

    def test_admin_route_requires_admin(self, client, borrower, loan):
        assert client.get(f"/admin/loans/{loan.id}", headers=borrower).status_code == 403

    def test_auth_disabled(self, system, client, loan):
        system.config.auth_enabled = False
        assert client.get(f"/admin/loans/{loan.id}").status_code == 200


class TestPaymentSessions:
    def test_create_session(self, system, session, first_installment):
        assert session["amount"] == "9026"
        assert session["currency"] == "PKR"
        assert session["installment_id"] == first_installment.id
        assert session["session_url"].endswith(session["session_id"])

        charged = system.gateway.sessions[session["session_id"]]
        assert charged["success_url"].startswith("https://app.example.test/payment/success?session_id=")
        assert charged["cancel_url"] == "https://app.example.test/payment/cancel"

    def test_other_users_installment(self, system, client, first_installment):
        response = client.post("/payments/sessions", json={"installment_id": first_installment.id},
                               headers=bearer(make_token("intruder")))

        assert response.status_code == 403
        assert system.transactions.find_by_installment(first_installment.id) == []

    def test_unknown_installment(self, client, borrower, loan):
        response = client.post("/payments/sessions", json={"installment_id": "missing"}, headers=borrower)
        assert response.status_code == 404

    def test_paid_installment(self, system, client, borrower, first_installment, clock):
        system.ledger.mark_paid(first_installment, clock(), "pi_1")

        response = client.post("/payments/sessions", json={"installment_id": first_installment.id},
                               headers=borrower)

        assert response.status_code == 409
        assert response.json()["detail"]["error"] == "already_paid"

    def test_gateway_down(self, system, client, borrower, first_installment):
        system.gateway.fail_with = "api unavailable"

        response = client.post("/payments/sessions", json={"installment_id": first_installment.id},
                               headers=borrower)

        assert response.status_code == 502

    def test_verify_session(self, system, client, borrower, session):
        system.gateway.mark_paid(session["session_id"])

        response = client.get(f"/payments/sessions/{session['session_id']}", headers=borrower)

        assert response.status_code == 200
        assert response.json()["paid"] is True
        assert response.json()["amount"] == "9026.00"

    def test_verify_other_users_session(self, client, session):
        response = client.get(f"/payments/sessions/{session['session_id']}",
                              headers=bearer(make_token("intruder")))
        assert response.status_code == 403

    def test_history(self, client, borrower, session):
        response = client.get("/payments/history", headers=borrower)

        assert response.status_code == 200
        data = response.json()
        assert data["count"] == 1
        assert data["transactions"][0]["status"] == "PENDING"

    def test_history_limit_validated(self, client, borrower):
        assert client.get("/payments/history?limit=0", headers=borrower).status_code == 422


class TestWebhook:
    """End to end: session, signed webhook, settlement"""

    def post_webhook(self, client, webhooks, payload, signature=None):
        return client.post("/payments/webhook", content=payload, headers={
            "stripe-signature": signature or webhooks.sign(payload),
            "content-type": "application/json"
        })

    def test_settles_and_notifies(self, system, client, webhooks, notifier, loan, first_installment, session):
        payload = webhooks.checkout_completed(
            first_installment, session_id=session["session_id"],
            payment_intent_id=system.gateway.sessions[session["session_id"]]["payment_intent"]
        )

        response = self.post_webhook(client, webhooks, payload)

        assert response.status_code == 200
        assert response.json()["outcome"] == "settled"
        assert response.json()["received"] is True

        assert system.ledger.get(first_installment.id).status == InstallmentStatus.PAID
        updated = system.loans.get(loan.id)
        assert str(updated.total_repaid) == "9026"
        assert str(updated.outstanding_balance) == "99286"
        assert system.transactions.find_by_session(session["session_id"]).status == TransactionStatus.SUCCESS
        assert len(notifier.of_type(NotificationType.PAYMENT_CONFIRMATION)) == 1

        replay = self.post_webhook(client, webhooks, payload)
        assert replay.json()["outcome"] == "duplicate"
        assert str(system.loans.get(loan.id).total_repaid) == "9026"
        assert len(notifier.of_type(NotificationType.PAYMENT_CONFIRMATION)) == 1

    def test_bad_signature(self, system, client, webhooks, first_installment):
        payload = webhooks.checkout_completed(first_installment)

        response = self.post_webhook(client, webhooks, payload, signature="t=1,v1=00")

        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "invalid_signature"
        assert system.ledger.get(first_installment.id).status == InstallmentStatus.PENDING

    def test_missing_signature(self, client, webhooks, first_installment):
        response = client.post("/payments/webhook", content=webhooks.checkout_completed(first_installment))
        assert response.status_code == 400

    def test_unprocessable_event_acknowledged(self, client, webhooks, first_installment):
        payload = webhooks.checkout_completed(first_installment, metadata={})

        response = self.post_webhook(client, webhooks, payload)

        assert response.status_code == 200
        assert response.json()["processed"] is False


class TestAdminLoans:
    def test_create_loan(self, system, client, admin):
        response = client.post("/admin/loans", headers=admin, json={
            "owner_id": "user-9",
            "principal_amount": "100000",
            "interest_rate": "15",
            "tenure_months": 12,
            "start_date": LOAN_START.isoformat(),
            "borrower_email": "New.Borrower@Example.com",
            "borrower_name": "Bilal Ahmed"
        })

        assert response.status_code == 201
        data = response.json()
        assert data["loan"]["monthly_installment"] == "9026"
        assert data["loan"]["total_payable"] == "108312"
        assert data["loan"]["creator_id"] == ADMIN_ID
        assert len(data["installments"]) == 12
        assert data["installments"][0]["due_date"].startswith("2025-01-28")
        assert system.recipients.get("user-9").email == "new.borrower@example.com"

    def test_invalid_terms(self, client, admin):
        response = client.post("/admin/loans", headers=admin, json={
            "owner_id": "user-9", "principal_amount": "100", "interest_rate": "15", "tenure_months": 12
        })

        assert response.status_code == 400
        assert response.json()["detail"]["field"] == "principal_amount"

    def test_get_loan(self, client, admin, loan):
        response = client.get(f"/admin/loans/{loan.id}", headers=admin)

        assert response.status_code == 200
        assert response.json()["loan"]["id"] == loan.id

    def test_get_missing_loan(self, client, admin):
        response = client.get("/admin/loans/missing", headers=admin)

        assert response.status_code == 404
        assert response.json()["detail"]["error"] == "not_found"

    def test_list_installments(self, client, admin, loan):
        response = client.get(f"/admin/loans/{loan.id}/installments", headers=admin)
        assert response.json()["count"] == 12

    def test_default_loan(self, system, client, admin, notifier, loan):
        response = client.post(f"/admin/loans/{loan.id}/default", headers=admin)

        assert response.status_code == 200
        assert response.json()["loan"]["status"] == "DEFAULTED"
        assert len(notifier.of_type(NotificationType.DEFAULT_NOTICE)) == 1

        completed = client.post(f"/admin/loans/{loan.id}/complete", headers=admin)
        assert completed.status_code == 409

    def test_default_with_reason(self, system, client, admin, loan):
        client.post(f"/admin/loans/{loan.id}/default", headers=admin, json={"reason": "No contact"})
        assert "Defaulted: No contact" in system.loans.get(loan.id).notes

    def test_complete_loan(self, system, client, admin, loan):
        response = client.post(f"/admin/loans/{loan.id}/complete", headers=admin)

        assert response.status_code == 200
        assert system.loans.get(loan.id).status == LoanStatus.COMPLETED

    def test_cancel_loan(self, system, client, admin, loan):
        response = client.post(f"/admin/loans/{loan.id}/cancel", headers=admin,
                               json={"reason": "Issued in error"})

        assert response.status_code == 200
        assert response.json()["loan"]["status"] == "CANCELLED"

    def test_cancel_requires_reason(self, client, admin, loan):
        response = client.post(f"/admin/loans/{loan.id}/cancel", headers=admin, json={"reason": ""})
        assert response.status_code == 422


class TestAdminInstallments:
    def test_waive_fine(self, system, client, admin, first_installment):
        system.ledger.accrue_fine(first_installment, first_installment.grace_period_end_date + timedelta(days=3))

        response = client.post(f"/admin/installments/{first_installment.id}/waive-fine",
                               headers=admin, json={"reason": "Goodwill"})

        assert response.status_code == 200
        data = response.json()
        assert data["waived_amount"] == "271"
        assert data["installment"]["fine_amount"] == "0"
        assert data["installment"]["status"] == "OVERDUE"

    def test_waive_fine_on_paid(self, system, client, admin, first_installment, clock):
        system.ledger.mark_paid(first_installment, clock(), "pi_1")

        response = client.post(f"/admin/installments/{first_installment.id}/waive-fine",
                               headers=admin, json={"reason": "Goodwill"})

        assert response.status_code == 409

    def test_waive_installment(self, client, admin, first_installment):
        url = f"/admin/installments/{first_installment.id}/waive"

        first = client.post(url, headers=admin, json={"reason": "Hardship"})
        second = client.post(url, headers=admin, json={"reason": "Hardship"})

        assert first.json()["installment"]["status"] == "WAIVED"
        assert second.status_code == 409

    def test_refund(self, system, client, admin, session):
        payment_intent_id = system.gateway.sessions[session["session_id"]]["payment_intent"]

        response = client.post(f"/admin/payments/{payment_intent_id}/refund", headers=admin,
                               json={"reason": "Paid twice"})

        assert response.status_code == 200
        assert response.json()["refunded"] is True
        assert response.json()["amount"] == "9026.00"

    def test_refund_unknown_payment(self, client, admin):
        response = client.post("/admin/payments/pi_unknown/refund", headers=admin, json={"reason": "x"})
        assert response.status_code == 502


class TestSweepTriggers:
    def test_admin_reminder_sweep(self, client, admin, notifier, loan, clock):
        clock.set(datetime(2025, 1, 25, 12, 0, tzinfo=timezone.utc))

        response = client.post("/admin/sweeps/reminders", headers=admin)

        assert response.status_code == 202
        assert len(notifier.of_type(NotificationType.INSTALLMENT_REMINDER)) == 1

    def test_admin_overdue_sweep(self, system, client, admin, first_installment, clock):
        clock.set(datetime(2025, 2, 10, tzinfo=timezone.utc))

        client.post("/admin/sweeps/overdue", headers=admin)

        assert system.ledger.get(first_installment.id).status == InstallmentStatus.OVERDUE

    def test_cron_requires_secret(self, client):
        assert client.get("/cron/installment-reminders").status_code == 401
        assert client.get("/cron/overdue-notices", headers=bearer("wrong")).status_code == 401

    def test_cron_with_secret(self, system, client, first_installment, clock):
        clock.set(datetime(2025, 2, 10, tzinfo=timezone.utc))

        response = client.get("/cron/overdue-notices", headers=bearer(CRON_SECRET))

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert system.ledger.get(first_installment.id).fine_amount > 0

    def test_cron_open_without_secret(self, system, client):
        system.config.cron_secret = ""
        assert client.get("/cron/installment-reminders").status_code == 200


class TestCorrelationHeader:
    def test_generated(self, client):
        response = client.get("/health")
        assert response.headers["X-Request-ID"]

    def test_echoed(self, client):
        response = client.get("/health", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"
