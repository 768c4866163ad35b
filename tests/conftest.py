"""
Shared fixtures: in-memory storage, a controllable clock, the mock gateway
and a notifier that records instead of sending
"""

import json
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from loan_servicing.audit import AuditTrail
from loan_servicing.config import LoanServicingConfig
from loan_servicing.events import EventDispatcher
from loan_servicing.gateway import MockPaymentGateway, sign_payload
from loan_servicing.installments import InstallmentLedger
from loan_servicing.loans import LoanAggregate
from loan_servicing.notifications import Notification, NotificationSender
from loan_servicing.storage import InMemoryStorage
from loan_servicing.system import LoanServicingSystem


WEBHOOK_SECRET = "whsec_test_secret"
JWT_SECRET = "test-jwt-secret"
CRON_SECRET = "test-cron-secret"
BORROWER_ID = "user-1"
ADMIN_ID = "admin-1"

# Loan of 100000 at 15% over 12 months starting 2024-12-28
LOAN_START = date(2024, 12, 28)


class FakeClock:
    """Callable clock that only moves when told to"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, now: datetime) -> datetime:
        self.now = now
        return now


class RecordingNotifier(NotificationSender):
    """Notification sender that keeps every message it is asked to send"""

    def __init__(self, storage=None, succeed: bool = True):
        super().__init__(storage)
        self.succeed = succeed
        self.sent: List[Notification] = []

    async def deliver(self, notification: Notification) -> bool:
        self.sent.append(notification)
        return self.succeed

    def of_type(self, notification_type) -> List[Notification]:
        return [n for n in self.sent if n.notification_type == notification_type]


class WebhookFactory:
    """Builds raw gateway event bodies and their signature headers"""

    def __init__(self, secret: str):
        self.secret = secret
        self._counter = 0

    def _event(self, event_type: str, obj: Dict[str, Any], event_id: Optional[str] = None) -> bytes:
        self._counter += 1
        return json.dumps({
            "id": event_id or f"evt_test_{self._counter}",
            "type": event_type,
            "created": 1735689600,
            "data": {"object": obj}
        }).encode("utf-8")

    def sign(self, payload: bytes) -> str:
        return sign_payload(payload, self.secret)

    def checkout_completed(self, installment, session_id: str = "cs_test_1",
                           payment_intent_id: str = "pi_abc", payment_status: str = "paid",
                           event_id: Optional[str] = None, event_type: str = "checkout.session.completed",
                           metadata: Optional[Dict[str, str]] = None) -> bytes:
        if metadata is None:
            metadata = {"installmentId": installment.id, "loanId": installment.loan_id,
                        "userId": installment.owner_id}
        return self._event(event_type, {
            "id": session_id,
            "object": "checkout.session",
            "payment_intent": payment_intent_id,
            "payment_status": payment_status,
            "metadata": metadata
        }, event_id)

    def payment_succeeded(self, payment_intent_id: str, charge_id: str = "ch_test_1",
                          receipt_url: str = "https://pay.example.test/receipts/1",
                          metadata: Optional[Dict[str, str]] = None) -> bytes:
        return self._event("payment_intent.succeeded", {
            "id": payment_intent_id,
            "object": "payment_intent",
            "latest_charge": charge_id,
            "charges": {"data": [{"id": charge_id, "receipt_url": receipt_url}]},
            "metadata": metadata or {}
        })

    def payment_failed(self, payment_intent_id: str, message: str = "Your card was declined.",
                       event_type: str = "payment_intent.payment_failed") -> bytes:
        return self._event(event_type, {
            "id": payment_intent_id,
            "object": "payment_intent",
            "last_payment_error": {"message": message}
        })

    def charge_refunded(self, charge_id: str, payment_intent_id: str,
                        amount_refunded: int, currency: str = "pkr") -> bytes:
        return self._event("charge.refunded", {
            "id": charge_id,
            "object": "charge",
            "payment_intent": payment_intent_id,
            "amount_refunded": amount_refunded,
            "currency": currency
        })


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def audit_trail(storage):
    return AuditTrail(storage)


@pytest.fixture
def events():
    return EventDispatcher()


@pytest.fixture
def ledger(storage, audit_trail, events, clock):
    return InstallmentLedger(storage, audit_trail, events, clock=clock)


@pytest.fixture
def loans(storage, ledger, audit_trail, events, clock):
    return LoanAggregate(storage, ledger, audit_trail, events, clock=clock)


@pytest.fixture
def gateway():
    return MockPaymentGateway()


@pytest.fixture
def notifier(storage):
    return RecordingNotifier(storage)


@pytest.fixture
def config():
    return LoanServicingConfig(
        storage_backend="memory",
        auth_enabled=True,
        jwt_secret=JWT_SECRET,
        cron_secret=CRON_SECRET,
        webhook_secret=WEBHOOK_SECRET,
        frontend_url="https://app.example.test",
        sweep_item_delay_seconds=0,
        scheduler_enabled=False,
        notification_webhook_url=None
    )


@pytest.fixture
def system(config, storage, gateway, notifier, clock):
    return LoanServicingSystem(config, storage=storage, gateway=gateway, notifier=notifier, clock=clock)


@pytest.fixture
def webhooks():
    return WebhookFactory(WEBHOOK_SECRET)


@pytest.fixture
def loan(system):
    """The reference loan with its borrower registered for notifications"""
    system.recipients.register(BORROWER_ID, "borrower@example.com", "Ayesha Khan")
    return system.loans.create_loan(BORROWER_ID, ADMIN_ID, "100000", "15", 12, start_date=LOAN_START)


@pytest.fixture
def first_installment(system, loan):
    return system.ledger.find_by_loan(loan.id)[0]
