"""
Webhook Reconciler

Applies payment-gateway webhook events to the installment ledger, the loan
balances and the payment transactions. Events arrive at least once, possibly
out of order, so every event is applied idempotently:

* the signature is checked against the raw body before anything is trusted
  (unless no secret is configured, a permissive development mode);
* settlement happens inside one storage transaction whose gate is the
  installment's conditional PENDING/OVERDUE/DEFAULTED -> PAID update. A
  redelivered or concurrent duplicate finds the installment PAID and is
  acknowledged without touching the loan a second time;
* once the signature passes the gateway is always told the event was
  received. Missing local records are logged, not retried.

Borrower notifications are not sent inline: they are returned on the
receipt as deferred calls for the HTTP layer to run after responding.
"""

import functools
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .audit import AuditTrail, AuditEventType
from .currency import Currency, Money
from .errors import (
    AlreadyPaidError, InstallmentNotFoundError, InstallmentWaivedError,
    InvalidSignatureError, LoanNotFoundError,
)
from .events import DomainEvent, EventDispatcher
from .gateway import PaymentGateway, WebhookEvent, parse_event
from .installments import InstallmentLedger, InstallmentStatus
from .loans import LoanAggregate
from .logging_config import log_action
from .notifications import (
    ConfirmationDetails, NotificationSender, PaymentFailedDetails, RecipientDirectory,
)
from .storage import StorageInterface
from .transactions import PaymentTransactionRepository

logger = logging.getLogger("loan_servicing.reconciler")

CHECKOUT_COMPLETED = "checkout.session.completed"
PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
PAYMENT_INTENT_FAILED = "payment_intent.payment_failed"
CHARGE_REFUNDED = "charge.refunded"

EVENT_ALIASES = {
    "checkout.completed": CHECKOUT_COMPLETED,
    "payment_intent.failed": PAYMENT_INTENT_FAILED,
}

SETTLED_PAYMENT_STATUSES = ("paid", "no_payment_required")


class ReconcileOutcome(Enum):
    SETTLED = "settled"
    DUPLICATE = "duplicate"
    FAILURE_RECORDED = "failure_recorded"
    REFUND_RECORDED = "refund_recorded"
    RECORDED = "recorded"
    IGNORED = "ignored"
    MISSING_RECORD = "missing_record"
    ERROR = "error"


Notify = Callable[[], Awaitable[bool]]


@dataclass
class WebhookReceipt:
    """What the gateway is told, plus the follow-up work for the caller"""
    event_id: str
    event_type: str
    outcome: ReconcileOutcome
    received: bool = True
    notifications: List[Notify] = field(default_factory=list)

    @property
    def processed(self) -> bool:
        return self.outcome not in (ReconcileOutcome.ERROR, ReconcileOutcome.MISSING_RECORD)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "received": self.received,
            "processed": self.processed,
            "event_id": self.event_id,
            "event_type": self.event_type,
            "outcome": self.outcome.value
        }


async def deliver_notifications(receipt: WebhookReceipt) -> int:
    """Run a receipt's deferred notifications; returns how many were delivered"""
    delivered = 0
    for notify in receipt.notifications:
        try:
            if await notify():
                delivered += 1
        except Exception as e:
            logger.error(f"Notification after {receipt.event_type} {receipt.event_id} failed: {e}")
    return delivered


class WebhookReconciler:
    """Consumes gateway events and reconciles local payment state"""

    def __init__(
        self,
        storage: StorageInterface,
        ledger: InstallmentLedger,
        loans: LoanAggregate,
        transactions: PaymentTransactionRepository,
        gateway: PaymentGateway,
        audit_trail: AuditTrail,
        notifier: NotificationSender,
        recipients: RecipientDirectory,
        events: Optional[EventDispatcher] = None,
        webhook_secret: str = "",
        frontend_url: str = "http://localhost:3000",
        currency: str = "PKR",
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.storage = storage
        self.ledger = ledger
        self.loans = loans
        self.transactions = transactions
        self.gateway = gateway
        self.audit_trail = audit_trail
        self.notifier = notifier
        self.recipients = recipients
        self.events = events or ledger.events
        self.webhook_secret = webhook_secret
        self.frontend_url = frontend_url.rstrip("/")
        self.currency = Currency.from_code(currency)
        self.clock = clock or (lambda: datetime.now(timezone.utc))

        self._handlers = {
            CHECKOUT_COMPLETED: self._handle_checkout_completed,
            PAYMENT_INTENT_SUCCEEDED: self._handle_payment_intent_succeeded,
            PAYMENT_INTENT_FAILED: self._handle_payment_intent_failed,
            CHARGE_REFUNDED: self._handle_charge_refunded,
        }

    def handle_webhook(self, payload: bytes, signature_header: Optional[str]) -> WebhookReceipt:
        """
        Verify and apply one webhook delivery.

        Args:
            payload: raw, unparsed request body
            signature_header: value of the gateway's signature header

        Raises:
            InvalidSignatureError: signature check failed; nothing was changed
            ValidationError: body is not a gateway event
        """
        event = self._authenticate(payload, signature_header)
        event_type = EVENT_ALIASES.get(event.type, event.type)
        logger.info(f"Webhook event received: {event.type} ({event.id})")

        handler = self._handlers.get(event_type)
        if handler is None:
            logger.info(f"Unhandled webhook event type: {event.type}")
            return WebhookReceipt(event.id, event.type, ReconcileOutcome.IGNORED)

        receipt = WebhookReceipt(event.id, event.type, ReconcileOutcome.ERROR)
        try:
            receipt.outcome = handler(event, receipt)
        except Exception as e:
            # Acknowledge anyway; a redelivery would fail the same way
            logger.exception(f"Error processing {event.type} {event.id}: {e}")
            receipt.outcome = ReconcileOutcome.ERROR
            receipt.notifications.clear()

        return receipt

    def _authenticate(self, payload: bytes, signature_header: Optional[str]) -> WebhookEvent:
        if not self.webhook_secret:
            logger.warning("Webhook secret not configured, skipping signature verification")
            return parse_event(payload)

        try:
            return self.gateway.construct_event(payload, signature_header, self.webhook_secret)
        except InvalidSignatureError as e:
            log_action(logger, "warning", f"Webhook signature verification failed: {e}",
                       action="webhook_rejected", resource="webhook")
            self.audit_trail.log_event(
                AuditEventType.WEBHOOK_REJECTED,
                entity_type="webhook",
                entity_id="signature",
                metadata={"reason": str(e)}
            )
            raise

    # Settlement

    def _handle_checkout_completed(self, event: WebhookEvent, receipt: WebhookReceipt) -> ReconcileOutcome:
        session = event.data
        payment_status = session.get("payment_status")
        if payment_status and payment_status not in SETTLED_PAYMENT_STATUSES:
            logger.info(f"Checkout session {session.get('id')} completed with payment_status={payment_status}, waiting")
            return ReconcileOutcome.IGNORED

        return self._settle(
            receipt,
            installment_id=event.metadata.get("installmentId"),
            loan_id=event.metadata.get("loanId"),
            session_id=session.get("id"),
            payment_intent_id=session.get("payment_intent"),
            charge_id=session.get("latest_charge"),
            receipt_url=session.get("receipt_url")
        )

    def _handle_payment_intent_succeeded(self, event: WebhookEvent, receipt: WebhookReceipt) -> ReconcileOutcome:
        intent = event.data
        payment_intent_id = intent.get("id")
        charges = (intent.get("charges") or {}).get("data") or [{}]
        charge_id = intent.get("latest_charge") or charges[0].get("id")
        receipt_url = charges[0].get("receipt_url")

        transaction = self.transactions.find_by_payment_intent(payment_intent_id) if payment_intent_id else None
        if transaction:
            self.transactions.attach_charge(transaction, payment_intent_id, charge_id, receipt_url)

        if event.metadata.get("installmentId"):
            return self._settle(
                receipt,
                installment_id=event.metadata.get("installmentId"),
                loan_id=event.metadata.get("loanId"),
                session_id=transaction.gateway_session_id if transaction else None,
                payment_intent_id=payment_intent_id,
                charge_id=charge_id,
                receipt_url=receipt_url
            )

        if transaction is None:
            logger.info(f"Payment intent {payment_intent_id} succeeded with no local transaction")
            return ReconcileOutcome.IGNORED
        return ReconcileOutcome.RECORDED

    def _settle(self, receipt: WebhookReceipt, installment_id: Optional[str], loan_id: Optional[str],
                session_id: Optional[str], payment_intent_id: Optional[str],
                charge_id: Optional[str], receipt_url: Optional[str]) -> ReconcileOutcome:
        if not installment_id or not loan_id:
            logger.error(f"Missing metadata in {receipt.event_type} {receipt.event_id}")
            return ReconcileOutcome.MISSING_RECORD

        now = self.clock()
        with self.storage.atomic():
            try:
                installment = self.ledger.get(installment_id)
            except InstallmentNotFoundError:
                logger.error(f"Installment not found: {installment_id}")
                return ReconcileOutcome.MISSING_RECORD

            if installment.loan_id != loan_id:
                logger.warning(
                    f"Event {receipt.event_id} names loan {loan_id} but installment {installment_id} "
                    f"belongs to {installment.loan_id}"
                )

            if installment.status.is_terminal:
                return self._already_settled(receipt, installment, payment_intent_id)

            try:
                loan = self.loans.get(installment.loan_id)
            except LoanNotFoundError:
                logger.error(f"Loan not found: {installment.loan_id}")
                return ReconcileOutcome.MISSING_RECORD

            try:
                transition = self.ledger.mark_paid(installment, now, payment_intent_id)
            except (AlreadyPaidError, InstallmentWaivedError):
                return self._already_settled(receipt, self.ledger.get(installment_id), payment_intent_id)

            paid = transition.current
            loan = self.loans.apply_successful_payment(loan, paid)

            transaction = None
            if session_id:
                transaction = self.transactions.find_by_session(session_id)
            if transaction is None and payment_intent_id:
                transaction = self.transactions.find_by_payment_intent(payment_intent_id)
            if transaction:
                self.transactions.mark_succeeded(transaction, payment_intent_id, charge_id, receipt_url, now)
                self.transactions.cancel_superseded(paid.id, keep_id=transaction.id)
            else:
                logger.warning(f"No payment transaction for session {session_id} / intent {payment_intent_id}")

            self.audit_trail.log_event(
                AuditEventType.PAYMENT_SUCCEEDED,
                entity_type="installment",
                entity_id=paid.id,
                metadata={
                    "event_id": receipt.event_id,
                    "payment_intent_id": payment_intent_id,
                    "amount": paid.amount,
                    "fine_amount": paid.fine_amount,
                    "outstanding_balance": loan.outstanding_balance
                }
            )
            self.storage.on_commit(lambda: self.events.emit(
                DomainEvent.PAYMENT_SUCCEEDED, "installment", paid.id,
                loan_id=loan.id, total_due=str(paid.total_due),
                outstanding_balance=str(loan.outstanding_balance)
            ))

        log_action(
            logger, "info", "Payment processed successfully",
            user_id=paid.owner_id, action="settle_installment", resource=paid.id,
            extra={"loan_id": loan.id, "amount": str(paid.total_due), "event_id": receipt.event_id}
        )

        recipient = self.recipients.get(paid.owner_id)
        if recipient:
            receipt.notifications.append(functools.partial(
                self.notifier.send_payment_confirmation, recipient,
                ConfirmationDetails(
                    installment_number=paid.installment_number,
                    amount=paid.amount,
                    paid_date=now,
                    remaining_balance=loan.outstanding_balance,
                    receipt_url=receipt_url,
                    loan_id=loan.id,
                    installment_id=paid.id
                )
            ))
        return ReconcileOutcome.SETTLED

    def _already_settled(self, receipt: WebhookReceipt, installment, payment_intent_id: Optional[str]) -> ReconcileOutcome:
        if installment.status == InstallmentStatus.WAIVED:
            logger.warning(f"Payment {payment_intent_id} received for waived installment {installment.id}")
            self._flag_for_review(installment.id, payment_intent_id, "payment_for_waived_installment", receipt)
            return ReconcileOutcome.IGNORED

        if payment_intent_id and installment.gateway_payment_intent_id not in (None, payment_intent_id):
            logger.warning(
                f"Installment {installment.id} already paid by {installment.gateway_payment_intent_id}, "
                f"second payment {payment_intent_id} needs review"
            )
            self._flag_for_review(installment.id, payment_intent_id, "duplicate_payment", receipt)
        else:
            logger.info(f"Duplicate delivery of {receipt.event_type} for paid installment {installment.id}")
        return ReconcileOutcome.DUPLICATE

    def _flag_for_review(self, installment_id: str, payment_intent_id: Optional[str],
                         reason: str, receipt: WebhookReceipt) -> None:
        self.audit_trail.log_event(
            AuditEventType.REFUND_REVIEW_REQUIRED,
            entity_type="installment",
            entity_id=installment_id,
            metadata={"reason": reason, "payment_intent_id": payment_intent_id, "event_id": receipt.event_id}
        )

    # Failures and refunds

    def _handle_payment_intent_failed(self, event: WebhookEvent, receipt: WebhookReceipt) -> ReconcileOutcome:
        intent = event.data
        payment_intent_id = intent.get("id")
        reason = (intent.get("last_payment_error") or {}).get("message") or "Payment failed"
        logger.warning(f"Payment intent failed: {payment_intent_id} ({reason})")

        transaction = self.transactions.find_by_payment_intent(payment_intent_id) if payment_intent_id else None
        if transaction is None:
            logger.warning(f"No payment transaction for failed intent {payment_intent_id}")
            return ReconcileOutcome.MISSING_RECORD

        with self.storage.atomic():
            updated = self.transactions.mark_failed(transaction, reason, payment_intent_id)
            if updated is None:
                return ReconcileOutcome.DUPLICATE
            self.audit_trail.log_event(
                AuditEventType.PAYMENT_FAILED,
                entity_type="payment_transaction",
                entity_id=updated.id,
                metadata={"payment_intent_id": payment_intent_id, "reason": reason}
            )
            self.storage.on_commit(lambda: self.events.emit(
                DomainEvent.PAYMENT_FAILED, "payment_transaction", updated.id,
                installment_id=updated.installment_id, reason=reason
            ))

        try:
            installment = self.ledger.get(updated.installment_id)
        except InstallmentNotFoundError:
            logger.error(f"Installment not found for failed payment: {updated.installment_id}")
            return ReconcileOutcome.FAILURE_RECORDED

        recipient = self.recipients.get(updated.owner_id)
        if recipient:
            receipt.notifications.append(functools.partial(
                self.notifier.send_payment_failed, recipient,
                PaymentFailedDetails(
                    installment_number=installment.installment_number,
                    amount=installment.total_due,
                    failure_reason=reason,
                    retry_url=f"{self.frontend_url}/payments/retry/{installment.id}",
                    loan_id=installment.loan_id,
                    installment_id=installment.id
                )
            ))
        return ReconcileOutcome.FAILURE_RECORDED

    def _handle_charge_refunded(self, event: WebhookEvent, receipt: WebhookReceipt) -> ReconcileOutcome:
        """
        Record a refund on the transaction only.

        The installment stays PAID and the loan balances are left alone; the
        refund is flagged in the audit trail for an admin to correct by hand.
        """
        charge = event.data
        charge_id = charge.get("id")
        payment_intent_id = charge.get("payment_intent")
        currency = Currency.from_code(charge.get("currency") or self.currency.code)
        refunded = Money.from_minor_units(int(charge.get("amount_refunded") or 0), currency).amount
        logger.info(f"Charge refunded: {charge_id} ({refunded})")

        transaction = self.transactions.find_by_charge(charge_id) if charge_id else None
        if transaction is None and payment_intent_id:
            transaction = self.transactions.find_by_payment_intent(payment_intent_id)
        if transaction is None:
            logger.warning(f"No payment transaction for refunded charge {charge_id}")
            return ReconcileOutcome.MISSING_RECORD

        with self.storage.atomic():
            updated = self.transactions.mark_refunded(transaction, refunded, self.clock(), charge_id)
            if updated is None:
                return ReconcileOutcome.DUPLICATE

            self.audit_trail.log_event(
                AuditEventType.PAYMENT_REFUNDED,
                entity_type="payment_transaction",
                entity_id=updated.id,
                metadata={"charge_id": charge_id, "refund_amount": refunded, "amount": updated.amount}
            )
            self._flag_for_review(updated.installment_id, payment_intent_id, "refund_not_reversed", receipt)
            self.storage.on_commit(lambda: self.events.emit(
                DomainEvent.PAYMENT_REFUNDED, "payment_transaction", updated.id,
                installment_id=updated.installment_id, loan_id=updated.loan_id,
                refund_amount=str(refunded), full_refund=refunded >= updated.amount
            ))

        return ReconcileOutcome.REFUND_RECORDED
