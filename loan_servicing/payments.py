"""
Payment Session Broker

Creates hosted checkout sessions for single installments, verifies session
status and issues admin refunds. The broker never settles anything itself:
settlement happens when the gateway's webhook reaches the reconciler.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Optional

from .audit import AuditTrail, AuditEventType
from .currency import Currency, Money
from .errors import (
    AlreadyPaidError, ForbiddenError, GatewayError, InstallmentWaivedError, ValidationError,
)
from .gateway import LineItem, PaymentGateway
from .installments import InstallmentLedger, InstallmentStatus
from .loans import LoanAggregate
from .logging_config import log_action
from .notifications import RecipientDirectory
from .storage import StorageInterface
from .transactions import PaymentTransactionRepository

logger = logging.getLogger("loan_servicing.payments")

SESSION_ID_PLACEHOLDER = "{CHECKOUT_SESSION_ID}"


@dataclass
class PaymentSession:
    """A live checkout session for one installment"""
    session_id: str
    session_url: str
    payment_intent_id: Optional[str]
    amount: Decimal
    currency: str
    expires_at: datetime
    installment_id: str
    transaction_id: str


@dataclass
class SessionVerification:
    status: str
    paid: bool
    installment_id: Optional[str]
    payment_intent_id: Optional[str]
    amount: Optional[Decimal]


@dataclass
class RefundResult:
    refunded: bool
    refund_id: str
    amount: Decimal


def with_session_placeholder(success_url: str) -> str:
    """Append the gateway's session-id placeholder to a success URL"""
    separator = "&" if "?" in success_url else "?"
    return f"{success_url}{separator}session_id={SESSION_ID_PLACEHOLDER}"


class PaymentSessionBroker:
    """Issues checkout sessions for installments"""

    def __init__(
        self,
        storage: StorageInterface,
        ledger: InstallmentLedger,
        loans: LoanAggregate,
        transactions: PaymentTransactionRepository,
        gateway: PaymentGateway,
        audit_trail: AuditTrail,
        recipients: Optional[RecipientDirectory] = None,
        currency: str = "PKR",
        session_expiry_seconds: int = 3600,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.storage = storage
        self.ledger = ledger
        self.loans = loans
        self.transactions = transactions
        self.gateway = gateway
        self.audit_trail = audit_trail
        self.recipients = recipients
        self.currency = Currency.from_code(currency)
        self.session_expiry = timedelta(seconds=session_expiry_seconds)
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def create_session(self, installment_id: str, requesting_user_id: str,
                       success_url: str, cancel_url: str) -> PaymentSession:
        """
        Create a checkout session charging the installment's current total due.

        A fine accrued after the session is created is not added to it. The
        new session id replaces any earlier one on the installment, and a
        PENDING transaction records the attempt.

        Raises:
            ValidationError: missing installment id or URLs
            InstallmentNotFoundError / LoanNotFoundError
            ForbiddenError: installment belongs to another user
            AlreadyPaidError / InstallmentWaivedError
            GatewayError: the gateway call failed (not retried here)
        """
        if not installment_id or not isinstance(installment_id, str):
            raise ValidationError("installment_id", "Installment id is required")
        if not success_url or not cancel_url:
            raise ValidationError("success_url", "Success and cancel URLs are required")

        installment = self.ledger.get(installment_id)
        if installment.owner_id != requesting_user_id:
            raise ForbiddenError("Installment does not belong to this user")
        if installment.status == InstallmentStatus.PAID:
            raise AlreadyPaidError(installment.id)
        if installment.status == InstallmentStatus.WAIVED:
            raise InstallmentWaivedError(installment.id)

        loan = self.loans.get(installment.loan_id)
        amount = installment.total_due
        metadata = {
            "installmentId": installment.id,
            "loanId": loan.id,
            "userId": installment.owner_id,
            "installmentNumber": str(installment.installment_number)
        }
        recipient = self.recipients.get(installment.owner_id) if self.recipients else None

        try:
            session = self.gateway.create_checkout_session(
                line_item=LineItem(
                    name=f"Loan Installment #{installment.installment_number}",
                    amount=Money(amount, self.currency),
                    description=f"Payment for loan principal: {self.currency.code} {loan.principal_amount:,}",
                    metadata={"loanId": loan.id, "installmentId": installment.id,
                              "userId": installment.owner_id}
                ),
                metadata=metadata,
                success_url=with_session_placeholder(success_url),
                cancel_url=cancel_url,
                expires_at=self.clock() + self.session_expiry,
                customer_email=recipient.email if recipient else None,
                client_reference_id=installment.id
            )
        except GatewayError as e:
            logger.error(f"Failed to create checkout session for installment {installment.id}: {e}")
            raise

        with self.storage.atomic():
            self.ledger.attach_session(installment, session.id)
            transaction = self.transactions.create_pending(
                installment, session.id, amount, self.currency.code,
                payment_intent_id=session.payment_intent_id,
                metadata={"installment_number": installment.installment_number}
            )
            self.audit_trail.log_event(
                AuditEventType.PAYMENT_SESSION_CREATED,
                entity_type="installment",
                entity_id=installment.id,
                metadata={"session_id": session.id, "amount": amount, "transaction_id": transaction.id},
                user_id=requesting_user_id
            )

        log_action(
            logger, "info", "Payment session created",
            user_id=requesting_user_id, action="create_payment_session",
            resource=installment.id,
            extra={"session_id": session.id, "amount": str(amount)}
        )

        return PaymentSession(
            session_id=session.id,
            session_url=session.url,
            payment_intent_id=session.payment_intent_id,
            amount=amount,
            currency=self.currency.code,
            expires_at=session.expires_at,
            installment_id=installment.id,
            transaction_id=transaction.id
        )

    def verify_session(self, session_id: str) -> SessionVerification:
        """Look up a session's payment status at the gateway"""
        if not session_id:
            raise ValidationError("session_id", "Session id is required")
        try:
            status = self.gateway.retrieve_session(session_id)
        except GatewayError as e:
            logger.error(f"Failed to verify payment session {session_id}: {e}")
            raise

        logger.info(f"Payment session {session_id} retrieved: {status.payment_status}")
        return SessionVerification(
            status=status.payment_status,
            paid=status.paid,
            installment_id=status.metadata.get("installmentId"),
            payment_intent_id=status.payment_intent_id,
            amount=status.amount_total
        )

    def refund_payment(self, payment_intent_id: str, reason: str,
                       admin_id: Optional[str] = None) -> RefundResult:
        """
        Ask the gateway to refund a payment.

        Local records are only updated when the gateway's ``charge.refunded``
        webhook arrives.
        """
        if not payment_intent_id:
            raise ValidationError("payment_intent_id", "Payment intent id is required")
        if not reason or not reason.strip():
            raise ValidationError("reason", "Refund reason is required")

        try:
            refund = self.gateway.refund(payment_intent_id, reason.strip())
        except GatewayError as e:
            logger.error(f"Refund failed for {payment_intent_id}: {e}")
            raise

        self.audit_trail.log_event(
            AuditEventType.REFUND_REQUESTED,
            entity_type="payment_intent",
            entity_id=payment_intent_id,
            metadata={"refund_id": refund.id, "amount": refund.amount, "reason": reason.strip()},
            user_id=admin_id
        )
        log_action(
            logger, "info", "Refund processed",
            user_id=admin_id, action="refund_payment", resource=payment_intent_id,
            extra={"refund_id": refund.id, "amount": str(refund.amount)}
        )
        return RefundResult(refunded=True, refund_id=refund.id, amount=refund.amount)
