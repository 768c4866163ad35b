"""
Payment Transaction Module

Audit records of payment attempts. One PENDING transaction is created per
checkout session; each reaches exactly one terminal status. Several PENDING
attempts may exist for one installment, but the reconciler lets only one of
them resolve to SUCCESS (by gating on the installment's PAID transition).
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .errors import TransactionNotFoundError, ValidationError
from .storage import StorageInterface, StorageRecord

logger = logging.getLogger("loan_servicing.transactions")

MAX_HISTORY_LIMIT = 50
DEFAULT_HISTORY_LIMIT = 10


class TransactionStatus(Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"
    CANCELLED = "CANCELLED"


@dataclass
class PaymentTransaction(StorageRecord):
    """One attempt to pay one installment"""
    installment_id: str
    loan_id: str
    owner_id: str
    amount: Decimal
    currency: str
    status: TransactionStatus = TransactionStatus.PENDING
    gateway_session_id: Optional[str] = None
    gateway_payment_intent_id: Optional[str] = None
    gateway_charge_id: Optional[str] = None
    receipt_url: Optional[str] = None
    failure_reason: Optional[str] = None
    paid_at: Optional[datetime] = None
    refund_amount: Optional[Decimal] = None
    refunded_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['status'] = self.status.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PaymentTransaction':
        data = dict(data)
        for key in ('created_at', 'updated_at', 'paid_at', 'refunded_at'):
            if isinstance(data.get(key), str):
                data[key] = datetime.fromisoformat(data[key])
        data['amount'] = Decimal(data['amount'])
        if data.get('refund_amount') is not None:
            data['refund_amount'] = Decimal(data['refund_amount'])
        data['status'] = TransactionStatus(data['status'])
        return cls(**data)


class PaymentTransactionRepository:
    """Stores payment transactions and applies their status transitions"""

    def __init__(self, storage: StorageInterface,
                 clock: Optional[Callable[[], datetime]] = None):
        self.storage = storage
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.table = "payment_transactions"

    def create_pending(self, installment, session_id: str, amount: Decimal, currency: str,
                       payment_intent_id: Optional[str] = None,
                       metadata: Optional[Dict[str, Any]] = None) -> PaymentTransaction:
        now = self.clock()
        transaction = PaymentTransaction(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            installment_id=installment.id,
            loan_id=installment.loan_id,
            owner_id=installment.owner_id,
            amount=amount,
            currency=currency,
            gateway_session_id=session_id,
            gateway_payment_intent_id=payment_intent_id,
            metadata=metadata or {}
        )
        self.storage.insert(self.table, transaction.id, transaction.to_dict())
        return transaction

    # Lookups

    def get(self, transaction_id: str) -> PaymentTransaction:
        data = self.storage.load(self.table, transaction_id)
        if data is None:
            raise TransactionNotFoundError(transaction_id)
        return PaymentTransaction.from_dict(data)

    def _find_one(self, filters: Dict[str, Any]) -> Optional[PaymentTransaction]:
        records = self.storage.find(self.table, filters)
        if not records:
            return None
        # Most recent attempt wins when several match
        records.sort(key=lambda r: r['created_at'], reverse=True)
        return PaymentTransaction.from_dict(records[0])

    def find_by_session(self, session_id: str) -> Optional[PaymentTransaction]:
        return self._find_one({'gateway_session_id': session_id})

    def find_by_payment_intent(self, payment_intent_id: str) -> Optional[PaymentTransaction]:
        return self._find_one({'gateway_payment_intent_id': payment_intent_id})

    def find_by_charge(self, charge_id: str) -> Optional[PaymentTransaction]:
        return self._find_one({'gateway_charge_id': charge_id})

    def find_by_installment(self, installment_id: str) -> List[PaymentTransaction]:
        records = self.storage.find(self.table, {'installment_id': installment_id})
        transactions = [PaymentTransaction.from_dict(r) for r in records]
        transactions.sort(key=lambda t: t.created_at)
        return transactions

    def history_for_user(self, user_id: str, limit: int = DEFAULT_HISTORY_LIMIT) -> List[PaymentTransaction]:
        """A user's payment attempts, newest first, at most 50"""
        if limit < 1:
            raise ValidationError("limit", "Limit must be positive")
        limit = min(limit, MAX_HISTORY_LIMIT)
        records = self.storage.find(self.table, {'owner_id': user_id})
        transactions = [PaymentTransaction.from_dict(r) for r in records]
        transactions.sort(key=lambda t: t.created_at, reverse=True)
        return transactions[:limit]

    # Transitions

    def _transition(self, transaction: PaymentTransaction, expected: List[TransactionStatus],
                    changes: Dict[str, Any]) -> Optional[PaymentTransaction]:
        changes = dict(changes, updated_at=self.clock().isoformat())
        updated = self.storage.update_if(
            self.table, transaction.id,
            {'status': [s.value for s in expected]},
            changes
        )
        if updated is None:
            logger.warning(
                f"Transaction {transaction.id} not in {[s.value for s in expected]}, "
                f"skipping change to {changes.get('status', 'fields')}"
            )
            return None
        return PaymentTransaction.from_dict(updated)

    def mark_succeeded(self, transaction: PaymentTransaction, payment_intent_id: Optional[str],
                       charge_id: Optional[str] = None, receipt_url: Optional[str] = None,
                       paid_at: Optional[datetime] = None) -> Optional[PaymentTransaction]:
        changes = {
            'status': TransactionStatus.SUCCESS.value,
            'gateway_payment_intent_id': payment_intent_id,
            'paid_at': (paid_at or self.clock()).isoformat()
        }
        if charge_id:
            changes['gateway_charge_id'] = charge_id
        if receipt_url:
            changes['receipt_url'] = receipt_url
        return self._transition(transaction, [TransactionStatus.PENDING, TransactionStatus.FAILED], changes)

    def mark_failed(self, transaction: PaymentTransaction, reason: str,
                    payment_intent_id: Optional[str] = None) -> Optional[PaymentTransaction]:
        changes = {'status': TransactionStatus.FAILED.value, 'failure_reason': reason}
        if payment_intent_id:
            changes['gateway_payment_intent_id'] = payment_intent_id
        return self._transition(transaction, [TransactionStatus.PENDING], changes)

    def mark_refunded(self, transaction: PaymentTransaction, refund_amount: Decimal,
                      refunded_at: Optional[datetime] = None,
                      charge_id: Optional[str] = None) -> Optional[PaymentTransaction]:
        changes = {
            'status': TransactionStatus.REFUNDED.value,
            'refund_amount': str(refund_amount),
            'refunded_at': (refunded_at or self.clock()).isoformat()
        }
        if charge_id:
            changes['gateway_charge_id'] = charge_id
        return self._transition(
            transaction, [TransactionStatus.SUCCESS, TransactionStatus.PENDING], changes
        )

    def attach_charge(self, transaction: PaymentTransaction, payment_intent_id: str,
                      charge_id: Optional[str], receipt_url: Optional[str]) -> PaymentTransaction:
        """Record gateway charge details without touching the status"""
        changes: Dict[str, Any] = {'gateway_payment_intent_id': payment_intent_id}
        if charge_id:
            changes['gateway_charge_id'] = charge_id
        if receipt_url:
            changes['receipt_url'] = receipt_url
        updated = self.storage.update_if(
            self.table, transaction.id, {},
            dict(changes, updated_at=self.clock().isoformat())
        )
        if updated is None:
            raise TransactionNotFoundError(transaction.id)
        return PaymentTransaction.from_dict(updated)

    def cancel_superseded(self, installment_id: str, keep_id: Optional[str] = None) -> int:
        """Cancel the PENDING attempts left over once an installment is settled"""
        cancelled = 0
        for transaction in self.find_by_installment(installment_id):
            if transaction.id == keep_id or transaction.status != TransactionStatus.PENDING:
                continue
            if self._transition(transaction, [TransactionStatus.PENDING],
                                {'status': TransactionStatus.CANCELLED.value}):
                cancelled += 1
        return cancelled
