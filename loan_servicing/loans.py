"""
Loan Module

Handles loan origination with its full installment schedule, the loan's
running balances (outstanding, repaid, fines) and its lifecycle:
ACTIVE -> COMPLETED / DEFAULTED / CANCELLED. All three end states are
terminal.

Monthly installment and total payable are fixed at origination and never
recomputed from partial payments.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from .amortization import DEFAULT_GRACE_PERIOD_DAYS, build_schedule
from .audit import AuditTrail, AuditEventType
from .currency import NumberLike, to_decimal
from .errors import (
    InvalidTransitionError, LoanClosedError, LoanNotFoundError, ValidationError,
)
from .events import DomainEvent, EventDispatcher
from .installments import Installment, InstallmentLedger, InstallmentStatus
from .storage import StorageInterface, StorageRecord

logger = logging.getLogger("loan_servicing.loans")


class LoanStatus(Enum):
    """Loan lifecycle states"""
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    DEFAULTED = "DEFAULTED"
    CANCELLED = "CANCELLED"


@dataclass(frozen=True)
class LoanLimits:
    """Origination limits"""
    min_principal: Decimal = Decimal('5000')
    max_principal: Decimal = Decimal('500000')
    min_interest_rate: Decimal = Decimal('0')
    max_interest_rate: Decimal = Decimal('30')
    min_tenure_months: int = 3
    max_tenure_months: int = 60


@dataclass
class Loan(StorageRecord):
    """One disbursed credit line"""
    owner_id: str                 # Borrower
    creator_id: str               # Admin who issued the loan
    principal_amount: Decimal
    interest_rate: Decimal        # Annual, percent (15 means 15%)
    tenure_months: int
    monthly_installment: Decimal
    total_payable: Decimal
    outstanding_balance: Decimal
    start_date: datetime
    end_date: datetime
    currency: str = "PKR"
    total_repaid: Decimal = Decimal('0')
    total_fines: Decimal = Decimal('0')
    status: LoanStatus = LoanStatus.ACTIVE
    completed_at: Optional[datetime] = None
    defaulted_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    notes: List[str] = field(default_factory=list)

    @property
    def is_active(self) -> bool:
        return self.status == LoanStatus.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['status'] = self.status.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        data = dict(data)
        for key in ('created_at', 'updated_at', 'start_date', 'end_date',
                    'completed_at', 'defaulted_at', 'cancelled_at'):
            if isinstance(data.get(key), str):
                data[key] = datetime.fromisoformat(data[key])
        for key in ('principal_amount', 'interest_rate', 'monthly_installment', 'total_payable',
                    'outstanding_balance', 'total_repaid', 'total_fines'):
            data[key] = Decimal(data[key])
        data['status'] = LoanStatus(data['status'])
        return cls(**data)


LoanRef = Union[Loan, str]


class LoanAggregate:
    """
    Owns loan records and keeps their balances in step with installment
    settlements.
    """

    def __init__(
        self,
        storage: StorageInterface,
        ledger: InstallmentLedger,
        audit_trail: AuditTrail,
        events: Optional[EventDispatcher] = None,
        limits: Optional[LoanLimits] = None,
        grace_period_days: int = DEFAULT_GRACE_PERIOD_DAYS,
        currency: str = "PKR",
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.storage = storage
        self.ledger = ledger
        self.audit_trail = audit_trail
        self.events = events or ledger.events
        self.limits = limits or LoanLimits()
        self.grace_period_days = grace_period_days
        self.currency = currency
        self.clock = clock or (lambda: datetime.now(timezone.utc))

        self.loans_table = "loans"

    # Origination

    def _validate_terms(self, principal: Decimal, annual_rate: Decimal, tenure_months: int) -> None:
        limits = self.limits
        if principal < limits.min_principal:
            raise ValidationError("principal_amount", f"Minimum loan amount is {self.currency} {limits.min_principal:,}")
        if principal > limits.max_principal:
            raise ValidationError("principal_amount", f"Maximum loan amount is {self.currency} {limits.max_principal:,}")
        if annual_rate < limits.min_interest_rate:
            raise ValidationError("interest_rate", "Interest rate cannot be negative")
        if annual_rate > limits.max_interest_rate:
            raise ValidationError("interest_rate", f"Interest rate cannot exceed {limits.max_interest_rate}%")
        if tenure_months < limits.min_tenure_months:
            raise ValidationError("tenure_months", f"Minimum tenure is {limits.min_tenure_months} months")
        if tenure_months > limits.max_tenure_months:
            raise ValidationError("tenure_months", f"Maximum tenure is {limits.max_tenure_months} months")

    def create_loan(
        self,
        owner_id: str,
        creator_id: str,
        principal: NumberLike,
        annual_rate: NumberLike,
        tenure_months: int,
        start_date: Optional[Union[date, datetime]] = None,
        notes: Optional[str] = None
    ) -> Loan:
        """
        Issue a loan and write its full installment schedule.

        The loan and every installment are written in one atomic block.

        Args:
            owner_id: Borrower user id
            creator_id: Issuing admin id
            principal: Principal amount
            annual_rate: Annual interest rate in percent
            tenure_months: Number of monthly installments
            start_date: Schedule start; installment k is due k months later
            notes: Optional admin notes

        Returns:
            Created Loan
        """
        if not owner_id:
            raise ValidationError("owner_id", "Borrower is required")
        try:
            principal = to_decimal(principal)
            annual_rate = to_decimal(annual_rate)
        except (ArithmeticError, TypeError, ValueError):
            raise ValidationError("principal_amount", "Amounts must be numeric")
        if isinstance(tenure_months, bool) or not isinstance(tenure_months, int):
            raise ValidationError("tenure_months", "Tenure must be a whole number of months")

        self._validate_terms(principal, annual_rate, tenure_months)

        now = self.clock()
        schedule = build_schedule(principal, annual_rate, tenure_months,
                                  start_date or now, self.grace_period_days)

        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            owner_id=owner_id,
            creator_id=creator_id,
            principal_amount=principal,
            interest_rate=annual_rate,
            tenure_months=tenure_months,
            monthly_installment=schedule.monthly_installment,
            total_payable=schedule.total_payable,
            outstanding_balance=schedule.total_payable,
            start_date=schedule.start_date,
            end_date=schedule.end_date,
            currency=self.currency,
            notes=[notes] if notes else []
        )

        with self.storage.atomic():
            self.storage.insert(self.loans_table, loan.id, loan.to_dict())
            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_CREATED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "owner_id": owner_id,
                    "principal_amount": principal,
                    "interest_rate": annual_rate,
                    "tenure_months": tenure_months,
                    "monthly_installment": loan.monthly_installment,
                    "total_payable": loan.total_payable
                },
                user_id=creator_id
            )
            self.ledger.create_schedule(loan, schedule)
            self._publish(DomainEvent.LOAN_CREATED, loan, owner_id=owner_id,
                          total_payable=str(loan.total_payable))

        logger.info(
            f"Loan {loan.id} created for {owner_id}: {loan.currency} {principal} at {annual_rate}% "
            f"over {tenure_months} months, installment {loan.monthly_installment}"
        )
        return loan

    # Queries

    def get(self, loan_id: str) -> Loan:
        if not loan_id:
            raise ValidationError("loan_id", "Loan id is required")
        data = self.storage.load(self.loans_table, loan_id)
        if data is None:
            raise LoanNotFoundError(loan_id)
        return Loan.from_dict(data)

    def find_by_owner(self, owner_id: str) -> List[Loan]:
        loans = [Loan.from_dict(r) for r in self.storage.find(self.loans_table, {'owner_id': owner_id})]
        loans.sort(key=lambda l: l.created_at)
        return loans

    def _resolve(self, loan: LoanRef) -> Loan:
        return self.get(loan.id if isinstance(loan, Loan) else loan)

    def _save_loan(self, loan: Loan) -> None:
        loan.updated_at = self.clock()
        self.storage.save(self.loans_table, loan.id, loan.to_dict())

    def _publish(self, event_type: DomainEvent, loan: Loan, **data: Any) -> None:
        self.storage.on_commit(lambda: self.events.emit(event_type, "loan", loan.id, **data))

    # Balances

    def apply_successful_payment(self, loan: LoanRef, installment: Installment) -> Loan:
        """
        Fold one settled installment into the loan's balances.

        total_repaid grows by the installment amount (fines are tracked
        separately in total_fines); outstanding_balance drops by the total
        collected, floored at zero. Reaching zero completes an ACTIVE loan.

        Not idempotent: callers must apply each installment once, which the
        reconciler guarantees through the installment's PAID transition.
        """
        with self.storage.atomic():
            current = self._resolve(loan)
            if current.status != LoanStatus.ACTIVE:
                logger.warning(
                    f"Applying payment for installment {installment.id} to {current.status.value} loan {current.id}"
                )

            current.total_repaid += installment.amount
            current.outstanding_balance = max(Decimal('0'), current.outstanding_balance - installment.total_due)
            current.total_fines += installment.fine_amount

            completed = current.status == LoanStatus.ACTIVE and current.outstanding_balance <= 0
            if completed:
                current.status = LoanStatus.COMPLETED
                current.completed_at = self.clock()

            self._save_loan(current)

            if completed:
                self.audit_trail.log_event(
                    event_type=AuditEventType.LOAN_COMPLETED,
                    entity_type="loan",
                    entity_id=current.id,
                    metadata={"total_repaid": current.total_repaid, "total_fines": current.total_fines}
                )
                self._publish(DomainEvent.LOAN_COMPLETED, current,
                              total_repaid=str(current.total_repaid))

        if completed:
            logger.info(f"Loan {current.id} completed")
        return current

    # Lifecycle

    def mark_defaulted(self, loan: LoanRef, reason: Optional[str] = None,
                       actor_id: Optional[str] = None) -> Loan:
        """
        ACTIVE -> DEFAULTED; OVERDUE installments are defaulted with it.

        Re-defaulting a DEFAULTED loan is a no-op.
        """
        with self.storage.atomic():
            current = self._resolve(loan)
            if current.status == LoanStatus.DEFAULTED:
                return current
            if current.status != LoanStatus.ACTIVE:
                raise LoanClosedError(current.id, current.status.value)

            current.status = LoanStatus.DEFAULTED
            current.defaulted_at = self.clock()
            if reason:
                current.notes.append(f"Defaulted: {reason}")
            self._save_loan(current)

            cascaded = 0
            for installment in self.ledger.find_by_loan(current.id):
                if installment.status == InstallmentStatus.OVERDUE:
                    self.ledger.mark_defaulted(installment, reason="Loan defaulted")
                    cascaded += 1

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_DEFAULTED,
                entity_type="loan",
                entity_id=current.id,
                metadata={
                    "reason": reason,
                    "outstanding_balance": current.outstanding_balance,
                    "installments_defaulted": cascaded
                },
                user_id=actor_id
            )
            self._publish(DomainEvent.LOAN_DEFAULTED, current,
                          outstanding_balance=str(current.outstanding_balance))

        logger.info(f"Loan {current.id} defaulted ({cascaded} installments)")
        return current

    def mark_completed(self, loan: LoanRef, actor_id: Optional[str] = None) -> Loan:
        """ACTIVE -> COMPLETED; re-completing a COMPLETED loan is a no-op"""
        with self.storage.atomic():
            current = self._resolve(loan)
            if current.status == LoanStatus.COMPLETED:
                return current
            if current.status != LoanStatus.ACTIVE:
                raise LoanClosedError(current.id, current.status.value)

            current.status = LoanStatus.COMPLETED
            current.completed_at = self.clock()
            self._save_loan(current)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_COMPLETED,
                entity_type="loan",
                entity_id=current.id,
                metadata={"outstanding_balance": current.outstanding_balance, "manual": True},
                user_id=actor_id
            )
            self._publish(DomainEvent.LOAN_COMPLETED, current,
                          total_repaid=str(current.total_repaid))

        return current

    def cancel(self, loan: LoanRef, reason: str, actor_id: Optional[str] = None) -> Loan:
        """
        Cancel an ACTIVE loan on which nothing has been repaid.

        Its remaining installments are waived.
        """
        if not reason or not reason.strip():
            raise ValidationError("reason", "A reason is required")

        with self.storage.atomic():
            current = self._resolve(loan)
            if current.status != LoanStatus.ACTIVE:
                raise LoanClosedError(current.id, current.status.value)
            installments = self.ledger.find_by_loan(current.id)
            if current.total_repaid > 0 or any(i.status == InstallmentStatus.PAID for i in installments):
                raise InvalidTransitionError(f"Loan {current.id} has repayments and cannot be cancelled")

            current.status = LoanStatus.CANCELLED
            current.cancelled_at = self.clock()
            current.notes.append(f"Cancelled: {reason.strip()}")
            self._save_loan(current)

            for installment in installments:
                if installment.status != InstallmentStatus.WAIVED:
                    self.ledger.waive_installment(installment, f"Loan cancelled: {reason.strip()}", actor_id)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_CANCELLED,
                entity_type="loan",
                entity_id=current.id,
                metadata={"reason": reason.strip()},
                user_id=actor_id
            )
            self._publish(DomainEvent.LOAN_CANCELLED, current, reason=reason.strip())

        return current
