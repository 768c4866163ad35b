"""
Installment Ledger Module

Owns installment records and their status transitions: schedule creation,
fine accrual and overdue detection, settlement, waivers and defaults.

Every status transition is a conditional update on the stored status
(``StorageInterface.update_if``), so two writers racing on the same
installment cannot both apply their transition. PAID and WAIVED are terminal;
after reaching either, only notes may change.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from .amortization import AmortizationResult
from .audit import AuditTrail, AuditEventType
from .currency import NumberLike, floor_whole, round_whole, to_decimal
from .errors import (
    AlreadyPaidError, DuplicateInstallmentError, InstallmentNotFoundError,
    InstallmentWaivedError, StorageConflictError,
    ValidationError,
)
from .events import DomainEvent, EventDispatcher
from .storage import StorageInterface, StorageRecord

logger = logging.getLogger("loan_servicing.installments")

SECONDS_PER_DAY = 86400


class InstallmentStatus(Enum):
    PENDING = "PENDING"
    OVERDUE = "OVERDUE"
    PAID = "PAID"
    DEFAULTED = "DEFAULTED"
    WAIVED = "WAIVED"

    @property
    def is_terminal(self) -> bool:
        return self in (InstallmentStatus.PAID, InstallmentStatus.WAIVED)


# Statuses from which an installment can still be collected
PAYABLE_STATUSES = (InstallmentStatus.PENDING, InstallmentStatus.OVERDUE, InstallmentStatus.DEFAULTED)


def _status_values(statuses: Iterable[InstallmentStatus]) -> List[str]:
    return [s.value for s in statuses]


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class Installment(StorageRecord):
    """One scheduled obligation within a loan"""
    loan_id: str
    owner_id: str
    installment_number: int
    amount: Decimal
    due_date: datetime
    grace_period_days: int
    grace_period_end_date: datetime
    currency: str = "PKR"
    fine_amount: Decimal = Decimal('0')
    status: InstallmentStatus = InstallmentStatus.PENDING
    paid_date: Optional[datetime] = None
    gateway_session_id: Optional[str] = None
    gateway_payment_intent_id: Optional[str] = None
    reminders_sent: int = 0
    last_reminder_sent: Optional[datetime] = None
    days_overdue: int = 0
    notes: List[str] = field(default_factory=list)

    @property
    def total_due(self) -> Decimal:
        return self.amount + self.fine_amount

    @property
    def is_payable(self) -> bool:
        return self.status in PAYABLE_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['status'] = self.status.value
        result['total_due'] = str(self.total_due)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Installment':
        data = dict(data)
        data.pop('total_due', None)
        for key in ('created_at', 'updated_at', 'due_date', 'grace_period_end_date',
                    'paid_date', 'last_reminder_sent'):
            if isinstance(data.get(key), str):
                data[key] = _parse_dt(data[key])
        data['amount'] = Decimal(data['amount'])
        data['fine_amount'] = Decimal(data.get('fine_amount', '0'))
        data['status'] = InstallmentStatus(data['status'])
        return cls(**data)


@dataclass(frozen=True)
class InstallmentTransition:
    """Before/after view of one ledger operation, for callers that react to it"""
    previous: Installment
    current: Installment

    @property
    def changed(self) -> bool:
        return self.previous.to_dict() != self.current.to_dict()

    @property
    def status_changed(self) -> bool:
        return self.previous.status != self.current.status

    @property
    def fine_delta(self) -> Decimal:
        return self.current.fine_amount - self.previous.fine_amount


def calculate_fine(amount: Decimal, days_overdue: int,
                   daily_rate: Decimal = Decimal('0.01'),
                   max_rate: Decimal = Decimal('0.10')) -> Decimal:
    """Late fine: daily_rate per day past grace, capped at max_rate, whole units"""
    if days_overdue <= 0:
        return Decimal('0')
    rate = min(Decimal(days_overdue) * daily_rate, max_rate)
    return round_whole(amount * rate)


InstallmentRef = Union[Installment, str]


class InstallmentLedger:
    """
    Installment ledger

    Operations fail loudly to their caller. Domain events are published only
    after the surrounding storage transaction commits.
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        events: Optional[EventDispatcher] = None,
        daily_fine_rate: NumberLike = Decimal('0.01'),
        max_fine_rate: NumberLike = Decimal('0.10'),
        clock: Optional[Callable[[], datetime]] = None,
        max_attempts: int = 3
    ):
        self.storage = storage
        self.audit = audit_trail
        self.events = events or EventDispatcher()
        self.daily_fine_rate = to_decimal(daily_fine_rate)
        self.max_fine_rate = to_decimal(max_fine_rate)
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.max_attempts = max_attempts
        self.table = "installments"

    # Queries

    def get(self, installment_id: str) -> Installment:
        if not installment_id or not isinstance(installment_id, str):
            raise ValidationError("installment_id", "Installment id is required")
        data = self.storage.load(self.table, installment_id)
        if data is None:
            raise InstallmentNotFoundError(installment_id)
        return Installment.from_dict(data)

    def find_by_loan(self, loan_id: str) -> List[Installment]:
        records = self.storage.find(self.table, {'loan_id': loan_id})
        installments = [Installment.from_dict(r) for r in records]
        installments.sort(key=lambda i: i.installment_number)
        return installments

    def find_by_session(self, session_id: str) -> Optional[Installment]:
        records = self.storage.find(self.table, {'gateway_session_id': session_id})
        return Installment.from_dict(records[0]) if records else None

    def find_by_status(self, statuses: Iterable[InstallmentStatus]) -> List[Installment]:
        records = self.storage.find(self.table, {'status': _status_values(statuses)})
        installments = [Installment.from_dict(r) for r in records]
        installments.sort(key=lambda i: (i.due_date, i.installment_number))
        return installments

    # Schedule

    def create_schedule(self, loan, schedule: AmortizationResult) -> List[Installment]:
        """
        Bulk-insert one PENDING installment per schedule period.

        Fails atomically with DuplicateInstallmentError if any ordinal already
        exists for the loan.
        """
        now = self.clock()
        existing = {i.installment_number for i in self.find_by_loan(loan.id)}
        created = []

        with self.storage.atomic():
            for period in schedule.periods:
                if period.installment_number in existing:
                    raise DuplicateInstallmentError(loan.id, period.installment_number)

                installment = Installment(
                    id=f"{loan.id}_{period.installment_number}",
                    created_at=now,
                    updated_at=now,
                    loan_id=loan.id,
                    owner_id=loan.owner_id,
                    installment_number=period.installment_number,
                    amount=schedule.monthly_installment,
                    currency=loan.currency,
                    due_date=period.due_date,
                    grace_period_days=(period.grace_period_end_date - period.due_date).days,
                    grace_period_end_date=period.grace_period_end_date
                )
                try:
                    self.storage.insert(self.table, installment.id, installment.to_dict())
                except StorageConflictError:
                    raise DuplicateInstallmentError(loan.id, period.installment_number)
                created.append(installment)

            self.audit.log_event(
                AuditEventType.SCHEDULE_CREATED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    'installments': len(created),
                    'monthly_installment': schedule.monthly_installment,
                    'first_due_date': created[0].due_date if created else None
                }
            )

        logger.info(f"Created {len(created)} installments for loan {loan.id}")
        return created

    # Transitions

    def _resolve(self, installment: InstallmentRef) -> Installment:
        if isinstance(installment, Installment):
            return self.get(installment.id)
        return self.get(installment)

    def _refuse_terminal(self, installment: Installment) -> None:
        if installment.status == InstallmentStatus.PAID:
            raise AlreadyPaidError(installment.id)
        if installment.status == InstallmentStatus.WAIVED:
            raise InstallmentWaivedError(installment.id)

    def _apply(self, installment: Installment, expected: Dict[str, Any],
               changes: Dict[str, Any]) -> Optional[Installment]:
        changes = dict(changes, updated_at=self.clock().isoformat())
        if 'fine_amount' in changes:
            changes['total_due'] = str(installment.amount + Decimal(changes['fine_amount']))
        updated = self.storage.update_if(self.table, installment.id, expected, changes)
        return Installment.from_dict(updated) if updated else None

    def _publish(self, event_type: DomainEvent, installment: Installment, **data: Any) -> None:
        self.storage.on_commit(lambda: self.events.emit(
            event_type, "installment", installment.id,
            loan_id=installment.loan_id, installment_number=installment.installment_number,
            **data
        ))

    def accrue_fine(self, installment: InstallmentRef,
                    as_of: Optional[datetime] = None) -> InstallmentTransition:
        """
        Assess the late fine as of ``as_of``.

        No-op on PAID/WAIVED installments and before the grace period ends.
        The stored fine only ever grows; PENDING becomes OVERDUE on the first
        evaluation past the grace period.
        """
        as_of = as_of or self.clock()

        for _ in range(self.max_attempts):
            current = self._resolve(installment)
            if current.status.is_terminal or as_of <= current.grace_period_end_date:
                return InstallmentTransition(current, current)

            elapsed = (as_of - current.grace_period_end_date).total_seconds()
            days_overdue = floor_whole(Decimal(str(elapsed)) / SECONDS_PER_DAY)
            fine = calculate_fine(current.amount, days_overdue,
                                  self.daily_fine_rate, self.max_fine_rate)

            changes: Dict[str, Any] = {}
            if days_overdue > current.days_overdue:
                changes['days_overdue'] = days_overdue
            if fine > current.fine_amount:
                changes['fine_amount'] = str(fine)
            if current.status == InstallmentStatus.PENDING:
                changes['status'] = InstallmentStatus.OVERDUE.value
            if not changes:
                return InstallmentTransition(current, current)

            expected = {
                'status': current.status.value,
                'fine_amount': str(current.fine_amount)
            }
            with self.storage.atomic():
                updated = self._apply(current, expected, changes)
                if updated is None:
                    continue

                if updated.fine_amount > current.fine_amount:
                    self.audit.log_event(
                        AuditEventType.FINE_ACCRUED,
                        entity_type="installment",
                        entity_id=updated.id,
                        metadata={
                            'previous_fine': current.fine_amount,
                            'fine_amount': updated.fine_amount,
                            'days_overdue': updated.days_overdue
                        }
                    )
                    self._publish(DomainEvent.INSTALLMENT_FINE_ACCRUED, updated,
                                  fine_amount=str(updated.fine_amount),
                                  days_overdue=updated.days_overdue)
                if current.status != updated.status:
                    self._publish(DomainEvent.INSTALLMENT_OVERDUE, updated,
                                  days_overdue=updated.days_overdue)

            logger.info(
                f"Installment {updated.id}: {current.status.value} -> {updated.status.value}, "
                f"fine {current.fine_amount} -> {updated.fine_amount}"
            )
            return InstallmentTransition(current, updated)

        raise StorageConflictError(f"Installment {self._ref_id(installment)} kept changing during fine accrual")

    def mark_paid(self, installment: InstallmentRef, paid_date: datetime,
                  payment_intent_id: Optional[str]) -> InstallmentTransition:
        """
        Settle an installment.

        Raises AlreadyPaidError / InstallmentWaivedError if the installment is
        already terminal. The status check and the write are one conditional
        update, so concurrent settlements of the same installment cannot both
        succeed.
        """
        for _ in range(self.max_attempts):
            current = self._resolve(installment)
            self._refuse_terminal(current)

            with self.storage.atomic():
                updated = self._apply(
                    current,
                    {'status': current.status.value},
                    {
                        'status': InstallmentStatus.PAID.value,
                        'paid_date': paid_date.isoformat(),
                        'gateway_payment_intent_id': payment_intent_id,
                        'gateway_session_id': None
                    }
                )
                if updated is None:
                    continue

                self.audit.log_event(
                    AuditEventType.INSTALLMENT_PAID,
                    entity_type="installment",
                    entity_id=updated.id,
                    metadata={
                        'previous_status': current.status,
                        'total_due': updated.total_due,
                        'payment_intent_id': payment_intent_id
                    }
                )
                self._publish(DomainEvent.INSTALLMENT_PAID, updated,
                              total_due=str(updated.total_due),
                              payment_intent_id=payment_intent_id)

            logger.info(f"Installment {updated.id} marked PAID")
            return InstallmentTransition(current, updated)

        raise StorageConflictError(f"Installment {self._ref_id(installment)} kept changing during settlement")

    def waive(self, installment: InstallmentRef, reason: str,
              waived_by: Optional[str] = None) -> InstallmentTransition:
        """
        Waive the accrued fine.

        Allowed from any status except PAID. The status itself is left as is,
        so an OVERDUE installment stays OVERDUE and collectible, just fine-free.
        """
        reason = self._require_reason(reason)

        for _ in range(self.max_attempts):
            current = self._resolve(installment)
            if current.status == InstallmentStatus.PAID:
                raise AlreadyPaidError(current.id)

            note = f"Fine of {current.fine_amount} waived: {reason}"
            with self.storage.atomic():
                updated = self._apply(
                    current,
                    {'status': current.status.value, 'fine_amount': str(current.fine_amount)},
                    {'fine_amount': '0', 'notes': current.notes + [note]}
                )
                if updated is None:
                    continue

                self.audit.log_event(
                    AuditEventType.FINE_WAIVED,
                    entity_type="installment",
                    entity_id=updated.id,
                    metadata={'waived_amount': current.fine_amount, 'reason': reason},
                    user_id=waived_by
                )
                self._publish(DomainEvent.INSTALLMENT_FINE_WAIVED, updated,
                              waived_amount=str(current.fine_amount), reason=reason)

            logger.info(f"Fine waived on installment {updated.id} ({current.fine_amount})")
            return InstallmentTransition(current, updated)

        raise StorageConflictError(f"Installment {self._ref_id(installment)} kept changing during waiver")

    def waive_installment(self, installment: InstallmentRef, reason: str,
                          waived_by: Optional[str] = None) -> InstallmentTransition:
        """Admin override: move a non-PAID installment to WAIVED and clear its fine"""
        reason = self._require_reason(reason)

        for _ in range(self.max_attempts):
            current = self._resolve(installment)
            self._refuse_terminal(current)

            with self.storage.atomic():
                updated = self._apply(
                    current,
                    {'status': current.status.value},
                    {
                        'status': InstallmentStatus.WAIVED.value,
                        'fine_amount': '0',
                        'gateway_session_id': None,
                        'notes': current.notes + [f"Installment waived: {reason}"]
                    }
                )
                if updated is None:
                    continue

                self.audit.log_event(
                    AuditEventType.INSTALLMENT_WAIVED,
                    entity_type="installment",
                    entity_id=updated.id,
                    metadata={
                        'previous_status': current.status,
                        'waived_amount': current.total_due,
                        'reason': reason
                    },
                    user_id=waived_by
                )
                self._publish(DomainEvent.INSTALLMENT_WAIVED, updated, reason=reason)

            logger.info(f"Installment {updated.id} waived")
            return InstallmentTransition(current, updated)

        raise StorageConflictError(f"Installment {self._ref_id(installment)} kept changing during waiver")

    def mark_defaulted(self, installment: InstallmentRef,
                       reason: Optional[str] = None) -> InstallmentTransition:
        """PENDING/OVERDUE -> DEFAULTED; already DEFAULTED is a no-op"""
        for _ in range(self.max_attempts):
            current = self._resolve(installment)
            self._refuse_terminal(current)
            if current.status == InstallmentStatus.DEFAULTED:
                return InstallmentTransition(current, current)

            with self.storage.atomic():
                updated = self._apply(
                    current,
                    {'status': current.status.value},
                    {'status': InstallmentStatus.DEFAULTED.value}
                )
                if updated is None:
                    continue

                self.audit.log_event(
                    AuditEventType.INSTALLMENT_DEFAULTED,
                    entity_type="installment",
                    entity_id=updated.id,
                    metadata={'previous_status': current.status, 'reason': reason}
                )
                self._publish(DomainEvent.INSTALLMENT_DEFAULTED, updated, reason=reason)

            return InstallmentTransition(current, updated)

        raise StorageConflictError(f"Installment {self._ref_id(installment)} kept changing during default")

    def attach_session(self, installment: InstallmentRef, session_id: str) -> Installment:
        """Record the live checkout session, replacing any earlier one"""
        for _ in range(self.max_attempts):
            current = self._resolve(installment)
            self._refuse_terminal(current)
            updated = self._apply(
                current,
                {'status': _status_values(PAYABLE_STATUSES)},
                {'gateway_session_id': session_id}
            )
            if updated is not None:
                return updated

        raise StorageConflictError(f"Installment {self._ref_id(installment)} kept changing")

    def record_reminder(self, installment: InstallmentRef,
                        sent_at: Optional[datetime] = None) -> Optional[Installment]:
        """
        Count one more reminder sent for a still-payable installment.

        Returns None if the installment was settled or waived in the meantime.
        """
        sent_at = sent_at or self.clock()
        for _ in range(self.max_attempts):
            current = self._resolve(installment)
            if not current.is_payable:
                return None
            updated = self._apply(
                current,
                {'status': current.status.value, 'reminders_sent': current.reminders_sent},
                {
                    'reminders_sent': current.reminders_sent + 1,
                    'last_reminder_sent': sent_at.isoformat()
                }
            )
            if updated is not None:
                return updated

        raise StorageConflictError(f"Installment {self._ref_id(installment)} kept changing")

    def append_note(self, installment: InstallmentRef, note: str) -> Installment:
        """Notes are the one field that may change on a terminal installment"""
        current = self._resolve(installment)
        updated = self._apply(current, {}, {'notes': current.notes + [note]})
        if updated is None:
            raise InstallmentNotFoundError(current.id)
        return updated

    @staticmethod
    def _require_reason(reason: Optional[str]) -> str:
        if not reason or not reason.strip():
            raise ValidationError("reason", "A reason is required")
        return reason.strip()

    @staticmethod
    def _ref_id(installment: InstallmentRef) -> str:
        return installment.id if isinstance(installment, Installment) else installment
