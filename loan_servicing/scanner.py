"""
Installment Scanner

The two recurring sweeps over the installment ledger:

* reminder sweep: PENDING installments due within the reminder window get a
  reminder with a fresh payment link;
* overdue sweep: installments past their grace period get their fine
  accrued (PENDING becomes OVERDUE) and an overdue notice.

Items are processed one at a time with a short pause between them. A failure
on one installment is logged and counted; the sweep carries on.
"""

import asyncio
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from .errors import LoanServicingError
from .installments import Installment, InstallmentLedger, InstallmentStatus
from .logging_config import log_action
from .notifications import (
    NotificationSender, OverdueDetails, RecipientDirectory, ReminderDetails,
)
from .payments import PaymentSessionBroker

logger = logging.getLogger("loan_servicing.scanner")

REMINDER_SWEEP = "installment_reminders"
OVERDUE_SWEEP = "overdue_notices"


@dataclass(frozen=True)
class ReminderPolicy:
    days_before_due: int = 3
    max_reminders: int = 3
    min_hours_between_reminders: int = 24
    item_delay_seconds: float = 0.1

    @property
    def max_overdue_notices(self) -> int:
        # Overdue notices share the reminder counter with a higher cap
        return self.max_reminders * 2


@dataclass
class SweepResult:
    sweep: str
    started_at: datetime
    selected: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    finished_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sweep": self.sweep,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "selected": self.selected,
            "sent": self.sent,
            "failed": self.failed,
            "skipped": self.skipped
        }


def days_until(due_date: datetime, now: datetime) -> int:
    """Whole days until ``due_date``, rounded up"""
    return math.ceil((due_date - now).total_seconds() / 86400)


class InstallmentScanner:
    """Runs the reminder and overdue sweeps"""

    def __init__(
        self,
        ledger: InstallmentLedger,
        broker: PaymentSessionBroker,
        notifier: NotificationSender,
        recipients: RecipientDirectory,
        policy: Optional[ReminderPolicy] = None,
        frontend_url: str = "http://localhost:3000",
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.ledger = ledger
        self.broker = broker
        self.notifier = notifier
        self.recipients = recipients
        self.policy = policy or ReminderPolicy()
        self.frontend_url = frontend_url.rstrip("/")
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self._locks = {REMINDER_SWEEP: asyncio.Lock(), OVERDUE_SWEEP: asyncio.Lock()}

    # Selection

    def select_for_reminder(self, now: datetime) -> list:
        policy = self.policy
        window_end = now + timedelta(days=policy.days_before_due)
        quiet_until = now - timedelta(hours=policy.min_hours_between_reminders)

        selected = [
            i for i in self.ledger.find_by_status([InstallmentStatus.PENDING])
            if now <= i.due_date <= window_end
            and i.reminders_sent < policy.max_reminders
            and (i.last_reminder_sent is None or i.last_reminder_sent < quiet_until)
        ]
        selected.sort(key=lambda i: i.due_date)
        return selected

    def select_overdue(self, now: datetime) -> list:
        selected = [
            i for i in self.ledger.find_by_status([InstallmentStatus.PENDING, InstallmentStatus.OVERDUE])
            if i.grace_period_end_date < now
            and i.reminders_sent < self.policy.max_overdue_notices
        ]
        selected.sort(key=lambda i: i.due_date)
        return selected

    # Sweeps

    async def run_reminder_sweep(self, now: Optional[datetime] = None) -> SweepResult:
        return await self._run(REMINDER_SWEEP, self.select_for_reminder, self._remind, now)

    async def run_overdue_sweep(self, now: Optional[datetime] = None) -> SweepResult:
        return await self._run(OVERDUE_SWEEP, self.select_overdue, self._notify_overdue, now)

    async def _run(self, sweep: str, select, process, now: Optional[datetime]) -> SweepResult:
        now = now or self.clock()
        result = SweepResult(sweep=sweep, started_at=now)

        lock = self._locks[sweep]
        if lock.locked():
            logger.warning(f"Sweep {sweep} already running, skipping")
            result.finished_at = self.clock()
            return result

        async with lock:
            installments = select(now)
            result.selected = len(installments)
            logger.info(f"Starting {sweep} sweep: {result.selected} installments")

            for index, installment in enumerate(installments):
                if index and self.policy.item_delay_seconds > 0:
                    await asyncio.sleep(self.policy.item_delay_seconds)
                try:
                    outcome = await process(installment, now)
                except Exception as e:
                    logger.error(f"Error processing installment {installment.id} in {sweep}: {e}")
                    result.failed += 1
                    continue

                if outcome is None:
                    result.skipped += 1
                elif outcome:
                    result.sent += 1
                else:
                    result.failed += 1

        result.finished_at = self.clock()
        log_action(
            logger, "info", f"Sweep {sweep} finished",
            action=sweep, resource="installments",
            extra={"selected": result.selected, "sent": result.sent,
                   "failed": result.failed, "skipped": result.skipped}
        )
        return result

    async def _payment_url(self, installment: Installment) -> Optional[str]:
        """Best effort: a reminder goes out without a link if this fails"""
        try:
            session = await asyncio.to_thread(
                self.broker.create_session,
                installment.id,
                installment.owner_id,
                f"{self.frontend_url}/payment/success",
                f"{self.frontend_url}/payment/cancel"
            )
            return session.session_url
        except LoanServicingError as e:
            logger.error(f"Failed to create payment session for installment {installment.id}: {e}")
            return None

    async def _remind(self, installment: Installment, now: datetime) -> Optional[bool]:
        recipient = self.recipients.get(installment.owner_id)
        if recipient is None:
            logger.warning(f"No recipient for user {installment.owner_id}, installment {installment.id}")
            return None

        payment_url = await self._payment_url(installment)
        sent = await self.notifier.send_installment_reminder(recipient, ReminderDetails(
            installment_number=installment.installment_number,
            amount=installment.amount,
            due_date=installment.due_date,
            days_until_due=days_until(installment.due_date, now),
            payment_url=payment_url,
            loan_id=installment.loan_id,
            installment_id=installment.id
        ))
        if sent:
            updated = self.ledger.record_reminder(installment.id, now)
            if updated is not None:
                logger.info(
                    f"Reminder sent for installment {installment.id} "
                    f"({updated.reminders_sent}/{self.policy.max_reminders})"
                )
        return sent

    async def _notify_overdue(self, installment: Installment, now: datetime) -> Optional[bool]:
        current = self.ledger.accrue_fine(installment.id, now).current
        if not current.is_payable:
            return None

        recipient = self.recipients.get(current.owner_id)
        if recipient is None:
            logger.warning(f"No recipient for user {current.owner_id}, installment {current.id}")
            return None

        payment_url = await self._payment_url(current)
        sent = await self.notifier.send_overdue_notice(recipient, OverdueDetails(
            installment_number=current.installment_number,
            amount=current.amount,
            due_date=current.due_date,
            fine_amount=current.fine_amount,
            total_due=current.total_due,
            days_overdue=current.days_overdue,
            payment_url=payment_url,
            loan_id=current.loan_id,
            installment_id=current.id
        ))
        if sent:
            self.ledger.record_reminder(current.id, now)
            logger.info(f"Overdue notice sent for installment {current.id}")
        return sent
