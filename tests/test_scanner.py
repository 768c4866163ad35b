"""
Tests for the reminder and overdue sweeps
"""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from loan_servicing.installments import InstallmentStatus
from loan_servicing.notifications import NotificationType
from loan_servicing.scanner import REMINDER_SWEEP, ReminderPolicy, days_until
from loan_servicing.transactions import TransactionStatus

from conftest import ADMIN_ID, LOAN_START

# Three days before the first due date (2025-01-28 00:00 UTC)
REMINDER_TIME = datetime(2025, 1, 25, 12, 0, tzinfo=timezone.utc)
# Three days past the first grace period end (2025-02-07 00:00 UTC)
OVERDUE_TIME = datetime(2025, 2, 10, 0, 0, tzinfo=timezone.utc)


def run(coro):
    return asyncio.run(coro)


class TestDaysUntil:
    def test_rounds_up(self):
        due = datetime(2025, 1, 28, tzinfo=timezone.utc)
        assert days_until(due, REMINDER_TIME) == 3
        assert days_until(due, due - timedelta(days=2)) == 2


class TestReminderSelection:
    """Test which installments get a reminder"""

    def test_only_due_within_window(self, system, loan):
        selected = system.scanner.select_for_reminder(REMINDER_TIME)
        assert [i.installment_number for i in selected] == [1]

    def test_nothing_before_window(self, system, loan):
        assert system.scanner.select_for_reminder(datetime(2025, 1, 20, tzinfo=timezone.utc)) == []

    def test_past_due_not_reminded(self, system, loan):
        assert system.scanner.select_for_reminder(datetime(2025, 1, 29, tzinfo=timezone.utc)) == []

    def test_paid_not_reminded(self, system, first_installment):
        system.ledger.mark_paid(first_installment, REMINDER_TIME, "pi_1")
        assert system.scanner.select_for_reminder(REMINDER_TIME) == []

    def test_quiet_period(self, system, first_installment):
        system.ledger.record_reminder(first_installment, REMINDER_TIME - timedelta(hours=23))
        assert system.scanner.select_for_reminder(REMINDER_TIME) == []

        system.ledger.record_reminder(first_installment, REMINDER_TIME - timedelta(hours=25))
        assert len(system.scanner.select_for_reminder(REMINDER_TIME)) == 1

    def test_reminder_cap(self, system, first_installment):
        for _ in range(3):
            system.ledger.record_reminder(first_installment, REMINDER_TIME - timedelta(days=2))
        assert system.scanner.select_for_reminder(REMINDER_TIME) == []


class TestReminderSweep:
    def test_sends_reminder_with_payment_link(self, system, notifier, first_installment):
        result = run(system.scanner.run_reminder_sweep(REMINDER_TIME))

        assert (result.selected, result.sent, result.failed, result.skipped) == (1, 1, 0, 0)

        reminder = notifier.of_type(NotificationType.INSTALLMENT_REMINDER)[0]
        assert reminder.data["days_until_due"] == 3
        assert reminder.data["payment_url"].startswith("https://checkout.example.test/pay/cs_test_")

        installment = system.ledger.get(first_installment.id)
        assert installment.reminders_sent == 1
        assert installment.last_reminder_sent == REMINDER_TIME

        attempts = system.transactions.find_by_installment(first_installment.id)
        assert [t.status for t in attempts] == [TransactionStatus.PENDING]

    def test_rerun_respects_quiet_period(self, system, notifier, loan):
        run(system.scanner.run_reminder_sweep(REMINDER_TIME))
        second = run(system.scanner.run_reminder_sweep(REMINDER_TIME + timedelta(hours=1)))
        third = run(system.scanner.run_reminder_sweep(REMINDER_TIME + timedelta(hours=25)))

        assert second.selected == 0
        assert third.sent == 1
        assert len(notifier.of_type(NotificationType.INSTALLMENT_REMINDER)) == 2

    def test_gateway_failure_still_reminds(self, system, gateway, notifier, loan):
        gateway.fail_with = "api unavailable"

        result = run(system.scanner.run_reminder_sweep(REMINDER_TIME))

        assert result.sent == 1
        assert notifier.sent[0].data["payment_url"] is None

    def test_undelivered_not_counted(self, system, notifier, first_installment):
        notifier.succeed = False

        result = run(system.scanner.run_reminder_sweep(REMINDER_TIME))

        assert result.failed == 1
        assert system.ledger.get(first_installment.id).reminders_sent == 0

    def test_unknown_recipient_skipped(self, system, notifier):
        system.loans.create_loan("unregistered", ADMIN_ID, "50000", "10", 6, start_date=LOAN_START)

        result = run(system.scanner.run_reminder_sweep(REMINDER_TIME))

        assert result.skipped == 1
        assert notifier.sent == []

    def test_overlapping_run_skipped(self, system, notifier, loan):
        async def overlapping():
            async with system.scanner._locks[REMINDER_SWEEP]:
                return await system.scanner.run_reminder_sweep(REMINDER_TIME)

        result = run(overlapping())

        assert result.selected == 0
        assert result.finished_at is not None
        assert notifier.sent == []


class TestOverdueSweep:
    """Test fine accrual and overdue notices"""

    def test_accrues_fine_and_notifies(self, system, notifier, first_installment):
        result = run(system.scanner.run_overdue_sweep(OVERDUE_TIME))

        assert result.selected == 1
        assert result.sent == 1

        installment = system.ledger.get(first_installment.id)
        assert installment.status == InstallmentStatus.OVERDUE
        assert installment.fine_amount == Decimal('271')
        assert installment.days_overdue == 3
        assert installment.reminders_sent == 1

        notice = notifier.of_type(NotificationType.OVERDUE_NOTICE)[0]
        assert notice.data["total_due"] == "9297"
        assert notice.data["days_overdue"] == 3

    def test_not_selected_within_grace(self, system, loan):
        within_grace = datetime(2025, 2, 5, tzinfo=timezone.utc)
        assert system.scanner.select_overdue(within_grace) == []

    def test_notice_cap(self, system, notifier, first_installment):
        for day in range(8):
            run(system.scanner.run_overdue_sweep(OVERDUE_TIME + timedelta(days=day)))

        assert len(notifier.of_type(NotificationType.OVERDUE_NOTICE)) == ReminderPolicy().max_overdue_notices

    def test_fine_keeps_growing_to_cap(self, system, first_installment):
        run(system.scanner.run_overdue_sweep(OVERDUE_TIME))
        run(system.scanner.run_overdue_sweep(OVERDUE_TIME + timedelta(days=30)))

        assert system.ledger.get(first_installment.id).fine_amount == Decimal('903')

    def test_fine_accrued_without_recipient(self, system, notifier):
        loan = system.loans.create_loan("unregistered", ADMIN_ID, "100000", "15", 12, start_date=LOAN_START)

        result = run(system.scanner.run_overdue_sweep(OVERDUE_TIME))

        assert result.skipped == 1
        first = system.ledger.find_by_loan(loan.id)[0]
        assert first.fine_amount == Decimal('271')

    def test_defaulted_not_selected(self, system, loan, first_installment):
        system.ledger.accrue_fine(first_installment, OVERDUE_TIME)
        system.loans.mark_defaulted(loan)

        assert system.scanner.select_overdue(OVERDUE_TIME) == []

    def test_one_failure_does_not_stop_sweep(self, system, notifier, loan, first_installment, monkeypatch):
        accrue = system.ledger.accrue_fine

        def flaky(installment, as_of=None):
            if installment == first_installment.id:
                raise RuntimeError("row locked")
            return accrue(installment, as_of)

        monkeypatch.setattr(system.ledger, "accrue_fine", flaky)
        later = datetime(2025, 3, 15, tzinfo=timezone.utc)

        result = run(system.scanner.run_overdue_sweep(later))

        assert result.selected == 2
        assert result.failed == 1
        assert result.sent == 1

    def test_result_to_dict(self, system, loan):
        result = run(system.scanner.run_overdue_sweep(OVERDUE_TIME))

        data = result.to_dict()
        assert data["sweep"] == "overdue_notices"
        assert data["started_at"] == OVERDUE_TIME.isoformat()
        assert data["sent"] == 1
