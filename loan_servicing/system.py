"""
Loan servicing system with all components wired together
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional

from .audit import AuditTrail
from .config import LoanServicingConfig, get_config
from .events import EventDispatcher
from .gateway import MockPaymentGateway, PaymentGateway, StripeGateway
from .installments import InstallmentLedger
from .loans import LoanAggregate, LoanLimits
from .notifications import (
    LogNotificationSender, NotificationSender, StorageRecipientDirectory,
    WebhookNotificationSender,
)
from .payments import PaymentSessionBroker
from .reconciler import WebhookReconciler
from .scanner import OVERDUE_SWEEP, REMINDER_SWEEP, InstallmentScanner, ReminderPolicy
from .scheduler import DailyTrigger, SweepScheduler
from .storage import StorageInterface, create_storage
from .transactions import PaymentTransactionRepository

logger = logging.getLogger("loan_servicing.system")


class LoanServicingSystem:
    """
    Composition root.

    Every collaborator is built here and handed to its users explicitly;
    tests swap in their own storage, gateway, notifier or clock.
    """

    def __init__(
        self,
        config: LoanServicingConfig,
        storage: Optional[StorageInterface] = None,
        gateway: Optional[PaymentGateway] = None,
        notifier: Optional[NotificationSender] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.config = config
        self.storage = storage or create_storage(config.storage_backend, config.database_path)

        self.audit_trail = AuditTrail(self.storage)
        self.events = EventDispatcher()
        self.recipients = StorageRecipientDirectory(self.storage)
        self.gateway = gateway or self._create_gateway(config)
        self.notifier = notifier or self._create_notifier(config, self.storage)

        self.ledger = InstallmentLedger(
            self.storage, self.audit_trail, self.events,
            daily_fine_rate=Decimal(config.daily_fine_rate),
            max_fine_rate=Decimal(config.max_fine_rate),
            clock=clock
        )
        self.loans = LoanAggregate(
            self.storage, self.ledger, self.audit_trail, self.events,
            limits=LoanLimits(
                min_principal=Decimal(config.min_principal),
                max_principal=Decimal(config.max_principal),
                max_interest_rate=Decimal(config.max_interest_rate),
                min_tenure_months=config.min_tenure_months,
                max_tenure_months=config.max_tenure_months
            ),
            grace_period_days=config.grace_period_days,
            currency=config.currency,
            clock=clock
        )
        self.transactions = PaymentTransactionRepository(self.storage, clock=clock)
        self.broker = PaymentSessionBroker(
            self.storage, self.ledger, self.loans, self.transactions, self.gateway,
            self.audit_trail, self.recipients,
            currency=config.currency,
            session_expiry_seconds=config.session_expiry_seconds,
            clock=clock
        )
        self.reconciler = WebhookReconciler(
            self.storage, self.ledger, self.loans, self.transactions, self.gateway,
            self.audit_trail, self.notifier, self.recipients, self.events,
            webhook_secret=config.webhook_secret,
            frontend_url=config.frontend_url,
            currency=config.currency,
            clock=clock
        )
        self.scanner = InstallmentScanner(
            self.ledger, self.broker, self.notifier, self.recipients,
            policy=ReminderPolicy(
                days_before_due=config.reminder_days_before_due,
                max_reminders=config.max_reminders,
                min_hours_between_reminders=config.min_hours_between_reminders,
                item_delay_seconds=config.sweep_item_delay_seconds
            ),
            frontend_url=config.frontend_url,
            clock=clock
        )

        self.scheduler = SweepScheduler(clock=clock)
        self.scheduler.add(DailyTrigger.at_time(
            REMINDER_SWEEP, config.reminder_sweep_time, self.scanner.run_reminder_sweep))
        self.scheduler.add(DailyTrigger.at_time(
            OVERDUE_SWEEP, config.overdue_sweep_time, self.scanner.run_overdue_sweep))

    @classmethod
    def from_config(cls, config: Optional[LoanServicingConfig] = None) -> 'LoanServicingSystem':
        return cls(config or get_config())

    @staticmethod
    def _create_gateway(config: LoanServicingConfig) -> PaymentGateway:
        """Stripe when an API key is configured, the in-memory gateway otherwise"""
        if not config.gateway_api_key:
            logger.warning("No gateway API key configured, using mock payment gateway")
            return MockPaymentGateway(tolerance=config.webhook_tolerance_seconds)
        return StripeGateway(
            api_key=config.gateway_api_key,
            base_url=config.gateway_base_url,
            timeout=config.gateway_timeout,
            tolerance=config.webhook_tolerance_seconds
        )

    @staticmethod
    def _create_notifier(config: LoanServicingConfig, storage: StorageInterface) -> NotificationSender:
        if config.notification_webhook_url:
            return WebhookNotificationSender(
                config.notification_webhook_url, timeout=config.notification_timeout,
                storage=storage, currency=config.currency
            )
        return LogNotificationSender(storage=storage, currency=config.currency)

    def close(self) -> None:
        self.gateway.close()
        self.storage.close()
