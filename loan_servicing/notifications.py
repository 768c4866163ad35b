"""
Notification Module

Outbound borrower notifications (installment reminders, overdue notices,
payment confirmations and failures, default notices) behind an async sender
interface, plus the recipient directory that resolves a borrower id to an
address.

Senders report delivery as True/False and never raise into the caller; each
attempt is recorded in the notification log when a storage backend is given.
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

import requests

from .logging_config import log_action
from .storage import StorageInterface

logger = logging.getLogger("loan_servicing.notifications")


class NotificationType(Enum):
    INSTALLMENT_REMINDER = "INSTALLMENT_REMINDER"
    OVERDUE_NOTICE = "OVERDUE_NOTICE"
    PAYMENT_CONFIRMATION = "PAYMENT_CONFIRMATION"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    DEFAULT_NOTICE = "DEFAULT_NOTICE"


class NotificationStatus(Enum):
    SENT = "SENT"
    FAILED = "FAILED"


@dataclass
class Recipient:
    user_id: str
    email: str
    name: str = ""


@dataclass
class ReminderDetails:
    installment_number: int
    amount: Decimal
    due_date: datetime
    days_until_due: int
    payment_url: Optional[str] = None
    loan_id: Optional[str] = None
    installment_id: Optional[str] = None


@dataclass
class OverdueDetails:
    installment_number: int
    amount: Decimal
    due_date: datetime
    fine_amount: Decimal
    total_due: Decimal
    days_overdue: int
    payment_url: Optional[str] = None
    loan_id: Optional[str] = None
    installment_id: Optional[str] = None


@dataclass
class ConfirmationDetails:
    installment_number: int
    amount: Decimal
    paid_date: datetime
    remaining_balance: Decimal
    receipt_url: Optional[str] = None
    loan_id: Optional[str] = None
    installment_id: Optional[str] = None


@dataclass
class PaymentFailedDetails:
    installment_number: int
    amount: Decimal
    failure_reason: str
    retry_url: str
    loan_id: Optional[str] = None
    installment_id: Optional[str] = None


@dataclass
class DefaultNoticeDetails:
    loan_amount: Decimal
    outstanding_balance: Decimal
    loan_id: Optional[str] = None


@dataclass
class Notification:
    """One rendered message ready for a channel"""
    notification_type: NotificationType
    recipient: Recipient
    subject: str
    body: str
    data: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def _serializable(details) -> Dict[str, Any]:
    data = asdict(details)
    for key, value in data.items():
        if isinstance(value, Decimal):
            data[key] = str(value)
        elif isinstance(value, datetime):
            data[key] = value.isoformat()
    return data


def _greeting(recipient: Recipient) -> str:
    return f"Dear {recipient.name}," if recipient.name else "Hello,"


class NotificationSender(ABC):
    """
    Base class for notification senders.

    Subclasses implement ``deliver``; the typed ``send_*`` helpers render the
    message, deliver it and record the outcome.
    """

    def __init__(self, storage: Optional[StorageInterface] = None, currency: str = "PKR"):
        self.storage = storage
        self.currency = currency
        self.log_table = "notification_log"

    @abstractmethod
    async def deliver(self, notification: Notification) -> bool:
        """Deliver a rendered notification; True on success"""
        pass

    async def _send(self, notification: Notification) -> bool:
        try:
            delivered = await self.deliver(notification)
            error = None if delivered else "delivery refused"
        except Exception as e:
            logger.error(f"Failed to send {notification.notification_type.value} to {notification.recipient.email}: {e}")
            delivered, error = False, str(e)

        self._record(notification, delivered, error)
        return delivered

    def _record(self, notification: Notification, delivered: bool, error: Optional[str]) -> None:
        if self.storage is None:
            return
        try:
            self.storage.save(self.log_table, notification.id, {
                "id": notification.id,
                "created_at": notification.created_at.isoformat(),
                "user_id": notification.recipient.user_id,
                "recipient_email": notification.recipient.email,
                "notification_type": notification.notification_type.value,
                "subject": notification.subject,
                "status": (NotificationStatus.SENT if delivered else NotificationStatus.FAILED).value,
                "error_message": error,
                "provider": type(self).__name__,
                "metadata": notification.data
            })
        except Exception as e:
            logger.error(f"Failed to record notification {notification.id}: {e}")

    def _money(self, amount: Decimal) -> str:
        return f"{self.currency} {amount:,}"

    async def send_installment_reminder(self, recipient: Recipient, details: ReminderDetails) -> bool:
        body = (
            f"{_greeting(recipient)}\n\n"
            f"Installment #{details.installment_number} of {self._money(details.amount)} "
            f"is due on {details.due_date:%B %d, %Y} ({details.days_until_due} days from now)."
        )
        if details.payment_url:
            body += f"\nPay now: {details.payment_url}"
        return await self._send(Notification(
            NotificationType.INSTALLMENT_REMINDER, recipient,
            f"Payment Reminder - Due in {details.days_until_due} days", body,
            _serializable(details)
        ))

    async def send_overdue_notice(self, recipient: Recipient, details: OverdueDetails) -> bool:
        body = (
            f"{_greeting(recipient)}\n\n"
            f"Installment #{details.installment_number} is {details.days_overdue} days overdue.\n"
            f"Amount: {self._money(details.amount)}\n"
            f"Late fine: {self._money(details.fine_amount)}\n"
            f"Total due: {self._money(details.total_due)}"
        )
        if details.payment_url:
            body += f"\nPay now: {details.payment_url}"
        return await self._send(Notification(
            NotificationType.OVERDUE_NOTICE, recipient,
            f"URGENT: Payment Overdue - {details.days_overdue} days", body,
            _serializable(details)
        ))

    async def send_payment_confirmation(self, recipient: Recipient, details: ConfirmationDetails) -> bool:
        body = (
            f"{_greeting(recipient)}\n\n"
            f"We received {self._money(details.amount)} for installment #{details.installment_number} "
            f"on {details.paid_date:%B %d, %Y}.\n"
            f"Remaining balance: {self._money(details.remaining_balance)}"
        )
        if details.receipt_url:
            body += f"\nReceipt: {details.receipt_url}"
        return await self._send(Notification(
            NotificationType.PAYMENT_CONFIRMATION, recipient,
            "Payment Confirmation - Thank You!", body, _serializable(details)
        ))

    async def send_payment_failed(self, recipient: Recipient, details: PaymentFailedDetails) -> bool:
        body = (
            f"{_greeting(recipient)}\n\n"
            f"Your payment of {self._money(details.amount)} for installment #{details.installment_number} "
            f"failed: {details.failure_reason}\n"
            f"Retry: {details.retry_url}"
        )
        return await self._send(Notification(
            NotificationType.PAYMENT_FAILED, recipient,
            "Payment Failed - Action Required", body, _serializable(details)
        ))

    async def send_default_notice(self, recipient: Recipient, details: DefaultNoticeDetails) -> bool:
        body = (
            f"{_greeting(recipient)}\n\n"
            f"Your loan of {self._money(details.loan_amount)} has been declared in default.\n"
            f"Outstanding balance: {self._money(details.outstanding_balance)}"
        )
        return await self._send(Notification(
            NotificationType.DEFAULT_NOTICE, recipient,
            "CRITICAL: Loan Default Notice", body, _serializable(details)
        ))


class LogNotificationSender(NotificationSender):
    """Writes notifications to the application log instead of sending them"""

    async def deliver(self, notification: Notification) -> bool:
        log_action(
            logger, "info", f"Notification: {notification.subject}",
            user_id=notification.recipient.user_id,
            action=notification.notification_type.value,
            resource=notification.recipient.email,
            extra=notification.data
        )
        return True


class WebhookNotificationSender(NotificationSender):
    """POSTs notifications as JSON to an external delivery service"""

    def __init__(self, url: str, timeout: int = 30,
                 storage: Optional[StorageInterface] = None, currency: str = "PKR"):
        super().__init__(storage, currency)
        self.url = url
        self.timeout = timeout

    async def deliver(self, notification: Notification) -> bool:
        payload = {
            "notification_id": notification.id,
            "type": notification.notification_type.value,
            "recipient_id": notification.recipient.user_id,
            "recipient_email": notification.recipient.email,
            "subject": notification.subject,
            "body": notification.body,
            "timestamp": notification.created_at.isoformat(),
            "metadata": notification.data
        }
        response = await asyncio.to_thread(
            requests.post,
            self.url,
            json=payload,
            timeout=self.timeout,
            headers={"Content-Type": "application/json"}
        )
        if not response.ok:
            logger.warning(f"Notification webhook returned {response.status_code} for {notification.id}")
        return response.ok


class RecipientDirectory(ABC):
    """Resolves a borrower id to a notification recipient"""

    @abstractmethod
    def get(self, user_id: str) -> Optional[Recipient]:
        pass


class StorageRecipientDirectory(RecipientDirectory):
    """Recipient directory backed by the shared store"""

    def __init__(self, storage: StorageInterface, table: str = "recipients"):
        self.storage = storage
        self.table = table

    def register(self, user_id: str, email: str, name: str = "") -> Recipient:
        recipient = Recipient(user_id=user_id, email=email.strip().lower(), name=name)
        self.storage.save(self.table, user_id, asdict(recipient))
        return recipient

    def get(self, user_id: str) -> Optional[Recipient]:
        data = self.storage.load(self.table, user_id)
        return Recipient(**data) if data else None
