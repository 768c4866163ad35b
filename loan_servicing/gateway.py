"""
Payment Gateway Client Module

REST client for the Stripe payment gateway (hosted checkout sessions,
session retrieval, refunds) plus webhook signature verification, and a
mock gateway for development and tests.

Webhook signatures follow Stripe's scheme: the ``Stripe-Signature`` header
carries ``t=<unix timestamp>`` and one or more ``v1=<hex>`` entries, each an
HMAC-SHA256 of ``"<timestamp>.<raw body>"`` under the endpoint secret.
Verification must run on the raw request bytes, before any JSON parsing.
"""

import hashlib
import hmac
import json
import logging
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import httpx

from .currency import Currency, Money
from .errors import GatewayError, InvalidSignatureError, ValidationError

logger = logging.getLogger("loan_servicing.gateway")

DEFAULT_TOLERANCE_SECONDS = 300


@dataclass
class LineItem:
    """Single line item charged by a checkout session"""
    name: str
    amount: Money
    description: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass
class CheckoutSession:
    id: str
    url: str
    payment_intent_id: Optional[str]
    expires_at: datetime
    amount: Money


@dataclass
class SessionStatus:
    id: str
    payment_status: str  # paid, unpaid, no_payment_required
    metadata: Dict[str, str]
    payment_intent_id: Optional[str]
    amount_total: Optional[Decimal]

    @property
    def paid(self) -> bool:
        return self.payment_status == "paid"


@dataclass
class Refund:
    id: str
    amount: Decimal
    status: str


@dataclass
class WebhookEvent:
    """Parsed gateway event; ``data`` is the event's ``data.object``"""
    id: str
    type: str
    data: Dict[str, Any]
    created: Optional[int] = None

    @property
    def metadata(self) -> Dict[str, str]:
        return self.data.get("metadata") or {}


def sign_payload(payload: bytes, secret: str, timestamp: Optional[int] = None) -> str:
    """Build a signature header for ``payload``, as the gateway would send it"""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.".encode("utf-8") + payload
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def _parse_signature_header(header: str) -> Tuple[Optional[int], List[str]]:
    timestamp = None
    signatures = []
    for item in header.split(","):
        key, _, value = item.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                return None, []
        elif key == "v1":
            signatures.append(value)
    return timestamp, signatures


def verify_webhook_signature(payload: bytes, signature_header: Optional[str], secret: str,
                             tolerance: int = DEFAULT_TOLERANCE_SECONDS,
                             now: Optional[float] = None) -> None:
    """
    Check a webhook signature header against the raw payload.

    Raises:
        InvalidSignatureError: header missing or malformed, no signature
            matches, or the timestamp is outside the tolerance window
    """
    if not signature_header:
        raise InvalidSignatureError("Missing signature header")

    timestamp, signatures = _parse_signature_header(signature_header)
    if timestamp is None or not signatures:
        raise InvalidSignatureError("Unable to extract timestamp and signatures from header")

    signed = f"{timestamp}.".encode("utf-8") + payload
    expected = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        raise InvalidSignatureError("No signatures found matching the expected signature for payload")

    now = time.time() if now is None else now
    if tolerance and abs(now - timestamp) > tolerance:
        raise InvalidSignatureError("Timestamp outside the tolerance zone")


def parse_event(payload: bytes) -> WebhookEvent:
    """Parse a raw webhook body into a WebhookEvent"""
    try:
        body = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise ValidationError("payload", f"Invalid webhook payload: {e}")
    if not isinstance(body, dict) or "type" not in body:
        raise ValidationError("payload", "Webhook payload has no event type")

    data = body.get("data") or {}
    return WebhookEvent(
        id=str(body.get("id", "")),
        type=body["type"],
        data=data.get("object") or {},
        created=body.get("created")
    )


class PaymentGateway(ABC):
    """Interface to a hosted-checkout payment gateway"""

    tolerance: int = DEFAULT_TOLERANCE_SECONDS

    @abstractmethod
    def create_checkout_session(self, line_item: LineItem, metadata: Dict[str, str],
                                success_url: str, cancel_url: str, expires_at: datetime,
                                customer_email: Optional[str] = None,
                                client_reference_id: Optional[str] = None) -> CheckoutSession:
        pass

    @abstractmethod
    def retrieve_session(self, session_id: str) -> SessionStatus:
        pass

    @abstractmethod
    def refund(self, payment_intent_id: str, reason: str) -> Refund:
        pass

    def construct_event(self, payload: bytes, signature_header: Optional[str],
                        secret: str) -> WebhookEvent:
        """Verify the signature, then parse the payload"""
        verify_webhook_signature(payload, signature_header, secret, self.tolerance)
        return parse_event(payload)

    def close(self) -> None:
        pass


def _encode_form(params: Dict[str, Any], prefix: str = "") -> List[Tuple[str, str]]:
    """Flatten nested params to Stripe's bracketed form encoding"""
    pairs = []
    for key, value in params.items():
        name = f"{prefix}[{key}]" if prefix else key
        if value is None:
            continue
        if isinstance(value, dict):
            pairs.extend(_encode_form(value, name))
        elif isinstance(value, list):
            for i, item in enumerate(value):
                if isinstance(item, dict):
                    pairs.extend(_encode_form(item, f"{name}[{i}]"))
                else:
                    pairs.append((f"{name}[{i}]", str(item)))
        else:
            pairs.append((name, str(value)))
    return pairs


class StripeGateway(PaymentGateway):
    """REST client for the Stripe API"""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.stripe.com",
        timeout: float = 10.0,
        tolerance: int = DEFAULT_TOLERANCE_SECONDS,
        client: Optional[httpx.Client] = None
    ):
        if not api_key:
            raise ValueError("Stripe API key is required")
        self.base_url = base_url.rstrip("/")
        self.tolerance = tolerance
        self._client = client or httpx.Client(timeout=timeout)
        self._headers = {"Authorization": f"Bearer {api_key}"}

    def _request(self, method: str, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            if method == "GET":
                response = self._client.get(url, headers=self._headers)
            else:
                response = self._client.post(url, data=dict(_encode_form(params or {})), headers=self._headers)
        except httpx.HTTPError as e:
            logger.error(f"Stripe connection failed: {e}")
            raise GatewayError(f"Stripe error: {e}")

        if response.status_code >= 400:
            try:
                message = response.json().get("error", {}).get("message", response.text)
            except ValueError:
                message = response.text
            logger.warning(f"Stripe returned {response.status_code} for {path}: {message}")
            raise GatewayError(f"Stripe error: {message}")

        return response.json()

    def create_checkout_session(self, line_item: LineItem, metadata: Dict[str, str],
                                success_url: str, cancel_url: str, expires_at: datetime,
                                customer_email: Optional[str] = None,
                                client_reference_id: Optional[str] = None) -> CheckoutSession:
        currency = line_item.amount.currency
        params = {
            "mode": "payment",
            "payment_method_types": ["card"],
            "customer_email": customer_email,
            "client_reference_id": client_reference_id,
            "line_items": [{
                "price_data": {
                    "currency": currency.code.lower(),
                    "unit_amount": line_item.amount.to_minor_units(),
                    "product_data": {
                        "name": line_item.name,
                        "description": line_item.description,
                        "metadata": line_item.metadata or None
                    }
                },
                "quantity": 1
            }],
            "metadata": metadata,
            "payment_intent_data": {"metadata": metadata},
            "success_url": success_url,
            "cancel_url": cancel_url,
            "expires_at": int(expires_at.timestamp())
        }
        data = self._request("POST", "/v1/checkout/sessions", params)
        return CheckoutSession(
            id=data["id"],
            url=data.get("url", ""),
            payment_intent_id=data.get("payment_intent"),
            expires_at=datetime.fromtimestamp(data.get("expires_at", int(expires_at.timestamp())), tz=timezone.utc),
            amount=line_item.amount
        )

    def retrieve_session(self, session_id: str) -> SessionStatus:
        data = self._request("GET", f"/v1/checkout/sessions/{session_id}")
        amount_total = None
        if data.get("amount_total") is not None:
            currency = Currency.from_code(data.get("currency", "pkr"))
            amount_total = Money.from_minor_units(data["amount_total"], currency).amount
        return SessionStatus(
            id=data["id"],
            payment_status=data.get("payment_status", "unpaid"),
            metadata=data.get("metadata") or {},
            payment_intent_id=data.get("payment_intent"),
            amount_total=amount_total
        )

    def refund(self, payment_intent_id: str, reason: str) -> Refund:
        data = self._request("POST", "/v1/refunds", {
            "payment_intent": payment_intent_id,
            "reason": "requested_by_customer",
            "metadata": {"adminReason": reason}
        })
        currency = Currency.from_code(data.get("currency", "pkr"))
        return Refund(
            id=data["id"],
            amount=Money.from_minor_units(data.get("amount", 0), currency).amount,
            status=data.get("status", "pending")
        )

    def close(self) -> None:
        self._client.close()


class MockPaymentGateway(PaymentGateway):
    """In-memory gateway for development and testing"""

    def __init__(self, checkout_base_url: str = "https://checkout.example.test/pay",
                 tolerance: int = DEFAULT_TOLERANCE_SECONDS):
        self.checkout_base_url = checkout_base_url.rstrip("/")
        self.tolerance = tolerance
        self.sessions: Dict[str, Dict[str, Any]] = {}
        self.refunds: List[Refund] = []
        self.fail_with: Optional[str] = None  # set to make every call raise GatewayError

    def _check_failure(self) -> None:
        if self.fail_with:
            raise GatewayError(f"Stripe error: {self.fail_with}")

    def create_checkout_session(self, line_item: LineItem, metadata: Dict[str, str],
                                success_url: str, cancel_url: str, expires_at: datetime,
                                customer_email: Optional[str] = None,
                                client_reference_id: Optional[str] = None) -> CheckoutSession:
        self._check_failure()
        session_id = f"cs_test_{uuid.uuid4().hex[:24]}"
        payment_intent_id = f"pi_test_{uuid.uuid4().hex[:24]}"
        self.sessions[session_id] = {
            "line_item": line_item,
            "metadata": dict(metadata),
            "success_url": success_url,
            "cancel_url": cancel_url,
            "expires_at": expires_at,
            "payment_intent": payment_intent_id,
            "payment_status": "unpaid"
        }
        return CheckoutSession(
            id=session_id,
            url=f"{self.checkout_base_url}/{session_id}",
            payment_intent_id=payment_intent_id,
            expires_at=expires_at,
            amount=line_item.amount
        )

    def mark_paid(self, session_id: str) -> None:
        """Simulate the customer completing checkout"""
        self.sessions[session_id]["payment_status"] = "paid"

    def retrieve_session(self, session_id: str) -> SessionStatus:
        self._check_failure()
        session = self.sessions.get(session_id)
        if session is None:
            raise GatewayError(f"Stripe error: No such checkout.session: '{session_id}'")
        return SessionStatus(
            id=session_id,
            payment_status=session["payment_status"],
            metadata=session["metadata"],
            payment_intent_id=session["payment_intent"],
            amount_total=session["line_item"].amount.amount
        )

    def refund(self, payment_intent_id: str, reason: str) -> Refund:
        self._check_failure()
        for session in self.sessions.values():
            if session["payment_intent"] == payment_intent_id:
                refund = Refund(
                    id=f"re_test_{uuid.uuid4().hex[:24]}",
                    amount=session["line_item"].amount.amount,
                    status="succeeded"
                )
                self.refunds.append(refund)
                return refund
        raise GatewayError(f"Stripe error: No such payment_intent: '{payment_intent_id}'")
