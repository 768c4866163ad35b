"""
Pydantic schemas for API requests and responses
"""

from datetime import date
from typing import Optional

from pydantic import BaseModel, Field


# Payment schemas
class CreateSessionRequest(BaseModel):
    installment_id: str = Field(..., min_length=1)
    success_url: Optional[str] = None  # Defaults to {frontend_url}/payment/success
    cancel_url: Optional[str] = None


class SessionResponse(BaseModel):
    session_id: str
    session_url: str
    amount: str = Field(..., description="Decimal amount as string")
    currency: str
    expires_at: str
    installment_id: str


class SessionVerificationResponse(BaseModel):
    status: str
    paid: bool
    installment_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    amount: Optional[str] = None


# Admin schemas
class CreateLoanRequest(BaseModel):
    owner_id: str = Field(..., min_length=1)
    principal_amount: str = Field(..., description="Decimal amount as string")
    interest_rate: str = Field(..., description="Annual rate in percent")
    tenure_months: int
    start_date: Optional[date] = None
    notes: Optional[str] = None
    borrower_email: Optional[str] = None
    borrower_name: Optional[str] = None


class ReasonRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class OptionalReasonRequest(BaseModel):
    reason: Optional[str] = None


class RefundResponse(BaseModel):
    refunded: bool
    refund_id: str
    amount: str
