"""
Payment endpoints
"""

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool

from .auth import CurrentUser, get_current_user, get_system, to_http_exception
from .schemas import (
    CreateSessionRequest, SessionResponse, SessionVerificationResponse,
)
from ..errors import ForbiddenError, LoanServicingError
from ..reconciler import deliver_notifications
from ..system import LoanServicingSystem


router = APIRouter()

SIGNATURE_HEADER = "stripe-signature"


@router.post("/sessions", response_model=SessionResponse)
def create_payment_session(
    request: CreateSessionRequest,
    user: CurrentUser = Depends(get_current_user),
    system: LoanServicingSystem = Depends(get_system)
):
    """Create a checkout session for one of the caller's installments"""
    frontend = system.config.frontend_url.rstrip("/")
    try:
        session = system.broker.create_session(
            installment_id=request.installment_id,
            requesting_user_id=user.user_id,
            success_url=request.success_url or f"{frontend}/payment/success",
            cancel_url=request.cancel_url or f"{frontend}/payment/cancel"
        )
    except LoanServicingError as e:
        raise to_http_exception(e)

    return SessionResponse(
        session_id=session.session_id,
        session_url=session.session_url,
        amount=str(session.amount),
        currency=session.currency,
        expires_at=session.expires_at.isoformat(),
        installment_id=session.installment_id
    )


@router.get("/sessions/{session_id}", response_model=SessionVerificationResponse)
def verify_payment_session(
    session_id: str,
    user: CurrentUser = Depends(get_current_user),
    system: LoanServicingSystem = Depends(get_system)
):
    """Check a checkout session's payment status"""
    try:
        verification = system.broker.verify_session(session_id)
        if verification.installment_id and not user.is_admin:
            installment = system.ledger.get(verification.installment_id)
            if installment.owner_id != user.user_id:
                raise ForbiddenError("Session does not belong to this user")
    except LoanServicingError as e:
        raise to_http_exception(e)

    return SessionVerificationResponse(
        status=verification.status,
        paid=verification.paid,
        installment_id=verification.installment_id,
        payment_intent_id=verification.payment_intent_id,
        amount=str(verification.amount) if verification.amount is not None else None
    )


@router.get("/history")
def get_payment_history(
    limit: int = Query(10, ge=1),
    user: CurrentUser = Depends(get_current_user),
    system: LoanServicingSystem = Depends(get_system)
):
    """The caller's payment attempts, newest first"""
    try:
        transactions = system.transactions.history_for_user(user.user_id, limit)
    except LoanServicingError as e:
        raise to_http_exception(e)
    return {
        "transactions": [t.to_dict() for t in transactions],
        "count": len(transactions)
    }


@router.post("/webhook")
async def receive_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    system: LoanServicingSystem = Depends(get_system)
):
    """
    Gateway webhook receiver.

    The signature is computed over the raw bytes, so the body is read
    unparsed. Notifications go out after the response is sent.
    """
    payload = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)

    try:
        receipt = await run_in_threadpool(system.reconciler.handle_webhook, payload, signature)
    except LoanServicingError as e:
        raise HTTPException(status_code=400, detail=e.to_dict())

    if receipt.notifications:
        background_tasks.add_task(deliver_notifications, receipt)
    return receipt.to_dict()
