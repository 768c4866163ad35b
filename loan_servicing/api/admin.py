"""
Admin endpoints: loan origination and lifecycle, waivers, refunds and
manual sweep triggers
"""

from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, status

from .auth import CurrentUser, get_system, require_admin, to_http_exception
from .schemas import CreateLoanRequest, OptionalReasonRequest, ReasonRequest, RefundResponse
from ..errors import LoanServicingError
from ..notifications import DefaultNoticeDetails
from ..scanner import OVERDUE_SWEEP, REMINDER_SWEEP
from ..system import LoanServicingSystem


router = APIRouter()


def _loan_view(system: LoanServicingSystem, loan) -> dict:
    return {
        "loan": loan.to_dict(),
        "installments": [i.to_dict() for i in system.ledger.find_by_loan(loan.id)]
    }


@router.post("/loans", status_code=status.HTTP_201_CREATED)
async def create_loan(
    request: CreateLoanRequest,
    admin: CurrentUser = Depends(require_admin),
    system: LoanServicingSystem = Depends(get_system)
):
    """Issue a loan with its full installment schedule"""
    try:
        if request.borrower_email:
            system.recipients.register(request.owner_id, request.borrower_email, request.borrower_name or "")
        loan = system.loans.create_loan(
            owner_id=request.owner_id,
            creator_id=admin.user_id,
            principal=request.principal_amount,
            annual_rate=request.interest_rate,
            tenure_months=request.tenure_months,
            start_date=request.start_date,
            notes=request.notes
        )
    except LoanServicingError as e:
        raise to_http_exception(e)

    return _loan_view(system, loan)


@router.get("/loans/{loan_id}")
async def get_loan(
    loan_id: str,
    admin: CurrentUser = Depends(require_admin),
    system: LoanServicingSystem = Depends(get_system)
):
    try:
        return _loan_view(system, system.loans.get(loan_id))
    except LoanServicingError as e:
        raise to_http_exception(e)


@router.get("/loans/{loan_id}/installments")
async def get_loan_installments(
    loan_id: str,
    admin: CurrentUser = Depends(require_admin),
    system: LoanServicingSystem = Depends(get_system)
):
    try:
        loan = system.loans.get(loan_id)
    except LoanServicingError as e:
        raise to_http_exception(e)
    installments = system.ledger.find_by_loan(loan.id)
    return {"installments": [i.to_dict() for i in installments], "count": len(installments)}


@router.post("/loans/{loan_id}/default")
async def default_loan(
    loan_id: str,
    background_tasks: BackgroundTasks,
    request: Optional[OptionalReasonRequest] = None,
    admin: CurrentUser = Depends(require_admin),
    system: LoanServicingSystem = Depends(get_system)
):
    """Declare a loan in default and notify the borrower"""
    try:
        loan = system.loans.mark_defaulted(loan_id, reason=request.reason if request else None, actor_id=admin.user_id)
    except LoanServicingError as e:
        raise to_http_exception(e)

    recipient = system.recipients.get(loan.owner_id)
    if recipient:
        background_tasks.add_task(
            system.notifier.send_default_notice, recipient,
            DefaultNoticeDetails(
                loan_amount=loan.principal_amount,
                outstanding_balance=loan.outstanding_balance,
                loan_id=loan.id
            )
        )
    return {"loan": loan.to_dict(), "message": "Loan marked as defaulted"}


@router.post("/loans/{loan_id}/complete")
async def complete_loan(
    loan_id: str,
    admin: CurrentUser = Depends(require_admin),
    system: LoanServicingSystem = Depends(get_system)
):
    try:
        loan = system.loans.mark_completed(loan_id, actor_id=admin.user_id)
    except LoanServicingError as e:
        raise to_http_exception(e)
    return {"loan": loan.to_dict(), "message": "Loan marked as completed"}


@router.post("/loans/{loan_id}/cancel")
async def cancel_loan(
    loan_id: str,
    request: ReasonRequest,
    admin: CurrentUser = Depends(require_admin),
    system: LoanServicingSystem = Depends(get_system)
):
    try:
        loan = system.loans.cancel(loan_id, request.reason, actor_id=admin.user_id)
    except LoanServicingError as e:
        raise to_http_exception(e)
    return {"loan": loan.to_dict(), "message": "Loan cancelled"}


@router.post("/installments/{installment_id}/waive-fine")
async def waive_fine(
    installment_id: str,
    request: ReasonRequest,
    admin: CurrentUser = Depends(require_admin),
    system: LoanServicingSystem = Depends(get_system)
):
    """Clear an installment's late fine; its status is left as is"""
    try:
        transition = system.ledger.waive(installment_id, request.reason, waived_by=admin.user_id)
    except LoanServicingError as e:
        raise to_http_exception(e)
    return {
        "installment": transition.current.to_dict(),
        "waived_amount": str(transition.previous.fine_amount),
        "message": "Fine waived successfully"
    }


@router.post("/installments/{installment_id}/waive")
async def waive_installment(
    installment_id: str,
    request: ReasonRequest,
    admin: CurrentUser = Depends(require_admin),
    system: LoanServicingSystem = Depends(get_system)
):
    """Waive an unpaid installment outright"""
    try:
        transition = system.ledger.waive_installment(installment_id, request.reason, waived_by=admin.user_id)
    except LoanServicingError as e:
        raise to_http_exception(e)
    return {"installment": transition.current.to_dict(), "message": "Installment waived"}


@router.post("/payments/{payment_intent_id}/refund", response_model=RefundResponse)
def refund_payment(
    payment_intent_id: str,
    request: ReasonRequest,
    admin: CurrentUser = Depends(require_admin),
    system: LoanServicingSystem = Depends(get_system)
):
    try:
        result = system.broker.refund_payment(payment_intent_id, request.reason, admin_id=admin.user_id)
    except LoanServicingError as e:
        raise to_http_exception(e)
    return RefundResponse(refunded=result.refunded, refund_id=result.refund_id, amount=str(result.amount))


@router.post("/sweeps/reminders", status_code=status.HTTP_202_ACCEPTED)
async def trigger_reminder_sweep(
    background_tasks: BackgroundTasks,
    admin: CurrentUser = Depends(require_admin),
    system: LoanServicingSystem = Depends(get_system)
):
    background_tasks.add_task(system.scheduler.trigger, REMINDER_SWEEP)
    return {"message": "Installment reminder sweep started"}


@router.post("/sweeps/overdue", status_code=status.HTTP_202_ACCEPTED)
async def trigger_overdue_sweep(
    background_tasks: BackgroundTasks,
    admin: CurrentUser = Depends(require_admin),
    system: LoanServicingSystem = Depends(get_system)
):
    background_tasks.add_task(system.scheduler.trigger, OVERDUE_SWEEP)
    return {"message": "Overdue notice sweep started"}
