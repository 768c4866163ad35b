"""
Error Hierarchy

Every failure the engine surfaces to callers derives from LoanServicingError.
Each class carries a stable ``code`` and the HTTP status the API layer maps
it to.
"""

from typing import Optional


class LoanServicingError(Exception):
    """Base class for loan servicing errors"""

    code = "internal_error"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message}


class ValidationError(LoanServicingError):
    """Malformed or out-of-range input"""

    code = "validation_error"
    status_code = 400

    def __init__(self, field: Optional[str], message: str):
        super().__init__(message)
        self.field = field

    def to_dict(self) -> dict:
        result = super().to_dict()
        if self.field:
            result["field"] = self.field
        return result


class NotFoundError(LoanServicingError):
    code = "not_found"
    status_code = 404

    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"{entity} {entity_id} not found")
        self.entity_id = entity_id


class InstallmentNotFoundError(NotFoundError):
    def __init__(self, installment_id: str):
        super().__init__("Installment", installment_id)


class LoanNotFoundError(NotFoundError):
    def __init__(self, loan_id: str):
        super().__init__("Loan", loan_id)


class TransactionNotFoundError(NotFoundError):
    def __init__(self, reference: str):
        super().__init__("Transaction", reference)


class InvalidTransitionError(LoanServicingError):
    """State machine refused the requested transition"""

    code = "invalid_transition"
    status_code = 409


class AlreadyPaidError(InvalidTransitionError):
    code = "already_paid"

    def __init__(self, installment_id: str):
        super().__init__(f"Installment {installment_id} is already paid")
        self.installment_id = installment_id


class InstallmentWaivedError(InvalidTransitionError):
    code = "installment_waived"

    def __init__(self, installment_id: str):
        super().__init__(f"Installment {installment_id} has been waived")
        self.installment_id = installment_id


class LoanClosedError(InvalidTransitionError):
    code = "loan_closed"

    def __init__(self, loan_id: str, status: str):
        super().__init__(f"Loan {loan_id} is {status}")
        self.loan_id = loan_id
        self.status = status


class ForbiddenError(LoanServicingError):
    code = "forbidden"
    status_code = 403


class DuplicateInstallmentError(LoanServicingError):
    code = "duplicate_installment"
    status_code = 409

    def __init__(self, loan_id: str, installment_number: int):
        super().__init__(
            f"Loan {loan_id} already has installment #{installment_number}"
        )
        self.loan_id = loan_id
        self.installment_number = installment_number


class StorageConflictError(LoanServicingError):
    """A record with the same id already exists"""

    code = "conflict"
    status_code = 409


class UpstreamError(LoanServicingError):
    """An external collaborator failed"""

    code = "upstream_error"
    status_code = 502


class GatewayError(UpstreamError):
    code = "gateway_error"


class InvalidSignatureError(UpstreamError):
    """Webhook payload failed signature verification"""

    code = "invalid_signature"
    status_code = 400
