"""
Billing error taxonomy.

Services raise these; app.main maps them to HTTP responses:

    ValidationError       -> 422  malformed input, checked before any mutation or network call
    ConflictError         -> 409  already converted, IRN already generated, concurrent change
    InvalidTransitionError -> 409 status change not allowed by the state machine
    NotFoundError         -> 404
    ExternalServiceError  -> 502  portal unreachable, timeout, authentication, rejection
"""

from typing import Any, Dict, List, Optional


class BillingError(Exception):
    """Base class for all billing errors."""

    error_code = "BILLING_ERROR"

    def __init__(self, message: str, error_code: Optional[str] = None, details: Optional[Dict] = None):
        self.message = message
        if error_code:
            self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        body = {"error": self.message, "error_code": self.error_code}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(BillingError):
    """
    One or more inputs failed validation.

    Carries every failing field so a form can show all problems at once:
        errors = [{"field": "items[0].hsn_sac_code", "message": "..."}]
    """

    error_code = "VALIDATION_ERROR"

    def __init__(self, errors: List[Dict[str, str]], message: Optional[str] = None):
        self.errors = errors
        if message is None:
            message = "; ".join(e["message"] for e in errors) if errors else "Validation failed"
        super().__init__(message)

    @classmethod
    def single(cls, field: str, message: str) -> "ValidationError":
        return cls([{"field": field, "message": message}])

    @property
    def fields(self) -> List[str]:
        return [e["field"] for e in self.errors]

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["errors"] = self.errors
        return body


class ConflictError(BillingError):
    """The document is not in a state that allows the operation."""

    error_code = "CONFLICT"

    def __init__(self, message: str, current_state: Optional[str] = None, details: Optional[Dict] = None):
        self.current_state = current_state
        super().__init__(message, details=details)

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        if self.current_state is not None:
            body["current_state"] = self.current_state
        return body


class InvalidTransitionError(ConflictError):
    """Requested status change is not in the transition table."""

    error_code = "INVALID_TRANSITION"

    def __init__(self, document_kind: str, current_status: str, requested_status: str):
        self.document_kind = document_kind
        self.requested_status = requested_status
        super().__init__(
            f"Cannot change {document_kind} from '{current_status}' to '{requested_status}'",
            current_state=current_status,
            details={"requested_state": requested_status},
        )


class NotFoundError(BillingError):
    error_code = "NOT_FOUND"

    def __init__(self, entity: str, entity_id: Any):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found", details={"id": str(entity_id)})


class ExternalServiceError(BillingError):
    """
    Failure talking to the e-invoice portal.

    Never retried by the library; `retryable` tells the caller whether
    re-issuing the same request is safe and may succeed.
    """

    error_code = "EXTERNAL_SERVICE_ERROR"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        retryable: bool = True,
        details: Optional[Dict] = None,
    ):
        self.retryable = retryable
        super().__init__(message, error_code=error_code, details=details)

    def to_dict(self) -> Dict[str, Any]:
        body = {
            "error": self.message,
            "error_cd": self.error_code,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.details:
            body["details"] = self.details
        return body


class EInvoicePortalError(ExternalServiceError):
    """The portal answered and rejected the request (duplicate IRN, schema failure...)."""

    error_code = "PORTAL_REJECTED"

    def __init__(self, message: str, error_code: Optional[str] = None, details: Optional[Dict] = None):
        super().__init__(message, error_code=error_code, retryable=False, details=details)
