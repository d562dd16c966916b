from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    CIRCUIT_OPEN = "circuit_open"
    UPSTREAM_FAILURE = "upstream_failure"
    SIGNATURE_INVALID = "signature_invalid"


# Transport mapping, only consulted by the HTTP layer.
HTTP_STATUS = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.CIRCUIT_OPEN: 503,
    ErrorKind.UPSTREAM_FAILURE: 502,
    ErrorKind.SIGNATURE_INVALID: 400,
}


class PaymentError(Exception):
    kind = ErrorKind.VALIDATION

    def __init__(self, message: str, *, code: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}

    def to_dict(self):
        return {"detail": self.message, "kind": self.kind.value, "code": self.code}


class PaymentValidationError(PaymentError):
    kind = ErrorKind.VALIDATION


class NotFoundError(PaymentError):
    kind = ErrorKind.NOT_FOUND


class ConflictError(PaymentError):
    kind = ErrorKind.CONFLICT


class SignatureInvalidError(PaymentError):
    kind = ErrorKind.SIGNATURE_INVALID


class CircuitOpenError(PaymentError):
    kind = ErrorKind.CIRCUIT_OPEN

    def __init__(self, provider: str, operation: str):
        super().__init__(
            f"Circuit for {provider} is open; {operation} was not attempted",
            code="CIRCUIT_OPEN",
            details={"provider": provider, "operation": operation},
        )
        self.provider = provider
        self.operation = operation


class UpstreamFailureError(PaymentError):
    kind = ErrorKind.UPSTREAM_FAILURE

    def __init__(
        self,
        provider: str,
        operation: str,
        message: str,
        *,
        status_code: Optional[int] = None,
        retryable: bool = False,
        provider_code: Optional[str] = None,
    ):
        super().__init__(
            message,
            code=provider_code or "UPSTREAM_FAILURE",
            details={"provider": provider, "operation": operation, "status_code": status_code},
        )
        self.provider = provider
        self.operation = operation
        self.status_code = status_code
        self.retryable = retryable
        self.provider_code = provider_code
