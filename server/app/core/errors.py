from __future__ import annotations

from fastapi import status


class BillingError(Exception):
    """Base class for errors raised by the dues billing engine."""

    status_code = status.HTTP_400_BAD_REQUEST
    code = "billing_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_payload(self) -> dict:
        return {"detail": self.message, "code": self.code}


class ValidationError(BillingError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "validation_error"


class AuthorizationError(BillingError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "not_authorized"


class NotFoundError(BillingError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"


class ConflictError(BillingError):
    status_code = status.HTTP_409_CONFLICT
    code = "conflict"


class ProcessorError(BillingError):
    """The payment processor rejected or failed a call."""

    status_code = status.HTTP_502_BAD_GATEWAY
    code = "processor_error"

    def __init__(self, message: str, *, processor_code: str | None = None, retryable: bool = False) -> None:
        super().__init__(message)
        self.processor_code = processor_code
        self.retryable = retryable


class ConsistencyError(BillingError):
    """Local persistence failed after the processor accepted the call."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "consistency_error"

    def __init__(self, message: str, *, processor_intent_id: str | None = None) -> None:
        super().__init__(message)
        self.processor_intent_id = processor_intent_id

    def to_payload(self) -> dict:
        payload = super().to_payload()
        payload["processor_intent_id"] = self.processor_intent_id
        return payload
