"""
Delivery Pipeline Errors

- DeliveryValidationError: caller-fixable, nothing was written
- DuplicateSubmissionError: caller must not retry with the same input
- SequenceConflictError: another writer took the sequence number, nothing was written
- DeliveryWriteError: the store rejected the row (constraint other than the sequence), nothing was written
- PartialDeliveryError: the delivery is recorded but stock is not; retry allocation only
"""

from typing import Any, Dict, Optional


class DeliveryError(Exception):
    """Base class for delivery pipeline failures."""
    code = "DELIVERY_ERROR"

    def __init__(self, message: str, code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class DeliveryValidationError(DeliveryError):
    code = "VALIDATION_FAILED"

    @property
    def is_user_fixable(self) -> bool:
        return self.code not in ("ORDER_NOT_FOUND", "ORDER_CLOSED")


class DuplicateSubmissionError(DeliveryError):
    code = "DUPLICATE_SUBMISSION"


class SequenceConflictError(DeliveryError):
    code = "SEQUENCE_CONFLICT"


class DeliveryWriteError(DeliveryError):
    """The store refused the row for a reason other than a concurrent writer."""
    code = "WRITE_REJECTED"


class DeliveryNotFoundError(DeliveryError):
    code = "DELIVERY_NOT_FOUND"


class PartialDeliveryError(DeliveryError):
    """Money is recorded, stock is not. Safe to retry allocation by delivery id."""
    code = "ALLOCATION_FAILED"

    def __init__(self, message: str, delivery_id: str, details: Optional[Dict[str, Any]] = None):
        details = dict(details or {})
        details.setdefault("delivery_id", delivery_id)
        super().__init__(message, details=details)
        self.delivery_id = delivery_id
