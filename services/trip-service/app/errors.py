from __future__ import annotations


class AllocationError(Exception):
    """Base class for errors raised by the capacity engine."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationFailed(AllocationError):
    status_code = 400


class BusinessRuleError(AllocationError):
    status_code = 400


class CapacityExceeded(BusinessRuleError):
    """A cabin, availability or trip ceiling would be exceeded."""


class NotFoundError(AllocationError):
    status_code = 404


class ConflictError(AllocationError):
    status_code = 409
