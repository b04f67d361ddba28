"""
Error taxonomy for the stock ledger core.

Every error carries a stable ``kind`` string (reported verbatim to callers and
stored on sync outcomes) and an optional ``details`` dict.

- ValidationError: malformed input, never retried automatically.
- InsufficientStockError: business conflict, surfaced to a human operator.
- NegativeStockError: raised by the summary projector; reported as a stock shortage.
- StorageFailure: infrastructure-level, retryable by the caller.
- DuplicateSubmissionError: a racing resubmission lost to an applied one.
- OperationStateError: an operation instance was driven out of a terminal state.
"""

from __future__ import annotations


class LedgerCoreError(Exception):
    """Base class for all errors raised by the core."""
    kind = "error"
    retryable = False
    http_status = 500

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "error": self.message,
            "kind": self.kind,
            "retryable": self.retryable,
            "details": self.details,
        }


class ValidationError(LedgerCoreError, ValueError):
    """400-level input problem."""
    kind = "validation_error"
    http_status = 400


class InsufficientStockError(LedgerCoreError):
    """A stock-out would exceed the available quantity and no override was given."""
    kind = "stock_shortage"
    http_status = 409


class NegativeStockError(InsufficientStockError):
    """A summary delta would drive quantity_on_hand below zero."""
    kind = "stock_shortage"


class StorageFailure(LedgerCoreError):
    """Underlying store unavailable or lock wait exceeded."""
    kind = "storage_failure"
    retryable = True
    http_status = 503


class DuplicateSubmissionError(LedgerCoreError):
    """A concurrent submission with the same client_origin_id was applied first."""
    kind = "duplicate_submission"
    http_status = 409

    def __init__(self, message: str, operation_number: str | None = None, details: dict | None = None):
        super().__init__(message, details)
        self.operation_number = operation_number


class OperationStateError(LedgerCoreError):
    """Illegal transition of an operation instance."""
    kind = "operation_state_error"
    http_status = 409
