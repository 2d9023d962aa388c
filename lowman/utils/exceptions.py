"""
Exception hierarchy for the ingest pipeline.

Permanent errors are dropped by the delivery mechanism; transient errors are
redelivered and must be safe to replay from the top.
"""

from typing import Iterable, Optional


class LowmanError(Exception):
    """Base class for engine errors."""


class PermanentIngestError(LowmanError):
    """The event can never be processed (missing or malformed data)."""

    def __init__(self, message: str, missing_fields: Optional[Iterable[str]] = None):
        super().__init__(message)
        self.missing_fields = sorted(missing_fields or [])


class TransientIngestError(LowmanError):
    """Processing failed for a reason a redelivery may fix."""


class TransactionConflictError(TransientIngestError):
    """An optimistic transaction kept conflicting until its retry budget ran out."""

    def __init__(self, operation: str, attempts: int):
        super().__init__(f"{operation} still conflicting after {attempts} attempts")
        self.operation = operation
        self.attempts = attempts
