"""
Error taxonomy for stage generation.

Every error here ends the current attempt only; the owning StageController
returns to an editable state and stays usable.
"""

from typing import Optional


class StudioError(Exception):
    """Base class for generation orchestration errors."""


class ValidationError(StudioError, ValueError):
    """Required input or upstream stage output is missing."""

    def __init__(self, message: str, missing: Optional[list[str]] = None):
        super().__init__(message)
        self.missing = missing or []


class InsufficientCreditsError(StudioError):
    """The admission check failed; the backend was not contacted."""

    def __init__(self, required: float, available: Optional[float]):
        self.required = required
        self.available = available
        if available is None:
            detail = "Credit balance is unavailable"
        else:
            detail = f"You have {available:.2f} credits"
        super().__init__(
            f"Insufficient credits. You need {required:.2f} credits. {detail}."
        )


class DispatchRejectedError(StudioError):
    """The generation backend refused the request at accept time."""


class JobFailedError(StudioError):
    """The backend reported the job as failed."""

    def __init__(self, message: str, refunded_credits: Optional[float] = None):
        super().__init__(message)
        self.refunded_credits = refunded_credits


class PersistenceError(StudioError):
    """Writing edits to the record store failed."""


class StoreError(StudioError):
    """The record store could not serve a read or write."""


class RecordNotFoundError(StoreError, LookupError):
    pass
