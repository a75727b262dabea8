"""
Distribution Hub - Workflow Errors

Every error raised by the distribution engine derives from DistributionError.
None of them are retried internally; callers decide what to show the user.
"""

from typing import Dict, List, Optional


class DistributionError(Exception):
    """Base exception for distribution workflow errors."""
    code = "distribution_error"

    def __init__(self, message: str, details: Optional[Dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict:
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(DistributionError):
    """Raised for malformed input (empty required notes, origin == destination, ...)."""
    code = "validation_error"


class NotFoundError(DistributionError):
    """Raised when a distribution, document or reference record does not exist."""
    code = "not_found"


class UnauthorizedError(DistributionError):
    """Raised when the actor is not a member of the department an action requires."""
    code = "unauthorized"


class IllegalTransitionError(DistributionError):
    """Raised when an action is not valid from the distribution's current status."""
    code = "illegal_transition"


class DiscrepancyConfirmationRequiredError(DistributionError):
    """
    Raised when receiver verification reports missing or damaged documents
    and the caller did not set `force`.

    This is the first step of a confirmation protocol, not a dead end: the
    caller shows the discrepancies and may resubmit the same verdicts with
    force=True.
    """
    code = "discrepancy_confirmation_required"
    requires_confirmation = True

    def __init__(self, discrepancies: List, message: Optional[str] = None):
        self.discrepancies = list(discrepancies)
        message = message or (
            f"{len(self.discrepancies)} document(s) reported with discrepancies; "
            "resubmit with force to proceed"
        )
        super().__init__(message, details={
            "discrepancies": [d.model_dump(mode="json") for d in self.discrepancies],
        })

    def to_dict(self) -> Dict:
        result = super().to_dict()
        result["requires_confirmation"] = True
        return result
