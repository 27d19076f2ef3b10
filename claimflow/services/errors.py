"""Error kinds surfaced by the routing layer and its collaborators."""
from __future__ import annotations

import enum


class RoutingErrorKind(enum.Enum):
    POLICY_NOT_FOUND = "policy_not_found"
    UNAUTHORIZED_ACTOR = "unauthorized_actor"
    INVALID_STATE = "invalid_state"
    EXPENSE_NOT_FOUND = "expense_not_found"
    CONCURRENT_UPDATE = "concurrent_update"


ERROR_MESSAGES = {
    RoutingErrorKind.POLICY_NOT_FOUND: "No approval rules configured for this company.",
    RoutingErrorKind.UNAUTHORIZED_ACTOR: "You are not the current approver for this expense.",
    RoutingErrorKind.INVALID_STATE: "This expense can no longer be approved or rejected.",
    RoutingErrorKind.EXPENSE_NOT_FOUND: "Expense not found.",
    RoutingErrorKind.CONCURRENT_UPDATE: "The expense was modified concurrently. Please retry.",
}


class ConversionUnavailable(Exception):
    """Raised when the exchange-rate service cannot convert an amount."""


class ConcurrentUpdateError(Exception):
    """Raised by an expense store when a compare-and-swap write loses a race."""


class SubmissionError(ValueError):
    """Raised when an expense submission is rejected before it is stored."""


class PolicyValidationError(ValueError):
    """Raised when an approval rule edit would break the rule's invariants."""
