from __future__ import annotations


class GovernanceError(Exception):
    """Base error for riskgov."""

    code = "GOVERNANCE_ERROR"


class TenantMismatchError(GovernanceError):
    """Entity belongs to another tenant; never mutate across tenants."""

    code = "TENANT_MISMATCH"


class RaceExhausted(GovernanceError):
    """Sequence reservation retries exhausted; the caller degrades to a fallback code."""

    code = "RACE_EXHAUSTED"


class StaleRecompute(GovernanceError):
    """Residual recompute ran on superseded inputs and was discarded."""

    code = "STALE_RECOMPUTE"


class ConstraintViolation(GovernanceError):
    """A governance invariant was breached; treated as a programming error."""

    code = "CONSTRAINT_VIOLATION"


class TransitionError(GovernanceError):
    """A guarded transition was rejected."""

    code = "TRANSITION_REJECTED"

    def __init__(self, message: str, *, details: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class Unauthorized(TransitionError):
    """Actor is not authorized for the requested edge."""

    code = "UNAUTHORIZED"


class InvalidTransition(TransitionError):
    """Requested edge is not part of the state graph."""

    code = "INVALID_TRANSITION"


class MissingReason(TransitionError):
    """Destructive transition attempted without a reason."""

    code = "REASON_REQUIRED"


class EntityNotFound(TransitionError):
    """Subject or actor of a transition does not exist."""

    code = "ENTITY_NOT_FOUND"


class RecordNotFound(GovernanceError):
    """Register row does not exist for the calling tenant."""

    code = "NOT_FOUND"
