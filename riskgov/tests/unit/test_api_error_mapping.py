from __future__ import annotations

from riskgov.apps.api.errors import status_for_governance_error
from riskgov.core.errors import (
    ConstraintViolation,
    EntityNotFound,
    InvalidTransition,
    MissingReason,
    RecordNotFound,
    StaleRecompute,
    TenantMismatchError,
    Unauthorized,
)


def test_transition_errors_map_to_client_statuses() -> None:
    assert status_for_governance_error(Unauthorized("no")) == 403
    assert status_for_governance_error(InvalidTransition("no")) == 409
    assert status_for_governance_error(MissingReason("no")) == 422
    assert status_for_governance_error(EntityNotFound("no")) == 404


def test_register_and_internal_errors_map_to_statuses() -> None:
    assert status_for_governance_error(RecordNotFound("missing")) == 404
    assert status_for_governance_error(TenantMismatchError("other tenant")) == 403
    assert status_for_governance_error(ConstraintViolation("broken")) == 500
    assert status_for_governance_error(StaleRecompute("stale")) == 500


def test_error_codes_are_stable() -> None:
    assert Unauthorized.code == "UNAUTHORIZED"
    assert MissingReason.code == "REASON_REQUIRED"
    assert InvalidTransition("x", details={"a": 1}).details == {"a": 1}
    assert EntityNotFound("x").details == {}
