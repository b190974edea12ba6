from __future__ import annotations

import pytest
from sqlalchemy.dialects import postgresql

from riskgov.services import sequences
from riskgov.services.sequences import (
    format_code,
    parse_code,
    risk_scope_prefix,
    scope_lock_statement,
    scope_prefix,
)


def test_format_code_pads_to_three_digits() -> None:
    assert format_code("CTRL", 1) == "CTRL-001"
    assert format_code("KRI", 42) == "KRI-042"
    assert format_code("CTRL", 1234) == "CTRL-1234"


def test_format_code_rejects_non_positive_sequence() -> None:
    with pytest.raises(ValueError):
        format_code("CTRL", 0)


def test_parse_code_handles_multi_segment_prefixes() -> None:
    assert parse_code("CTRL-007") == ("CTRL", 7)
    assert parse_code("INC-OPS-002") == ("INC-OPS", 2)
    assert parse_code("OPS-CRE-105") == ("OPS-CRE", 105)


def test_parse_code_recognizes_fallback_codes() -> None:
    assert parse_code("CTRL-1729241234567890-3fa2") == ("CTRL", None)
    generated = sequences._fallback_code("INC-OPS")
    assert parse_code(generated) == ("INC-OPS", None)


def test_parse_code_rejects_unknown_formats() -> None:
    with pytest.raises(ValueError):
        parse_code("ctrl-1")
    with pytest.raises(ValueError):
        parse_code("CTRL")


def test_scope_prefix_normalizes_sub_dimension() -> None:
    assert scope_prefix("ctrl") == "CTRL"
    assert scope_prefix("INC", "ops") == "INC-OPS"
    assert scope_prefix("INC", " Cyber Ops ") == "INC-CYBEROPS"


def test_scope_prefix_rejects_empty_class() -> None:
    with pytest.raises(ValueError):
        scope_prefix("")
    with pytest.raises(ValueError):
        scope_prefix("42")


def test_risk_scope_uses_division_and_category_stems() -> None:
    assert risk_scope_prefix("OPS", "Credit") == "OPS-CRE"
    assert risk_scope_prefix("finance", "market") == "FIN-MAR"
    assert risk_scope_prefix(None, "Credit") == "RISK"


def test_risk_scope_never_shares_an_entity_class_counter() -> None:
    assert risk_scope_prefix("Incident", "Ops") == "RISK-INC-OPS"
    assert risk_scope_prefix("KRI", "Market") == "RISK-KRI-MAR"
    assert risk_scope_prefix("Incident", "Ops") != scope_prefix("INC", "ops")


def test_advisory_lock_statement_targets_the_tenant_scope() -> None:
    compiled = str(
        scope_lock_statement("tenant-a", "CTRL").compile(
            dialect=postgresql.dialect(), compile_kwargs={"literal_binds": True}
        )
    )
    assert "pg_advisory_xact_lock(hashtext('tenant-a:CTRL'))" in compiled
