from __future__ import annotations

import pytest
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from riskgov.core.errors import ConstraintViolation, RecordNotFound, StaleRecompute, Unauthorized
from riskgov.domain.models import Risk
from riskgov.services import residual as residual_service
from riskgov.services.register import (
    create_control,
    create_risk,
    ensure_tenant,
    link_control,
    purge_control,
    restore_control,
    soft_delete_control,
    unlink_control,
    update_control,
    update_risk_inherent,
)
from riskgov.tests.utils.governance import new_tenant_id, register_actor


async def _setup(session):
    tenant_id = new_tenant_id()
    await ensure_tenant(session, tenant_id)
    return tenant_id, register_actor(tenant_id)


def _residual(risk: Risk) -> tuple[int, int, int]:
    return risk.residual_likelihood, risk.residual_impact, risk.residual_score


@pytest.mark.asyncio
async def test_new_risk_starts_with_residual_equal_to_inherent(session) -> None:
    _tenant_id, actor = await _setup(session)
    risk = await create_risk(
        session, actor, title="Vendor outage", inherent_likelihood=4, inherent_impact=5, division="OPS", category="Credit"
    )
    await session.commit()
    assert risk.code == "OPS-CRE-001"
    assert _residual(risk) == (4, 5, 20)
    assert risk.last_recomputed_at is not None


@pytest.mark.asyncio
async def test_linking_strong_control_reduces_residual(session) -> None:
    _tenant_id, actor = await _setup(session)
    risk = await create_risk(session, actor, title="Fraud", inherent_likelihood=4, inherent_impact=5)
    await create_control(
        session,
        actor,
        title="Four-eyes payments",
        target="likelihood",
        design_score=3,
        implementation_score=3,
        monitoring_score=2,
        evaluation_score=2,
        risk_ids=[risk.id],
    )
    await session.commit()
    await session.refresh(risk)
    assert _residual(risk) == (1, 5, 5)


@pytest.mark.asyncio
async def test_undesigned_control_leaves_residual_unchanged(session) -> None:
    _tenant_id, actor = await _setup(session)
    risk = await create_risk(session, actor, title="Fraud", inherent_likelihood=4, inherent_impact=5)
    await create_control(
        session,
        actor,
        title="Paper policy",
        target="likelihood",
        design_score=0,
        implementation_score=3,
        monitoring_score=3,
        evaluation_score=3,
        risk_ids=[risk.id],
    )
    await session.commit()
    await session.refresh(risk)
    assert _residual(risk) == (4, 5, 20)


@pytest.mark.asyncio
async def test_every_control_write_triggers_recompute(session) -> None:
    _tenant_id, actor = await _setup(session)
    risk = await create_risk(session, actor, title="Data loss", inherent_likelihood=6, inherent_impact=6)
    control = await create_control(session, actor, title="Backups", target="impact")
    await link_control(session, actor, risk_id=risk.id, control_id=control.id)
    await session.refresh(risk)
    # Unscored controls earn no credit.
    assert _residual(risk) == (6, 6, 36)

    await update_control(
        session,
        actor,
        control_id=control.id,
        changes={"design_score": 3, "implementation_score": 3, "monitoring_score": 3, "evaluation_score": 3},
    )
    await session.refresh(risk)
    assert _residual(risk) == (6, 1, 6)

    await update_control(session, actor, control_id=control.id, changes={"target": "likelihood"})
    await session.refresh(risk)
    assert _residual(risk) == (1, 6, 6)

    await unlink_control(session, actor, risk_id=risk.id, control_id=control.id)
    await session.refresh(risk)
    assert _residual(risk) == (6, 6, 36)
    await session.commit()


@pytest.mark.asyncio
async def test_tombstone_restore_and_purge_recompute_linked_risks(session) -> None:
    _tenant_id, actor = await _setup(session)
    risk = await create_risk(session, actor, title="Outage", inherent_likelihood=5, inherent_impact=3)
    control = await create_control(
        session,
        actor,
        title="Failover drill",
        target="likelihood",
        design_score=3,
        implementation_score=3,
        monitoring_score=3,
        evaluation_score=3,
        risk_ids=[risk.id],
    )
    await session.refresh(risk)
    assert risk.residual_likelihood == 1

    await soft_delete_control(session, actor, control_id=control.id)
    await session.refresh(risk)
    assert _residual(risk) == (5, 3, 15)

    await restore_control(session, actor, control_id=control.id)
    await session.refresh(risk)
    assert risk.residual_likelihood == 1

    with pytest.raises(ConstraintViolation):
        await purge_control(session, actor, control_id=control.id)

    await soft_delete_control(session, actor, control_id=control.id)
    touched = await purge_control(session, actor, control_id=control.id)
    await session.commit()
    await session.refresh(risk)
    assert touched == [risk.id]
    assert _residual(risk) == (5, 3, 15)


@pytest.mark.asyncio
async def test_inherent_change_recomputes_and_clamps(session) -> None:
    _tenant_id, actor = await _setup(session)
    risk = await create_risk(session, actor, title="Churn", inherent_likelihood=6, inherent_impact=6)
    await create_control(
        session,
        actor,
        title="Retention desk",
        target="impact",
        design_score=2,
        implementation_score=2,
        monitoring_score=1,
        evaluation_score=1,
        risk_ids=[risk.id],
    )
    await session.refresh(risk)
    # (6 - 1) * 1/2 = 2.5 -> 3
    assert risk.residual_impact == 3

    await update_risk_inherent(session, actor, risk_id=risk.id, inherent_likelihood=2, inherent_impact=2)
    await session.commit()
    await session.refresh(risk)
    # (2 - 1) * 1/2 = 0.5 -> 1
    assert _residual(risk) == (2, 1, 2)


@pytest.mark.asyncio
async def test_recompute_is_idempotent(session) -> None:
    tenant_id, actor = await _setup(session)
    risk = await create_risk(session, actor, title="Fraud", inherent_likelihood=4, inherent_impact=4)
    await create_control(
        session,
        actor,
        title="Limits",
        target="likelihood",
        design_score=3,
        implementation_score=2,
        monitoring_score=2,
        evaluation_score=2,
        risk_ids=[risk.id],
    )
    first = await residual_service.recompute_risk(session, tenant_id=tenant_id, risk_id=risk.id)
    second = await residual_service.recompute_risk(session, tenant_id=tenant_id, risk_id=risk.id)
    await session.commit()
    assert first == second
    await session.refresh(risk)
    assert _residual(risk) == (first.likelihood, first.impact, first.score)


@pytest.mark.asyncio
async def test_stale_recompute_is_discarded(session) -> None:
    tenant_id, actor = await _setup(session)
    risk = await create_risk(session, actor, title="Fraud", inherent_likelihood=4, inherent_impact=4)
    stored_version = risk.inputs_version

    with pytest.raises(StaleRecompute):
        await residual_service._write_residual(
            session,
            risk=risk,
            residual=residual_service.ResidualScore(likelihood=1, impact=1, score=1),
            seen_version=stored_version + 1,
        )

    result = await residual_service.recompute_risk(
        session, tenant_id=tenant_id, risk_id=risk.id, expected_version=stored_version - 1
    )
    await session.commit()
    await session.refresh(risk)
    assert (result.likelihood, result.impact, result.score) == (4, 4, 16)
    assert _residual(risk) == (4, 4, 16)


@pytest.mark.asyncio
async def test_store_rejects_residual_above_inherent(session) -> None:
    _tenant_id, actor = await _setup(session)
    risk = await create_risk(session, actor, title="Fraud", inherent_likelihood=3, inherent_impact=3)
    await session.commit()
    with pytest.raises(IntegrityError):
        await session.execute(update(Risk).where(Risk.id == risk.id).values(residual_likelihood=4, residual_score=12))
    await session.rollback()


@pytest.mark.asyncio
async def test_register_enforces_tenant_and_role(session) -> None:
    tenant_id, actor = await _setup(session)
    other_tenant_id, other_actor = await _setup(session)
    risk = await create_risk(session, actor, title="Fraud", inherent_likelihood=3, inherent_impact=3)
    control = await create_control(session, other_actor, title="Foreign", target="impact")
    await session.commit()

    with pytest.raises(RecordNotFound):
        await link_control(session, actor, risk_id=risk.id, control_id=control.id)
    with pytest.raises(RecordNotFound):
        await residual_service.recompute_risk(session, tenant_id=other_tenant_id, risk_id=risk.id)
    with pytest.raises(Unauthorized):
        await create_risk(
            session, register_actor(tenant_id, role="viewer"), title="Nope", inherent_likelihood=1, inherent_impact=1
        )
    with pytest.raises(ValueError):
        await create_risk(session, actor, title="Off scale", inherent_likelihood=7, inherent_impact=1)


@pytest.mark.asyncio
async def test_backfill_recomputes_every_risk_for_tenant(session) -> None:
    tenant_id, actor = await _setup(session)
    risks = [
        await create_risk(session, actor, title=f"Risk {index}", inherent_likelihood=3, inherent_impact=3)
        for index in range(3)
    ]
    await session.commit()
    await session.execute(
        update(Risk)
        .where(Risk.id == risks[0].id)
        .values(residual_likelihood=1, residual_impact=1, residual_score=1)
    )
    count = await residual_service.recompute_all_for_tenant(session, tenant_id=tenant_id)
    await session.commit()
    await session.refresh(risks[0])
    assert count == 3
    assert _residual(risks[0]) == (3, 3, 9)


@pytest.mark.asyncio
async def test_backfill_defers_to_a_writer_that_moved_the_risk(session, monkeypatch, caplog) -> None:
    tenant_id, actor = await _setup(session)
    risk = await create_risk(session, actor, title="Vendor outage", inherent_likelihood=3, inherent_impact=3)
    await session.commit()
    original_load = residual_service.load_risk_for_update

    async def _load_after_concurrent_write(session, *, tenant_id: str, risk_id: str):
        # Another writer lands between the backfill's listing and its row lock.
        await session.execute(
            update(Risk)
            .where(Risk.id == risk_id)
            .values(
                inputs_version=Risk.inputs_version + 1,
                residual_likelihood=2,
                residual_impact=3,
                residual_score=6,
            )
            .execution_options(synchronize_session=False)
        )
        return await original_load(session, tenant_id=tenant_id, risk_id=risk_id)

    monkeypatch.setattr(residual_service, "load_risk_for_update", _load_after_concurrent_write)
    with caplog.at_level("WARNING", logger="riskgov.services.residual"):
        count = await residual_service.recompute_all_for_tenant(session, tenant_id=tenant_id)
    await session.commit()
    await session.refresh(risk)

    assert count == 1
    assert _residual(risk) == (2, 3, 6)
    assert "residual_recompute_stale" in caplog.text
