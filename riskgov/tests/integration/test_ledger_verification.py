from __future__ import annotations

import pytest
from sqlalchemy import text

from riskgov.services.transitions import reconstruct_value, transition_role, transition_status, verify_ledger
from riskgov.tests.utils.governance import actor_for, new_tenant_id, seed_user


@pytest.mark.asyncio
async def test_history_folds_to_current_values(session) -> None:
    tenant_id = new_tenant_id()
    admin = await seed_user(session, tenant_id=tenant_id, role="super_admin")
    subject = await seed_user(session, tenant_id=tenant_id, role="viewer", status="pending")
    actor = actor_for(admin)
    await transition_status(session, actor, entity_id=subject.id, new_status="approved")
    await transition_role(session, actor, entity_id=subject.id, new_role="primary_admin", reason="new lead")
    await transition_status(session, actor, entity_id=subject.id, new_status="suspended", reason="leave")
    await session.commit()

    assert await reconstruct_value(session, tenant_id=tenant_id, entity_id=subject.id, field="status") == "suspended"
    assert await reconstruct_value(session, tenant_id=tenant_id, entity_id=subject.id, field="role") == "primary_admin"
    assert await verify_ledger(session, tenant_id=tenant_id) == []


@pytest.mark.asyncio
async def test_verify_reports_rows_that_bypassed_the_guard(session) -> None:
    tenant_id = new_tenant_id()
    subject = await seed_user(session, tenant_id=tenant_id, role="user")

    # Simulate drift from a database restored without its triggers.
    await session.execute(text("DROP TRIGGER trg_protected_users_role_guard"))
    await session.execute(
        text("UPDATE protected_users SET role = 'primary_admin' WHERE id = :id"),
        {"id": subject.id},
    )
    await session.commit()

    discrepancies = await verify_ledger(session, tenant_id=tenant_id)
    assert len(discrepancies) == 1
    assert discrepancies[0].entity_id == subject.id
    assert discrepancies[0].field == "role"
    assert discrepancies[0].current_value == "primary_admin"
    assert discrepancies[0].folded_value == "user"
