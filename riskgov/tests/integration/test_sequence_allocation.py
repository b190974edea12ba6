from __future__ import annotations

import asyncio
import re
from types import SimpleNamespace

import pytest
from sqlalchemy import func, select

from riskgov.core.config import get_settings
from riskgov.domain.models import AuditEvent, SequenceReservation
from riskgov.services import sequences
from riskgov.services.register import create_control, ensure_tenant, soft_delete_control
from riskgov.tests.utils.governance import new_tenant_id, register_actor


async def _allocate(session_factory, tenant_id: str, entity_class: str = "CTRL", sub_dimension: str | None = None):
    async with session_factory() as session:
        async with session.begin():
            return await sequences.allocate_code(
                session,
                tenant_id=tenant_id,
                entity_class=entity_class,
                sub_dimension=sub_dimension,
            )


@pytest.mark.asyncio
async def test_two_concurrent_creations_get_consecutive_codes(session_factory) -> None:
    tenant_id = new_tenant_id()
    first, second = await asyncio.gather(
        _allocate(session_factory, tenant_id),
        _allocate(session_factory, tenant_id),
    )
    assert sorted([first.code, second.code]) == ["CTRL-001", "CTRL-002"]
    assert not first.fallback and not second.fallback


@pytest.mark.asyncio
async def test_fifty_concurrent_allocations_are_distinct(session_factory) -> None:
    tenant_id = new_tenant_id()
    results = await asyncio.gather(*(_allocate(session_factory, tenant_id) for _ in range(50)))
    codes = [result.code for result in results]
    assert len(set(codes)) == 50
    assert sorted(result.seq for result in results) == list(range(1, 51))


@pytest.mark.asyncio
async def test_counters_are_independent_per_tenant_and_class(session_factory) -> None:
    tenant_a = new_tenant_id("a")
    tenant_b = new_tenant_id("b")
    assert (await _allocate(session_factory, tenant_a)).code == "CTRL-001"
    assert (await _allocate(session_factory, tenant_b)).code == "CTRL-001"
    assert (await _allocate(session_factory, tenant_a, "KRI")).code == "KRI-001"
    assert (await _allocate(session_factory, tenant_a, "INC", "ops")).code == "INC-OPS-001"
    assert (await _allocate(session_factory, tenant_a, "INC", "ops")).code == "INC-OPS-002"
    assert (await _allocate(session_factory, tenant_a)).code == "CTRL-002"


@pytest.mark.asyncio
async def test_tombstoned_codes_are_never_reissued(session) -> None:
    tenant_id = new_tenant_id()
    actor = register_actor(tenant_id)
    await ensure_tenant(session, tenant_id)
    first = await create_control(session, actor, title="Dual approval", target="likelihood")
    await soft_delete_control(session, actor, control_id=first.id)
    second = await create_control(session, actor, title="Reconciliation", target="impact")
    await session.commit()
    assert first.code == "CTRL-001"
    assert second.code == "CTRL-002"


@pytest.mark.asyncio
async def test_exhausted_retries_degrade_to_fallback_code(session, monkeypatch) -> None:
    tenant_id = new_tenant_id()
    taken = await sequences.allocate_code(session, tenant_id=tenant_id, entity_class="CTRL")
    await session.commit()
    assert taken.code == "CTRL-001"

    # Every attempt re-reads a stale high-water mark and collides with CTRL-001.
    async def _stale_high_water_mark(*_args, **_kwargs) -> int:
        return 0

    monkeypatch.setattr(sequences, "current_high_water_mark", _stale_high_water_mark)
    allocated = await sequences.allocate_code(session, tenant_id=tenant_id, entity_class="CTRL")
    await session.commit()

    assert allocated.fallback is True
    assert allocated.seq is None
    assert re.match(r"^CTRL-\d{16,}-[0-9a-f]{4}$", allocated.code)

    events = (
        await session.execute(
            select(AuditEvent).where(
                AuditEvent.tenant_id == tenant_id,
                AuditEvent.event_type == "sequence.allocation.degraded",
            )
        )
    ).scalars().all()
    assert len(events) == 1
    assert events[0].outcome == "degraded"
    assert events[0].resource_id == allocated.code
    assert events[0].metadata_json["attempts"] == 5


@pytest.mark.asyncio
async def test_fallback_codes_do_not_move_the_counter(session, monkeypatch) -> None:
    tenant_id = new_tenant_id()
    await sequences.allocate_code(session, tenant_id=tenant_id, entity_class="KRI")
    await session.commit()

    original = sequences.current_high_water_mark

    async def _stale_high_water_mark(*_args, **_kwargs) -> int:
        return 0

    monkeypatch.setattr(sequences, "current_high_water_mark", _stale_high_water_mark)
    degraded = await sequences.allocate_code(session, tenant_id=tenant_id, entity_class="KRI", max_attempts=2)
    monkeypatch.setattr(sequences, "current_high_water_mark", original)
    following = await sequences.allocate_code(session, tenant_id=tenant_id, entity_class="KRI")
    await session.commit()

    assert degraded.fallback
    assert following.code == "KRI-002"
    count = await session.scalar(
        select(func.count()).select_from(SequenceReservation).where(SequenceReservation.tenant_id == tenant_id)
    )
    assert count == 3


class _RecordingSession:
    def __init__(self, dialect_name: str) -> None:
        self.statements: list = []
        self._bind = SimpleNamespace(dialect=SimpleNamespace(name=dialect_name))

    def get_bind(self):
        return self._bind

    async def execute(self, statement):
        self.statements.append(statement)


@pytest.mark.asyncio
async def test_advisory_lock_is_taken_only_on_postgresql() -> None:
    postgres = _RecordingSession("postgresql")
    assert await sequences._acquire_scope_lock(postgres, tenant_id="tenant-a", scope="CTRL") is True
    assert len(postgres.statements) == 1
    assert "pg_advisory_xact_lock" in str(postgres.statements[0])

    sqlite = _RecordingSession("sqlite")
    assert await sequences._acquire_scope_lock(sqlite, tenant_id="tenant-a", scope="CTRL") is False
    assert sqlite.statements == []


@pytest.mark.asyncio
async def test_advisory_mode_locks_before_reserving(session_factory, monkeypatch) -> None:
    tenant_id = new_tenant_id()
    advisory = get_settings().model_copy(update={"sequence_lock_mode": sequences.LOCK_MODE_ADVISORY})
    monkeypatch.setattr(sequences, "get_settings", lambda: advisory)
    locked_scopes: list[tuple[str, str]] = []
    original = sequences._acquire_scope_lock

    async def _spy(session, *, tenant_id: str, scope: str) -> bool:
        locked_scopes.append((tenant_id, scope))
        return await original(session, tenant_id=tenant_id, scope=scope)

    monkeypatch.setattr(sequences, "_acquire_scope_lock", _spy)

    first, second = await asyncio.gather(
        _allocate(session_factory, tenant_id),
        _allocate(session_factory, tenant_id),
    )
    assert sorted([first.code, second.code]) == ["CTRL-001", "CTRL-002"]
    assert locked_scopes == [(tenant_id, "CTRL"), (tenant_id, "CTRL")]
