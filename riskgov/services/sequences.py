from __future__ import annotations

from dataclasses import dataclass
import logging
import re
import secrets
import time

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from riskgov.core.config import get_settings
from riskgov.core.errors import ConstraintViolation, RaceExhausted
from riskgov.domain.models import SequenceReservation
from riskgov.persistence.guards import require_tenant_id
from riskgov.services.audit import record_event


logger = logging.getLogger(__name__)

ENTITY_CLASS_CONTROL = "CTRL"
ENTITY_CLASS_KRI = "KRI"
ENTITY_CLASS_INCIDENT = "INC"
ENTITY_CLASS_RISK = "RISK"

LOCK_MODE_OPTIMISTIC = "optimistic"
LOCK_MODE_ADVISORY = "advisory"

# Division stems that would share a counter with an entity class get a RISK- namespace.
_RESERVED_STEMS = frozenset({ENTITY_CLASS_CONTROL, ENTITY_CLASS_KRI, ENTITY_CLASS_INCIDENT, ENTITY_CLASS_RISK})

_PREFIX_PATTERN = re.compile(r"^[A-Z][A-Z0-9]*(?:-[A-Z0-9]+)*$")
_SEQUENTIAL_CODE = re.compile(r"^(?P<prefix>[A-Z][A-Z0-9-]*?)-(?P<seq>\d{3,})$")
_FALLBACK_CODE = re.compile(r"^(?P<prefix>[A-Z][A-Z0-9-]*?)-(?P<stamp>\d{16,})-(?P<suffix>[0-9a-f]{4})$")
_FALLBACK_ATTEMPTS = 3


@dataclass(frozen=True)
class AllocatedCode:
    code: str
    scope: str
    seq: int | None
    fallback: bool = False


def _normalize_segment(value: str) -> str:
    return re.sub(r"[^A-Z0-9]", "", value.strip().upper())


def scope_prefix(entity_class: str, sub_dimension: str | None = None) -> str:
    """Build the counter scope for an entity class, e.g. ``INC`` + ``ops`` -> ``INC-OPS``."""
    prefix = _normalize_segment(entity_class)
    if sub_dimension:
        segment = _normalize_segment(sub_dimension)
        if segment:
            prefix = f"{prefix}-{segment}"
    if not _PREFIX_PATTERN.match(prefix):
        raise ValueError(f"Unsupported entity class for code allocation: {entity_class!r}")
    return prefix


def risk_scope_prefix(division: str | None, category: str | None) -> str:
    # Risks are numbered per division/category pair using three-letter stems (OPS-CRE-005).
    div = _normalize_segment(division or "")[:3]
    cat = _normalize_segment(category or "")[:3]
    if not div or not cat or not div[0].isalpha():
        return ENTITY_CLASS_RISK
    if div in _RESERVED_STEMS:
        return f"{ENTITY_CLASS_RISK}-{div}-{cat}"
    return f"{div}-{cat}"


def format_code(prefix: str, seq: int) -> str:
    if seq < 1:
        raise ValueError("Sequence numbers start at 1")
    return f"{prefix}-{seq:03d}"


def parse_code(code: str) -> tuple[str, int | None]:
    """Split a code into (prefix, seq); fallback codes parse with ``seq`` None."""
    fallback = _FALLBACK_CODE.match(code)
    if fallback:
        return fallback.group("prefix"), None
    sequential = _SEQUENTIAL_CODE.match(code)
    if sequential:
        return sequential.group("prefix"), int(sequential.group("seq"))
    raise ValueError(f"Unrecognized code format: {code!r}")


def _fallback_code(prefix: str) -> str:
    # Microsecond timestamp plus random suffix; unique without consulting the counter.
    return f"{prefix}-{time.time_ns() // 1000}-{secrets.token_hex(2)}"


async def current_high_water_mark(session: AsyncSession, *, tenant_id: str, scope: str) -> int:
    # Reservations are never deleted, so tombstoned entities still hold their numbers.
    require_tenant_id(tenant_id)
    result = await session.execute(
        select(func.coalesce(func.max(SequenceReservation.seq), 0)).where(
            SequenceReservation.tenant_id == tenant_id,
            SequenceReservation.scope == scope,
        )
    )
    return int(result.scalar_one())


def scope_lock_statement(tenant_id: str, scope: str):
    # Transaction-scoped advisory lock keyed on the hashed (tenant, scope) pair.
    return select(func.pg_advisory_xact_lock(func.hashtext(f"{tenant_id}:{scope}")))


async def _acquire_scope_lock(session: AsyncSession, *, tenant_id: str, scope: str) -> bool:
    # Pessimistic variant: serialize creations within (tenant, scope) until commit.
    dialect = session.get_bind().dialect.name
    if dialect != "postgresql":
        # SQLite writers are already serialized by BEGIN IMMEDIATE.
        return False
    await session.execute(scope_lock_statement(tenant_id, scope))
    return True


async def _reserve_sequential(
    session: AsyncSession,
    *,
    tenant_id: str,
    scope: str,
    max_attempts: int,
) -> AllocatedCode:
    for attempt in range(1, max_attempts + 1):
        candidate = await current_high_water_mark(session, tenant_id=tenant_id, scope=scope) + 1
        code = format_code(scope, candidate)
        try:
            async with session.begin_nested():
                session.add(
                    SequenceReservation(tenant_id=tenant_id, scope=scope, seq=candidate, code=code)
                )
        except IntegrityError:
            logger.info(
                "sequence_reservation_conflict tenant_id=%s scope=%s candidate=%s attempt=%s",
                tenant_id,
                scope,
                candidate,
                attempt,
            )
            continue
        return AllocatedCode(code=code, scope=scope, seq=candidate)
    raise RaceExhausted(f"Sequence reservation for {tenant_id}/{scope} lost {max_attempts} races")


async def _reserve_fallback(session: AsyncSession, *, tenant_id: str, scope: str) -> AllocatedCode:
    for _ in range(_FALLBACK_ATTEMPTS):
        code = _fallback_code(scope)
        try:
            async with session.begin_nested():
                session.add(
                    SequenceReservation(
                        tenant_id=tenant_id, scope=scope, seq=None, code=code, fallback=True
                    )
                )
        except IntegrityError:
            continue
        return AllocatedCode(code=code, scope=scope, seq=None, fallback=True)
    raise ConstraintViolation(f"Fallback code for {tenant_id}/{scope} collided {_FALLBACK_ATTEMPTS} times")


async def allocate_code(
    session: AsyncSession,
    *,
    tenant_id: str,
    entity_class: str,
    sub_dimension: str | None = None,
    scope: str | None = None,
    max_attempts: int | None = None,
) -> AllocatedCode:
    """Reserve the next code for (tenant, class) inside the caller's transaction.

    Candidates are ``max(seq) + 1`` reserved through a unique-constrained
    insert; a lost race re-reads and retries. When every attempt loses, the
    allocation degrades to a timestamp code instead of failing the creation.
    Pass ``scope`` to use a precomputed prefix such as a risk's DIV-CAT stem.
    """
    require_tenant_id(tenant_id)
    settings = get_settings()
    resolved_scope = scope or scope_prefix(entity_class, sub_dimension)
    attempts = max(1, int(max_attempts or settings.sequence_max_attempts))
    if settings.sequence_lock_mode == LOCK_MODE_ADVISORY:
        await _acquire_scope_lock(session, tenant_id=tenant_id, scope=resolved_scope)
    try:
        return await _reserve_sequential(
            session, tenant_id=tenant_id, scope=resolved_scope, max_attempts=attempts
        )
    except RaceExhausted as exc:
        allocated = await _reserve_fallback(session, tenant_id=tenant_id, scope=resolved_scope)
        logger.warning(
            "sequence_allocation_degraded tenant_id=%s scope=%s attempts=%s code=%s reason=%s",
            tenant_id,
            resolved_scope,
            attempts,
            allocated.code,
            exc,
        )
        await record_event(
            session,
            tenant_id=tenant_id,
            actor_type="system",
            actor_id=None,
            actor_role=None,
            event_type="sequence.allocation.degraded",
            outcome="degraded",
            resource_type="sequence",
            resource_id=allocated.code,
            metadata={"scope": resolved_scope, "attempts": attempts},
            error_code=RaceExhausted.code,
        )
        return allocated
