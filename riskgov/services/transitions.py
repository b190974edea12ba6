from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Iterable
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from riskgov.core.errors import (
    ConstraintViolation,
    EntityNotFound,
    InvalidTransition,
    MissingReason,
    Unauthorized,
)
from riskgov.domain.context import ActorContext
from riskgov.domain.models import PROTECTED_FIELDS, USER_STATUSES, ProtectedUser, TransitionRecord
from riskgov.persistence.guards import require_tenant_id, tenant_predicate
from riskgov.persistence.repos import ledger as ledger_repo


logger = logging.getLogger(__name__)

FIELD_STATUS = "status"
FIELD_ROLE = "role"

STATUS_PENDING = "pending"
STATUS_APPROVED = "approved"
STATUS_REJECTED = "rejected"
STATUS_SUSPENDED = "suspended"

ROLE_LEVELS: dict[str, int] = {
    "viewer": 0,
    "user": 1,
    "secondary_admin": 2,
    "primary_admin": 3,
    "super_admin": 4,
}
ADMIN_MIN_ROLE = "secondary_admin"
SUPER_TENANT_ROLE = "super_admin"

TRANSITION_GENESIS = "genesis"
TRANSITION_ROLE_PROMOTION = "role_promotion"
TRANSITION_ROLE_DEMOTION = "role_demotion"

# Rejected is terminal; approved and suspended alternate.
STATUS_EDGES: dict[tuple[str, str], str] = {
    (STATUS_PENDING, STATUS_APPROVED): "onboarding_approval",
    (STATUS_PENDING, STATUS_REJECTED): "onboarding_rejection",
    (STATUS_APPROVED, STATUS_SUSPENDED): "disciplinary_suspension",
    (STATUS_SUSPENDED, STATUS_APPROVED): "reinstatement",
}
DESTRUCTIVE_TRANSITIONS = frozenset({"onboarding_rejection", "disciplinary_suspension"})


@dataclass(frozen=True)
class TransitionResult:
    record_id: int
    tenant_id: str
    entity_id: str
    field: str
    from_value: str | None
    to_value: str
    transition_type: str
    actor_id: str
    actor_role: str
    reason: str | None
    occurred_at: datetime


@dataclass(frozen=True)
class LedgerDiscrepancy:
    entity_id: str
    field: str
    current_value: str | None
    folded_value: str | None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_role(role: str) -> str:
    normalized = role.strip().lower()
    if normalized not in ROLE_LEVELS:
        raise ValueError(f"Unsupported role: {role}")
    return normalized


def role_level(role: str | None) -> int:
    # Unknown roles rank below every real role.
    if role is None:
        return -1
    return ROLE_LEVELS.get(role.strip().lower(), -1)


def allowed_status_targets(current: str) -> list[str]:
    return sorted(to_value for (from_value, to_value) in STATUS_EDGES if from_value == current)


def classify_status_edge(from_status: str, to_status: str) -> str:
    transition_type = STATUS_EDGES.get((from_status, to_status))
    if transition_type is None:
        raise InvalidTransition(
            f"Invalid status transition {from_status} -> {to_status}",
            details={
                "from_status": from_status,
                "to_status": to_status,
                "allowed_transitions": allowed_status_targets(from_status),
            },
        )
    return transition_type


def requires_reason(field: str, transition_type: str) -> bool:
    # Every role change is privileged; status changes only when destructive.
    if field == FIELD_ROLE:
        return True
    return transition_type in DESTRUCTIVE_TRANSITIONS


@dataclass(frozen=True)
class _ResolvedActor:
    actor_id: str
    tenant_id: str
    role: str


async def _resolve_actor(
    session: AsyncSession, actor: ActorContext, *, allow_system: bool = False
) -> _ResolvedActor:
    # The role used for authorization is read from the store, never trusted from the caller.
    if not actor.authenticated:
        raise Unauthorized("Not authenticated", details={"reason": "AUTH_REQUIRED"})
    if actor.actor_type == "system":
        # The system actor only provisions users inside its own tenant.
        if not allow_system:
            raise Unauthorized(
                "System actor cannot change protected fields", details={"reason": "SYSTEM_ACTOR_FORBIDDEN"}
            )
        return _ResolvedActor(actor_id=str(actor.actor_id), tenant_id=actor.tenant_id, role=SUPER_TENANT_ROLE)
    result = await session.execute(
        select(ProtectedUser)
        .where(ProtectedUser.id == actor.actor_id)
        .execution_options(populate_existing=True)
    )
    row = result.scalar_one_or_none()
    if row is None:
        raise Unauthorized("Actor profile not found", details={"reason": "ACTOR_NOT_FOUND"})
    if row.tenant_id != actor.tenant_id:
        raise Unauthorized("Actor does not belong to the calling tenant", details={"reason": "ORG_MISMATCH"})
    if row.status != STATUS_APPROVED:
        raise Unauthorized("Actor is not an approved user", details={"reason": "ACTOR_NOT_APPROVED"})
    return _ResolvedActor(actor_id=row.id, tenant_id=row.tenant_id, role=row.role)


async def _lock_subject(session: AsyncSession, entity_id: str) -> ProtectedUser:
    result = await session.execute(
        select(ProtectedUser)
        .where(ProtectedUser.id == entity_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    subject = result.scalar_one_or_none()
    if subject is None:
        raise EntityNotFound(f"User {entity_id} not found", details={"entity_id": entity_id})
    return subject


def _authorize(actor: _ResolvedActor, subject: ProtectedUser, field: str, new_value: str) -> None:
    actor_level = role_level(actor.role)
    if actor.role != SUPER_TENANT_ROLE and subject.tenant_id != actor.tenant_id:
        # Do not reveal foreign-tenant rows beyond "not yours".
        raise Unauthorized("You can only manage users in your own organization", details={"reason": "ORG_MISMATCH"})
    if actor.actor_id == subject.id:
        raise Unauthorized(f"You cannot change your own {field}", details={"reason": "SELF_MODIFY_FORBIDDEN"})
    if actor_level < role_level(ADMIN_MIN_ROLE):
        raise Unauthorized(
            f"Only admins can change user {field}",
            details={"reason": "ADMIN_REQUIRED", "your_role": actor.role},
        )
    if actor_level <= role_level(subject.role):
        raise Unauthorized(
            "You cannot manage users with equal or higher privileges",
            details={"reason": "RBAC_VIOLATION", "your_role": actor.role, "target_role": subject.role},
        )
    if field == FIELD_ROLE and actor_level <= role_level(new_value):
        raise Unauthorized(
            "You can only assign roles below your own",
            details={"reason": "RBAC_VIOLATION", "your_role": actor.role, "attempted_role": new_value},
        )


def _apply_status_metadata(subject: ProtectedUser, new_status: str, actor_id: str, reason: str | None) -> None:
    now = _utc_now()
    if new_status == STATUS_APPROVED:
        subject.approved_at = now
        subject.approved_by = actor_id
    elif new_status == STATUS_REJECTED:
        subject.rejected_at = now
        subject.rejected_by = actor_id
        subject.rejection_reason = reason
    elif new_status == STATUS_SUSPENDED:
        subject.suspended_at = now
        subject.suspended_by = actor_id
        subject.suspension_reason = reason


def _result(record: TransitionRecord) -> TransitionResult:
    return TransitionResult(
        record_id=record.id,
        tenant_id=record.tenant_id,
        entity_id=record.entity_id,
        field=record.field,
        from_value=record.from_value,
        to_value=record.to_value,
        transition_type=record.transition_type,
        actor_id=record.actor_id,
        actor_role=record.actor_role,
        reason=record.reason,
        occurred_at=record.occurred_at,
    )


async def transition(
    session: AsyncSession,
    actor: ActorContext,
    *,
    entity_id: str,
    field: str,
    new_value: str,
    reason: str | None = None,
    request_id: str | None = None,
) -> TransitionResult:
    """Change a protected field through the audited path.

    Checks run in order: vocabulary, authorization, edge legality, reason.
    The ledger append and the field mutation share one savepoint, so either
    both persist with the caller's transaction or neither does. Failures are
    raised immediately and must not be retried automatically.
    """
    if field not in PROTECTED_FIELDS:
        raise ValueError(f"Unsupported protected field: {field}")
    cleaned_value = new_value.strip().lower()
    if field == FIELD_STATUS and cleaned_value not in USER_STATUSES:
        raise InvalidTransition(f"Unknown status: {new_value}", details={"to_status": new_value})
    if field == FIELD_ROLE and cleaned_value not in ROLE_LEVELS:
        raise InvalidTransition(f"Unknown role: {new_value}", details={"to_role": new_value})

    resolved = await _resolve_actor(session, actor)
    subject = await _lock_subject(session, entity_id)
    _authorize(resolved, subject, field, cleaned_value)

    from_value = getattr(subject, field)
    if field == FIELD_STATUS:
        transition_type = classify_status_edge(from_value, cleaned_value)
    else:
        if cleaned_value == from_value:
            raise InvalidTransition(
                f"User already has role {from_value}",
                details={"from_role": from_value, "to_role": cleaned_value},
            )
        transition_type = (
            TRANSITION_ROLE_PROMOTION
            if role_level(cleaned_value) > role_level(from_value)
            else TRANSITION_ROLE_DEMOTION
        )

    cleaned_reason = reason.strip() if reason else None
    if requires_reason(field, transition_type) and not cleaned_reason:
        raise MissingReason(
            f"Reason required for {transition_type}",
            details={"transition_type": transition_type},
        )

    async with session.begin_nested():
        # Ledger first: the storage guard only admits the edge the newest record describes.
        record = TransitionRecord(
            tenant_id=subject.tenant_id,
            entity_id=subject.id,
            field=field,
            from_value=from_value,
            to_value=cleaned_value,
            transition_type=transition_type,
            actor_id=resolved.actor_id,
            actor_role=resolved.role,
            reason=cleaned_reason,
            request_id=request_id or actor.request_id,
            occurred_at=_utc_now(),
        )
        session.add(record)
        await session.flush()
        setattr(subject, field, cleaned_value)
        if field == FIELD_STATUS:
            _apply_status_metadata(subject, cleaned_value, resolved.actor_id, cleaned_reason)
        await session.flush()

    logger.info(
        "protected_field_transition tenant_id=%s entity_id=%s field=%s from=%s to=%s type=%s actor_id=%s record_id=%s",
        subject.tenant_id,
        subject.id,
        field,
        from_value,
        cleaned_value,
        transition_type,
        resolved.actor_id,
        record.id,
    )
    return _result(record)


async def transition_status(
    session: AsyncSession,
    actor: ActorContext,
    *,
    entity_id: str,
    new_status: str,
    reason: str | None = None,
    request_id: str | None = None,
) -> TransitionResult:
    return await transition(
        session,
        actor,
        entity_id=entity_id,
        field=FIELD_STATUS,
        new_value=new_status,
        reason=reason,
        request_id=request_id,
    )


async def transition_role(
    session: AsyncSession,
    actor: ActorContext,
    *,
    entity_id: str,
    new_role: str,
    reason: str | None = None,
    request_id: str | None = None,
) -> TransitionResult:
    return await transition(
        session,
        actor,
        entity_id=entity_id,
        field=FIELD_ROLE,
        new_value=new_role,
        reason=reason,
        request_id=request_id,
    )


async def create_protected_user(
    session: AsyncSession,
    actor: ActorContext,
    *,
    email: str | None,
    role: str = "user",
    status: str = STATUS_PENDING,
    user_id: str | None = None,
    reason: str | None = None,
) -> ProtectedUser:
    """Insert a user and its genesis ledger records for status and role.

    Admins create pending users with roles below their own. Only the system
    actor may seed users directly in another status (bootstrap admins).
    """
    require_tenant_id(actor.tenant_id)
    resolved_role = normalize_role(role)
    if status not in USER_STATUSES:
        raise InvalidTransition(f"Unknown status: {status}", details={"to_status": status})
    resolved = await _resolve_actor(session, actor, allow_system=True)
    is_system = actor.actor_type == "system"
    if not is_system:
        if role_level(resolved.role) < role_level(ADMIN_MIN_ROLE):
            raise Unauthorized("Only admins can create users", details={"reason": "ADMIN_REQUIRED"})
        if role_level(resolved.role) <= role_level(resolved_role):
            raise Unauthorized(
                "You can only assign roles below your own",
                details={"reason": "RBAC_VIOLATION", "attempted_role": resolved_role},
            )
        if status != STATUS_PENDING:
            raise InvalidTransition(
                "New users start pending", details={"from_status": None, "to_status": status}
            )

    now = _utc_now()
    user = ProtectedUser(
        id=user_id or uuid4().hex,
        tenant_id=actor.tenant_id,
        email=email,
        status=status,
        role=resolved_role,
        approved_at=now if status == STATUS_APPROVED else None,
        approved_by=resolved.actor_id if status == STATUS_APPROVED else None,
    )
    async with session.begin_nested():
        session.add(user)
        await session.flush()
        for field, value in ((FIELD_STATUS, status), (FIELD_ROLE, resolved_role)):
            session.add(
                TransitionRecord(
                    tenant_id=user.tenant_id,
                    entity_id=user.id,
                    field=field,
                    from_value=None,
                    to_value=value,
                    transition_type=TRANSITION_GENESIS,
                    actor_id=resolved.actor_id,
                    actor_role=resolved.role,
                    reason=reason,
                    request_id=actor.request_id,
                    occurred_at=now,
                )
            )
        await session.flush()
    logger.info(
        "protected_user_created tenant_id=%s entity_id=%s status=%s role=%s actor_id=%s",
        user.tenant_id,
        user.id,
        status,
        resolved_role,
        resolved.actor_id,
    )
    return user


def fold_history(records: Iterable[TransitionRecord]) -> str | None:
    """Replay one field's ledger records in order and return the resulting value.

    Raises ConstraintViolation when a record does not start from the value the
    previous record produced.
    """
    current: str | None = None
    for record in sorted(records, key=lambda item: item.id):
        if record.from_value != current:
            raise ConstraintViolation(
                f"Ledger chain broken at record {record.id}: expected from {current!r}, found {record.from_value!r}"
            )
        current = record.to_value
    return current


async def reconstruct_value(session: AsyncSession, *, tenant_id: str, entity_id: str, field: str) -> str | None:
    records = await ledger_repo.history_for_entity(session, tenant_id=tenant_id, entity_id=entity_id, field=field)
    return fold_history(records)


async def verify_ledger(session: AsyncSession, *, tenant_id: str) -> list[LedgerDiscrepancy]:
    # Compare every user's stored status/role with the value its history folds to.
    users = (
        await session.execute(
            select(ProtectedUser)
            .where(tenant_predicate(ProtectedUser, tenant_id))
            .order_by(ProtectedUser.id)
            .execution_options(populate_existing=True)
        )
    ).scalars().all()
    discrepancies: list[LedgerDiscrepancy] = []
    for user in users:
        for field in PROTECTED_FIELDS:
            current = getattr(user, field)
            try:
                folded = await reconstruct_value(session, tenant_id=tenant_id, entity_id=user.id, field=field)
            except ConstraintViolation as exc:
                logger.error("ledger_chain_broken tenant_id=%s entity_id=%s field=%s error=%s", tenant_id, user.id, field, exc)
                folded = None
            if folded != current:
                discrepancies.append(
                    LedgerDiscrepancy(entity_id=user.id, field=field, current_value=current, folded_value=folded)
                )
    return discrepancies
