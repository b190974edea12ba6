from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from riskgov.core.config import RISK_SCALE_MAX


# SQLite only autoincrements INTEGER PRIMARY KEY columns.
_BIGINT_PK = BigInteger().with_variant(Integer(), "sqlite")
_JSON = JSON().with_variant(JSONB(), "postgresql")

RISK_STATUSES = ("open", "closed", "archived")
CONTROL_TARGETS = ("likelihood", "impact")
USER_STATUSES = ("pending", "approved", "rejected", "suspended")
USER_ROLES = ("viewer", "user", "secondary_admin", "primary_admin", "super_admin")
PROTECTED_FIELDS = ("status", "role")


def _in_list(column: str, values: tuple[str, ...]) -> str:
    quoted = ", ".join(f"'{value}'" for value in values)
    return f"{column} IN ({quoted})"


class Base(DeclarativeBase):
    pass


class Tenant(Base):
    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Risk(Base):
    __tablename__ = "risks"
    __table_args__ = (
        UniqueConstraint("tenant_id", "code", name="uq_risks_tenant_code"),
        CheckConstraint(
            f"inherent_likelihood BETWEEN 1 AND {RISK_SCALE_MAX}", name="ck_risks_inherent_likelihood"
        ),
        CheckConstraint(f"inherent_impact BETWEEN 1 AND {RISK_SCALE_MAX}", name="ck_risks_inherent_impact"),
        CheckConstraint(
            "residual_likelihood >= 1 AND residual_likelihood <= inherent_likelihood",
            name="ck_risks_residual_likelihood_bounds",
        ),
        CheckConstraint(
            "residual_impact >= 1 AND residual_impact <= inherent_impact",
            name="ck_risks_residual_impact_bounds",
        ),
        CheckConstraint(
            "residual_score = residual_likelihood * residual_impact",
            name="ck_risks_residual_score_product",
        ),
        CheckConstraint(_in_list("status", RISK_STATUSES), name="ck_risks_status"),
        Index("ix_risks_tenant_status", "tenant_id", "status"),
        Index("ix_risks_residual_position", "residual_likelihood", "residual_impact"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, ForeignKey("tenants.id", ondelete="RESTRICT"), index=True)
    code: Mapped[str] = mapped_column(String)
    title: Mapped[str] = mapped_column(String)
    division: Mapped[str | None] = mapped_column(String, nullable=True)
    category: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, default="open", nullable=False)
    inherent_likelihood: Mapped[int] = mapped_column(Integer)
    inherent_impact: Mapped[int] = mapped_column(Integer)
    # Materialized by the recompute engine only.
    residual_likelihood: Mapped[int] = mapped_column(Integer)
    residual_impact: Mapped[int] = mapped_column(Integer)
    residual_score: Mapped[int] = mapped_column(Integer)
    # Bumped on every change to recompute inputs; recompute writes compare-and-set on it.
    inputs_version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_recomputed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class Control(Base):
    __tablename__ = "controls"
    __table_args__ = (
        UniqueConstraint("tenant_id", "code", name="uq_controls_tenant_code"),
        CheckConstraint(_in_list("target", CONTROL_TARGETS), name="ck_controls_target"),
        CheckConstraint("design_score BETWEEN 0 AND 3", name="ck_controls_design_score"),
        CheckConstraint("implementation_score BETWEEN 0 AND 3", name="ck_controls_implementation_score"),
        CheckConstraint("monitoring_score BETWEEN 0 AND 3", name="ck_controls_monitoring_score"),
        CheckConstraint("evaluation_score BETWEEN 0 AND 3", name="ck_controls_evaluation_score"),
        Index("ix_controls_tenant_deleted", "tenant_id", "deleted_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, ForeignKey("tenants.id", ondelete="RESTRICT"), index=True)
    code: Mapped[str] = mapped_column(String)
    title: Mapped[str] = mapped_column(String)
    target: Mapped[str] = mapped_column(String)
    # Sub-scores stay NULL until assessed; partially scored controls earn no credit.
    design_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    implementation_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    monitoring_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    evaluation_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    # Tombstone; governance rows are never removed while linked.
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class RiskControlLink(Base):
    __tablename__ = "risk_control_links"
    __table_args__ = (
        Index("ix_risk_control_links_control", "control_id"),
        Index("ix_risk_control_links_tenant", "tenant_id"),
    )

    # Non-owning association: neither side cascades into the other.
    risk_id: Mapped[str] = mapped_column(String, ForeignKey("risks.id", ondelete="RESTRICT"), primary_key=True)
    control_id: Mapped[str] = mapped_column(
        String, ForeignKey("controls.id", ondelete="RESTRICT"), primary_key=True
    )
    tenant_id: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class SequenceReservation(Base):
    __tablename__ = "sequence_reservations"
    __table_args__ = (
        UniqueConstraint("tenant_id", "scope", "seq", name="uq_sequence_reservations_scope_seq"),
        UniqueConstraint("tenant_id", "code", name="uq_sequence_reservations_code"),
    )

    id: Mapped[int] = mapped_column(_BIGINT_PK, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String)
    # Code prefix, e.g. CTRL or INC-OPS; one counter per (tenant, scope).
    scope: Mapped[str] = mapped_column(String)
    # NULL for fallback codes so they never move the high-water mark.
    seq: Mapped[int | None] = mapped_column(Integer, nullable=True)
    code: Mapped[str] = mapped_column(String)
    fallback: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ProtectedUser(Base):
    __tablename__ = "protected_users"
    __table_args__ = (
        UniqueConstraint("tenant_id", "email", name="uq_protected_users_tenant_email"),
        CheckConstraint(_in_list("status", USER_STATUSES), name="ck_protected_users_status"),
        CheckConstraint(_in_list("role", USER_ROLES), name="ck_protected_users_role"),
        Index("ix_protected_users_tenant_status", "tenant_id", "status"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, ForeignKey("tenants.id", ondelete="RESTRICT"), index=True)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    # Written only through the transition service; database triggers reject direct writes.
    status: Mapped[str] = mapped_column(String)
    role: Mapped[str] = mapped_column(String)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    approved_by: Mapped[str | None] = mapped_column(String, nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejected_by: Mapped[str | None] = mapped_column(String, nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    suspended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    suspended_by: Mapped[str | None] = mapped_column(String, nullable=True)
    suspension_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class TransitionRecord(Base):
    __tablename__ = "transition_records"
    __table_args__ = (
        CheckConstraint(_in_list("field", PROTECTED_FIELDS), name="ck_transition_records_field"),
        Index("ix_transition_records_entity_field", "entity_id", "field", "id"),
        Index("ix_transition_records_tenant_occurred", "tenant_id", "occurred_at"),
        Index("ix_transition_records_actor", "actor_id", "occurred_at"),
    )

    # Append-only ledger; triggers reject UPDATE and DELETE.
    id: Mapped[int] = mapped_column(_BIGINT_PK, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String)
    entity_id: Mapped[str] = mapped_column(String, ForeignKey("protected_users.id", ondelete="RESTRICT"))
    field: Mapped[str] = mapped_column(String)
    # NULL only for the genesis record written at creation.
    from_value: Mapped[str | None] = mapped_column(String, nullable=True)
    to_value: Mapped[str] = mapped_column(String)
    transition_type: Mapped[str] = mapped_column(String)
    actor_id: Mapped[str] = mapped_column(String)
    actor_role: Mapped[str] = mapped_column(String)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class AuditEvent(Base):
    __tablename__ = "audit_events"
    __table_args__ = (
        Index("ix_audit_events_tenant_occurred_at", "tenant_id", "occurred_at"),
        Index("ix_audit_events_event_type", "event_type"),
    )

    id: Mapped[int] = mapped_column(_BIGINT_PK, primary_key=True, autoincrement=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    tenant_id: Mapped[str | None] = mapped_column(String, nullable=True)
    actor_type: Mapped[str] = mapped_column(String)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    actor_role: Mapped[str | None] = mapped_column(String, nullable=True)
    event_type: Mapped[str] = mapped_column(String)
    outcome: Mapped[str] = mapped_column(String)
    resource_type: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(_JSON, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
