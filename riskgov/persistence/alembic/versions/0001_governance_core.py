"""governance core tables and protected-field guards

Revision ID: 0001_governance_core
Revises:
Create Date: 2026-10-18
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from riskgov.core.config import RISK_SCALE_MAX
from riskgov.persistence.schema import guard_ddl_for_dialect


revision = "0001_governance_core"
down_revision = None
branch_labels = None
depends_on = None

_BIGINT_PK = sa.BigInteger().with_variant(sa.Integer(), "sqlite")
_JSON = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    ]


def upgrade() -> None:
    op.create_table(
        "tenants",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "risks",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), sa.ForeignKey("tenants.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("code", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("division", sa.String(), nullable=True),
        sa.Column("category", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="open"),
        sa.Column("inherent_likelihood", sa.Integer(), nullable=False),
        sa.Column("inherent_impact", sa.Integer(), nullable=False),
        sa.Column("residual_likelihood", sa.Integer(), nullable=False),
        sa.Column("residual_impact", sa.Integer(), nullable=False),
        sa.Column("residual_score", sa.Integer(), nullable=False),
        sa.Column("inputs_version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_recomputed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("tenant_id", "code", name="uq_risks_tenant_code"),
        sa.CheckConstraint(
            f"inherent_likelihood BETWEEN 1 AND {RISK_SCALE_MAX}", name="ck_risks_inherent_likelihood"
        ),
        sa.CheckConstraint(f"inherent_impact BETWEEN 1 AND {RISK_SCALE_MAX}", name="ck_risks_inherent_impact"),
        sa.CheckConstraint(
            "residual_likelihood >= 1 AND residual_likelihood <= inherent_likelihood",
            name="ck_risks_residual_likelihood_bounds",
        ),
        sa.CheckConstraint(
            "residual_impact >= 1 AND residual_impact <= inherent_impact",
            name="ck_risks_residual_impact_bounds",
        ),
        sa.CheckConstraint(
            "residual_score = residual_likelihood * residual_impact",
            name="ck_risks_residual_score_product",
        ),
        sa.CheckConstraint("status IN ('open', 'closed', 'archived')", name="ck_risks_status"),
    )
    op.create_index("ix_risks_tenant_id", "risks", ["tenant_id"])
    op.create_index("ix_risks_tenant_status", "risks", ["tenant_id", "status"])
    op.create_index("ix_risks_residual_position", "risks", ["residual_likelihood", "residual_impact"])

    op.create_table(
        "controls",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), sa.ForeignKey("tenants.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("code", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("target", sa.String(), nullable=False),
        sa.Column("design_score", sa.Integer(), nullable=True),
        sa.Column("implementation_score", sa.Integer(), nullable=True),
        sa.Column("monitoring_score", sa.Integer(), nullable=True),
        sa.Column("evaluation_score", sa.Integer(), nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("tenant_id", "code", name="uq_controls_tenant_code"),
        sa.CheckConstraint("target IN ('likelihood', 'impact')", name="ck_controls_target"),
        sa.CheckConstraint("design_score BETWEEN 0 AND 3", name="ck_controls_design_score"),
        sa.CheckConstraint("implementation_score BETWEEN 0 AND 3", name="ck_controls_implementation_score"),
        sa.CheckConstraint("monitoring_score BETWEEN 0 AND 3", name="ck_controls_monitoring_score"),
        sa.CheckConstraint("evaluation_score BETWEEN 0 AND 3", name="ck_controls_evaluation_score"),
    )
    op.create_index("ix_controls_tenant_id", "controls", ["tenant_id"])
    op.create_index("ix_controls_tenant_deleted", "controls", ["tenant_id", "deleted_at"])

    op.create_table(
        "risk_control_links",
        sa.Column("risk_id", sa.String(), sa.ForeignKey("risks.id", ondelete="RESTRICT"), primary_key=True),
        sa.Column(
            "control_id", sa.String(), sa.ForeignKey("controls.id", ondelete="RESTRICT"), primary_key=True
        ),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_risk_control_links_control", "risk_control_links", ["control_id"])
    op.create_index("ix_risk_control_links_tenant", "risk_control_links", ["tenant_id"])

    # Reservations outlive the entities they number so codes are never reissued.
    op.create_table(
        "sequence_reservations",
        sa.Column("id", _BIGINT_PK, primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("scope", sa.String(), nullable=False),
        sa.Column("seq", sa.Integer(), nullable=True),
        sa.Column("code", sa.String(), nullable=False),
        sa.Column("fallback", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("tenant_id", "scope", "seq", name="uq_sequence_reservations_scope_seq"),
        sa.UniqueConstraint("tenant_id", "code", name="uq_sequence_reservations_code"),
    )

    op.create_table(
        "protected_users",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), sa.ForeignKey("tenants.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("role", sa.String(), nullable=False),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("approved_by", sa.String(), nullable=True),
        sa.Column("rejected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejected_by", sa.String(), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("suspended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("suspended_by", sa.String(), nullable=True),
        sa.Column("suspension_reason", sa.Text(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("tenant_id", "email", name="uq_protected_users_tenant_email"),
        sa.CheckConstraint(
            "status IN ('pending', 'approved', 'rejected', 'suspended')", name="ck_protected_users_status"
        ),
        sa.CheckConstraint(
            "role IN ('viewer', 'user', 'secondary_admin', 'primary_admin', 'super_admin')",
            name="ck_protected_users_role",
        ),
    )
    op.create_index("ix_protected_users_tenant_id", "protected_users", ["tenant_id"])
    op.create_index("ix_protected_users_tenant_status", "protected_users", ["tenant_id", "status"])

    op.create_table(
        "transition_records",
        sa.Column("id", _BIGINT_PK, primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column(
            "entity_id",
            sa.String(),
            sa.ForeignKey("protected_users.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("field", sa.String(), nullable=False),
        sa.Column("from_value", sa.String(), nullable=True),
        sa.Column("to_value", sa.String(), nullable=False),
        sa.Column("transition_type", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=False),
        sa.Column("actor_role", sa.String(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("request_id", sa.String(), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("field IN ('status', 'role')", name="ck_transition_records_field"),
    )
    op.create_index(
        "ix_transition_records_entity_field", "transition_records", ["entity_id", "field", "id"]
    )
    op.create_index(
        "ix_transition_records_tenant_occurred", "transition_records", ["tenant_id", "occurred_at"]
    )
    op.create_index("ix_transition_records_actor", "transition_records", ["actor_id", "occurred_at"])

    op.create_table(
        "audit_events",
        sa.Column("id", _BIGINT_PK, primary_key=True, autoincrement=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("actor_type", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("actor_role", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("resource_type", sa.String(), nullable=True),
        sa.Column("resource_id", sa.String(), nullable=True),
        sa.Column("request_id", sa.String(), nullable=True),
        sa.Column("metadata_json", _JSON, nullable=True),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_audit_events_tenant_occurred_at", "audit_events", ["tenant_id", "occurred_at"])
    op.create_index("ix_audit_events_event_type", "audit_events", ["event_type"])

    # Guards ship with the tables; no environment runs without them.
    for statement in guard_ddl_for_dialect(op.get_bind().dialect.name):
        op.execute(statement)


def downgrade() -> None:
    dialect = op.get_bind().dialect.name
    if dialect == "postgresql":
        op.execute("DROP TRIGGER IF EXISTS trg_transition_records_authorized ON transition_records")
        op.execute("DROP TRIGGER IF EXISTS trg_transition_records_immutable ON transition_records")
        op.execute("DROP TRIGGER IF EXISTS trg_protected_users_status_guard ON protected_users")
        op.execute("DROP TRIGGER IF EXISTS trg_protected_users_role_guard ON protected_users")
        op.execute("DROP FUNCTION IF EXISTS riskgov_reject_ledger_mutation()")
        op.execute("DROP FUNCTION IF EXISTS riskgov_validate_ledger_append()")
        op.execute("DROP FUNCTION IF EXISTS riskgov_guard_protected_field()")
    op.drop_index("ix_audit_events_event_type", table_name="audit_events")
    op.drop_index("ix_audit_events_tenant_occurred_at", table_name="audit_events")
    op.drop_table("audit_events")
    op.drop_index("ix_transition_records_actor", table_name="transition_records")
    op.drop_index("ix_transition_records_tenant_occurred", table_name="transition_records")
    op.drop_index("ix_transition_records_entity_field", table_name="transition_records")
    op.drop_table("transition_records")
    op.drop_index("ix_protected_users_tenant_status", table_name="protected_users")
    op.drop_index("ix_protected_users_tenant_id", table_name="protected_users")
    op.drop_table("protected_users")
    op.drop_table("sequence_reservations")
    op.drop_index("ix_risk_control_links_tenant", table_name="risk_control_links")
    op.drop_index("ix_risk_control_links_control", table_name="risk_control_links")
    op.drop_table("risk_control_links")
    op.drop_index("ix_controls_tenant_deleted", table_name="controls")
    op.drop_index("ix_controls_tenant_id", table_name="controls")
    op.drop_table("controls")
    op.drop_index("ix_risks_residual_position", table_name="risks")
    op.drop_index("ix_risks_tenant_status", table_name="risks")
    op.drop_index("ix_risks_tenant_id", table_name="risks")
    op.drop_table("risks")
    op.drop_table("tenants")
