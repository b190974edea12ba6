from __future__ import annotations

from sqlalchemy import DDL, event
from sqlalchemy.ext.asyncio import AsyncEngine

from riskgov.domain.models import USER_ROLES, Base, TransitionRecord


GUARDED_FIELDS = ("status", "role")


def _role_level_sql(expr: str) -> str:
    # Index in USER_ROLES is the privilege level; unknown roles rank lowest.
    branches = " ".join(f"WHEN '{role}' THEN {level}" for level, role in enumerate(USER_ROLES))
    return f"(CASE {expr} {branches} ELSE -1 END)"


# A ledger row is accepted only as a genesis row for a field with no history,
# or when it names an approved actor whose stored role dominates the subject
# (and, for role changes, the new role) and starts from the stored value.
LEDGER_APPEND_CONDITION = f"""
    COALESCE((
        NEW.transition_type = 'genesis'
        AND NEW.from_value IS NULL
        AND NOT EXISTS (
            SELECT 1 FROM transition_records
            WHERE entity_id = NEW.entity_id AND field = NEW.field
        )
        AND NEW.to_value = (
            SELECT CASE NEW.field WHEN 'status' THEN status ELSE role END
            FROM protected_users WHERE id = NEW.entity_id
        )
    ), FALSE)
    OR EXISTS (
        SELECT 1
        FROM protected_users AS subject
        JOIN protected_users AS actor ON actor.id = NEW.actor_id
        WHERE subject.id = NEW.entity_id
          AND subject.tenant_id = NEW.tenant_id
          AND NEW.transition_type <> 'genesis'
          AND NEW.from_value = CASE NEW.field WHEN 'status' THEN subject.status ELSE subject.role END
          AND actor.id <> subject.id
          AND actor.status = 'approved'
          AND actor.role = NEW.actor_role
          AND (actor.tenant_id = subject.tenant_id OR actor.role = 'super_admin')
          AND {_role_level_sql("actor.role")} >= {USER_ROLES.index("secondary_admin")}
          AND {_role_level_sql("actor.role")} > {_role_level_sql("subject.role")}
          AND (NEW.field = 'status' OR {_role_level_sql("actor.role")} > {_role_level_sql("NEW.to_value")})
    )
"""

# PostgreSQL: one guard function parameterized by the protected column name.
POSTGRESQL_GUARD_DDL: tuple[str, ...] = (
    """
    CREATE OR REPLACE FUNCTION riskgov_guard_protected_field() RETURNS trigger
    LANGUAGE plpgsql AS $$
    DECLARE
        v_field text := TG_ARGV[0];
        v_old text;
        v_new text;
        v_matches boolean;
    BEGIN
        IF v_field = 'status' THEN
            v_old := OLD.status;
            v_new := NEW.status;
        ELSE
            v_old := OLD.role;
            v_new := NEW.role;
        END IF;
        SELECT EXISTS (
            SELECT 1 FROM transition_records tr
            WHERE tr.id = (
                SELECT max(id) FROM transition_records
                WHERE entity_id = OLD.id AND field = v_field
            )
            AND tr.from_value = v_old
            AND tr.to_value = v_new
        ) INTO v_matches;
        IF NOT v_matches THEN
            RAISE EXCEPTION USING
                MESSAGE = 'direct write to protected_users.' || v_field || ' rejected; use the '
                    || v_field || ' transition',
                ERRCODE = 'integrity_constraint_violation';
        END IF;
        RETURN NEW;
    END;
    $$
    """,
    f"""
    CREATE OR REPLACE FUNCTION riskgov_validate_ledger_append() RETURNS trigger
    LANGUAGE plpgsql AS $$
    BEGIN
        IF NOT ({LEDGER_APPEND_CONDITION}) THEN
            RAISE EXCEPTION USING
                MESSAGE = 'transition record does not describe an authorized change',
                ERRCODE = 'integrity_constraint_violation';
        END IF;
        RETURN NEW;
    END;
    $$
    """,
    """
    CREATE OR REPLACE FUNCTION riskgov_reject_ledger_mutation() RETURNS trigger
    LANGUAGE plpgsql AS $$
    BEGIN
        RAISE EXCEPTION USING
            MESSAGE = 'transition_records is append-only',
            ERRCODE = 'integrity_constraint_violation';
    END;
    $$
    """,
    *(
        f"""
        CREATE TRIGGER trg_protected_users_{field}_guard
        BEFORE UPDATE OF {field} ON protected_users
        FOR EACH ROW WHEN (OLD.{field} IS DISTINCT FROM NEW.{field})
        EXECUTE FUNCTION riskgov_guard_protected_field('{field}')
        """
        for field in GUARDED_FIELDS
    ),
    """
    CREATE TRIGGER trg_transition_records_immutable
    BEFORE UPDATE OR DELETE ON transition_records
    FOR EACH ROW EXECUTE FUNCTION riskgov_reject_ledger_mutation()
    """,
    """
    CREATE TRIGGER trg_transition_records_authorized
    BEFORE INSERT ON transition_records
    FOR EACH ROW EXECUTE FUNCTION riskgov_validate_ledger_append()
    """,
)

SQLITE_GUARD_DDL: tuple[str, ...] = (
    *(
        f"""
        CREATE TRIGGER trg_protected_users_{field}_guard
        BEFORE UPDATE OF {field} ON protected_users
        FOR EACH ROW WHEN OLD.{field} IS NOT NEW.{field}
        BEGIN
            SELECT RAISE(ABORT, 'direct write to protected_users.{field} rejected; use the {field} transition')
            WHERE NOT EXISTS (
                SELECT 1 FROM transition_records AS tr
                WHERE tr.id = (
                    SELECT MAX(id) FROM transition_records
                    WHERE entity_id = OLD.id AND field = '{field}'
                )
                AND tr.from_value = OLD.{field}
                AND tr.to_value = NEW.{field}
            );
        END
        """
        for field in GUARDED_FIELDS
    ),
    f"""
    CREATE TRIGGER trg_transition_records_authorized
    BEFORE INSERT ON transition_records
    FOR EACH ROW
    BEGIN
        SELECT RAISE(ABORT, 'transition record does not describe an authorized change')
        WHERE NOT ({LEDGER_APPEND_CONDITION});
    END
    """,
    """
    CREATE TRIGGER trg_transition_records_no_update
    BEFORE UPDATE ON transition_records
    BEGIN
        SELECT RAISE(ABORT, 'transition_records is append-only');
    END
    """,
    """
    CREATE TRIGGER trg_transition_records_no_delete
    BEFORE DELETE ON transition_records
    BEGIN
        SELECT RAISE(ABORT, 'transition_records is append-only');
    END
    """,
)


def guard_ddl_for_dialect(dialect_name: str) -> tuple[str, ...]:
    # Migrations and metadata.create_all share the same trigger text.
    if dialect_name == "postgresql":
        return POSTGRESQL_GUARD_DDL
    if dialect_name == "sqlite":
        return SQLITE_GUARD_DDL
    raise ValueError(f"No protected-field guards defined for dialect: {dialect_name}")


# Install guards whenever the ledger table is created so no schema exists without them.
for _statement in POSTGRESQL_GUARD_DDL:
    event.listen(
        TransitionRecord.__table__,
        "after_create",
        DDL(_statement).execute_if(dialect="postgresql"),
    )
for _statement in SQLITE_GUARD_DDL:
    event.listen(
        TransitionRecord.__table__,
        "after_create",
        DDL(_statement).execute_if(dialect="sqlite"),
    )


async def create_schema(engine: AsyncEngine) -> None:
    # Bootstrap tables and guard triggers for dev databases and tests.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def drop_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
