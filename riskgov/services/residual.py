from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from fractions import Fraction
import logging
import math
from typing import Iterable

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from riskgov.core.config import RISK_SCALE_MAX, get_settings
from riskgov.core.errors import ConstraintViolation, RecordNotFound, StaleRecompute
from riskgov.domain.models import Control, Risk, RiskControlLink
from riskgov.persistence.guards import tenant_predicate


logger = logging.getLogger(__name__)

DIMENSION_LIKELIHOOD = "likelihood"
DIMENSION_IMPACT = "impact"
DIMENSIONS = (DIMENSION_LIKELIHOOD, DIMENSION_IMPACT)

POLICY_MAX = "max"
POLICY_DIMINISHING = "diminishing"
COMBINATION_POLICIES = (POLICY_MAX, POLICY_DIMINISHING)

SCORE_MIN = 0
SCORE_MAX = 3
# Four sub-scores of at most 3 each.
_EFFECTIVENESS_DENOMINATOR = 12


@dataclass(frozen=True)
class ControlScores:
    target: str
    design: int | None
    implementation: int | None
    monitoring: int | None
    evaluation: int | None

    @classmethod
    def from_control(cls, control: Control) -> "ControlScores":
        return cls(
            target=control.target,
            design=control.design_score,
            implementation=control.implementation_score,
            monitoring=control.monitoring_score,
            evaluation=control.evaluation_score,
        )


@dataclass(frozen=True)
class ResidualScore:
    likelihood: int
    impact: int
    score: int

    def as_dict(self) -> dict[str, int]:
        return {"likelihood": self.likelihood, "impact": self.impact, "score": self.score}


def validate_sub_score(name: str, value: int | None) -> None:
    if value is None:
        return
    if isinstance(value, bool) or not isinstance(value, int) or not SCORE_MIN <= value <= SCORE_MAX:
        raise ValueError(f"{name} must be an integer between {SCORE_MIN} and {SCORE_MAX}")


def control_effectiveness(
    design: int | None,
    implementation: int | None,
    monitoring: int | None,
    evaluation: int | None,
) -> Fraction | None:
    """Return a control's effectiveness in [0, 1], or None when it is not fully scored.

    A control with no design or no implementation is worthless regardless of
    how well it is monitored or evaluated.
    """
    scores = {
        "design": design,
        "implementation": implementation,
        "monitoring": monitoring,
        "evaluation": evaluation,
    }
    for name, value in scores.items():
        validate_sub_score(name, value)
    if any(value is None for value in scores.values()):
        return None
    if design == 0 or implementation == 0:
        return Fraction(0)
    return Fraction(sum(scores.values()), _EFFECTIVENESS_DENOMINATOR)


def combine_effectiveness(values: Iterable[Fraction], policy: str = POLICY_MAX) -> Fraction:
    items = list(values)
    if not items:
        return Fraction(0)
    if policy == POLICY_MAX:
        # Redundant weak controls never add up to a strong one.
        return max(items)
    if policy == POLICY_DIMINISHING:
        remaining = Fraction(1)
        for value in items:
            remaining *= 1 - value
        return 1 - remaining
    raise ValueError(f"Unsupported residual combination policy: {policy}")


def _round_half_up(value: Fraction) -> int:
    return math.floor(value + Fraction(1, 2))


def residual_dimension(inherent: int, effectiveness: Fraction) -> int:
    if not 1 <= inherent <= RISK_SCALE_MAX:
        raise ValueError(f"Inherent score must be between 1 and {RISK_SCALE_MAX}")
    if not 0 <= effectiveness <= 1:
        raise ValueError("Effectiveness must be between 0 and 1")
    return max(1, inherent - _round_half_up((inherent - 1) * effectiveness))


def compute_residual(
    inherent_likelihood: int,
    inherent_impact: int,
    controls: Iterable[ControlScores],
    *,
    policy: str = POLICY_MAX,
) -> ResidualScore:
    per_dimension: dict[str, list[Fraction]] = {dimension: [] for dimension in DIMENSIONS}
    for control in controls:
        if control.target not in per_dimension:
            raise ValueError(f"Unsupported control target: {control.target}")
        effectiveness = control_effectiveness(
            control.design, control.implementation, control.monitoring, control.evaluation
        )
        if effectiveness is None:
            continue
        per_dimension[control.target].append(effectiveness)
    likelihood = residual_dimension(
        inherent_likelihood, combine_effectiveness(per_dimension[DIMENSION_LIKELIHOOD], policy)
    )
    impact = residual_dimension(inherent_impact, combine_effectiveness(per_dimension[DIMENSION_IMPACT], policy))
    return ResidualScore(likelihood=likelihood, impact=impact, score=likelihood * impact)


def assert_residual_bounds(risk: Risk, residual: ResidualScore) -> None:
    # Any breach here is a programming error; fail loudly before touching the row.
    if not 1 <= residual.likelihood <= risk.inherent_likelihood:
        raise ConstraintViolation(
            f"residual_likelihood {residual.likelihood} outside 1..{risk.inherent_likelihood} for risk {risk.id}"
        )
    if not 1 <= residual.impact <= risk.inherent_impact:
        raise ConstraintViolation(
            f"residual_impact {residual.impact} outside 1..{risk.inherent_impact} for risk {risk.id}"
        )
    if residual.score != residual.likelihood * residual.impact:
        raise ConstraintViolation(f"residual_score is not the product of its dimensions for risk {risk.id}")


def _resolve_policy(policy: str | None) -> str:
    resolved = policy or get_settings().residual_combination_policy
    if resolved not in COMBINATION_POLICIES:
        raise ValueError(f"Unsupported residual combination policy: {resolved}")
    return resolved


async def load_risk_for_update(session: AsyncSession, *, tenant_id: str, risk_id: str) -> Risk:
    result = await session.execute(
        select(Risk)
        .where(Risk.id == risk_id, tenant_predicate(Risk, tenant_id))
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    risk = result.scalar_one_or_none()
    if risk is None:
        raise RecordNotFound(f"Risk {risk_id} not found")
    return risk


async def load_active_controls(session: AsyncSession, *, tenant_id: str, risk_id: str) -> list[Control]:
    # Tombstoned controls earn no credit but keep their links for audit.
    result = await session.execute(
        select(Control)
        .join(RiskControlLink, RiskControlLink.control_id == Control.id)
        .where(
            RiskControlLink.risk_id == risk_id,
            RiskControlLink.tenant_id == tenant_id,
            tenant_predicate(Control, tenant_id),
            Control.deleted_at.is_(None),
        )
        .order_by(Control.code)
    )
    return list(result.scalars().all())


async def _write_residual(
    session: AsyncSession,
    *,
    risk: Risk,
    residual: ResidualScore,
    seen_version: int,
) -> None:
    result = await session.execute(
        update(Risk)
        .where(Risk.id == risk.id, Risk.inputs_version == seen_version)
        .values(
            residual_likelihood=residual.likelihood,
            residual_impact=residual.impact,
            residual_score=residual.score,
            last_recomputed_at=datetime.now(timezone.utc),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise StaleRecompute(f"Risk {risk.id} inputs moved past version {seen_version}")


async def recompute_risk(
    session: AsyncSession,
    *,
    tenant_id: str,
    risk_id: str,
    expected_version: int | None = None,
    policy: str | None = None,
) -> ResidualScore:
    """Rewrite a risk's residual fields from its inherent scores and linked controls.

    Runs inside the caller's transaction with the risk row locked. The write is
    a compare-and-set on ``inputs_version``; a recompute that observed
    superseded inputs is discarded and the stored (newer) values are returned.
    Callers that captured the version before locking, such as the tenant
    backfill, pass it as ``expected_version`` so a writer that moved the risk
    in between wins.
    """
    resolved_policy = _resolve_policy(policy)
    risk = await load_risk_for_update(session, tenant_id=tenant_id, risk_id=risk_id)
    seen_version = risk.inputs_version if expected_version is None else expected_version
    controls = await load_active_controls(session, tenant_id=tenant_id, risk_id=risk_id)
    residual = compute_residual(
        risk.inherent_likelihood,
        risk.inherent_impact,
        [ControlScores.from_control(control) for control in controls],
        policy=resolved_policy,
    )
    assert_residual_bounds(risk, residual)
    try:
        await _write_residual(session, risk=risk, residual=residual, seen_version=seen_version)
    except StaleRecompute as exc:
        logger.warning(
            "residual_recompute_stale tenant_id=%s risk_id=%s seen_version=%s reason=%s",
            tenant_id,
            risk_id,
            seen_version,
            exc,
        )
        await session.refresh(risk)
        return ResidualScore(
            likelihood=risk.residual_likelihood,
            impact=risk.residual_impact,
            score=risk.residual_score,
        )
    await session.refresh(risk)
    logger.debug(
        "residual_recomputed tenant_id=%s risk_id=%s version=%s residual=%s",
        tenant_id,
        risk_id,
        seen_version,
        residual.as_dict(),
    )
    return residual


async def mark_inputs_changed(session: AsyncSession, *, tenant_id: str, risk_ids: Iterable[str]) -> list[str]:
    ids = sorted(set(risk_ids))
    if not ids:
        return []
    await session.execute(
        update(Risk)
        .where(Risk.id.in_(ids), tenant_predicate(Risk, tenant_id))
        .values(inputs_version=Risk.inputs_version + 1)
        .execution_options(synchronize_session=False)
    )
    return ids


async def refresh_risks(session: AsyncSession, *, tenant_id: str, risk_ids: Iterable[str]) -> dict[str, ResidualScore]:
    # Recompute hook for every write that changes a risk's inputs.
    ids = await mark_inputs_changed(session, tenant_id=tenant_id, risk_ids=risk_ids)
    return {risk_id: await recompute_risk(session, tenant_id=tenant_id, risk_id=risk_id) for risk_id in ids}


async def recompute_all_for_tenant(session: AsyncSession, *, tenant_id: str) -> int:
    # Backfill path for migrations and repair scripts.
    result = await session.execute(
        select(Risk.id, Risk.inputs_version).where(tenant_predicate(Risk, tenant_id)).order_by(Risk.id)
    )
    snapshot = list(result.all())
    for risk_id, listed_version in snapshot:
        await recompute_risk(session, tenant_id=tenant_id, risk_id=risk_id, expected_version=listed_version)
    logger.info("residual_backfill_complete tenant_id=%s risks=%s", tenant_id, len(snapshot))
    return len(snapshot)
