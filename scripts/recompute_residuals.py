from __future__ import annotations

import argparse
import asyncio

from sqlalchemy import select

from riskgov.core.logging import configure_logging
from riskgov.domain.models import Tenant
from riskgov.persistence.db import SessionLocal
from riskgov.services.residual import recompute_all_for_tenant


async def _run_recompute(tenant_ids: list[str], dry_run: bool) -> None:
    # Rebuild materialized residuals after scoring changes or data repair.
    async with SessionLocal() as session:
        if not tenant_ids:
            result = await session.execute(select(Tenant.id).order_by(Tenant.id))
            tenant_ids = list(result.scalars().all())
        for tenant_id in tenant_ids:
            count = await recompute_all_for_tenant(session, tenant_id=tenant_id)
            print(f"tenant_id={tenant_id} risks_recomputed={count}")
        if dry_run:
            await session.rollback()
            print("dry_run=true")
            return
        await session.commit()


def main() -> None:
    parser = argparse.ArgumentParser(description="Recompute residual risk scores")
    parser.add_argument("--tenant", action="append", default=[], help="Tenant id; repeat for several")
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()
    configure_logging()
    asyncio.run(_run_recompute(args.tenant, args.dry_run))


if __name__ == "__main__":
    main()
