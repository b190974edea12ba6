from __future__ import annotations

import argparse
import asyncio
import json
import sys

from sqlalchemy import select

from riskgov.core.logging import configure_logging
from riskgov.domain.models import Tenant
from riskgov.persistence.db import SessionLocal
from riskgov.services.transitions import verify_ledger


async def _run_verify(tenant_ids: list[str]) -> int:
    # Fold every protected field's history and compare it with the stored value.
    findings: list[dict[str, str | None]] = []
    async with SessionLocal() as session:
        if not tenant_ids:
            result = await session.execute(select(Tenant.id).order_by(Tenant.id))
            tenant_ids = list(result.scalars().all())
        for tenant_id in tenant_ids:
            for item in await verify_ledger(session, tenant_id=tenant_id):
                findings.append(
                    {
                        "tenant_id": tenant_id,
                        "entity_id": item.entity_id,
                        "field": item.field,
                        "current_value": item.current_value,
                        "folded_value": item.folded_value,
                    }
                )
    print(json.dumps({"tenants": len(tenant_ids), "discrepancies": findings}, indent=2))
    return 1 if findings else 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Verify protected fields against the transition ledger")
    parser.add_argument("--tenant", action="append", default=[], help="Tenant id; repeat for several")
    args = parser.parse_args()
    configure_logging()
    sys.exit(asyncio.run(_run_verify(args.tenant)))


if __name__ == "__main__":
    main()
