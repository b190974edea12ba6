from __future__ import annotations

import argparse
import asyncio

from riskgov.core.logging import configure_logging
from riskgov.domain.context import ActorContext
from riskgov.persistence.db import SessionLocal
from riskgov.services.register import ensure_tenant
from riskgov.services.transitions import create_protected_user


async def _run_bootstrap(tenant_id: str, tenant_name: str | None, email: str, role: str) -> None:
    # Seed the first approved admin; every later change goes through transitions.
    async with SessionLocal() as session:
        await ensure_tenant(session, tenant_id, name=tenant_name)
        user = await create_protected_user(
            session,
            ActorContext.system(tenant_id),
            email=email,
            role=role,
            status="approved",
            reason="bootstrap",
        )
        await session.commit()
        print(f"tenant_id={tenant_id}")
        print(f"user_id={user.id}")
        print(f"role={user.role}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Create a tenant and its first approved administrator")
    parser.add_argument("--tenant", required=True)
    parser.add_argument("--tenant-name", default=None)
    parser.add_argument("--email", required=True)
    parser.add_argument(
        "--role",
        default="primary_admin",
        choices=["secondary_admin", "primary_admin", "super_admin"],
    )
    args = parser.parse_args()
    configure_logging()
    asyncio.run(_run_bootstrap(args.tenant, args.tenant_name, args.email, args.role))


if __name__ == "__main__":
    main()
