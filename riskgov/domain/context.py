from __future__ import annotations

from dataclasses import dataclass


SYSTEM_ACTOR_ID = "system"


@dataclass(frozen=True)
class ActorContext:
    """Calling tenant and identity, supplied by the surrounding application.

    Authentication happens upstream; this layer trusts ``actor_id`` and
    ``tenant_id`` but always re-reads the actor's role from the store before
    authorizing a transition.
    """

    tenant_id: str
    actor_id: str | None
    role: str | None = None
    request_id: str | None = None
    actor_type: str = "user"

    @property
    def authenticated(self) -> bool:
        return bool(self.actor_id)

    @classmethod
    def system(cls, tenant_id: str, *, request_id: str | None = None) -> "ActorContext":
        # Only honored for provisioning users inside this tenant.
        return cls(
            tenant_id=tenant_id,
            actor_id=SYSTEM_ACTOR_ID,
            role="super_admin",
            request_id=request_id,
            actor_type="system",
        )
