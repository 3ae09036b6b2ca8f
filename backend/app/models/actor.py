"""
Authenticated actor passed explicitly into every lifecycle operation.

The core never reads ambient session state; the HTTP layer builds an Actor
from the bearer token and hands it to the services.
"""
from dataclasses import dataclass
from typing import Optional

from .db_models import ActorRole


INTERNAL_ROLES = frozenset({
    ActorRole.SALES,
    ActorRole.OPS,
    ActorRole.RMT,
    ActorRole.ADMIN,
    ActorRole.FOUNDER,
})

EXTERNAL_ROLES = frozenset({
    ActorRole.SUBCONTRACTOR,
    ActorRole.EPC,
    ActorRole.NBFC,
})


@dataclass(frozen=True)
class Actor:
    """User id + role of whoever is performing an action."""
    id: str
    role: ActorRole
    name: Optional[str] = None

    @property
    def is_internal(self) -> bool:
        return self.role in INTERNAL_ROLES


SYSTEM_ACTOR = Actor(id="system", role=ActorRole.SYSTEM, name="Scheduler")
