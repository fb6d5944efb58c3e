"""Who may do what to which organization's data.

Admin entry points call authorize() with the actor from the session cookie.
An actor without an org is a platform operator and may act on every org.
"""

from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple

from .errors import NotAuthenticatedError, PermissionDeniedError


class Role(str, Enum):
    OWNER = "owner"
    ADMIN = "admin"
    SUPPORT = "support"
    FINANCE = "finance"


class Domain(str, Enum):
    ORDERS = "orders"
    SETTLEMENT = "settlement"
    OPS = "ops"


class Action(str, Enum):
    READ = "read"
    WRITE = "write"


_RW = frozenset({Action.READ, Action.WRITE})
_R = frozenset({Action.READ})

PERMISSIONS: Mapping[Tuple[Role, Domain], FrozenSet[Action]] = {
    (Role.OWNER, Domain.ORDERS): _RW,
    (Role.OWNER, Domain.SETTLEMENT): _RW,
    (Role.OWNER, Domain.OPS): _RW,

    (Role.ADMIN, Domain.ORDERS): _RW,
    (Role.ADMIN, Domain.SETTLEMENT): _RW,
    (Role.ADMIN, Domain.OPS): _R,

    (Role.SUPPORT, Domain.ORDERS): _R,
    (Role.SUPPORT, Domain.SETTLEMENT): _RW,

    (Role.FINANCE, Domain.ORDERS): _R,
    (Role.FINANCE, Domain.SETTLEMENT): _R,
}


@dataclass(frozen=True)
class Actor:
    username: str
    role: Role
    org_id: Optional[str] = None

    @property
    def is_platform(self) -> bool:
        return self.org_id is None

    def to_session(self) -> Dict[str, Any]:
        return {"username": self.username, "role": self.role.value,
                "org_id": self.org_id}

    @classmethod
    def from_session(cls, data: Optional[Mapping[str, Any]]
                     ) -> Optional["Actor"]:
        if not data or not data.get("username"):
            return None
        try:
            role = Role(data.get("role"))
        except ValueError:
            return None
        return cls(username=data["username"], role=role,
                   org_id=data.get("org_id") or None)


def can(actor: Actor, domain: Domain, action: Action,
        org_id: Optional[str] = None) -> bool:
    if action not in PERMISSIONS.get((actor.role, domain), frozenset()):
        return False
    if actor.is_platform:
        return True
    # org-scoped actors only see their own org; None means "all orgs"
    return org_id is not None and org_id == actor.org_id


def authorize(actor: Optional[Actor], domain: Domain, action: Action,
              org_id: Optional[str] = None) -> Actor:
    if actor is None:
        raise NotAuthenticatedError()
    if not can(actor, domain, action, org_id):
        raise PermissionDeniedError(
            f"{actor.role.value} may not {action.value} {domain.value}"
        )
    return actor
