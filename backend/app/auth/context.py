"""
RequestContext — the "who is asking, what can they do, which tenant" abstraction.

Every authenticated API request gets a RequestContext. It carries:
- user_id: who is making the request
- organisation_id: the tenant every query is scoped to
- role: their role in that organisation
- permissions: the resolved set of permissions for that role
"""

from __future__ import annotations

from dataclasses import dataclass, field

from app.auth.permissions import Permission
from app.auth.roles import Role
from app.errors import ForbiddenError


@dataclass
class RequestContext:
    user_id: int
    organisation_id: int
    role: Role = Role.VIEWER
    permissions: set[Permission] = field(default_factory=set)
    email: str | None = None

    def has_permission(self, perm: Permission) -> bool:
        return perm in self.permissions

    def require_permission(self, perm: Permission) -> None:
        """Raise 403 if the caller lacks the given permission."""
        if not self.has_permission(perm):
            raise ForbiddenError(f"Insufficient permissions: requires {perm.value}")

    @property
    def actor(self) -> str:
        """Identity string for log lines."""
        return f"{self.role.value}:{self.user_id}"
