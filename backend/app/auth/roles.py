"""
Role definitions — which bundles of permissions make up each role.

Organisation members are either `admin` or `member`; both may drive the
processing pipeline. VIEWER is a read-only role for service accounts and
dashboards.
"""

from enum import Enum
from app.auth.permissions import Permission


class Role(str, Enum):
    VIEWER = "viewer"
    MEMBER = "member"
    ADMIN = "admin"


# ── Viewer: read-only runs and audit trail ──
_VIEWER_PERMS: set[Permission] = {
    Permission.PROCESSING_READ,
    Permission.AUDIT_READ,
}

# ── Member: viewer + start and cancel runs ──
_MEMBER_PERMS: set[Permission] = {
    *_VIEWER_PERMS,
    Permission.PROCESSING_RUN,
    Permission.PROCESSING_CANCEL,
}

# ── Admin: everything ──
_ADMIN_PERMS: set[Permission] = {p for p in Permission}


ROLE_PERMISSIONS: dict[Role, set[Permission]] = {
    Role.VIEWER: _VIEWER_PERMS,
    Role.MEMBER: _MEMBER_PERMS,
    Role.ADMIN: _ADMIN_PERMS,
}
