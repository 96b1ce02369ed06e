"""
Permission constants — the exhaustive list of actions in the system.

Each permission follows the pattern `resource:action`. JWTs carry a role
claim, which maps to a set of these permissions via ROLE_PERMISSIONS.
"""

from enum import Enum


class Permission(str, Enum):
    # ── Processing ──
    PROCESSING_RUN = "processing:run"            # start a processing run
    PROCESSING_READ = "processing:read"          # view runs, stages, lineage
    PROCESSING_CANCEL = "processing:cancel"      # cancel an in-flight run

    # ── Audit ──
    AUDIT_READ = "audit:read"
