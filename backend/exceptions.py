# exceptions.py — Error taxonomy for the authorization engine
# Codes follow TL-{DOMAIN}-{NUMBER}. Domains: ROLE, PERM, DB
#
# Authorization denial is NOT an exception: permissions.authorize() returns
# False and the caller decides the transport-level response.

from typing import Optional


class RBACError(Exception):
    """Base class for recoverable engine errors surfaced to callers"""

    code = "TL-SYS-001"
    message = "Internal error"
    http_status = 500

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"detail": self.message, "code": self.code}


# ============================================================
# ROLES
# ============================================================

class InvalidRole(RBACError):
    code = "TL-ROLE-001"
    message = "Invalid role"
    http_status = 400


class SystemRoleImmutable(RBACError):
    code = "TL-ROLE-002"
    message = "System roles cannot be modified"
    http_status = 400


class RoleInUse(RBACError):
    code = "TL-ROLE-003"
    message = "Role in use by users"
    http_status = 409


class RoleConflict(RBACError):
    code = "TL-ROLE-004"
    message = "Role already exists"
    http_status = 409


# ============================================================
# PERMISSIONS
# ============================================================

class InvalidPermission(RBACError):
    code = "TL-PERM-001"
    message = "Invalid permission key"
    http_status = 400


# ============================================================
# STORAGE
# ============================================================

class StorageFailure(RBACError):
    code = "TL-DB-001"
    message = "Storage failure"
    http_status = 500


class NotFound(RBACError):
    code = "TL-DB-002"
    message = "Record not found"
    http_status = 404


class NameConflict(RBACError):
    code = "TL-DB-003"
    message = "Name already exists"
    http_status = 409
