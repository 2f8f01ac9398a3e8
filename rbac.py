"""
Role-based access control table.

Each project role maps to a fixed set of permissions. Lookups never fail:
an unknown role or permission simply has no grant.
"""
import enum


class Role(str, enum.Enum):
    OWNER = "owner"
    COLLABORATOR = "collaborator"
    MEMBER = "member"
    VIEWER = "viewer"

    @classmethod
    def parse(cls, raw):
        """Return the Role for ``raw`` or None when it is not a known role."""
        if isinstance(raw, cls):
            return raw
        try:
            return cls(raw)
        except ValueError:
            return None


class Permission(str, enum.Enum):
    PROJECT_VIEW = "project:view"
    PROJECT_EDIT = "project:edit"
    PROJECT_DELETE = "project:delete"
    PROJECT_ARCHIVE = "project:archive"
    PROJECT_MANAGE_MEMBERS = "project:manage-members"
    PROJECT_INVITE_USERS = "project:invite-users"
    TASK_VIEW = "task:view"
    TASK_CREATE = "task:create"
    TASK_EDIT = "task:edit"
    TASK_DELETE = "task:delete"
    TASK_ASSIGN = "task:assign"
    MEMBERS_VIEW_ALL = "members:view-all"


ROLE_PERMISSIONS = {
    Role.OWNER: frozenset(Permission),
    Role.COLLABORATOR: frozenset({
        Permission.PROJECT_VIEW,
        Permission.PROJECT_EDIT,
        Permission.TASK_VIEW,
        Permission.TASK_CREATE,
        Permission.TASK_EDIT,
        Permission.TASK_DELETE,
        Permission.TASK_ASSIGN,
        Permission.MEMBERS_VIEW_ALL,
    }),
    Role.MEMBER: frozenset({
        Permission.PROJECT_VIEW,
        Permission.TASK_VIEW,
        Permission.TASK_CREATE,
        Permission.TASK_EDIT,
        Permission.TASK_ASSIGN,
    }),
    Role.VIEWER: frozenset({
        Permission.PROJECT_VIEW,
        Permission.TASK_VIEW,
    }),
}

# roles an invitation may grant; ownership only moves through transfer
INVITABLE_ROLES = (Role.COLLABORATOR, Role.MEMBER, Role.VIEWER)


def has_permission(role, permission) -> bool:
    role = Role.parse(role)
    if role is None:
        return False
    try:
        permission = Permission(permission)
    except ValueError:
        return False
    return permission in ROLE_PERMISSIONS[role]
