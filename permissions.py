"""
Project role resolution and task access decisions.

Everything here answers a yes/no question against the current database
state. Nothing is cached between calls, and missing data (no task, no
project, no membership) always resolves to "deny". Only unexpected
database failures propagate as exceptions.
"""
import logging

from sqlalchemy.orm import Session

from errors import ValidationError
from models import Project, ProjectMember, Task
from rbac import Permission, Role, has_permission

logger = logging.getLogger(__name__)

# roles that see and edit every task of a project
MANAGING_ROLES = (Role.OWNER, Role.COLLABORATOR)


def role_of(db: Session, user_id, project_id):
    """Return the user's Role in the project, or None."""
    if user_id is None or project_id is None:
        return None

    member = (
        db.query(ProjectMember)
        .filter(ProjectMember.user_id == user_id, ProjectMember.project_id == project_id)
        .first()
    )
    if member is not None:
        return Role.parse(member.role)

    project = db.get(Project, project_id)
    if project is not None and project.owner_id == user_id:
        # legacy rows created before owner memberships existed
        logger.warning(
            "Owner membership row missing user_id=%s project_id=%s; using synthetic owner role",
            user_id,
            project_id,
        )
        return Role.OWNER
    return None


def backfill_owner_memberships(db: Session) -> int:
    """Create the missing owner membership row for every project lacking one."""
    projects = db.query(Project).all()
    created = 0
    try:
        for project in projects:
            exists = (
                db.query(ProjectMember.id)
                .filter(
                    ProjectMember.project_id == project.id,
                    ProjectMember.user_id == project.owner_id,
                )
                .first()
            )
            if exists:
                continue
            db.add(ProjectMember(user_id=project.owner_id, project_id=project.id, role=Role.OWNER.value))
            created += 1
        db.commit()
    except Exception:
        db.rollback()
        raise
    if created:
        logger.info("Backfilled %s owner membership rows", created)
    return created


def _is_participant(user_id, task: Task) -> bool:
    return task.creator_id == user_id or (
        task.assignee_id is not None and task.assignee_id == user_id
    )


def can_view(db: Session, user_id, task) -> bool:
    if task is None or user_id is None:
        return False
    if task.project_id is None:
        return task.creator_id == user_id

    role = role_of(db, user_id, task.project_id)
    if role is None:
        return False
    if role == Role.MEMBER:
        return _is_participant(user_id, task)
    return has_permission(role, Permission.TASK_VIEW)


def can_edit(db: Session, user_id, task) -> bool:
    if task is None or user_id is None:
        return False
    if task.project_id is None:
        return task.creator_id == user_id and assignee_id in (None, user_id)

    role = role_of(db, user_id, task.project_id)
    if role in MANAGING_ROLES:
        return True
    if role == Role.MEMBER:
        return _is_participant(user_id, task)
    return False


def can_delete(db: Session, user_id, task) -> bool:
    if task is None or user_id is None:
        return False
    if task.project_id is None:
        return task.creator_id == user_id

    role = role_of(db, user_id, task.project_id)
    return role in MANAGING_ROLES


def can_create(db: Session, user_id, project_id=None, assignee_id=None) -> bool:
    """
    Owners and collaborators may create tasks for anyone. Members (and
    personal tasks) may only leave the task unassigned or assign it to
    themselves.
    """
    if user_id is None:
        return False
    if project_id is None:
        return assignee_id is None or assignee_id == user_id

    role = role_of(db, user_id, project_id)
    if role in MANAGING_ROLES:
        return True
    if not has_permission(role, Permission.TASK_CREATE):
        return False
    return assignee_id is None or assignee_id == user_id


def can_assign(db: Session, user_id, task, assignee_id=None) -> bool:
    """Whether the user may change ``task``'s assignee to ``assignee_id``."""
    if task is None or user_id is None:
        return False
    if task.project_id is None:
        return task.creator_id == user_id

    role = role_of(db, user_id, task.project_id)
    if role in MANAGING_ROLES:
        return True
    return has_permission(role, Permission.TASK_ASSIGN)


TASK_ACTIONS = {
    "view": can_view,
    "edit": can_edit,
    "delete": can_delete,
}


def check_task_permission(db: Session, user_id, task, action: str) -> bool:
    check = TASK_ACTIONS.get(action)
    if check is None:
        raise ValidationError("Invalid action. Must be view, edit or delete")
    return check(db, user_id, task)
