"""
Projects and project membership.

Every project keeps at least one member with the ``owner`` role. Removing,
demoting or letting the last owner leave is rejected with Conflict, and
ownership only moves through ``transfer_ownership`` to a designated member.
"""
import logging

from sqlalchemy import or_
from sqlalchemy.orm import Session

import notifications
from errors import Conflict, Forbidden, NotFound, ValidationError
from models import Project, ProjectMember, User, utcnow
from permissions import role_of
from rbac import Permission, Role, has_permission
from transform import as_record, from_request_shape, to_response_shape

logger = logging.getLogger(__name__)

DEFAULT_COLOR = "#3b82f6"


def _user_summary(user):
    if user is None:
        return None
    return {"id": user.id, "full_name": user.full_name, "email": user.email, "avatar_url": user.avatar_url}


def serialize_member(member: ProjectMember) -> dict:
    data = as_record(member)
    data["user"] = _user_summary(member.user)
    return to_response_shape(data, "member")


def serialize_project(project: Project, include_members: bool = True) -> dict:
    data = as_record(project)
    data["owner"] = _user_summary(project.owner)
    data["members"] = [serialize_member(m) for m in project.members] if include_members else []
    return to_response_shape(data, "project")


def get_project_or_404(db: Session, project_id) -> Project:
    project = db.get(Project, project_id)
    if project is None:
        raise NotFound("Project not found")
    return project


def require_role(db: Session, user_id, project_id) -> Role:
    """Role of a project participant; Forbidden for everyone else."""
    get_project_or_404(db, project_id)
    role = role_of(db, user_id, project_id)
    if role is None:
        raise Forbidden("You are not a member of this project")
    return role


def require_permission(db: Session, user_id, project_id, permission, detail=None) -> Role:
    role = require_role(db, user_id, project_id)
    if not has_permission(role, permission):
        raise Forbidden(detail)
    return role


def _owner_members(db: Session, project_id):
    return (
        db.query(ProjectMember)
        .filter(ProjectMember.project_id == project_id, ProjectMember.role == Role.OWNER.value)
        .all()
    )


def _ensure_not_last_owner(db: Session, member: ProjectMember, message: str) -> None:
    if member.role != Role.OWNER.value:
        return
    if len(_owner_members(db, member.project_id)) <= 1:
        raise Conflict(message)


def _hand_over_owner_id(db: Session, project: Project, leaving_user_id) -> None:
    """Point ``project.owner_id`` at another owner when its current owner steps down."""
    if project.owner_id != leaving_user_id:
        return
    for other in _owner_members(db, project.id):
        if other.user_id != leaving_user_id:
            project.owner_id = other.user_id
            return


def create_project(db: Session, user: User, body: dict) -> Project:
    """Create a project and its owner membership in one transaction."""
    data = from_request_shape(body, "project")
    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("Project name is required")

    project = Project(
        name=name,
        description=data.get("description") or None,
        color=data.get("color") or DEFAULT_COLOR,
        icon=data.get("icon"),
        owner_id=user.id,
        available_categories=data.get("available_categories") or [],
        links=data.get("links") or [],
        tags=data.get("tags") or [],
        attachments=[],
    )
    try:
        db.add(project)
        db.flush()
        db.add(ProjectMember(user_id=user.id, project_id=project.id, role=Role.OWNER.value))
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("Failed to create project or owner membership user_id=%s", user.id)
        raise
    db.refresh(project)
    logger.info("Project created id=%s owner_id=%s", project.id, user.id)
    return project


def list_projects(db: Session, user: User, include_archived: bool = False):
    query = (
        db.query(Project)
        .outerjoin(ProjectMember, ProjectMember.project_id == Project.id)
        .filter(or_(Project.owner_id == user.id, ProjectMember.user_id == user.id))
    )
    if not include_archived:
        query = query.filter(Project.archived.is_(False))
    return query.distinct().order_by(Project.created_at).all()


def get_project(db: Session, user: User, project_id) -> Project:
    require_role(db, user.id, project_id)
    return get_project_or_404(db, project_id)


def update_project(db: Session, user: User, project_id, body: dict, notifier=None) -> Project:
    role = require_permission(
        db, user.id, project_id, Permission.PROJECT_EDIT, "You do not have permission to edit this project"
    )
    project = get_project_or_404(db, project_id)
    data = from_request_shape(body, "project")
    data.pop("owner_id", None)
    if "name" in data and not (data["name"] or "").strip():
        raise ValidationError("Project name is required")

    for name in ("name", "description", "color", "icon", "links", "attachments", "tags"):
        if name in data:
            setattr(project, name, data[name])

    if "archived" in data and has_permission(role, Permission.PROJECT_ARCHIVE):
        archived = bool(data["archived"])
        if archived != project.archived:
            project.archived = archived
            project.archived_at = utcnow() if archived else None
    if "available_categories" in data and role == Role.OWNER:
        project.available_categories = data["available_categories"]

    db.commit()
    db.refresh(project)
    if notifier is not None:
        notifier.emit(
            notifications.project_room(project.id), notifications.PROJECT_UPDATED, serialize_project(project)
        )
    return project


def delete_project(db: Session, user: User, project_id) -> None:
    require_permission(
        db, user.id, project_id, Permission.PROJECT_DELETE, "Only the project owner can delete the project"
    )
    project = get_project_or_404(db, project_id)
    db.delete(project)
    db.commit()
    logger.info("Project deleted id=%s by user_id=%s", project_id, user.id)


def list_members(db: Session, user: User, project_id):
    """Members of the project, with a synthetic entry for an owner lacking a row."""
    require_role(db, user.id, project_id)
    project = get_project_or_404(db, project_id)
    members = [serialize_member(m) for m in project.members]
    if not any(m["user_id"] == project.owner_id and m["role"] == Role.OWNER.value for m in members):
        members.insert(0, to_response_shape({
            "id": None,
            "user_id": project.owner_id,
            "project_id": project.id,
            "role": Role.OWNER.value,
            "added_at": project.created_at,
            "user": _user_summary(project.owner),
        }, "member"))
    return members


def _get_member_or_404(db: Session, project_id, member_id) -> ProjectMember:
    member = db.get(ProjectMember, member_id)
    if member is None or member.project_id != project_id:
        raise NotFound("Member not found")
    return member


def update_member_role(db: Session, user: User, project_id, member_id, role) -> ProjectMember:
    if not role:
        raise ValidationError("Role is required")
    new_role = Role.parse(role)
    if new_role is None:
        raise ValidationError("Invalid role")

    require_permission(
        db, user.id, project_id, Permission.PROJECT_MANAGE_MEMBERS, "Only project owner can update member roles"
    )
    member = _get_member_or_404(db, project_id, member_id)
    if new_role != Role.OWNER:
        _ensure_not_last_owner(db, member, "Cannot change role of the last owner")
        _hand_over_owner_id(db, get_project_or_404(db, project_id), member.user_id)

    member.role = new_role.value
    db.commit()
    db.refresh(member)
    logger.info("Member role updated project_id=%s member_id=%s role=%s", project_id, member_id, new_role.value)
    return member


def _delete_member(db: Session, member: ProjectMember, notifier) -> None:
    project = get_project_or_404(db, member.project_id)
    _hand_over_owner_id(db, project, member.user_id)
    member_id = member.id
    db.delete(member)
    db.commit()
    if notifier is not None:
        notifier.emit(
            notifications.project_room(project.id),
            notifications.PROJECT_MEMBER_REMOVED,
            {"project_id": project.id, "member_id": member_id},
        )


def remove_member(db: Session, user: User, project_id, member_id, notifier=None) -> None:
    require_permission(
        db, user.id, project_id, Permission.PROJECT_MANAGE_MEMBERS, "Only project owner can remove members"
    )
    member = _get_member_or_404(db, project_id, member_id)
    _ensure_not_last_owner(db, member, "Cannot remove the last owner")
    _delete_member(db, member, notifier)


def leave_project(db: Session, user: User, project_id, notifier=None) -> None:
    get_project_or_404(db, project_id)
    member = (
        db.query(ProjectMember)
        .filter(ProjectMember.project_id == project_id, ProjectMember.user_id == user.id)
        .first()
    )
    if member is None:
        raise NotFound("You are not a member of this project")
    _ensure_not_last_owner(db, member, "The last owner cannot leave the project; transfer ownership first")
    _delete_member(db, member, notifier)


def transfer_ownership(db: Session, user: User, project_id, new_owner_id) -> Project:
    """Promote ``new_owner_id`` to owner and demote the caller to collaborator."""
    require_permission(
        db, user.id, project_id, Permission.PROJECT_MANAGE_MEMBERS, "Only project owner can transfer ownership"
    )
    if new_owner_id is None:
        raise Conflict("A new owner must be designated to transfer ownership")
    if new_owner_id == user.id:
        raise ValidationError("You already own this project")

    project = get_project_or_404(db, project_id)
    target = (
        db.query(ProjectMember)
        .filter(ProjectMember.project_id == project_id, ProjectMember.user_id == new_owner_id)
        .first()
    )
    if target is None:
        raise NotFound("The new owner must be a member of this project")

    current = (
        db.query(ProjectMember)
        .filter(ProjectMember.project_id == project_id, ProjectMember.user_id == user.id)
        .first()
    )
    try:
        target.role = Role.OWNER.value
        if current is None:
            current = ProjectMember(user_id=user.id, project_id=project_id)
            db.add(current)
        current.role = Role.COLLABORATOR.value
        project.owner_id = new_owner_id
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(project)
    logger.info("Project ownership transferred id=%s from=%s to=%s", project_id, user.id, new_owner_id)
    return project
