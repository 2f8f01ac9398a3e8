"""
Token-based project invitations.

The opaque token is the only public identifier of an invitation: every
lookup, accept, revoke and resend goes through it, and serialized
invitations never carry the internal row id.
"""
import logging
import secrets
from datetime import timedelta

from sqlalchemy.orm import Session

import config
import emails
import notifications
from errors import Conflict, Forbidden, Gone, NotFound, ValidationError
from models import Invitation, ProjectMember, User, utcnow
from projects import get_project_or_404, require_permission, serialize_member
from rbac import INVITABLE_ROLES, Permission, Role
from transform import as_record, format_timestamp, to_response_shape

logger = logging.getLogger(__name__)

PENDING = "pending"
ACCEPTED = "accepted"
EXPIRED = "expired"
REVOKED = "revoked"


def new_token() -> str:
    return secrets.token_hex(32)


def serialize_invitation(invitation: Invitation) -> dict:
    data = as_record(invitation)
    data["project_name"] = invitation.project.name if invitation.project else None
    data["link"] = emails.invitation_link(invitation.token) if invitation.status == PENDING else None
    inviter = invitation.invited_by
    data["invited_by"] = (
        {"id": inviter.id, "full_name": inviter.full_name, "email": inviter.email} if inviter else None
    )
    return to_response_shape(data, "invitation")


def _get_by_token(db: Session, token: str) -> Invitation:
    invitation = db.query(Invitation).filter(Invitation.token == token).first()
    if invitation is None:
        raise NotFound("Invitation not found")
    return invitation


def _expire_if_due(db: Session, invitation: Invitation) -> bool:
    if invitation.status == PENDING and invitation.expires_at < utcnow():
        invitation.status = EXPIRED
        db.commit()
        return True
    return False


def _send_invitation_email(invitation: Invitation, inviter_name: str) -> bool:
    sent = emails.send_project_invitation_email(
        invitation.email,
        invitation.project.name,
        inviter_name,
        invitation.role,
        invitation.token,
        format_timestamp(invitation.expires_at),
    )
    if not sent:
        logger.warning("Invitation email not delivered to=%s; invitation kept", invitation.email)
    return sent


def create_invitation(db: Session, user: User, project_id, email: str, role: str, notifier=None) -> Invitation:
    if not email or not role:
        raise ValidationError("Email and role are required")
    invited_role = Role.parse(role)
    if invited_role not in INVITABLE_ROLES:
        raise ValidationError("Invalid role. Must be collaborator, member, or viewer")

    require_permission(
        db,
        user.id,
        project_id,
        Permission.PROJECT_INVITE_USERS,
        "You do not have permission to invite users to this project",
    )
    project = get_project_or_404(db, project_id)
    email = email.strip().lower()

    existing_member = (
        db.query(ProjectMember)
        .join(User, User.id == ProjectMember.user_id)
        .filter(ProjectMember.project_id == project.id, User.email == email)
        .first()
    )
    if existing_member is not None:
        raise Conflict("User is already a member of this project")

    pending = (
        db.query(Invitation)
        .filter(Invitation.project_id == project.id, Invitation.email == email, Invitation.status == PENDING)
        .first()
    )
    if pending is not None and not _expire_if_due(db, pending):
        raise Conflict("There is already a pending invitation for this email")

    invitation = Invitation(
        project_id=project.id,
        email=email,
        role=invited_role.value,
        token=new_token(),
        status=PENDING,
        expires_at=utcnow() + timedelta(hours=config.INVITATION_EXPIRE_HOURS),
        invited_by_user_id=user.id,
    )
    db.add(invitation)
    db.commit()
    db.refresh(invitation)
    logger.info("Invitation created project_id=%s email=%s role=%s", project.id, email, invitation.role)

    invitee = db.query(User).filter(User.email == email).first()
    if invitee is not None and notifier is not None:
        notifier.emit(notifications.user_room(invitee.id), notifications.INVITE_RECEIVED, serialize_invitation(invitation))

    _send_invitation_email(invitation, user.full_name or "A team member")
    return invitation


def get_invitation(db: Session, token: str) -> Invitation:
    """Pending invitation for the acceptance page."""
    invitation = _get_by_token(db, token)
    if _expire_if_due(db, invitation):
        raise Gone("Invitation has expired")
    if invitation.status != PENDING:
        raise Conflict(f"Invitation is {invitation.status}")
    return invitation


def accept_invitation(db: Session, user: User, token: str, notifier=None) -> ProjectMember:
    invitation = _get_by_token(db, token)
    if invitation.status != PENDING:
        raise Conflict(f"Invitation is {invitation.status}")
    if _expire_if_due(db, invitation):
        raise Gone("Invitation has expired")
    if invitation.email.lower() != user.email.lower():
        raise Forbidden("This invitation was sent to a different email address")

    existing = (
        db.query(ProjectMember)
        .filter(ProjectMember.project_id == invitation.project_id, ProjectMember.user_id == user.id)
        .first()
    )
    if existing is not None:
        invitation.status = ACCEPTED
        invitation.accepted_at = utcnow()
        db.commit()
        raise Conflict("You are already a member of this project")

    member = ProjectMember(user_id=user.id, project_id=invitation.project_id, role=invitation.role)
    try:
        db.add(member)
        invitation.status = ACCEPTED
        invitation.accepted_at = utcnow()
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(member)
    logger.info("Invitation accepted project_id=%s user_id=%s role=%s", member.project_id, user.id, member.role)

    if notifier is not None:
        room = notifications.project_room(member.project_id)
        notifier.emit(room, notifications.INVITE_ACCEPTED, {"token": token, "project_id": member.project_id, "user_id": user.id})
        notifier.emit(room, notifications.PROJECT_MEMBER_ADDED, serialize_member(member))
    return member


def list_project_invitations(db: Session, user: User, project_id):
    require_permission(
        db, user.id, project_id, Permission.PROJECT_INVITE_USERS, "You do not have permission to view invitations"
    )
    return (
        db.query(Invitation)
        .filter(Invitation.project_id == project_id)
        .order_by(Invitation.created_at.desc())
        .all()
    )


def list_my_invitations(db: Session, user: User):
    invitations = (
        db.query(Invitation)
        .filter(Invitation.email == user.email.lower(), Invitation.status == PENDING)
        .order_by(Invitation.created_at.desc())
        .all()
    )
    return [inv for inv in invitations if not _expire_if_due(db, inv)]


def _manageable(db: Session, user: User, token: str) -> Invitation:
    invitation = _get_by_token(db, token)
    require_permission(
        db,
        user.id,
        invitation.project_id,
        Permission.PROJECT_INVITE_USERS,
        "You do not have permission to manage invitations for this project",
    )
    return invitation


def revoke_invitation(db: Session, user: User, token: str) -> Invitation:
    invitation = _manageable(db, user, token)
    if invitation.status != PENDING:
        raise Conflict(f"Invitation is {invitation.status}")
    invitation.status = REVOKED
    db.commit()
    logger.info("Invitation revoked project_id=%s email=%s", invitation.project_id, invitation.email)
    return invitation


def resend_invitation(db: Session, user: User, token: str) -> Invitation:
    """Issue a fresh token and expiry for a pending or expired invitation and email it again."""
    invitation = _manageable(db, user, token)
    if invitation.status not in (PENDING, EXPIRED):
        raise Conflict(f"Invitation is {invitation.status}")
    invitation.token = new_token()
    invitation.status = PENDING
    invitation.expires_at = utcnow() + timedelta(hours=config.INVITATION_EXPIRE_HOURS)
    db.commit()
    db.refresh(invitation)
    inviter = invitation.invited_by
    _send_invitation_email(invitation, (inviter.full_name if inviter else None) or "A team member")
    return invitation
