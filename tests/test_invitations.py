# tests/test_invitations.py

from datetime import timedelta

import pytest

import emails
import invitations
import notifications
from errors import Conflict, Forbidden, Gone, NotFound, ValidationError
from models import ProjectMember, utcnow


@pytest.fixture()
def sent_emails(monkeypatch):
    sent = []

    def fake_send(to_email, project_name, inviter_name, role, token, expires_at):
        sent.append({"to": to_email, "project": project_name, "role": role, "token": token})
        return True

    monkeypatch.setattr(emails, "send_project_invitation_email", fake_send)
    return sent


def _invite(db, owner, project, email="guest@example.com", role="member", notifier=None):
    return invitations.create_invitation(db, owner, project.id, email, role, notifier)


def test_create_invitation_sends_email_with_token(db, make_user, project_of, sent_emails) -> None:
    owner = make_user(name="Ada")
    project = project_of(owner, "Apollo")

    invitation = _invite(db, owner, project, email="Guest@Example.com ")

    assert invitation.email == "guest@example.com"
    assert invitation.status == invitations.PENDING
    assert len(invitation.token) == 64
    assert sent_emails == [{"to": "guest@example.com", "project": "Apollo", "role": "member", "token": invitation.token}]
    out = invitations.serialize_invitation(invitation)
    assert "id" not in out
    assert out["project_name"] == "Apollo"
    assert out["link"].endswith("/invite/" + invitation.token)
    assert out["invited_by"]["full_name"] == "Ada"


def test_invitation_survives_email_failure(db, make_user, project_of) -> None:
    owner = make_user()
    project = project_of(owner)
    # no Resend credentials configured in tests, so delivery fails
    invitation = _invite(db, owner, project)
    assert invitation.id is not None


def test_owner_role_cannot_be_invited(db, make_user, project_of, sent_emails) -> None:
    owner = make_user()
    project = project_of(owner)
    with pytest.raises(ValidationError):
        _invite(db, owner, project, role="owner")


def test_only_owner_may_invite(db, make_user, project_of, sent_emails) -> None:
    owner, collaborator = make_user(), make_user()
    project = project_of(owner)
    db.add(ProjectMember(user_id=collaborator.id, project_id=project.id, role="collaborator"))
    db.commit()

    with pytest.raises(Forbidden):
        _invite(db, collaborator, project)


def test_duplicate_pending_and_existing_member_are_conflicts(db, make_user, project_of, sent_emails) -> None:
    owner = make_user()
    project = project_of(owner)
    _invite(db, owner, project)

    with pytest.raises(Conflict):
        _invite(db, owner, project)
    with pytest.raises(Conflict):
        _invite(db, owner, project, email=owner.email)


def test_accept_creates_membership_and_notifies(db, make_user, project_of, sent_emails, notifier) -> None:
    owner = make_user()
    guest = make_user(email="guest@example.com")
    project = project_of(owner)
    invitation = _invite(db, owner, project, role="viewer", notifier=notifier)

    member = invitations.accept_invitation(db, guest, invitation.token, notifier)

    assert member.role == "viewer"
    assert invitation.status == invitations.ACCEPTED
    assert invitation.accepted_at is not None
    assert notifier.names() == [
        notifications.INVITE_RECEIVED,
        notifications.INVITE_ACCEPTED,
        notifications.PROJECT_MEMBER_ADDED,
    ]
    with pytest.raises(Conflict):
        invitations.accept_invitation(db, guest, invitation.token)


def test_accept_requires_matching_email(db, make_user, project_of, sent_emails) -> None:
    owner, stranger = make_user(), make_user()
    invitation = _invite(db, owner, project_of(owner))

    with pytest.raises(Forbidden):
        invitations.accept_invitation(db, stranger, invitation.token)


def test_expired_invitation_is_gone(db, make_user, project_of, sent_emails) -> None:
    owner = make_user()
    guest = make_user(email="guest@example.com")
    invitation = _invite(db, owner, project_of(owner))
    invitation.expires_at = utcnow() - timedelta(minutes=1)
    db.commit()

    with pytest.raises(Gone):
        invitations.accept_invitation(db, guest, invitation.token)
    assert invitation.status == invitations.EXPIRED
    assert invitations.list_my_invitations(db, guest) == []


def test_unknown_token_is_not_found(db) -> None:
    with pytest.raises(NotFound):
        invitations.get_invitation(db, "nope")


def test_revoke_and_resend_by_token(db, make_user, project_of, sent_emails) -> None:
    owner = make_user()
    project = project_of(owner)
    invitation = _invite(db, owner, project)
    old_token = invitation.token

    resent = invitations.resend_invitation(db, owner, old_token)
    assert resent.token != old_token
    assert sent_emails[-1]["token"] == resent.token
    with pytest.raises(NotFound):
        invitations.get_invitation(db, old_token)

    invitations.revoke_invitation(db, owner, resent.token)
    with pytest.raises(Conflict):
        invitations.get_invitation(db, resent.token)
    with pytest.raises(Conflict):
        invitations.revoke_invitation(db, owner, resent.token)


def test_list_invitations(db, make_user, project_of, sent_emails) -> None:
    owner = make_user()
    guest = make_user(email="guest@example.com")
    project = project_of(owner)
    _invite(db, owner, project)

    assert len(invitations.list_project_invitations(db, owner, project.id)) == 1
    assert [i.project_id for i in invitations.list_my_invitations(db, guest)] == [project.id]
    with pytest.raises(Forbidden):
        invitations.list_project_invitations(db, guest, project.id)
