# tests/test_rbac.py

import pytest

from rbac import INVITABLE_ROLES, Permission, Role, ROLE_PERMISSIONS, has_permission


def test_owner_holds_every_permission() -> None:
    for permission in Permission:
        assert has_permission(Role.OWNER, permission)


@pytest.mark.parametrize(
    "permission",
    [
        Permission.PROJECT_VIEW,
        Permission.PROJECT_EDIT,
        Permission.TASK_CREATE,
        Permission.TASK_DELETE,
        Permission.TASK_ASSIGN,
        Permission.MEMBERS_VIEW_ALL,
    ],
)
def test_collaborator_grants(permission) -> None:
    assert has_permission("collaborator", permission)


@pytest.mark.parametrize(
    "permission",
    [
        Permission.PROJECT_DELETE,
        Permission.PROJECT_ARCHIVE,
        Permission.PROJECT_MANAGE_MEMBERS,
        Permission.PROJECT_INVITE_USERS,
    ],
)
def test_collaborator_cannot_administer_project(permission) -> None:
    assert not has_permission(Role.COLLABORATOR, permission)


def test_member_cannot_delete_tasks_or_see_all_members() -> None:
    assert has_permission(Role.MEMBER, "task:create")
    assert has_permission(Role.MEMBER, "task:assign")
    assert not has_permission(Role.MEMBER, "task:delete")
    assert not has_permission(Role.MEMBER, "members:view-all")


def test_viewer_is_read_only() -> None:
    assert ROLE_PERMISSIONS[Role.VIEWER] == {Permission.PROJECT_VIEW, Permission.TASK_VIEW}


def test_unknown_role_or_permission_is_denied_without_raising() -> None:
    assert not has_permission("superuser", Permission.TASK_VIEW)
    assert not has_permission(None, Permission.TASK_VIEW)
    assert not has_permission(Role.OWNER, "task:teleport")


def test_role_parse() -> None:
    assert Role.parse("viewer") is Role.VIEWER
    assert Role.parse(Role.MEMBER) is Role.MEMBER
    assert Role.parse("admin") is None
    assert Role.OWNER not in INVITABLE_ROLES
