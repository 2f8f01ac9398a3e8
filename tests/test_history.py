# tests/test_history.py

from datetime import datetime

import pytest

import history
import tasks
from errors import Forbidden, NotFound
from models import ProjectMember, TaskHistory


def _actions(db, user, task_id):
    return [(e.action, e.field) for e in history.get_task_history(db, user, task_id)]


def test_create_records_a_snapshot(db, make_user) -> None:
    user = make_user()
    task = tasks.create_task(db, user, {"title": "write report", "priority": "high"})

    (entry,) = history.get_task_history(db, user, task.id)
    assert entry.action == history.CREATED
    assert entry.user_id == user.id
    assert entry.new_value["title"] == "write report"
    assert entry.new_value["priority"] == "high"
    assert entry.new_value["project_id"] is None


def test_each_changed_field_gets_its_own_entry(db, make_user) -> None:
    user = make_user()
    task = tasks.create_task(db, user, {"title": "t", "due_date": "2024-05-01T10:00:00Z"})

    tasks.update_task(db, user, task.id, {
        "title": "t2",
        "status": "in_progress",
        "priority": "medium",  # unchanged
        "due_date": "2024-06-01T10:00:00Z",
        "assignee_id": user.id,
    })

    entries = {e.field: e for e in history.get_task_history(db, user, task.id) if e.field}
    assert set(entries) == {"title", "status", "due_date", "assignee_id"}
    assert entries["title"].action == history.UPDATED
    assert entries["status"].action == history.STATUS_CHANGED
    assert entries["assignee_id"].action == history.ASSIGNED
    assert entries["due_date"].action == history.DEADLINE_CHANGED
    assert entries["due_date"].old_value == "2024-05-01T10:00:00.000Z"
    assert entries["due_date"].new_value == "2024-06-01T10:00:00.000Z"


@pytest.mark.parametrize(
    "old, new, action",
    [
        (None, datetime(2024, 1, 1), history.DEADLINE_SET),
        (datetime(2024, 1, 1), None, history.DEADLINE_REMOVED),
    ],
)
def test_deadline_actions(db, make_user, old, new, action) -> None:
    user = make_user()
    task = tasks.create_task(db, user, {"title": "t", "due_date": old})

    tasks.update_task(db, user, task.id, {"due_date": new})

    assert _actions(db, user, task.id)[0] == (action, "due_date")


def test_unassigning_and_no_op_updates(db, make_user) -> None:
    user = make_user()
    task = tasks.create_task(db, user, {"title": "t", "assignee_id": user.id})

    tasks.update_task(db, user, task.id, {"title": "t"})
    tasks.update_task(db, user, task.id, {"assignee_id": None})

    assert _actions(db, user, task.id) == [
        (history.UNASSIGNED, "assignee_id"),
        (history.CREATED, None),
    ]


def test_comment_entry_keeps_a_short_preview(db, make_user) -> None:
    user = make_user()
    task = tasks.create_task(db, user, {"title": "t"})

    comment = tasks.add_comment(db, user, task.id, "x" * 150)

    entry = history.get_task_history(db, user, task.id)[0]
    assert entry.action == history.COMMENT_ADDED
    assert entry.meta == {"comment_id": comment.id, "text": "x" * 100}
    assert history.serialize_entry(entry)["metadata"]["comment_id"] == comment.id


def test_history_follows_view_permission(db, make_user, project_of) -> None:
    owner, viewer, outsider = make_user(), make_user(), make_user()
    project = project_of(owner)
    db.add(ProjectMember(user_id=viewer.id, project_id=project.id, role="viewer"))
    db.commit()
    task = tasks.create_task(db, owner, {"title": "t", "project_id": project.id})

    assert len(history.get_task_history(db, viewer, task.id)) == 1
    with pytest.raises(Forbidden):
        history.get_task_history(db, outsider, task.id)
    with pytest.raises(NotFound):
        history.get_task_history(db, owner, 9999)


def test_history_is_removed_with_its_task(db, make_user) -> None:
    user = make_user()
    task = tasks.create_task(db, user, {"title": "t"})
    task_id = task.id

    tasks.delete_task(db, user, task_id)

    assert db.query(TaskHistory).filter(TaskHistory.task_id == task_id).count() == 0
