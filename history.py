"""
Task history timeline.

Entries are added to the caller's session and committed together with the
change they describe, so a task never shows an edit its history misses.
"""
import logging

from sqlalchemy.orm import Session

from errors import Forbidden, NotFound
from models import Comment, Task, TaskHistory, User
from permissions import can_view
from transform import as_record, format_timestamp, to_response_shape

logger = logging.getLogger(__name__)

CREATED = "created"
UPDATED = "updated"
STATUS_CHANGED = "status_changed"
PRIORITY_CHANGED = "priority_changed"
ASSIGNED = "assigned"
UNASSIGNED = "unassigned"
DEADLINE_SET = "deadline_set"
DEADLINE_CHANGED = "deadline_changed"
DEADLINE_REMOVED = "deadline_removed"
CATEGORY_CHANGED = "category_changed"
COMMENT_ADDED = "comment_added"

TRACKED_FIELDS = ("title", "description", "status", "priority", "assignee_id", "due_date", "category")
COMMENT_PREVIEW = 100


def _value(name, value):
    if name == "due_date":
        return format_timestamp(value)
    return value


def snapshot(task: Task) -> dict:
    """Tracked field values of ``task``, JSON-ready."""
    return {name: _value(name, getattr(task, name)) for name in TRACKED_FIELDS}


def _action_for(name, old, new):
    if name == "status":
        return STATUS_CHANGED
    if name == "priority":
        return PRIORITY_CHANGED
    if name == "category":
        return CATEGORY_CHANGED
    if name == "assignee_id":
        return UNASSIGNED if new is None else ASSIGNED
    if name == "due_date":
        if old is None:
            return DEADLINE_SET
        if new is None:
            return DEADLINE_REMOVED
        return DEADLINE_CHANGED
    return UPDATED


def record_task_created(db: Session, task: Task, user_id) -> TaskHistory:
    data = snapshot(task)
    data["project_id"] = task.project_id
    entry = TaskHistory(task_id=task.id, user_id=user_id, action=CREATED, new_value=data)
    db.add(entry)
    return entry


def record_task_updates(db: Session, task: Task, user_id, before: dict):
    """One entry per tracked field whose value differs from ``before``."""
    after = snapshot(task)
    entries = []
    for name in TRACKED_FIELDS:
        old, new = before.get(name), after[name]
        if old == new:
            continue
        entries.append(TaskHistory(
            task_id=task.id,
            user_id=user_id,
            action=_action_for(name, old, new),
            field=name,
            old_value=old,
            new_value=new,
        ))
    db.add_all(entries)
    if entries:
        logger.debug("Recorded %d history entries for task id=%s", len(entries), task.id)
    return entries


def record_comment_added(db: Session, comment: Comment, user_id) -> TaskHistory:
    entry = TaskHistory(
        task_id=comment.task_id,
        user_id=user_id,
        action=COMMENT_ADDED,
        meta={"comment_id": comment.id, "text": comment.text[:COMMENT_PREVIEW]},
    )
    db.add(entry)
    return entry


def serialize_entry(entry: TaskHistory) -> dict:
    data = as_record(entry)
    data["metadata"] = data.pop("meta", None)
    user = entry.user
    data["user"] = None if user is None else {
        "id": user.id,
        "full_name": user.full_name,
        "email": user.email,
        "avatar_url": user.avatar_url,
    }
    return to_response_shape(data, "task_history")


def get_task_history(db: Session, user: User, task_id):
    """Newest first."""
    task = db.get(Task, task_id)
    if task is None:
        raise NotFound("Task not found")
    if not can_view(db, user.id, task):
        raise Forbidden("You do not have permission to view this task")
    return (
        db.query(TaskHistory)
        .filter(TaskHistory.task_id == task.id)
        .order_by(TaskHistory.created_at.desc(), TaskHistory.id.desc())
        .all()
    )
