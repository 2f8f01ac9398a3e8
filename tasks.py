"""
Task, comment and attachment operations.

Every mutating call consults the access evaluator before writing, and
request bodies pass through ``from_request_shape`` so alias spellings
(``deadline``, ``category_id``, ``user_id``) land on canonical columns.
"""
import logging
import os
import uuid

from sqlalchemy import or_
from sqlalchemy.orm import Session

import config
import history
import notifications
from errors import Forbidden, NotFound, ValidationError
from models import Attachment, Comment, Project, ProjectMember, Task, User, utcnow
from permissions import (
    can_assign,
    can_create,
    can_delete,
    can_edit,
    can_view,
    TASK_ACTIONS,
    check_task_permission,
)
from projects import require_role
from rbac import Role
from transform import as_record, from_request_shape, to_response_shape

logger = logging.getLogger(__name__)

DONE = "done"
EDITABLE_FIELDS = (
    "title",
    "description",
    "status",
    "priority",
    "category",
    "tags",
    "due_date",
    "assignee_id",
    "order_key",
    "version",
    "is_recurring",
    "recurrence_pattern",
)


def serialize_task(task: Task) -> dict:
    data = as_record(task)
    data["attachments"] = list(task.attachments)
    data["comments"] = list(task.comments)
    return to_response_shape(data, "task")


def get_task_or_404(db: Session, task_id) -> Task:
    task = db.get(Task, task_id)
    if task is None:
        raise NotFound("Task not found")
    return task


def _normalize(data: dict) -> dict:
    """Empty values clear optional fields; required fields fall back to defaults.

    A null ``version`` is dropped so the automatic bump applies.
    """
    if "description" in data:
        data["description"] = data["description"] or None
    if "status" in data:
        data["status"] = data["status"] or "todo"
    if "priority" in data:
        data["priority"] = data["priority"] or "medium"
    if "category" in data:
        data["category"] = data["category"] or None
    if "assignee_id" in data:
        data["assignee_id"] = data["assignee_id"] or None
    if "recurrence_pattern" in data:
        data["recurrence_pattern"] = data["recurrence_pattern"] or None
    if "is_recurring" in data:
        data["is_recurring"] = bool(data["is_recurring"])
    if "version" in data and data["version"] is None:
        del data["version"]
    return data


def _commit_or_rollback(db: Session) -> None:
    """Commit; on failure roll back and re-raise."""
    try:
        db.commit()
    except Exception:
        db.rollback()
        raise


def _emit(notifier, task: Task, event: str, payload) -> None:
    if notifier is not None:
        notifier.emit(notifications.task_room(task), event, payload)


def create_task(db: Session, user: User, body: dict, notifier=None) -> Task:
    data = _normalize(from_request_shape(body, "task"))
    title = (data.get("title") or "").strip()
    if not title:
        raise ValidationError("Title is required")

    project_id = data.get("project_id")
    if project_id is not None and db.get(Project, project_id) is None:
        raise NotFound("Project not found")
    assignee_id = data.get("assignee_id")

    if not can_create(db, user.id, project_id, assignee_id):
        raise Forbidden(
            "You do not have permission to create this task. "
            "Members can only create tasks assigned to themselves."
        )

    task = Task(
        title=title,
        description=data.get("description"),
        status=data.get("status") or "todo",
        priority=data.get("priority") or "medium",
        category=data.get("category"),
        tags=data.get("tags") or [],
        due_date=data.get("due_date"),
        project_id=project_id,
        creator_id=user.id,
        assignee_id=assignee_id,
        order_key=data.get("order_key") or "n",
        version=data.get("version") or 1,
        is_recurring=bool(data.get("is_recurring")),
        recurrence_pattern=data.get("recurrence_pattern"),
    )
    if task.is_recurring and task.status == DONE:
        task.last_completed = utcnow()
    db.add(task)
    db.flush()
    history.record_task_created(db, task, user.id)
    db.commit()
    db.refresh(task)
    logger.info("Task created id=%s project_id=%s creator_id=%s", task.id, project_id, user.id)
    _emit(notifier, task, notifications.TASK_CREATED, serialize_task(task))
    return task


def list_tasks(db: Session, user: User):
    """Personal tasks plus every project task the user may see, without duplicates."""
    personal = (
        db.query(Task)
        .filter(Task.project_id.is_(None), Task.creator_id == user.id)
        .all()
    )
    memberships = db.query(ProjectMember).filter(ProjectMember.user_id == user.id).all()
    roles = {m.project_id: Role.parse(m.role) for m in memberships}
    for project in db.query(Project).filter(Project.owner_id == user.id).all():
        roles.setdefault(project.id, Role.OWNER)

    project_tasks = []
    if roles:
        project_tasks = db.query(Task).filter(Task.project_id.in_(list(roles))).all()

    seen = set()
    result = []
    for task in personal + project_tasks:
        if task.id in seen:
            continue
        if task.project_id is not None and roles.get(task.project_id) == Role.MEMBER:
            if task.creator_id != user.id and task.assignee_id != user.id:
                continue
        seen.add(task.id)
        result.append(task)
    result.sort(key=lambda t: (t.status, t.order_key or "", t.id))
    return result


def list_project_tasks(db: Session, user: User, project_id):
    role = require_role(db, user.id, project_id)
    query = db.query(Task).filter(Task.project_id == project_id)
    if role == Role.MEMBER:
        query = query.filter(or_(Task.creator_id == user.id, Task.assignee_id == user.id))
    return query.order_by(Task.status, Task.order_key, Task.id).all()


def get_task(db: Session, user: User, task_id) -> Task:
    task = get_task_or_404(db, task_id)
    if not can_view(db, user.id, task):
        raise Forbidden("You do not have permission to view this task")
    return task


def update_task(db: Session, user: User, task_id, body: dict, notifier=None) -> Task:
    task = get_task_or_404(db, task_id)
    if not can_edit(db, user.id, task):
        raise Forbidden("You do not have permission to edit this task.")

    data = _normalize(from_request_shape(body, "task"))
    if "title" in data and not (data["title"] or "").strip():
        raise ValidationError("Title is required")
    if "assignee_id" in data and data["assignee_id"] != task.assignee_id:
        if not can_assign(db, user.id, task, data["assignee_id"]):
            raise Forbidden("You do not have permission to assign this task.")

    was_done = task.status == DONE
    before = history.snapshot(task)
    for name in EDITABLE_FIELDS:
        if name in data:
            setattr(task, name, data[name])
    if "version" not in data:
        task.version = (task.version or 0) + 1
    if task.is_recurring and task.status == DONE and not was_done:
        task.last_completed = utcnow()
    history.record_task_updates(db, task, user.id, before)

    db.commit()
    db.refresh(task)
    _emit(notifier, task, notifications.TASK_UPDATED, serialize_task(task))
    return task


def delete_task(db: Session, user: User, task_id, notifier=None) -> None:
    task = get_task_or_404(db, task_id)
    if not can_delete(db, user.id, task):
        raise Forbidden(
            "You do not have permission to delete this task. "
            "Only Owner and Collaborator can delete tasks."
        )
    room = notifications.task_room(task)
    urls = [attachment.url for attachment in task.attachments]
    db.delete(task)
    _commit_or_rollback(db)
    for url in urls:
        _remove_file(url)
    logger.info("Task deleted id=%s by user_id=%s", task_id, user.id)
    if notifier is not None:
        notifier.emit(room, notifications.TASK_DELETED, {"id": task_id})


def check_permissions(db: Session, user: User, task_ids, action: str) -> dict:
    """Batch permission lookup; missing tasks resolve to False."""
    if action not in TASK_ACTIONS:
        raise ValidationError("Invalid action. Must be view, edit or delete")
    tasks = {t.id: t for t in db.query(Task).filter(Task.id.in_(list(task_ids))).all()} if task_ids else {}
    return {
        task_id: check_task_permission(db, user.id, tasks.get(task_id), action)
        for task_id in task_ids
    }


# ---- comments ----

def serialize_comment(comment: Comment) -> dict:
    return to_response_shape(comment, "comment")


def add_comment(db: Session, user: User, task_id, text: str, mentioned_users=None, notifier=None) -> Comment:
    task = get_task(db, user, task_id)
    text = (text or "").strip()
    if not text:
        raise ValidationError("Comment text is required")
    comment = Comment(task_id=task.id, created_by=user.id, text=text, mentioned_users=list(mentioned_users or []))
    db.add(comment)
    db.flush()
    history.record_comment_added(db, comment, user.id)
    db.commit()
    db.refresh(comment)
    if notifier is not None:
        notifier.emit(
            notifications.task_room(task),
            notifications.COMMENT_ADDED,
            {"task_id": task.id, "comment": serialize_comment(comment)},
        )
    return comment


def list_comments(db: Session, user: User, task_id):
    return list(get_task(db, user, task_id).comments)


def delete_comment(db: Session, user: User, task_id, comment_id) -> None:
    task = get_task_or_404(db, task_id)
    comment = db.get(Comment, comment_id)
    if comment is None or comment.task_id != task.id:
        raise NotFound("Comment not found")
    if comment.created_by != user.id and not can_edit(db, user.id, task):
        raise Forbidden("You do not have permission to delete this comment")
    db.delete(comment)
    db.commit()


# ---- attachments ----

def _safe_name(filename: str) -> str:
    name = os.path.basename(filename or "").strip()
    return name or "file"


def _remove_file(url: str) -> None:
    prefix = "/" + config.UPLOAD_DIR.strip("/") + "/"
    if not url or not url.startswith(prefix):
        return
    path = os.path.join(config.UPLOAD_DIR, os.path.basename(url))
    if os.path.exists(path):
        os.remove(path)


def add_attachment(db: Session, user: User, task_id, filename: str, content_type: str, content: bytes) -> Attachment:
    task = get_task_or_404(db, task_id)
    if not can_edit(db, user.id, task):
        raise Forbidden("You do not have permission to add attachments to this task")
    if len(content) > config.MAX_UPLOAD_BYTES:
        raise ValidationError("File is too large")

    os.makedirs(config.UPLOAD_DIR, exist_ok=True)
    name = _safe_name(filename)
    stored = f"{uuid.uuid4().hex}-{name}"
    with open(os.path.join(config.UPLOAD_DIR, stored), "wb") as f:
        f.write(content)

    attachment = Attachment(
        task_id=task.id,
        name=name,
        url="/" + config.UPLOAD_DIR.strip("/") + "/" + stored,
        size=len(content),
        mime_type=content_type or "application/octet-stream",
    )
    db.add(attachment)
    db.commit()
    db.refresh(attachment)
    return attachment


def delete_attachment(db: Session, user: User, task_id, attachment_id) -> None:
    task = get_task_or_404(db, task_id)
    attachment = db.get(Attachment, attachment_id)
    if attachment is None or attachment.task_id != task.id:
        raise NotFound("Attachment not found")
    if not can_edit(db, user.id, task):
        raise Forbidden("You do not have permission to remove attachments from this task")
    url = attachment.url
    db.delete(attachment)
    _commit_or_rollback(db)
    _remove_file(url)
