# tests/test_tasks.py

import pytest

import config
import tasks
from models import Attachment, Task


@pytest.fixture()
def uploads(tmp_path, monkeypatch):
    directory = tmp_path / "uploads"
    monkeypatch.setattr(config, "UPLOAD_DIR", str(directory))
    return directory


def _with_file(db, user):
    task = tasks.create_task(db, user, {"title": "doc"})
    attachment = tasks.add_attachment(db, user, task.id, "notes.txt", "text/plain", b"hello")
    return task, attachment


def _stored(uploads, attachment):
    return uploads / attachment.url.rsplit("/", 1)[-1]


def _break_commit(db, monkeypatch):
    def fail():
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(db, "commit", fail)


def test_delete_task_removes_attachment_files(db, make_user, uploads) -> None:
    user = make_user()
    task, attachment = _with_file(db, user)
    path = _stored(uploads, attachment)
    assert path.read_bytes() == b"hello"
    task_id = task.id

    tasks.delete_task(db, user, task_id)

    assert not path.exists()
    assert db.get(Task, task_id) is None


def test_failed_task_delete_keeps_files_and_row(db, make_user, uploads, monkeypatch) -> None:
    user = make_user()
    task, attachment = _with_file(db, user)
    path = _stored(uploads, attachment)
    task_id, attachment_id = task.id, attachment.id
    _break_commit(db, monkeypatch)

    with pytest.raises(RuntimeError):
        tasks.delete_task(db, user, task_id)

    assert path.exists()
    assert db.get(Task, task_id) is not None
    assert db.get(Attachment, attachment_id) is not None


def test_failed_attachment_delete_keeps_file(db, make_user, uploads, monkeypatch) -> None:
    user = make_user()
    task, attachment = _with_file(db, user)
    path = _stored(uploads, attachment)
    task_id, attachment_id = task.id, attachment.id
    _break_commit(db, monkeypatch)

    with pytest.raises(RuntimeError):
        tasks.delete_attachment(db, user, task_id, attachment_id)

    assert path.exists()
    assert db.get(Attachment, attachment_id) is not None


def test_null_version_and_recurring_flag_are_normalized(db, make_user) -> None:
    user = make_user()
    task = tasks.create_task(db, user, {"title": "gym", "is_recurring": True})

    updated = tasks.update_task(db, user, task.id, {"is_recurring": None, "version": None})

    assert updated.is_recurring is False
    assert updated.version == 2
