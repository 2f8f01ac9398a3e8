# tests/test_boards.py

import pytest

import boards
from errors import Forbidden, NotFound, ValidationError
from models import BoardElement, ProjectMember


def _join(db, project, user, role):
    db.add(ProjectMember(user_id=user.id, project_id=project.id, role=role))
    db.commit()


def test_personal_board_defaults_and_privacy(db, make_user) -> None:
    owner, other = make_user(), make_user()
    board = boards.create_board(db, owner, {"name": " Ideas ", "description": "   "})

    assert board.name == "Ideas"
    assert board.description is None
    assert board.color == boards.DEFAULT_COLOR
    assert boards.list_boards(db, other) == []
    with pytest.raises(Forbidden):
        boards.get_board(db, other, board.id)
    with pytest.raises(Forbidden):
        boards.delete_board(db, other, board.id)


def test_board_name_is_required(db, make_user) -> None:
    user = make_user()
    with pytest.raises(ValidationError):
        boards.create_board(db, user, {"name": ""})
    board = boards.create_board(db, user, {"name": "b"})
    with pytest.raises(ValidationError):
        boards.update_board(db, user, board.id, {"name": " "})


def test_project_board_follows_project_roles(db, make_user, project_of) -> None:
    owner, collaborator, viewer, outsider = make_user(), make_user(), make_user(), make_user()
    project = project_of(owner)
    _join(db, project, collaborator, "collaborator")
    _join(db, project, viewer, "viewer")

    board = boards.create_board(db, collaborator, {"name": "Roadmap", "project_id": project.id})

    assert [b.id for b in boards.list_boards(db, viewer)] == [board.id]
    assert [b.id for b in boards.list_boards(db, owner, project.id)] == [board.id]
    assert boards.get_board(db, viewer, board.id).id == board.id
    with pytest.raises(Forbidden):
        boards.update_board(db, viewer, board.id, {"name": "mine"})
    with pytest.raises(Forbidden):
        boards.create_board(db, viewer, {"name": "x", "project_id": project.id})
    with pytest.raises(Forbidden):
        boards.get_board(db, outsider, board.id)
    with pytest.raises(NotFound):
        boards.create_board(db, owner, {"name": "x", "project_id": 9999})

    boards.update_board(db, collaborator, board.id, {"color": None})
    assert board.color == boards.DEFAULT_COLOR


def test_project_board_delete_needs_creator_or_delete_permission(db, make_user, project_of) -> None:
    owner, first, second = make_user(), make_user(), make_user()
    project = project_of(owner)
    _join(db, project, first, "collaborator")
    _join(db, project, second, "collaborator")
    mine = boards.create_board(db, first, {"name": "a", "project_id": project.id})
    theirs = boards.create_board(db, first, {"name": "b", "project_id": project.id})
    theirs_id = theirs.id

    with pytest.raises(Forbidden):
        boards.delete_board(db, second, mine.id)
    boards.delete_board(db, first, mine.id)
    boards.delete_board(db, owner, theirs_id)
    assert boards.list_boards(db, owner, project.id) == []


def test_elements_use_defaults_and_stay_on_their_board(db, make_user) -> None:
    user = make_user()
    board = boards.create_board(db, user, {"name": "b"})
    other = boards.create_board(db, user, {"name": "c"})

    back = boards.create_element(db, user, board.id, {"type": "note", "z_index": 2})
    front = boards.create_element(db, user, board.id, {"type": "image", "image_url": "/static/x.png"})

    assert (front.position_x, front.position_y, front.width, front.height) == (0, 0, 200, 150)
    assert [e.id for e in boards.get_board(db, user, board.id).elements] == [front.id, back.id]

    with pytest.raises(ValidationError):
        boards.create_element(db, user, board.id, {"type": ""})
    with pytest.raises(ValidationError):
        boards.update_element(db, user, other.id, back.id, {"content": "x"})
    with pytest.raises(NotFound):
        boards.delete_element(db, user, board.id, 9999)

    updated = boards.update_element(db, user, board.id, back.id, {"rotation": 45, "width": None})
    assert updated.rotation == 45
    assert updated.width == 200


def test_deleting_a_board_removes_its_elements(db, make_user) -> None:
    user = make_user()
    board = boards.create_board(db, user, {"name": "b"})
    board_id = board.id
    boards.create_element(db, user, board_id, {"type": "note"})

    boards.delete_board(db, user, board_id)

    assert db.query(BoardElement).filter(BoardElement.board_id == board_id).count() == 0
    with pytest.raises(NotFound):
        boards.get_board(db, user, board_id)


def test_serialized_board_includes_elements_on_request(db, make_user) -> None:
    user = make_user()
    board = boards.create_board(db, user, {"name": "b"})
    boards.create_element(db, user, board.id, {"type": "text", "content": "hello"})

    full = boards.serialize_board(board, include_elements=True)
    brief = boards.serialize_board(board)

    assert full["owner_id"] == full["user_id"] == user.id
    assert [e["content"] for e in full["elements"]] == ["hello"]
    assert full["created_at"].endswith("Z")
    assert brief["elements"] == []
