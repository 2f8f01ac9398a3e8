"""
Whiteboard boards and their elements.

A board without ``project_id`` is personal and only its owner can reach it.
A project board follows the project's roles: viewing needs ``project:view``,
changing the board or its elements needs ``project:edit``, and deleting it
needs ``project:delete`` unless the caller created the board.
"""
import logging

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from errors import Forbidden, NotFound, ValidationError
from models import Board, BoardElement, Project, ProjectMember, User, utcnow
from projects import get_project_or_404, require_permission
from rbac import Permission
from transform import as_record, to_response_shape

logger = logging.getLogger(__name__)

DEFAULT_COLOR = "#3b82f6"
ELEMENT_DEFAULTS = {
    "position_x": 0,
    "position_y": 0,
    "width": 200,
    "height": 150,
    "z_index": 0,
    "rotation": 0,
}
ELEMENT_FIELDS = tuple(ELEMENT_DEFAULTS) + ("type", "content", "image_url", "color", "font_size")


def serialize_element(element: BoardElement) -> dict:
    return to_response_shape(element, "board_element")


def serialize_board(board: Board, include_elements: bool = False) -> dict:
    data = as_record(board)
    data["elements"] = list(board.elements) if include_elements else []
    return to_response_shape(data, "board")


def _check(db: Session, user: User, board: Board, permission: Permission) -> None:
    if board.project_id is None:
        if board.owner_id != user.id:
            raise Forbidden("You do not have access to this board")
        return
    require_permission(db, user.id, board.project_id, permission, "You do not have access to this board")


def get_board_or_404(db: Session, board_id) -> Board:
    board = db.get(Board, board_id)
    if board is None:
        raise NotFound("Board not found")
    return board


def list_boards(db: Session, user: User, project_id=None):
    """Boards of one project, or the user's personal boards plus those of their projects."""
    query = db.query(Board)
    if project_id is not None:
        require_permission(db, user.id, project_id, Permission.PROJECT_VIEW)
        query = query.filter(Board.project_id == project_id)
    else:
        member_of = select(ProjectMember.project_id).where(ProjectMember.user_id == user.id)
        owned = select(Project.id).where(Project.owner_id == user.id)
        query = query.filter(or_(
            and_(Board.project_id.is_(None), Board.owner_id == user.id),
            Board.project_id.in_(member_of),
            Board.project_id.in_(owned),
        ))
    return query.order_by(Board.updated_at.desc(), Board.id.desc()).all()


def create_board(db: Session, user: User, body: dict) -> Board:
    name = (body.get("name") or "").strip()
    if not name:
        raise ValidationError("Board name is required")
    project_id = body.get("project_id")
    if project_id is not None:
        get_project_or_404(db, project_id)
        require_permission(
            db, user.id, project_id, Permission.PROJECT_EDIT, "You do not have permission to add boards to this project"
        )

    board = Board(
        name=name,
        description=(body.get("description") or "").strip() or None,
        color=body.get("color") or DEFAULT_COLOR,
        thumbnail=body.get("thumbnail"),
        owner_id=user.id,
        project_id=project_id,
    )
    db.add(board)
    db.commit()
    db.refresh(board)
    logger.info("Board created id=%s project_id=%s owner_id=%s", board.id, project_id, user.id)
    return board


def get_board(db: Session, user: User, board_id) -> Board:
    board = get_board_or_404(db, board_id)
    _check(db, user, board, Permission.PROJECT_VIEW)
    return board


def update_board(db: Session, user: User, board_id, body: dict) -> Board:
    board = get_board_or_404(db, board_id)
    _check(db, user, board, Permission.PROJECT_EDIT)

    if "name" in body:
        name = (body["name"] or "").strip()
        if not name:
            raise ValidationError("Board name cannot be empty")
        board.name = name
    if "description" in body:
        board.description = (body["description"] or "").strip() or None
    if "color" in body:
        board.color = body["color"] or DEFAULT_COLOR
    if "thumbnail" in body:
        board.thumbnail = body["thumbnail"]
    board.updated_at = utcnow()
    db.commit()
    db.refresh(board)
    return board


def delete_board(db: Session, user: User, board_id) -> None:
    board = get_board_or_404(db, board_id)
    if board.project_id is not None and board.owner_id == user.id:
        _check(db, user, board, Permission.PROJECT_EDIT)
    else:
        _check(db, user, board, Permission.PROJECT_DELETE)
    db.delete(board)
    db.commit()
    logger.info("Board deleted id=%s by user_id=%s", board_id, user.id)


# ---- elements ----

def _element_of(db: Session, board: Board, element_id) -> BoardElement:
    element = db.get(BoardElement, element_id)
    if element is None:
        raise NotFound("Element not found")
    if element.board_id != board.id:
        raise ValidationError("Element does not belong to this board")
    return element


def _touch(board: Board) -> None:
    board.updated_at = utcnow()


def create_element(db: Session, user: User, board_id, body: dict) -> BoardElement:
    board = get_board_or_404(db, board_id)
    _check(db, user, board, Permission.PROJECT_EDIT)
    if not (body.get("type") or "").strip():
        raise ValidationError("Element type is required")

    values = {name: body.get(name) for name in ELEMENT_FIELDS}
    for name, default in ELEMENT_DEFAULTS.items():
        if values[name] is None:
            values[name] = default
    element = BoardElement(board_id=board.id, **values)
    db.add(element)
    _touch(board)
    db.commit()
    db.refresh(element)
    return element


def update_element(db: Session, user: User, board_id, element_id, body: dict) -> BoardElement:
    board = get_board_or_404(db, board_id)
    _check(db, user, board, Permission.PROJECT_EDIT)
    element = _element_of(db, board, element_id)

    for name in ELEMENT_FIELDS:
        if name not in body:
            continue
        value = body[name]
        if value is None and name in ELEMENT_DEFAULTS:
            value = ELEMENT_DEFAULTS[name]
        if name == "type" and not (value or "").strip():
            raise ValidationError("Element type is required")
        setattr(element, name, value)
    element.updated_at = utcnow()
    _touch(board)
    db.commit()
    db.refresh(element)
    return element


def delete_element(db: Session, user: User, board_id, element_id) -> None:
    board = get_board_or_404(db, board_id)
    _check(db, user, board, Permission.PROJECT_EDIT)
    element = _element_of(db, board, element_id)
    db.delete(element)
    _touch(board)
    db.commit()
