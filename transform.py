"""
Boundary transformation between persisted records and API payloads.

Every logical field has exactly one canonical (persisted) name. Some are
also exposed under a legacy alias, listed per entity in ``SHAPES``; both
spellings are accepted on input and the ``prefer`` spelling wins when a
body carries both. On output:

- both spellings are emitted with the same value,
- array fields are always lists (never null or missing),
- date fields are canonical UTC ISO-8601 strings (``...T...mmmZ``),
- hidden fields are dropped.

Both directions are pure and idempotent, and
``from_request_shape(to_response_shape(x))`` gives back ``x``.
"""
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime, timezone

from sqlalchemy import inspect

from errors import ValidationError


@dataclass(frozen=True)
class FieldAlias:
    canonical: str
    alias: str
    prefer: str

    def pick(self, data):
        """Value for this logical field, honoring ``prefer`` when both keys exist."""
        other = self.alias if self.prefer == self.canonical else self.canonical
        if self.prefer in data:
            return data[self.prefer]
        return data[other]


@dataclass(frozen=True)
class Shape:
    aliases: tuple = ()
    arrays: tuple = ()
    dates: tuple = ()
    hidden: tuple = ()
    # array field -> entity name of its elements
    nested: dict = field(default_factory=dict)


SHAPES = {
    "task": Shape(
        aliases=(
            FieldAlias("due_date", "deadline", prefer="due_date"),
            FieldAlias("category", "category_id", prefer="category_id"),
            FieldAlias("creator_id", "user_id", prefer="creator_id"),
        ),
        arrays=("tags", "attachments", "comments"),
        dates=("due_date", "last_completed", "created_at", "updated_at"),
        nested={"attachments": "attachment", "comments": "comment"},
    ),
    "project": Shape(
        aliases=(FieldAlias("owner_id", "user_id", prefer="owner_id"),),
        arrays=("links", "attachments", "tags", "available_categories", "members"),
        dates=("created_at", "updated_at", "archived_at"),
        nested={"members": "member"},
    ),
    "member": Shape(dates=("added_at",)),
    "user": Shape(
        arrays=("personal_tags",),
        dates=("created_at", "updated_at", "telegram_linked_at"),
        hidden=("password", "reset_token", "reset_token_expires", "email_verification_token"),
    ),
    "comment": Shape(arrays=("mentioned_users",), dates=("created_at", "updated_at")),
    "attachment": Shape(dates=("created_at",)),
    # the token is the only public identifier of an invitation
    "invitation": Shape(dates=("expires_at", "created_at", "accepted_at"), hidden=("id",)),
    "task_history": Shape(dates=("created_at",)),
    "board": Shape(
        aliases=(FieldAlias("owner_id", "user_id", prefer="owner_id"),),
        arrays=("elements",),
        dates=("created_at", "updated_at"),
        nested={"elements": "board_element"},
    ),
    "board_element": Shape(dates=("created_at", "updated_at")),
}


def format_timestamp(value):
    """Render a datetime/date/ISO string as ``YYYY-MM-DDTHH:MM:SS.mmmZ``."""
    if value is None:
        return None
    if isinstance(value, str):
        try:
            value = parse_timestamp(value)
        except ValidationError:
            return value
        if value is None:
            return None
    elif isinstance(value, datetime):
        value = _to_naive_utc(value)
    elif isinstance(value, date):
        value = datetime(value.year, value.month, value.day)
    else:
        return value
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def parse_timestamp(value):
    """Parse request input into a naive UTC datetime (or None)."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return _to_naive_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if not isinstance(value, str):
        raise ValidationError(f"Invalid date value: {value!r}")
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise ValidationError(f"Invalid date value: {value!r}")
    return _to_naive_utc(parsed)


def _to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def as_record(obj) -> dict:
    """Plain dict of a mapping or of an ORM instance's column attributes."""
    if isinstance(obj, Mapping):
        return dict(obj)
    mapper = inspect(obj).mapper
    return {attr.key: getattr(obj, attr.key) for attr in mapper.column_attrs}


def _shape(entity: str) -> Shape:
    try:
        return SHAPES[entity]
    except KeyError:
        raise ValueError(f"Unknown entity shape: {entity}")


def _as_list(value):
    if isinstance(value, (list, tuple)):
        return list(value)
    return []


def to_response_shape(record, entity: str = "task") -> dict:
    shape = _shape(entity)
    data = as_record(record)

    for name in shape.hidden:
        data.pop(name, None)

    for alias in shape.aliases:
        if alias.canonical in data or alias.alias in data:
            value = alias.pick(data)
            data[alias.canonical] = value
            data[alias.alias] = value

    for name in shape.arrays:
        items = _as_list(data.get(name))
        inner = shape.nested.get(name)
        if inner is not None:
            items = [
                item if isinstance(item, (str, int, float)) else to_response_shape(item, inner)
                for item in items
            ]
        data[name] = items

    for name in shape.dates:
        if name in data:
            data[name] = format_timestamp(data[name])

    for alias in shape.aliases:
        if alias.canonical in data and alias.canonical in shape.dates:
            data[alias.alias] = data[alias.canonical]

    return data


def from_request_shape(body, entity: str = "task") -> dict:
    """
    Normalize a request body into a patch keyed by canonical field names.

    Only keys present in ``body`` appear in the patch, so the result can be
    applied as a partial update; explicit nulls are kept.
    """
    shape = _shape(entity)
    data = dict(body)

    for name in shape.hidden:
        data.pop(name, None)

    for alias in shape.aliases:
        if alias.canonical in data or alias.alias in data:
            value = alias.pick(data)
            data.pop(alias.alias, None)
            data[alias.canonical] = value

    for name in shape.arrays:
        if name not in data:
            continue
        items = _as_list(data[name])
        inner = shape.nested.get(name)
        if inner is not None:
            items = [
                from_request_shape(item, inner) if isinstance(item, Mapping) else item
                for item in items
            ]
        data[name] = items

    for name in shape.dates:
        if name in data:
            data[name] = parse_timestamp(data[name])

    return data
