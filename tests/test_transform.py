# tests/test_transform.py

from datetime import datetime, timedelta, timezone

import pytest

from errors import ValidationError
from transform import format_timestamp, from_request_shape, parse_timestamp, to_response_shape


def test_aliases_are_emitted_with_the_same_value() -> None:
    out = to_response_shape({"id": 1, "due_date": datetime(2024, 5, 1, 9, 30), "category": "ops", "creator_id": 7})

    assert out["due_date"] == out["deadline"] == "2024-05-01T09:30:00.000Z"
    assert out["category"] == out["category_id"] == "ops"
    assert out["creator_id"] == out["user_id"] == 7


def test_arrays_are_never_null() -> None:
    out = to_response_shape({"id": 1, "tags": None})
    assert out["tags"] == []
    assert out["attachments"] == []
    assert out["comments"] == []


def test_null_array_on_input_becomes_empty_list() -> None:
    assert from_request_shape({"tags": None}) == {"tags": []}


def test_preferred_spelling_wins_when_both_are_sent() -> None:
    patch = from_request_shape({"category": "old", "category_id": "new", "deadline": "2024-01-02T00:00:00Z"})
    assert patch == {"category": "new", "due_date": datetime(2024, 1, 2)}


def test_request_patch_only_carries_sent_keys() -> None:
    assert from_request_shape({"title": "x"}) == {"title": "x"}


def test_response_shape_is_idempotent() -> None:
    once = to_response_shape({"id": 3, "due_date": "2024-02-29T23:59:59.123+02:00", "tags": ["a"]})
    assert to_response_shape(once) == once
    assert once["due_date"] == "2024-02-29T21:59:59.123Z"


def test_round_trip_returns_canonical_record() -> None:
    record = {
        "id": 9,
        "title": "Ship",
        "category": "release",
        "creator_id": 2,
        "due_date": datetime(2024, 3, 4, 5, 6, 7, 890000),
        "tags": ["a", "b"],
        "attachments": [],
        "comments": [],
    }
    assert from_request_shape(to_response_shape(record)) == record


def test_nested_members_are_shaped() -> None:
    out = to_response_shape(
        {"id": 1, "owner_id": 4, "members": [{"id": 1, "added_at": datetime(2024, 1, 1)}]},
        "project",
    )
    assert out["user_id"] == 4
    assert out["members"][0]["added_at"] == "2024-01-01T00:00:00.000Z"
    assert out["links"] == [] and out["available_categories"] == []


def test_hidden_user_fields_are_dropped() -> None:
    out = to_response_shape({"id": 1, "email": "a@b.c", "password": "h", "reset_token": "t"}, "user")
    assert "password" not in out
    assert "reset_token" not in out
    assert out["personal_tags"] == []


def test_invitation_hides_row_id() -> None:
    out = to_response_shape({"id": 5, "token": "abc"}, "invitation")
    assert out == {"token": "abc"}


def test_timestamps() -> None:
    aware = datetime(2024, 6, 1, 12, 0, tzinfo=timezone(timedelta(hours=-4)))
    assert format_timestamp(aware) == "2024-06-01T16:00:00.000Z"
    assert format_timestamp("not a date") == "not a date"
    assert format_timestamp(None) is None
    assert parse_timestamp("") is None
    with pytest.raises(ValidationError):
        parse_timestamp("yesterday")


def test_unknown_entity_is_rejected() -> None:
    with pytest.raises(ValueError):
        to_response_shape({}, "board")
