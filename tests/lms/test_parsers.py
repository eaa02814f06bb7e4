"""
Tests for LMS resource parsing.
"""

from datetime import datetime

import pytest

from partner_sync.lms.parsers import (
    LmsResponseShapeError,
    parse_course,
    parse_course_properties,
    parse_group,
    parse_membership,
    parse_npcu,
    parse_person,
    parse_transcript,
)


def test_parse_person_lowercases_email_and_converts_times():
    record = parse_person(
        {
            "id": "p1",
            "type": "people",
            "attributes": {
                "email": " Jane@Acme.COM ",
                "first_name": "Jane",
                "last_name": "",
                "created_at": "2024-01-02T03:04:05+02:00",
                "deactivated_at": None,
            },
        }
    )

    assert record.id == "p1"
    assert record.email == "jane@acme.com"
    assert record.last_name is None
    assert record.created_at == datetime(2024, 1, 2, 1, 4, 5)
    assert record.created_at.tzinfo is None
    assert not record.is_deactivated


def test_parse_person_deactivated():
    record = parse_person(
        {"id": 7, "attributes": {"email": "x@acme.com", "deactivated_at": "2024-05-01T00:00:00Z"}}
    )

    assert record.id == "7"
    assert record.is_deactivated


@pytest.mark.parametrize(
    "item",
    [
        None,
        "people",
        {"attributes": {"email": "x@acme.com"}},
        {"id": "p1", "attributes": {}},
        {"id": "p1", "attributes": {"email": "not-an-email"}},
        {"id": "p1", "attributes": ["email"]},
    ],
)
def test_parse_person_rejects_bad_shapes(item):
    with pytest.raises(LmsResponseShapeError):
        parse_person(item)


def test_parse_group():
    record = parse_group({"id": "g1", "attributes": {"name": "ptr_Acme", "user_count": 3}})

    assert record.name == "ptr_Acme"
    assert record.user_count == 3

    with pytest.raises(LmsResponseShapeError, match="missing name"):
        parse_group({"id": "g1", "attributes": {"name": "  "}})


@pytest.mark.parametrize(
    "item",
    [
        {"id": "m1", "relationships": {"person": {"data": {"id": "p1"}}}},
        {"id": "m1", "attributes": {"user_id": "p1"}},
        {"id": "p1", "type": "people", "attributes": {"email": "x@acme.com"}},
    ],
)
def test_parse_membership_person_id_locations(item):
    record = parse_membership("g1", item)

    assert record.group_id == "g1"
    assert record.user_id == "p1"


def test_parse_membership_without_person_id():
    with pytest.raises(LmsResponseShapeError, match="no person id"):
        parse_membership("g1", {"id": "m1", "type": "memberships", "attributes": {}})


def test_parse_course_name_or_title():
    assert parse_course({"id": "c1", "attributes": {"name": "K2 Basics"}}).name == "K2 Basics"
    assert parse_course({"id": "c2", "attributes": {"title": "RPA 101"}}).name == "RPA 101"

    with pytest.raises(LmsResponseShapeError):
        parse_course({"id": "c3", "attributes": {}})


@pytest.mark.parametrize(
    ("value", "expected"),
    [(None, 0), ("", 0), (1, 1), ("2", 2), (3, 0), (-1, 0), ("abc", 0), (0, 0)],
)
def test_parse_npcu(value, expected):
    assert parse_npcu(value) == expected


def test_parse_course_properties():
    record = parse_course_properties(
        {"id": "c1", "attributes": {"properties": {"npcu": "2", "name": "Old Cert"}}}
    )

    assert record.course_id == "c1"
    assert record.npcu_value == 2
    assert record.name == "Old Cert"

    assert parse_course_properties({"id": "c2", "attributes": {}}).npcu_value == 0


def test_parse_transcript_course_item():
    record = parse_transcript(
        "p1",
        {
            "id": "t1",
            "attributes": {
                "resource_type": "course",
                "resource_id": "c1",
                "progress_status": "completed",
                "completed_at": "2024-03-01T12:00:00Z",
                "score": 92.5,
            },
        },
    )

    assert record is not None
    assert record.user_id == "p1"
    assert record.course_id == "c1"
    assert record.progress_percent == 100
    assert record.completed_at == datetime(2024, 3, 1, 12, 0)
    assert record.score == 92.5


def test_parse_transcript_skips_non_course_items():
    item = {"id": "t2", "attributes": {"resource_type": "learning_path", "resource_id": "lp1"}}

    assert parse_transcript("p1", item) is None


def test_parse_transcript_course_without_resource_id():
    with pytest.raises(LmsResponseShapeError):
        parse_transcript("p1", {"id": "t3", "attributes": {"resource_type": "course"}})
