"""
Translate raw LMS API resources into canonical records.

The LMS speaks JSON:API: every resource is ``{"id", "type", "attributes",
"relationships"}``. Some concepts have been published under more than one
field name over time; each recognised spelling is listed explicitly here and
anything else raises LmsResponseShapeError instead of silently defaulting.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ValidationError, field_validator

from partner_sync.models.base import to_naive_utc

# NPCU values published through course properties are 0, 1 or 2.
MAX_NPCU_VALUE = 2

PROGRESS_PERCENT = {"completed": 100, "in_progress": 50}


class LmsResponseShapeError(ValueError):
    """Raised when an upstream resource matches no recognised shape."""

    def __init__(self, kind: str, reason: str, payload: Any = None):
        self.kind = kind
        self.reason = reason
        self.payload = payload
        super().__init__(f"Unrecognised {kind} resource: {reason}")


class _Record(BaseModel):
    @field_validator("*", mode="after")
    @classmethod
    def _naive_utc(cls, value: Any) -> Any:
        if isinstance(value, datetime):
            return to_naive_utc(value)
        return value


class LmsPersonRecord(_Record):
    id: str
    email: str
    first_name: str | None = None
    last_name: str | None = None
    created_at: datetime | None = None
    last_active_at: datetime | None = None
    deactivated_at: datetime | None = None

    @property
    def is_deactivated(self) -> bool:
        return self.deactivated_at is not None


class LmsGroupRecord(_Record):
    id: str
    name: str
    description: str | None = None
    user_count: int = 0


class LmsMembershipRecord(_Record):
    group_id: str
    user_id: str


class LmsCourseRecord(_Record):
    id: str
    name: str
    description: str | None = None
    status: str = "active"


class LmsCoursePropertiesRecord(_Record):
    course_id: str
    npcu_value: int = 0
    name: str | None = None


class LmsTranscriptRecord(_Record):
    id: str
    user_id: str
    course_id: str
    status: str = "enrolled"
    progress_percent: int = 0
    enrolled_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    expires_at: datetime | None = None
    score: float | None = None


def _resource(kind: str, item: Any) -> tuple[str, dict[str, Any]]:
    if not isinstance(item, dict):
        raise LmsResponseShapeError(kind, "resource is not an object", item)
    resource_id = item.get("id")
    if resource_id is None or resource_id == "":
        raise LmsResponseShapeError(kind, "missing id", item)
    attrs = item.get("attributes")
    if attrs is None:
        attrs = {}
    if not isinstance(attrs, dict):
        raise LmsResponseShapeError(kind, "attributes is not an object", item)
    return str(resource_id), attrs


def _build(kind: str, model: type[_Record], item: Any, **fields: Any) -> Any:
    try:
        return model(**fields)
    except ValidationError as e:
        raise LmsResponseShapeError(kind, str(e), item) from e


def parse_person(item: Any) -> LmsPersonRecord:
    """Parse a ``people`` resource. Email is required and stored lower-cased."""
    person_id, attrs = _resource("person", item)
    email = attrs.get("email")
    if not isinstance(email, str) or "@" not in email:
        raise LmsResponseShapeError("person", "missing or invalid email", item)

    return _build(
        "person",
        LmsPersonRecord,
        item,
        id=person_id,
        email=email.strip().lower(),
        first_name=attrs.get("first_name") or None,
        last_name=attrs.get("last_name") or None,
        created_at=attrs.get("created_at"),
        last_active_at=attrs.get("last_active_at"),
        deactivated_at=attrs.get("deactivated_at"),
    )


def parse_group(item: Any) -> LmsGroupRecord:
    group_id, attrs = _resource("group", item)
    name = attrs.get("name")
    if not isinstance(name, str) or not name.strip():
        raise LmsResponseShapeError("group", "missing name", item)

    return _build(
        "group",
        LmsGroupRecord,
        item,
        id=group_id,
        name=name,
        description=attrs.get("description") or None,
        user_count=attrs.get("user_count") or 0,
    )


def parse_membership(group_id: str, item: Any) -> LmsMembershipRecord:
    """
    Parse a group membership resource.

    The person id is published in one of three places:
      - ``relationships.person.data.id`` (memberships endpoint)
      - ``attributes.user_id`` (older memberships payloads)
      - the resource id itself when the resource type is ``people``
    """
    if not isinstance(item, dict):
        raise LmsResponseShapeError("membership", "resource is not an object", item)

    person = ((item.get("relationships") or {}).get("person") or {}).get("data") or {}
    user_id = person.get("id") if isinstance(person, dict) else None

    if user_id is None:
        user_id = (item.get("attributes") or {}).get("user_id")

    if user_id is None and item.get("type") == "people":
        user_id = item.get("id")

    if user_id is None or user_id == "":
        raise LmsResponseShapeError("membership", "no person id", item)

    return LmsMembershipRecord(group_id=group_id, user_id=str(user_id))


def parse_course(item: Any) -> LmsCourseRecord:
    """Parse a ``courses`` resource. The display name is ``name`` or ``title``."""
    course_id, attrs = _resource("course", item)
    name = attrs.get("name") or attrs.get("title")
    if not isinstance(name, str) or not name.strip():
        raise LmsResponseShapeError("course", "missing name/title", item)

    return _build(
        "course",
        LmsCourseRecord,
        item,
        id=course_id,
        name=name,
        description=attrs.get("description") or None,
        status=attrs.get("status") or "active",
    )


def parse_npcu(value: Any) -> int:
    """Coerce a published NPCU property to 0..2; anything else counts as 0."""
    if value is None or value == "":
        return 0
    try:
        npcu = int(value)
    except (TypeError, ValueError):
        return 0
    if npcu < 0 or npcu > MAX_NPCU_VALUE:
        return 0
    return npcu


def parse_course_properties(item: Any) -> LmsCoursePropertiesRecord:
    course_id, attrs = _resource("course properties", item)
    properties = attrs.get("properties") or {}
    if not isinstance(properties, dict):
        raise LmsResponseShapeError("course properties", "properties is not an object", item)

    return LmsCoursePropertiesRecord(
        course_id=course_id,
        npcu_value=parse_npcu(properties.get("npcu")),
        name=properties.get("name") or None,
    )


def parse_transcript(user_id: str, item: Any) -> LmsTranscriptRecord | None:
    """
    Parse a transcript item for ``user_id``.

    Returns None for non-course resources (learning paths, events).
    """
    transcript_id, attrs = _resource("transcript", item)
    if attrs.get("resource_type") != "course":
        return None

    course_id = attrs.get("resource_id")
    if course_id is None or course_id == "":
        raise LmsResponseShapeError("transcript", "course item without resource_id", item)

    status = attrs.get("progress_status") or "enrolled"
    return _build(
        "transcript",
        LmsTranscriptRecord,
        item,
        id=transcript_id,
        user_id=user_id,
        course_id=str(course_id),
        status=status,
        progress_percent=PROGRESS_PERCENT.get(status, 0),
        enrolled_at=attrs.get("enrolled_at"),
        started_at=attrs.get("started_at"),
        completed_at=attrs.get("completed_at"),
        expires_at=attrs.get("expires_at"),
        score=attrs.get("score"),
    )
