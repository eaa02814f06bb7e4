"""
Pytest configuration and fixtures for the partner sync tests.

Each test gets its own SQLite database file and an in-memory stand-in for
the LMS API.
"""

from collections.abc import AsyncGenerator, Iterable
from datetime import datetime

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from partner_sync.db.connection import build_engine
from partner_sync.lms.client import LmsApiError, MemberChange
from partner_sync.models import (
    Base,
    ContactModel,
    LmsCourseModel,
    LmsEnrollmentModel,
    LmsGroupMemberModel,
    LmsGroupModel,
    LmsUserModel,
    PartnerModel,
    PendingSource,
    UserStatus,
    utcnow,
)
from partner_sync.settings import clear_settings_cache, get_settings


@pytest.fixture(autouse=True)
def settings(monkeypatch):
    """Settings with every pacing delay switched off."""
    monkeypatch.setenv("PPS_ENV", "local")
    monkeypatch.setenv("PPS_SYNC_BATCH_DELAY_SECONDS", "0")
    monkeypatch.setenv("PPS_MEMBERSHIP_ADD_DELAY_SECONDS", "0")
    monkeypatch.setenv("PPS_LMS_PAGE_DELAY_SECONDS", "0")
    clear_settings_cache()
    yield get_settings()
    clear_settings_cache()


@pytest_asyncio.fixture(scope="function")
async def async_engine(tmp_path):
    """Create a test database engine."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def async_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    factory = async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)

    async with factory() as session:
        yield session
        await session.rollback()


# ============================================================================
# Fake LMS
# ============================================================================


class FakeLms:
    """
    In-memory LMS speaking the same JSON:API shapes as the real one.

    Use ``fail(method, key)`` to make a call raise, and ``hide_new_members``
    to keep freshly added members out of membership listings.
    """

    def __init__(self):
        self.people: dict[str, dict] = {}
        self.people_updated: dict[str, datetime] = {}
        self.groups: dict[str, dict] = {}
        self.members: dict[str, set[str]] = {}
        self.hidden_members: dict[str, set[str]] = {}
        self.courses: dict[str, dict] = {}
        self.properties: dict[str, dict] = {}
        self.transcripts: dict[str, list[dict]] = {}
        self.failures: dict[tuple[str, str | None], Exception] = {}
        self.calls: list[tuple[str, str | None]] = []
        self.hide_new_members = False
        self._created = 0

    # -- setup ---------------------------------------------------------------

    def fail(self, method: str, key: str | None = None, error: Exception | None = None):
        self.failures[(method, key)] = error or LmsApiError(500, f"/{method}")

    def add_person(
        self,
        person_id: str,
        email: str,
        first_name: str | None = None,
        last_name: str | None = None,
        deactivated_at: str | None = None,
        updated_at: datetime | None = None,
    ) -> dict:
        resource = {
            "id": person_id,
            "type": "people",
            "attributes": {
                "email": email,
                "first_name": first_name,
                "last_name": last_name,
                "deactivated_at": deactivated_at,
            },
        }
        self.people[person_id] = resource
        if updated_at is not None:
            self.people_updated[person_id] = updated_at
        return resource

    def add_group(self, group_id: str, name: str, members: Iterable[str] = ()) -> dict:
        resource = {"id": group_id, "type": "groups", "attributes": {"name": name}}
        self.groups[group_id] = resource
        self.members[group_id] = set(members)
        return resource

    def publish_members(self) -> None:
        for group_id, hidden in self.hidden_members.items():
            self.members.setdefault(group_id, set()).update(hidden)
        self.hidden_members.clear()

    def add_course(self, course_id: str, name: str, npcu: int | None = None) -> dict:
        resource = {"id": course_id, "type": "courses", "attributes": {"name": name}}
        self.courses[course_id] = resource
        if npcu is not None:
            self.set_npcu(course_id, npcu, name)
        return resource

    def set_npcu(self, course_id: str, npcu: int, name: str | None = None) -> None:
        self.properties[course_id] = {
            "id": course_id,
            "type": "course_properties",
            "attributes": {"properties": {"npcu": npcu, "name": name}},
        }

    def add_transcript(
        self,
        user_id: str,
        transcript_id: str,
        course_id: str,
        status: str = "completed",
        completed_at: str | None = None,
        expires_at: str | None = None,
    ) -> dict:
        item = {
            "id": transcript_id,
            "type": "transcript_items",
            "attributes": {
                "resource_type": "course",
                "resource_id": course_id,
                "progress_status": status,
                "completed_at": completed_at,
                "expires_at": expires_at,
            },
        }
        self.transcripts.setdefault(user_id, []).append(item)
        return item

    # -- LmsApi --------------------------------------------------------------

    def _check(self, method: str, key: str | None = None) -> None:
        self.calls.append((method, key))
        error = self.failures.get((method, key)) or self.failures.get((method, None))
        if error is not None:
            raise error

    def _require_group(self, group_id: str) -> None:
        if group_id not in self.groups:
            raise LmsApiError(404, f"/v2/groups/{group_id}")

    async def list_people(self, updated_since: datetime | None = None) -> list[dict]:
        self._check("list_people")
        if updated_since is None:
            return list(self.people.values())
        return [
            person
            for person_id, person in self.people.items()
            if self.people_updated.get(person_id, datetime.min) >= updated_since
        ]

    async def find_person_by_email(self, email: str) -> dict | None:
        self._check("find_person_by_email", email)
        for person in self.people.values():
            if person["attributes"]["email"].lower() == email.lower():
                return person
        return None

    async def list_groups(self) -> list[dict]:
        self._check("list_groups")
        for group_id, group in self.groups.items():
            group["attributes"]["user_count"] = len(self.members.get(group_id, ()))
        return list(self.groups.values())

    async def get_group(self, group_id: str) -> dict:
        self._check("get_group", group_id)
        self._require_group(group_id)
        return self.groups[group_id]

    async def list_group_memberships(self, group_id: str) -> list[dict]:
        self._check("list_group_memberships", group_id)
        self._require_group(group_id)
        return [
            {
                "id": f"{group_id}:{user_id}",
                "type": "memberships",
                "relationships": {"person": {"data": {"type": "people", "id": user_id}}},
            }
            for user_id in sorted(self.members.get(group_id, set()))
        ]

    async def add_group_member(self, group_id: str, user_id: str) -> MemberChange:
        self._check("add_group_member", user_id)
        self._require_group(group_id)
        visible = self.members.setdefault(group_id, set())
        hidden = self.hidden_members.setdefault(group_id, set())
        if user_id in visible or user_id in hidden:
            return MemberChange.ALREADY
        (hidden if self.hide_new_members else visible).add(user_id)
        return MemberChange.SUCCESS

    async def remove_group_member(self, group_id: str, user_id: str) -> MemberChange:
        self._check("remove_group_member", user_id)
        self._require_group(group_id)
        members = self.members.get(group_id, set())
        if user_id not in members:
            return MemberChange.ALREADY
        members.discard(user_id)
        return MemberChange.SUCCESS

    async def create_group(self, name: str) -> dict:
        self._check("create_group", name)
        self._created += 1
        return self.add_group(f"grp-new-{self._created}", name)

    async def rename_group(self, group_id: str, name: str) -> dict:
        self._check("rename_group", group_id)
        self._require_group(group_id)
        self.groups[group_id]["attributes"]["name"] = name
        return self.groups[group_id]

    async def delete_group(self, group_id: str) -> None:
        self._check("delete_group", group_id)
        self._require_group(group_id)
        del self.groups[group_id]
        self.members.pop(group_id, None)

    async def list_courses(self) -> list[dict]:
        self._check("list_courses")
        return list(self.courses.values())

    async def list_course_properties(self) -> list[dict]:
        self._check("list_course_properties")
        return list(self.properties.values())

    async def list_transcripts(self, person_id: str) -> list[dict]:
        self._check("list_transcripts", person_id)
        return list(self.transcripts.get(person_id, []))


@pytest.fixture
def fake_lms() -> FakeLms:
    return FakeLms()


# ============================================================================
# Database seeding
# ============================================================================


class Seeder:
    """Insert rows directly into the local mirror and CRM tables."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _add(self, row):
        self.session.add(row)
        await self.session.flush()
        return row

    async def partner(self, name: str, tier: str | None = None) -> PartnerModel:
        return await self._add(PartnerModel(account_name=name, partner_tier=tier))

    async def contact(
        self,
        email: str,
        partner_id: int | None = None,
        first_name: str | None = None,
        last_name: str | None = None,
    ) -> ContactModel:
        return await self._add(
            ContactModel(
                email=email, partner_id=partner_id, first_name=first_name, last_name=last_name
            )
        )

    async def user(
        self,
        user_id: str,
        email: str,
        status: UserStatus = UserStatus.ACTIVE,
        contact_id: int | None = None,
    ) -> LmsUserModel:
        return await self._add(
            LmsUserModel(id=user_id, email=email, status=status.value, contact_id=contact_id)
        )

    async def group(
        self,
        group_id: str,
        name: str,
        partner_id: int | None = None,
        is_active: bool = True,
    ) -> LmsGroupModel:
        return await self._add(
            LmsGroupModel(
                id=group_id,
                name=name,
                partner_id=partner_id,
                is_active=is_active,
                blocked_domains=[],
                custom_domains=[],
            )
        )

    async def member(
        self,
        group_id: str,
        user_id: str,
        source: PendingSource = PendingSource.API,
        missed_syncs: int = 0,
    ) -> LmsGroupMemberModel:
        return await self._add(
            LmsGroupMemberModel(
                group_id=group_id,
                user_id=user_id,
                pending_source=source.value,
                added_at=utcnow(),
                missed_syncs=missed_syncs,
            )
        )

    async def course(
        self,
        course_id: str,
        name: str,
        npcu: int = 0,
        category: str | None = None,
    ) -> LmsCourseModel:
        return await self._add(
            LmsCourseModel(
                id=course_id,
                name=name,
                npcu_value=npcu,
                is_certification=npcu > 0,
                certification_category=category,
            )
        )

    async def enrollment(
        self,
        enrollment_id: str,
        user_id: str,
        course_id: str,
        completed_at: datetime | None = None,
        expires_at: datetime | None = None,
    ) -> LmsEnrollmentModel:
        return await self._add(
            LmsEnrollmentModel(
                id=enrollment_id,
                user_id=user_id,
                course_id=course_id,
                status="completed" if completed_at else "in_progress",
                completed_at=completed_at,
                expires_at=expires_at,
            )
        )


@pytest.fixture
def seed(async_session) -> Seeder:
    return Seeder(async_session)
