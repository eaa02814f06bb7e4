"""
HTTP client for the LMS (Northpass) REST API.

Usage:
    async with LmsClient() as client:
        people = await client.list_people()
        await client.add_group_member(group_id, person_id)

Returns raw JSON:API resources; translation into canonical records lives in
partner_sync.lms.parsers so that one malformed record can be skipped
without losing the page it arrived on.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Protocol

import httpx

from partner_sync.models.base import utcnow
from partner_sync.settings import Settings, get_settings

logger = logging.getLogger(__name__)

MAX_CONSECUTIVE_ERRORS = 5

TRANSIENT_STATUS_CODES = frozenset({429, 500, 502, 503, 504})

# Responses the LMS uses when a person is already in the group.
ALREADY_MEMBER_STATUS_CODES = frozenset({409, 422})


class LmsApiError(Exception):
    """Raised for any non-2xx response from the LMS API."""

    def __init__(self, status_code: int, endpoint: str, detail: str | None = None):
        self.status_code = status_code
        self.endpoint = endpoint
        self.detail = detail
        super().__init__(self._message())

    def _message(self) -> str:
        status = self.status_code
        if status == 401:
            return "LMS API authentication failed - check API key"
        if status == 403:
            return "LMS API access forbidden - check permissions"
        if status == 404:
            return f"LMS API endpoint not found: {self.endpoint}"
        if status == 429:
            return "LMS API rate limit exceeded"
        if status == 500:
            return "LMS API internal server error - API may be down"
        if status in (502, 503, 504):
            return f"LMS API unavailable ({status}) - API may be down"
        return f"LMS API error ({status}): {self.detail or 'Unknown error'}"

    @property
    def is_transient(self) -> bool:
        return self.status_code in TRANSIENT_STATUS_CODES

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404


class LmsTransientError(Exception):
    """Raised when the LMS cannot be reached (connection failure or timeout)."""

    def __init__(self, endpoint: str, cause: Exception):
        self.endpoint = endpoint
        self.cause = cause
        super().__init__(f"LMS API request to {endpoint} failed: {cause}")


# Errors from a single upstream call. Anything else is a bug and propagates.
LMS_ERRORS = (LmsApiError, LmsTransientError)


class MemberChange(str, Enum):
    """Outcome of a single remote membership add/remove."""

    SUCCESS = "success"
    ALREADY = "already"
    FAILED = "failed"


class HealthState(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass
class ApiHealth:
    """Consecutive-failure counter for the LMS API."""

    consecutive_errors: int = 0
    last_success: datetime | None = None

    @property
    def status(self) -> HealthState:
        if self.consecutive_errors == 0:
            return HealthState.HEALTHY
        if self.consecutive_errors < MAX_CONSECUTIVE_ERRORS:
            return HealthState.DEGRADED
        return HealthState.UNHEALTHY

    @property
    def is_healthy(self) -> bool:
        return self.consecutive_errors < MAX_CONSECUTIVE_ERRORS

    def record_success(self) -> None:
        self.consecutive_errors = 0
        self.last_success = utcnow()

    def record_failure(self) -> None:
        self.consecutive_errors += 1
        if self.consecutive_errors == MAX_CONSECUTIVE_ERRORS:
            logger.error(
                "%d consecutive LMS API failures, marking API unhealthy",
                self.consecutive_errors,
            )


class LmsApi(Protocol):
    """The LMS operations the sync engine depends on."""

    async def list_people(self, updated_since: datetime | None = None) -> list[dict]: ...

    async def find_person_by_email(self, email: str) -> dict | None: ...

    async def list_groups(self) -> list[dict]: ...

    async def get_group(self, group_id: str) -> dict: ...

    async def list_group_memberships(self, group_id: str) -> list[dict]: ...

    async def add_group_member(self, group_id: str, user_id: str) -> MemberChange: ...

    async def remove_group_member(self, group_id: str, user_id: str) -> MemberChange: ...

    async def create_group(self, name: str) -> dict: ...

    async def rename_group(self, group_id: str, name: str) -> dict: ...

    async def delete_group(self, group_id: str) -> None: ...

    async def list_courses(self) -> list[dict]: ...

    async def list_course_properties(self) -> list[dict]: ...

    async def list_transcripts(self, person_id: str) -> list[dict]: ...


class LmsClient:
    """
    Async client for the LMS REST API.

    Every call carries the configured timeout. Connection failures and
    timeouts are retried up to ``lms_max_retries`` times, as are 429/5xx
    responses; everything else surfaces immediately as LmsApiError.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings or get_settings()
        self.base_url = self.settings.lms_api_url.rstrip("/")
        self.health = ApiHealth()
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "LmsClient":
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "X-Api-Key": self.settings.lms_api_key,
                "Accept": "application/json",
                "Content-Type": "application/json",
            },
            timeout=self.settings.lms_timeout_seconds,
            transport=self._transport,
        )
        return self

    async def __aexit__(self, *args):
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("Client not initialized. Use 'async with LmsClient() as client:'")
        return self._client

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> Any:
        """
        Send one request, retrying transient failures.

        Returns:
            Decoded JSON body, or None for empty responses

        Raises:
            LmsApiError: Non-2xx response (after retries for 429/5xx)
            LmsTransientError: Connection failure or timeout (after retries)
        """
        attempts = self.settings.lms_max_retries + 1

        for attempt in range(1, attempts + 1):
            try:
                response = await self.client.request(method, path, params=params, json=json)
            except httpx.TransportError as e:
                self.health.record_failure()
                if attempt < attempts:
                    logger.warning("%s %s failed (%s), retrying", method, path, e)
                    continue
                raise LmsTransientError(path, e) from e

            if response.is_success:
                self.health.record_success()
                if not response.content:
                    return None
                return response.json()

            self.health.record_failure()
            error = LmsApiError(response.status_code, path, _error_detail(response))
            if error.is_transient and attempt < attempts:
                logger.warning("%s %s returned %d, retrying", method, path, response.status_code)
                continue
            raise error

        raise AssertionError("unreachable")

    async def fetch_all_pages(
        self,
        path: str,
        params: dict[str, Any] | None = None,
    ) -> list[dict]:
        """
        Collect every resource from a paginated list endpoint.

        Follows ``links.next`` until it is absent or a page comes back empty,
        pausing between pages and stopping at ``lms_max_pages``.
        """
        items: list[dict] = []
        page = 1

        while page <= self.settings.lms_max_pages:
            query = {**(params or {}), "page": page, "limit": self.settings.lms_page_size}
            body = await self._request("GET", path, params=query) or {}
            data = body.get("data") or []
            items.extend(data)
            logger.debug("%s page %d: %d items (total %d)", path, page, len(data), len(items))

            if not data or not (body.get("links") or {}).get("next"):
                return items

            page += 1
            if self.settings.lms_page_delay_seconds:
                await asyncio.sleep(self.settings.lms_page_delay_seconds)

        logger.warning("%s: stopped after %d pages", path, self.settings.lms_max_pages)
        return items

    # ------------------------------------------------------------------
    # People
    # ------------------------------------------------------------------

    async def list_people(self, updated_since: datetime | None = None) -> list[dict]:
        params = {}
        if updated_since is not None:
            params["filter[updated_at][gteq]"] = updated_since.isoformat()
        return await self.fetch_all_pages("/v2/people", params)

    async def find_person_by_email(self, email: str) -> dict | None:
        """Look up a person by email; returns None when there is no such person."""
        body = await self._request(
            "GET", "/v2/people", params={"filter[email][eq]": email.strip().lower()}
        )
        data = (body or {}).get("data") or []
        return data[0] if data else None

    # ------------------------------------------------------------------
    # Groups
    # ------------------------------------------------------------------

    async def list_groups(self) -> list[dict]:
        return await self.fetch_all_pages("/v2/groups")

    async def get_group(self, group_id: str) -> dict:
        body = await self._request("GET", f"/v2/groups/{group_id}")
        return (body or {}).get("data") or {}

    async def list_group_memberships(self, group_id: str) -> list[dict]:
        return await self.fetch_all_pages(f"/v2/groups/{group_id}/memberships")

    async def add_group_member(self, group_id: str, user_id: str) -> MemberChange:
        """
        Add one person to a group.

        Returns:
            SUCCESS, or ALREADY when the LMS reports an existing membership

        Raises:
            LmsApiError: Any other rejection
        """
        try:
            await self._request(
                "POST",
                f"/v2/groups/{group_id}/relationships/people",
                json={"data": [{"type": "people", "id": user_id}]},
            )
        except LmsApiError as e:
            already = "already" in (e.detail or "").lower()
            if e.status_code in ALREADY_MEMBER_STATUS_CODES or already:
                return MemberChange.ALREADY
            raise
        return MemberChange.SUCCESS

    async def remove_group_member(self, group_id: str, user_id: str) -> MemberChange:
        """Remove one person from a group; a 404 means they were not a member."""
        try:
            await self._request(
                "DELETE",
                f"/v2/groups/{group_id}/relationships/people",
                json={"data": [{"type": "people", "id": user_id}]},
            )
        except LmsApiError as e:
            if e.is_not_found:
                return MemberChange.ALREADY
            raise
        return MemberChange.SUCCESS

    async def create_group(self, name: str) -> dict:
        body = await self._request(
            "POST",
            "/v2/groups",
            json={"data": {"type": "groups", "attributes": {"name": name}}},
        )
        return (body or {}).get("data") or {}

    async def rename_group(self, group_id: str, name: str) -> dict:
        body = await self._request(
            "PATCH",
            f"/v2/groups/{group_id}",
            json={"data": {"type": "groups", "id": group_id, "attributes": {"name": name}}},
        )
        return (body or {}).get("data") or {}

    async def delete_group(self, group_id: str) -> None:
        await self._request("DELETE", f"/v2/groups/{group_id}")

    # ------------------------------------------------------------------
    # Courses and transcripts
    # ------------------------------------------------------------------

    async def list_courses(self) -> list[dict]:
        return await self.fetch_all_pages("/v2/courses")

    async def list_course_properties(self) -> list[dict]:
        return await self.fetch_all_pages("/v2/properties/courses")

    async def list_transcripts(self, person_id: str) -> list[dict]:
        return await self.fetch_all_pages(f"/v2/transcripts/{person_id}")


def _error_detail(response: httpx.Response) -> str | None:
    try:
        body = response.json()
    except ValueError:
        return response.text or None
    if isinstance(body, dict):
        errors = body.get("errors")
        if isinstance(errors, list) and errors and isinstance(errors[0], dict):
            return errors[0].get("detail") or errors[0].get("title")
        return body.get("error")
    return None
