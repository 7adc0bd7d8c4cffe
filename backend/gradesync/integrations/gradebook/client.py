"""
Gradebook (OneRoster) API client.
"""

import asyncio
import aiohttp
import json
import logging
from datetime import datetime, timedelta
from typing import Dict, Any, List, Optional, Tuple
from yarl import URL

from gradesync.core.config import settings
from gradesync.core.gradebook_config import GradebookConnectionConfig, NONE_CATEGORY
from gradesync.core.security import get_token_expiry
from gradesync.integrations.error_handler import (
    GradebookApiError, GradebookAuthError, GradebookDataError
)
from gradesync.integrations.gradebook.pagination import build_page_url, PageCursor
from gradesync.models.assignment import Assignment
from gradesync.schemas.gradebook import (
    AcademicSession, Category, ClassGroup, Enrollment, GradebookClass, GradebookResourceType,
    GradebookUser, IdField, IdTypeMapping, LineItem, Result
)
from gradesync.schemas.roster import Submission


logger = logging.getLogger(__name__)


ASSIGNED_STATUS = "assigned"
FULLY_GRADED = "fully graded"
ACTIVE_STATUS = "active"


def composite_line_item_id(assignment_id: str, subclass_id: Optional[str] = None) -> str:
    """Line item sourcedId for an assignment, scoped to a subclass on group-enabled connections."""
    if subclass_id is None:
        return assignment_id
    return f"{assignment_id}-{subclass_id}"


def composite_result_id(submission_id: str, subclass_id: Optional[str] = None) -> str:
    """Result sourcedId for a submission, scoped to a subclass on group-enabled connections."""
    if subclass_id is None:
        return submission_id
    return f"{submission_id}-{subclass_id}"


def _parse_session_date(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is not None:
        parsed = (parsed - parsed.utcoffset()).replace(tzinfo=None)
    return parsed


class GradebookClient:
    """
    Client for one gradebook API connection.

    The access token is shared by every concurrent call made through the same
    instance. Refresh is guarded by an asyncio.Lock so that callers detecting an
    expired token at the same time trigger exactly one token request.
    """

    def __init__(
        self,
        page_size: Optional[int] = None,
        refresh_margin: Optional[timedelta] = None,
        vendor_auth_header: Optional[str] = None
    ):
        self.page_size = page_size or settings.GRADEBOOK_PAGE_SIZE
        self.refresh_margin = refresh_margin or timedelta(
            minutes=settings.GRADEBOOK_TOKEN_REFRESH_MARGIN_MINUTES
        )
        self.vendor_auth_header = (
            vendor_auth_header if vendor_auth_header is not None
            else settings.GRADEBOOK_VENDOR_AUTH_HEADER
        )
        self.connection: Optional[GradebookConnectionConfig] = None
        self._http_session: Optional[aiohttp.ClientSession] = None
        self._access_token: Optional[str] = None
        self._refresh_at: Optional[datetime] = None
        self._token_lock = asyncio.Lock()

    async def __aenter__(self):
        """Async context manager entry."""
        headers = {'Accept': 'application/json'}
        if self.vendor_auth_header:
            headers['x-vendor-authorization'] = self.vendor_auth_header
        self._http_session = aiohttp.ClientSession(headers=headers)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        if self._http_session:
            await self._http_session.close()
            self._http_session = None

    @property
    def base_url(self) -> str:
        if self.connection is None:
            raise RuntimeError("Gradebook connection not initialized")
        return self.connection.base_url

    async def init_connection(self, connection: GradebookConnectionConfig) -> None:
        """
        Bind the client to a connection and validate its credentials.

        Args:
            connection: Decrypted connection configuration

        Raises:
            GradebookAuthError: If the token endpoint rejects the credentials
        """
        self.connection = connection
        self._access_token = None
        self._refresh_at = None

        async with self._token_lock:
            await self._acquire_token()

    def _token_is_fresh(self) -> bool:
        return (
            self._access_token is not None
            and self._refresh_at is not None
            and datetime.utcnow() < self._refresh_at
        )

    async def get_access_token(self) -> str:
        """Return the cached token, refreshing it first when it is near expiry."""
        if self._token_is_fresh():
            return self._access_token

        async with self._token_lock:
            # Another caller may have refreshed while we waited
            if not self._token_is_fresh():
                await self._acquire_token()

        return self._access_token

    async def _acquire_token(self) -> None:
        if not self._http_session:
            raise RuntimeError("HTTP session not initialized")
        if self.connection is None:
            raise RuntimeError("Gradebook connection not initialized")

        try:
            async with self._http_session.post(
                self.connection.token_url,
                data={'grant_type': 'client_credentials'},
                auth=aiohttp.BasicAuth(self.connection.client_id, self.connection.client_secret)
            ) as response:
                if response.status != 200:
                    body = await response.text()
                    raise GradebookAuthError(f"Token request failed with status {response.status}: {body}")
                token_data = await response.json(content_type=None)
        except GradebookAuthError as e:
            raise GradebookAuthError(f"Could not validate gradebook API credentials: {e}") from e
        except aiohttp.ClientError as e:
            raise GradebookAuthError(f"Could not validate gradebook API credentials: {e}") from e

        access_token = token_data.get('access_token') if isinstance(token_data, dict) else None
        if not access_token:
            raise GradebookAuthError("Could not validate gradebook API credentials: no access_token in response")

        expires_at = get_token_expiry(access_token)
        if expires_at is None and token_data.get('expires_in') is not None:
            expires_at = datetime.utcnow() + timedelta(seconds=int(token_data['expires_in']))
        if expires_at is None:
            raise GradebookAuthError("Could not validate gradebook API credentials: token has no expiry")

        self._access_token = access_token
        self._refresh_at = expires_at - self.refresh_margin
        logger.info(
            f"Acquired gradebook token for connection {self.connection.connection_id}, "
            f"refresh at {self._refresh_at.isoformat()}"
        )

    async def _request(
        self,
        method: str,
        url: str,
        payload: Optional[Dict[str, Any]] = None
    ) -> Tuple[int, str, Optional[str]]:
        """
        Make an authenticated request.

        Returns:
            Tuple of (status, body, Link header)

        Raises:
            GradebookApiError: On transport failure
        """
        if not self._http_session:
            raise RuntimeError("HTTP session not initialized")

        token = await self.get_access_token()
        headers = {'Authorization': f"Bearer {token}"}

        try:
            async with self._http_session.request(
                method,
                URL(url, encoded=True),
                json=payload,
                headers=headers
            ) as response:
                body = await response.text()
                return response.status, body, response.headers.get('Link')
        except aiohttp.ClientError as e:
            raise GradebookApiError(f"Gradebook {method} {url} failed: {e}") from e

    async def _get_json(self, url: str) -> Tuple[Dict[str, Any], Optional[str]]:
        status, body, link = await self._request('GET', url)
        if status >= 400:
            raise GradebookApiError(body or f"Gradebook GET {url} returned {status}", status_code=status)
        return _load_json(body), link

    async def _put_json(self, url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        status, body, _ = await self._request('PUT', url, payload=payload)
        if status >= 400:
            raise GradebookApiError(body or f"Gradebook PUT {url} returned {status}", status_code=status)
        return _load_json(body)

    async def _get_paged(
        self,
        url: str,
        key: str,
        filter_field: Optional[str] = None,
        filter_value: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """Follow Link header pagination and collect the records under key from every page."""
        cursor = PageCursor(build_page_url(url, self.page_size, filter_field, filter_value))
        records: List[Dict[str, Any]] = []

        while cursor.current_url is not None:
            page, link = await self._get_json(cursor.current_url)
            records.extend(page.get(key) or [])
            cursor.advance(link)

        return records

    async def resource_exists(self, sourced_id: str, resource_type: GradebookResourceType) -> bool:
        """
        Probe a line item or result by sourcedId.

        Returns:
            True on 2xx, False on 404

        Raises:
            GradebookApiError: For any other status, carrying the response body
        """
        url = f"{self.base_url}/{resource_type.value}/{sourced_id}"
        status, body, _ = await self._request('GET', url)

        if 200 <= status < 300:
            return True
        if status == 404:
            return False
        raise GradebookApiError(body or f"Gradebook GET {url} returned {status}", status_code=status)

    async def get_active_categories(self) -> List[Category]:
        records = await self._get_paged(f"{self.base_url}/categories", 'categories')
        categories = [Category.model_validate(record) for record in records]
        return [category for category in categories if category.status == ACTIVE_STATUS]

    async def get_current_grading_period(self) -> Optional[AcademicSession]:
        """
        Find the grading period whose window contains now.

        Falls back to the session with the latest end date when none is
        current, and to None when the gradebook has no grading periods.
        """
        records = await self._get_paged(
            f"{self.base_url}/academicSessions", 'academicSessions',
            filter_field='type', filter_value='gradingPeriod'
        )

        now = datetime.utcnow()
        latest: Optional[AcademicSession] = None
        latest_end: Optional[datetime] = None

        for record in records:
            session = AcademicSession.model_validate(record)
            start = _parse_session_date(session.start_date)
            end = _parse_session_date(session.end_date)

            if start <= now <= end:
                return session

            if latest_end is None or end >= latest_end:
                latest_end = end
                latest = session

        if latest is not None:
            logger.info(f"No current grading period, using {latest.sourced_id} ending {latest_end.date()}")
        return latest

    async def get_class_group(self, class_group_id: str) -> Optional[ClassGroup]:
        url = f"{self.base_url}/classGroups/{class_group_id}"
        status, body, _ = await self._request('GET', url)
        if status == 404:
            return None
        if status >= 400:
            raise GradebookApiError(
                f"Error fetching classGroup with sourcedId={class_group_id}: {body}",
                status_code=status
            )
        data = _load_json(body).get('classGroup')
        return ClassGroup.model_validate(data) if data else None

    async def validate_class_groups(self) -> None:
        """Check that the connection exposes a classGroups endpoint."""
        status, body, _ = await self._request('GET', f"{self.base_url}/classGroups?limit=10")
        if status >= 400:
            raise GradebookApiError(
                f"Gradebook /classGroups endpoint either doesn't exist or returned an error: {body}",
                status_code=status
            )

    async def get_enrollments_by_class(self, class_sourced_id: str) -> List[Enrollment]:
        records = await self._get_paged(
            f"{self.base_url}/enrollments", 'enrollments',
            filter_field='class.sourcedId', filter_value=class_sourced_id
        )
        enrollments = [Enrollment.model_validate(record) for record in records]
        return [enrollment for enrollment in enrollments if enrollment.status in (None, ACTIVE_STATUS)]

    async def get_students_by_class(self, class_sourced_id: str) -> List[GradebookUser]:
        data, _ = await self._get_json(f"{self.base_url}/classes/{class_sourced_id}/students")
        return [GradebookUser.model_validate(user) for user in data.get('users') or []]

    async def get_teachers(self, email: Optional[str] = None) -> List[GradebookUser]:
        """Teachers, optionally filtered to those whose username or email matches."""
        data, _ = await self._get_json(f"{self.base_url}/teachers")
        teachers = [GradebookUser.model_validate(user) for user in data.get('users') or []]
        if email is None:
            return teachers
        return [teacher for teacher in teachers if email in (teacher.username, teacher.email)]

    async def get_classes(self, teacher_sourced_id: Optional[str] = None) -> List[GradebookClass]:
        if teacher_sourced_id is None:
            url = f"{self.base_url}/classes"
        else:
            url = f"{self.base_url}/teachers/{teacher_sourced_id}/classes"
        data, _ = await self._get_json(url)
        return [GradebookClass.model_validate(cls) for cls in data.get('classes') or []]

    def resolve_category_id(
        self,
        assignment: Assignment,
        class_sourced_id: str,
        categories: Optional[List[Category]]
    ) -> Optional[str]:
        """
        Pick the category id to send for an assignment in a target class.

        The chosen category is re-matched by title against the target class's
        own categories, since category ids are scoped per class.
        """
        mapping = assignment.get_category_mapping(self.connection.connection_id)
        if mapping is not None and mapping.get('catId') != NONE_CATEGORY:
            category_id = mapping['catId']
            selected = next((c for c in categories or [] if c.sourced_id == category_id), None)
            if selected is not None:
                matched = next(
                    (c for c in categories or []
                     if c.title == selected.title and c.class_sourced_id == class_sourced_id),
                    None
                )
                if matched is not None:
                    category_id = matched.sourced_id
            return category_id

        return self.connection.default_category_id

    async def create_line_item(
        self,
        sourced_id: str,
        assignment: Assignment,
        class_sourced_id: str,
        grading_period: Optional[AcademicSession] = None,
        categories: Optional[List[Category]] = None
    ) -> Optional[LineItem]:
        """
        PUT the line item for an assignment.

        Args:
            sourced_id: Line item id, composite for group-enabled connections
            assignment: Assignment being synced
            class_sourced_id: Target class (or subclass) sourcedId
            grading_period: Grading period to attach
            categories: Active categories used for title matching

        Returns:
            Line item echoed by the gradebook, if any
        """
        if assignment.status != ASSIGNED_STATUS:
            raise GradebookDataError("Cannot sync assignment that doesn't have status='assigned'")
        if assignment.max_points is None:
            raise GradebookDataError("Can't create line item assignment that doesn't have maximum points.")

        line_item = LineItem(
            sourced_id=sourced_id,
            title=assignment.display_name,
            description=assignment.description,
            due_date=assignment.due_date,
            assign_date=assignment.assigned_date,
            result_value_min=0.0,
            result_value_max=float(assignment.max_points),
            class_=IdTypeMapping(sourced_id=class_sourced_id, type="class")
        )

        if grading_period is not None and not self.connection.auto_set_grading_period:
            line_item.grading_period = IdTypeMapping(sourced_id=grading_period.sourced_id, type="academicSession")

        category_id = self.resolve_category_id(assignment, class_sourced_id, categories)
        if category_id is not None:
            line_item.category = IdTypeMapping(sourced_id=category_id, type="category")

        payload = {'lineItem': line_item.model_dump(by_alias=True, exclude_none=True)}
        data = await self._put_json(f"{self.base_url}/lineItems/{sourced_id}", payload)

        logger.info(f"Upserted line item {sourced_id} in class {class_sourced_id}")
        created = data.get('lineItem')
        return LineItem.model_validate(created) if created else None

    async def create_result(
        self,
        submission: Submission,
        student_sourced_id: str,
        assignment_id: str,
        subclass_id: Optional[str] = None
    ) -> Optional[Result]:
        """
        PUT the result for a returned submission.

        Raises:
            GradebookDataError: If the submission has no points outcome
            GradebookApiError: If the gradebook rejects the result
        """
        points = submission.points
        if points is None:
            raise GradebookDataError(
                f"Submission has missing points outcome. Student external id: {student_sourced_id} "
                f"Submission id: {submission.id}"
            )

        result_id = composite_result_id(submission.id, subclass_id)
        result = Result(
            sourced_id=result_id,
            score_status=FULLY_GRADED,
            score_date=submission.returned_date_time,
            score=points,
            student=IdField(sourced_id=student_sourced_id),
            line_item=IdField(sourced_id=composite_line_item_id(assignment_id, subclass_id))
        )

        payload = {'result': result.model_dump(by_alias=True, exclude_none=True)}
        try:
            data = await self._put_json(f"{self.base_url}/results/{result_id}", payload)
        except GradebookApiError as e:
            raise GradebookApiError(
                f"Submission with ID: {submission.id} failed on gradebook result request: {e}",
                status_code=e.status_code
            ) from e

        created = data.get('result')
        return Result.model_validate(created) if created else None


def _load_json(body: str) -> Dict[str, Any]:
    if not body:
        return {}
    try:
        data = json.loads(body)
    except ValueError as e:
        raise GradebookApiError(f"Gradebook returned invalid JSON: {e}") from e
    return data if isinstance(data, dict) else {}
