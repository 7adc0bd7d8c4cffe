"""
Education Graph roster source client.
"""

import asyncio
import aiohttp
import logging
from typing import Dict, Any, List, Optional

from gradesync.core.config import settings
from gradesync.integrations.error_handler import RosterSourceError
from gradesync.integrations.roster.base import BaseRosterSource
from gradesync.schemas.roster import EducationClass, EducationUser, SourceAssignment, Submission


logger = logging.getLogger(__name__)


class GraphRosterClient(BaseRosterSource):
    """Reads classes, assignments, submissions and students from the education Graph API."""

    def __init__(
        self,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        access_token: Optional[str] = None
    ):
        self.client_id = client_id or settings.ROSTER_CLIENT_ID
        self.client_secret = client_secret or settings.ROSTER_CLIENT_SECRET
        self.edu_base_url = settings.ROSTER_EDU_BASE_URL.rstrip('/')
        self.edu_beta_url = settings.ROSTER_EDU_BETA_URL.rstrip('/')
        self._access_token = access_token
        self._http_session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        """Async context manager entry."""
        self._http_session = aiohttp.ClientSession(headers={'Accept': 'application/json'})
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        if self._http_session:
            await self._http_session.close()
            self._http_session = None

    async def exchange_client_credentials(self, tenant_id: str) -> None:
        if not self._http_session:
            raise RuntimeError("HTTP session not initialized")

        token_url = f"{settings.ROSTER_AUTHORITY_URL.rstrip('/')}/{tenant_id}/oauth2/v2.0/token"
        data = {
            'grant_type': 'client_credentials',
            'client_id': self.client_id,
            'client_secret': self.client_secret,
            'scope': settings.ROSTER_GRAPH_SCOPE
        }

        try:
            async with self._http_session.post(token_url, data=data) as response:
                if response.status != 200:
                    body = await response.text()
                    raise RosterSourceError(
                        f"Client credentials token grant failed for tenant {tenant_id}: {body}",
                        status_code=response.status
                    )
                token_data = await response.json(content_type=None)
        except aiohttp.ClientError as e:
            raise RosterSourceError(f"Client credentials token grant failed for tenant {tenant_id}: {e}") from e

        access_token = token_data.get('access_token')
        if not access_token:
            raise RosterSourceError(f"Token response for tenant {tenant_id} did not contain an access_token")

        self._access_token = access_token
        logger.info(f"Exchanged roster client credentials for tenant {tenant_id}")

    async def _get(self, url: str) -> Dict[str, Any]:
        if not self._http_session:
            raise RuntimeError("HTTP session not initialized")
        if not self._access_token:
            raise RosterSourceError("Roster source client has no access token")

        headers = {'Authorization': f"Bearer {self._access_token}"}
        try:
            async with self._http_session.get(url, headers=headers) as response:
                if response.status >= 400:
                    body = await response.text()
                    raise RosterSourceError(
                        f"Roster source GET {url} failed with status {response.status}: {body}",
                        status_code=response.status
                    )
                return await response.json(content_type=None)
        except aiohttp.ClientError as e:
            raise RosterSourceError(f"Roster source GET {url} failed: {e}") from e

    async def _get_collection(self, url: str) -> List[Dict[str, Any]]:
        """Follow @odata.nextLink and collect every value."""
        values: List[Dict[str, Any]] = []
        next_url: Optional[str] = url

        while next_url:
            data = await self._get(next_url)
            values.extend(data.get('value') or [])
            next_url = data.get('@odata.nextLink')

        return values

    async def get_class(self, class_id: str) -> EducationClass:
        data = await self._get(
            f"{self.edu_base_url}/classes/{class_id}?$select=id,displayName,externalId"
        )
        return EducationClass.model_validate(data)

    async def get_assignments(self, class_id: str) -> List[SourceAssignment]:
        values = await self._get_collection(f"{self.edu_beta_url}/classes/{class_id}/assignments?$expand=*")
        assignments = []
        for value in values:
            value.setdefault('classId', class_id)
            assignments.append(SourceAssignment.model_validate(value))
        return assignments

    async def get_submissions(self, class_id: str, assignment_id: str) -> List[Submission]:
        values = await self._get_collection(
            f"{self.edu_base_url}/classes/{class_id}/assignments/{assignment_id}/submissions?$expand=outcomes"
        )
        return [Submission.model_validate(value) for value in values]

    async def get_submissions_by_assignment(
        self,
        class_id: str,
        assignment_ids: List[str]
    ) -> Dict[str, List[Submission]]:
        results = await asyncio.gather(
            *[self.get_submissions(class_id, assignment_id) for assignment_id in assignment_ids]
        )
        return dict(zip(assignment_ids, results))

    async def get_students(self, class_id: str) -> List[EducationUser]:
        """
        Class members that are not teachers of the class.

        primaryRole is not reliably populated, so teachers are subtracted from members.
        """
        members, teachers = await asyncio.gather(
            self._get_collection(f"{self.edu_base_url}/classes/{class_id}/members"),
            self._get_collection(f"{self.edu_base_url}/classes/{class_id}/teachers")
        )
        teacher_ids = {teacher['id'] for teacher in teachers}
        return [
            EducationUser.model_validate(member) for member in members
            if member['id'] not in teacher_ids
        ]

    async def get_student_external_id_map(self, class_id: str) -> Dict[str, str]:
        students = await self.get_students(class_id)
        return {student.id: student.student_external_id for student in students}
