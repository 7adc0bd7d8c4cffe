"""
Roster source interface consumed by the grade sync core.
"""

from abc import ABC, abstractmethod
from typing import Dict, List

from gradesync.schemas.roster import EducationClass, SourceAssignment, Submission


class BaseRosterSource(ABC):
    """
    Source of truth for classes, assignments and submissions.

    Implementations receive an already authorized tenant; exchange_client_credentials
    switches the instance to the elevated app-only scope a background job needs.
    """

    @abstractmethod
    async def exchange_client_credentials(self, tenant_id: str) -> None:
        """Acquire an app-only token for the tenant."""
        pass

    @abstractmethod
    async def get_class(self, class_id: str) -> EducationClass:
        """Class metadata, including its external id."""
        pass

    @abstractmethod
    async def get_assignments(self, class_id: str) -> List[SourceAssignment]:
        """All assignments of a class."""
        pass

    @abstractmethod
    async def get_submissions_by_assignment(
        self,
        class_id: str,
        assignment_ids: List[str]
    ) -> Dict[str, List[Submission]]:
        """Submissions for each assignment id, fetched concurrently."""
        pass

    @abstractmethod
    async def get_student_external_id_map(self, class_id: str) -> Dict[str, str]:
        """Map of student user id to external id; empty string when unset."""
        pass
