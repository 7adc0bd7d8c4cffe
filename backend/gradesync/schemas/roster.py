"""
Pydantic schemas for roster source (education Graph) payloads.
"""

from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, List
from enum import Enum


POINTS_OUTCOME_TYPE = "#microsoft.graph.educationPointsOutcome"


class SubmissionStatus(str, Enum):
    """Lifecycle of a student submission in the roster source."""
    WORKING = "working"
    SUBMITTED = "submitted"
    RETURNED = "returned"
    REASSIGNED = "reassigned"


class GradingInfo(BaseModel):
    max_points: Optional[int] = Field(None, alias="maxPoints")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class GradingCategoryInfo(BaseModel):
    display_name: Optional[str] = Field(None, alias="displayName")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class Instructions(BaseModel):
    content_type: Optional[str] = Field(None, alias="contentType")
    content: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class SourceAssignment(BaseModel):
    """Assignment as returned by the roster source."""
    id: str
    class_id: str = Field(..., alias="classId")
    display_name: Optional[str] = Field(None, alias="displayName")
    assigned_date_time: Optional[str] = Field(None, alias="assignedDateTime")
    due_date_time: Optional[str] = Field(None, alias="dueDateTime")
    status: Optional[str] = None
    grading: Optional[GradingInfo] = None
    grading_category: Optional[GradingCategoryInfo] = Field(None, alias="gradingCategory")
    instructions: Optional[Instructions] = None

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @property
    def max_points(self) -> Optional[int]:
        return self.grading.max_points if self.grading else None

    @property
    def grading_category_name(self) -> Optional[str]:
        return self.grading_category.display_name if self.grading_category else None

    @property
    def description(self) -> Optional[str]:
        return self.instructions.content if self.instructions else None


class PointsGrade(BaseModel):
    points: Optional[float] = None


class Outcome(BaseModel):
    odata_type: Optional[str] = Field(None, alias="@odata.type")
    points: Optional[PointsGrade] = None
    published_points: Optional[PointsGrade] = Field(None, alias="publishedPoints")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class IdentityUser(BaseModel):
    id: str


class SubmittedBy(BaseModel):
    user: IdentityUser


class Submission(BaseModel):
    id: str
    status: Optional[str] = None  # open set, see SubmissionStatus
    submitted_date_time: Optional[str] = Field(None, alias="submittedDateTime")
    returned_date_time: Optional[str] = Field(None, alias="returnedDateTime")
    submitted_by: SubmittedBy = Field(..., alias="submittedBy")
    outcomes: List[Outcome] = []

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @property
    def user_id(self) -> str:
        return self.submitted_by.user.id

    @property
    def points(self) -> Optional[float]:
        """Points from the first points outcome, if one was returned."""
        for outcome in self.outcomes:
            if outcome.odata_type == POINTS_OUTCOME_TYPE:
                return outcome.points.points if outcome.points else None
        return None


class ExternalIdHolder(BaseModel):
    external_id: Optional[str] = Field(None, alias="externalId")

    model_config = ConfigDict(populate_by_name=True)


class EducationUser(BaseModel):
    id: str
    display_name: Optional[str] = Field(None, alias="displayName")
    user_principal_name: Optional[str] = Field(None, alias="userPrincipalName")
    primary_role: Optional[str] = Field(None, alias="primaryRole")
    student: Optional[ExternalIdHolder] = None
    teacher: Optional[ExternalIdHolder] = None

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @property
    def student_external_id(self) -> str:
        """Student external id, or an empty string when it was never set."""
        if self.student is None or self.student.external_id is None:
            return ""
        return self.student.external_id


class EducationClass(BaseModel):
    id: str
    display_name: Optional[str] = Field(None, alias="displayName")
    external_id: Optional[str] = Field(None, alias="externalId")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")
