"""
Pydantic schemas for gradebook (OneRoster) API payloads.
"""

from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, List
from enum import Enum


class GradebookResourceType(str, Enum):
    """Gradebook resources that can be probed and upserted by sourcedId."""
    LINE_ITEM = "lineItems"
    RESULT = "results"


class IdTypeMapping(BaseModel):
    """Reference to another resource by sourcedId and type."""
    sourced_id: str = Field(..., alias="sourcedId")
    type: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class IdField(BaseModel):
    """Reference to another resource by sourcedId only."""
    sourced_id: str = Field(..., alias="sourcedId")

    model_config = ConfigDict(populate_by_name=True)


class CategoryMetadata(BaseModel):
    class_sourced_id: Optional[str] = Field(None, alias="classId")

    model_config = ConfigDict(populate_by_name=True, extra="allow")


class Category(BaseModel):
    """Line item category; ids are usually scoped to one class."""
    sourced_id: str = Field(..., alias="sourcedId")
    status: Optional[str] = None
    title: Optional[str] = None
    metadata: Optional[CategoryMetadata] = None

    model_config = ConfigDict(populate_by_name=True)

    @property
    def class_sourced_id(self) -> Optional[str]:
        return self.metadata.class_sourced_id if self.metadata else None


class AcademicSession(BaseModel):
    sourced_id: str = Field(..., alias="sourcedId")
    type: Optional[str] = None
    title: Optional[str] = None
    start_date: str = Field(..., alias="startDate")
    end_date: str = Field(..., alias="endDate")

    model_config = ConfigDict(populate_by_name=True)


class LineItem(BaseModel):
    sourced_id: str = Field(..., alias="sourcedId")
    title: Optional[str] = None
    description: Optional[str] = None
    due_date: Optional[str] = Field(None, alias="dueDate")
    assign_date: Optional[str] = Field(None, alias="assignDate")
    result_value_min: Optional[float] = Field(None, alias="resultValueMin")
    result_value_max: Optional[float] = Field(None, alias="resultValueMax")
    class_: Optional[IdTypeMapping] = Field(None, alias="class")
    grading_period: Optional[IdTypeMapping] = Field(None, alias="gradingPeriod")
    category: Optional[IdTypeMapping] = None

    model_config = ConfigDict(populate_by_name=True)


class Result(BaseModel):
    sourced_id: str = Field(..., alias="sourcedId")
    score_status: Optional[str] = Field(None, alias="scoreStatus")
    score_date: Optional[str] = Field(None, alias="scoreDate")
    score: Optional[float] = None
    student: Optional[IdField] = None
    line_item: Optional[IdField] = Field(None, alias="lineItem")

    model_config = ConfigDict(populate_by_name=True)


class Enrollment(BaseModel):
    status: Optional[str] = None
    role: Optional[str] = None
    user: IdTypeMapping
    class_: IdTypeMapping = Field(..., alias="class")

    model_config = ConfigDict(populate_by_name=True)


class ClassGroup(BaseModel):
    sourced_id: str = Field(..., alias="sourcedId")
    classes: List[IdTypeMapping] = []

    model_config = ConfigDict(populate_by_name=True)


class GradebookUser(BaseModel):
    sourced_id: str = Field(..., alias="sourcedId")
    username: Optional[str] = None
    email: Optional[str] = None
    role: Optional[str] = None
    given_name: Optional[str] = Field(None, alias="givenName")
    family_name: Optional[str] = Field(None, alias="familyName")

    model_config = ConfigDict(populate_by_name=True)


class GradebookClass(BaseModel):
    sourced_id: str = Field(..., alias="sourcedId")
    title: Optional[str] = None
    class_code: Optional[str] = Field(None, alias="classCode")

    model_config = ConfigDict(populate_by_name=True)
