"""
Pydantic schemas for grade sync jobs and queue messages
"""

from pydantic import BaseModel, Field, ConfigDict, validator
from typing import List, Dict, Optional


class CategoryMapping(BaseModel):
    """Category chosen for an assignment on one gradebook connection"""
    cat_id: str = Field(..., alias="catId")
    line_item_synced: bool = Field(False, alias="lineItemSynced")

    model_config = ConfigDict(populate_by_name=True)


class GradeSyncQueueMessage(BaseModel):
    """Opaque trigger placed on the grade sync queue"""
    class_id: str = Field(..., alias="classId")
    job_id: str = Field(..., alias="jobId")
    tenant_id: str = Field(..., alias="tenantId")

    model_config = ConfigDict(populate_by_name=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


class GradeSyncEnqueueRequest(BaseModel):
    """Request to sync a set of assignments of one class to a gradebook connection"""
    class_id: str = Field(..., alias="classId")
    connection_id: str = Field(..., alias="connectionId")
    force_sync: bool = Field(False, alias="forceSync")
    id_list: List[str] = Field(..., alias="idList")
    category_map: Optional[Dict[str, str]] = Field(None, alias="categoryMap")

    model_config = ConfigDict(populate_by_name=True)

    @validator("id_list")
    def validate_id_list(cls, v):
        if not v:
            raise ValueError("idList must contain at least one assignment id")
        if any(":" in assignment_id for assignment_id in v):
            raise ValueError("Assignment ids cannot contain ':'")
        return v
