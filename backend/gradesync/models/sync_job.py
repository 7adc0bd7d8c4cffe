"""
SQLAlchemy model for grade sync jobs.
"""

from sqlalchemy import Column, String, Boolean, DateTime, Text, Enum as SQLEnum
from sqlalchemy.sql import func
import enum
from typing import List

from gradesync.core.database import Base


ASSIGNMENT_ID_SEPARATOR = ":"


class GradeSyncJobStatus(str, enum.Enum):
    """Lifecycle of a grade sync job."""
    QUEUED = "Queued"
    IN_PROGRESS = "InProgress"
    FINISHED = "Finished"
    CANCELLED = "Cancelled"


class GradeSyncJob(Base):
    """A request to push a set of assignments of one class to a gradebook connection."""

    __tablename__ = "grade_sync_jobs"

    class_id = Column(String(255), primary_key=True)
    id = Column(String(64), primary_key=True)

    connection_id = Column(String(255), nullable=False)
    tenant_id = Column(String(255), nullable=True)
    class_external_id = Column(String(255), nullable=True)
    status = Column(SQLEnum(GradeSyncJobStatus), default=GradeSyncJobStatus.QUEUED, nullable=False)
    serialized_assignment_ids = Column(Text, nullable=False, default="")
    force_sync = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    @property
    def assignment_ids(self) -> List[str]:
        if not self.serialized_assignment_ids:
            return []
        return self.serialized_assignment_ids.split(ASSIGNMENT_ID_SEPARATOR)

    @assignment_ids.setter
    def assignment_ids(self, value: List[str]):
        self.serialized_assignment_ids = ASSIGNMENT_ID_SEPARATOR.join(value)

    @property
    def is_cancelled(self) -> bool:
        return self.status == GradeSyncJobStatus.CANCELLED

    def __repr__(self):
        return f"<GradeSyncJob(class_id='{self.class_id}', id='{self.id}', status='{self.status}')>"
