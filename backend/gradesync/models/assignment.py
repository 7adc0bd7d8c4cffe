"""
SQLAlchemy model for assignments mirrored from the roster source.
"""

from sqlalchemy import Column, String, Integer, DateTime, Text, JSON, Enum as SQLEnum
from sqlalchemy.orm import reconstructor
from sqlalchemy.sql import func
import enum
from typing import Dict, List, Optional

from gradesync.core.database import Base
from gradesync.core.gradebook_config import NONE_CATEGORY


class AssignmentSyncStatus(str, enum.Enum):
    """Sync state of one assignment."""
    NOT_SYNCED = "NotSynced"
    IN_PROGRESS = "InProgress"
    SYNCED = "Synced"
    FAILED = "Failed"
    CANCELLED = "Cancelled"


class Assignment(Base):
    """
    Local mirror of a roster assignment plus its sync state.

    Rows are partitioned by class_id. The force_sync, line_item_failed,
    result_failed and submission_errors attributes live only for the duration
    of a sync job and are never persisted.
    """

    __tablename__ = "assignments"

    class_id = Column(String(255), primary_key=True)
    id = Column(String(255), primary_key=True)

    # Mirrored from the roster source
    display_name = Column(String(500), nullable=True)
    due_date = Column(String(64), nullable=True)
    assigned_date = Column(String(64), nullable=True)
    status = Column(String(50), nullable=True)
    max_points = Column(Integer, nullable=True)
    description = Column(Text, nullable=True)
    grading_category = Column(String(255), nullable=True)

    # Sync state
    sync_status = Column(SQLEnum(AssignmentSyncStatus), default=AssignmentSyncStatus.NOT_SYNCED, nullable=False)
    last_sync_timestamp = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)
    current_sync_job_id = Column(String(64), nullable=True)
    category_map = Column(JSON, nullable=True)  # connection id -> {"catId", "lineItemSynced"}

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Per-job state; instances built by merge() skip both __init__ and the reconstructor
    force_sync = False
    line_item_failed = False
    result_failed = False

    def __init__(self, **kwargs):
        kwargs.setdefault("sync_status", AssignmentSyncStatus.NOT_SYNCED)
        super().__init__(**kwargs)
        self._init_job_state()

    @reconstructor
    def _init_job_state(self):
        self.force_sync: bool = False
        self.line_item_failed: bool = False
        self.result_failed: bool = False
        self.submission_errors: List[str] = []

    def reset_job_state(self):
        """Clear per-job failure flags before a line item is pushed."""
        self.line_item_failed = False
        self.result_failed = False
        self.submission_errors = []

    def get_category_mapping(self, connection_id: str) -> Optional[Dict]:
        if not self.category_map:
            return None
        return self.category_map.get(connection_id)

    def add_category_mapping(self, connection_id: str, category_id: str) -> None:
        """
        Record the category picked for a connection.

        Once a line item has been created with a category, the mapping for that
        connection is frozen and later picks are ignored.
        """
        current = dict(self.category_map or {})
        existing = current.get(connection_id)
        if existing is not None and existing.get("lineItemSynced"):
            return

        current[connection_id] = {"catId": category_id, "lineItemSynced": False}
        self.category_map = current

    def persist_created_category(self, connection_id: str, created_category_id: Optional[str]) -> None:
        """Mark the mapping for a connection as synced with the category the line item was created with."""
        if created_category_id and not self.category_map:
            self.category_map = {
                connection_id: {"catId": created_category_id, "lineItemSynced": True}
            }
        elif self.category_map:
            current = dict(self.category_map)
            current[connection_id] = {
                "catId": created_category_id or NONE_CATEGORY,
                "lineItemSynced": True
            }
            self.category_map = current

    def __repr__(self):
        return f"<Assignment(class_id='{self.class_id}', id='{self.id}', sync_status='{self.sync_status}')>"
