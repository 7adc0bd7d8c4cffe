from .assignment import Assignment, AssignmentSyncStatus
from .sync_job import GradeSyncJob, GradeSyncJobStatus
from .gradebook_connection import GradebookConnection

__all__ = [
    "Assignment",
    "AssignmentSyncStatus",
    "GradeSyncJob",
    "GradeSyncJobStatus",
    "GradebookConnection",
]
