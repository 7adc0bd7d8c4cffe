"""
Reconciles freshly fetched roster assignments with stored assignment state.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from gradesync.models.assignment import Assignment, AssignmentSyncStatus
from gradesync.schemas.roster import SourceAssignment


logger = logging.getLogger(__name__)


INTERRUPTED_JOB_MESSAGE = "The previous sync job did not finish. Run your sync again."


@dataclass
class ReconcileResult:
    """Assignments to upsert and to delete for one class partition."""
    upserts: List[Assignment] = field(default_factory=list)
    deletes: List[Assignment] = field(default_factory=list)


def assignment_from_source(source: SourceAssignment) -> Assignment:
    """Build an unsaved Assignment from a roster assignment."""
    return Assignment(
        class_id=source.class_id,
        id=source.id,
        display_name=source.display_name,
        due_date=source.due_date_time,
        assigned_date=source.assigned_date_time,
        status=source.status,
        max_points=source.max_points,
        description=source.description,
        grading_category=source.grading_category_name
    )


class AssignmentReconciler:
    """
    Diffs roster assignments against stored assignments.

    Roster fields always win. Sync tracking fields (status, last sync timestamp,
    error message, current job id, category map) are carried over from the
    stored row when one exists. Stored rows missing from the roster were deleted
    upstream and are returned for deletion.
    """

    def __init__(
        self,
        source_assignments: List[SourceAssignment],
        stored_assignments: Optional[List[Assignment]] = None
    ):
        self.source_assignments = source_assignments
        self.stored_assignments = stored_assignments or []

    def reconcile(self, prior_job_finished: bool = False) -> ReconcileResult:
        """
        Produce upsert and delete sets.

        Args:
            prior_job_finished: The last job for this class is known to be over,
                so anything still InProgress was orphaned by a crashed worker

        Returns:
            ReconcileResult for the class partition
        """
        source_by_id: Dict[str, SourceAssignment] = {a.id: a for a in self.source_assignments}
        stored_by_id: Dict[str, Assignment] = {a.id: a for a in self.stored_assignments}
        result = ReconcileResult()

        for source in self.source_assignments:
            assignment = assignment_from_source(source)
            stored = stored_by_id.get(source.id)

            if stored is not None:
                assignment.sync_status = stored.sync_status or AssignmentSyncStatus.NOT_SYNCED
                assignment.last_sync_timestamp = stored.last_sync_timestamp
                assignment.error_message = stored.error_message
                assignment.current_sync_job_id = stored.current_sync_job_id
                assignment.category_map = dict(stored.category_map) if stored.category_map else None

            if prior_job_finished and assignment.sync_status == AssignmentSyncStatus.IN_PROGRESS:
                logger.warning(
                    f"Assignment {assignment.id} in class {assignment.class_id} was left InProgress, marking Failed"
                )
                assignment.sync_status = AssignmentSyncStatus.FAILED
                assignment.error_message = assignment.error_message or INTERRUPTED_JOB_MESSAGE

            result.upserts.append(assignment)

        result.deletes = [a for a in self.stored_assignments if a.id not in source_by_id]

        logger.debug(
            f"Reconciled {len(result.upserts)} assignments, {len(result.deletes)} deleted upstream"
        )
        return result
