"""
Grade sync persistence: assignments, jobs and gradebook connections.
"""

import logging
from typing import Dict, List, Optional

from sqlalchemy import select, delete
from sqlalchemy.ext.asyncio import AsyncSession

from gradesync.integrations.error_handler import GradeSyncError, SyncErrorCategory, SyncErrorSeverity
from gradesync.models.assignment import Assignment, AssignmentSyncStatus
from gradesync.models.gradebook_connection import GradebookConnection
from gradesync.models.sync_job import GradeSyncJob, GradeSyncJobStatus


logger = logging.getLogger(__name__)


class StorageError(GradeSyncError):
    """A batched write could not be committed."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=SyncErrorCategory.STORAGE,
            severity=SyncErrorSeverity.HIGH,
            retryable=True,
            **kwargs
        )


def _single_partition(assignments: List[Assignment]) -> Optional[str]:
    class_ids = {a.class_id for a in assignments}
    if len(class_ids) > 1:
        raise StorageError(f"Batch spans multiple class partitions: {sorted(class_ids)}")
    return next(iter(class_ids), None)


class GradeSyncStore:
    """
    Repository for grade sync state.

    Batch writes are limited to one class partition and applied in a single
    transaction that is rolled back on failure.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_job(self, class_id: str, job_id: str) -> Optional[GradeSyncJob]:
        result = await self.db.execute(
            select(GradeSyncJob).where(
                GradeSyncJob.class_id == class_id,
                GradeSyncJob.id == job_id
            )
        )
        return result.scalar_one_or_none()

    async def get_job_status(self, class_id: str, job_id: str) -> Optional[GradeSyncJobStatus]:
        """Read the committed status, bypassing any job instance already loaded in the session."""
        result = await self.db.execute(
            select(GradeSyncJob.status).where(
                GradeSyncJob.class_id == class_id,
                GradeSyncJob.id == job_id
            )
        )
        return result.scalar_one_or_none()

    async def save_job(self, job: GradeSyncJob) -> GradeSyncJob:
        try:
            job = await self.db.merge(job)
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            raise StorageError(f"Failed to save sync job {job.id}: {e}", original_exception=e) from e
        return job

    async def update_job_status(self, job: GradeSyncJob, status: GradeSyncJobStatus) -> GradeSyncJob:
        logger.info(f"Job {job.id} for class {job.class_id}: {job.status} -> {status}")
        job.status = status
        return await self.save_job(job)

    async def get_assignments(self, class_id: str) -> List[Assignment]:
        result = await self.db.execute(
            select(Assignment).where(Assignment.class_id == class_id)
        )
        return list(result.scalars().all())

    async def get_assignments_from_id_list(
        self,
        class_id: str,
        assignment_ids: List[str],
        force_sync: bool = False
    ) -> List[Assignment]:
        """
        Load stored assignments by id, in id list order.

        Ids with no stored assignment are left out of the returned list.
        """
        if not assignment_ids:
            return []

        result = await self.db.execute(
            select(Assignment).where(
                Assignment.class_id == class_id,
                Assignment.id.in_(assignment_ids)
            )
        )
        by_id = {a.id: a for a in result.scalars().all()}

        assignments = []
        for assignment_id in assignment_ids:
            assignment = by_id.get(assignment_id)
            if assignment is not None:
                assignment.force_sync = force_sync
                assignments.append(assignment)
        return assignments

    async def batch_upsert_assignments(self, assignments: List[Assignment]) -> None:
        """Insert or update assignments of one class in a single transaction."""
        if not assignments:
            return
        class_id = _single_partition(assignments)

        try:
            for assignment in assignments:
                await self.db.merge(assignment)
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            raise StorageError(
                f"Failed to upsert {len(assignments)} assignments for class {class_id}: {e}",
                original_exception=e
            ) from e

        logger.debug(f"Upserted {len(assignments)} assignments for class {class_id}")

    async def batch_delete_assignments(self, assignments: List[Assignment]) -> None:
        """Delete assignments of one class in a single transaction."""
        if not assignments:
            return
        class_id = _single_partition(assignments)

        try:
            await self.db.execute(
                delete(Assignment).where(
                    Assignment.class_id == class_id,
                    Assignment.id.in_([a.id for a in assignments])
                )
            )
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            raise StorageError(
                f"Failed to delete {len(assignments)} assignments for class {class_id}: {e}",
                original_exception=e
            ) from e

        logger.debug(f"Deleted {len(assignments)} assignments for class {class_id}")

    async def batch_update_assignments_for_job(
        self,
        class_id: str,
        assignment_ids: List[str],
        status: AssignmentSyncStatus,
        job_id: Optional[str] = None,
        connection_id: Optional[str] = None,
        category_map: Optional[Dict[str, str]] = None
    ) -> List[Assignment]:
        """
        Set the sync status of the listed assignments and record category picks.

        Args:
            class_id: Class partition
            assignment_ids: Assignments to update
            status: New sync status
            job_id: Job now owning the assignments
            connection_id: Connection the category picks apply to
            category_map: Assignment id to category id

        Returns:
            The updated assignments
        """
        assignments = await self.get_assignments_from_id_list(class_id, assignment_ids)

        for assignment in assignments:
            assignment.sync_status = status
            if job_id is not None:
                assignment.current_sync_job_id = job_id
            if connection_id and category_map and assignment.id in category_map:
                assignment.add_category_mapping(connection_id, category_map[assignment.id])

        await self.batch_upsert_assignments(assignments)
        return assignments

    async def get_connection(self, tenant_id: str, connection_id: str) -> Optional[GradebookConnection]:
        result = await self.db.execute(
            select(GradebookConnection).where(
                GradebookConnection.tenant_id == tenant_id,
                GradebookConnection.id == connection_id
            )
        )
        return result.scalar_one_or_none()

    async def save_connection(self, connection: GradebookConnection) -> GradebookConnection:
        try:
            connection = await self.db.merge(connection)
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            raise StorageError(f"Failed to save gradebook connection {connection.id}: {e}", original_exception=e) from e
        return connection
