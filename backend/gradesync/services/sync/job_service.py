"""
Producer side of grade sync: enqueue, cancel, status and assignment refresh.
"""

import logging
import uuid
from typing import Optional

from gradesync.integrations.error_handler import JobPreconditionError
from gradesync.integrations.roster.base import BaseRosterSource
from gradesync.models.assignment import AssignmentSyncStatus
from gradesync.models.sync_job import GradeSyncJob, GradeSyncJobStatus
from gradesync.schemas.sync import GradeSyncEnqueueRequest, GradeSyncQueueMessage
from gradesync.services.sync.assignment_reconciler import AssignmentReconciler, ReconcileResult
from gradesync.services.sync.storage import GradeSyncStore
from gradesync.tasks.message_queue import MessageQueue


logger = logging.getLogger(__name__)


class GradeSyncJobService:
    """Creates and manages grade sync jobs on behalf of an authorized caller."""

    def __init__(self, store: GradeSyncStore, roster: BaseRosterSource, queue: MessageQueue):
        self.store = store
        self.roster = roster
        self.queue = queue

    async def enqueue_sync(self, request: GradeSyncEnqueueRequest, tenant_id: str) -> GradeSyncJob:
        """
        Snapshot a sync request as a Queued job and publish its trigger.

        Args:
            request: Assignments, connection and category picks to sync
            tenant_id: Tenant owning the class and connection

        Returns:
            The created job
        """
        connection = await self.store.get_connection(tenant_id, request.connection_id)
        if connection is None:
            raise JobPreconditionError(f"Gradebook connection {request.connection_id} not found")

        education_class = await self.roster.get_class(request.class_id)

        job = GradeSyncJob(
            class_id=request.class_id,
            id=str(uuid.uuid4()),
            connection_id=request.connection_id,
            tenant_id=tenant_id,
            class_external_id=education_class.external_id,
            status=GradeSyncJobStatus.QUEUED,
            force_sync=request.force_sync
        )
        job.assignment_ids = request.id_list
        job = await self.store.save_job(job)

        await self.store.batch_update_assignments_for_job(
            request.class_id,
            request.id_list,
            AssignmentSyncStatus.IN_PROGRESS,
            job_id=job.id,
            connection_id=request.connection_id,
            category_map=request.category_map
        )

        message = GradeSyncQueueMessage(class_id=job.class_id, job_id=job.id, tenant_id=tenant_id)
        await self.queue.send(message.to_json())

        logger.info(f"Queued grade sync job {job.id} for {len(request.id_list)} assignments in class {job.class_id}")
        return job

    async def cancel_job(self, class_id: str, job_id: str) -> Optional[GradeSyncJob]:
        """Cancel a job and its assignments. Work already dispatched is not aborted."""
        job = await self.store.get_job(class_id, job_id)
        if job is None:
            return None
        if job.status == GradeSyncJobStatus.FINISHED:
            logger.info(f"Job {job_id} already finished, nothing to cancel")
            return job

        job = await self.store.update_job_status(job, GradeSyncJobStatus.CANCELLED)
        await self.store.batch_update_assignments_for_job(
            class_id, job.assignment_ids, AssignmentSyncStatus.CANCELLED
        )
        return job

    async def get_job_status(self, class_id: str, job_id: str) -> Optional[GradeSyncJobStatus]:
        return await self.store.get_job_status(class_id, job_id)

    async def refresh_class_assignments(
        self,
        class_id: str,
        prior_job_finished: bool = False
    ) -> ReconcileResult:
        """
        Pull the class's assignments from the roster source and reconcile stored state.

        Upserts and deletes are persisted as two separate batches.
        """
        source_assignments = await self.roster.get_assignments(class_id)
        stored_assignments = await self.store.get_assignments(class_id)

        result = AssignmentReconciler(source_assignments, stored_assignments).reconcile(prior_job_finished)

        await self.store.batch_upsert_assignments(result.upserts)
        await self.store.batch_delete_assignments(result.deletes)
        return result
