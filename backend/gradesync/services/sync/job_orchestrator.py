"""
Grade Sync Job Orchestrator

Runs one grade sync job: validates the stored job, assembles roster and
gradebook data, fans out line item and result upserts concurrently, and
finalizes assignment and job state.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from gradesync.core.config import settings
from gradesync.core.gradebook_config import GradebookConnectionConfig
from gradesync.integrations.error_handler import (
    GradebookDataError, JobPreconditionError, JobSetupError, SyncErrorHandler
)
from gradesync.integrations.gradebook.client import (
    GradebookClient, ASSIGNED_STATUS, composite_line_item_id, composite_result_id
)
from gradesync.integrations.roster.base import BaseRosterSource
from gradesync.models.assignment import Assignment, AssignmentSyncStatus
from gradesync.models.sync_job import GradeSyncJob, GradeSyncJobStatus
from gradesync.schemas.gradebook import AcademicSession, Category, GradebookResourceType
from gradesync.schemas.roster import Submission, SubmissionStatus
from gradesync.schemas.sync import GradeSyncQueueMessage
from gradesync.services.sync.storage import GradeSyncStore


logger = logging.getLogger(__name__)


GENERIC_JOB_FAILURE_MESSAGE = (
    "Sync job failed. Try and run your sync at a later time, "
    "or contact an admin if the issue continues."
)


@dataclass
class JobContext:
    """Working set of one job run. Only the orchestrator mutates job level fields."""
    job: GradeSyncJob
    tenant_id: str
    assignments: List[Assignment] = field(default_factory=list)
    connection: Optional[GradebookConnectionConfig] = None
    submissions_by_assignment: Dict[str, List[Submission]] = field(default_factory=dict)
    student_external_ids: Dict[str, str] = field(default_factory=dict)
    subclass_ids: List[str] = field(default_factory=list)
    enrollment_subclass_map: Dict[str, List[str]] = field(default_factory=dict)
    categories: List[Category] = field(default_factory=list)
    grading_period: Optional[AcademicSession] = None

    @property
    def is_group_enabled(self) -> bool:
        return bool(self.connection and self.connection.is_group_enabled)


def missing_external_id_message(user_id: str) -> str:
    return (
        f"Cannot create result because student {user_id} has a missing or incorrect "
        f"external id. Any other valid student submissions were synced."
    )


class GradeSyncJobOrchestrator:
    """
    Executes grade sync jobs.

    Every upsert attempt runs as its own task and records its failure on the
    assignment it belongs to, so one failing unit never aborts its siblings.
    Errors during setup abort the job, mark every touched assignment Failed and
    still finish the job.
    """

    def __init__(
        self,
        store: GradeSyncStore,
        roster: BaseRosterSource,
        gradebook: GradebookClient,
        encryption_key: Optional[str] = None,
        error_handler: Optional[SyncErrorHandler] = None
    ):
        self.store = store
        self.roster = roster
        self.gradebook = gradebook
        self.encryption_key = encryption_key or settings.ENCRYPTION_KEY
        self.error_handler = error_handler or SyncErrorHandler()

    async def run(self, message: GradeSyncQueueMessage) -> Optional[JobContext]:
        """
        Run the job referenced by a queue message.

        Args:
            message: Queue trigger naming the class, job and tenant

        Returns:
            The job context, or None when the job record does not exist
        """
        job = await self.store.get_job(message.class_id, message.job_id)
        if job is None:
            logger.error(f"Grade sync job {message.job_id} for class {message.class_id} not found")
            return None

        if job.status == GradeSyncJobStatus.FINISHED:
            logger.warning(f"Job {job.id} was already finished, running it again")

        context = JobContext(job=job, tenant_id=message.tenant_id)

        try:
            if not await self._check_preconditions(context):
                return context

            await self.store.update_job_status(job, GradeSyncJobStatus.IN_PROGRESS)
            await self._setup(context)
            await self._upsert_line_items(context)
            await self._upsert_results(context)
            await self._finalize(context)
        except Exception as e:
            self.error_handler.log_error(e, {'job_id': job.id, 'class_id': job.class_id})
            await self._fail_job(context)

        return context

    async def _check_preconditions(self, context: JobContext) -> bool:
        """Validate the job before any external call. A failed check finishes the job."""
        job = context.job

        if job.is_cancelled:
            logger.info(f"Job {job.id} was cancelled before it started")
            return False

        try:
            assignment_ids = job.assignment_ids
            if not assignment_ids:
                raise JobPreconditionError(f"Job {job.id} has no assignments", job_id=job.id)

            context.assignments = await self.store.get_assignments_from_id_list(
                job.class_id, assignment_ids, job.force_sync
            )
            if not context.assignments:
                raise JobPreconditionError(f"Job {job.id} references no stored assignments", job_id=job.id)

            if len(context.assignments) != len(assignment_ids):
                found = {a.id for a in context.assignments}
                missing = [i for i in assignment_ids if i not in found]
                logger.warning(f"Job {job.id} skipping assignments no longer stored: {missing}")

            if not job.class_external_id:
                raise JobPreconditionError(f"Class {job.class_id} has no external id", job_id=job.id)
        except JobPreconditionError as e:
            self.error_handler.log_error(e)
            context.assignments = []
            await self.store.update_job_status(job, GradeSyncJobStatus.FINISHED)
            return False

        return True

    async def _setup(self, context: JobContext) -> None:
        job = context.job

        connection = await self.store.get_connection(context.tenant_id, job.connection_id)
        if connection is None:
            raise JobSetupError(f"Gradebook connection {job.connection_id} not found", job_id=job.id)
        context.connection = connection.to_config(self.encryption_key)

        await self.roster.exchange_client_credentials(context.tenant_id)
        context.submissions_by_assignment, context.student_external_ids = await asyncio.gather(
            self.roster.get_submissions_by_assignment(job.class_id, [a.id for a in context.assignments]),
            self.roster.get_student_external_id_map(job.class_id)
        )

        await self.gradebook.init_connection(context.connection)
        if not context.connection.auto_set_grading_period:
            context.grading_period = await self.gradebook.get_current_grading_period()
        context.categories = await self.gradebook.get_active_categories()

        if context.is_group_enabled:
            await self._resolve_class_group(context)

    async def _resolve_class_group(self, context: JobContext) -> None:
        """Expand the class group into subclasses and map each student to their subclasses."""
        job = context.job
        class_group = await self.gradebook.get_class_group(job.class_external_id)
        if class_group is None or not class_group.classes:
            raise JobSetupError(
                f"No subclasses found for class group {job.class_external_id}",
                job_id=job.id
            )

        context.subclass_ids = [c.sourced_id for c in class_group.classes]
        enrollment_lists = await asyncio.gather(
            *[self.gradebook.get_enrollments_by_class(subclass_id) for subclass_id in context.subclass_ids]
        )

        enrollment_map: Dict[str, List[str]] = {}
        for enrollments in enrollment_lists:
            for enrollment in enrollments:
                enrollment_map.setdefault(enrollment.user.sourced_id, []).append(enrollment.class_.sourced_id)
        context.enrollment_subclass_map = enrollment_map

    async def _upsert_line_items(self, context: JobContext) -> None:
        tasks = []
        for assignment in context.assignments:
            assignment.reset_job_state()
            assignment.current_sync_job_id = context.job.id

            if context.is_group_enabled:
                for subclass_id in context.subclass_ids:
                    tasks.append(self._upsert_line_item(
                        context, assignment, subclass_id,
                        composite_line_item_id(assignment.id, subclass_id)
                    ))
            else:
                tasks.append(self._upsert_line_item(
                    context, assignment, context.job.class_external_id, assignment.id
                ))

        await asyncio.gather(*tasks)

    async def _upsert_line_item(
        self,
        context: JobContext,
        assignment: Assignment,
        class_sourced_id: str,
        line_item_id: str
    ) -> None:
        try:
            if assignment.status != ASSIGNED_STATUS:
                raise GradebookDataError("Cannot sync assignment that doesn't have status='assigned'")

            if assignment.force_sync:
                exists = False
            else:
                exists = await self.gradebook.resource_exists(line_item_id, GradebookResourceType.LINE_ITEM)

            if not exists:
                created = await self.gradebook.create_line_item(
                    line_item_id, assignment, class_sourced_id,
                    grading_period=context.grading_period,
                    categories=context.categories
                )
                created_category = created.category.sourced_id if created and created.category else None
                assignment.persist_created_category(context.connection.connection_id, created_category)
        except Exception as e:
            logger.warning(f"Line item {line_item_id} failed for job {context.job.id}: {e}")
            assignment.sync_status = AssignmentSyncStatus.FAILED
            assignment.error_message = str(e)
            assignment.line_item_failed = True

    async def _upsert_results(self, context: JobContext) -> None:
        tasks = []
        for assignment in context.assignments:
            if assignment.line_item_failed:
                continue
            assignment.submission_errors = []

            for submission in context.submissions_by_assignment.get(assignment.id) or []:
                if submission.status != SubmissionStatus.RETURNED:
                    continue
                if submission.user_id not in context.student_external_ids:
                    # Not a rostered student of this class
                    continue

                external_id = context.student_external_ids[submission.user_id] or None

                if not context.is_group_enabled or external_id is None:
                    tasks.append(self._upsert_result(context, assignment, submission, external_id))
                elif external_id in context.enrollment_subclass_map:
                    for subclass_id in context.enrollment_subclass_map[external_id]:
                        tasks.append(self._upsert_result(context, assignment, submission, external_id, subclass_id))
                else:
                    tasks.append(self._upsert_result(context, assignment, submission, None))

        await asyncio.gather(*tasks)

    async def _upsert_result(
        self,
        context: JobContext,
        assignment: Assignment,
        submission: Submission,
        student_external_id: Optional[str],
        subclass_id: Optional[str] = None
    ) -> None:
        try:
            if student_external_id is None:
                raise GradebookDataError(missing_external_id_message(submission.user_id))

            result_id = composite_result_id(submission.id, subclass_id)
            if assignment.force_sync:
                exists = False
            else:
                exists = await self.gradebook.resource_exists(result_id, GradebookResourceType.RESULT)

            if not exists:
                await self.gradebook.create_result(submission, student_external_id, assignment.id, subclass_id)
        except Exception as e:
            logger.warning(f"Result for submission {submission.id} failed for job {context.job.id}: {e}")
            assignment.sync_status = AssignmentSyncStatus.FAILED
            assignment.submission_errors.append(str(e))
            assignment.result_failed = True

    async def _finalize(self, context: JobContext) -> None:
        now = datetime.utcnow()
        synced = 0

        for assignment in context.assignments:
            assignment.last_sync_timestamp = now
            if assignment.line_item_failed or assignment.result_failed:
                assignment.sync_status = AssignmentSyncStatus.FAILED
                if assignment.submission_errors:
                    assignment.error_message = "\n".join(assignment.submission_errors)
            else:
                assignment.sync_status = AssignmentSyncStatus.SYNCED
                assignment.error_message = None
                synced += 1

        await self.store.batch_upsert_assignments(context.assignments)
        await self._finish_job(context.job)

        logger.info(
            f"Job {context.job.id} finished: {synced}/{len(context.assignments)} assignments synced"
        )

    async def _finish_job(self, job: GradeSyncJob) -> None:
        """Move the job to Finished unless it was cancelled while running."""
        if await self.store.get_job_status(job.class_id, job.id) == GradeSyncJobStatus.CANCELLED:
            logger.info(f"Job {job.id} was cancelled while running, keeping it Cancelled")
            job.status = GradeSyncJobStatus.CANCELLED
            return
        await self.store.update_job_status(job, GradeSyncJobStatus.FINISHED)

    async def _fail_job(self, context: JobContext) -> None:
        """Mark every touched assignment Failed and finish the job."""
        job = context.job
        if job.is_cancelled:
            return

        now = datetime.utcnow()
        for assignment in context.assignments:
            assignment.sync_status = AssignmentSyncStatus.FAILED
            assignment.error_message = GENERIC_JOB_FAILURE_MESSAGE
            assignment.last_sync_timestamp = now

        try:
            await self.store.batch_upsert_assignments(context.assignments)
        except Exception as e:
            self.error_handler.log_error(e, {'job_id': job.id, 'class_id': job.class_id})

        await self._finish_job(job)
        logger.error(f"Job {job.id} for class {job.class_id} failed during setup or fan-out")
