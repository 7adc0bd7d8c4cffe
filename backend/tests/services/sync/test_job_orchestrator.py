"""
Tests for the grade sync job orchestrator.
"""

import re
import time
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, Mock

import pytest
from aioresponses import aioresponses
from jose import jwt
from yarl import URL

from gradesync.core.security import encrypt_credential
from gradesync.integrations.error_handler import GradebookApiError, RosterSourceError
from gradesync.integrations.gradebook.client import GradebookClient
from gradesync.models.assignment import Assignment, AssignmentSyncStatus
from gradesync.models.gradebook_connection import GradebookConnection
from gradesync.models.sync_job import GradeSyncJob, GradeSyncJobStatus
from gradesync.schemas.gradebook import ClassGroup, Enrollment, GradebookResourceType, IdTypeMapping, LineItem
from gradesync.schemas.roster import Submission
from gradesync.schemas.sync import GradeSyncQueueMessage
from gradesync.services.sync.job_orchestrator import GradeSyncJobOrchestrator, GENERIC_JOB_FAILURE_MESSAGE
from gradesync.services.sync.storage import GradeSyncStore


MESSAGE = GradeSyncQueueMessage(class_id="class-1", job_id="job-1", tenant_id="tenant-1")


def make_job(assignment_ids, status=GradeSyncJobStatus.QUEUED, class_external_id="sis-101", force_sync=False):
    job = GradeSyncJob(
        class_id="class-1",
        id="job-1",
        connection_id="conn-1",
        tenant_id="tenant-1",
        class_external_id=class_external_id,
        status=status,
        force_sync=force_sync
    )
    job.assignment_ids = assignment_ids
    return job


def make_assignment(assignment_id, **overrides):
    values = dict(class_id="class-1", id=assignment_id, display_name=assignment_id, status="assigned", max_points=100)
    values.update(overrides)
    return Assignment(**values)


def make_submission(submission_id, user_id, status="returned", points=9.0):
    return Submission.model_validate({
        "id": submission_id,
        "status": status,
        "returnedDateTime": "2024-05-02T10:00:00Z",
        "submittedBy": {"user": {"id": user_id}},
        "outcomes": [{"@odata.type": "#microsoft.graph.educationPointsOutcome", "points": {"points": points}}]
    })


def _set_status(job, status):
    job.status = status
    return job


@pytest.fixture
def mock_store():
    """Store double holding one job."""
    store = AsyncMock(spec=GradeSyncStore)
    store.update_job_status.side_effect = _set_status
    store.get_job_status.return_value = GradeSyncJobStatus.IN_PROGRESS
    return store


@pytest.fixture
def mock_roster():
    roster = AsyncMock()
    roster.get_submissions_by_assignment.return_value = {}
    roster.get_student_external_id_map.return_value = {}
    return roster


@pytest.fixture
def mock_gradebook():
    gradebook = AsyncMock(spec=GradebookClient)
    gradebook.get_current_grading_period.return_value = None
    gradebook.get_active_categories.return_value = []
    gradebook.resource_exists.return_value = False
    gradebook.create_line_item.return_value = None
    gradebook.create_result.return_value = None
    return gradebook


def wire(store, job, assignments, config):
    store.get_job.return_value = job
    store.get_assignments_from_id_list.return_value = assignments
    store.get_connection.return_value = Mock(to_config=Mock(return_value=config))


def orchestrator(store, roster, gradebook):
    return GradeSyncJobOrchestrator(store, roster, gradebook, encryption_key="unused")


class TestPreconditions:
    """Test validation before any external call."""

    @pytest.mark.asyncio
    async def test_missing_job(self, mock_store, mock_roster, mock_gradebook):
        mock_store.get_job.return_value = None

        assert await orchestrator(mock_store, mock_roster, mock_gradebook).run(MESSAGE) is None
        mock_store.update_job_status.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cancelled_job_makes_no_external_calls(self, mock_store, mock_roster, mock_gradebook, connection_config):
        job = make_job(["A1"], status=GradeSyncJobStatus.CANCELLED)
        wire(mock_store, job, [make_assignment("A1")], connection_config)

        await orchestrator(mock_store, mock_roster, mock_gradebook).run(MESSAGE)

        assert mock_roster.mock_calls == []
        assert mock_gradebook.mock_calls == []
        mock_store.update_job_status.assert_not_awaited()
        mock_store.batch_upsert_assignments.assert_not_awaited()
        assert job.status == GradeSyncJobStatus.CANCELLED

    @pytest.mark.asyncio
    @pytest.mark.parametrize("job,assignments", [
        (make_job([]), []),
        (make_job(["GONE"]), []),
        (make_job(["A1"], class_external_id=None), [make_assignment("A1")]),
    ])
    async def test_failed_precondition_finishes_job(
        self, job, assignments, mock_store, mock_roster, mock_gradebook, connection_config
    ):
        wire(mock_store, job, assignments, connection_config)

        await orchestrator(mock_store, mock_roster, mock_gradebook).run(MESSAGE)

        assert job.status == GradeSyncJobStatus.FINISHED
        assert mock_roster.mock_calls == []
        assert mock_gradebook.mock_calls == []
        mock_store.batch_upsert_assignments.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_assignment_deleted_after_enqueue_is_skipped(
        self, mock_store, mock_roster, mock_gradebook, connection_config
    ):
        job = make_job(["A1", "GONE"])
        assignment = make_assignment("A1")
        wire(mock_store, job, [assignment], connection_config)

        await orchestrator(mock_store, mock_roster, mock_gradebook).run(MESSAGE)

        mock_roster.get_submissions_by_assignment.assert_awaited_once_with("class-1", ["A1"])
        assert [call.args[0] for call in mock_gradebook.create_line_item.await_args_list] == ["A1"]
        assert assignment.sync_status == AssignmentSyncStatus.SYNCED
        assert job.status == GradeSyncJobStatus.FINISHED


class TestCancelledWhileRunning:
    """Test a cancel that lands after the job passed its preconditions."""

    @pytest.mark.asyncio
    async def test_cancelled_status_is_kept(self, mock_store, mock_roster, mock_gradebook, connection_config):
        job = make_job(["A1"])
        assignment = make_assignment("A1")
        wire(mock_store, job, [assignment], connection_config)
        mock_store.get_job_status.return_value = GradeSyncJobStatus.CANCELLED

        await orchestrator(mock_store, mock_roster, mock_gradebook).run(MESSAGE)

        statuses = [call.args[1] for call in mock_store.update_job_status.await_args_list]
        assert statuses == [GradeSyncJobStatus.IN_PROGRESS]
        assert job.status == GradeSyncJobStatus.CANCELLED
        mock_store.batch_upsert_assignments.assert_awaited_once_with([assignment])

    @pytest.mark.asyncio
    async def test_cancelled_during_failed_setup(self, mock_store, mock_roster, mock_gradebook, connection_config):
        job = make_job(["A1"])
        wire(mock_store, job, [make_assignment("A1")], connection_config)
        mock_roster.exchange_client_credentials.side_effect = RosterSourceError("consent revoked")
        mock_store.get_job_status.return_value = GradeSyncJobStatus.CANCELLED

        await orchestrator(mock_store, mock_roster, mock_gradebook).run(MESSAGE)

        assert job.status == GradeSyncJobStatus.CANCELLED


class TestLineItemFanOut:
    """Test line item upserts."""

    @pytest.mark.asyncio
    async def test_existing_line_item_is_not_rewritten(self, mock_store, mock_roster, mock_gradebook, connection_config):
        job = make_job(["A1"])
        assignment = make_assignment("A1")
        wire(mock_store, job, [assignment], connection_config)
        mock_gradebook.resource_exists.return_value = True

        await orchestrator(mock_store, mock_roster, mock_gradebook).run(MESSAGE)

        mock_gradebook.resource_exists.assert_awaited_once_with("A1", GradebookResourceType.LINE_ITEM)
        mock_gradebook.create_line_item.assert_not_awaited()
        assert assignment.sync_status == AssignmentSyncStatus.SYNCED

    @pytest.mark.asyncio
    async def test_force_sync_always_writes(self, mock_store, mock_roster, mock_gradebook, connection_config):
        job = make_job(["A1"], force_sync=True)
        assignment = make_assignment("A1")
        assignment.force_sync = True
        wire(mock_store, job, [assignment], connection_config)
        mock_gradebook.resource_exists.return_value = True
        mock_roster.get_submissions_by_assignment.return_value = {"A1": [make_submission("sub-1", "user-1")]}
        mock_roster.get_student_external_id_map.return_value = {"user-1": "S-1"}

        await orchestrator(mock_store, mock_roster, mock_gradebook).run(MESSAGE)

        mock_gradebook.resource_exists.assert_not_awaited()
        mock_gradebook.create_line_item.assert_awaited_once()
        mock_gradebook.create_result.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_created_category_is_persisted(self, mock_store, mock_roster, mock_gradebook, connection_config):
        job = make_job(["A1"])
        assignment = make_assignment("A1")
        assignment.add_category_mapping("conn-1", "cat-picked")
        wire(mock_store, job, [assignment], connection_config)
        mock_gradebook.create_line_item.return_value = LineItem(
            sourced_id="A1", category=IdTypeMapping(sourced_id="cat-class", type="category")
        )

        await orchestrator(mock_store, mock_roster, mock_gradebook).run(MESSAGE)

        assert assignment.category_map == {"conn-1": {"catId": "cat-class", "lineItemSynced": True}}

    @pytest.mark.asyncio
    async def test_unassigned_status_fails_line_item(self, mock_store, mock_roster, mock_gradebook, connection_config):
        job = make_job(["A1"])
        assignment = make_assignment("A1", status="draft")
        wire(mock_store, job, [assignment], connection_config)

        await orchestrator(mock_store, mock_roster, mock_gradebook).run(MESSAGE)

        mock_gradebook.resource_exists.assert_not_awaited()
        assert assignment.sync_status == AssignmentSyncStatus.FAILED
        assert "status='assigned'" in assignment.error_message


class TestPartialFailure:
    """Test per-assignment failure isolation."""

    @pytest.mark.asyncio
    async def test_failed_line_item_skips_its_submissions(self, mock_store, mock_roster, mock_gradebook, connection_config):
        job = make_job(["A1", "A2"])
        a1, a2 = make_assignment("A1"), make_assignment("A2")
        wire(mock_store, job, [a1, a2], connection_config)
        mock_roster.get_submissions_by_assignment.return_value = {
            "A1": [make_submission("sub-1", "user-1")],
            "A2": [make_submission("sub-2", "user-1")],
        }
        mock_roster.get_student_external_id_map.return_value = {"user-1": "S-1"}

        async def create_line_item(sourced_id, assignment, class_sourced_id, **kwargs):
            if sourced_id == "A2":
                raise GradebookApiError("line item rejected", status_code=400)
            return None

        mock_gradebook.create_line_item.side_effect = create_line_item

        await orchestrator(mock_store, mock_roster, mock_gradebook).run(MESSAGE)

        submitted = [call.args[0].id for call in mock_gradebook.create_result.await_args_list]
        assert submitted == ["sub-1"]
        assert a1.sync_status == AssignmentSyncStatus.SYNCED
        assert a1.last_sync_timestamp is not None
        assert a2.sync_status == AssignmentSyncStatus.FAILED
        assert a2.error_message == "line item rejected"
        assert job.status == GradeSyncJobStatus.FINISHED
        mock_store.batch_upsert_assignments.assert_awaited_once_with([a1, a2])

    @pytest.mark.asyncio
    async def test_result_errors_are_collected(self, mock_store, mock_roster, mock_gradebook, connection_config):
        job = make_job(["A1"])
        assignment = make_assignment("A1")
        wire(mock_store, job, [assignment], connection_config)
        mock_roster.get_submissions_by_assignment.return_value = {"A1": [
            make_submission("sub-1", "user-1"),
            make_submission("sub-2", "user-2"),
            make_submission("sub-3", "user-3"),
            make_submission("sub-4", "user-4", status="submitted"),
            make_submission("sub-6", "user-4", status="excused"),
            make_submission("sub-5", "not-rostered"),
        ]}
        mock_roster.get_student_external_id_map.return_value = {
            "user-1": "S-1", "user-2": "", "user-3": "S-3", "user-4": "S-4"
        }

        async def create_result(submission, student_id, assignment_id, subclass_id=None):
            if submission.id == "sub-3":
                raise GradebookApiError("Submission with ID: sub-3 failed on gradebook result request: nope")
            return None

        mock_gradebook.create_result.side_effect = create_result

        await orchestrator(mock_store, mock_roster, mock_gradebook).run(MESSAGE)

        submitted = sorted(call.args[0].id for call in mock_gradebook.create_result.await_args_list)
        assert submitted == ["sub-1", "sub-3"]
        assert assignment.sync_status == AssignmentSyncStatus.FAILED
        errors = assignment.error_message.split("\n")
        assert len(errors) == 2
        assert any("user-2" in e and "missing or incorrect external id" in e for e in errors)
        assert any("sub-3" in e for e in errors)
        assert job.status == GradeSyncJobStatus.FINISHED


class TestGroupEnabled:
    """Test fan-out over class group subclasses."""

    @pytest.fixture
    def group_config(self, connection_config):
        return connection_config.model_copy(update={"is_group_enabled": True})

    def _enrollment(self, user_id, class_id):
        return Enrollment(
            status="active",
            role="student",
            user=IdTypeMapping(sourced_id=user_id, type="user"),
            class_=IdTypeMapping(sourced_id=class_id, type="class")
        )

    @pytest.mark.asyncio
    async def test_one_line_item_and_result_per_subclass(self, mock_store, mock_roster, mock_gradebook, group_config):
        job = make_job(["A1"])
        assignment = make_assignment("A1")
        wire(mock_store, job, [assignment], group_config)
        mock_gradebook.get_class_group.return_value = ClassGroup(
            sourced_id="sis-101",
            classes=[IdTypeMapping(sourced_id="X", type="class"), IdTypeMapping(sourced_id="Y", type="class")]
        )
        mock_gradebook.get_enrollments_by_class.side_effect = lambda class_id: [
            self._enrollment("S-1", class_id),
            *([self._enrollment("S-2", class_id)] if class_id == "X" else [])
        ]
        mock_roster.get_submissions_by_assignment.return_value = {"A1": [
            make_submission("sub-1", "user-1"),
            make_submission("sub-2", "user-2"),
            make_submission("sub-3", "user-3"),
        ]}
        mock_roster.get_student_external_id_map.return_value = {"user-1": "S-1", "user-2": "S-2", "user-3": "S-9"}

        await orchestrator(mock_store, mock_roster, mock_gradebook).run(MESSAGE)

        line_items = sorted(
            (call.args[0], call.args[2]) for call in mock_gradebook.create_line_item.await_args_list
        )
        assert line_items == [("A1-X", "X"), ("A1-Y", "Y")]

        results = sorted(
            (call.args[0].id, call.kwargs.get("subclass_id", call.args[3] if len(call.args) > 3 else None))
            for call in mock_gradebook.create_result.await_args_list
        )
        assert results == [("sub-1", "X"), ("sub-1", "Y"), ("sub-2", "X")]

        # S-9 is not enrolled in any subclass
        assert assignment.sync_status == AssignmentSyncStatus.FAILED
        assert "user-3" in assignment.error_message

    @pytest.mark.asyncio
    async def test_missing_class_group_fails_job(self, mock_store, mock_roster, mock_gradebook, group_config):
        job = make_job(["A1"])
        assignment = make_assignment("A1")
        wire(mock_store, job, [assignment], group_config)
        mock_gradebook.get_class_group.return_value = None

        await orchestrator(mock_store, mock_roster, mock_gradebook).run(MESSAGE)

        mock_gradebook.create_line_item.assert_not_awaited()
        assert assignment.sync_status == AssignmentSyncStatus.FAILED
        assert assignment.error_message == GENERIC_JOB_FAILURE_MESSAGE
        assert job.status == GradeSyncJobStatus.FINISHED


class TestCatastrophicFailure:
    """Test setup failures."""

    @pytest.mark.asyncio
    async def test_token_exchange_failure(self, mock_store, mock_roster, mock_gradebook, connection_config):
        job = make_job(["A1", "A2"])
        assignments = [make_assignment("A1"), make_assignment("A2")]
        wire(mock_store, job, assignments, connection_config)
        mock_roster.exchange_client_credentials.side_effect = RosterSourceError("consent revoked")

        await orchestrator(mock_store, mock_roster, mock_gradebook).run(MESSAGE)

        assert all(a.sync_status == AssignmentSyncStatus.FAILED for a in assignments)
        assert all(a.error_message == GENERIC_JOB_FAILURE_MESSAGE for a in assignments)
        assert all(a.last_sync_timestamp is not None for a in assignments)
        mock_gradebook.create_line_item.assert_not_awaited()
        assert job.status == GradeSyncJobStatus.FINISHED

    @pytest.mark.asyncio
    async def test_missing_connection(self, mock_store, mock_roster, mock_gradebook, connection_config):
        job = make_job(["A1"])
        wire(mock_store, job, [make_assignment("A1")], connection_config)
        mock_store.get_connection.return_value = None

        await orchestrator(mock_store, mock_roster, mock_gradebook).run(MESSAGE)

        assert mock_roster.mock_calls == []
        assert job.status == GradeSyncJobStatus.FINISHED


class TestEndToEnd:
    """Run a job against the real store and an HTTP-mocked gradebook."""

    BASE_URL = "https://gradebook.example.com/ims/oneroster/v1p1"

    @pytest.mark.asyncio
    async def test_single_assignment_sync(self, db_session, encryption_key, mock_roster):
        store = GradeSyncStore(db_session)
        cipher_text, iv = encrypt_credential("gb-secret", encryption_key)
        await store.save_connection(GradebookConnection(
            tenant_id="tenant-1",
            id="conn-1",
            base_url=self.BASE_URL,
            token_url="https://gradebook.example.com/oauth/token",
            client_id="gb-client",
            encrypted_client_secret=cipher_text,
            encryption_iv=iv
        ))
        await store.batch_upsert_assignments([Assignment(
            class_id="class-1", id="A1", display_name="Essay", status="assigned",
            max_points=100, sync_status=AssignmentSyncStatus.IN_PROGRESS
        )])
        await store.save_job(make_job(["A1"]))
        mock_roster.get_submissions_by_assignment.return_value = {"A1": []}

        now = datetime.utcnow()
        token = jwt.encode({"exp": int(time.time()) + 3600}, "k", algorithm="HS256")
        session = {
            "sourcedId": "gp-1",
            "startDate": (now - timedelta(days=30)).strftime("%Y-%m-%d"),
            "endDate": (now + timedelta(days=30)).strftime("%Y-%m-%d")
        }

        async with GradebookClient(vendor_auth_header="") as gradebook:
            with aioresponses() as m:
                m.post("https://gradebook.example.com/oauth/token", payload={"access_token": token})
                m.get(re.compile(r".*/academicSessions\?.*"), payload={"academicSessions": [session]})
                m.get(re.compile(r".*/categories\?.*"), payload={"categories": []})
                m.get(f"{self.BASE_URL}/lineItems/A1", status=404)
                m.put(f"{self.BASE_URL}/lineItems/A1", payload={"lineItem": {"sourcedId": "A1"}})

                await GradeSyncJobOrchestrator(
                    store, mock_roster, gradebook, encryption_key=encryption_key
                ).run(MESSAGE)

                puts = m.requests[("PUT", URL(f"{self.BASE_URL}/lineItems/A1"))]

        assert len(puts) == 1
        body = puts[0].kwargs["json"]["lineItem"]
        assert body["sourcedId"] == "A1"
        assert body["resultValueMax"] == 100.0
        assert "category" not in body

        stored = (await store.get_assignments_from_id_list("class-1", ["A1"]))[0]
        assert stored.sync_status == AssignmentSyncStatus.SYNCED
        assert stored.last_sync_timestamp is not None
        assert stored.current_sync_job_id == "job-1"
        assert (await store.get_job("class-1", "job-1")).status == GradeSyncJobStatus.FINISHED
