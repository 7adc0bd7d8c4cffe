"""
Grade Synchronization Engine

Services that push roster assignments and graded submissions into an
external gradebook.

Components:
- Assignment state reconciliation against the roster source
- Batched per-class persistence of assignments, jobs and connections
- Job orchestration with concurrent line item and result upserts
- Job enqueue, cancel and status for the producer side
"""

from .assignment_reconciler import AssignmentReconciler, ReconcileResult
from .storage import GradeSyncStore, StorageError
from .job_orchestrator import GradeSyncJobOrchestrator, JobContext
from .job_service import GradeSyncJobService

__all__ = [
    "AssignmentReconciler",
    "ReconcileResult",
    "GradeSyncStore",
    "StorageError",
    "GradeSyncJobOrchestrator",
    "JobContext",
    "GradeSyncJobService",
]
