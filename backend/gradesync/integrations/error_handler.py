"""
Error types and logging utilities for grade sync.
"""

import logging
import traceback
from datetime import datetime
from typing import Dict, Any, List, Optional, Union
from contextlib import asynccontextmanager


# Grade sync specific logger
sync_logger = logging.getLogger('grade_sync')


class SyncErrorSeverity:
    """Error severity levels for grade sync operations."""
    LOW = "low"           # Single record affected, job continues
    MEDIUM = "medium"     # Single assignment affected
    HIGH = "high"         # Whole job affected
    CRITICAL = "critical" # Worker cannot process jobs


class SyncErrorCategory:
    """Error categories for better classification."""
    AUTHENTICATION = "authentication"
    GRADEBOOK_API = "gradebook_api"
    ROSTER_SOURCE = "roster_source"
    DATA_VALIDATION = "data_validation"
    CONFIGURATION = "configuration"
    PRECONDITION = "precondition"
    STORAGE = "storage"
    UNKNOWN = "unknown"


class GradeSyncError(Exception):
    """Base exception for grade sync errors with classification metadata."""

    def __init__(
        self,
        message: str,
        category: str = SyncErrorCategory.UNKNOWN,
        severity: str = SyncErrorSeverity.MEDIUM,
        job_id: Optional[str] = None,
        operation_type: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        retryable: bool = False,
        original_exception: Optional[Exception] = None
    ):
        super().__init__(message)
        self.message = message
        self.category = category
        self.severity = severity
        self.job_id = job_id
        self.operation_type = operation_type
        self.details = details or {}
        self.retryable = retryable
        self.original_exception = original_exception
        self.timestamp = datetime.utcnow()

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging."""
        return {
            'message': self.message,
            'category': self.category,
            'severity': self.severity,
            'job_id': self.job_id,
            'operation_type': self.operation_type,
            'details': self.details,
            'retryable': self.retryable,
            'timestamp': self.timestamp.isoformat(),
            'traceback': traceback.format_exc() if self.original_exception else None
        }


class GradebookApiError(GradeSyncError):
    """Non-success response or transport failure talking to the gradebook."""

    def __init__(self, message: str, status_code: Optional[int] = None, **kwargs):
        details = kwargs.pop('details', {})
        details['status_code'] = status_code
        super().__init__(
            message,
            category=SyncErrorCategory.GRADEBOOK_API,
            severity=SyncErrorSeverity.MEDIUM,
            retryable=status_code is None or status_code >= 500,
            details=details,
            **kwargs
        )
        self.status_code = status_code


class GradebookAuthError(GradeSyncError):
    """Gradebook credentials were rejected or the token response was unusable."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=SyncErrorCategory.AUTHENTICATION,
            severity=SyncErrorSeverity.HIGH,
            retryable=True,
            **kwargs
        )


class GradebookDataError(GradeSyncError):
    """Local data cannot be turned into a valid gradebook record."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=SyncErrorCategory.DATA_VALIDATION,
            severity=SyncErrorSeverity.LOW,
            retryable=False,
            **kwargs
        )


class RosterSourceError(GradeSyncError):
    """Failure reading from the roster source."""

    def __init__(self, message: str, status_code: Optional[int] = None, **kwargs):
        details = kwargs.pop('details', {})
        details['status_code'] = status_code
        super().__init__(
            message,
            category=SyncErrorCategory.ROSTER_SOURCE,
            severity=SyncErrorSeverity.HIGH,
            retryable=True,
            details=details,
            **kwargs
        )
        self.status_code = status_code


class JobPreconditionError(GradeSyncError):
    """A job cannot run with the stored state it was given."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=SyncErrorCategory.PRECONDITION,
            severity=SyncErrorSeverity.LOW,
            retryable=False,
            **kwargs
        )


class JobSetupError(GradeSyncError):
    """Job setup failed before any assignment was dispatched."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=kwargs.pop('category', SyncErrorCategory.CONFIGURATION),
            severity=SyncErrorSeverity.HIGH,
            retryable=False,
            **kwargs
        )


class SyncErrorHandler:
    """Central error logger for grade sync operations."""

    def __init__(self, max_log_entries: int = 1000):
        self._error_log: List[Dict[str, Any]] = []
        self._max_log_entries = max_log_entries

    def log_error(
        self,
        error: Union[GradeSyncError, Exception],
        context: Optional[Dict[str, Any]] = None
    ) -> None:
        """
        Log an error with full context.

        Args:
            error: The error to log
            context: Additional context information
        """
        if isinstance(error, GradeSyncError):
            error_dict = error.to_dict()
        else:
            error_dict = {
                'message': str(error),
                'category': SyncErrorCategory.UNKNOWN,
                'severity': SyncErrorSeverity.MEDIUM,
                'timestamp': datetime.utcnow().isoformat(),
                'traceback': traceback.format_exc()
            }

        if context:
            error_dict.update(context)

        severity = error_dict.get('severity', SyncErrorSeverity.MEDIUM)
        log_message = f"Grade sync error [{severity.upper()}]: {error_dict['message']}"
        extra = {'grade_sync_error': error_dict}

        if severity == SyncErrorSeverity.CRITICAL:
            sync_logger.critical(log_message, extra=extra)
        elif severity == SyncErrorSeverity.HIGH:
            sync_logger.error(log_message, extra=extra)
        elif severity == SyncErrorSeverity.MEDIUM:
            sync_logger.warning(log_message, extra=extra)
        else:
            sync_logger.info(log_message, extra=extra)

        self._error_log.append(error_dict)
        if len(self._error_log) > self._max_log_entries:
            self._error_log.pop(0)

    def get_recent_errors(
        self,
        limit: int = 50,
        severity_filter: Optional[str] = None,
        category_filter: Optional[str] = None,
        job_filter: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """Get recent errors with optional filtering."""
        filtered_errors = self._error_log.copy()

        if severity_filter:
            filtered_errors = [e for e in filtered_errors if e.get('severity') == severity_filter]

        if category_filter:
            filtered_errors = [e for e in filtered_errors if e.get('category') == category_filter]

        if job_filter:
            filtered_errors = [e for e in filtered_errors if e.get('job_id') == job_filter]

        return filtered_errors[-limit:]


@asynccontextmanager
async def error_context(
    operation_type: str,
    job_id: Optional[str] = None,
    error_handler: Optional[SyncErrorHandler] = None
):
    """
    Log and re-raise errors raised within an operation.

    Errors that are not GradeSyncError are wrapped in JobSetupError.

    Args:
        operation_type: Type of operation being performed
        job_id: Sync job the operation belongs to
        error_handler: Handler that records the error; a fresh one is used when omitted
    """
    handler = error_handler or SyncErrorHandler()

    try:
        yield handler
    except GradeSyncError as e:
        e.job_id = e.job_id or job_id
        e.operation_type = e.operation_type or operation_type
        handler.log_error(e)
        raise
    except Exception as e:
        sync_error = JobSetupError(
            message=f"{operation_type} failed: {e}",
            job_id=job_id,
            operation_type=operation_type,
            original_exception=e
        )
        handler.log_error(sync_error)
        raise sync_error from e
