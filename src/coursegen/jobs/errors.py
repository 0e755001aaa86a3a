"""Error taxonomy shared by the job store, queue and orchestrator."""

from __future__ import annotations


class CoursegenError(Exception):
    """Base class for all domain errors."""


class ValidationError(CoursegenError):
    """Bad input; surfaced synchronously, never retried."""


class ConcurrencyConflict(CoursegenError):
    """Lost a conditional-update race on a job or task row."""


class TransientProviderError(CoursegenError):
    """External call timed out or was rate limited; retried with backoff."""


class OutputValidationError(TransientProviderError):
    """Generator returned a structurally invalid document."""


class PermanentProviderError(CoursegenError):
    """External call rejected for good (credentials, quota)."""


class NotFoundError(CoursegenError):
    """Job or resource is missing (or belongs to another tenant)."""


class StorageError(CoursegenError):
    """Persistence failure while reading or writing results."""


class InvalidStateError(CoursegenError):
    """Operation is not valid for the job's current status."""


class JobCancelled(CoursegenError):
    """Raised at a checkpoint when the job has been cancelled."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job was cancelled: {job_id}")
        self.job_id = job_id
