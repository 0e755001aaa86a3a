"""Domain models for generation jobs: enums, typed payloads and views."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar

from coursegen.jobs.errors import ValidationError


class JobType(str, Enum):
    """Kinds of asynchronous generation work."""

    SME_INGESTION = "SME_INGESTION"
    COURSE_OUTLINE = "COURSE_OUTLINE"
    LESSON_CONTENT = "LESSON_CONTENT"
    COMPONENT_REGEN = "COMPONENT_REGEN"
    FULL_COURSE = "FULL_COURSE"


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    QUEUED = "QUEUED"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})
ACTIVE_STATUSES = frozenset({JobStatus.QUEUED, JobStatus.PROCESSING})


class FailureClass(str, Enum):
    """Normalized failure classes used by retry policy."""

    VALIDATION = "validation"
    TRANSIENT_PROVIDER = "transient_provider"
    OUTPUT_INVALID = "output_invalid"
    PERMANENT_PROVIDER = "permanent_provider"
    NOT_FOUND = "not_found"
    STORAGE = "storage"
    STALE_TIMEOUT = "stale_timeout"
    NON_RETRYABLE = "non_retryable"


RETRYABLE_FAILURE_CLASSES = frozenset(
    {
        FailureClass.TRANSIENT_PROVIDER,
        FailureClass.OUTPUT_INVALID,
        FailureClass.STORAGE,
        FailureClass.STALE_TIMEOUT,
    },
)


@dataclass(slots=True)
class JobRefs:
    """Correlation refs copied from a payload onto the job row."""

    course_id: str | None = None
    lesson_id: str | None = None
    sme_task_id: str | None = None
    submission_id: str | None = None


@dataclass(frozen=True, slots=True)
class SmeIngestionPayload:
    job_type: ClassVar[JobType] = JobType.SME_INGESTION

    submission_id: str
    sme_task_id: str | None = None

    def validate(self) -> None:
        _require(self.job_type, submission_id=self.submission_id)

    def refs(self) -> JobRefs:
        return JobRefs(submission_id=self.submission_id, sme_task_id=self.sme_task_id)


@dataclass(frozen=True, slots=True)
class CourseOutlinePayload:
    job_type: ClassVar[JobType] = JobType.COURSE_OUTLINE

    course_id: str
    topic: str = ""
    target_audience: str = ""
    lesson_count: int = 5

    def validate(self) -> None:
        _require(self.job_type, course_id=self.course_id)
        if not 1 <= self.lesson_count <= 50:
            raise ValidationError("lesson_count must be between 1 and 50.")

    def refs(self) -> JobRefs:
        return JobRefs(course_id=self.course_id)


@dataclass(frozen=True, slots=True)
class LessonContentPayload:
    job_type: ClassVar[JobType] = JobType.LESSON_CONTENT

    course_id: str
    lesson_id: str

    def validate(self) -> None:
        _require(self.job_type, course_id=self.course_id, lesson_id=self.lesson_id)

    def refs(self) -> JobRefs:
        return JobRefs(course_id=self.course_id, lesson_id=self.lesson_id)


@dataclass(frozen=True, slots=True)
class ComponentRegenPayload:
    job_type: ClassVar[JobType] = JobType.COMPONENT_REGEN

    course_id: str
    lesson_id: str
    component_id: str
    modification_prompt: str

    def validate(self) -> None:
        _require(
            self.job_type,
            course_id=self.course_id,
            lesson_id=self.lesson_id,
            component_id=self.component_id,
            modification_prompt=self.modification_prompt,
        )

    def refs(self) -> JobRefs:
        return JobRefs(course_id=self.course_id, lesson_id=self.lesson_id)


@dataclass(frozen=True, slots=True)
class FullCoursePayload:
    job_type: ClassVar[JobType] = JobType.FULL_COURSE

    course_id: str
    outline_id: str

    def validate(self) -> None:
        _require(self.job_type, course_id=self.course_id, outline_id=self.outline_id)

    def refs(self) -> JobRefs:
        return JobRefs(course_id=self.course_id)


JobPayload = (
    SmeIngestionPayload
    | CourseOutlinePayload
    | LessonContentPayload
    | ComponentRegenPayload
    | FullCoursePayload
)

PAYLOAD_TYPES: dict[JobType, type[Any]] = {
    JobType.SME_INGESTION: SmeIngestionPayload,
    JobType.COURSE_OUTLINE: CourseOutlinePayload,
    JobType.LESSON_CONTENT: LessonContentPayload,
    JobType.COMPONENT_REGEN: ComponentRegenPayload,
    JobType.FULL_COURSE: FullCoursePayload,
}


def payload_to_json(payload: JobPayload) -> str:
    return json.dumps(asdict(payload), ensure_ascii=False, sort_keys=True)


def payload_from_dict(job_type: JobType, data: dict[str, Any]) -> JobPayload:
    """Build and validate the payload variant for ``job_type``."""

    payload_cls = PAYLOAD_TYPES[job_type]
    known = {item.name for item in fields(payload_cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValidationError(f"Unknown {job_type.value} payload fields: {', '.join(unknown)}")
    try:
        payload = payload_cls(**data)
    except TypeError as error:
        raise ValidationError(f"Invalid {job_type.value} payload: {error}") from error
    payload.validate()
    return payload


def payload_from_json(job_type: JobType, raw: str) -> JobPayload:
    parsed = json.loads(raw)
    if not isinstance(parsed, dict):
        raise ValidationError(f"Expected JSON object payload for {job_type.value}")
    return payload_from_dict(job_type, parsed)


def _require(job_type: JobType, **values: str | None) -> None:
    missing = [name for name, value in values.items() if not (value or "").strip()]
    if missing:
        raise ValidationError(
            f"{job_type.value} job requires: {', '.join(missing)}",
        )


@dataclass(slots=True)
class GenerationJobCreate:
    """Input for creating a generation job."""

    tenant_id: str
    created_by_user_id: str
    payload: JobPayload
    max_retries: int = 3
    parent_job_id: str | None = None
    job_id: str | None = None

    @property
    def job_type(self) -> JobType:
        return self.payload.job_type


@dataclass(slots=True)
class GenerationJobView:
    """Readable job view for services, workers and CLI."""

    job_id: str
    tenant_id: str
    job_type: JobType
    status: JobStatus
    payload: JobPayload
    course_id: str | None
    lesson_id: str | None
    sme_task_id: str | None
    submission_id: str | None
    progress_percent: int
    progress_message: str
    result_path: str | None
    error_message: str | None
    failure_class: FailureClass | None
    tokens_used: int
    retry_count: int
    max_retries: int
    next_attempt_at: datetime
    parent_job_id: str | None
    batch_total: int | None
    worker_id: str | None
    created_by_user_id: str
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None
    heartbeat_at: datetime | None
    completed_at: datetime | None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_wire(self) -> dict[str, Any]:
        """Wire shape consumed by the presentation layer."""

        return {
            "id": self.job_id,
            "tenantId": self.tenant_id,
            "type": self.job_type.value,
            "status": self.status.value,
            "progressPercent": self.progress_percent,
            "progressMessage": self.progress_message,
            "resultPath": self.result_path,
            "errorMessage": self.error_message,
            "tokensUsed": self.tokens_used,
            "retryCount": self.retry_count,
            "maxRetries": self.max_retries,
            "parentJobId": self.parent_job_id,
            "courseId": self.course_id,
            "lessonId": self.lesson_id,
            "smeTaskId": self.sme_task_id,
            "submissionId": self.submission_id,
            "createdByUserId": self.created_by_user_id,
            "createdAt": self.created_at.isoformat(),
            "startedAt": _iso(self.started_at),
            "completedAt": _iso(self.completed_at),
        }


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass(slots=True)
class GenerationJobEventView:
    """Job event entry for audit trail."""

    event_id: int
    job_id: str
    event_type: str
    status_from: JobStatus | None
    status_to: JobStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class GenerationJobDetails:
    """Job view with ordered event trail."""

    job: GenerationJobView
    events: list[GenerationJobEventView]


@dataclass(slots=True)
class JobListFilter:
    tenant_id: str | None = None
    job_type: JobType | None = None
    status: JobStatus | None = None
    course_id: str | None = None
    limit: int = 50


@dataclass(slots=True)
class FailOutcome:
    """Decision recorded by ``JobRepository.fail``."""

    status: JobStatus
    retry_count: int
    max_retries: int
    next_attempt_at: datetime | None = None
    delay_seconds: float | None = None

    @property
    def requeued(self) -> bool:
        return self.status == JobStatus.QUEUED


@dataclass(slots=True)
class CancelOutcome:
    """Result of a cancel request; ``cancelled`` is False for terminal no-ops."""

    job: GenerationJobView
    cancelled: bool
    previous_status: JobStatus


@dataclass(slots=True)
class ReclaimResult:
    requeued: list[GenerationJobView] = field(default_factory=list)
    failed: list[GenerationJobView] = field(default_factory=list)
    finalized_parents: list[GenerationJobView] = field(default_factory=list)


@dataclass(slots=True)
class BatchStats:
    """Sibling counts for one parent job."""

    total: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    tokens_used: int = 0

    @property
    def done(self) -> int:
        return self.completed + self.failed + self.cancelled

    @property
    def active(self) -> int:
        return self.total - self.done

    @property
    def all_terminal(self) -> bool:
        return self.total > 0 and self.active == 0
