"""Per-type job handlers, each a checkpointed sequence of workflow steps."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, ClassVar, Protocol, TypeVar

from coursegen.content.generator import (
    ComponentRequest,
    ContentGenerator,
    KnowledgeExtractionRequest,
    LessonRequest,
    OutlineRequest,
)
from coursegen.content.models import LessonComponent, OutlineLessonDraft, OutlineStatus
from coursegen.content.repository import ContentRepository
from coursegen.content.results import ResultStore
from coursegen.content.submissions import SubmissionReader
from coursegen.jobs.context import Checkpoint, JobContext
from coursegen.jobs.errors import NotFoundError, OutputValidationError, ValidationError
from coursegen.jobs.models import (
    ComponentRegenPayload,
    CourseOutlinePayload,
    FullCoursePayload,
    GenerationJobView,
    JobType,
    LessonContentPayload,
    SmeIngestionPayload,
)

if TYPE_CHECKING:
    from coursegen.jobs.batch import BatchCoordinator

PayloadT = TypeVar("PayloadT")


@dataclass(slots=True)
class HandlerResult:
    """Handler outcome; ``deferred`` leaves the job PROCESSING for a batch."""

    result_path: str | None
    tokens_used: int = 0
    message: str = "Completed"
    deferred: bool = False


@dataclass(slots=True)
class WorkflowState:
    job: GenerationJobView
    data: dict[str, Any] = field(default_factory=dict)
    tokens_used: int = 0
    result_path: str | None = None
    message: str = "Completed"
    deferred: bool = False


@dataclass(slots=True)
class WorkflowStep:
    checkpoint: Checkpoint
    percent: int
    message: str
    run: Callable[[WorkflowState], None]


class JobHandler(Protocol):
    job_type: ClassVar[JobType]

    def run(self, context: JobContext) -> HandlerResult:
        """Execute one attempt of the job."""


class CheckpointedHandler:
    """Runs ``steps()`` in order, entering each step's checkpoint first."""

    job_type: ClassVar[JobType]

    def steps(self) -> list[WorkflowStep]:
        raise NotImplementedError

    def run(self, context: JobContext) -> HandlerResult:
        state = WorkflowState(job=context.job)
        for step in self.steps():
            context.enter(step.checkpoint, percent=step.percent, message=step.message)
            step.run(state)
        return HandlerResult(
            result_path=state.result_path,
            tokens_used=state.tokens_used,
            message=state.message,
            deferred=state.deferred,
        )


class SmeIngestionHandler(CheckpointedHandler):
    job_type = JobType.SME_INGESTION

    def __init__(
        self,
        *,
        content: ContentRepository,
        generator: ContentGenerator,
        submissions: SubmissionReader,
        results: ResultStore,
    ) -> None:
        self.content = content
        self.generator = generator
        self.submissions = submissions
        self.results = results

    def steps(self) -> list[WorkflowStep]:
        return [
            WorkflowStep(Checkpoint.VALIDATE_INPUTS, 5, "Validating submission...", self._validate),
            WorkflowStep(Checkpoint.GATHER_CONTEXT, 20, "Reading submission...", self._read),
            WorkflowStep(Checkpoint.GENERATE, 40, "Extracting knowledge with AI...", self._extract),
            WorkflowStep(
                Checkpoint.PARSE_OUTPUT,
                70,
                "Validating extracted knowledge...",
                self._parse,
            ),
            WorkflowStep(Checkpoint.PERSIST_RESULTS, 85, "Storing knowledge...", self._persist),
        ]

    def _validate(self, state: WorkflowState) -> None:
        state.data["payload"] = _payload(state.job, SmeIngestionPayload)

    def _read(self, state: WorkflowState) -> None:
        payload: SmeIngestionPayload = state.data["payload"]
        text = self.submissions.read(
            tenant_id=state.job.tenant_id,
            submission_id=payload.submission_id,
        )
        if not text.strip():
            raise ValidationError(f"Submission is empty: {payload.submission_id}")
        state.data["text"] = text

    def _extract(self, state: WorkflowState) -> None:
        payload: SmeIngestionPayload = state.data["payload"]
        result = self.generator.extract_knowledge(
            KnowledgeExtractionRequest(
                tenant_id=state.job.tenant_id,
                submission_id=payload.submission_id,
                text=state.data["text"],
            ),
        )
        state.tokens_used += result.tokens_used
        state.data["document"] = result.document

    def _parse(self, state: WorkflowState) -> None:
        chunks = state.data["document"].get("chunks")
        if not isinstance(chunks, list) or not chunks:
            raise OutputValidationError("Knowledge extraction returned no chunks")
        cleaned = [str(item).strip() for item in chunks if str(item).strip()]
        if not cleaned:
            raise OutputValidationError("Knowledge extraction returned only empty chunks")
        state.data["chunks"] = cleaned

    def _persist(self, state: WorkflowState) -> None:
        payload: SmeIngestionPayload = state.data["payload"]
        chunks: list[str] = state.data["chunks"]
        self.content.replace_chunks(
            tenant_id=state.job.tenant_id,
            submission_id=payload.submission_id,
            chunks=chunks,
        )
        path = self.results.write(
            tenant_id=state.job.tenant_id,
            job_id=state.job.job_id,
            kind="knowledge",
            document={"submission_id": payload.submission_id, "chunks": chunks},
        )
        state.result_path = str(path)
        state.message = f"Ingested {len(chunks)} knowledge chunks"


class CourseOutlineHandler(CheckpointedHandler):
    job_type = JobType.COURSE_OUTLINE

    def __init__(
        self,
        *,
        content: ContentRepository,
        generator: ContentGenerator,
        results: ResultStore,
        knowledge_top_k: int = 8,
    ) -> None:
        self.content = content
        self.generator = generator
        self.results = results
        self.knowledge_top_k = knowledge_top_k

    def steps(self) -> list[WorkflowStep]:
        return [
            WorkflowStep(
                Checkpoint.VALIDATE_INPUTS,
                0,
                "Validating course request...",
                self._validate,
            ),
            WorkflowStep(
                Checkpoint.GATHER_CONTEXT,
                20,
                "Analyzing target audience...",
                self._gather,
            ),
            WorkflowStep(
                Checkpoint.GENERATE,
                40,
                "Generating course outline with AI...",
                self._generate,
            ),
            WorkflowStep(Checkpoint.PARSE_OUTPUT, 60, "Validating outline...", self._parse),
            WorkflowStep(Checkpoint.PERSIST_RESULTS, 70, "Storing outline...", self._persist),
        ]

    def _validate(self, state: WorkflowState) -> None:
        state.data["payload"] = _payload(state.job, CourseOutlinePayload)

    def _gather(self, state: WorkflowState) -> None:
        payload: CourseOutlinePayload = state.data["payload"]
        chunks = self.content.rank_chunks(
            tenant_id=state.job.tenant_id,
            query=f"{payload.topic} {payload.target_audience}",
            limit=self.knowledge_top_k,
        )
        state.data["context"] = [chunk.content for chunk in chunks]

    def _generate(self, state: WorkflowState) -> None:
        payload: CourseOutlinePayload = state.data["payload"]
        result = self.generator.generate_outline(
            OutlineRequest(
                tenant_id=state.job.tenant_id,
                course_id=payload.course_id,
                topic=payload.topic,
                target_audience=payload.target_audience,
                lesson_count=payload.lesson_count,
                context=state.data["context"],
            ),
        )
        state.tokens_used += result.tokens_used
        state.data["document"] = result.document

    def _parse(self, state: WorkflowState) -> None:
        document = state.data["document"]
        title = str(document.get("title") or "").strip()
        raw_lessons = document.get("lessons")
        if not title or not isinstance(raw_lessons, list) or not raw_lessons:
            raise OutputValidationError("Outline must have a title and at least one lesson")
        lessons: list[OutlineLessonDraft] = []
        for item in raw_lessons:
            if not isinstance(item, dict) or not str(item.get("title") or "").strip():
                raise OutputValidationError("Every outline lesson needs a title")
            objectives = item.get("objectives") or []
            lessons.append(
                OutlineLessonDraft(
                    title=str(item["title"]).strip(),
                    objectives=(
                        [str(obj) for obj in objectives] if isinstance(objectives, list) else []
                    ),
                ),
            )
        state.data["title"] = title
        state.data["summary"] = str(document.get("summary") or "")
        state.data["lessons"] = lessons

    def _persist(self, state: WorkflowState) -> None:
        payload: CourseOutlinePayload = state.data["payload"]
        outline = self.content.save_outline(
            tenant_id=state.job.tenant_id,
            course_id=payload.course_id,
            job_id=state.job.job_id,
            title=state.data["title"],
            summary=state.data["summary"],
            lessons=state.data["lessons"],
        )
        path = self.results.write(
            tenant_id=state.job.tenant_id,
            job_id=state.job.job_id,
            kind="outline",
            document={
                "outline_id": outline.outline_id,
                "course_id": outline.course_id,
                "title": outline.title,
                "summary": outline.summary,
                "lessons": [
                    {
                        "lesson_id": lesson.lesson_id,
                        "position": lesson.position,
                        "title": lesson.title,
                        "objectives": lesson.objectives,
                    }
                    for lesson in outline.lessons
                ],
            },
        )
        state.result_path = str(path)
        state.message = "Outline generation complete"


class LessonContentHandler(CheckpointedHandler):
    job_type = JobType.LESSON_CONTENT

    def __init__(
        self,
        *,
        content: ContentRepository,
        generator: ContentGenerator,
        results: ResultStore,
        knowledge_top_k: int = 8,
    ) -> None:
        self.content = content
        self.generator = generator
        self.results = results
        self.knowledge_top_k = knowledge_top_k

    def steps(self) -> list[WorkflowStep]:
        return [
            WorkflowStep(Checkpoint.VALIDATE_INPUTS, 5, "Validating lesson...", self._validate),
            WorkflowStep(
                Checkpoint.GATHER_CONTEXT,
                15,
                "Gathering source knowledge...",
                self._gather,
            ),
            WorkflowStep(
                Checkpoint.GENERATE,
                30,
                "Generating lesson content with AI...",
                self._generate,
            ),
            WorkflowStep(Checkpoint.PARSE_OUTPUT, 70, "Validating lesson content...", self._parse),
            WorkflowStep(Checkpoint.PERSIST_RESULTS, 85, "Storing lesson...", self._persist),
        ]

    def _validate(self, state: WorkflowState) -> None:
        payload = _payload(state.job, LessonContentPayload)
        lesson = self.content.get_outline_lesson(
            tenant_id=state.job.tenant_id,
            lesson_id=payload.lesson_id,
        )
        if lesson is None:
            raise NotFoundError(f"Outline lesson not found: {payload.lesson_id}")
        state.data["payload"] = payload
        state.data["lesson"] = lesson

    def _gather(self, state: WorkflowState) -> None:
        lesson = state.data["lesson"]
        chunks = self.content.rank_chunks(
            tenant_id=state.job.tenant_id,
            query=" ".join([lesson.title, *lesson.objectives]),
            limit=self.knowledge_top_k,
        )
        state.data["context"] = [chunk.content for chunk in chunks]

    def _generate(self, state: WorkflowState) -> None:
        payload: LessonContentPayload = state.data["payload"]
        lesson = state.data["lesson"]
        result = self.generator.generate_lesson(
            LessonRequest(
                tenant_id=state.job.tenant_id,
                course_id=payload.course_id,
                lesson_id=payload.lesson_id,
                lesson_title=lesson.title,
                objectives=lesson.objectives,
                context=state.data["context"],
            ),
        )
        state.tokens_used += result.tokens_used
        state.data["document"] = result.document

    def _parse(self, state: WorkflowState) -> None:
        payload: LessonContentPayload = state.data["payload"]
        raw_components = state.data["document"].get("components")
        if not isinstance(raw_components, list) or not raw_components:
            raise OutputValidationError("Lesson must contain at least one component")
        components: list[LessonComponent] = []
        for index, item in enumerate(raw_components, start=1):
            if not isinstance(item, dict) or not str(item.get("body") or "").strip():
                raise OutputValidationError(f"Lesson component {index} has no body")
            components.append(
                LessonComponent(
                    component_id=f"{payload.lesson_id}-c{index}",
                    kind=str(item.get("kind") or "text"),
                    title=str(item.get("title") or ""),
                    body=str(item["body"]),
                ),
            )
        state.data["title"] = str(state.data["document"].get("title") or state.data["lesson"].title)
        state.data["components"] = components

    def _persist(self, state: WorkflowState) -> None:
        payload: LessonContentPayload = state.data["payload"]
        lesson = self.content.save_lesson_content(
            tenant_id=state.job.tenant_id,
            course_id=payload.course_id,
            lesson_id=payload.lesson_id,
            job_id=state.job.job_id,
            title=state.data["title"],
            components=state.data["components"],
        )
        path = self.results.write(
            tenant_id=state.job.tenant_id,
            job_id=state.job.job_id,
            kind="lesson",
            document={
                "lesson_id": lesson.lesson_id,
                "title": lesson.title,
                "components": [item.to_dict() for item in lesson.components],
            },
        )
        state.result_path = str(path)
        state.message = "Lesson generation complete"


class ComponentRegenHandler(CheckpointedHandler):
    job_type = JobType.COMPONENT_REGEN

    def __init__(
        self,
        *,
        content: ContentRepository,
        generator: ContentGenerator,
        results: ResultStore,
    ) -> None:
        self.content = content
        self.generator = generator
        self.results = results

    def steps(self) -> list[WorkflowStep]:
        return [
            WorkflowStep(Checkpoint.VALIDATE_INPUTS, 5, "Validating component...", self._validate),
            WorkflowStep(
                Checkpoint.GENERATE,
                30,
                "Regenerating component with AI...",
                self._generate,
            ),
            WorkflowStep(Checkpoint.PARSE_OUTPUT, 70, "Validating component...", self._parse),
            WorkflowStep(Checkpoint.PERSIST_RESULTS, 85, "Storing component...", self._persist),
        ]

    def _validate(self, state: WorkflowState) -> None:
        payload = _payload(state.job, ComponentRegenPayload)
        lesson = self.content.get_lesson_content(
            tenant_id=state.job.tenant_id,
            lesson_id=payload.lesson_id,
        )
        if lesson is None:
            raise NotFoundError(f"Lesson content not found: {payload.lesson_id}")
        component = lesson.component(payload.component_id)
        if component is None:
            raise NotFoundError(f"Component not found: {payload.component_id}")
        state.data["payload"] = payload
        state.data["component"] = component

    def _generate(self, state: WorkflowState) -> None:
        payload: ComponentRegenPayload = state.data["payload"]
        component: LessonComponent = state.data["component"]
        result = self.generator.regenerate_component(
            ComponentRequest(
                tenant_id=state.job.tenant_id,
                lesson_id=payload.lesson_id,
                component=component.to_dict(),
                modification_prompt=payload.modification_prompt,
            ),
        )
        state.tokens_used += result.tokens_used
        state.data["document"] = result.document

    def _parse(self, state: WorkflowState) -> None:
        document = state.data["document"]
        component: LessonComponent = state.data["component"]
        body = str(document.get("body") or "").strip()
        if not body:
            raise OutputValidationError("Regenerated component has no body")
        state.data["updated"] = LessonComponent(
            component_id=component.component_id,
            kind=str(document.get("kind") or component.kind),
            title=str(document.get("title") or component.title),
            body=body,
        )

    def _persist(self, state: WorkflowState) -> None:
        payload: ComponentRegenPayload = state.data["payload"]
        updated: LessonComponent = state.data["updated"]
        self.content.replace_component(
            tenant_id=state.job.tenant_id,
            lesson_id=payload.lesson_id,
            component=updated,
            job_id=state.job.job_id,
        )
        path = self.results.write(
            tenant_id=state.job.tenant_id,
            job_id=state.job.job_id,
            kind="component",
            document={"lesson_id": payload.lesson_id, "component": updated.to_dict()},
        )
        state.result_path = str(path)
        state.message = "Component regeneration complete"


class FullCourseHandler(CheckpointedHandler):
    """Fans lesson generation out to child jobs; the parent does no work itself."""

    job_type = JobType.FULL_COURSE

    def __init__(self, *, content: ContentRepository, batch: BatchCoordinator) -> None:
        self.content = content
        self.batch = batch

    def steps(self) -> list[WorkflowStep]:
        return [
            WorkflowStep(
                Checkpoint.VALIDATE_INPUTS,
                5,
                "Validating approved outline...",
                self._validate,
            ),
            WorkflowStep(
                Checkpoint.PERSIST_RESULTS,
                10,
                "Scheduling lesson generation...",
                self._fan_out,
            ),
        ]

    def _validate(self, state: WorkflowState) -> None:
        payload = _payload(state.job, FullCoursePayload)
        outline = self.content.get_outline(
            tenant_id=state.job.tenant_id,
            outline_id=payload.outline_id,
        )
        if outline is None:
            raise NotFoundError(f"Outline not found: {payload.outline_id}")
        if outline.status != OutlineStatus.APPROVED or not outline.lessons:
            raise ValidationError("Outline must be approved and contain at least one lesson")
        state.data["outline"] = outline

    def _fan_out(self, state: WorkflowState) -> None:
        children = self.batch.fan_out(parent=state.job, outline=state.data["outline"])
        state.deferred = True
        state.message = f"Generating {len(children)} lessons..."


def _payload(job: GenerationJobView, payload_type: type[PayloadT]) -> PayloadT:
    if not isinstance(job.payload, payload_type):
        raise ValidationError(
            f"Job {job.job_id} carries {type(job.payload).__name__}, "
            f"expected {payload_type.__name__}",
        )
    return job.payload


def build_handlers(  # noqa: PLR0913
    *,
    content: ContentRepository,
    generator: ContentGenerator,
    submissions: SubmissionReader,
    results: ResultStore,
    batch: BatchCoordinator,
    knowledge_top_k: int = 8,
) -> dict[JobType, JobHandler]:
    """Explicit type -> handler map injected into the worker runtime."""

    handlers: list[JobHandler] = [
        SmeIngestionHandler(
            content=content,
            generator=generator,
            submissions=submissions,
            results=results,
        ),
        CourseOutlineHandler(
            content=content,
            generator=generator,
            results=results,
            knowledge_top_k=knowledge_top_k,
        ),
        LessonContentHandler(
            content=content,
            generator=generator,
            results=results,
            knowledge_top_k=knowledge_top_k,
        ),
        ComponentRegenHandler(content=content, generator=generator, results=results),
        FullCourseHandler(content=content, batch=batch),
    ]
    return {handler.job_type: handler for handler in handlers}
