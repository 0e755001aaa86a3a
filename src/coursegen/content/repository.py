"""Persistence for outlines, lesson content and knowledge chunks."""

from __future__ import annotations

import json
import re
from pathlib import Path
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from coursegen.content.models import (
    KnowledgeChunkView,
    LessonComponent,
    LessonContentView,
    OutlineLessonDraft,
    OutlineLessonView,
    OutlineStatus,
    OutlineView,
)
from coursegen.jobs.errors import NotFoundError, ValidationError
from coursegen.storage.common import (
    Clock,
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from coursegen.storage.sqlmodel_models import (
    CourseOutline,
    KnowledgeChunk,
    LessonContent,
    OutlineLesson,
)

_TOKEN_RE = re.compile(r"[a-z0-9]{3,}")
_MAX_RANKED_CANDIDATES = 2000


class ContentRepository:
    """Tenant-scoped storage of generated course content."""

    def __init__(
        self,
        db_path: Path,
        *,
        clock: Clock = utc_now,
        sqlite_busy_timeout_ms: int = 5000,
    ) -> None:
        self.db_path = db_path
        self.clock = clock
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def replace_chunks(self, *, tenant_id: str, submission_id: str, chunks: list[str]) -> int:
        """Replace the knowledge chunks extracted from one submission."""

        now = self.clock()
        with Session(self.engine) as session:
            session.exec(
                sa_delete(KnowledgeChunk).where(
                    col(KnowledgeChunk.tenant_id) == tenant_id,
                    col(KnowledgeChunk.submission_id) == submission_id,
                ),
            )
            for position, content in enumerate(chunks):
                session.add(
                    KnowledgeChunk(
                        chunk_id=str(uuid4()),
                        tenant_id=tenant_id,
                        submission_id=submission_id,
                        position=position,
                        content=content,
                        created_at=to_db_datetime(now),
                    ),
                )
            session.commit()
        return len(chunks)

    def rank_chunks(self, *, tenant_id: str, query: str, limit: int) -> list[KnowledgeChunkView]:
        """Rank the tenant's chunks by term overlap with ``query``."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(KnowledgeChunk)
                .where(KnowledgeChunk.tenant_id == tenant_id)
                .order_by(col(KnowledgeChunk.created_at).asc(), col(KnowledgeChunk.position).asc())
                .limit(_MAX_RANKED_CANDIDATES),
            ).all()

        query_terms = _terms(query)
        ranked: list[KnowledgeChunkView] = []
        for row in rows:
            score = 0.0
            if query_terms:
                chunk_terms = _terms(row.content)
                if chunk_terms:
                    score = len(query_terms & chunk_terms) / len(query_terms)
            ranked.append(
                KnowledgeChunkView(
                    chunk_id=row.chunk_id,
                    submission_id=row.submission_id,
                    position=row.position,
                    content=row.content,
                    score=score,
                ),
            )
        ranked.sort(key=lambda item: -item.score)
        return ranked[: max(0, limit)]

    def save_outline(  # noqa: PLR0913
        self,
        *,
        tenant_id: str,
        course_id: str,
        job_id: str | None,
        title: str,
        summary: str,
        lessons: list[OutlineLessonDraft],
    ) -> OutlineView:
        """Store a draft outline and its lessons."""

        if not lessons:
            raise ValidationError("Outline must contain at least one lesson.")
        now = self.clock()
        outline_id = str(uuid4())
        with Session(self.engine) as session:
            session.add(
                CourseOutline(
                    outline_id=outline_id,
                    tenant_id=tenant_id,
                    course_id=course_id,
                    job_id=job_id,
                    status=OutlineStatus.DRAFT.value,
                    title=title,
                    summary=summary,
                    created_at=to_db_datetime(now),
                ),
            )
            for position, lesson in enumerate(lessons, start=1):
                session.add(
                    OutlineLesson(
                        lesson_id=str(uuid4()),
                        outline_id=outline_id,
                        tenant_id=tenant_id,
                        position=position,
                        title=lesson.title,
                        objectives_json=json.dumps(lesson.objectives, ensure_ascii=False),
                    ),
                )
            session.commit()
        outline = self.get_outline(tenant_id=tenant_id, outline_id=outline_id)
        if outline is None:
            raise NotFoundError(f"Outline not found after insert: {outline_id}")
        return outline

    def get_outline(self, *, tenant_id: str, outline_id: str) -> OutlineView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(CourseOutline).where(
                    CourseOutline.outline_id == outline_id,
                    CourseOutline.tenant_id == tenant_id,
                ),
            ).one_or_none()
            if row is None:
                return None
            return self._to_outline_view(session=session, row=row)

    def latest_outline(
        self,
        *,
        tenant_id: str,
        course_id: str,
        status: OutlineStatus | None = None,
    ) -> OutlineView | None:
        statement = select(CourseOutline).where(
            CourseOutline.tenant_id == tenant_id,
            CourseOutline.course_id == course_id,
        )
        if status is not None:
            statement = statement.where(CourseOutline.status == status.value)
        with Session(self.engine) as session:
            row = session.exec(
                statement.order_by(col(CourseOutline.created_at).desc()).limit(1),
            ).one_or_none()
            if row is None:
                return None
            return self._to_outline_view(session=session, row=row)

    def approve_outline(self, *, tenant_id: str, outline_id: str) -> OutlineView:
        now = self.clock()
        with Session(self.engine) as session:
            session.exec(
                sa_update(CourseOutline)
                .where(
                    col(CourseOutline.outline_id) == outline_id,
                    col(CourseOutline.tenant_id) == tenant_id,
                    col(CourseOutline.status) == OutlineStatus.DRAFT.value,
                )
                .values(status=OutlineStatus.APPROVED.value, approved_at=to_db_datetime(now)),
            )
            session.commit()
        outline = self.get_outline(tenant_id=tenant_id, outline_id=outline_id)
        if outline is None:
            raise NotFoundError(f"Outline not found: {outline_id}")
        return outline

    def get_outline_lesson(self, *, tenant_id: str, lesson_id: str) -> OutlineLessonView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(OutlineLesson).where(
                    OutlineLesson.lesson_id == lesson_id,
                    OutlineLesson.tenant_id == tenant_id,
                ),
            ).one_or_none()
        return _to_outline_lesson_view(row) if row is not None else None

    def save_lesson_content(  # noqa: PLR0913
        self,
        *,
        tenant_id: str,
        course_id: str,
        lesson_id: str,
        job_id: str | None,
        title: str,
        components: list[LessonComponent],
    ) -> LessonContentView:
        """Insert or replace the generated content of one lesson."""

        now = self.clock()
        components_json = json.dumps(
            [item.to_dict() for item in components],
            ensure_ascii=False,
        )
        with Session(self.engine) as session:
            row = session.exec(
                select(LessonContent).where(LessonContent.lesson_id == lesson_id),
            ).one_or_none()
            if row is not None and row.tenant_id != tenant_id:
                raise ValidationError(f"Lesson {lesson_id} belongs to another tenant.")
            if row is None:
                row = LessonContent(
                    lesson_id=lesson_id,
                    tenant_id=tenant_id,
                    course_id=course_id,
                    job_id=job_id,
                    title=title,
                    components_json=components_json,
                    updated_at=to_db_datetime(now),
                )
            else:
                row.course_id = course_id
                row.job_id = job_id
                row.title = title
                row.components_json = components_json
                row.updated_at = to_db_datetime(now)
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_lesson_view(row)

    def get_lesson_content(self, *, tenant_id: str, lesson_id: str) -> LessonContentView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(LessonContent).where(
                    LessonContent.lesson_id == lesson_id,
                    LessonContent.tenant_id == tenant_id,
                ),
            ).one_or_none()
        return _to_lesson_view(row) if row is not None else None

    def replace_component(
        self,
        *,
        tenant_id: str,
        lesson_id: str,
        component: LessonComponent,
        job_id: str | None,
    ) -> LessonContentView:
        lesson = self.get_lesson_content(tenant_id=tenant_id, lesson_id=lesson_id)
        if lesson is None:
            raise NotFoundError(f"Lesson content not found: {lesson_id}")
        if lesson.component(component.component_id) is None:
            raise NotFoundError(f"Component not found: {component.component_id}")
        components = [
            component if item.component_id == component.component_id else item
            for item in lesson.components
        ]
        return self.save_lesson_content(
            tenant_id=tenant_id,
            course_id=lesson.course_id,
            lesson_id=lesson_id,
            job_id=job_id,
            title=lesson.title,
            components=components,
        )

    def _to_outline_view(self, *, session: Session, row: CourseOutline) -> OutlineView:
        lessons = session.exec(
            select(OutlineLesson)
            .where(OutlineLesson.outline_id == row.outline_id)
            .order_by(col(OutlineLesson.position).asc()),
        ).all()
        return OutlineView(
            outline_id=row.outline_id,
            tenant_id=row.tenant_id,
            course_id=row.course_id,
            job_id=row.job_id,
            status=OutlineStatus(row.status),
            title=row.title,
            summary=row.summary,
            lessons=[_to_outline_lesson_view(lesson) for lesson in lessons],
            created_at=to_utc_aware_datetime(row.created_at),
            approved_at=optional_utc(row.approved_at),
        )


def _terms(text: str) -> set[str]:
    return set(_TOKEN_RE.findall(text.lower()))


def _to_outline_lesson_view(row: OutlineLesson) -> OutlineLessonView:
    objectives = json.loads(row.objectives_json)
    return OutlineLessonView(
        lesson_id=row.lesson_id,
        outline_id=row.outline_id,
        position=row.position,
        title=row.title,
        objectives=[str(item) for item in objectives] if isinstance(objectives, list) else [],
    )


def _to_lesson_view(row: LessonContent) -> LessonContentView:
    parsed = json.loads(row.components_json)
    components = [
        LessonComponent(
            component_id=str(item["component_id"]),
            kind=str(item.get("kind", "text")),
            title=str(item.get("title", "")),
            body=str(item.get("body", "")),
        )
        for item in parsed
        if isinstance(item, dict) and "component_id" in item
    ]
    return LessonContentView(
        lesson_id=row.lesson_id,
        tenant_id=row.tenant_id,
        course_id=row.course_id,
        job_id=row.job_id,
        title=row.title,
        components=components,
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
