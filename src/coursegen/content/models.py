"""Domain models for generated course content."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class OutlineStatus(str, Enum):
    DRAFT = "draft"
    APPROVED = "approved"


@dataclass(slots=True)
class OutlineLessonDraft:
    title: str
    objectives: list[str] = field(default_factory=list)


@dataclass(slots=True)
class OutlineLessonView:
    lesson_id: str
    outline_id: str
    position: int
    title: str
    objectives: list[str]


@dataclass(slots=True)
class OutlineView:
    """Course outline with its ordered lessons."""

    outline_id: str
    tenant_id: str
    course_id: str
    job_id: str | None
    status: OutlineStatus
    title: str
    summary: str
    lessons: list[OutlineLessonView]
    created_at: datetime
    approved_at: datetime | None


@dataclass(slots=True)
class LessonComponent:
    """One block of lesson content (explanation, example, exercise, quiz)."""

    component_id: str
    kind: str
    title: str
    body: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "component_id": self.component_id,
            "kind": self.kind,
            "title": self.title,
            "body": self.body,
        }


@dataclass(slots=True)
class LessonContentView:
    lesson_id: str
    tenant_id: str
    course_id: str
    job_id: str | None
    title: str
    components: list[LessonComponent]
    updated_at: datetime

    def component(self, component_id: str) -> LessonComponent | None:
        for item in self.components:
            if item.component_id == component_id:
                return item
        return None


@dataclass(slots=True)
class KnowledgeChunkView:
    chunk_id: str
    submission_id: str
    position: int
    content: str
    score: float = 0.0
