"""AI content generator interface and a deterministic local implementation."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass(slots=True)
class GenerationResult:
    """Structured generator output plus token accounting."""

    document: dict[str, Any]
    tokens_used: int = 0


@dataclass(slots=True)
class KnowledgeExtractionRequest:
    tenant_id: str
    submission_id: str
    text: str


@dataclass(slots=True)
class OutlineRequest:
    tenant_id: str
    course_id: str
    topic: str
    target_audience: str
    lesson_count: int
    context: list[str] = field(default_factory=list)


@dataclass(slots=True)
class LessonRequest:
    tenant_id: str
    course_id: str
    lesson_id: str
    lesson_title: str
    objectives: list[str]
    context: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ComponentRequest:
    tenant_id: str
    lesson_id: str
    component: dict[str, Any]
    modification_prompt: str


class ContentGenerator(Protocol):
    """Protocol implemented by AI provider adapters.

    Implementations raise ``TransientProviderError`` for timeouts and rate
    limits and ``PermanentProviderError`` for credential or quota failures.
    """

    def extract_knowledge(self, request: KnowledgeExtractionRequest) -> GenerationResult:
        """Split a submission into knowledge chunks: ``{"chunks": [str, ...]}``."""

    def generate_outline(self, request: OutlineRequest) -> GenerationResult:
        """Draft ``{"title", "summary", "lessons": [{"title", "objectives"}]}``."""

    def generate_lesson(self, request: LessonRequest) -> GenerationResult:
        """Write ``{"title", "components": [{"kind", "title", "body"}]}``."""

    def regenerate_component(self, request: ComponentRequest) -> GenerationResult:
        """Rewrite one component: ``{"kind", "title", "body"}``."""


class EchoContentGenerator:
    """Deterministic generator that shapes its inputs into valid documents."""

    def __init__(self, *, chunk_max_chars: int = 1200) -> None:
        self.chunk_max_chars = chunk_max_chars

    def extract_knowledge(self, request: KnowledgeExtractionRequest) -> GenerationResult:
        chunks = _pack_paragraphs(request.text, max_chars=self.chunk_max_chars)
        return GenerationResult(document={"chunks": chunks}, tokens_used=_words(*chunks))

    def generate_outline(self, request: OutlineRequest) -> GenerationResult:
        topic = request.topic or f"Course {request.course_id}"
        audience = request.target_audience or "general audience"
        lessons = [
            {
                "title": f"{topic}: part {index}",
                "objectives": [f"Understand part {index} of {topic} for {audience}"],
            }
            for index in range(1, request.lesson_count + 1)
        ]
        document = {
            "title": topic,
            "summary": f"{topic} for {audience}, grounded in {len(request.context)} sources.",
            "lessons": lessons,
        }
        return GenerationResult(document=document, tokens_used=_words(str(document)))

    def generate_lesson(self, request: LessonRequest) -> GenerationResult:
        background = " ".join(request.context[:2]) or request.lesson_title
        components = [
            {"kind": "explanation", "title": request.lesson_title, "body": background},
            {
                "kind": "objectives",
                "title": "Objectives",
                "body": "\n".join(request.objectives) or request.lesson_title,
            },
            {"kind": "quiz", "title": "Check your understanding", "body": request.lesson_title},
        ]
        document = {"title": request.lesson_title, "components": components}
        return GenerationResult(document=document, tokens_used=_words(str(document)))

    def regenerate_component(self, request: ComponentRequest) -> GenerationResult:
        body = f"{request.component.get('body', '')}\n\n{request.modification_prompt}".strip()
        document = {
            "kind": request.component.get("kind", "text"),
            "title": request.component.get("title", ""),
            "body": body,
        }
        return GenerationResult(document=document, tokens_used=_words(body))


def _pack_paragraphs(text: str, *, max_chars: int) -> list[str]:
    chunks: list[str] = []
    current = ""
    for paragraph in (item.strip() for item in text.split("\n\n")):
        if not paragraph:
            continue
        if current and len(current) + len(paragraph) + 2 > max_chars:
            chunks.append(current)
            current = ""
        current = f"{current}\n\n{paragraph}" if current else paragraph
        while len(current) > max_chars:
            chunks.append(current[:max_chars])
            current = current[max_chars:]
    if current:
        chunks.append(current)
    return chunks


def _words(*texts: str) -> int:
    return sum(len(text.split()) for text in texts)
