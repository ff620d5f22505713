"""Decompose a course-generation request into a task graph."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from course_orchestrator.orchestrator.graph import validate_acyclic
from course_orchestrator.orchestrator.models import TaskSpec, TaskType

logger = logging.getLogger(__name__)

KNOWLEDGE_ANALYSIS_KEY = "knowledge-analysis"
OUTLINE_KEY = "outline"
VALIDATION_KEY = "validation"

# Higher runs first; earlier pipeline stages outrank later ones.
PRIORITY_BY_TYPE: dict[TaskType, int] = {
    TaskType.KNOWLEDGE_ANALYSIS: 900,
    TaskType.OUTLINE_GENERATION: 800,
    TaskType.LESSON_SECTION: 700,
    TaskType.LESSON_ASSESSMENT: 600,
    TaskType.PATH_QUIZ: 500,
    TaskType.CLASS_EXAM: 400,
    TaskType.LESSON_MIND_MAP: 300,
    TaskType.LESSON_BRAINBYTES: 300,
    TaskType.CONTENT_VALIDATION: 100,
}
MEDIA_MAX_RETRY_COUNT = 2


@dataclass(slots=True)
class LessonPlan:
    lesson_id: str
    title: str
    sections: list[str]


@dataclass(slots=True)
class ModulePlan:
    path_id: str
    title: str
    lessons: list[LessonPlan]


@dataclass(slots=True)
class CourseRequest:
    """Validated course-generation request."""

    title: str
    base_class_id: str
    modules: list[ModulePlan]
    knowledge_base_id: str | None = None
    include_quizzes: bool = True
    include_final_exam: bool = True
    include_media: bool = True
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> CourseRequest:
        """Parse a free-form request payload, raising ValueError on bad shape."""

        title = str(payload.get("title") or "").strip()
        if not title:
            raise ValueError("Course request requires a non-empty title.")
        raw_modules = payload.get("modules", [])
        if not isinstance(raw_modules, list):
            raise ValueError("Course request 'modules' must be a list.")

        modules: list[ModulePlan] = []
        for module_index, raw_module in enumerate(raw_modules):
            if not isinstance(raw_module, dict):
                raise ValueError(f"Module #{module_index} must be an object.")
            path_id = str(raw_module.get("id") or f"m{module_index + 1}")
            raw_lessons = raw_module.get("lessons", [])
            if not isinstance(raw_lessons, list):
                raise ValueError(f"Module {path_id} 'lessons' must be a list.")
            lessons: list[LessonPlan] = []
            for lesson_index, raw_lesson in enumerate(raw_lessons):
                where = f"Lesson #{lesson_index} of module {path_id}"
                if not isinstance(raw_lesson, dict):
                    raise ValueError(f"{where} must be an object.")
                sections = raw_lesson.get("sections", [])
                if not isinstance(sections, list):
                    raise ValueError(f"{where} 'sections' must be a list.")
                lessons.append(
                    LessonPlan(
                        lesson_id=str(raw_lesson.get("id") or f"{path_id}-l{lesson_index + 1}"),
                        title=str(raw_lesson.get("title") or f"Lesson {lesson_index + 1}"),
                        sections=[str(section) for section in sections],
                    ),
                )
            modules.append(
                ModulePlan(
                    path_id=path_id,
                    title=str(raw_module.get("title") or f"Module {module_index + 1}"),
                    lessons=lessons,
                ),
            )

        assessment = payload.get("assessment_settings") or {}
        known = {
            "title",
            "base_class_id",
            "modules",
            "knowledge_base_id",
            "assessment_settings",
            "include_media",
        }
        return cls(
            title=title,
            base_class_id=str(payload.get("base_class_id") or "class"),
            modules=modules,
            knowledge_base_id=payload.get("knowledge_base_id"),
            include_quizzes=bool(assessment.get("include_quizzes", True)),
            include_final_exam=bool(assessment.get("include_final_exam", True)),
            include_media=bool(payload.get("include_media", True)),
            extra={key: value for key, value in payload.items() if key not in known},
        )


def decompose(request: CourseRequest) -> list[TaskSpec]:
    """Build the task graph for one course, validated acyclic."""

    specs: list[TaskSpec] = [
        _spec(
            KNOWLEDGE_ANALYSIS_KEY,
            TaskType.KNOWLEDGE_ANALYSIS,
            [],
            dependency_name="knowledge_base",
            payload={"knowledge_base_id": request.knowledge_base_id, "title": request.title},
        ),
        _spec(
            OUTLINE_KEY,
            TaskType.OUTLINE_GENERATION,
            [KNOWLEDGE_ANALYSIS_KEY],
            payload={"title": request.title, "modules": len(request.modules)},
        ),
    ]

    assessment_keys_by_path: dict[str, list[str]] = {}
    for module in request.modules:
        assessment_keys_by_path[module.path_id] = []
        for lesson in module.lessons:
            section_keys: list[str] = []
            for index, section_title in enumerate(lesson.sections):
                key = f"section-{lesson.lesson_id}-{index}"
                section_keys.append(key)
                spec = _spec(
                    key,
                    TaskType.LESSON_SECTION,
                    [OUTLINE_KEY],
                    payload={
                        "lesson_id": lesson.lesson_id,
                        "path_id": module.path_id,
                        "section_index": index,
                        "section_title": section_title,
                    },
                )
                # Sections of one lesson keep their outline order.
                spec.execution_priority -= index
                specs.append(spec)

            assessment_key = f"assessment-{lesson.lesson_id}"
            assessment_keys_by_path[module.path_id].append(assessment_key)
            specs.append(
                _spec(
                    assessment_key,
                    TaskType.LESSON_ASSESSMENT,
                    section_keys or [OUTLINE_KEY],
                    payload={"lesson_id": lesson.lesson_id, "lesson_title": lesson.title},
                ),
            )
            if request.include_media:
                for task_type, prefix in (
                    (TaskType.LESSON_MIND_MAP, "mindmap"),
                    (TaskType.LESSON_BRAINBYTES, "brainbytes"),
                ):
                    spec = _spec(
                        f"{prefix}-{lesson.lesson_id}",
                        task_type,
                        [OUTLINE_KEY],
                        payload={"lesson_id": lesson.lesson_id, "lesson_title": lesson.title},
                    )
                    spec.max_retry_count = MEDIA_MAX_RETRY_COUNT
                    specs.append(spec)

    if request.include_quizzes:
        for module in request.modules:
            assessment_keys = assessment_keys_by_path[module.path_id]
            if not assessment_keys:
                continue
            specs.append(
                _spec(
                    f"quiz-{module.path_id}",
                    TaskType.PATH_QUIZ,
                    assessment_keys,
                    payload={"path_id": module.path_id, "path_title": module.title},
                ),
            )

    all_assessments = [key for keys in assessment_keys_by_path.values() for key in keys]
    if request.include_final_exam and all_assessments:
        specs.append(
            _spec(
                f"exam-{request.base_class_id}",
                TaskType.CLASS_EXAM,
                all_assessments,
                payload={"class_title": request.title},
            ),
        )

    specs.append(
        _spec(
            VALIDATION_KEY,
            TaskType.CONTENT_VALIDATION,
            [spec.task_key for spec in specs],
            payload={"title": request.title},
        ),
    )

    validate_acyclic(specs)
    logger.debug("Decomposed course %r into %d tasks", request.title, len(specs))
    return specs


def _spec(
    key: str,
    task_type: TaskType,
    dependencies: list[str],
    *,
    payload: dict[str, Any],
    dependency_name: str = "llm",
) -> TaskSpec:
    return TaskSpec(
        task_key=key,
        task_type=task_type,
        dependencies=list(dependencies),
        execution_priority=PRIORITY_BY_TYPE[task_type],
        dependency_name=dependency_name,
        input=payload,
    )
