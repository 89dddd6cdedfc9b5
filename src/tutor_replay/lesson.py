"""Lesson structure: the static task definitions a session works through."""

from __future__ import annotations

import logging
from typing import Any, Callable

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

# Tasks drawn on a canvas instead of coded in the editor
VISUALIZATION_METHODS = frozenset({
    "dfs_visualization",
    "hash_visualization",
    "tree_visualization",
})


class LessonLoadError(Exception):
    """Raised when a lesson structure cannot be loaded."""

    pass


class TaskExample(BaseModel):
    model_config = ConfigDict(frozen=True)

    input: Any = None
    output: Any = None


class TestCase(BaseModel):
    __test__ = False

    model_config = ConfigDict(frozen=True)

    input: Any = None
    expected: Any = None
    method_id: str


class LessonTask(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    description: str = ""
    difficulty: str | None = None
    method_name: str | None = None
    examples: list[TaskExample] = Field(default_factory=list)


class LessonStructure(BaseModel):
    """Tasks of a lesson in order, plus per-method templates and test cases."""

    model_config = ConfigDict(frozen=True)

    lesson_id: str
    title: str | None = None
    tasks: list[LessonTask] = Field(default_factory=list)
    method_templates: dict[str, str] = Field(default_factory=dict)
    test_cases: dict[str, list[TestCase]] = Field(default_factory=dict)
    concept_mappings: dict[int, list[str]] = Field(default_factory=dict)

    def task_at(self, index: int) -> LessonTask | None:
        """The task at a position, or None when out of range."""
        if 0 <= index < len(self.tasks):
            return self.tasks[index]
        return None

    def template_for_task(self, index: int) -> str:
        """Starter code for the task's method, trimmed; empty if none."""
        task = self.task_at(index)
        if task is None or not task.method_name:
            return ""
        return self.method_templates.get(task.method_name, "").strip()

    def is_visualization_task(self, index: int) -> bool:
        task = self.task_at(index)
        return task is not None and task.method_name in VISUALIZATION_METHODS

    def concepts_for_task(self, index: int) -> list[str]:
        """Concept names mapped to a task; empty when unmapped."""
        return self.concept_mappings.get(index, [])


LessonLoader = Callable[[str], LessonStructure]


class LessonStructureCache:
    """Loads lesson structures once per lesson id.

    Failed loads are not cached, so a later call retries.
    """

    def __init__(self, loader: LessonLoader) -> None:
        self._loader = loader
        self._lessons: dict[str, LessonStructure] = {}

    def get(self, lesson_id: str) -> LessonStructure:
        """Return the lesson structure, loading it on first use.

        Raises:
            LessonLoadError: If the loader fails.
        """
        lesson = self._lessons.get(lesson_id)
        if lesson is not None:
            return lesson
        try:
            lesson = self._loader(lesson_id)
        except LessonLoadError:
            raise
        except Exception as e:
            raise LessonLoadError(f"Failed to load lesson {lesson_id}: {e}") from e
        logger.info("Loaded lesson %s: %d tasks", lesson_id, len(lesson.tasks))
        self._lessons[lesson_id] = lesson
        return lesson

    def get_or_none(self, lesson_id: str | None) -> LessonStructure | None:
        """Like get(), but returns None when there is no lesson or it fails to load."""
        if not lesson_id:
            return None
        try:
            return self.get(lesson_id)
        except LessonLoadError as e:
            logger.warning("Lesson structure unavailable: %s", e)
            return None

    def __contains__(self, lesson_id: str) -> bool:
        return lesson_id in self._lessons
