"""Builders for replay test data.

All timestamps are expressed as millisecond offsets from SESSION_START.
"""

from __future__ import annotations

import itertools
from datetime import datetime, timedelta, timezone

from tutor_replay.lesson import LessonStructure, LessonTask
from tutor_replay.models import (
    CodeError,
    CodeSnapshot,
    Message,
    NavigationEvent,
    Session,
    SessionReplayData,
    Stroke,
    TaskProgress,
    TestResult,
    TutorConversation,
    TutorHighlight,
    TutorPanelInteraction,
    UserHighlight,
    VisualizationInteraction,
)
from tutor_replay.streams import EventStore

START = datetime(2025, 1, 25, 10, 0, 0, tzinfo=timezone.utc)
SESSION_START = "2025-01-25T10:00:00Z"

_ids = itertools.count(1)


def next_id(prefix: str) -> str:
    return f"{prefix}-{next(_ids)}"


def at(ms: int) -> str:
    """Absolute timestamp ms milliseconds after the session start."""
    return (START + timedelta(milliseconds=ms)).isoformat(timespec="milliseconds")


def make_session(
    duration_ms: int = 12000,
    *,
    session_id: str = "session-1",
    lesson_id: str | None = None,
) -> Session:
    return Session(
        id=session_id,
        started_at=SESSION_START,
        completed_at=at(duration_ms),
        duration_ms=duration_ms,
        lesson_id=lesson_id,
    )


def make_data(
    duration_ms: int = 12000,
    *,
    session_id: str = "session-1",
    lesson_id: str | None = None,
    **streams: list,
) -> SessionReplayData:
    session = make_session(duration_ms, session_id=session_id, lesson_id=lesson_id)
    return SessionReplayData(session=session, **streams)


def make_store(duration_ms: int = 12000, **streams: list) -> EventStore:
    return EventStore.from_replay_data(make_data(duration_ms, **streams))


def make_message(ms: int, role: str, content: str = "hello") -> Message:
    return Message(id=next_id("msg"), timestamp=at(ms), role=role, content=content)


def make_code_snapshot(ms: int, code: str, *, task_index: int = 0) -> CodeSnapshot:
    return CodeSnapshot(
        id=next_id("code"),
        timestamp=at(ms),
        task_index=task_index,
        method_id="two_sum",
        code_content=code,
    )


def make_navigation(ms: int, to_task: int, *, from_task: int = 0) -> NavigationEvent:
    return NavigationEvent(
        id=next_id("nav"),
        timestamp=at(ms),
        from_task_index=from_task,
        to_task_index=to_task,
        direction="next" if to_task > from_task else "previous",
    )


def make_stroke(ms: int, stroke_number: int = 1) -> Stroke:
    return Stroke(
        id=next_id("stroke"),
        timestamp=at(ms),
        task="dfs",
        zone="canvas",
        stroke_number=stroke_number,
        points=[{"x": 0, "y": 0}, {"x": 10, "y": 5}],
        point_count=2,
    )


def make_interaction(ms: int, action: str = "drag") -> VisualizationInteraction:
    return VisualizationInteraction(
        id=next_id("viz"), timestamp=at(ms), task="dfs", action=action, zone="canvas", x=1, y=2
    )


def make_result(
    ms: int,
    passed: bool,
    *,
    case_index: int = 0,
    task_index: int = 0,
    error_message: str | None = None,
) -> TestResult:
    return TestResult(
        id=next_id("result"),
        timestamp=at(ms),
        task_index=task_index,
        method_id="two_sum",
        test_case_index=case_index,
        passed=passed,
        error_message=error_message,
    )


def make_error(ms: int, message: str, *, task_index: int = 0) -> CodeError:
    return CodeError(id=next_id("err"), timestamp=at(ms), task_index=task_index, error_message=message)


def make_progress(ms: int, task_index: int, completed: bool = True) -> TaskProgress:
    return TaskProgress(
        id=next_id("progress"), timestamp=at(ms), task_index=task_index, completed=completed
    )


def make_panel(ms: int, interaction_type: str, *, task_index: int = 0) -> TutorPanelInteraction:
    return TutorPanelInteraction(
        id=next_id("panel"),
        timestamp=at(ms),
        current_task_index=task_index,
        interaction_type=interaction_type,
    )


def make_conversation(
    start_ms: int, end_ms: int | None = None, conversation_id: str = "conv-1"
) -> TutorConversation:
    return TutorConversation(
        id=next_id("tc"),
        conversation_id=conversation_id,
        start_time=at(start_ms),
        end_time=at(end_ms) if end_ms is not None else None,
    )


def make_tutor_highlight(ms: int, line: int) -> TutorHighlight:
    return TutorHighlight(id=next_id("th"), timestamp=at(ms), line_number=line)


def make_user_highlight(ms: int, text: str) -> UserHighlight:
    return UserHighlight(id=next_id("uh"), timestamp=at(ms), highlighted_text=text)


TWO_SUM_TEMPLATE = "\n    def two_sum(nums, target):\n        pass\n"


def make_lesson(lesson_id: str = "lesson-1") -> LessonStructure:
    """Two tasks: a coding task with a template and a visualization task."""
    return LessonStructure(
        lesson_id=lesson_id,
        tasks=[
            LessonTask(id="task-0", title="Two Sum", method_name="two_sum"),
            LessonTask(id="task-1", title="Depth-First Search", method_name="dfs_visualization"),
        ],
        method_templates={"two_sum": TWO_SUM_TEMPLATE},
        concept_mappings={0: ["hash maps"]},
    )
