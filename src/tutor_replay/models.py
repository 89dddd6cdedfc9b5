"""Typed session and stream payload models for replay."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from tutor_replay.timestamps import parse_timestamp


class ReplayModel(BaseModel):
    """Base for replay models: immutable once loaded."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")


class TimedEvent(ReplayModel):
    """An event with an absolute timestamp.

    Persisted rows name their time column differently per table
    (``created_at``, ``timestamp``, ``highlighted_at``); all of them
    validate into ``timestamp``.
    """

    id: str
    timestamp: str = Field(
        validation_alias=AliasChoices("timestamp", "created_at", "highlighted_at"),
    )


class Point(ReplayModel):
    x: float
    y: float


class CodeSnapshot(TimedEvent):
    task_index: int
    method_id: str
    code_content: str


class NavigationEvent(TimedEvent):
    from_task_index: int
    to_task_index: int
    direction: str = Field(
        default="",
        validation_alias=AliasChoices("direction", "navigation_direction"),
    )


class Stroke(TimedEvent):
    task: str
    zone: str
    stroke_number: int
    points: list[Point] = Field(
        default_factory=list,
        validation_alias=AliasChoices("points", "complete_points"),
    )
    point_count: int = 0
    start_point: Point | None = None
    end_point: Point | None = None


class VisualizationInteraction(TimedEvent):
    task: str
    action: str
    zone: str
    x: float
    y: float


class TestResult(TimedEvent):
    __test__ = False  # not a pytest test class

    task_index: int
    method_id: str
    test_case_index: int
    passed: bool
    error_message: str | None = None
    test_input: Any = None
    expected_output: Any = None
    actual_output: Any = None


class CodeError(TimedEvent):
    task_index: int
    error_message: str


class TaskProgress(TimedEvent):
    task_index: int
    completed: bool
    attempts: int = 0
    test_cases_passed: int = 0
    total_test_cases: int = 0
    completed_at: str | None = None


class TutorPanelInteraction(TimedEvent):
    current_task_index: int
    interaction_type: Literal["open", "close"]


class TutorConversation(ReplayModel):
    """An interval event: a voice conversation with the tutor.

    ``end_time`` is None while the conversation was still open when the
    session ended.
    """

    id: str
    conversation_id: str
    start_time: str
    end_time: str | None = None


class TutorHighlight(TimedEvent):
    line_number: int


class UserHighlight(TimedEvent):
    highlighted_text: str


class Message(TimedEvent):
    role: Literal["user", "assistant"]
    content: str


class Session(ReplayModel):
    """A replayable session.

    ``duration_ms`` is frozen when the session is loaded. For ongoing sessions
    (no ``completed_at``) it is measured against the wall clock at load time
    and goes stale as the session continues.
    """

    id: str
    started_at: str
    completed_at: str | None = None
    duration_ms: int
    lesson_id: str | None = None
    profile_id: str | None = None
    class_id: str | None = None
    status: str | None = None


def compute_duration_ms(
    started_at: str,
    completed_at: str | None,
    *,
    now: datetime | None = None,
) -> int:
    """Session duration in milliseconds, never negative.

    Args:
        started_at: Session start timestamp.
        completed_at: Session end timestamp, or None for an ongoing session.
        now: Optional current time for testing (defaults to UTC now).

    Raises:
        ValueError: If a timestamp is malformed.
    """
    start_dt = parse_timestamp(started_at)
    if completed_at is not None:
        end_dt = parse_timestamp(completed_at)
    else:
        end_dt = now if now is not None else datetime.now(timezone.utc)
        if end_dt.tzinfo is None:
            end_dt = end_dt.replace(tzinfo=timezone.utc)
    return max(0, int((end_dt - start_dt).total_seconds() * 1000))


class SessionReplayData(ReplayModel):
    """Everything loaded for one replay view."""

    session: Session
    code_snapshots: list[CodeSnapshot] = Field(default_factory=list)
    navigation_events: list[NavigationEvent] = Field(default_factory=list)
    strokes: list[Stroke] = Field(default_factory=list)
    visualization_interactions: list[VisualizationInteraction] = Field(default_factory=list)
    test_results: list[TestResult] = Field(default_factory=list)
    code_errors: list[CodeError] = Field(default_factory=list)
    task_progress: list[TaskProgress] = Field(default_factory=list)
    tutor_panel_interactions: list[TutorPanelInteraction] = Field(default_factory=list)
    tutor_conversations: list[TutorConversation] = Field(default_factory=list)
    tutor_highlights: list[TutorHighlight] = Field(default_factory=list)
    user_highlights: list[UserHighlight] = Field(default_factory=list)
    messages: list[Message] = Field(default_factory=list)

    def event_counts(self) -> dict[str, int]:
        """Number of entries per stream."""
        return {
            name: len(getattr(self, name))
            for name in type(self).model_fields
            if name != "session"
        }
