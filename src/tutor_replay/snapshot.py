"""Point-in-time replay snapshots.

Every facet is derived from scratch from the event store and a cursor time,
so scrubbing backwards yields the same state as playing forwards to the same
point.
"""

from __future__ import annotations

from collections import OrderedDict
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict

from tutor_replay.lesson import LessonStructure
from tutor_replay.models import (
    CodeError,
    Message,
    NavigationEvent,
    Stroke,
    TaskProgress,
    TestResult,
    TutorHighlight,
    UserHighlight,
    VisualizationInteraction,
)
from tutor_replay.streams import (
    EventStore,
    active_conversation_at,
    active_entries_up_to,
    latest_at_or_before,
    latest_offset_at_or_before,
)

# How long the tutor counts as speaking after an assistant message
SPEAKING_WINDOW_MS = 2000

DEFAULT_TASK_INDEX = 0


class SpeakingState(str, Enum):
    INACTIVE = "inactive"
    LISTENING = "listening"
    SPEAKING = "speaking"


class FrozenModel(BaseModel):
    model_config = ConfigDict(frozen=True)


class ActiveConversation(FrozenModel):
    conversation_id: str
    start_offset_ms: int
    end_offset_ms: int


class TutorPanelState(FrozenModel):
    panel_open: bool = False
    active_conversation: ActiveConversation | None = None
    speaking_state: SpeakingState = SpeakingState.INACTIVE
    highlights: tuple[TutorHighlight, ...] = ()
    highlighted_line: int | None = None


class TerminalEntry(FrozenModel):
    kind: Literal["error", "test"]
    offset_ms: int
    text: str


class ReplaySnapshot(FrozenModel):
    """Observable session state at one cursor time."""

    time_ms: int
    code: str
    code_source: Literal["snapshot", "template", "empty"]
    active_task_index: int
    visible_strokes: tuple[Stroke, ...] = ()
    visible_messages: tuple[Message, ...] = ()
    tutor_panel: TutorPanelState = TutorPanelState()
    visible_test_results: tuple[TestResult, ...] = ()
    visible_errors: tuple[CodeError, ...] = ()
    visible_task_progress: tuple[TaskProgress, ...] = ()
    visible_navigation_events: tuple[NavigationEvent, ...] = ()
    visible_visualization_interactions: tuple[VisualizationInteraction, ...] = ()
    visible_user_highlights: tuple[UserHighlight, ...] = ()
    completed_task_indexes: tuple[int, ...] = ()
    active_task_completed: bool = False
    terminal_output: tuple[TerminalEntry, ...] = ()


def clamp_time(time_ms: float, duration_ms: int) -> int:
    """Clamp a cursor time to [0, duration_ms]."""
    if time_ms != time_ms:  # NaN
        return 0
    return int(max(0, min(time_ms, duration_ms)))


def derive_active_task_index(store: EventStore, time_ms: float) -> int:
    """Task index from the latest navigation event; other streams never move it."""
    latest = latest_at_or_before(store.navigation_events, time_ms)
    if latest is None:
        return DEFAULT_TASK_INDEX
    return latest.to_task_index


def derive_speaking_state(
    store: EventStore, time_ms: float, conversation_active: bool
) -> SpeakingState:
    if not conversation_active:
        return SpeakingState.INACTIVE
    latest = latest_at_or_before(store.messages, time_ms)
    offset = latest_offset_at_or_before(store.messages, time_ms)
    if latest is not None and offset is not None and latest.role == "assistant":
        if time_ms - offset <= SPEAKING_WINDOW_MS:
            return SpeakingState.SPEAKING
    return SpeakingState.LISTENING


def derive_tutor_panel(store: EventStore, time_ms: float) -> TutorPanelState:
    last_interaction = latest_at_or_before(store.tutor_panel_interactions, time_ms)
    panel_open = last_interaction is not None and last_interaction.interaction_type == "open"

    span = active_conversation_at(store.conversations, time_ms)
    active = None
    if span is not None:
        active = ActiveConversation(
            conversation_id=span.conversation_id,
            start_offset_ms=span.start_offset_ms,
            end_offset_ms=span.end_offset_ms,
        )

    highlights = active_entries_up_to(store.tutor_highlights, time_ms)
    return TutorPanelState(
        panel_open=panel_open,
        active_conversation=active,
        speaking_state=derive_speaking_state(store, time_ms, active is not None),
        highlights=highlights,
        highlighted_line=highlights[-1].line_number if highlights else None,
    )


def derive_code(
    store: EventStore,
    time_ms: float,
    active_task_index: int,
    lesson: LessonStructure | None,
) -> tuple[str, Literal["snapshot", "template", "empty"]]:
    """Latest code snapshot, else the active task's template, else empty."""
    latest = latest_at_or_before(store.code_snapshots, time_ms)
    if latest is not None:
        return latest.code_content, "snapshot"
    if lesson is not None:
        template = lesson.template_for_task(active_task_index)
        if template:
            return template, "template"
    return "", "empty"


def _render_test_result(result: TestResult) -> str:
    if result.passed:
        return f"Correct! Test case {result.test_case_index + 1} passed"
    text = f"Incorrect: test case {result.test_case_index + 1} failed"
    if result.error_message:
        text += f"\n{result.error_message}"
    return text


def build_terminal_output(
    store: EventStore,
    errors: tuple[CodeError, ...],
    results: tuple[TestResult, ...],
) -> tuple[TerminalEntry, ...]:
    """Merge errors and test results chronologically; errors first on ties."""
    entries: list[tuple[int, int, TerminalEntry]] = []
    for offset, error in zip(store.code_errors.offsets, errors):
        text = f"Compilation Error:\n{error.error_message or 'Unknown compilation error'}"
        entries.append((offset, 0, TerminalEntry(kind="error", offset_ms=offset, text=text)))
    for offset, result in zip(store.test_results.offsets, results):
        entries.append(
            (offset, 1, TerminalEntry(kind="test", offset_ms=offset, text=_render_test_result(result)))
        )
    entries.sort(key=lambda entry: (entry[0], entry[1]))
    return tuple(entry[2] for entry in entries)


def derive_snapshot(
    store: EventStore,
    time_ms: float,
    lesson: LessonStructure | None = None,
) -> ReplaySnapshot:
    """Compute the full replay snapshot at a cursor time.

    Pure: the same store and time always give an equal snapshot. Times
    outside the session are clamped to [0, duration].
    """
    t = clamp_time(time_ms, store.duration_ms)

    active_task_index = derive_active_task_index(store, t)
    code, code_source = derive_code(store, t, active_task_index, lesson)

    errors = active_entries_up_to(store.code_errors, t)
    results = active_entries_up_to(store.test_results, t)
    progress = active_entries_up_to(store.task_progress, t)
    completed = tuple(sorted({entry.task_index for entry in progress if entry.completed}))

    terminal: tuple[TerminalEntry, ...] = ()
    if lesson is None or not lesson.is_visualization_task(active_task_index):
        terminal = build_terminal_output(store, errors, results)

    return ReplaySnapshot(
        time_ms=t,
        code=code,
        code_source=code_source,
        active_task_index=active_task_index,
        visible_strokes=active_entries_up_to(store.strokes, t),
        visible_messages=active_entries_up_to(store.messages, t),
        tutor_panel=derive_tutor_panel(store, t),
        visible_test_results=results,
        visible_errors=errors,
        visible_task_progress=progress,
        visible_navigation_events=active_entries_up_to(store.navigation_events, t),
        visible_visualization_interactions=active_entries_up_to(
            store.visualization_interactions, t
        ),
        visible_user_highlights=active_entries_up_to(store.user_highlights, t),
        completed_task_indexes=completed,
        active_task_completed=active_task_index in completed,
        terminal_output=terminal,
    )


class SnapshotCache:
    """Bounded cache of snapshots keyed by (store version, lesson, time).

    Holds only values that ``derive_snapshot`` would recompute identically.
    """

    def __init__(self, max_entries: int = 256) -> None:
        self._max_entries = max_entries
        self._entries: OrderedDict[tuple[str, str | None, int], ReplaySnapshot] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def get_snapshot(
        self,
        store: EventStore,
        time_ms: float,
        lesson: LessonStructure | None = None,
    ) -> ReplaySnapshot:
        t = clamp_time(time_ms, store.duration_ms)
        key = (store.version, lesson.lesson_id if lesson is not None else None, t)
        cached = self._entries.get(key)
        if cached is not None:
            self._entries.move_to_end(key)
            return cached
        snapshot = derive_snapshot(store, t, lesson)
        self._entries[key] = snapshot
        if len(self._entries) > self._max_entries:
            self._entries.popitem(last=False)
        return snapshot

    def clear(self) -> None:
        self._entries.clear()
