"""In-memory event store for replay.

Each stream is converted once, at load time, into a tuple of
``(offset_ms, event)`` entries sorted by offset. Events whose timestamp does
not parse are dropped here so no later filter has to deal with NaN offsets.
"""

from __future__ import annotations

import bisect
import hashlib
import logging
from dataclasses import dataclass, field
from typing import Generic, Sequence, TypeVar

from tutor_replay.models import (
    CodeError,
    CodeSnapshot,
    Message,
    NavigationEvent,
    SessionReplayData,
    Stroke,
    TaskProgress,
    TestResult,
    TimedEvent,
    TutorConversation,
    TutorHighlight,
    TutorPanelInteraction,
    UserHighlight,
    VisualizationInteraction,
)
from tutor_replay.timestamps import is_valid_offset, offset_from_start

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=TimedEvent)


@dataclass(frozen=True)
class Stream(Generic[E]):
    """An immutable, offset-sorted sequence of point events."""

    name: str
    offsets: tuple[int, ...] = ()
    events: tuple[E, ...] = ()

    @classmethod
    def build(cls, name: str, events: Sequence[E], session_start: str) -> Stream[E]:
        """Normalize offsets and sort, keeping stream order for equal offsets."""
        entries: list[tuple[int, int, E]] = []
        for position, event in enumerate(events):
            offset = offset_from_start(event.timestamp, session_start)
            if not is_valid_offset(offset):
                logger.debug(
                    "Excluding %s event %s: malformed timestamp %r",
                    name, event.id, event.timestamp,
                )
                continue
            entries.append((int(offset), position, event))
        entries.sort(key=lambda entry: (entry[0], entry[1]))
        return cls(
            name=name,
            offsets=tuple(entry[0] for entry in entries),
            events=tuple(entry[2] for entry in entries),
        )

    def __len__(self) -> int:
        return len(self.events)

    def count_up_to(self, time_ms: float) -> int:
        """Number of entries with offset <= time_ms."""
        return bisect.bisect_right(self.offsets, time_ms)

    def entries(self) -> list[tuple[int, E]]:
        """Offset and event pairs in offset order."""
        return list(zip(self.offsets, self.events))


def active_entries_up_to(stream: Stream[E], time_ms: float) -> tuple[E, ...]:
    """Entries of the stream whose offset is at or before time_ms.

    The result for an earlier time is always a prefix of the result for a
    later one.
    """
    return stream.events[: stream.count_up_to(time_ms)]


def latest_at_or_before(stream: Stream[E], time_ms: float) -> E | None:
    """Most recent entry at or before time_ms, or None."""
    count = stream.count_up_to(time_ms)
    if count == 0:
        return None
    return stream.events[count - 1]


def latest_offset_at_or_before(stream: Stream[E], time_ms: float) -> int | None:
    """Offset of the last event at or before time_ms, or None."""
    count = stream.count_up_to(time_ms)
    if count == 0:
        return None
    return stream.offsets[count - 1]


@dataclass(frozen=True)
class ConversationSpan:
    """A tutor conversation resolved to offsets from session start."""

    conversation: TutorConversation
    start_offset_ms: int
    end_offset_ms: int
    position: int

    @property
    def conversation_id(self) -> str:
        return self.conversation.conversation_id

    @property
    def is_open_ended(self) -> bool:
        return self.conversation.end_time is None

    def is_active_at(self, time_ms: float) -> bool:
        return self.start_offset_ms <= time_ms <= self.end_offset_ms


def build_conversation_spans(
    conversations: Sequence[TutorConversation],
    session_start: str,
    duration_ms: int,
) -> tuple[ConversationSpan, ...]:
    """Resolve conversations into spans; open-ended ones last until the session ends."""
    spans: list[ConversationSpan] = []
    for position, conversation in enumerate(conversations):
        start = offset_from_start(conversation.start_time, session_start)
        if conversation.end_time is None:
            end = float(duration_ms)
        else:
            end = offset_from_start(conversation.end_time, session_start)
        if not (is_valid_offset(start) and is_valid_offset(end)):
            logger.debug(
                "Excluding conversation %s: malformed start/end time",
                conversation.conversation_id,
            )
            continue
        spans.append(
            ConversationSpan(
                conversation=conversation,
                start_offset_ms=int(start),
                end_offset_ms=int(end),
                position=position,
            )
        )
    return tuple(spans)


def active_conversation_at(
    spans: Sequence[ConversationSpan], time_ms: float
) -> ConversationSpan | None:
    """The most recently started conversation active at time_ms.

    Ties on start offset go to the one later in stream order.
    """
    active = [span for span in spans if span.is_active_at(time_ms)]
    if not active:
        return None
    return max(active, key=lambda span: (span.start_offset_ms, span.position))


@dataclass(frozen=True)
class EventStore:
    """Every stream of one session, normalized and immutable.

    ``version`` is a content hash of the loaded data, used to key derived
    snapshot caches.
    """

    session_id: str
    session_start: str
    duration_ms: int
    version: str
    code_snapshots: Stream[CodeSnapshot]
    navigation_events: Stream[NavigationEvent]
    strokes: Stream[Stroke]
    visualization_interactions: Stream[VisualizationInteraction]
    test_results: Stream[TestResult]
    code_errors: Stream[CodeError]
    task_progress: Stream[TaskProgress]
    tutor_panel_interactions: Stream[TutorPanelInteraction]
    tutor_highlights: Stream[TutorHighlight]
    user_highlights: Stream[UserHighlight]
    messages: Stream[Message]
    conversations: tuple[ConversationSpan, ...] = field(default=())

    @classmethod
    def from_replay_data(cls, data: SessionReplayData) -> EventStore:
        """Build the store from loaded session data."""
        session = data.session
        start = session.started_at

        def stream(name: str) -> Stream:
            return Stream.build(name, getattr(data, name), start)

        return cls(
            session_id=session.id,
            session_start=start,
            duration_ms=session.duration_ms,
            version=compute_version(data),
            code_snapshots=stream("code_snapshots"),
            navigation_events=stream("navigation_events"),
            strokes=stream("strokes"),
            visualization_interactions=stream("visualization_interactions"),
            test_results=stream("test_results"),
            code_errors=stream("code_errors"),
            task_progress=stream("task_progress"),
            tutor_panel_interactions=stream("tutor_panel_interactions"),
            tutor_highlights=stream("tutor_highlights"),
            user_highlights=stream("user_highlights"),
            messages=stream("messages"),
            conversations=build_conversation_spans(
                data.tutor_conversations, start, session.duration_ms
            ),
        )

    def point_streams(self) -> list[Stream]:
        return [
            self.code_snapshots,
            self.navigation_events,
            self.strokes,
            self.visualization_interactions,
            self.test_results,
            self.code_errors,
            self.task_progress,
            self.tutor_panel_interactions,
            self.tutor_highlights,
            self.user_highlights,
            self.messages,
        ]

    def stream_by_name(self, name: str) -> Stream:
        for stream in self.point_streams():
            if stream.name == name:
                return stream
        raise KeyError(name)

    def offset_of(self, event: TimedEvent) -> float:
        return offset_from_start(event.timestamp, self.session_start)


def compute_version(data: SessionReplayData) -> str:
    """Deterministic content hash of the loaded session data."""
    content = data.model_dump_json()
    return hashlib.sha256(content.encode()).hexdigest()[:32]
