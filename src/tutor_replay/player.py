"""Replay session: loads a recorded session and ties cursor, snapshots and audio together."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Coroutine

from tutor_replay.audio import AudioFetcher, AudioResourceFactory, AudioSyncController
from tutor_replay.cursor import CursorState, PlaybackTicker, TimelineCursor
from tutor_replay.db import ReplayLoadError, SessionFetchError
from tutor_replay.lesson import LessonStructure, LessonStructureCache
from tutor_replay.models import SessionReplayData
from tutor_replay.snapshot import ReplaySnapshot, SnapshotCache
from tutor_replay.streams import EventStore

logger = logging.getLogger(__name__)

SessionLoader = Callable[[str], Awaitable[SessionReplayData]]
SnapshotListener = Callable[[ReplaySnapshot, CursorState], None]


class ReplayStatus(str, Enum):
    READY = "ready"
    ERROR = "error"


class ReplaySession:
    """One open replay of a recorded session.

    The cursor is the only writer of replay time. Every cursor change
    recomputes the snapshot, notifies subscribers, and (when audio is
    configured) reconciles conversation audio.
    """

    def __init__(
        self,
        data: SessionReplayData,
        *,
        lesson: LessonStructure | None = None,
        fetch_audio: AudioFetcher | None = None,
        resource_factory: AudioResourceFactory | None = None,
        snapshot_cache: SnapshotCache | None = None,
    ) -> None:
        self.data = data
        self.store = EventStore.from_replay_data(data)
        self.lesson = lesson
        self.cursor = TimelineCursor(self.store.duration_ms)
        self.ticker = PlaybackTicker(self.cursor)
        self._cache = snapshot_cache or SnapshotCache()
        self._listeners: list[SnapshotListener] = []
        self._tasks: set[asyncio.Task[Any]] = set()

        self.audio: AudioSyncController | None = None
        if fetch_audio is not None and resource_factory is not None:
            self.audio = AudioSyncController(self.cursor, fetch_audio, resource_factory)

        self._unsubscribe_cursor = self.cursor.subscribe(self._on_cursor_change)

    @property
    def session_id(self) -> str:
        return self.store.session_id

    @property
    def duration_ms(self) -> int:
        return self.store.duration_ms

    def get_snapshot(self, time_ms: float | None = None) -> ReplaySnapshot:
        """Snapshot at a cursor time (default: the current cursor time)."""
        if time_ms is None:
            time_ms = self.cursor.current_time_ms
        return self._cache.get_snapshot(self.store, time_ms, self.lesson)

    @property
    def snapshot(self) -> ReplaySnapshot:
        return self.get_snapshot()

    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        """Register for a snapshot on every cursor change; returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def play(self) -> None:
        self.cursor.play()

    def pause(self) -> None:
        self.cursor.pause()

    def toggle(self) -> None:
        self.cursor.toggle()

    def seek(self, time_ms: float) -> None:
        self.cursor.seek(time_ms)

    def skip_forward(self) -> None:
        self.cursor.skip_forward()

    def skip_back(self) -> None:
        self.cursor.skip_back()

    def set_playback_rate(self, rate: float) -> None:
        self.cursor.set_playback_rate(rate)

    def begin_scrub(self) -> None:
        self.cursor.begin_scrub()

    def scrub_to(self, time_ms: float) -> None:
        """Move the cursor during a drag; the tick stays suspended."""
        if not self.cursor.is_scrubbing:
            self.cursor.begin_scrub()
        self.cursor.seek(time_ms)

    def end_scrub(self) -> None:
        self.cursor.end_scrub()

    def _on_cursor_change(self, previous: CursorState, current: CursorState) -> None:
        snapshot = self.get_snapshot(current.current_time_ms)
        for listener in list(self._listeners):
            listener(snapshot, current)
        if self.audio is not None:
            self._schedule(self._sync_audio(previous, current, snapshot))

    async def _sync_audio(
        self, previous: CursorState, current: CursorState, snapshot: ReplaySnapshot
    ) -> None:
        audio = self.audio
        if audio is None:
            return
        conversation = snapshot.tutor_panel.active_conversation
        if conversation is None:
            await audio.sync(None)
        else:
            await audio.sync(conversation.conversation_id, conversation.start_offset_ms)
        if previous.is_playing != current.is_playing:
            await audio.on_play_pause_toggle(current.is_playing)

    def _schedule(self, coro: Coroutine[Any, Any, None]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            return
        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def settle(self) -> None:
        """Wait for pending audio work triggered by earlier cursor changes."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    def close(self) -> None:
        """Stop playback and release audio; nothing keeps running afterwards."""
        self.ticker.close()
        self._unsubscribe_cursor()
        for task in list(self._tasks):
            task.cancel()
        if self.audio is not None:
            self.audio.close()


@dataclass
class ReplayView:
    """Outcome of opening a replay: a ready session or a terminal error."""

    session_id: str
    status: ReplayStatus
    session: ReplaySession | None = None
    error: str | None = None


async def open_replay(
    session_id: str,
    load_session: SessionLoader,
    *,
    lessons: LessonStructureCache | None = None,
    fetch_audio: AudioFetcher | None = None,
    resource_factory: AudioResourceFactory | None = None,
) -> ReplayView:
    """Load a session for replay.

    Load failures are terminal for the view and are not retried; a missing
    lesson structure only disables template fallbacks.
    """
    try:
        data = await load_session(session_id)
    except ReplayLoadError as e:
        logger.error("Failed to load session %s: %s", session_id, e)
        return ReplayView(session_id=session_id, status=ReplayStatus.ERROR, error=str(e))
    except Exception as e:
        error = SessionFetchError(f"Failed to load session data: {e}")
        logger.error("Failed to load session %s: %s", session_id, error)
        return ReplayView(session_id=session_id, status=ReplayStatus.ERROR, error=str(error))

    lesson = lessons.get_or_none(data.session.lesson_id) if lessons is not None else None
    session = ReplaySession(
        data,
        lesson=lesson,
        fetch_audio=fetch_audio,
        resource_factory=resource_factory,
    )
    return ReplayView(session_id=session_id, status=ReplayStatus.READY, session=session)
