"""Timeline cursor and the autonomous playback tick."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger(__name__)

TICK_INTERVAL_MS = 100
SKIP_DELTA_MS = 5000


@dataclass(frozen=True)
class CursorState:
    current_time_ms: int
    duration_ms: int
    is_playing: bool
    is_scrubbing: bool
    playback_rate: float

    @property
    def at_end(self) -> bool:
        return self.current_time_ms >= self.duration_ms


CursorListener = Callable[[CursorState, CursorState], None]


class TimelineCursor:
    """Current replay time plus play/pause and scrub state.

    The only writer of replay time. Every change is pushed to subscribers as
    ``(previous, current)`` states; no-op operations do not notify.
    """

    def __init__(self, duration_ms: int) -> None:
        self._duration_ms = max(0, int(duration_ms))
        self._time_ms: float = 0
        self._playing = False
        self._scrubbing = False
        self._rate = 1.0
        self._listeners: list[CursorListener] = []

    @property
    def state(self) -> CursorState:
        return CursorState(
            current_time_ms=round(self._time_ms),
            duration_ms=self._duration_ms,
            is_playing=self._playing,
            is_scrubbing=self._scrubbing,
            playback_rate=self._rate,
        )

    @property
    def current_time_ms(self) -> int:
        return round(self._time_ms)

    @property
    def duration_ms(self) -> int:
        return self._duration_ms

    @property
    def is_playing(self) -> bool:
        return self._playing

    @property
    def is_scrubbing(self) -> bool:
        return self._scrubbing

    @property
    def playback_rate(self) -> float:
        return self._rate

    def subscribe(self, listener: CursorListener) -> Callable[[], None]:
        """Register a change listener; returns a function that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _clamp(self, time_ms: float) -> int:
        if time_ms != time_ms:  # NaN
            return 0
        return int(max(0, min(time_ms, self._duration_ms)))

    def _update(self, **changes: object) -> None:
        previous = self.state
        for name, value in changes.items():
            setattr(self, f"_{name}", value)
        current = self.state
        if current == previous:
            return
        for listener in list(self._listeners):
            listener(previous, current)

    def play(self) -> None:
        """Start playback; restarts from 0 when the cursor is at the end."""
        if self._time_ms >= self._duration_ms:
            self._update(time_ms=0, playing=True)
        else:
            self._update(playing=True)

    def pause(self) -> None:
        self._update(playing=False)

    def toggle(self) -> None:
        if self._playing:
            self.pause()
        else:
            self.play()

    def seek(self, time_ms: float) -> None:
        """Jump to a time; out-of-range input is clamped."""
        self._update(time_ms=self._clamp(time_ms))

    def skip_forward(self, delta_ms: int = SKIP_DELTA_MS) -> None:
        self.seek(self._time_ms + delta_ms)

    def skip_back(self, delta_ms: int = SKIP_DELTA_MS) -> None:
        self.seek(self._time_ms - delta_ms)

    def set_playback_rate(self, rate: float) -> None:
        """Set the playback rate multiplier.

        Raises:
            ValueError: If rate is not positive.
        """
        if not rate > 0:
            raise ValueError(f"Playback rate must be positive, got {rate}")
        self._update(rate=float(rate))

    def begin_scrub(self) -> None:
        """Suspend the autonomous tick while the user drags the timeline."""
        self._update(scrubbing=True)

    def end_scrub(self) -> None:
        self._update(scrubbing=False)

    def tick(self, interval_ms: int = TICK_INTERVAL_MS) -> bool:
        """Advance one playback tick.

        Fractional milliseconds carry over between ticks; states report the
        time rounded to the nearest millisecond.

        Returns:
            True if the cursor moved. Reaching the end clamps to the duration
            and stops playback.
        """
        if not self._playing or self._scrubbing:
            return False
        new_time = self._time_ms + interval_ms * self._rate
        if new_time >= self._duration_ms:
            self._update(time_ms=self._duration_ms, playing=False)
        else:
            self._update(time_ms=new_time)
        return True


class PlaybackTicker:
    """Drives ``TimelineCursor.tick`` from a repeating asyncio timer.

    The timer task runs only while the cursor is playing; pausing, reaching
    the end, or ``stop()`` cancels it.
    """

    def __init__(self, cursor: TimelineCursor, interval_ms: int = TICK_INTERVAL_MS) -> None:
        self._cursor = cursor
        self._interval_ms = interval_ms
        self._task: asyncio.Task[None] | None = None
        self._unsubscribe = cursor.subscribe(self._on_cursor_change)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running or not self._cursor.is_playing:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, playback tick not started")
            return
        self._task = loop.create_task(self._run())

    def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    def close(self) -> None:
        self.stop()
        self._unsubscribe()

    def _on_cursor_change(self, previous: CursorState, current: CursorState) -> None:
        if current.is_playing and not previous.is_playing:
            self.start()
        elif not current.is_playing and previous.is_playing:
            self.stop()

    async def _run(self) -> None:
        interval_s = self._interval_ms / 1000
        while self._cursor.is_playing:
            await asyncio.sleep(interval_s)
            self._cursor.tick(self._interval_ms)
