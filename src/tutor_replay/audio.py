"""Conversation audio: fetching, caching, and keeping playback on the timeline."""

from __future__ import annotations

import asyncio
import logging
import os
from collections import OrderedDict
from typing import Awaitable, Callable, Protocol

import httpx

from tutor_replay.cursor import TimelineCursor

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.elevenlabs.io"

# Re-seek only when audio and timeline disagree by more than this
DRIFT_TOLERANCE_S = 0.5


class AudioError(Exception):
    """Base exception for conversation audio errors."""

    pass


class ApiKeyNotSetError(AudioError):
    """Raised when ELEVENLABS_API_KEY is not set."""

    def __init__(self) -> None:
        super().__init__("ELEVENLABS_API_KEY not set. Cannot fetch conversation audio.")


class AudioFetchError(AudioError):
    """Raised when fetching conversation audio fails.

    ``status_code`` is None for transport errors.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AudioDecodeError(AudioError):
    """Raised when fetched bytes cannot be turned into playable audio."""

    pass


class AudioResource(Protocol):
    """A single playable audio buffer.

    ``load`` resolves once the duration is known. ``release`` frees any
    temporary handles; the resource is unusable afterwards.
    """

    @property
    def duration(self) -> float: ...

    @property
    def position(self) -> float: ...

    @property
    def paused(self) -> bool: ...

    async def load(self) -> None: ...

    async def play(self) -> None: ...

    def pause(self) -> None: ...

    def seek(self, position_s: float) -> None: ...

    def on_ended(self, callback: Callable[[], None]) -> None: ...

    def release(self) -> None: ...


AudioFetcher = Callable[[str], Awaitable[bytes]]
AudioResourceFactory = Callable[[bytes], AudioResource]


class ConversationAudioClient:
    """Fetches recorded conversation audio over HTTP, with an LRU byte cache."""

    def __init__(
        self,
        api_key: str | None = None,
        *,
        base_url: str | None = None,
        timeout: float = 30.0,
        cache_size: int = 8,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            api_key: API key. If not provided, reads from ELEVENLABS_API_KEY.
            base_url: API base URL. Defaults to ELEVENLABS_API_URL or the public API.
            timeout: Request timeout in seconds.
            cache_size: Number of conversations whose audio is kept in memory.
            transport: Optional httpx transport, for testing.

        Raises:
            ApiKeyNotSetError: If no API key is available.
        """
        self._api_key = api_key or os.environ.get("ELEVENLABS_API_KEY")
        if not self._api_key:
            raise ApiKeyNotSetError()
        self._base_url = (
            base_url or os.environ.get("ELEVENLABS_API_URL") or DEFAULT_API_URL
        ).rstrip("/")
        self._timeout = timeout
        self._cache_size = cache_size
        self._cache: OrderedDict[str, bytes] = OrderedDict()
        self._transport = transport

    def audio_url(self, conversation_id: str) -> str:
        return f"{self._base_url}/v1/convai/conversations/{conversation_id}/audio"

    def cached(self, conversation_id: str) -> bytes | None:
        return self._cache.get(conversation_id)

    async def fetch_conversation_audio(self, conversation_id: str) -> bytes:
        """Return the audio bytes for a conversation.

        Raises:
            AudioFetchError: On a non-success status or transport failure.
        """
        data = self._cache.get(conversation_id)
        if data is not None:
            self._cache.move_to_end(conversation_id)
            return data

        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                resp = await client.get(
                    self.audio_url(conversation_id),
                    headers={"xi-api-key": self._api_key},
                )
        except httpx.HTTPError as e:
            raise AudioFetchError(f"Audio request failed: {e}") from e

        if not resp.is_success:
            raise AudioFetchError(
                f"Audio API error ({resp.status_code}) for conversation {conversation_id}",
                status_code=resp.status_code,
            )

        data = resp.content
        logger.info("Fetched audio for %s (%d bytes)", conversation_id, len(data))
        self._cache[conversation_id] = data
        if len(self._cache) > self._cache_size:
            self._cache.popitem(last=False)
        return data


class AudioSyncController:
    """Keeps one conversation's audio aligned with the timeline cursor.

    Owns the only audio resource. Audio failures are logged and leave the
    conversation without audio; they never interrupt the timeline.
    """

    def __init__(
        self,
        cursor: TimelineCursor,
        fetch_audio: AudioFetcher,
        resource_factory: AudioResourceFactory,
        *,
        drift_tolerance_s: float = DRIFT_TOLERANCE_S,
    ) -> None:
        self._cursor = cursor
        self._fetch_audio = fetch_audio
        self._resource_factory = resource_factory
        self._drift_tolerance_s = drift_tolerance_s

        self.loaded_conversation_id: str | None = None
        self.audio_handle: AudioResource | None = None
        self.is_fetching = False

        # The conversation the timeline is in, whether or not audio is loaded
        self._active_id: str | None = None
        self._active_start_ms = 0
        self._failed = False
        self._exhausted_duration: float | None = None
        # Bumped on every conversation change; fetches from older generations are discarded
        self._generation = 0

    @property
    def active_conversation_id(self) -> str | None:
        return self._active_id

    def target_offset_s(self, cursor_time_ms: float) -> float:
        """Where the audio should be for a cursor time, in seconds."""
        return max(0.0, (cursor_time_ms - self._active_start_ms) / 1000)

    async def sync(self, conversation_id: str | None, start_offset_ms: int = 0) -> None:
        """Reconcile audio with the active conversation and the cursor.

        Called on every cursor change with the conversation from the current
        snapshot.
        """
        if conversation_id != self._active_id:
            await self.on_active_conversation_change(conversation_id, start_offset_ms)
            return
        if self.audio_handle is not None:
            self.on_cursor_change(self._cursor.current_time_ms)
            return
        if self._should_reload():
            await self._load(conversation_id, self._generation)

    def _should_reload(self) -> bool:
        # Scrubbed back inside a conversation whose audio already ran out
        if self._active_id is None or self.is_fetching or self._failed:
            return False
        if self._exhausted_duration is None:
            return False
        target = self.target_offset_s(self._cursor.current_time_ms)
        return target < self._exhausted_duration - self._drift_tolerance_s

    async def on_active_conversation_change(
        self, conversation_id: str | None, start_offset_ms: int = 0
    ) -> None:
        self._generation += 1
        self.release()
        self._active_id = conversation_id
        self._active_start_ms = start_offset_ms
        self._failed = False
        self._exhausted_duration = None
        if conversation_id is None:
            self.is_fetching = False
            return
        await self._load(conversation_id, self._generation)

    async def _load(self, conversation_id: str, generation: int) -> None:
        self.is_fetching = True
        resource: AudioResource | None = None
        try:
            data = await self._fetch_audio(conversation_id)
            if generation != self._generation:
                logger.debug("Discarding stale audio for %s", conversation_id)
                return
            resource = self._resource_factory(data)
            await resource.load()
        except asyncio.CancelledError:
            if resource is not None:
                resource.release()
            raise
        except Exception as e:
            logger.warning("No audio for conversation %s: %s", conversation_id, e)
            if resource is not None:
                resource.release()
            if generation == self._generation:
                self._failed = True
            return
        finally:
            if generation == self._generation:
                self.is_fetching = False

        if generation != self._generation:
            logger.debug("Discarding stale audio for %s", conversation_id)
            resource.release()
            return

        target = self.target_offset_s(self._cursor.current_time_ms)
        if target >= resource.duration:
            logger.info(
                "Timeline past end of audio for %s (%.1fs >= %.1fs)",
                conversation_id, target, resource.duration,
            )
            self._exhausted_duration = resource.duration
            resource.release()
            return

        self.audio_handle = resource
        self.loaded_conversation_id = conversation_id
        self._exhausted_duration = None
        resource.on_ended(lambda: self._handle_ended(resource))
        resource.seek(target)
        logger.info(
            "Loaded audio for %s at %.1fs of %.1fs", conversation_id, target, resource.duration
        )
        if self._cursor.is_playing:
            await self._start_playback()

    def on_cursor_change(self, cursor_time_ms: float) -> None:
        """Follow a tick or scrub within the same conversation."""
        audio = self.audio_handle
        if audio is None:
            return
        target = self.target_offset_s(cursor_time_ms)
        if target >= audio.duration:
            logger.info("Scrubbed past end of audio for %s", self.loaded_conversation_id)
            self._exhausted_duration = audio.duration
            self.release()
            return
        if abs(audio.position - target) > self._drift_tolerance_s:
            logger.debug("Re-seeking audio %.1fs -> %.1fs", audio.position, target)
            audio.seek(target)

    async def on_play_pause_toggle(self, is_playing: bool) -> None:
        """Mirror the timeline's run state; never moves the audio position."""
        audio = self.audio_handle
        if audio is None or audio.position >= audio.duration:
            return
        if is_playing and audio.paused:
            await self._start_playback()
        elif not is_playing and not audio.paused:
            audio.pause()

    def on_audio_ended(self) -> None:
        """Release audio that played to the end; the cursor is not touched."""
        audio = self.audio_handle
        if audio is None:
            return
        logger.info("Audio finished for %s", self.loaded_conversation_id)
        self._exhausted_duration = audio.duration
        self.release()

    def _handle_ended(self, resource: AudioResource) -> None:
        if resource is self.audio_handle:
            self.on_audio_ended()

    async def _start_playback(self) -> None:
        audio = self.audio_handle
        if audio is None:
            return
        try:
            await audio.play()
        except Exception as e:
            logger.warning("Audio playback failed for %s: %s", self.loaded_conversation_id, e)
            self._failed = True
            self.release()

    def release(self) -> None:
        """Stop and free the loaded audio, if any."""
        audio = self.audio_handle
        self.audio_handle = None
        self.loaded_conversation_id = None
        if audio is None:
            return
        audio.pause()
        audio.release()

    def close(self) -> None:
        """Drop all audio state; pending fetches are discarded when they land."""
        self._generation += 1
        self.release()
        self._active_id = None
        self.is_fetching = False
