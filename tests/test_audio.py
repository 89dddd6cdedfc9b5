"""Tests for conversation audio fetching and synchronization."""

import asyncio

import httpx
import pytest

from tutor_replay.audio import (
    ApiKeyNotSetError,
    AudioDecodeError,
    AudioFetchError,
    AudioSyncController,
    ConversationAudioClient,
)
from tutor_replay.cursor import TimelineCursor


class FakeAudio:
    """In-memory stand-in for a playable audio buffer."""

    def __init__(self, data: bytes, duration: float = 10.0, *, fail_load: bool = False):
        self.data = data
        self.duration = duration
        self.position = 0.0
        self.paused = True
        self.released = False
        self.seeks: list[float] = []
        self.fail_load = fail_load
        self.load_gate: asyncio.Event | None = None
        self._ended = None

    async def load(self):
        if self.load_gate is not None:
            await self.load_gate.wait()
        if self.fail_load:
            raise AudioDecodeError("cannot decode")

    async def play(self):
        self.paused = False

    def pause(self):
        self.paused = True

    def seek(self, position_s):
        self.position = position_s
        self.seeks.append(position_s)

    def on_ended(self, callback):
        self._ended = callback

    def finish(self):
        """Simulate the buffer playing to its end."""
        self.position = self.duration
        self.paused = True
        self._ended()

    def release(self):
        self.released = True


class AudioHarness:
    """A cursor plus a controller wired to a fake fetcher and factory."""

    def __init__(self, duration_ms: int = 20_000, audio_duration: float = 10.0):
        self.cursor = TimelineCursor(duration_ms)
        self.audio_duration = audio_duration
        self.fetches: list[str] = []
        self.resources: list[FakeAudio] = []
        self.fail_fetch = False
        self.gates: dict[str, asyncio.Event] = {}
        self.controller = AudioSyncController(self.cursor, self.fetch, self.create)

    async def fetch(self, conversation_id: str) -> bytes:
        self.fetches.append(conversation_id)
        if conversation_id in self.gates:
            await self.gates[conversation_id].wait()
        if self.fail_fetch:
            raise AudioFetchError("Audio API error (500)", status_code=500)
        return conversation_id.encode()

    def create(self, data: bytes) -> FakeAudio:
        resource = FakeAudio(data, self.audio_duration)
        self.resources.append(resource)
        return resource


class TestLoading:
    """Tests for loading audio on conversation changes."""

    def test_loads_and_seeks_to_cursor(self):
        """Audio is positioned at cursor minus conversation start."""
        harness = AudioHarness()
        harness.cursor.seek(5000)
        asyncio.run(harness.controller.sync("conv-1", 2000))

        assert harness.controller.loaded_conversation_id == "conv-1"
        audio = harness.resources[0]
        assert audio.position == 3.0
        assert audio.paused
        assert not harness.controller.is_fetching

    def test_plays_when_cursor_playing(self):
        """Audio starts immediately if the timeline is playing."""
        harness = AudioHarness()
        harness.cursor.play()
        asyncio.run(harness.controller.sync("conv-1", 0))
        assert not harness.resources[0].paused

    def test_leaving_conversation_releases(self):
        """No active conversation means no audio."""
        harness = AudioHarness()

        async def run():
            await harness.controller.sync("conv-1", 0)
            await harness.controller.sync(None)

        asyncio.run(run())
        assert harness.controller.audio_handle is None
        assert harness.resources[0].released
        assert harness.controller.active_conversation_id is None

    def test_switching_conversation_replaces_audio(self):
        """A new conversation releases the old audio before loading."""
        harness = AudioHarness()

        async def run():
            await harness.controller.sync("conv-1", 0)
            await harness.controller.sync("conv-2", 0)

        asyncio.run(run())
        assert harness.resources[0].released
        assert harness.controller.loaded_conversation_id == "conv-2"
        assert harness.controller.audio_handle is harness.resources[1]

    def test_stale_fetch_discarded(self):
        """A fetch that completes after a newer change is thrown away."""
        harness = AudioHarness()
        harness.gates = {"conv-1": asyncio.Event(), "conv-2": asyncio.Event()}

        async def run():
            first = asyncio.create_task(harness.controller.sync("conv-1", 0))
            await asyncio.sleep(0)
            second = asyncio.create_task(harness.controller.sync("conv-2", 0))
            await asyncio.sleep(0)
            harness.gates["conv-2"].set()
            await second
            harness.gates["conv-1"].set()
            await first

        asyncio.run(run())
        assert harness.fetches == ["conv-1", "conv-2"]
        assert len(harness.resources) == 1
        assert harness.resources[0].data == b"conv-2"
        assert harness.controller.loaded_conversation_id == "conv-2"

    def test_fetch_failure_is_silent(self):
        """A failed fetch leaves the conversation without audio and is not retried."""
        harness = AudioHarness()
        harness.fail_fetch = True

        async def run():
            await harness.controller.sync("conv-1", 0)
            harness.cursor.seek(1000)
            await harness.controller.sync("conv-1", 0)

        asyncio.run(run())
        assert harness.controller.audio_handle is None
        assert harness.fetches == ["conv-1"]
        assert not harness.controller.is_fetching
        assert harness.controller.active_conversation_id == "conv-1"

    def test_decode_failure_releases_resource(self):
        """A resource that fails to load is released."""
        harness = AudioHarness()
        broken = FakeAudio(b"", fail_load=True)
        controller = AudioSyncController(harness.cursor, harness.fetch, lambda data: broken)
        asyncio.run(controller.sync("conv-1", 0))
        assert controller.audio_handle is None
        assert broken.released

    def test_cancelled_load_releases_resource(self):
        """Cancelling a sync while the resource is loading releases it."""
        harness = AudioHarness()

        async def run():
            gate = asyncio.Event()

            def create(data):
                resource = harness.create(data)
                resource.load_gate = gate
                return resource

            controller = AudioSyncController(harness.cursor, harness.fetch, create)
            task = asyncio.create_task(controller.sync("conv-1", 0))
            await asyncio.sleep(0)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            assert not controller.is_fetching
            controller.close()
            return controller

        controller = asyncio.run(run())
        assert len(harness.resources) == 1
        assert harness.resources[0].released
        assert controller.audio_handle is None
        assert not controller.is_fetching


class TestDriftHysteresis:
    """Tests for drift correction."""

    def test_small_drift_not_corrected(self):
        """Drift within half a second is left alone."""
        harness = AudioHarness()
        asyncio.run(harness.controller.sync("conv-1", 0))
        audio = harness.resources[0]
        for t in range(100, 2000, 100):
            audio.position = t / 1000 + 0.3
            harness.cursor.seek(t)
            harness.controller.on_cursor_change(t)
        assert audio.seeks == [0.0]

    def test_large_drift_reseeks(self):
        """A scrub beyond the tolerance moves the audio."""
        harness = AudioHarness()
        asyncio.run(harness.controller.sync("conv-1", 0))
        harness.cursor.seek(6000)
        harness.controller.on_cursor_change(6000)
        assert harness.resources[0].seeks == [0.0, 6.0]


class TestEndOfAudio:
    """Tests for timeline positions past the end of the audio."""

    def test_scrub_past_end_releases(self):
        """Scrubbing past the audio's end releases it."""
        harness = AudioHarness(audio_duration=4.0)
        asyncio.run(harness.controller.sync("conv-1", 0))
        harness.cursor.seek(5000)
        harness.controller.on_cursor_change(5000)
        assert harness.controller.audio_handle is None
        assert harness.resources[0].released

    def test_load_past_end_keeps_no_audio(self):
        """Loading when the cursor is already past the end keeps nothing."""
        harness = AudioHarness(audio_duration=4.0)
        harness.cursor.seek(9000)
        asyncio.run(harness.controller.sync("conv-1", 2000))
        assert harness.controller.audio_handle is None
        assert harness.resources[0].released

    def test_scrub_back_reloads(self):
        """Scrubbing back inside the conversation brings the audio back."""
        harness = AudioHarness(audio_duration=4.0)
        harness.cursor.seek(9000)

        async def run():
            await harness.controller.sync("conv-1", 2000)
            harness.cursor.seek(3000)
            await harness.controller.sync("conv-1", 2000)

        asyncio.run(run())
        assert harness.fetches == ["conv-1", "conv-1"]
        assert harness.controller.audio_handle is harness.resources[1]
        assert harness.resources[1].position == 1.0

    def test_natural_end_releases_without_moving_cursor(self):
        """Audio that ends on its own is released; the timeline keeps going."""
        harness = AudioHarness()
        harness.cursor.seek(1000)
        asyncio.run(harness.controller.sync("conv-1", 0))
        harness.resources[0].finish()
        assert harness.controller.audio_handle is None
        assert harness.cursor.current_time_ms == 1000


class TestPlayPause:
    """Tests for mirroring the timeline's run state."""

    def test_toggle_mirrors_cursor(self):
        """Audio plays and pauses with the timeline without moving."""
        harness = AudioHarness()
        harness.cursor.seek(2000)

        async def run():
            await harness.controller.sync("conv-1", 0)
            await harness.controller.on_play_pause_toggle(True)
            playing = not harness.resources[0].paused
            await harness.controller.on_play_pause_toggle(False)
            return playing

        assert asyncio.run(run())
        audio = harness.resources[0]
        assert audio.paused
        assert audio.position == 2.0

    def test_close_discards_pending_fetch(self):
        """Closing while a fetch is in flight drops its result."""
        harness = AudioHarness()
        harness.gates = {"conv-1": asyncio.Event()}

        async def run():
            task = asyncio.create_task(harness.controller.sync("conv-1", 0))
            await asyncio.sleep(0)
            harness.controller.close()
            harness.gates["conv-1"].set()
            await task

        asyncio.run(run())
        assert harness.resources == []
        assert harness.controller.audio_handle is None


class TestConversationAudioClient:
    """Tests for the HTTP audio client."""

    @pytest.fixture(autouse=True)
    def clean_env(self, monkeypatch):
        monkeypatch.delenv("ELEVENLABS_API_URL", raising=False)
        monkeypatch.delenv("ELEVENLABS_API_KEY", raising=False)

    def test_missing_api_key(self):
        """Without a key the client cannot be built."""
        with pytest.raises(ApiKeyNotSetError, match="ELEVENLABS_API_KEY"):
            ConversationAudioClient()

    def test_api_key_from_env(self, monkeypatch):
        """The key can come from the environment."""
        monkeypatch.setenv("ELEVENLABS_API_KEY", "env-key")
        seen = []

        def handler(request):
            seen.append(request.headers["xi-api-key"])
            return httpx.Response(200, content=b"audio")

        client = ConversationAudioClient(transport=httpx.MockTransport(handler))
        asyncio.run(client.fetch_conversation_audio("conv-1"))
        assert seen == ["env-key"]

    def test_fetch_and_cache(self):
        """Audio is fetched once per conversation, then served from cache."""
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, content=b"mp3-bytes")

        client = ConversationAudioClient("key", transport=httpx.MockTransport(handler))

        async def run():
            first = await client.fetch_conversation_audio("conv-1")
            second = await client.fetch_conversation_audio("conv-1")
            return first, second

        assert asyncio.run(run()) == (b"mp3-bytes", b"mp3-bytes")
        assert len(requests) == 1
        assert str(requests[0].url) == (
            "https://api.elevenlabs.io/v1/convai/conversations/conv-1/audio"
        )
        assert requests[0].headers["xi-api-key"] == "key"
        assert client.cached("conv-1") == b"mp3-bytes"

    def test_cache_evicts_oldest(self):
        """The byte cache is bounded."""
        client = ConversationAudioClient(
            "key",
            cache_size=1,
            transport=httpx.MockTransport(lambda request: httpx.Response(200, content=b"x")),
        )

        async def run():
            await client.fetch_conversation_audio("conv-1")
            await client.fetch_conversation_audio("conv-2")

        asyncio.run(run())
        assert client.cached("conv-1") is None
        assert client.cached("conv-2") == b"x"

    def test_error_status(self):
        """Non-success responses raise AudioFetchError with the status."""
        client = ConversationAudioClient(
            "key",
            transport=httpx.MockTransport(lambda request: httpx.Response(404)),
        )
        with pytest.raises(AudioFetchError) as exc_info:
            asyncio.run(client.fetch_conversation_audio("missing"))
        assert exc_info.value.status_code == 404
        assert client.cached("missing") is None

    def test_transport_error(self):
        """Connection failures are wrapped in AudioFetchError."""

        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = ConversationAudioClient("key", transport=httpx.MockTransport(handler))
        with pytest.raises(AudioFetchError, match="connection refused") as exc_info:
            asyncio.run(client.fetch_conversation_audio("conv-1"))
        assert exc_info.value.status_code is None

    def test_custom_base_url(self):
        """The base URL can be overridden."""
        client = ConversationAudioClient("key", base_url="http://localhost:9000/")
        assert client.audio_url("c") == "http://localhost:9000/v1/convai/conversations/c/audio"
