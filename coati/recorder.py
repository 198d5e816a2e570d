"""Microphone capture into durable audio artifacts."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
import uuid
from pathlib import Path
from typing import Callable, List, Optional, Protocol

import numpy as np

from .config import APP_DIR
from .errors import AlreadyRecording, EmptyRecording, NotRecording, PermissionDenied, RecordingFailed
from .host import HostEnvironment, HostSignal
from .models import CapturedAudio, RecordingState

logger = logging.getLogger(__name__)

AUDIO_DIR = APP_DIR / "recordings"
MIN_RECORDING_DURATION = 0.5


class AudioEngine(Protocol):
    """A single-use input engine writing to one file."""

    def open(self, path: Path) -> None:
        ...

    def start(self) -> None:
        ...

    def pause(self) -> None:
        ...

    def resume(self) -> bool:
        ...

    def finalize(self) -> None:
        ...

    def set_interruption_handler(self, callback: Callable[[], None]) -> None:
        ...

    @property
    def is_capturing(self) -> bool:
        ...

    @property
    def current_time(self) -> float:
        ...


class PermissionProvider(Protocol):
    def record_permission_granted(self) -> bool:
        ...

    async def request_record_permission(self) -> bool:
        ...


class SoundDeviceEngine:
    """Stream audio from the default microphone into a 16-bit WAV file."""

    def __init__(self, samplerate: int = 16000, channels: int = 1) -> None:
        try:
            import sounddevice as sd  # type: ignore
            import soundfile as sf  # type: ignore
        except Exception as exc:  # pragma: no cover - optional dependency
            raise RecordingFailed(
                "The `sounddevice` and `soundfile` packages are required for recording."
            ) from exc

        self._sd = sd
        self._sf = sf
        self._samplerate = samplerate
        self._channels = channels
        self._stream = None
        self._file = None
        self._frames = 0
        self._level = 0.0
        self._paused = False
        self._closing = False
        self._lock = threading.Lock()
        self._on_interrupted: Optional[Callable[[], None]] = None

    def set_interruption_handler(self, callback: Callable[[], None]) -> None:
        self._on_interrupted = callback

    def open(self, path: Path) -> None:
        self._file = self._sf.SoundFile(
            str(path),
            mode="w",
            samplerate=self._samplerate,
            channels=self._channels,
            format="WAV",
            subtype="PCM_16",
        )

    def start(self) -> None:
        if self._file is None:
            raise RecordingFailed("Engine has no output file.")
        self._stream = self._open_stream()
        self._stream.start()

    def pause(self) -> None:
        self._paused = True
        if self._stream is not None and self._stream.active:
            self._stream.stop()

    def resume(self) -> bool:
        if self._file is None:
            return False
        try:
            if self._stream is None or self._stream.closed:
                # The device went away; try whatever is the default input now.
                self._stream = self._open_stream()
            self._paused = False
            self._stream.start()
        except self._sd.PortAudioError as exc:
            logger.warning("Could not resume input stream: %s", exc)
            return False
        return bool(self._stream.active)

    def finalize(self) -> None:
        self._closing = True
        stream, self._stream = self._stream, None
        if stream is not None:
            try:
                stream.stop()
                stream.close()
            except self._sd.PortAudioError as exc:
                logger.debug("Error closing input stream: %s", exc)
        with self._lock:
            if self._file is not None:
                self._file.close()
                self._file = None

    @property
    def is_capturing(self) -> bool:
        return self._stream is not None and bool(self._stream.active) and not self._paused

    @property
    def current_time(self) -> float:
        return self._frames / float(self._samplerate)

    @property
    def level(self) -> float:
        """RMS of the most recent block, 0.0 to 1.0."""
        return self._level

    def _open_stream(self):
        return self._sd.InputStream(
            samplerate=self._samplerate,
            channels=self._channels,
            dtype="float32",
            callback=self._callback,
            finished_callback=self._finished,
        )

    def _callback(self, indata, frames, time, status) -> None:  # type: ignore[override]
        if status:
            logger.debug("Recorder status: %s", status)
        with self._lock:
            if self._file is None:
                return
            self._file.write(indata.copy())
            self._frames += frames
        self._level = min(1.0, float(np.sqrt(np.mean(np.square(indata)))))

    def _finished(self) -> None:
        if self._closing or self._paused:
            return
        logger.warning("Input stream stopped unexpectedly")
        if self._on_interrupted is not None:
            self._on_interrupted()


class InputDevicePermission:
    """Treat a usable default input device as granted microphone access.

    Desktop platforms prompt for microphone access when the stream first opens,
    so probing the device is the closest thing to an explicit request.
    """

    def __init__(self) -> None:
        self._granted = False

    def record_permission_granted(self) -> bool:
        return self._granted

    async def request_record_permission(self) -> bool:
        self._granted = await asyncio.to_thread(self._probe)
        return self._granted

    def _probe(self) -> bool:
        try:
            import sounddevice as sd  # type: ignore
        except Exception as exc:  # pragma: no cover - optional dependency
            logger.error("sounddevice is unavailable: %s", exc)
            return False
        try:
            device = sd.query_devices(kind="input")
        except (sd.PortAudioError, ValueError) as exc:
            logger.warning("No usable input device: %s", exc)
            return False
        return int(device.get("max_input_channels", 0)) > 0


class AudioCaptureSession:
    """Owns at most one live recording and the artifact it produces."""

    def __init__(
        self,
        audio_dir: Path = AUDIO_DIR,
        engine_factory: Optional[Callable[[], AudioEngine]] = None,
        permissions: Optional[PermissionProvider] = None,
        host: Optional[HostEnvironment] = None,
        min_duration: float = MIN_RECORDING_DURATION,
        background_grace_period: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.audio_dir = audio_dir
        self._engine_factory = engine_factory or SoundDeviceEngine
        self._permissions = permissions or InputDevicePermission()
        self._host = host or HostEnvironment()
        self._min_duration = min_duration
        self._background_grace_period = background_grace_period
        self._clock = clock
        self._state: Optional[RecordingState] = None
        self._engine: Optional[AudioEngine] = None
        self._unsubscribers: List[Callable[[], None]] = []
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._busy = False

    @property
    def state(self) -> Optional[RecordingState]:
        return self._state

    @property
    def is_recording(self) -> bool:
        engine = self._engine
        return (
            self._state is not None
            and engine is not None
            and not self._state.degraded
            and engine.is_capturing
        )

    @property
    def is_degraded(self) -> bool:
        return self._state is not None and self._state.degraded

    @property
    def input_level(self) -> float:
        engine = self._engine
        if engine is None or not self.is_recording:
            return 0.0
        return float(getattr(engine, "level", 0.0))

    def get_elapsed(self) -> float:
        if self._state is None:
            return 0.0
        return max(0.0, self._clock() - self._state.started_at)

    async def start(self) -> RecordingState:
        if self._state is not None or self._busy:
            raise AlreadyRecording()
        self._busy = True
        try:
            if not self._permissions.record_permission_granted():
                if not await self._permissions.request_record_permission():
                    raise PermissionDenied()

            self.audio_dir.mkdir(parents=True, exist_ok=True)
            path = self.audio_dir / f"{uuid.uuid4().hex}.wav"
            engine = self._engine_factory()
            engine.set_interruption_handler(self._on_engine_interrupted)
            try:
                engine.open(path)
                engine.start()
            except RecordingFailed:
                self._discard(engine, path)
                raise
            except Exception as exc:
                self._discard(engine, path)
                raise RecordingFailed(str(exc)) from exc

            self._loop = asyncio.get_running_loop()
            self._engine = engine
            self._state = RecordingState(audio_path=path, started_at=self._clock())
            self._unsubscribers = [
                self._host.subscribe(HostSignal.INTERRUPTION_BEGAN, self._on_interruption_began),
                self._host.subscribe(HostSignal.INTERRUPTION_ENDED, self._on_interruption_ended),
                self._host.subscribe(HostSignal.BACKGROUNDED, self._on_backgrounded),
                self._host.subscribe(HostSignal.FOREGROUNDED, self._on_foregrounded),
                self._host.subscribe(HostSignal.ROUTE_CHANGED, self._on_route_changed),
            ]
            logger.info("Recording to %s", path.name)
            return self._state
        finally:
            self._busy = False

    async def stop(self) -> CapturedAudio:
        state, engine = self._state, self._engine
        if state is None or engine is None or self._busy:
            raise NotRecording()
        self._busy = True
        try:
            elapsed = self.get_elapsed()
            if elapsed < self._min_duration:
                await asyncio.sleep(self._min_duration - elapsed)

            # Finalising resets the engine clock, so the duration is read first.
            duration = engine.current_time
            if duration <= 0:
                duration = self.get_elapsed()
            try:
                engine.finalize()
            except Exception as exc:
                raise RecordingFailed(str(exc)) from exc
        finally:
            self._teardown()

        path = state.audio_path
        try:
            size = path.stat().st_size
        except FileNotFoundError:
            size = 0
        if size == 0:
            path.unlink(missing_ok=True)
            raise EmptyRecording()
        if state.degraded:
            logger.warning("Recording %s finished degraded", path.name)
        return CapturedAudio(path=path, duration=duration, degraded=state.degraded)

    async def abort(self) -> None:
        state, engine = self._state, self._engine
        if state is None or engine is None:
            return
        try:
            self._discard(engine, state.audio_path)
        finally:
            self._teardown()
        logger.info("Recording %s discarded", state.audio_path.name)

    def _discard(self, engine: AudioEngine, path: Path) -> None:
        try:
            engine.finalize()
        except Exception as exc:  # noqa: BLE001 - the artifact is removed either way
            logger.debug("Error finalising discarded recording: %s", exc)
        path.unlink(missing_ok=True)

    def _teardown(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        if self._state is not None and self._state.execution_token is not None:
            self._state.execution_token.release()
        self._state = None
        self._engine = None
        self._loop = None
        self._busy = False

    def _mark_degraded(self, reason: str) -> None:
        state = self._state
        if state is None or state.degraded:
            return
        state.degraded = True
        logger.warning("Recording degraded: %s", reason)

    def _attempt_resume(self) -> bool:
        state, engine = self._state, self._engine
        if state is None or engine is None:
            return False
        state.resume_attempted = True
        try:
            resumed = engine.resume()
        except Exception as exc:  # noqa: BLE001 - a failed resume degrades the session
            logger.warning("Resume raised: %s", exc)
            return False
        # A resume call can claim success while no audio is flowing.
        return bool(resumed) and engine.is_capturing

    def _on_interruption_began(self, **info) -> None:
        state, engine = self._state, self._engine
        if state is None or engine is None:
            return
        state.interrupted = True
        logger.info("Recording interrupted")
        engine.pause()

    def _on_interruption_ended(self, should_resume: bool = True, **info) -> None:
        state = self._state
        if state is None or not state.interrupted:
            return
        if not should_resume:
            state.resume_attempted = True
            self._mark_degraded("host declined to resume after interruption")
            return
        if self._attempt_resume():
            state.interrupted = False
            logger.info("Recording resumed after interruption")
        else:
            self._mark_degraded("engine did not resume after interruption")

    def _on_route_changed(self, reason: str = "", **info) -> None:
        state, engine = self._state, self._engine
        if state is None or engine is None or state.degraded or state.interrupted:
            return
        if engine.is_capturing:
            logger.debug("Audio route changed (%s), still capturing", reason or "unknown")
            return
        if not self._attempt_resume():
            self._mark_degraded(f"audio route changed ({reason or 'unknown'})")

    def _on_backgrounded(self, **info) -> None:
        state = self._state
        if state is None:
            return
        state.backgrounded = True
        token = state.execution_token
        if token is None or not token.active:
            state.execution_token = self._host.begin_extended_execution(
                "recording", self._background_grace_period, on_expire=self._on_background_expired
            )

    def _on_foregrounded(self, **info) -> None:
        state = self._state
        if state is None:
            return
        state.backgrounded = False
        if state.execution_token is not None:
            state.execution_token.release()
            state.execution_token = None

    def _on_background_expired(self) -> None:
        self._mark_degraded("background execution time expired")

    def _on_engine_interrupted(self) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self._on_route_changed, "input stream stopped")


def audio_duration(path: Path) -> float:
    """Length of an audio file in seconds, or 0.0 when it cannot be read."""
    try:
        import soundfile as sf  # type: ignore
    except Exception:  # pragma: no cover - optional dependency
        return 0.0
    try:
        return float(sf.info(str(path)).duration)
    except RuntimeError as exc:
        logger.debug("Could not read duration of %s: %s", path.name, exc)
        return 0.0
