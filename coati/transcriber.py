"""Speech recognition with timeout and partial-result handling."""

from __future__ import annotations

import abc
import asyncio
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Protocol, Sequence

from .config import credential_key
from .errors import TranscriptionFailed, TranscriptionTimedOut, TranscriptionUnavailable
from .keystore import SecretStore, get_text
from .models import Config, Provider

logger = logging.getLogger(__name__)

NO_SPEECH_DETECTED = "No speech detected"
DEFAULT_PROMPT = "Hello, how are you? I'm doing well, thank you. Please transcribe with proper punctuation."


@dataclass(slots=True)
class Transcript:
    text: str
    partial: bool = False


class RecognitionError(Exception):
    """Reported by a recognizer. Transient errors are worth one restart."""

    def __init__(self, message: str, transient: bool = False) -> None:
        super().__init__(message)
        self.transient = transient


class RecognitionListener(Protocol):
    def on_partial(self, text: str) -> None:
        ...

    def on_final(self, text: str) -> None:
        ...

    def on_error(self, error: RecognitionError) -> None:
        ...


class SpeechRecognizer(Protocol):
    """A recognizer reports through ``listener`` from whatever thread it likes."""

    def start(self, audio_path: Path, listener: RecognitionListener) -> None:
        ...

    def cancel(self) -> None:
        ...


class ResolveOnce:
    """Completes a future exactly once; later attempts are ignored."""

    def __init__(self, future: "asyncio.Future[Any]") -> None:
        self.future = future

    @property
    def resolved(self) -> bool:
        return self.future.done()

    def resolve(self, result: Any) -> bool:
        if self.future.done():
            return False
        self.future.set_result(result)
        return True

    def fail(self, error: BaseException) -> bool:
        if self.future.done():
            return False
        self.future.set_exception(error)
        return True


class _QueueListener:
    """Moves recognizer callbacks onto the event loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop, queue: "asyncio.Queue[tuple]") -> None:
        self._loop = loop
        self._queue = queue
        self._closed = False

    def close(self) -> None:
        self._closed = True

    def on_partial(self, text: str) -> None:
        self._put("partial", text)

    def on_final(self, text: str) -> None:
        self._put("final", text)

    def on_error(self, error: RecognitionError) -> None:
        self._put("error", error)

    def _put(self, kind: str, payload: Any) -> None:
        if self._closed:
            return
        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, (kind, payload))
        except RuntimeError:
            # Loop already closed; the call this belonged to has finished.
            logger.debug("Dropped late recognizer %s callback", kind)


class _Progress:
    __slots__ = ("partial",)

    def __init__(self) -> None:
        self.partial = ""


class TranscriptionEngine:
    """Turns one audio artifact into text, never waiting longer than ``timeout``."""

    def __init__(self, recognizer: SpeechRecognizer, timeout: float = 30.0, transient_retries: int = 1) -> None:
        self.recognizer = recognizer
        self.timeout = timeout
        self.transient_retries = transient_retries

    async def transcribe(self, audio_path: Path, timeout: Optional[float] = None) -> Transcript:
        timeout = self.timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()
        latch = ResolveOnce(loop.create_future())
        queue: "asyncio.Queue[tuple]" = asyncio.Queue()
        listener = _QueueListener(loop, queue)
        progress = _Progress()

        try:
            self.recognizer.start(audio_path, listener)
        except RecognitionError as exc:
            raise TranscriptionFailed(str(exc)) from exc

        listen_task = asyncio.create_task(self._listen(queue, latch, progress, audio_path, listener))
        timer_task = asyncio.create_task(self._expire_after(timeout, latch, progress, queue))
        try:
            transcript = await latch.future
        except asyncio.CancelledError:
            logger.info("Transcription of %s cancelled", audio_path.name)
            raise
        finally:
            listener.close()
            listen_task.cancel()
            timer_task.cancel()
            self.recognizer.cancel()
            await asyncio.gather(listen_task, timer_task, return_exceptions=True)

        if transcript.partial:
            logger.warning("Using partial transcript for %s", audio_path.name)
        return transcript

    async def _listen(
        self,
        queue: "asyncio.Queue[tuple]",
        latch: ResolveOnce,
        progress: _Progress,
        audio_path: Path,
        listener: _QueueListener,
    ) -> None:
        retries = self.transient_retries
        while not latch.resolved:
            kind, payload = await queue.get()
            if kind == "partial":
                if payload.strip():
                    progress.partial = payload.strip()
                continue
            if kind == "final":
                text = payload.strip()
                if text:
                    latch.resolve(Transcript(text))
                    return
                payload = RecognitionError(NO_SPEECH_DETECTED, transient=True)

            error: RecognitionError = payload
            if progress.partial:
                logger.warning("Recognizer failed after partial result: %s", error)
                latch.resolve(Transcript(progress.partial, partial=True))
                return
            if not error.transient:
                latch.fail(TranscriptionFailed(str(error)))
                return
            if retries > 0:
                retries -= 1
                logger.info("Transient recognizer error (%s), restarting", error)
                self.recognizer.cancel()
                try:
                    self.recognizer.start(audio_path, listener)
                except RecognitionError as exc:
                    latch.fail(TranscriptionFailed(str(exc)))
                    return
            else:
                logger.info("Transient recognizer error (%s), waiting for timeout", error)

    async def _expire_after(
        self,
        timeout: float,
        latch: ResolveOnce,
        progress: _Progress,
        queue: "asyncio.Queue[tuple]",
    ) -> None:
        await asyncio.sleep(timeout)
        # Results delivered on the deadline may still be waiting in the queue.
        while not queue.empty():
            kind, payload = queue.get_nowait()
            if kind == "final" and payload.strip():
                latch.resolve(Transcript(payload.strip()))
                return
            if kind == "partial" and payload.strip():
                progress.partial = payload.strip()
        if progress.partial:
            latch.resolve(Transcript(progress.partial, partial=True))
        else:
            latch.fail(TranscriptionTimedOut(timeout))


class _ThreadedRecognizer(abc.ABC):
    """Runs a blocking recognition call on a worker thread per start.

    Each start bumps a generation counter; a run whose generation is stale
    after ``cancel`` stays silent.
    """

    thread_name = "recognizer"

    def __init__(self) -> None:
        self._generation = 0
        self._lock = threading.Lock()

    def start(self, audio_path: Path, listener: RecognitionListener) -> None:
        with self._lock:
            self._generation += 1
            generation = self._generation
        thread = threading.Thread(
            target=self._run,
            args=(generation, audio_path, listener),
            name=self.thread_name,
            daemon=True,
        )
        thread.start()

    def cancel(self) -> None:
        with self._lock:
            self._generation += 1

    def _is_current(self, generation: int) -> bool:
        with self._lock:
            return generation == self._generation

    @abc.abstractmethod
    def _run(self, generation: int, audio_path: Path, listener: RecognitionListener) -> None:
        raise NotImplementedError


class WhisperRecognizer(_ThreadedRecognizer):
    """Local transcription using the `openai-whisper` package."""

    thread_name = "whisper-recognizer"

    def __init__(self, model_name: str = "base", vocabulary: Sequence[str] = (), model: Any = None) -> None:
        super().__init__()
        self.model_name = model_name
        if model is None:
            try:
                import torch
                import whisper  # type: ignore
            except Exception as exc:  # pragma: no cover - optional dependency
                raise RuntimeError(
                    "The `openai-whisper` package is required for local transcription."
                ) from exc
            device = "cuda" if torch.cuda.is_available() else "cpu"
            model = whisper.load_model(model_name, device=device)
        self._model = model
        self.initial_prompt = DEFAULT_PROMPT
        if vocabulary:
            self.initial_prompt += " Vocabulary: " + ", ".join(vocabulary) + "."

    def _run(self, generation: int, audio_path: Path, listener: RecognitionListener) -> None:
        try:
            result = self._model.transcribe(
                str(audio_path),
                task="transcribe",
                temperature=0.0,
                initial_prompt=self.initial_prompt,
            )
        except Exception as exc:  # noqa: BLE001 - reported through the listener
            if self._is_current(generation):
                listener.on_error(RecognitionError(str(exc)))
            return

        so_far = ""
        for segment in result.get("segments") or []:
            if not self._is_current(generation):
                return
            piece = str(segment.get("text", "")).strip()
            if piece:
                so_far = f"{so_far} {piece}".strip()
                listener.on_partial(so_far)

        if not self._is_current(generation):
            return
        text = str(result.get("text", "")).strip()
        if text:
            listener.on_final(text)
        else:
            listener.on_error(RecognitionError(NO_SPEECH_DETECTED, transient=True))


class OpenAIRecognizer(_ThreadedRecognizer):
    """Cloud transcription using the OpenAI API."""

    thread_name = "openai-recognizer"

    def __init__(
        self,
        api_key: Optional[str],
        model: str = "gpt-4o-mini-transcribe",
        vocabulary: Sequence[str] = (),
        client: Any = None,
    ) -> None:
        super().__init__()
        try:
            import openai
        except Exception as exc:  # pragma: no cover - optional dependency
            raise RuntimeError("The `openai` package is required for this backend.") from exc
        if client is None:
            if api_key is None:
                raise RuntimeError("An OpenAI API key is required for this backend.")
            client = openai.OpenAI(api_key=api_key)
        self._openai = openai
        self._client = client
        self._model = model
        self._prompt = ", ".join(vocabulary) if vocabulary else None

    def _run(self, generation: int, audio_path: Path, listener: RecognitionListener) -> None:  # pragma: no cover - network call
        openai = self._openai
        kwargs: dict = {"model": self._model}
        if self._prompt:
            kwargs["prompt"] = self._prompt
        try:
            with audio_path.open("rb") as fh:
                response = self._client.audio.transcriptions.create(file=fh, **kwargs)
        except (openai.APIConnectionError, openai.RateLimitError, openai.InternalServerError) as exc:
            error = RecognitionError(str(exc), transient=True)
        except (openai.OpenAIError, OSError) as exc:
            error = RecognitionError(str(exc))
        else:
            text = (response.text or "").strip()
            error = None if text else RecognitionError(NO_SPEECH_DETECTED, transient=True)

        if not self._is_current(generation):
            return
        if error is not None:
            listener.on_error(error)
        else:
            listener.on_final(text)


def get_recognizer(config: Config, secrets: SecretStore) -> SpeechRecognizer:
    """Return the best available recognizer for ``config.transcription_backend``."""

    backend = config.transcription_backend

    if backend in {"whisper", "auto"}:
        try:
            return WhisperRecognizer(config.whisper_model, vocabulary=config.custom_words)
        except Exception as exc:
            if backend == "whisper":
                raise TranscriptionUnavailable(
                    f"Failed to initialise Whisper backend: {exc}. Ensure `openai-whisper` is installed."
                ) from exc
            logger.info("Whisper unavailable (%s), trying hosted transcription", exc)

    if backend in {"openai", "auto"}:
        api_key = get_text(secrets, credential_key(Provider.OPENAI))
        if api_key is None and backend == "openai":
            raise TranscriptionUnavailable("An OpenAI API key is required for hosted transcription.")
        if api_key is not None:
            try:
                return OpenAIRecognizer(
                    api_key,
                    model=config.openai_transcription_model,
                    vocabulary=config.custom_words,
                )
            except Exception as exc:
                raise TranscriptionUnavailable(f"Failed to initialise OpenAI backend: {exc}.") from exc

    raise TranscriptionUnavailable()
