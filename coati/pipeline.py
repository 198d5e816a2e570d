"""Sequencing of capture, transcription, cleanup and persistence."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import shutil
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .cleanup import CleanupResult, TranscriptCleanupService
from .config import ConfigError, load_config, load_provider_configuration
from .errors import (
    AlreadyRecording,
    Cancelled,
    CoatiError,
    EmptyRecording,
    FileWriteFailed,
    NotRecording,
    ProviderUnavailable,
    RecordingFailed,
    RepositoryIOFailed,
    TranscriptionUnavailable,
    VaultPathMissing,
)
from .host import HostEnvironment
from .keystore import SecretStoreError
from .models import Config, NoteStatus, ProviderConfiguration, VoiceNote
from .recorder import AudioCaptureSession, audio_duration
from .storage import NoteRepository
from .transcriber import Transcript, TranscriptionEngine
from .vault import VaultWriter

logger = logging.getLogger(__name__)


class PipelineState(str, Enum):
    IDLE = "idle"
    CAPTURING = "capturing"
    TRANSCRIBING = "transcribing"
    CLEANING = "cleaning"
    PERSISTING = "persisting"
    COMPLETE = "complete"
    ERROR = "error"


TERMINAL_STATES = (PipelineState.COMPLETE, PipelineState.ERROR)


@dataclass(eq=False)
class PipelineRun:
    """One attempt to turn a recording into a stored, cleaned note."""

    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: PipelineState = PipelineState.IDLE
    note: Optional[VoiceNote] = None
    error: Optional[CoatiError] = None
    vault_error: Optional[CoatiError] = None
    transcript: Optional[Transcript] = None
    cancel_requested: bool = False
    execution_token: Any = None
    task: Optional["asyncio.Future[Transcript]"] = None

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES


class PipelineCoordinator:
    """Drives pipeline runs and owns the user-visible error slot."""

    def __init__(
        self,
        session: AudioCaptureSession,
        engine: Optional[TranscriptionEngine],
        cleanup: TranscriptCleanupService,
        repository: NoteRepository,
        vault_factory: Optional[Callable[[], VaultWriter]] = None,
        host: Optional[HostEnvironment] = None,
        grace_period: float = 30.0,
        config_loader: Callable[[], Config] = load_config,
        provider_loader: Callable[[], ProviderConfiguration] = load_provider_configuration,
        on_state_change: Optional[Callable[[PipelineRun], None]] = None,
    ) -> None:
        self.session = session
        self.engine = engine
        self.cleanup = cleanup
        self.repository = repository
        self.on_state_change = on_state_change
        self.last_error: Optional[CoatiError] = None
        self._vault_factory = vault_factory
        self._host = host or HostEnvironment()
        self._grace_period = grace_period
        self._config_loader = config_loader
        self._provider_loader = provider_loader
        self._runs: Dict[str, PipelineRun] = {}
        self._current: Optional[PipelineRun] = None

    @property
    def current_run(self) -> Optional[PipelineRun]:
        return self._current

    @property
    def active_runs(self) -> List[PipelineRun]:
        return list(self._runs.values())

    @property
    def state(self) -> PipelineState:
        return self._current.state if self._current is not None else PipelineState.IDLE

    def dismiss_error(self) -> None:
        self.last_error = None

    # Recording

    async def start_recording(self) -> PipelineRun:
        if self._live_run() is not None:
            raise AlreadyRecording()

        previous = self._current
        run = self._register()
        try:
            await self.session.start()
        except CoatiError as exc:
            run.error = exc
            self._unregister(run)
            self._current = previous
            self._surface(exc)
            raise
        self._transition(run, PipelineState.CAPTURING)
        return run

    async def stop_recording(self, run: Optional[PipelineRun] = None) -> PipelineRun:
        """Finish capture and process the recording to completion.

        Stage failures do not raise; they end the run in ``error`` with the
        cause on ``run.error`` and ``last_error``.
        """

        run = run or self._capturing_run()
        if run is None or run.state is not PipelineState.CAPTURING:
            raise NotRecording()

        try:
            captured = await self.session.stop()
        except asyncio.CancelledError:
            self._fail(run, Cancelled())
            self._finish(run)
            raise
        except CoatiError as exc:
            self._fail(run, exc)
            self._finish(run)
            return run
        if run.finished:
            # Cancelled while the capture was being finalised.
            captured.path.unlink(missing_ok=True)
            self._finish(run)
            return run
        return await self._process(run, captured.path, captured.duration)

    async def process_file(self, source: Path, duration: Optional[float] = None) -> PipelineRun:
        """Run transcription, cleanup and persistence for an existing audio file."""

        if not source.is_file() or source.stat().st_size == 0:
            raise EmptyRecording()
        audio_dir = self.session.audio_dir
        target = audio_dir / f"{uuid.uuid4().hex}{source.suffix.lower() or '.wav'}"
        try:
            audio_dir.mkdir(parents=True, exist_ok=True)
            await asyncio.to_thread(shutil.copy2, source, target)
        except OSError as exc:
            if target.exists():
                target.unlink()
            error = RecordingFailed(f"could not import {source.name}: {exc}")
            self._surface(error)
            raise error from exc
        if duration is None:
            duration = await asyncio.to_thread(audio_duration, target)
        logger.info("Imported %s as %s", source.name, target.name)
        return await self._process(self._register(), target, duration)

    async def cancel(self, run: Optional[PipelineRun] = None) -> bool:
        run = run or self._current
        if run is None or run.finished or run.state is PipelineState.IDLE:
            return False
        run.cancel_requested = True
        logger.info("Cancelling run %s in state %s", run.id[:8], run.state.value)
        if run.state is PipelineState.CAPTURING:
            await self.session.abort()
            self._fail(run, Cancelled())
            self._finish(run)
        elif run.state is PipelineState.TRANSCRIBING and run.task is not None:
            run.task.cancel()
        return True

    # Notes

    @property
    def notes(self) -> List[VoiceNote]:
        return self.repository.notes

    def load_more_notes(self) -> List[VoiceNote]:
        return self.repository.load_more()

    def refresh_notes(self) -> List[VoiceNote]:
        return self.repository.refresh()

    def delete_note(self, note_id: str) -> Optional[VoiceNote]:
        for run in self._runs.values():
            if run.note is not None and run.note.id == note_id:
                run.cancel_requested = True
        return self.repository.delete(note_id)

    async def retry_vault_write(self, note: VoiceNote) -> VoiceNote:
        if note.status is not NoteStatus.COMPLETE or not note.cleaned_transcript:
            error: CoatiError = FileWriteFailed("only completed notes can be written to the vault")
            self._surface(error)
            raise error
        try:
            writer = self._make_vault_writer()
            if writer is None or not writer.configured:
                raise VaultPathMissing()
            audio_path = self.session.audio_dir / note.audio_filename
            external_path = await asyncio.to_thread(writer.write, note, audio_path)
        except CoatiError as exc:
            self._surface(exc)
            raise
        updated = dataclasses.replace(note, external_path=external_path)
        self.repository.update(updated)
        return updated

    # Internals

    async def _process(self, run: PipelineRun, audio_path: Path, duration: float) -> PipelineRun:
        note = VoiceNote.new(audio_path.name, duration)
        run.note = note
        try:
            self.repository.add(note)
            self._transition(run, PipelineState.TRANSCRIBING)
            transcript = await self._transcribe(run, audio_path)
            run.transcript = transcript
            note.original_transcript = transcript.text
            self.repository.update(note)
            self._check_cancelled(run)

            self._transition(run, PipelineState.CLEANING)
            provider_config, custom_words = self._cleanup_settings()
            result = await self.cleanup.clean(transcript.text, custom_words, provider_config)
            self._check_cancelled(run)

            self._transition(run, PipelineState.PERSISTING)
            finished = self._finished_note(note, result, provider_config)
            finished.external_path = await self._write_vault(run, finished, audio_path)
            self._check_cancelled(run)

            run.note = finished
            self.repository.update(finished)
            self._transition(run, PipelineState.COMPLETE)
            logger.info("Note %s complete: %s", finished.id[:8], finished.title)
        except asyncio.CancelledError:
            self._fail(run, Cancelled())
            raise
        except CoatiError as exc:
            self._fail(run, exc)
        finally:
            self._finish(run)
        return run

    async def _transcribe(self, run: PipelineRun, audio_path: Path) -> Transcript:
        if self.engine is None:
            raise TranscriptionUnavailable()
        run.task = asyncio.ensure_future(self.engine.transcribe(audio_path))
        try:
            return await run.task
        except asyncio.CancelledError:
            if run.cancel_requested:
                raise Cancelled()
            raise
        finally:
            run.task = None

    def _cleanup_settings(self):
        try:
            return self._provider_loader(), list(self._config_loader().custom_words)
        except ConfigError as exc:
            raise ProviderUnavailable(str(exc)) from exc

    @staticmethod
    def _finished_note(
        note: VoiceNote, result: CleanupResult, provider_config: ProviderConfiguration
    ) -> VoiceNote:
        return dataclasses.replace(
            note,
            title=result.title,
            cleaned_transcript=result.cleaned_transcript,
            llm_provider=provider_config.provider.value,
            llm_model=provider_config.model,
            status=NoteStatus.COMPLETE,
        )

    def _make_vault_writer(self) -> Optional[VaultWriter]:
        if self._vault_factory is None:
            return None
        try:
            return self._vault_factory()
        except SecretStoreError as exc:
            raise FileWriteFailed(str(exc)) from exc

    async def _write_vault(self, run: PipelineRun, note: VoiceNote, audio_path: Path) -> Optional[str]:
        try:
            writer = self._make_vault_writer()
            if writer is None or not writer.configured:
                logger.debug("No vault configured, skipping export")
                return None
            return await asyncio.to_thread(writer.write, note, audio_path)
        except VaultPathMissing:
            return None
        except FileWriteFailed as exc:
            logger.warning("Vault write failed for %s: %s", note.id[:8], exc)
            run.vault_error = exc
            self._surface(exc)
            return None

    def _check_cancelled(self, run: PipelineRun) -> None:
        if run.cancel_requested:
            raise Cancelled()

    def _capturing_run(self) -> Optional[PipelineRun]:
        for run in self._runs.values():
            if run.state is PipelineState.CAPTURING:
                return run
        return None

    def _live_run(self) -> Optional[PipelineRun]:
        """A run that is capturing or still waiting for capture to start."""
        for run in self._runs.values():
            if run.state in (PipelineState.IDLE, PipelineState.CAPTURING):
                return run
        return None

    def _register(self) -> PipelineRun:
        run = PipelineRun()
        run.execution_token = self._host.begin_extended_execution(f"pipeline-{run.id[:8]}", self._grace_period)
        self._runs[run.id] = run
        self._current = run
        return run

    def _unregister(self, run: PipelineRun) -> None:
        self._release(run)
        self._runs.pop(run.id, None)

    def _finish(self, run: PipelineRun) -> None:
        self._unregister(run)

    def _release(self, run: PipelineRun) -> None:
        if run.execution_token is not None:
            run.execution_token.release()
            run.execution_token = None

    def _fail(self, run: PipelineRun, error: CoatiError) -> None:
        if run.finished:
            return
        run.error = error
        note = run.note
        if note is not None:
            try:
                if self.repository.get(note.id) is not None:
                    note.status = NoteStatus.ERROR
                    self.repository.update(note)
            except RepositoryIOFailed as exc:
                logger.error("Could not mark note %s as failed: %s", note.id[:8], exc)
        if not isinstance(error, Cancelled):
            logger.error("Run %s failed while %s: %s", run.id[:8], run.state.value, error)
            self._surface(error)
        self._transition(run, PipelineState.ERROR)

    def _surface(self, error: CoatiError) -> None:
        if self.last_error is not None:
            logger.debug("Replacing unacknowledged error: %s", self.last_error)
        self.last_error = error

    def _transition(self, run: PipelineRun, state: PipelineState) -> None:
        previous, run.state = run.state, state
        logger.debug("Run %s: %s -> %s", run.id[:8], previous.value, state.value)
        if self.on_state_change is not None:
            self.on_state_change(run)
