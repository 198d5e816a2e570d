"""Dataclasses describing persistent and transient objects for coati."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional


class NoteStatus(str, Enum):
    PROCESSING = "processing"
    ERROR = "error"
    COMPLETE = "complete"


class Provider(str, Enum):
    """Language model backends available for transcript cleanup."""

    ON_DEVICE = "on_device"
    ANTHROPIC = "anthropic"
    OPENAI = "openai"
    GEMINI = "gemini"


@dataclass(slots=True)
class VoiceNote:
    """A recorded note and everything the pipeline learned about it."""

    id: str
    title: str
    original_transcript: str
    cleaned_transcript: str
    duration: float
    created_at: datetime
    audio_filename: str
    external_path: Optional[str] = None
    status: NoteStatus = NoteStatus.PROCESSING
    llm_provider: Optional[str] = None
    llm_model: Optional[str] = None

    @classmethod
    def new(cls, audio_filename: str, duration: float) -> "VoiceNote":
        created_at = datetime.now().astimezone()
        return cls(
            id=uuid.uuid4().hex,
            title=f"Voice Note {created_at:%Y-%m-%d %H:%M:%S}",
            original_transcript="",
            cleaned_transcript="",
            duration=duration,
            created_at=created_at,
            audio_filename=audio_filename,
        )

    @property
    def display_transcript(self) -> str:
        """Text to show for the note; the raw transcript stands in until cleanup succeeds."""
        return self.cleaned_transcript or self.original_transcript

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "original_transcript": self.original_transcript,
            "cleaned_transcript": self.cleaned_transcript,
            "duration": self.duration,
            "created_at": self.created_at.isoformat(),
            "audio_filename": self.audio_filename,
            "external_path": self.external_path,
            "status": self.status.value,
            "llm_provider": self.llm_provider,
            "llm_model": self.llm_model,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "VoiceNote":
        """Decode a collection record.

        Optional fields that are absent (or were written by a newer version with
        a different shape) decode to ``None``. Records written before the status
        field existed are considered complete.
        """

        try:
            status = NoteStatus(payload.get("status", NoteStatus.COMPLETE.value))
        except ValueError:
            status = NoteStatus.COMPLETE
        return cls(
            id=str(payload["id"]),
            title=payload["title"],
            original_transcript=payload["original_transcript"],
            cleaned_transcript=payload["cleaned_transcript"],
            duration=float(payload["duration"]),
            created_at=datetime.fromisoformat(payload["created_at"]),
            audio_filename=payload["audio_filename"],
            external_path=_optional_str(payload.get("external_path")),
            status=status,
            llm_provider=_optional_str(payload.get("llm_provider")),
            llm_model=_optional_str(payload.get("llm_model")),
        )


def _optional_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None


@dataclass(slots=True)
class RecordingState:
    """Bookkeeping for the capture in progress; discarded at stop."""

    audio_path: Path
    started_at: float
    interrupted: bool = False
    resume_attempted: bool = False
    degraded: bool = False
    backgrounded: bool = False
    execution_token: Any = None


@dataclass(slots=True)
class CapturedAudio:
    """A sealed audio artifact produced by a finished capture."""

    path: Path
    duration: float
    degraded: bool = False

    @property
    def filename(self) -> str:
        return self.path.name


@dataclass(slots=True)
class ProviderConfiguration:
    """Which language model to call and where its credential lives."""

    provider: Provider
    model: str
    credential_key: Optional[str] = None


@dataclass(slots=True)
class Config:
    """User configuration stored on disk."""

    provider: str = Provider.ON_DEVICE.value
    model: Optional[str] = None
    transcription_backend: str = "auto"
    whisper_model: str = "base"
    openai_transcription_model: str = "gpt-4o-mini-transcribe"
    transcription_timeout: float = 30.0
    request_timeout: float = 60.0
    on_device_url: str = "http://localhost:11434"
    page_size: int = 10
    background_grace_period: float = 30.0
    daily_note_backlink: bool = True
    custom_words: List[str] = field(default_factory=list)
