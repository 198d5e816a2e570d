"""Error taxonomy shared by every pipeline stage."""

from __future__ import annotations

from typing import Optional


class CoatiError(RuntimeError):
    """Base class for failures surfaced by the voice note pipeline."""

    message = "Something went wrong."
    recovery_suggestion = "Please try again."

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.message)


class PermissionDenied(CoatiError):
    message = "Microphone access is required for recording."
    recovery_suggestion = "Grant microphone access to the terminal or Python interpreter."


class EmptyRecording(CoatiError):
    message = "The recording did not contain any audio."
    recovery_suggestion = "Check the input device and record again."


class RecordingFailed(CoatiError):
    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(f"Failed to record audio: {detail}")


class NotRecording(CoatiError):
    message = "No recording is in progress."


class AlreadyRecording(CoatiError):
    message = "A recording is already in progress."
    recovery_suggestion = "Stop the current recording before starting a new one."


class TranscriptionTimedOut(CoatiError):
    recovery_suggestion = "Try a longer or clearer recording."

    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(f"Transcription produced no text within {timeout:g}s.")


class TranscriptionUnavailable(CoatiError):
    message = "Speech recognition is not available on this machine."
    recovery_suggestion = (
        "Install `openai-whisper` for offline usage or store an OpenAI API key with `coati key set openai`."
    )


class TranscriptionFailed(CoatiError):
    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(f"Failed to transcribe audio: {detail}")


class ApiKeyMissing(CoatiError):
    def __init__(self, provider: str) -> None:
        self.provider = provider
        super().__init__(f"No API key stored for {provider}.")

    @property
    def recovery_suggestion(self) -> str:  # type: ignore[override]
        return f"Store one with `coati key set {self.provider}`."


class ProviderUnavailable(CoatiError):
    recovery_suggestion = "Choose another provider with `coati config --provider`."

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Provider unavailable: {reason}")


class TranscriptTooShort(CoatiError):
    message = "The transcript is too short to clean up."


class TranscriptTooLong(CoatiError):
    recovery_suggestion = "Shorten the recording or switch to a cloud provider."

    def __init__(self, limit: int) -> None:
        self.limit = limit
        super().__init__(f"The transcript exceeds the provider limit of {limit} characters.")


class RequestFailed(CoatiError):
    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(f"Request to language model failed: {detail}")


class ResponseParsingFailed(CoatiError):
    def __init__(self, detail: str, snippet: str = "") -> None:
        self.detail = detail
        self.snippet = snippet
        super().__init__(f"Failed to parse model response: {detail}")


class VaultPathMissing(CoatiError):
    message = "Vault directory is not set."
    recovery_suggestion = "Choose one with `coati vault PATH`."


class FileWriteFailed(CoatiError):
    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(f"Failed to write to the vault: {detail}")


class RepositoryIOFailed(CoatiError):
    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(f"Failed to access the notes collection: {detail}")


class Cancelled(CoatiError):
    message = "The pipeline run was cancelled."
    recovery_suggestion = ""


__all__ = [
    "AlreadyRecording",
    "ApiKeyMissing",
    "Cancelled",
    "CoatiError",
    "EmptyRecording",
    "FileWriteFailed",
    "NotRecording",
    "PermissionDenied",
    "ProviderUnavailable",
    "RecordingFailed",
    "RepositoryIOFailed",
    "RequestFailed",
    "ResponseParsingFailed",
    "TranscriptTooLong",
    "TranscriptTooShort",
    "TranscriptionFailed",
    "TranscriptionTimedOut",
    "TranscriptionUnavailable",
    "VaultPathMissing",
]
