"""Export of finished notes into a markdown vault directory."""

from __future__ import annotations

import logging
import re
import shutil
from pathlib import Path
from typing import Optional

from .errors import FileWriteFailed, VaultPathMissing
from .keystore import VAULT_PATH_KEY, SecretStore, get_text
from .models import VoiceNote

logger = logging.getLogger(__name__)

NOTES_FOLDER = "Voice Notes"
ATTACHMENTS_FOLDER = "Attachments"
MAX_FILENAME_LENGTH = 250
UNTITLED = "Untitled Note"

_INVALID_FILENAME_RE = re.compile(r'[*"/\\<>:|?\[\]#^]')
_DASHES_RE = re.compile(r"-{2,}")


def sanitize_filename(title: str) -> str:
    """Turn a note title into a filename every common filesystem accepts."""

    name = _INVALID_FILENAME_RE.sub("-", title)
    name = _DASHES_RE.sub("-", name)
    name = name.strip("- \t").lstrip(".")
    if len(name) > MAX_FILENAME_LENGTH:
        name = name[:MAX_FILENAME_LENGTH].strip("- \t")
    if not name.strip():
        name = UNTITLED
    return name


def format_duration(seconds: float) -> str:
    total = int(seconds)
    return f"{total // 60}:{total % 60:02d}"


def render_markdown(note: VoiceNote, daily_note_backlink: bool = True) -> str:
    lines = [
        "---",
        f"date: {note.created_at:%Y-%m-%d %H:%M:%S}",
        f"duration: {format_duration(note.duration)}",
    ]
    if note.llm_provider:
        lines.append(f"llm_provider: {note.llm_provider}")
    if note.llm_model:
        lines.append(f"llm_model: {note.llm_model}")
    lines.extend(["---", "", f"![[{ATTACHMENTS_FOLDER}/{note.audio_filename}]]", ""])
    if daily_note_backlink:
        lines.extend([f"> Related to daily note: [[{note.created_at:%Y-%m-%d}]]", ""])
    lines.extend(["## Transcript", "", note.cleaned_transcript, ""])
    return "\n".join(lines)


class VaultWriter:
    """Writes a note and a copy of its audio into a vault directory.

    Writes overwrite whatever is already at the target paths, so retrying a
    write for the same note is harmless.
    """

    def __init__(self, vault_dir: Optional[Path], daily_note_backlink: bool = True) -> None:
        self.vault_dir = vault_dir
        self.daily_note_backlink = daily_note_backlink

    @classmethod
    def from_secrets(cls, secrets: SecretStore, daily_note_backlink: bool = True) -> "VaultWriter":
        value = get_text(secrets, VAULT_PATH_KEY)
        return cls(Path(value).expanduser() if value else None, daily_note_backlink=daily_note_backlink)

    @property
    def configured(self) -> bool:
        return self.vault_dir is not None

    def write(self, note: VoiceNote, audio_path: Path) -> str:
        """Write ``note`` and return its path relative to the vault."""

        if self.vault_dir is None:
            raise VaultPathMissing()
        if not self.vault_dir.is_dir():
            raise FileWriteFailed(f"vault directory {self.vault_dir} does not exist")

        self.copy_audio(audio_path)

        relative = f"{NOTES_FOLDER}/{sanitize_filename(note.title)}.md"
        target = self.vault_dir / relative
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(render_markdown(note, self.daily_note_backlink), encoding="utf-8")
        except OSError as exc:
            raise FileWriteFailed(f"could not write {relative}: {exc}") from exc
        logger.info("Wrote %s to vault", relative)
        return relative

    def copy_audio(self, audio_path: Path) -> Path:
        if self.vault_dir is None:
            raise VaultPathMissing()
        if not audio_path.exists():
            raise FileWriteFailed(f"audio file {audio_path.name} is missing")
        target = self.vault_dir / ATTACHMENTS_FOLDER / audio_path.name
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(audio_path, target)
        except OSError as exc:
            raise FileWriteFailed(f"could not copy audio: {exc}") from exc
        logger.debug("Copied %s to %s", audio_path.name, target.parent)
        return target
