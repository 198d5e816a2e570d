from datetime import datetime

import pytest

from coati.errors import FileWriteFailed, VaultPathMissing
from coati.keystore import VAULT_PATH_KEY, MemorySecretStore
from coati.models import NoteStatus, VoiceNote
from coati.vault import VaultWriter, format_duration, render_markdown, sanitize_filename


@pytest.mark.parametrize(
    "title, expected",
    [
        ("What: is / this?", "What- is - this"),
        ("a**b", "a-b"),
        ("..hidden", "hidden"),
        ("", "Untitled Note"),
        ("###", "Untitled Note"),
        ("Grocery List", "Grocery List"),
    ],
)
def test_sanitize_filename(title, expected):
    assert sanitize_filename(title) == expected


def test_sanitize_filename_caps_length():
    assert len(sanitize_filename("x" * 300)) == 250


def test_format_duration():
    assert format_duration(125) == "2:05"
    assert format_duration(4.9) == "0:04"


def _note():
    return VoiceNote(
        id="abc123",
        title="Team Sync: Q3?",
        original_transcript="um so the team sync",
        cleaned_transcript="The team synced on Q3 goals.",
        duration=95.0,
        created_at=datetime(2024, 6, 3, 9, 30, 0),
        audio_filename="abc123.wav",
        status=NoteStatus.COMPLETE,
        llm_provider="anthropic",
        llm_model="claude-test",
    )


def test_render_markdown():
    text = render_markdown(_note())

    assert text.startswith("---\ndate: 2024-06-03 09:30:00\nduration: 1:35\n")
    assert "llm_provider: anthropic\nllm_model: claude-test\n---" in text
    assert "![[Attachments/abc123.wav]]" in text
    assert "> Related to daily note: [[2024-06-03]]" in text
    assert text.rstrip().endswith("## Transcript\n\nThe team synced on Q3 goals.")


def test_render_markdown_without_backlink_or_provider():
    note = _note()
    note.llm_provider = None
    note.llm_model = None

    text = render_markdown(note, daily_note_backlink=False)

    assert "Related to daily note" not in text
    assert "llm_provider" not in text


def _audio(tmp_path):
    audio = tmp_path / "abc123.wav"
    audio.write_bytes(b"RIFF")
    return audio


def test_write_creates_note_and_attachment(tmp_path):
    vault = tmp_path / "vault"
    vault.mkdir()

    relative = VaultWriter(vault).write(_note(), _audio(tmp_path))

    assert relative == "Voice Notes/Team Sync- Q3.md"
    assert "The team synced on Q3 goals." in (vault / relative).read_text(encoding="utf-8")
    assert (vault / "Attachments" / "abc123.wav").read_bytes() == b"RIFF"


def test_write_overwrites_existing_note(tmp_path):
    vault = tmp_path / "vault"
    vault.mkdir()
    writer = VaultWriter(vault)
    note = _note()
    writer.write(note, _audio(tmp_path))

    note.cleaned_transcript = "Revised text."
    relative = writer.write(note, _audio(tmp_path))

    assert "Revised text." in (vault / relative).read_text(encoding="utf-8")


def test_write_without_vault(tmp_path):
    with pytest.raises(VaultPathMissing):
        VaultWriter(None).write(_note(), _audio(tmp_path))


def test_write_to_missing_directory(tmp_path):
    with pytest.raises(FileWriteFailed):
        VaultWriter(tmp_path / "nowhere").write(_note(), _audio(tmp_path))


def test_write_with_missing_audio(tmp_path):
    with pytest.raises(FileWriteFailed, match="missing"):
        VaultWriter(tmp_path).write(_note(), tmp_path / "gone.wav")


def test_from_secrets(tmp_path):
    writer = VaultWriter.from_secrets(MemorySecretStore({VAULT_PATH_KEY: str(tmp_path).encode()}))
    assert writer.configured
    assert writer.vault_dir == tmp_path

    assert not VaultWriter.from_secrets(MemorySecretStore()).configured
