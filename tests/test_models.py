from datetime import datetime, timezone

from coati.models import NoteStatus, VoiceNote


def test_new_note_is_processing_with_placeholder_title():
    note = VoiceNote.new("abc.wav", 3.2)

    assert note.status is NoteStatus.PROCESSING
    assert note.title.startswith("Voice Note ")
    assert note.original_transcript == ""
    assert note.cleaned_transcript == ""
    assert note.created_at.tzinfo is not None
    assert VoiceNote.new("def.wav", 1.0).id != note.id


def test_from_dict_tolerates_older_records():
    record = {
        "id": "n1",
        "title": "Groceries",
        "original_transcript": "um buy milk",
        "cleaned_transcript": "Buy milk.",
        "duration": 4,
        "created_at": "2024-05-01T10:00:00+00:00",
        "audio_filename": "n1.wav",
        "some_future_field": True,
    }

    note = VoiceNote.from_dict(record)

    assert note.status is NoteStatus.COMPLETE
    assert note.llm_provider is None
    assert note.llm_model is None
    assert note.external_path is None
    assert note.created_at == datetime(2024, 5, 1, 10, tzinfo=timezone.utc)


def test_to_dict_and_back_preserves_fields():
    note = VoiceNote.new("x.wav", 12.5)
    note.llm_provider = "openai"
    note.status = NoteStatus.ERROR

    restored = VoiceNote.from_dict(note.to_dict())

    assert restored == note


def test_display_transcript_falls_back_to_original():
    note = VoiceNote.new("x.wav", 1.0)
    note.original_transcript = "so um the meeting moved"
    assert note.display_transcript == "so um the meeting moved"

    note.cleaned_transcript = "The meeting moved."
    assert note.display_transcript == "The meeting moved."
