"""JSON file persistence for voice notes."""

from __future__ import annotations

import json
import logging
import os
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .config import APP_DIR
from .errors import RepositoryIOFailed
from .models import VoiceNote
from .recorder import AUDIO_DIR

logger = logging.getLogger(__name__)

NOTES_PATH = APP_DIR / "notes.json"
DEFAULT_PAGE_SIZE = 10


class NoteRepository:
    """Durable, paginated collection of notes, newest first.

    The whole collection is decoded once and kept in memory; pages are slices
    of it. Mutations apply to memory immediately and queue a snapshot of the
    complete collection for a background writer, so callers never wait on disk.
    """

    def __init__(
        self,
        path: Path = NOTES_PATH,
        audio_dir: Path = AUDIO_DIR,
        page_size: int = DEFAULT_PAGE_SIZE,
        on_write_error: Optional[Callable[[RepositoryIOFailed], None]] = None,
    ) -> None:
        if page_size < 1:
            raise ValueError("page_size must be positive")
        self.path = path
        self.audio_dir = audio_dir
        self.page_size = page_size
        self.loaded_all = False
        self._on_write_error = on_write_error
        self._lock = threading.RLock()
        self._all: Optional[List[VoiceNote]] = None
        self._view: List[VoiceNote] = []
        self._next_page = 0
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="coati-notes")
        self._pending: List[Future] = []
        self._last_error: Optional[RepositoryIOFailed] = None

    @property
    def notes(self) -> List[VoiceNote]:
        """Notes loaded so far through :meth:`load_page` / :meth:`load_more`."""
        with self._lock:
            return list(self._view)

    @property
    def total(self) -> int:
        with self._lock:
            return len(self._collection())

    def load_page(self, page_index: int) -> List[VoiceNote]:
        if page_index < 0:
            raise ValueError("page_index must not be negative")
        with self._lock:
            notes = self._collection()
            start = page_index * self.page_size
            page = notes[start:start + self.page_size]
            if page_index >= self._next_page:
                shown = {note.id for note in self._view}
                self._view.extend(note for note in page if note.id not in shown)
                self._next_page = page_index + 1
            if start + self.page_size >= len(notes):
                self.loaded_all = True
            logger.debug("Loaded page %d (%d notes)", page_index, len(page))
            return list(page)

    def load_more(self) -> List[VoiceNote]:
        with self._lock:
            if self.loaded_all:
                return []
            return self.load_page(self._next_page)

    def refresh(self) -> List[VoiceNote]:
        with self._lock:
            self._view = []
            self._next_page = 0
            self.loaded_all = False
            return self.load_page(0)

    def get(self, note_id: str) -> Optional[VoiceNote]:
        with self._lock:
            index = self._index_of(note_id)
            return None if index is None else self._collection()[index]

    def find(self, prefix: str) -> List[VoiceNote]:
        """Notes whose id starts with ``prefix``."""
        with self._lock:
            return [note for note in self._collection() if note.id.startswith(prefix)]

    def add(self, note: VoiceNote) -> None:
        with self._lock:
            if self._index_of(note.id) is not None:
                logger.debug("Note %s already stored, updating instead", note.id)
                self.update(note)
                return
            self._collection().insert(0, note)
            self._view.insert(0, note)
            self._schedule_write()

    def update(self, note: VoiceNote) -> bool:
        """Replace the stored note with the same id. Unknown ids are ignored."""
        with self._lock:
            index = self._index_of(note.id)
            if index is None:
                logger.warning("Ignoring update for unknown note %s", note.id)
                return False
            self._collection()[index] = note
            for position, shown in enumerate(self._view):
                if shown.id == note.id:
                    self._view[position] = note
                    break
            self._schedule_write()
            return True

    def delete(self, note_id: str) -> Optional[VoiceNote]:
        with self._lock:
            index = self._index_of(note_id)
            if index is None:
                return None
            note = self._collection().pop(index)
            self._view = [shown for shown in self._view if shown.id != note_id]
            self._schedule_write()

        (self.audio_dir / note.audio_filename).unlink(missing_ok=True)
        logger.info("Deleted note %s", note_id)
        return note

    def flush(self) -> None:
        """Block until queued writes finish; raise the last write failure, if any."""
        with self._lock:
            pending = list(self._pending)
        wait(pending)
        with self._lock:
            self._pending = [future for future in self._pending if not future.done()]
            error, self._last_error = self._last_error, None
        if error is not None:
            raise error

    def close(self) -> None:
        self._executor.shutdown(wait=True)

    def _collection(self) -> List[VoiceNote]:
        if self._all is None:
            self._all = self._read()
        return self._all

    def _index_of(self, note_id: str) -> Optional[int]:
        for index, note in enumerate(self._collection()):
            if note.id == note_id:
                return index
        return None

    def _read(self) -> List[VoiceNote]:
        if not self.path.exists():
            return []
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise RepositoryIOFailed(f"could not read {self.path.name}: {exc}") from exc
        if not isinstance(payload, list):
            raise RepositoryIOFailed(f"{self.path.name} does not contain a list of notes")

        notes: List[VoiceNote] = []
        seen = set()
        for item in payload:
            try:
                note = VoiceNote.from_dict(item)
            except (KeyError, TypeError, ValueError) as exc:
                raise RepositoryIOFailed(f"undecodable note record: {exc}") from exc
            if note.id in seen:
                logger.warning("Skipping duplicate note id %s", note.id)
                continue
            seen.add(note.id)
            notes.append(note)
        logger.debug("Decoded %d notes from %s", len(notes), self.path)
        return notes

    def _schedule_write(self) -> None:
        snapshot = [note.to_dict() for note in self._collection()]
        self._pending = [future for future in self._pending if not future.done()]
        self._pending.append(self._executor.submit(self._write, snapshot))

    def _write(self, snapshot: List[Dict[str, Any]]) -> None:
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(snapshot, indent=2), encoding="utf-8")
            os.replace(tmp_path, self.path)
        except OSError as exc:
            error = RepositoryIOFailed(f"could not write {self.path.name}: {exc}")
            logger.error("%s", error)
            with self._lock:
                self._last_error = error
            if self._on_write_error is not None:
                self._on_write_error(error)
            return
        logger.debug("Saved %d notes", len(snapshot))
