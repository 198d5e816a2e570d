"""Shared fakes and fixtures for the coati test-suite."""

import dataclasses
import threading
import time

import pytest

from coati import config
from coati.cleanup import PROVIDERS
from coati.host import HostEnvironment
from coati.storage import NoteRepository

GOOD_RESPONSE = '{"title": "Weekly Planning Notes", "cleanedTranscript": "We planned the week together."}'


class FakeEngine:
    """Audio engine writing a fixed payload when finalised."""

    def __init__(self, payload=b"RIFF-fake-audio", capture_after_resume=True, resume_result=True):
        self.payload = payload
        self.capture_after_resume = capture_after_resume
        self.resume_result = resume_result
        self.path = None
        self.capturing = False
        self.started_at = None
        self.finalized = False
        self.pause_calls = 0
        self.resume_calls = 0
        self.interruption_handler = None

    def set_interruption_handler(self, callback):
        self.interruption_handler = callback

    def open(self, path):
        self.path = path
        path.write_bytes(b"")

    def start(self):
        self.capturing = True
        self.started_at = time.monotonic()

    def pause(self):
        self.pause_calls += 1
        self.capturing = False

    def resume(self):
        self.resume_calls += 1
        self.capturing = self.capture_after_resume
        return self.resume_result

    def finalize(self):
        if self.path is not None and not self.finalized and self.path.exists():
            self.path.write_bytes(self.payload)
        self.finalized = True
        self.capturing = False
        self.started_at = None

    @property
    def is_capturing(self):
        return self.capturing

    @property
    def current_time(self):
        if self.started_at is None:
            return 0.0
        return time.monotonic() - self.started_at


class FakePermissions:
    def __init__(self, granted=True):
        self.granted = granted
        self.requests = 0

    def record_permission_granted(self):
        return False

    async def request_record_permission(self):
        self.requests += 1
        return self.granted


class FakeRecognizer:
    """Replays one scripted list of ``(kind, payload)`` events per start.

    ``("sleep", seconds)`` entries pause a threaded replay.
    """

    def __init__(self, *scripts, threaded=False):
        self.scripts = list(scripts)
        self.threaded = threaded
        self.starts = 0
        self.cancels = 0
        self.audio_paths = []

    def start(self, audio_path, listener):
        script = self.scripts[self.starts] if self.starts < len(self.scripts) else []
        self.starts += 1
        self.audio_paths.append(audio_path)
        if self.threaded:
            threading.Thread(target=self._replay, args=(script, listener), daemon=True).start()
        else:
            self._replay(script, listener)

    def cancel(self):
        self.cancels += 1

    @staticmethod
    def _replay(script, listener):
        for kind, payload in script:
            if kind == "sleep":
                time.sleep(payload)
            else:
                getattr(listener, f"on_{kind}")(payload)


class FakeSend:
    """Stands in for a provider's network call."""

    def __init__(self, response=GOOD_RESPONSE):
        self.response = response
        self.calls = []

    async def __call__(self, request, model, api_key):
        self.calls.append((request, model, api_key))
        if isinstance(self.response, Exception):
            raise self.response
        return self.response


def fake_providers(send, **overrides):
    return {provider: dataclasses.replace(spec, send=send, **overrides) for provider, spec in PROVIDERS.items()}


@pytest.fixture
def config_path(tmp_path, monkeypatch):
    path = tmp_path / "config.json"
    monkeypatch.setattr(config, "CONFIG_PATH", path)
    return path


@pytest.fixture
def host():
    return HostEnvironment()


@pytest.fixture
def repository(tmp_path):
    repo = NoteRepository(tmp_path / "notes.json", tmp_path / "recordings", page_size=10)
    yield repo
    repo.close()
