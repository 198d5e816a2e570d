"""Command line interface for coati."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
import threading
from contextlib import contextmanager
from dataclasses import asdict
from pathlib import Path
from typing import Dict, Iterator, Optional

import typer

from . import __version__
from . import config as config_mod
from .cleanup import PROVIDERS, TranscriptCleanupService
from .config import ConfigError
from .errors import CoatiError, RepositoryIOFailed
from .host import HostEnvironment
from .keystore import VAULT_PATH_KEY, FileSecretStore, SecretStoreError, get_text
from .models import Config, NoteStatus, Provider, VoiceNote
from .pipeline import PipelineCoordinator, PipelineRun, PipelineState
from .recorder import AudioCaptureSession
from .storage import NoteRepository
from .transcriber import TranscriptionEngine, get_recognizer
from .vault import VaultWriter, format_duration

app = typer.Typer(add_completion=False, help="Record voice notes, transcribe and clean them up.")
key_app = typer.Typer(add_completion=False, help="Manage provider API keys.")
app.add_typer(key_app, name="key")

_STAGE_MESSAGES = {
    PipelineState.TRANSCRIBING: "Transcribing...",
    PipelineState.CLEANING: "Cleaning up transcript...",
    PipelineState.PERSISTING: "Saving note...",
}
_STATUS_COLOURS = {
    NoteStatus.COMPLETE: typer.colors.GREEN,
    NoteStatus.PROCESSING: typer.colors.YELLOW,
    NoteStatus.ERROR: typer.colors.RED,
}


def _error(message: str) -> None:
    typer.secho(message, fg=typer.colors.RED, err=True)


def _report_error(exc: Exception) -> None:
    _error(str(exc))
    suggestion = getattr(exc, "recovery_suggestion", "")
    if suggestion:
        typer.secho(suggestion, fg=typer.colors.YELLOW, err=True)


def _load_config() -> Config:
    try:
        return config_mod.load_config()
    except ConfigError as exc:
        _error(str(exc))
        raise typer.Exit(code=1) from exc


def _parse_provider(value: str) -> Provider:
    try:
        return Provider(value)
    except ValueError as exc:
        choices = ", ".join(p.value for p in Provider)
        _error(f"Unknown provider {value!r}. Choose one of: {choices}")
        raise typer.Exit(code=1) from exc


@contextmanager
def _repository(cfg: Config) -> Iterator[NoteRepository]:
    repository = NoteRepository(page_size=cfg.page_size)
    try:
        yield repository
        repository.flush()
    except RepositoryIOFailed as exc:
        _report_error(exc)
        raise typer.Exit(code=1) from exc
    finally:
        repository.close()


def _announce_stage(run: PipelineRun) -> None:
    message = _STAGE_MESSAGES.get(run.state)
    if message:
        typer.secho(message, fg=typer.colors.BLUE)


def _build_coordinator(cfg: Config, repository: NoteRepository, transcribe: bool = True) -> PipelineCoordinator:
    secrets = FileSecretStore()
    host = HostEnvironment()
    engine = None
    if transcribe:
        try:
            engine = TranscriptionEngine(get_recognizer(cfg, secrets), timeout=cfg.transcription_timeout)
        except CoatiError as exc:
            _report_error(exc)
            raise typer.Exit(code=1) from exc
    return PipelineCoordinator(
        session=AudioCaptureSession(host=host, background_grace_period=cfg.background_grace_period),
        engine=engine,
        cleanup=TranscriptCleanupService(
            secrets,
            request_timeout=cfg.request_timeout,
            on_device_url=cfg.on_device_url,
        ),
        repository=repository,
        vault_factory=lambda: VaultWriter.from_secrets(secrets, daily_note_backlink=cfg.daily_note_backlink),
        host=host,
        grace_period=cfg.background_grace_period,
        on_state_change=_announce_stage,
    )


def _report_run(run: PipelineRun) -> None:
    note = run.note
    if run.state is PipelineState.COMPLETE and note is not None:
        typer.secho(f"\n{note.title}", fg=typer.colors.GREEN, bold=True)
        typer.echo(note.cleaned_transcript)
        if note.external_path:
            typer.secho(f"\nWritten to vault: {note.external_path}", fg=typer.colors.BLUE)
        if run.vault_error is not None:
            typer.secho(f"\nVault export failed: {run.vault_error}", fg=typer.colors.YELLOW, err=True)
            typer.secho(f"Retry with `coati retry-vault {note.id[:8]}`.", fg=typer.colors.YELLOW, err=True)
        typer.secho(f"\nSaved note {note.id[:8]}.", fg=typer.colors.BLUE)
        return

    if run.error is not None:
        _report_error(run.error)
    if note is not None:
        typer.secho(f"Note {note.id[:8]} was kept with status '{note.status.value}'.", fg=typer.colors.YELLOW, err=True)
    raise typer.Exit(code=1)


async def _wait_for_enter() -> None:
    # Daemon thread: an unanswered prompt must not keep the interpreter alive.
    loop = asyncio.get_running_loop()
    pressed = loop.create_future()

    def _read() -> None:
        sys.stdin.readline()
        loop.call_soon_threadsafe(lambda: pressed.done() or pressed.set_result(None))

    threading.Thread(target=_read, name="coati-stdin", daemon=True).start()
    await pressed


async def _show_meter(session: AudioCaptureSession) -> None:
    while True:
        bars = min(30, int(session.input_level * 100))
        typer.echo(f"\r{format_duration(session.get_elapsed())} [{'#' * bars:<30}]", nl=False)
        await asyncio.sleep(0.1)


def _resolve_note(repository: NoteRepository, note_id: str) -> VoiceNote:
    note = repository.get(note_id)
    if note is not None:
        return note
    matches = repository.find(note_id)
    if len(matches) == 1:
        return matches[0]
    if not matches:
        _error(f"No note with id {note_id!r}.")
    else:
        _error(f"Id {note_id!r} is ambiguous; use more characters.")
    raise typer.Exit(code=1)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", help="Log debug output."),
    version: bool = typer.Option(False, "--version", "-v", help="Show version and exit"),
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if version:
        typer.echo(f"coati v{__version__}")
        raise typer.Exit()

    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


@app.command()
def record(
    seconds: Optional[float] = typer.Option(None, "--seconds", "-s", min=0.5, help="Stop automatically after N seconds."),
) -> None:
    """Record a voice note from the default microphone."""

    cfg = _load_config()
    with _repository(cfg) as repository:
        coordinator = _build_coordinator(cfg, repository)

        async def _run() -> PipelineRun:
            run = await coordinator.start_recording()
            meter = asyncio.create_task(_show_meter(coordinator.session))
            try:
                if seconds:
                    typer.secho(f"Recording for {seconds:g}s...", fg=typer.colors.RED)
                    await asyncio.sleep(seconds)
                else:
                    typer.secho("Recording... press Enter to stop.", fg=typer.colors.RED)
                    await _wait_for_enter()
            except asyncio.CancelledError:
                await coordinator.cancel(run)
                raise
            finally:
                meter.cancel()
                typer.echo("")
            return await coordinator.stop_recording(run)

        try:
            run = asyncio.run(_run())
        except KeyboardInterrupt as exc:
            typer.secho("\nRecording cancelled.", fg=typer.colors.YELLOW, err=True)
            raise typer.Exit(code=130) from exc
        except CoatiError as exc:
            _report_error(exc)
            raise typer.Exit(code=1) from exc
        _report_run(run)


@app.command("import")
def import_audio(
    audio: Path = typer.Argument(..., exists=True, readable=True, dir_okay=False, help="Path to the audio file."),
) -> None:
    """Turn an existing audio file into a voice note."""

    cfg = _load_config()
    with _repository(cfg) as repository:
        coordinator = _build_coordinator(cfg, repository)
        try:
            run = asyncio.run(coordinator.process_file(audio))
        except CoatiError as exc:
            _report_error(exc)
            raise typer.Exit(code=1) from exc
        _report_run(run)


@app.command("list")
def list_command(
    page: int = typer.Option(1, "--page", "-p", min=1, help="Page of notes to show, newest first."),
) -> None:
    """List stored voice notes."""

    cfg = _load_config()
    with _repository(cfg) as repository:
        try:
            notes = repository.load_page(page - 1)
        except RepositoryIOFailed as exc:
            _report_error(exc)
            raise typer.Exit(code=1) from exc
        if not notes:
            typer.echo("No voice notes found. Use `coati record` to create one.")
            return

        header = f"{'ID':<8}  {'Title':<40}  {'Created':<16}  {'Length':>6}  Status"
        typer.echo(header)
        typer.echo("-" * len(header))
        for note in notes:
            typer.echo(
                f"{note.id[:8]:<8}  {note.title[:40]:<40}  {note.created_at:%Y-%m-%d %H:%M}  "
                f"{format_duration(note.duration):>6}  ",
                nl=False,
            )
            typer.secho(note.status.value, fg=_STATUS_COLOURS[note.status])
        if not repository.loaded_all:
            typer.echo(f"\nMore notes available: `coati list --page {page + 1}`")


@app.command()
def show(
    note_id: str = typer.Argument(..., help="Note id or a unique prefix of it."),
    original: bool = typer.Option(False, "--original", help="Show the raw transcript."),
) -> None:
    """Show a stored voice note."""

    cfg = _load_config()
    with _repository(cfg) as repository:
        note = _resolve_note(repository, note_id)
        typer.secho(f"Title: {note.title}", fg=typer.colors.BLUE)
        typer.echo(f"Created: {note.created_at:%Y-%m-%d %H:%M:%S}")
        typer.echo(f"Duration: {format_duration(note.duration)}")
        typer.secho(f"Status: {note.status.value}", fg=_STATUS_COLOURS[note.status])
        if note.llm_provider:
            typer.echo(f"Cleaned by: {note.llm_provider} ({note.llm_model or 'default'})")
        if note.external_path:
            typer.echo(f"Vault: {note.external_path}")
        text = note.original_transcript if original else note.display_transcript
        typer.echo("\nTranscript:\n" + (text or "(empty)"))


@app.command()
def delete(
    note_id: str = typer.Argument(..., help="Note id or a unique prefix of it."),
) -> None:
    """Delete a voice note and its audio."""

    cfg = _load_config()
    with _repository(cfg) as repository:
        note = _resolve_note(repository, note_id)
        repository.delete(note.id)
        typer.secho(f"Note {note.id[:8]} deleted.", fg=typer.colors.BLUE)


@app.command("retry-vault")
def retry_vault(
    note_id: str = typer.Argument(..., help="Note id or a unique prefix of it."),
) -> None:
    """Write a completed note to the vault again."""

    cfg = _load_config()
    with _repository(cfg) as repository:
        note = _resolve_note(repository, note_id)
        coordinator = _build_coordinator(cfg, repository, transcribe=False)
        try:
            updated = asyncio.run(coordinator.retry_vault_write(note))
        except CoatiError as exc:
            _report_error(exc)
            raise typer.Exit(code=1) from exc
        typer.secho(f"Written to vault: {updated.external_path}", fg=typer.colors.BLUE)


@app.command()
def config(
    provider: Optional[str] = typer.Option(None, help="Cleanup provider (on_device, anthropic, openai, gemini)."),
    model: Optional[str] = typer.Option(None, help="Model id for the cleanup provider."),
    backend: Optional[str] = typer.Option(None, help="Transcription backend (auto, whisper, openai)."),
    whisper_model: Optional[str] = typer.Option(None, help="Whisper model name for local transcription."),
    openai_transcription_model: Optional[str] = typer.Option(None, help="OpenAI model id for hosted transcription."),
    transcription_timeout: Optional[float] = typer.Option(None, help="Seconds to wait for a transcript."),
    request_timeout: Optional[float] = typer.Option(None, help="HTTP timeout (seconds) for cleanup requests."),
    on_device_url: Optional[str] = typer.Option(None, help="Base URL of the local model server."),
    page_size: Optional[int] = typer.Option(None, min=1, help="Notes per page in `coati list`."),
    daily_note_backlink: Optional[bool] = typer.Option(
        None,
        "--daily-note-backlink/--no-daily-note-backlink",
        help="Link vault notes to the daily note of their creation date.",
    ),
    show: bool = typer.Option(False, "--show", help="Display the active configuration."),
) -> None:
    """Update or inspect configuration settings."""

    updates: Dict[str, object] = {
        key: value
        for key, value in {
            "provider": provider,
            "model": model,
            "transcription_backend": backend,
            "whisper_model": whisper_model,
            "openai_transcription_model": openai_transcription_model,
            "transcription_timeout": transcription_timeout,
            "request_timeout": request_timeout,
            "on_device_url": on_device_url,
            "page_size": page_size,
            "daily_note_backlink": daily_note_backlink,
        }.items()
        if value is not None
    }

    if show or not updates:
        cfg = _load_config()
        typer.echo(json.dumps(asdict(cfg), indent=2, default=str))
        return

    if backend is not None and backend not in {"auto", "whisper", "openai"}:
        _error(f"Unknown transcription backend {backend!r}. Choose one of: auto, whisper, openai")
        raise typer.Exit(code=1)

    try:
        config_mod.update_config(**updates)
    except ConfigError as exc:
        _error(str(exc))
        raise typer.Exit(code=1) from exc
    typer.secho("Configuration updated.", fg=typer.colors.BLUE)


@key_app.command("set")
def key_set(
    provider: str = typer.Argument(..., help="Provider the key belongs to."),
    api_key: str = typer.Option(..., "--api-key", prompt=True, hide_input=True, help="The API key."),
) -> None:
    """Store an API key for a cloud provider."""

    spec = PROVIDERS[_parse_provider(provider)]
    if not spec.requires_api_key:
        _error(f"{spec.display_name} does not use an API key.")
        raise typer.Exit(code=1)
    try:
        FileSecretStore().set(config_mod.credential_key(spec.provider), api_key.strip().encode("utf-8"))
    except (SecretStoreError, OSError) as exc:
        _error(str(exc))
        raise typer.Exit(code=1) from exc
    typer.secho(f"API key for {spec.display_name} stored.", fg=typer.colors.BLUE)


@key_app.command("clear")
def key_clear(
    provider: str = typer.Argument(..., help="Provider the key belongs to."),
) -> None:
    """Remove a stored API key."""

    parsed = _parse_provider(provider)
    try:
        FileSecretStore().delete(config_mod.credential_key(parsed))
    except (SecretStoreError, OSError) as exc:
        _error(str(exc))
        raise typer.Exit(code=1) from exc
    typer.secho(f"API key for {PROVIDERS[parsed].display_name} removed.", fg=typer.colors.BLUE)


@app.command()
def vault(
    path: Optional[Path] = typer.Argument(None, file_okay=False, help="Vault directory to export notes into."),
    clear: bool = typer.Option(False, "--clear", help="Stop exporting notes to a vault."),
) -> None:
    """Show or change the vault directory."""

    store = FileSecretStore()
    try:
        if clear:
            store.delete(VAULT_PATH_KEY)
            typer.secho("Vault export disabled.", fg=typer.colors.BLUE)
            return
        if path is None:
            current = get_text(store, VAULT_PATH_KEY)
            typer.echo(current or "No vault configured.")
            return
        resolved = path.expanduser().resolve()
        if not resolved.is_dir():
            _error(f"{resolved} is not a directory.")
            raise typer.Exit(code=1)
        store.set(VAULT_PATH_KEY, str(resolved).encode("utf-8"))
    except (SecretStoreError, OSError) as exc:
        _error(str(exc))
        raise typer.Exit(code=1) from exc
    typer.secho(f"Notes will be written to {resolved}.", fg=typer.colors.BLUE)


@app.command()
def words(
    action: str = typer.Argument("list", help="list, add or remove."),
    word: Optional[str] = typer.Argument(None, help="Word or phrase to add or remove."),
) -> None:
    """Manage words the transcript cleanup should preserve."""

    try:
        if action == "list":
            vocabulary = _load_config().custom_words
        elif action in {"add", "remove"}:
            if not word or not word.strip():
                _error(f"`coati words {action}` needs a word.")
                raise typer.Exit(code=1)
            if action == "add":
                vocabulary = config_mod.add_custom_word(word)
            else:
                vocabulary = config_mod.remove_custom_word(word)
        else:
            _error(f"Unknown action {action!r}. Use list, add or remove.")
            raise typer.Exit(code=1)
    except ConfigError as exc:
        _error(str(exc))
        raise typer.Exit(code=1) from exc

    if not vocabulary:
        typer.echo("No custom words configured.")
        return
    for entry in vocabulary:
        typer.echo(entry)


@app.command()
def providers() -> None:
    """List cleanup providers and whether they are ready to use."""

    cfg = _load_config()
    store = FileSecretStore()
    for provider, spec in PROVIDERS.items():
        active = provider.value == cfg.provider
        if spec.requires_api_key:
            try:
                ready = get_text(store, config_mod.credential_key(provider)) is not None
            except SecretStoreError:
                ready = False
            status = "key stored" if ready else "no key"
        else:
            status = cfg.on_device_url
        marker = "*" if active else " "
        model = cfg.model if active and cfg.model else spec.default_model
        typer.secho(
            f"{marker} {provider.value:<10} {spec.display_name:<20} {model:<28} {status}",
            fg=typer.colors.GREEN if active else None,
        )


if __name__ == "__main__":  # pragma: no cover
    app()
