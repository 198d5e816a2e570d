"""Persisted configuration management."""

from __future__ import annotations

import json
from dataclasses import asdict, fields
from pathlib import Path
from typing import Any, List

from .models import Config, Provider, ProviderConfiguration

APP_DIR = Path.home() / ".coati"
CONFIG_PATH = (APP_DIR / "config.json").expanduser()


class ConfigError(RuntimeError):
    """Raised when configuration cannot be loaded or saved."""


def load_config() -> Config:
    if not CONFIG_PATH.exists():
        return Config()
    try:
        payload = json.loads(CONFIG_PATH.read_text())
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Failed to parse configuration file: {exc}") from exc
    known = {f.name for f in fields(Config)}
    return Config(**{k: v for k, v in payload.items() if k in known})


def save_config(config: Config) -> None:
    CONFIG_PATH.parent.mkdir(parents=True, exist_ok=True)
    data = {k: v for k, v in asdict(config).items() if v is not None}
    CONFIG_PATH.write_text(json.dumps(data, indent=2))


def update_config(**kwargs: Any) -> Config:
    config = load_config()
    for key, value in kwargs.items():
        if not hasattr(config, key):
            raise ConfigError(f"Unknown configuration key: {key}")
        if key == "provider":
            value = _validate_provider(value).value
            if value != config.provider and "model" not in kwargs:
                # Models are provider specific; fall back to the new provider's default.
                config.model = None
        setattr(config, key, value)
    save_config(config)
    return config


def _validate_provider(value: str) -> Provider:
    try:
        return Provider(value)
    except ValueError as exc:
        choices = ", ".join(p.value for p in Provider)
        raise ConfigError(f"Unknown provider {value!r}. Choose one of: {choices}") from exc


def credential_key(provider: Provider) -> str:
    return f"{provider.value}_api_key"


def load_provider_configuration() -> ProviderConfiguration:
    """Read the provider selection from disk.

    Called at the start of every cleanup request so a provider change takes
    effect without restarting.
    """

    from .cleanup import PROVIDERS

    config = load_config()
    provider = _validate_provider(config.provider)
    spec = PROVIDERS[provider]
    return ProviderConfiguration(
        provider=provider,
        model=config.model or spec.default_model,
        credential_key=credential_key(provider) if spec.requires_api_key else None,
    )


def add_custom_word(word: str) -> List[str]:
    trimmed = word.strip()
    config = load_config()
    if trimmed and trimmed not in config.custom_words:
        config.custom_words.append(trimmed)
        save_config(config)
    return list(config.custom_words)


def remove_custom_word(word: str) -> List[str]:
    config = load_config()
    trimmed = word.strip()
    if trimmed not in config.custom_words:
        raise ConfigError(f"{trimmed!r} is not in the custom vocabulary.")
    config.custom_words.remove(trimmed)
    save_config(config)
    return list(config.custom_words)
