import json

import pytest

from coati import config
from coati.models import Config, Provider


def test_load_default_config_when_missing(config_path):
    cfg = config.load_config()
    assert isinstance(cfg, Config)
    assert cfg.provider == "on_device"
    assert cfg.transcription_backend == "auto"
    assert cfg.page_size == 10


def test_save_and_load_config(config_path):
    cfg = Config(transcription_backend="whisper", whisper_model="small", custom_words=["Kubernetes"])
    config.save_config(cfg)

    loaded = config.load_config()
    assert loaded.transcription_backend == "whisper"
    assert loaded.whisper_model == "small"
    assert loaded.custom_words == ["Kubernetes"]


def test_unknown_keys_on_disk_are_ignored(config_path):
    config_path.write_text(json.dumps({"provider": "openai", "server_url": "http://old"}))

    assert config.load_config().provider == "openai"


def test_corrupt_config_raises(config_path):
    config_path.write_text("{not json")

    with pytest.raises(config.ConfigError):
        config.load_config()


def test_update_config_validates_keys(config_path):
    config.update_config(transcription_backend="openai")
    loaded = config.load_config()
    assert loaded.transcription_backend == "openai"

    with pytest.raises(config.ConfigError):
        config.update_config(unknown="value")


def test_update_config_rejects_unknown_provider(config_path):
    with pytest.raises(config.ConfigError, match="Unknown provider"):
        config.update_config(provider="llamacloud")


def test_switching_provider_resets_model(config_path):
    config.update_config(provider="openai", model="gpt-4o-mini")
    config.update_config(provider="gemini")

    assert config.load_config().model is None
    assert config.load_provider_configuration().model == "gemini-2.0-flash"


def test_load_provider_configuration(config_path):
    config.update_config(provider="anthropic")
    provider_config = config.load_provider_configuration()

    assert provider_config.provider is Provider.ANTHROPIC
    assert provider_config.model == "claude-sonnet-4-5-20250929"
    assert provider_config.credential_key == "anthropic_api_key"


def test_on_device_provider_has_no_credential(config_path):
    provider_config = config.load_provider_configuration()

    assert provider_config.provider is Provider.ON_DEVICE
    assert provider_config.credential_key is None


def test_custom_words_are_trimmed_and_deduplicated(config_path):
    config.add_custom_word("  Obsidian ")
    words = config.add_custom_word("Obsidian")
    assert words == ["Obsidian"]

    assert config.remove_custom_word("Obsidian") == []
    with pytest.raises(config.ConfigError):
        config.remove_custom_word("Obsidian")
