"""Tests for configuration loading and backend settings resolution."""

from pathlib import Path

import pytest

from exif_ai.config import (
    DEFAULT_LMSTUDIO_BASE_URL,
    BackendSettings,
    Config,
    load_config,
    resolve_backend,
    save_config,
)
from exif_ai.errors import ConfigError


def test_missing_file_gives_defaults(tmp_path: Path) -> None:
    """A config path that does not exist yields the built-in defaults."""
    config = load_config(tmp_path / "absent.json")

    assert config == Config()
    assert config.enabled_backends() == ["openai"]
    assert config.fields.overwrite_existing is False
    assert config.output.backup_originals is True


def test_invalid_file_raises(tmp_path: Path) -> None:
    """Malformed JSON and schema violations are both ConfigError."""
    broken = tmp_path / "broken.json"
    broken.write_text("{not json", encoding="utf-8")
    bad_value = tmp_path / "bad.json"
    bad_value.write_text('{"workers": 0}', encoding="utf-8")

    with pytest.raises(ConfigError):
        load_config(broken)
    with pytest.raises(ConfigError):
        load_config(bad_value)


def test_save_and_load_round_trip(tmp_path: Path) -> None:
    """A saved configuration loads back equal, including nested settings."""
    config = Config(
        backends={"gemini": BackendSettings(enabled=True, model="gemini-2.0-flash")},
        backend_order=["gemini"],
        workers=8,
    )

    path = save_config(config, tmp_path / "nested" / "exif-ai.json")

    assert load_config(path) == config


def test_enabled_backends_keep_order_without_duplicates() -> None:
    """Disabled backends are dropped and repeated names appear once."""
    config = Config(
        backends={
            "ollama": BackendSettings(enabled=True),
            "openai": BackendSettings(enabled=True),
            "gemini": BackendSettings(enabled=False),
        },
        backend_order=["ollama", "gemini", "openai", "ollama", "cloudflare"],
    )

    assert config.enabled_backends() == ["ollama", "openai"]


def test_resolve_backend_reads_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Unset credentials and URLs come from the environment; explicit values win."""
    monkeypatch.setenv("LM_STUDIO_API_KEY", "env-key")
    monkeypatch.delenv("LM_STUDIO_BASE_URL", raising=False)
    monkeypatch.setenv("CLOUDFLARE_ACCOUNT_ID", "acct-env")

    lmstudio = resolve_backend("lmstudio", BackendSettings())
    cloudflare = resolve_backend("cloudflare", BackendSettings(account_id="acct-file"))

    assert lmstudio.api_key == "env-key"
    assert lmstudio.base_url == DEFAULT_LMSTUDIO_BASE_URL
    assert cloudflare.account_id == "acct-file"
