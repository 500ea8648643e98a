"""
Run configuration: backends, field selection and output policy.

The configuration is a JSON document validated by pydantic. Credentials and local server URLs
fall back to environment variables, so a config file can be shared without secrets in it.
"""

import os
from pathlib import Path

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from exif_ai.errors import ConfigError
from exif_ai.models import FieldSelection


DEFAULT_CONFIG_PATH = Path(os.getenv("EXIF_AI_CONFIG", "exif-ai.json"))
DEFAULT_OLLAMA_BASE_URL = "http://localhost:11434/v1"
DEFAULT_LMSTUDIO_BASE_URL = "http://localhost:1234/v1"
KNOWN_BACKENDS = ("openai", "gemini", "cloudflare", "ollama", "lmstudio")


class BackendSettings(BaseModel):
    """Settings for one backend. Unset credentials are filled from the environment."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    api_key: str | None = None
    model: str = ""
    base_url: str | None = None
    account_id: str | None = None


class OutputSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    dry_run: bool = False
    backup_originals: bool = True


def _default_backends() -> dict[str, BackendSettings]:
    return {
        "openai": BackendSettings(enabled=True, model="gpt-4o-mini"),
        "gemini": BackendSettings(model="gemini-2.0-flash"),
        "cloudflare": BackendSettings(model="@cf/llava-hf/llava-1.5-7b-hf"),
        "ollama": BackendSettings(model="qwen2.5vl:7b"),
        "lmstudio": BackendSettings(model="qwen/qwen3-vl-30b"),
    }


class Config(BaseModel):
    """Immutable run configuration shared by every worker."""

    model_config = ConfigDict(frozen=True)

    backends: dict[str, BackendSettings] = Field(default_factory=_default_backends)
    backend_order: list[str] = Field(default_factory=lambda: list(KNOWN_BACKENDS))
    fields: FieldSelection = Field(default_factory=FieldSelection)
    output: OutputSettings = Field(default_factory=OutputSettings)
    timeout: float | None = 60.0
    workers: int = Field(default=4, ge=1)
    temperature: float = 0.2
    max_tokens: int = 1000
    jpeg_quality: int = Field(default=80, ge=1, le=100)
    jpeg_dimensions: int = Field(default=1280, ge=64)

    def settings(self, name: str) -> BackendSettings:
        return self.backends.get(name, BackendSettings())

    def enabled_backends(self) -> list[str]:
        """Backend names in failover order, enabled ones only, without duplicates."""
        return [
            name
            for name in dict.fromkeys(self.backend_order)
            if self.settings(name).enabled
        ]


_ENV_KEYS = {
    "openai": {"api_key": "OPENAI_API_KEY"},
    "gemini": {"api_key": "GEMINI_API_KEY"},
    "cloudflare": {"api_key": "CLOUDFLARE_API_TOKEN", "account_id": "CLOUDFLARE_ACCOUNT_ID"},
    "ollama": {"api_key": "OLLAMA_API_KEY", "base_url": "OLLAMA_BASE_URL"},
    "lmstudio": {"api_key": "LM_STUDIO_API_KEY", "base_url": "LM_STUDIO_BASE_URL"},
}
_DEFAULT_URLS = {"ollama": DEFAULT_OLLAMA_BASE_URL, "lmstudio": DEFAULT_LMSTUDIO_BASE_URL}


def resolve_backend(name: str, settings: BackendSettings) -> BackendSettings:
    """
    Fill unset credentials and URLs from the environment and built-in defaults.

    Examples:
        >>> resolve_backend("ollama", BackendSettings()).base_url
        'http://localhost:11434/v1'

    """
    updates: dict[str, str] = {}
    for attr, env_var in _ENV_KEYS.get(name, {}).items():
        if not getattr(settings, attr) and os.getenv(env_var):
            updates[attr] = os.environ[env_var]
    if not (updates.get("base_url") or settings.base_url) and name in _DEFAULT_URLS:
        updates["base_url"] = _DEFAULT_URLS[name]
    return settings.model_copy(update=updates) if updates else settings


def load_config(path: Path | None = None) -> Config:
    """
    Load a configuration file, or return defaults if it does not exist.

    Raises:
        ConfigError: The file exists but is not valid configuration JSON

    """
    config_path = path or DEFAULT_CONFIG_PATH
    if not config_path.exists():
        logger.warning("config_not_found_using_defaults", path=str(config_path))
        return Config()
    try:
        config = Config.model_validate_json(config_path.read_text(encoding="utf-8"))
    except (OSError, ValidationError) as exc:
        msg = f"invalid configuration file {config_path}: {exc}"
        raise ConfigError(msg) from exc
    unknown = [name for name in config.backend_order if name not in KNOWN_BACKENDS]
    if unknown:
        logger.warning("unknown_backends_in_order", backends=unknown)
    logger.debug("config_loaded", path=str(config_path), order=config.enabled_backends())
    return config


def save_config(config: Config, path: Path | None = None) -> Path:
    config_path = path or DEFAULT_CONFIG_PATH
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(config.model_dump_json(indent=2), encoding="utf-8")
    logger.info("config_saved", path=str(config_path))
    return config_path
