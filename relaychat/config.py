"""
Config loader for relaychat.

Two layers:
  - settings: the whole config.yaml as a dict (logging, relay, catalog ...),
    read once and cached. All other modules import from here.
  - Config: the immutable per-request connection settings (key, model, hints).
    Loaded and saved through a ConfigStore so the core never touches disk.

${ENV_VAR} references in config.yaml are resolved at load time and a .env
file in the working directory is honoured.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Protocol

import yaml
from dotenv import load_dotenv

from relaychat.errors import ConfigError

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"
MAX_TOKENS_LIMIT = 100_000

_CONFIG_PATH = Path(os.environ.get("RELAYCHAT_CONFIG", "config.yaml"))

_settings: dict | None = None


def _resolve_env_vars(value: str) -> str:
    """Replace ${ENV_VAR} patterns with actual environment variable values."""
    def replacer(match):
        return os.environ.get(match.group(1), "")
    return re.sub(r"\$\{(\w+)\}", replacer, value)


def _walk_and_resolve(obj):
    """Recursively resolve env vars in all string values."""
    if isinstance(obj, dict):
        return {k: _walk_and_resolve(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_walk_and_resolve(v) for v in obj]
    elif isinstance(obj, str):
        return _resolve_env_vars(obj)
    return obj


def _read_yaml(path: Path) -> dict:
    if not path.exists():
        return {}
    with open(path) as f:
        return yaml.safe_load(f) or {}


def load_settings(path: Path | None = None) -> dict:
    """Load and cache settings from YAML. A missing file yields empty settings."""
    global _settings
    if _settings is not None and path is None:
        return _settings

    config_path = path or _CONFIG_PATH
    _settings = _walk_and_resolve(_read_yaml(Path(config_path)))
    return _settings


def get_settings() -> dict:
    """Return cached settings, loading if necessary."""
    if _settings is None:
        return load_settings()
    return _settings


def setup_logging(settings: dict, default_level: str = "INFO"):
    log_cfg = settings.get("logging", {})
    level = getattr(logging, str(log_cfg.get("level", default_level)).upper(), logging.INFO)
    log_file = log_cfg.get("file")

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )


# ---------------------------------------------------------------------------
# Per-request Config
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Config:
    """Connection settings for one stream. Never mutated by the core."""
    api_key: str
    model: str
    referer_url: str = ""
    display_name: str = ""
    max_tokens: int | None = None
    base_url: str = DEFAULT_BASE_URL

    @classmethod
    def from_dict(cls, data: dict) -> "Config":
        """Build from an `openrouter:` block (site_url/site_name naming)."""
        max_tokens = data.get("max_tokens")
        return cls(
            api_key=str(data.get("api_key") or ""),
            model=str(data.get("model") or ""),
            referer_url=str(data.get("site_url") or ""),
            display_name=str(data.get("site_name") or ""),
            max_tokens=int(max_tokens) if max_tokens else None,
            base_url=str(data.get("base_url") or DEFAULT_BASE_URL),
        )

    def to_dict(self) -> dict:
        data = {
            "api_key": self.api_key,
            "model": self.model,
            "site_url": self.referer_url,
            "site_name": self.display_name,
            "base_url": self.base_url,
        }
        if self.max_tokens:
            data["max_tokens"] = self.max_tokens
        return data

    def with_changes(self, **changes) -> "Config":
        return replace(self, **changes)

    def validate(self) -> "Config":
        """Raise ConfigError if this config cannot drive a request."""
        if not self.api_key.strip():
            raise ConfigError("API key is required")
        if not self.model.strip():
            raise ConfigError("Model selection is required")
        if self.max_tokens is not None and not 0 < self.max_tokens <= MAX_TOKENS_LIMIT:
            raise ConfigError(f"Max tokens must be between 1 and {MAX_TOKENS_LIMIT:,}")
        return self

    @property
    def is_valid(self) -> bool:
        try:
            self.validate()
        except ConfigError:
            return False
        return True

    def __repr__(self) -> str:
        # Keep the key out of logs and tracebacks.
        masked = {**asdict(self), "api_key": mask_key(self.api_key)}
        fields = ", ".join(f"{k}={v!r}" for k, v in masked.items())
        return f"Config({fields})"


def mask_key(key: str) -> str:
    if not key:
        return ""
    if len(key) <= 8:
        return "***"
    return f"{key[:4]}...{key[-4:]}"


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

class ConfigStore(Protocol):
    def load(self) -> Config | None: ...

    def save(self, config: Config | None) -> None: ...


class MemoryConfigStore:
    """Holds a Config in memory. Useful for embedding and tests."""

    def __init__(self, config: Config | None = None):
        self._config = config

    def load(self) -> Config | None:
        return self._config

    def save(self, config: Config | None):
        self._config = config


class YamlConfigStore:
    """
    Reads/writes the `openrouter:` block of config.yaml.
    Other top-level keys (logging, relay, ...) are preserved on save.
    """

    SECTION = "openrouter"

    def __init__(self, path: Path | str | None = None):
        self.path = Path(path) if path else _CONFIG_PATH

    def load(self) -> Config | None:
        data = _walk_and_resolve(_read_yaml(self.path))
        section = data.get(self.SECTION)
        if not isinstance(section, dict):
            return None
        return Config.from_dict(section)

    def save(self, config: Config | None):
        data = _read_yaml(self.path)
        if config is None:
            data.pop(self.SECTION, None)
        else:
            section = config.to_dict()
            # Keep an unchanged ${ENV_VAR} reference instead of the secret it resolves to.
            old = data.get(self.SECTION)
            old_key = old.get("api_key") if isinstance(old, dict) else None
            if isinstance(old_key, str) and _resolve_env_vars(old_key) == config.api_key:
                section["api_key"] = old_key
            data[self.SECTION] = section

        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, allow_unicode=True)
        logger.info("Saved connection config to %s", self.path)
