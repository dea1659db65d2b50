"""
Configuration management and loading.

Reads ~/.llmsh/config.yaml, applies LLMSH_* environment overrides and
returns an immutable Settings object that callers pass around explicitly.
"""

import copy
import os
import re
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

CONFIG_DIR = Path("~/.llmsh")
CONFIG_FILE = "config.yaml"
ENV_PREFIX = "LLMSH"

DEFAULT_CONFIG: Dict[str, Any] = {
    "llm": {
        "default_provider": "openai",
        "providers": {
            "openai": {
                "base_url": "https://api.openai.com/v1",
                "api_key": "${OPENAI_API_KEY}",
                "model": "gpt-4-turbo-preview",
                "max_tokens": 100,
                "temperature": 0.2,
            },
            "local": {
                "base_url": "http://localhost:11434/v1",
                "api_key": "",
                "model": "codellama:7b",
                "max_tokens": 100,
                "temperature": 0.2,
            },
        },
    },
    "prediction": {
        "history_length": 20,
        "min_prefix_length": 3,
    },
    "cache": {
        "enabled": True,
        "db_path": "~/.llmsh/cache.db",
        "ttl_days": 7,
        "max_entries": 1000,
    },
    "tracking": {
        "enabled": True,
        "db_path": "~/.llmsh/tokens.json",
    },
    "logging": {
        "level": "WARNING",
        "file": "/tmp/llmsh_debug.log",
    },
    "zsh": {
        "keybindings": {
            "accept_prediction": "^I",
            "nl2cmd": "^[^M",
        },
    },
}

_ENV_VAR = re.compile(r"\$\{(\w+)\}|\$(\w+)")
_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


@dataclass(frozen=True)
class ProviderConfig:
    """Connection settings for one OpenAI-compatible provider."""
    base_url: str
    api_key: str
    model: str
    max_tokens: int = 100
    temperature: float = 0.2

    def __post_init__(self):
        """Validate provider values."""
        if not self.model:
            raise ValueError("model is required")
        if self.max_tokens < 0:
            raise ValueError("max_tokens cannot be negative")


@dataclass(frozen=True)
class LLMConfig:
    """Provider table and the default provider name."""
    default_provider: str
    providers: Dict[str, ProviderConfig]

    def __post_init__(self):
        """Validate the default provider is configured."""
        if self.default_provider not in self.providers:
            raise ValueError(f"default provider '{self.default_provider}' not found in providers")

    def get_provider(self, name: Optional[str] = None) -> ProviderConfig:
        """Get configuration for a provider, the default one if name is empty."""
        name = name or self.default_provider
        if name not in self.providers:
            raise ValueError(f"provider {name} not found in config")
        return self.providers[name]


@dataclass(frozen=True)
class PredictionConfig:
    """Prediction behavior settings."""
    history_length: int = 20
    min_prefix_length: int = 3

    def __post_init__(self):
        """Validate limits are non-negative."""
        if self.history_length < 0:
            raise ValueError("history_length cannot be negative")
        if self.min_prefix_length < 0:
            raise ValueError("min_prefix_length cannot be negative")


@dataclass(frozen=True)
class CacheConfig:
    """Prediction cache settings."""
    enabled: bool = True
    db_path: str = "~/.llmsh/cache.db"
    ttl_days: int = 7
    max_entries: int = 1000

    def __post_init__(self):
        """Validate eviction limits."""
        if self.ttl_days <= 0:
            raise ValueError("ttl_days must be > 0")
        if self.max_entries < 0:
            raise ValueError("max_entries cannot be negative")

    @property
    def max_age(self) -> timedelta:
        return timedelta(days=self.ttl_days)


@dataclass(frozen=True)
class TrackingConfig:
    """Token usage tracking settings."""
    enabled: bool = True
    db_path: str = "~/.llmsh/tokens.json"


@dataclass(frozen=True)
class LoggingConfig:
    """Debug log settings."""
    level: str = "WARNING"
    file: str = "/tmp/llmsh_debug.log"

    def __post_init__(self):
        """Validate the level name."""
        if self.level.upper() not in _LOG_LEVELS:
            raise ValueError(f"logging level must be one of: {sorted(_LOG_LEVELS)}")


@dataclass(frozen=True)
class ZshConfig:
    """Settings consumed by the zsh plugin itself."""
    keybindings: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Settings:
    """Complete llmsh configuration."""
    llm: LLMConfig
    prediction: PredictionConfig
    cache: CacheConfig
    tracking: TrackingConfig
    logging: LoggingConfig
    zsh: ZshConfig


def default_config_path() -> Path:
    """Location of the user's configuration file."""
    return (CONFIG_DIR / CONFIG_FILE).expanduser()


def expand_path(path: str) -> str:
    """Expand a leading ~ to the user's home directory."""
    return str(Path(path).expanduser()) if path.startswith("~") else path


def expand_env(value: str, environ: Mapping[str, str]) -> str:
    """Replace $VAR and ${VAR} with their values; unset variables become empty."""
    return _ENV_VAR.sub(lambda m: environ.get(m.group(1) or m.group(2), ""), value)


def _deep_merge(base: Dict[str, Any], update: Mapping[str, Any]) -> Dict[str, Any]:
    for key, value in update.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def _apply_env_overrides(raw: Dict[str, Any], environ: Mapping[str, str]) -> None:
    """Override scalar settings from LLMSH_<SECTION>_<KEY> variables.

    Values are parsed as YAML scalars, so "false" and "30" become a bool
    and an int.
    """
    for section, values in raw.items():
        if not isinstance(values, dict):
            continue
        for key, current in values.items():
            if isinstance(current, dict):
                continue
            env_name = f"{ENV_PREFIX}_{section}_{key}".upper()
            if env_name in environ:
                values[key] = yaml.safe_load(environ[env_name])


def _require_dict(data: Any, path: str) -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")
    return data


def _require_bool(value: Any, path: str) -> bool:
    if not isinstance(value, bool):
        raise ValueError(f"'{path}' must be true or false, got {value!r}")
    return value


def _check_keys(data: Mapping[str, Any], allowed: set, path: str) -> None:
    unknown = set(data.keys()) - allowed
    if unknown:
        raise ValueError(f"Unknown keys in {path}: {unknown}")


def _parse_provider(data: Dict[str, Any], path: str, environ: Mapping[str, str]) -> ProviderConfig:
    """Parse and validate one provider entry.

    Raises:
        ValueError: If the provider is invalid
    """
    _check_keys(data, {"base_url", "api_key", "model", "max_tokens", "temperature"}, path)
    if not data.get("model"):
        raise ValueError(f"Missing required 'model' in {path}")
    try:
        return ProviderConfig(
            base_url=str(data.get("base_url") or ""),
            api_key=expand_env(str(data.get("api_key") or ""), environ),
            model=str(data["model"]),
            max_tokens=int(data.get("max_tokens", 100)),
            temperature=float(data.get("temperature", 0.2)),
        )
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid provider {path}: {e}")


def parse_settings(raw: Mapping[str, Any], environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Validate a raw configuration mapping and build Settings.

    Missing sections fall back to defaults; unknown keys are rejected so a
    typo never silently disables caching or tracking.

    Raises:
        ValueError: If configuration is invalid
    """
    environ = os.environ if environ is None else environ
    merged = _deep_merge(copy.deepcopy(DEFAULT_CONFIG), _require_dict(raw, "config"))
    # A configured provider table replaces the defaults instead of extending them.
    raw_llm = raw.get("llm")
    if isinstance(raw_llm, dict) and "providers" in raw_llm:
        merged["llm"]["providers"] = raw_llm["providers"]
    _check_keys(merged, set(DEFAULT_CONFIG.keys()), "config")
    _apply_env_overrides(merged, environ)

    llm_data = _require_dict(merged["llm"], "llm")
    _check_keys(llm_data, {"default_provider", "providers"}, "llm")
    providers_data = _require_dict(llm_data.get("providers") or {}, "llm.providers")
    providers = {
        name: _parse_provider(_require_dict(data, f"llm.providers.{name}"), f"llm.providers.{name}", environ)
        for name, data in providers_data.items()
    }

    prediction_data = _require_dict(merged["prediction"], "prediction")
    _check_keys(prediction_data, {"history_length", "min_prefix_length"}, "prediction")

    cache_data = _require_dict(merged["cache"], "cache")
    _check_keys(cache_data, {"enabled", "db_path", "ttl_days", "max_entries"}, "cache")

    tracking_data = _require_dict(merged["tracking"], "tracking")
    _check_keys(tracking_data, {"enabled", "db_path"}, "tracking")

    logging_data = _require_dict(merged["logging"], "logging")
    _check_keys(logging_data, {"level", "file"}, "logging")

    zsh_data = _require_dict(merged["zsh"], "zsh")
    _check_keys(zsh_data, {"keybindings"}, "zsh")

    return Settings(
        llm=LLMConfig(
            default_provider=str(llm_data.get("default_provider") or ""),
            providers=providers,
        ),
        prediction=PredictionConfig(
            history_length=int(prediction_data["history_length"]),
            min_prefix_length=int(prediction_data["min_prefix_length"]),
        ),
        cache=CacheConfig(
            enabled=_require_bool(cache_data["enabled"], "cache.enabled"),
            db_path=expand_path(str(cache_data["db_path"])),
            ttl_days=int(cache_data["ttl_days"]),
            max_entries=int(cache_data["max_entries"]),
        ),
        tracking=TrackingConfig(
            enabled=_require_bool(tracking_data["enabled"], "tracking.enabled"),
            db_path=expand_path(str(tracking_data["db_path"])),
        ),
        logging=LoggingConfig(
            level=str(logging_data["level"]).upper(),
            file=expand_path(str(logging_data["file"])),
        ),
        zsh=ZshConfig(
            keybindings={str(k): str(v) for k, v in (zsh_data.get("keybindings") or {}).items()},
        ),
    )


def load_config(path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Load and validate configuration from a YAML file.

    Args:
        path: Config file path (defaults to ~/.llmsh/config.yaml)
        environ: Environment used for overrides and api_key expansion

    Returns:
        Validated Settings object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path).expanduser() if path else default_config_path()
    if not config_path.exists():
        raise FileNotFoundError(
            f"config file not found at {config_path}. Run 'llmsh config init' to create one"
        )

    with open(config_path, "r", encoding="utf-8") as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {config_path}: {e}")

    return parse_settings(raw_config or {}, environ)


def write_default_config(path: Optional[str] = None, overwrite: bool = False) -> Path:
    """Write the default configuration file and return its path.

    Raises:
        FileExistsError: If a config file is already present and overwrite is off
    """
    config_path = Path(path).expanduser() if path else default_config_path()
    if config_path.exists() and not overwrite:
        raise FileExistsError(f"Configuration file already exists at {config_path}")
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w", encoding="utf-8") as f:
        yaml.safe_dump(DEFAULT_CONFIG, f, default_flow_style=False, sort_keys=False)
    return config_path
