"""YAML configuration for llm-dispatch.

Configuration Priority: Environment Variables > YAML > Defaults

Example YAML configuration (llm_dispatch.yaml):

    dispatch:
      default_provider: openai
      providers:
        openai:
          api_key_ref: OPENAI_API_KEY
          default_model: gpt-4o-mini
        ollama:
          base_url: ${OLLAMA_HOST}/api
      cache:
        backend: file
        directory: ~/.cache/llm-dispatch
        cache_completions: true
      transport:
        timeout_seconds: 60

A ``.env`` file in the working directory is loaded on import.
"""

import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, Literal, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

from .cache import (
    COMPLETION_TTL,
    EMBEDDING_TTL,
    FileCacheBackend,
    MemoryCacheBackend,
    ResponseCache,
)

load_dotenv()

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "LLM_DISPATCH_CONFIG"
CONFIG_FILENAME = "llm_dispatch.yaml"


# =============================================================================
# Sub-configuration Models
# =============================================================================


class CacheConfig(BaseModel):
    """Response cache settings."""

    enabled: bool = True
    backend: Literal["memory", "file"] = "memory"
    directory: Path = Field(default_factory=lambda: Path.home() / ".cache" / "llm-dispatch")
    completion_ttl: int = Field(default=COMPLETION_TTL, ge=0)
    embedding_ttl: int = Field(default=EMBEDDING_TTL, ge=0)
    cache_completions: bool = False

    @field_validator("directory", mode="before")
    @classmethod
    def expand_directory(cls, v: Any) -> Any:
        if isinstance(v, str):
            return Path(v).expanduser()
        return v


class TransportConfig(BaseModel):
    """Defaults handed to the HTTP transport."""

    timeout_seconds: int = Field(default=30, ge=1)
    max_retries: int = Field(default=3, ge=0)


class ObservabilityConfig(BaseModel):
    """Configuration for logging of cache and adapter events."""

    log_cache_events: bool = True
    log_adapter_creation: bool = True


# =============================================================================
# Main Configuration
# =============================================================================


class DispatchConfig(BaseModel):
    """Configuration for the dispatcher and its collaborators.

    ``providers`` maps a provider identifier to the adapter configuration
    applied when a provider with that identifier is registered.
    """

    default_provider: Optional[str] = None
    providers: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    transport: TransportConfig = Field(default_factory=TransportConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)

    def provider_config(self, identifier: str) -> Dict[str, Any]:
        """Stored adapter configuration for a provider.

        Returns an empty dict when nothing is stored for ``identifier``.
        """
        return dict(self.providers.get(identifier, {}))

    def transport_defaults(self) -> Dict[str, Any]:
        """Adapter timeout and retry values for providers that set neither."""
        return {
            "timeout": self.transport.timeout_seconds,
            "max_retries": self.transport.max_retries,
        }

    def to_yaml(self) -> str:
        """Serialize configuration to YAML string."""
        config_dict = {"dispatch": self.to_dict()}
        return yaml.dump(config_dict, default_flow_style=False, sort_keys=False)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


# =============================================================================
# Configuration Loading Functions
# =============================================================================


def _substitute_env_vars(value: Any) -> Any:
    """Recursively substitute ${VAR_NAME} references with environment values."""
    if isinstance(value, str):
        for var_name in re.findall(r"\$\{([^}]+)\}", value):
            value = value.replace(f"${{{var_name}}}", os.getenv(var_name, ""))
        return value
    elif isinstance(value, dict):
        return {k: _substitute_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [_substitute_env_vars(item) for item in value]
    return value


def load_config(config_path: Optional[Path] = None, strict: bool = False) -> DispatchConfig:
    """Load configuration from a YAML file.

    Args:
        config_path: Path to YAML configuration file. If None, uses defaults.
        strict: If True, raise ValueError on invalid files instead of
                falling back to defaults.

    Raises:
        ValueError: If strict=True and configuration is invalid
    """
    if config_path is None or not config_path.exists():
        return DispatchConfig()

    try:
        with open(config_path, "r") as f:
            raw_config = yaml.safe_load(f)

        if raw_config is None:
            return DispatchConfig()

        raw_config = _substitute_env_vars(raw_config)
        return DispatchConfig(**(raw_config.get("dispatch") or {}))

    except yaml.YAMLError as e:
        if strict:
            raise ValueError(f"Invalid YAML: {e}")
        logger.warning(f"Ignoring invalid YAML in {config_path}: {e}")
        return DispatchConfig()
    except Exception as e:
        if strict:
            raise ValueError(f"Configuration error: {e}")
        logger.warning(f"Ignoring invalid configuration in {config_path}: {e}")
        return DispatchConfig()


def _find_config_file() -> Optional[Path]:
    """Find configuration file in standard locations.

    Search order:
    1. LLM_DISPATCH_CONFIG environment variable
    2. ./llm_dispatch.yaml (current directory)
    3. ~/.config/llm-dispatch/llm_dispatch.yaml
    """
    env_path = os.getenv(CONFIG_ENV_VAR)
    if env_path:
        path = Path(env_path)
        if path.exists():
            return path

    cwd_path = Path.cwd() / CONFIG_FILENAME
    if cwd_path.exists():
        return cwd_path

    home_path = Path.home() / ".config" / "llm-dispatch" / CONFIG_FILENAME
    if home_path.exists():
        return home_path

    return None


def _env_flag(value: str) -> bool:
    return value.lower() in ("true", "1", "yes")


def _apply_env_overrides(config: DispatchConfig) -> DispatchConfig:
    """Apply environment variable overrides on top of file configuration."""
    config_dict = config.to_dict()

    default_provider = os.getenv("LLM_DISPATCH_DEFAULT_PROVIDER")
    if default_provider:
        config_dict["default_provider"] = default_provider

    cache_enabled = os.getenv("LLM_DISPATCH_CACHE_ENABLED")
    if cache_enabled:
        config_dict.setdefault("cache", {})["enabled"] = _env_flag(cache_enabled)

    cache_backend = os.getenv("LLM_DISPATCH_CACHE_BACKEND")
    if cache_backend:
        config_dict.setdefault("cache", {})["backend"] = cache_backend

    cache_dir = os.getenv("LLM_DISPATCH_CACHE_DIR")
    if cache_dir:
        config_dict.setdefault("cache", {})["directory"] = cache_dir

    cache_completions = os.getenv("LLM_DISPATCH_CACHE_COMPLETIONS")
    if cache_completions:
        config_dict.setdefault("cache", {})["cache_completions"] = _env_flag(cache_completions)

    timeout = os.getenv("LLM_DISPATCH_TIMEOUT")
    if timeout:
        config_dict.setdefault("transport", {})["timeout_seconds"] = int(timeout)

    max_retries = os.getenv("LLM_DISPATCH_MAX_RETRIES")
    if max_retries:
        config_dict.setdefault("transport", {})["max_retries"] = int(max_retries)

    return DispatchConfig(**config_dict)


def get_effective_config(config_path: Optional[Path] = None) -> DispatchConfig:
    """Get the configuration with all overrides applied.

    Args:
        config_path: Explicit path to configuration file. If None, searches
                    standard locations.
    """
    if config_path is None:
        config_path = _find_config_file()
    return _apply_env_overrides(load_config(config_path))


def build_response_cache(config: DispatchConfig) -> Optional[ResponseCache]:
    """Construct the response cache described by ``config``, or None if disabled."""
    cache_config = config.cache
    if not cache_config.enabled:
        return None
    if cache_config.backend == "file":
        backend = FileCacheBackend(cache_config.directory)
    else:
        backend = MemoryCacheBackend()
    return ResponseCache(
        backend=backend,
        completion_ttl=cache_config.completion_ttl,
        embedding_ttl=cache_config.embedding_ttl,
        log_events=config.observability.log_cache_events,
    )


# =============================================================================
# Global Configuration Instance
# =============================================================================

_global_config: Optional[DispatchConfig] = None


def get_config() -> DispatchConfig:
    """Get the global configuration instance, loading it on first use.

    Use reload_config() to force a reload.
    """
    global _global_config
    if _global_config is None:
        _global_config = get_effective_config()
    return _global_config


def reload_config() -> DispatchConfig:
    """Reload the global configuration from disk."""
    global _global_config
    _global_config = get_effective_config()
    return _global_config


def _reset_config() -> None:
    """Forget the global configuration (for testing)."""
    global _global_config
    _global_config = None
