"""Adapter factory: provider records to live adapter instances.

Adapter classes are looked up by adapter type, first in the caller-extensible
override map and then in the built-in map. Unknown types fall back to the
OpenAI-compatible adapter with a warning, so Azure and custom endpoints work
without bespoke code.

Instances are cached in an injected AdapterCache keyed by
``(provider uid, model id)``. A model-specific adapter is a separate entry
from its provider's generic adapter; cached instances are never
reconfigured for another model.
"""

import logging
import threading
from typing import Any, Dict, List, Optional, Tuple, Type

from .adapters import (
    AnthropicAdapter,
    BaseAdapter,
    ClientFactory,
    GeminiAdapter,
    GroqAdapter,
    MistralAdapter,
    OllamaAdapter,
    OpenAIAdapter,
    OpenRouterAdapter,
)
from .errors import ProviderConfigurationError
from .records import AdapterType, ModelRecord, ProviderRecord
from .repositories import SecretResolver

logger = logging.getLogger(__name__)

BUILTIN_ADAPTERS: Dict[str, Type[BaseAdapter]] = {
    AdapterType.OPENAI.value: OpenAIAdapter,
    AdapterType.ANTHROPIC.value: AnthropicAdapter,
    AdapterType.GEMINI.value: GeminiAdapter,
    AdapterType.OPENROUTER.value: OpenRouterAdapter,
    AdapterType.MISTRAL.value: MistralAdapter,
    AdapterType.GROQ.value: GroqAdapter,
    AdapterType.OLLAMA.value: OllamaAdapter,
    AdapterType.AZURE_OPENAI.value: OpenAIAdapter,
    AdapterType.CUSTOM.value: OpenAIAdapter,
}

FALLBACK_ADAPTER: Type[BaseAdapter] = OpenAIAdapter

CacheKey = Tuple[int, Optional[str]]


class AdapterCache:
    """Thread-safe map of ``(provider uid, model id or None)`` to adapters.

    Concurrent first population for the same key is harmless: the last
    writer wins and the earlier instance is discarded.
    """

    def __init__(self):
        self._adapters: Dict[CacheKey, BaseAdapter] = {}
        self._lock = threading.Lock()

    def get(self, key: CacheKey) -> Optional[BaseAdapter]:
        with self._lock:
            return self._adapters.get(key)

    def set(self, key: CacheKey, adapter: BaseAdapter) -> None:
        with self._lock:
            self._adapters[key] = adapter

    def remove_provider(self, provider_uid: int) -> List[BaseAdapter]:
        """Drop every entry for a provider; return the removed adapters."""
        with self._lock:
            keys = [key for key in self._adapters if key[0] == provider_uid]
            return [self._adapters.pop(key) for key in keys]

    def clear(self) -> List[BaseAdapter]:
        with self._lock:
            removed = list(self._adapters.values())
            self._adapters.clear()
            return removed

    def keys(self) -> List[CacheKey]:
        with self._lock:
            return list(self._adapters)

    def __len__(self) -> int:
        with self._lock:
            return len(self._adapters)


class AdapterFactory:
    """Create and cache adapters for stored providers and models.

    Args:
        secrets: Resolves provider credential references
        client_factory: Builds the httpx client for each adapter
        cache: Adapter instance cache (a fresh one by default)
        log_creation: Log adapter construction at debug level
    """

    def __init__(
        self,
        secrets: Optional[SecretResolver] = None,
        client_factory: Optional[ClientFactory] = None,
        cache: Optional[AdapterCache] = None,
        log_creation: bool = True,
    ):
        self._secrets = secrets
        self._client_factory = client_factory
        self.cache = cache if cache is not None else AdapterCache()
        self._overrides: Dict[str, Type[BaseAdapter]] = {}
        self._log_creation = log_creation

    # =========================================================================
    # Adapter class registry
    # =========================================================================

    def register_adapter(self, adapter_type: str, adapter_class: Type[BaseAdapter]) -> None:
        """Register or replace the adapter class for an adapter type.

        Raises:
            ProviderConfigurationError: If the class does not extend BaseAdapter
        """
        if not isinstance(adapter_class, type) or not issubclass(adapter_class, BaseAdapter):
            raise ProviderConfigurationError(
                f'Adapter class for "{adapter_type}" must extend {BaseAdapter.__name__}'
            )
        self._overrides[adapter_type] = adapter_class

    def get_adapter_class(self, adapter_type: str) -> Type[BaseAdapter]:
        if adapter_type in self._overrides:
            return self._overrides[adapter_type]
        if adapter_type in BUILTIN_ADAPTERS:
            return BUILTIN_ADAPTERS[adapter_type]
        logger.warning(
            f"Unknown adapter type '{adapter_type}', using {FALLBACK_ADAPTER.__name__}"
        )
        return FALLBACK_ADAPTER

    def has_adapter(self, adapter_type: str) -> bool:
        return adapter_type in self._overrides or adapter_type in BUILTIN_ADAPTERS

    def registered_adapters(self) -> Dict[str, str]:
        """Adapter types mapped to display labels."""
        adapters = {member.value: member.label for member in AdapterType}
        for adapter_type, adapter_class in self._overrides.items():
            adapters[adapter_type] = adapter_class.name
        return adapters

    # =========================================================================
    # Construction
    # =========================================================================

    def build_configuration(
        self, provider: ProviderRecord, model_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """Adapter configuration for a provider (credential reference only)."""
        config: Dict[str, Any] = dict(provider.options)
        config.update({
            "identifier": provider.identifier,
            "name": provider.display_name,
            "api_key_ref": provider.api_key_ref,
            "base_url": provider.effective_endpoint_url,
            "timeout": provider.timeout,
            "max_retries": provider.max_retries,
        })
        if provider.organization_id:
            config["organization_id"] = provider.organization_id
        if model_id:
            config["default_model"] = model_id
        return config

    def _build(self, provider: ProviderRecord, model_id: Optional[str] = None) -> BaseAdapter:
        adapter_class = self.get_adapter_class(provider.adapter_type)
        adapter = adapter_class(
            secrets=self._secrets,
            client_factory=self._client_factory,
            config=self.build_configuration(provider, model_id),
        )
        if self._log_creation:
            logger.debug(
                f"Created {adapter_class.__name__} for provider '{provider.identifier}'"
                + (f" (model {model_id})" if model_id else "")
            )
        return adapter

    def _cached_or_build(
        self, provider: ProviderRecord, model_id: Optional[str], use_cache: bool
    ) -> BaseAdapter:
        if not use_cache or provider.uid is None:
            return self._build(provider, model_id)
        key = (provider.uid, model_id)
        adapter = self.cache.get(key)
        if adapter is None:
            adapter = self._build(provider, model_id)
            self.cache.set(key, adapter)
        return adapter

    def create_adapter_from_provider(
        self, provider: ProviderRecord, use_cache: bool = True
    ) -> BaseAdapter:
        """Return a configured adapter for a provider.

        Instances are reused per provider uid when ``use_cache`` is set;
        unsaved providers (no uid) always get a fresh instance.
        """
        return self._cached_or_build(provider, None, use_cache)

    def create_adapter_from_model(self, model: ModelRecord, use_cache: bool = True) -> BaseAdapter:
        """Return an adapter for the model's provider bound to its model id.

        Raises:
            ProviderConfigurationError: If the model has no provider
        """
        if model.provider is None:
            raise ProviderConfigurationError(
                f'Model "{model.identifier}" has no provider configured'
            )
        return self._cached_or_build(model.provider, model.model_id, use_cache)

    async def test_provider_connection(self, provider: ProviderRecord) -> Dict[str, Any]:
        """Check a provider with a fresh, uncached adapter.

        Never raises: every failure is reported as ``success: False``.
        """
        try:
            adapter = self.create_adapter_from_provider(provider, use_cache=False)
            try:
                if not adapter.is_available():
                    return {
                        "success": False,
                        "message": "Provider is not available (API key may be missing)",
                    }
                return await adapter.test_connection()
            finally:
                await adapter.aclose()
        except Exception as e:
            logger.warning(f"Connection test for provider '{provider.identifier}' failed: {e}")
            return {"success": False, "message": f"Connection failed: {e}"}

    # =========================================================================
    # Cache management
    # =========================================================================

    def clear_cache(self, provider_uid: Optional[int] = None) -> int:
        """Drop cached adapters for one provider, or all of them.

        Returns:
            Number of adapters removed
        """
        if provider_uid is None:
            return len(self.cache.clear())
        return len(self.cache.remove_provider(provider_uid))

    async def aclose(self) -> None:
        """Close and forget every cached adapter."""
        for adapter in self.cache.clear():
            await adapter.aclose()
