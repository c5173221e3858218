"""Dispatcher: provider registry, capability checks and delegation.

Usage:
    >>> dispatcher = Dispatcher(factory=AdapterFactory(secrets=EnvSecretResolver()))
    >>> dispatcher.register_provider_record(openai_record)
    >>> dispatcher.set_default_provider("openai")
    >>> response = await dispatcher.chat([{"role": "user", "content": "Hello"}])
    >>> async for chunk in dispatcher.stream_chat(messages, {"provider": "anthropic"}):
    ...     print(chunk, end="")

Each operation resolves its provider from the ``provider`` option (or the
default), checks the capability it needs and fails with
UnsupportedFeatureError before any network call. Embeddings, and chat
completions when enabled, are read through the response cache.
"""

import logging
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    Union,
)

from .adapters import BaseAdapter
from .cache import ResponseCache
from .config import DispatchConfig, build_response_cache, get_config
from .errors import (
    ProviderConfigurationError,
    ProviderNotFoundError,
    UnsupportedFeatureError,
)
from .factory import AdapterFactory
from .options import (
    ChatOptions,
    EmbeddingOptions,
    OptionsLike,
    ToolOptions,
    VisionOptions,
    split_provider,
)
from .records import ConfigurationRecord, ModelRecord, ProviderRecord
from .repositories import ProviderRepository
from .selection import ModelSelectionService
from .types import CompletionResponse, EmbeddingResponse, VisionResponse

logger = logging.getLogger(__name__)

Messages = Sequence[Mapping[str, Any]]


def _prepare(
    options: OptionsLike, options_class: type
) -> Tuple[Optional[str], Dict[str, Any]]:
    """Validate options and split off the provider selector.

    Plain mappings are validated against ``options_class``; keys it does not
    know are passed through to the adapter untouched.
    """
    if isinstance(options, Mapping):
        options_class.from_dict(options)
    return split_provider(options)


class Dispatcher:
    """Routes logical operations to registered provider adapters.

    Args:
        config: Dispatch configuration (global configuration by default)
        factory: Builds adapters from stored provider and model records
        selection: Resolves configuration records to models
        cache: Response cache; built from ``config.cache`` when omitted
    """

    def __init__(
        self,
        config: Optional[DispatchConfig] = None,
        factory: Optional[AdapterFactory] = None,
        selection: Optional[ModelSelectionService] = None,
        cache: Optional[ResponseCache] = None,
    ):
        self.config = config if config is not None else get_config()
        self.factory = factory or AdapterFactory(
            log_creation=self.config.observability.log_adapter_creation
        )
        self.selection = selection
        self.cache = cache if cache is not None else build_response_cache(self.config)
        self._providers: Dict[str, BaseAdapter] = {}
        self._provider_configs: Dict[str, Dict[str, Any]] = {
            identifier: self.config.provider_config(identifier)
            for identifier in self.config.providers
        }
        self._default_provider: Optional[str] = self.config.default_provider

    # =========================================================================
    # Registry
    # =========================================================================

    def register_provider(self, adapter: BaseAdapter) -> None:
        """Add or replace a provider, applying any stored configuration.

        Transport defaults fill in only the timeout and retry settings that
        neither the adapter's own configuration nor the stored configuration
        provides.
        """
        identifier = adapter.identifier
        self._providers[identifier] = adapter
        settings = {
            key: value
            for key, value in self.config.transport_defaults().items()
            if key not in adapter.configured_keys
        }
        settings.update(self._provider_configs.get(identifier, {}))
        if settings:
            adapter.configure(settings)
        logger.debug(f"Registered provider '{identifier}' ({type(adapter).__name__})")

    def register_provider_record(self, provider: ProviderRecord) -> BaseAdapter:
        """Build an adapter for a stored provider and register it.

        The adapter is owned by this dispatcher: it is built outside the
        factory cache so stored configuration never reaches other callers.
        """
        adapter = self.factory.create_adapter_from_provider(provider, use_cache=False)
        self.register_provider(adapter)
        return adapter

    def register_providers_from(self, repository: ProviderRepository) -> List[str]:
        """Register every active provider in a repository, highest priority first.

        Returns:
            Identifiers of the registered providers
        """
        providers = sorted(repository.find_active(), key=lambda p: -p.priority)
        for provider in providers:
            self.register_provider_record(provider)
        return [p.identifier for p in providers]

    def resolve(self, identifier: Optional[str] = None) -> BaseAdapter:
        """Return the named provider, or the default when no name is given.

        Raises:
            ProviderNotFoundError: If no name or default is available, or the
                name is not registered
        """
        name = identifier or self._default_provider
        if not name:
            raise ProviderNotFoundError(
                "No provider specified and no default provider configured"
            )
        adapter = self._providers.get(name)
        if adapter is None:
            raise ProviderNotFoundError(f'Provider "{name}" not found')
        return adapter

    get_provider = resolve

    def has_provider(self, identifier: str) -> bool:
        return identifier in self._providers

    @property
    def default_provider(self) -> Optional[str]:
        return self._default_provider

    def set_default_provider(self, identifier: str) -> None:
        if identifier not in self._providers:
            raise ProviderNotFoundError(f'Provider "{identifier}" not found')
        self._default_provider = identifier

    def available_providers(self) -> Dict[str, BaseAdapter]:
        """Registered providers that can currently authenticate."""
        return {
            identifier: adapter
            for identifier, adapter in self._providers.items()
            if adapter.is_available()
        }

    def has_available_provider(self) -> bool:
        return any(adapter.is_available() for adapter in self._providers.values())

    def provider_list(self) -> Dict[str, str]:
        """Registered provider identifiers mapped to display names."""
        return {identifier: adapter.display_name for identifier, adapter in self._providers.items()}

    def supports_feature(self, feature: str, provider: Optional[str] = None) -> bool:
        """Capability query that never raises; unknown providers support nothing."""
        try:
            return self.resolve(provider).supports_feature(feature)
        except ProviderNotFoundError:
            return False

    def provider_configuration(self, identifier: str) -> Dict[str, Any]:
        return dict(self._provider_configs.get(identifier, {}))

    def configure_provider(self, identifier: str, config: Mapping[str, Any]) -> None:
        """Store configuration for a provider and apply it immediately.

        Raises:
            ProviderNotFoundError: If the provider is not registered
        """
        adapter = self.resolve(identifier)
        self._provider_configs[identifier] = {**self._provider_configs.get(identifier, {}), **config}
        adapter.configure(config)

    # =========================================================================
    # Capability checks
    # =========================================================================

    @staticmethod
    def _require(adapter: BaseAdapter, capability: str, label: str) -> None:
        if capability not in adapter.capabilities:
            raise UnsupportedFeatureError(
                f'Provider "{adapter.identifier}" does not support {label}'
            )

    # =========================================================================
    # Operations
    # =========================================================================

    async def _cached_completion(
        self,
        adapter: BaseAdapter,
        messages: Messages,
        options: Dict[str, Any],
        call: Callable[[], Awaitable[CompletionResponse]],
    ) -> CompletionResponse:
        if self.cache is None or not self.config.cache.cache_completions:
            return await call()
        cached = self.cache.get_cached_completion(adapter.identifier, list(messages), options)
        if cached is not None:
            return CompletionResponse.from_dict(cached)
        response = await call()
        self.cache.cache_completion(adapter.identifier, list(messages), options, response.to_dict())
        return response

    async def chat(self, messages: Messages, options: OptionsLike = None) -> CompletionResponse:
        """Send a chat completion request."""
        provider, opts = _prepare(options, ChatOptions)
        adapter = self.resolve(provider)
        opts.setdefault("model", adapter.default_model)
        return await self._cached_completion(
            adapter, messages, opts, lambda: adapter.chat_completion(messages, opts)
        )

    async def complete(self, prompt: str, options: OptionsLike = None) -> CompletionResponse:
        """Send a single prompt as a user message."""
        provider, opts = _prepare(options, ChatOptions)
        adapter = self.resolve(provider)
        opts.setdefault("model", adapter.default_model)
        messages = [{"role": "user", "content": prompt}]
        return await self._cached_completion(
            adapter, messages, opts, lambda: adapter.complete(prompt, opts)
        )

    async def embed(
        self, input: Union[str, Sequence[str]], options: OptionsLike = None
    ) -> EmbeddingResponse:
        """Embed one text or a batch of texts.

        Responses are cached for ``cache_ttl`` seconds (24 hours by default);
        a ttl of 0 bypasses the cache.
        """
        provider, opts = _prepare(options, EmbeddingOptions)
        adapter = self.resolve(provider)
        if not adapter.supports_feature("embeddings"):
            raise UnsupportedFeatureError(
                f'Provider "{adapter.identifier}" does not support embeddings'
            )

        ttl = opts.pop("cache_ttl", None)
        if ttl is None and self.cache is not None:
            ttl = self.cache.embedding_ttl
        cache_input = input if isinstance(input, str) else list(input)

        if self.cache is None or not ttl:
            return await adapter.embeddings(input, opts)

        cached = self.cache.get_cached_embeddings(adapter.identifier, cache_input, opts)
        if cached is not None:
            return EmbeddingResponse.from_dict(cached)
        response = await adapter.embeddings(input, opts)
        self.cache.cache_embeddings(adapter.identifier, cache_input, opts, response.to_dict(), ttl=ttl)
        return response

    async def vision(
        self, content: Sequence[Mapping[str, Any]], options: OptionsLike = None
    ) -> VisionResponse:
        """Analyze image content parts (``text`` / ``image_url``)."""
        provider, opts = _prepare(options, VisionOptions)
        adapter = self.resolve(provider)
        self._require(adapter, "vision", "vision")
        return await adapter.analyze_image(content, opts)

    def stream_chat(self, messages: Messages, options: OptionsLike = None) -> AsyncIterator[str]:
        """Stream a chat completion as text chunks.

        Provider resolution and the capability check happen immediately; the
        returned iterator is lazy and single-pass. Stopping iteration (or
        calling ``aclose()`` on it) releases the connection.
        """
        provider, opts = _prepare(options, ChatOptions)
        adapter = self.resolve(provider)
        self._require(adapter, "streaming", "streaming")
        return adapter.stream_chat_completion(messages, opts)

    async def chat_with_tools(
        self,
        messages: Messages,
        tools: Sequence[Mapping[str, Any]],
        options: OptionsLike = None,
    ) -> CompletionResponse:
        """Chat completion with tool definitions (OpenAI function format)."""
        provider, opts = _prepare(options, ToolOptions)
        adapter = self.resolve(provider)
        self._require(adapter, "tools", "tool calling")
        return await adapter.chat_completion_with_tools(messages, tools, opts)

    # =========================================================================
    # Configuration-based operations
    # =========================================================================

    def adapter_from_model(self, model: ModelRecord) -> BaseAdapter:
        return self.factory.create_adapter_from_model(model)

    def adapter_from_configuration(self, configuration: ConfigurationRecord) -> BaseAdapter:
        """Resolve a configuration's model and return an adapter bound to it.

        Raises:
            ProviderConfigurationError: If no model can be resolved
        """
        if self.selection is None:
            raise ProviderConfigurationError("No model selection service configured")
        model = self.selection.resolve_model(configuration)
        if model is None:
            raise ProviderConfigurationError(
                f'No model could be resolved for configuration "{configuration.identifier}"'
            )
        return self.factory.create_adapter_from_model(model)

    @staticmethod
    def _configuration_options(
        configuration: ConfigurationRecord, adapter: BaseAdapter, options: OptionsLike
    ) -> Dict[str, Any]:
        _, overrides = _prepare(options, ChatOptions)
        merged = dict(configuration.options)
        merged.update(configuration.to_options().to_dict())
        merged.update(overrides)
        merged.setdefault("model", adapter.default_model)
        return merged

    async def chat_with_configuration(
        self,
        messages: Messages,
        configuration: ConfigurationRecord,
        options: OptionsLike = None,
    ) -> CompletionResponse:
        """Chat using a stored configuration's model and generation parameters."""
        adapter = self.adapter_from_configuration(configuration)
        opts = self._configuration_options(configuration, adapter, options)
        return await self._cached_completion(
            adapter, messages, opts, lambda: adapter.chat_completion(messages, opts)
        )

    async def complete_with_configuration(
        self,
        prompt: str,
        configuration: ConfigurationRecord,
        options: OptionsLike = None,
    ) -> CompletionResponse:
        return await self.chat_with_configuration(
            [{"role": "user", "content": prompt}], configuration, options
        )

    def stream_chat_with_configuration(
        self,
        messages: Messages,
        configuration: ConfigurationRecord,
        options: OptionsLike = None,
    ) -> AsyncIterator[str]:
        adapter = self.adapter_from_configuration(configuration)
        self._require(adapter, "streaming", "streaming")
        opts = self._configuration_options(configuration, adapter, options)
        return adapter.stream_chat_completion(messages, opts)

    async def aclose(self) -> None:
        """Close registered and factory-cached adapters."""
        for adapter in self._providers.values():
            await adapter.aclose()
        await self.factory.aclose()
