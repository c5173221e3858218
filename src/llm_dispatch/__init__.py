"""llm-dispatch - Provider resolution and dispatch layer for LLM backends.

Usage:
    from llm_dispatch import AdapterFactory, Dispatcher, EnvSecretResolver

    dispatcher = Dispatcher(factory=AdapterFactory(secrets=EnvSecretResolver()))
    dispatcher.register_provider_record(provider_record)

    response = await dispatcher.chat(
        [{"role": "user", "content": "Summarize this paragraph"}],
        {"provider": "openai", "temperature": 0.2},
    )
    print(response.content)

Prompt templates:
    service = PromptTemplateService(InMemoryTemplateRepository())
    rendered = service.render("summarize", {"text": article})
    response = await dispatcher.chat(rendered.to_messages(), rendered.to_options())
"""

from llm_dispatch.adapters import BaseAdapter
from llm_dispatch.cache import (
    FileCacheBackend,
    MemoryCacheBackend,
    ResponseCache,
)
from llm_dispatch.config import DispatchConfig, get_config, reload_config
from llm_dispatch.dispatcher import Dispatcher
from llm_dispatch.errors import (
    DispatchError,
    MissingVariablesError,
    ProviderConfigurationError,
    ProviderConnectionError,
    ProviderNotFoundError,
    ProviderResponseError,
    TemplateNotFoundError,
    TemplateSyntaxError,
    UnsupportedFeatureError,
    ValidationError,
)
from llm_dispatch.factory import AdapterCache, AdapterFactory
from llm_dispatch.features import (
    CompletionService,
    EmbeddingService,
    TranslationService,
    VisionService,
)
from llm_dispatch.options import (
    ChatOptions,
    EmbeddingOptions,
    ToolOptions,
    VisionOptions,
)
from llm_dispatch.prompts import PromptTemplate, PromptTemplateService
from llm_dispatch.records import (
    AdapterType,
    ConfigurationRecord,
    ModelCapability,
    ModelRecord,
    ModelSelectionCriteria,
    ProviderRecord,
    SelectionMode,
)
from llm_dispatch.repositories import (
    EnvSecretResolver,
    InMemoryModelRepository,
    InMemoryProviderRepository,
    InMemoryTemplateRepository,
)
from llm_dispatch.selection import ModelSelectionService
from llm_dispatch.types import (
    CompletionResponse,
    EmbeddingResponse,
    RenderedPrompt,
    TranslationResult,
    UsageStatistics,
    VisionResponse,
)

__version__ = "0.1.0"

__all__ = [
    # Dispatch
    "Dispatcher",
    "AdapterFactory",
    "AdapterCache",
    "BaseAdapter",
    "ModelSelectionService",
    "CompletionService",
    "EmbeddingService",
    "VisionService",
    "TranslationService",
    # Caching
    "ResponseCache",
    "MemoryCacheBackend",
    "FileCacheBackend",
    # Prompt templates
    "PromptTemplate",
    "PromptTemplateService",
    # Records
    "AdapterType",
    "ModelCapability",
    "SelectionMode",
    "ProviderRecord",
    "ModelRecord",
    "ModelSelectionCriteria",
    "ConfigurationRecord",
    # Repositories
    "InMemoryProviderRepository",
    "InMemoryModelRepository",
    "InMemoryTemplateRepository",
    "EnvSecretResolver",
    # Options and responses
    "ChatOptions",
    "ToolOptions",
    "EmbeddingOptions",
    "VisionOptions",
    "CompletionResponse",
    "EmbeddingResponse",
    "VisionResponse",
    "RenderedPrompt",
    "TranslationResult",
    "UsageStatistics",
    # Configuration
    "DispatchConfig",
    "get_config",
    "reload_config",
    # Errors
    "DispatchError",
    "ProviderNotFoundError",
    "ProviderConfigurationError",
    "UnsupportedFeatureError",
    "ValidationError",
    "TemplateNotFoundError",
    "TemplateSyntaxError",
    "MissingVariablesError",
    "ProviderResponseError",
    "ProviderConnectionError",
    "__version__",
]
