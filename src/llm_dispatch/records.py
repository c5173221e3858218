"""Record types supplied by the persistence layer.

Providers, models and configurations are read as immutable snapshots. The
dispatch layer never writes them back.

- AdapterType: closed set of adapter tags with per-type endpoint defaults
- ModelCapability: named features a model may support
- ProviderRecord / ModelRecord / ConfigurationRecord: frozen value records
- ModelSelectionCriteria: declarative requirements for criteria-mode selection
"""

import json
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple

from .errors import ValidationError
from .options import ChatOptions


class AdapterType(Enum):
    """Adapter type tags understood by the adapter factory."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"
    OPENROUTER = "openrouter"
    MISTRAL = "mistral"
    GROQ = "groq"
    OLLAMA = "ollama"
    AZURE_OPENAI = "azure_openai"
    CUSTOM = "custom"

    @property
    def label(self) -> str:
        return _ADAPTER_LABELS[self]

    @property
    def default_endpoint(self) -> str:
        """Default API base URL, empty when the type has no public endpoint."""
        return _DEFAULT_ENDPOINTS.get(self, "")

    @property
    def requires_api_key(self) -> bool:
        return self is not AdapterType.OLLAMA

    @classmethod
    def values(cls) -> List[str]:
        return [member.value for member in cls]

    @classmethod
    def try_from(cls, value: str) -> Optional["AdapterType"]:
        try:
            return cls(value)
        except ValueError:
            return None


_ADAPTER_LABELS = {
    AdapterType.OPENAI: "OpenAI",
    AdapterType.ANTHROPIC: "Anthropic (Claude)",
    AdapterType.GEMINI: "Google Gemini",
    AdapterType.OPENROUTER: "OpenRouter",
    AdapterType.MISTRAL: "Mistral AI",
    AdapterType.GROQ: "Groq",
    AdapterType.OLLAMA: "Ollama (Local)",
    AdapterType.AZURE_OPENAI: "Azure OpenAI",
    AdapterType.CUSTOM: "Custom (OpenAI-compatible)",
}

_DEFAULT_ENDPOINTS = {
    AdapterType.OPENAI: "https://api.openai.com/v1",
    AdapterType.ANTHROPIC: "https://api.anthropic.com/v1",
    AdapterType.GEMINI: "https://generativelanguage.googleapis.com/v1beta",
    AdapterType.OPENROUTER: "https://openrouter.ai/api/v1",
    AdapterType.MISTRAL: "https://api.mistral.ai/v1",
    AdapterType.GROQ: "https://api.groq.com/openai/v1",
    AdapterType.OLLAMA: "http://localhost:11434/api",
}


class ModelCapability(Enum):
    """Features a model may or may not support."""

    CHAT = "chat"
    COMPLETION = "completion"
    EMBEDDINGS = "embeddings"
    VISION = "vision"
    STREAMING = "streaming"
    TOOLS = "tools"
    JSON_MODE = "json_mode"
    AUDIO = "audio"

    @classmethod
    def values(cls) -> List[str]:
        return [member.value for member in cls]

    @classmethod
    def is_valid(cls, value: str) -> bool:
        return value in cls.values()


class SelectionMode(Enum):
    """How a configuration resolves its model."""

    FIXED = "fixed"
    CRITERIA = "criteria"


@dataclass(frozen=True)
class ProviderRecord:
    """A configured API connection.

    Attributes:
        uid: Persisted numeric id, None for unsaved records
        identifier: Unique provider identifier
        adapter_type: Adapter tag (see AdapterType)
        endpoint_url: Custom endpoint, empty to use the adapter default
        api_key_ref: Opaque credential reference, never a raw secret
        timeout: Request timeout in seconds
        max_retries: Retries handed to the transport
        priority: 0-100, higher wins ranking ties
        options: Free-form settings merged into the adapter configuration
    """

    identifier: str
    adapter_type: str = AdapterType.OPENAI.value
    uid: Optional[int] = None
    name: str = ""
    endpoint_url: str = ""
    api_key_ref: str = ""
    organization_id: str = ""
    timeout: int = 30
    max_retries: int = 3
    priority: int = 50
    options: Dict[str, Any] = field(default_factory=dict)
    is_active: bool = True

    def __post_init__(self):
        if not self.identifier:
            raise ValidationError("ProviderRecord.identifier cannot be empty")
        if self.timeout < 1:
            raise ValidationError("ProviderRecord.timeout must be at least 1 second")
        if self.max_retries < 0:
            raise ValidationError("ProviderRecord.max_retries must be non-negative")
        if not 0 <= self.priority <= 100:
            raise ValidationError("ProviderRecord.priority must be between 0 and 100")

    @property
    def effective_endpoint_url(self) -> str:
        """Custom endpoint if set, otherwise the adapter-type default."""
        if self.endpoint_url:
            return self.endpoint_url
        adapter_type = AdapterType.try_from(self.adapter_type)
        return adapter_type.default_endpoint if adapter_type else ""

    @property
    def display_name(self) -> str:
        return self.name or self.identifier


@dataclass(frozen=True)
class ModelRecord:
    """A specific model offered by a provider.

    Costs are per million tokens; 0 means unknown, never free. A context
    length of 0 means unknown.
    """

    identifier: str
    model_id: str
    provider: Optional[ProviderRecord] = None
    uid: Optional[int] = None
    name: str = ""
    capabilities: FrozenSet[str] = frozenset({ModelCapability.CHAT.value})
    context_length: int = 0
    max_output_tokens: int = 0
    cost_input: float = 0.0
    cost_output: float = 0.0
    is_default: bool = False
    sort_order: int = 0
    is_active: bool = True

    def __post_init__(self):
        # Accept any iterable of capability names
        if not isinstance(self.capabilities, frozenset):
            object.__setattr__(self, "capabilities", frozenset(self.capabilities))
        if self.context_length < 0:
            raise ValidationError("ModelRecord.context_length must be non-negative")

    def has_capability(self, capability: str) -> bool:
        return capability in self.capabilities

    @property
    def total_cost(self) -> float:
        return self.cost_input + self.cost_output


@dataclass(frozen=True)
class ModelSelectionCriteria:
    """Declarative requirements for criteria-mode model selection.

    Attributes:
        capabilities: Capabilities a model must all have
        adapter_types: Allowed provider adapter types, empty allows any
        min_context_length: Minimum context window, 0 disables the check
        max_cost_input: Maximum input cost per million tokens, 0 disables it
        prefer_lowest_cost: Rank cheaper models first among equal priority
    """

    capabilities: Tuple[str, ...] = ()
    adapter_types: Tuple[str, ...] = ()
    min_context_length: int = 0
    max_cost_input: float = 0.0
    prefer_lowest_cost: bool = False

    def __post_init__(self):
        object.__setattr__(self, "capabilities", tuple(self.capabilities))
        object.__setattr__(self, "adapter_types", tuple(self.adapter_types))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ModelSelectionCriteria":
        return cls(
            capabilities=tuple(data.get("capabilities") or ()),
            adapter_types=tuple(data.get("adapter_types") or data.get("adapterTypes") or ()),
            min_context_length=int(
                data.get("min_context_length", data.get("minContextLength", 0)) or 0
            ),
            max_cost_input=float(data.get("max_cost_input", data.get("maxCostInput", 0)) or 0),
            prefer_lowest_cost=bool(
                data.get("prefer_lowest_cost", data.get("preferLowestCost", False))
            ),
        )

    @classmethod
    def from_json(cls, text: Optional[str]) -> "ModelSelectionCriteria":
        """Parse stored JSON; empty or malformed input yields empty criteria."""
        if not text:
            return cls()
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            return cls()
        if not isinstance(data, dict):
            return cls()
        return cls.from_dict(data)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "capabilities": list(self.capabilities),
            "adapter_types": list(self.adapter_types),
            "min_context_length": self.min_context_length,
            "max_cost_input": self.max_cost_input,
            "prefer_lowest_cost": self.prefer_lowest_cost,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    def has_criteria(self) -> bool:
        return bool(
            self.capabilities
            or self.adapter_types
            or self.min_context_length > 0
            or self.max_cost_input > 0
        )

    def requires_capability(self, capability: str) -> bool:
        return capability in self.capabilities

    def allows_adapter_type(self, adapter_type: str) -> bool:
        return not self.adapter_types or adapter_type in self.adapter_types

    def with_capability(self, capability: str) -> "ModelSelectionCriteria":
        if capability in self.capabilities:
            return self
        return replace(self, capabilities=self.capabilities + (capability,))

    def with_adapter_type(self, adapter_type: str) -> "ModelSelectionCriteria":
        if adapter_type in self.adapter_types:
            return self
        return replace(self, adapter_types=self.adapter_types + (adapter_type,))

    def with_min_context_length(self, length: int) -> "ModelSelectionCriteria":
        return replace(self, min_context_length=length)

    def with_max_cost_input(self, cost: float) -> "ModelSelectionCriteria":
        return replace(self, max_cost_input=cost)

    def with_lowest_cost_preference(self, prefer: bool = True) -> "ModelSelectionCriteria":
        return replace(self, prefer_lowest_cost=prefer)


@dataclass(frozen=True)
class ConfigurationRecord:
    """A named preset binding generation parameters to a model source."""

    identifier: str
    selection_mode: SelectionMode = SelectionMode.FIXED
    model: Optional[ModelRecord] = None
    criteria: ModelSelectionCriteria = field(default_factory=ModelSelectionCriteria)
    name: str = ""
    temperature: float = 0.7
    max_tokens: int = 1000
    top_p: float = 1.0
    frequency_penalty: float = 0.0
    presence_penalty: float = 0.0
    system_prompt: str = ""
    options: Dict[str, Any] = field(default_factory=dict)
    is_active: bool = True

    @property
    def uses_criteria_selection(self) -> bool:
        return self.selection_mode is SelectionMode.CRITERIA

    def to_options(self) -> ChatOptions:
        """Build chat options from the stored generation parameters."""
        return ChatOptions(
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            top_p=self.top_p,
            frequency_penalty=self.frequency_penalty,
            presence_penalty=self.presence_penalty,
            system_prompt=self.system_prompt or None,
        )
