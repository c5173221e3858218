"""Typed request options.

Options are validated when they are constructed, so a bad temperature or
response format fails before any network call. ``to_dict`` drops unset
values and is what adapters receive.
"""

from dataclasses import dataclass, fields, replace
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple, Type, TypeVar, Union

from .errors import ValidationError

RESPONSE_FORMATS = ("text", "json", "markdown")
TOOL_CHOICES = ("auto", "none", "required")
DETAIL_LEVELS = ("auto", "low", "high")

DEFAULT_EMBEDDING_CACHE_TTL = 86400

T = TypeVar("T", bound="_Options")


def _check_range(name: str, value: Optional[float], low: float, high: float) -> None:
    if value is not None and not low <= value <= high:
        raise ValidationError(f"{name} must be between {low} and {high}, got {value}")


def _check_min(name: str, value: Optional[int], minimum: int) -> None:
    if value is not None and value < minimum:
        raise ValidationError(f"{name} must be at least {minimum}, got {value}")


def _check_choice(name: str, value: Optional[str], allowed: Sequence[str]) -> None:
    if value is not None and value not in allowed:
        raise ValidationError(f"{name} must be one of: {', '.join(allowed)}; got '{value}'")


@dataclass(frozen=True)
class _Options:
    """Shared behaviour for option objects."""

    def to_dict(self) -> Dict[str, Any]:
        """Return the set options as a plain dict, without None values."""
        result = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is None:
                continue
            result[f.name] = list(value) if isinstance(value, tuple) else value
        return result

    @classmethod
    def from_dict(cls: Type[T], data: Mapping[str, Any]) -> T:
        """Build options from a mapping, ignoring keys the class does not know."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    def merge(self: T, **changes: Any) -> T:
        """Copy with the given fields replaced (validated again)."""
        return replace(self, **changes)

    def with_provider(self: T, provider: str) -> T:
        return replace(self, provider=provider)

    def with_model(self: T, model: str) -> T:
        return replace(self, model=model)


@dataclass(frozen=True)
class ChatOptions(_Options):
    """Options for chat and completion requests."""

    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    top_p: Optional[float] = None
    frequency_penalty: Optional[float] = None
    presence_penalty: Optional[float] = None
    response_format: Optional[str] = None
    system_prompt: Optional[str] = None
    stop_sequences: Optional[Sequence[str]] = None
    provider: Optional[str] = None
    model: Optional[str] = None

    def __post_init__(self):
        _check_range("temperature", self.temperature, 0.0, 2.0)
        _check_min("max_tokens", self.max_tokens, 1)
        _check_range("top_p", self.top_p, 0.0, 1.0)
        _check_range("frequency_penalty", self.frequency_penalty, -2.0, 2.0)
        _check_range("presence_penalty", self.presence_penalty, -2.0, 2.0)
        _check_choice("response_format", self.response_format, RESPONSE_FORMATS)
        if self.stop_sequences is not None:
            object.__setattr__(self, "stop_sequences", tuple(self.stop_sequences))

    # Presets

    @classmethod
    def factual(cls):
        return cls(temperature=0.2, top_p=0.9)

    @classmethod
    def creative(cls):
        return cls(temperature=1.2, top_p=1.0, presence_penalty=0.6)

    @classmethod
    def balanced(cls):
        return cls(temperature=0.7, max_tokens=4096)

    @classmethod
    def json(cls):
        return cls(temperature=0.3, response_format="json")

    @classmethod
    def code(cls):
        return cls(temperature=0.2, max_tokens=8192, top_p=0.95, frequency_penalty=0.0)

    def with_temperature(self, temperature: float) -> "ChatOptions":
        return replace(self, temperature=temperature)

    def with_max_tokens(self, max_tokens: int) -> "ChatOptions":
        return replace(self, max_tokens=max_tokens)

    def with_system_prompt(self, system_prompt: str) -> "ChatOptions":
        return replace(self, system_prompt=system_prompt)

    def with_response_format(self, response_format: str) -> "ChatOptions":
        return replace(self, response_format=response_format)


@dataclass(frozen=True)
class ToolOptions(ChatOptions):
    """Chat options plus tool-calling controls."""

    tool_choice: Optional[str] = None
    parallel_tool_calls: Optional[bool] = None

    def __post_init__(self):
        super().__post_init__()
        _check_choice("tool_choice", self.tool_choice, TOOL_CHOICES)

    @classmethod
    def auto(cls):
        return cls(tool_choice="auto", temperature=0.7)

    @classmethod
    def required(cls):
        return cls(tool_choice="required", temperature=0.3)

    @classmethod
    def no_tools(cls):
        return cls(tool_choice="none", temperature=0.7)

    @classmethod
    def parallel(cls):
        return cls(tool_choice="auto", parallel_tool_calls=True, temperature=0.7)

    def with_tool_choice(self, tool_choice: str) -> "ToolOptions":
        return replace(self, tool_choice=tool_choice)


@dataclass(frozen=True)
class EmbeddingOptions(_Options):
    """Options for embedding requests.

    ``cache_ttl`` is the response cache lifetime in seconds; 0 disables
    caching for the request.
    """

    model: Optional[str] = None
    dimensions: Optional[int] = None
    cache_ttl: int = DEFAULT_EMBEDDING_CACHE_TTL
    provider: Optional[str] = None

    def __post_init__(self):
        _check_min("dimensions", self.dimensions, 1)
        _check_min("cache_ttl", self.cache_ttl, 0)

    @classmethod
    def standard(cls):
        return cls()

    @classmethod
    def no_cache(cls):
        return cls(cache_ttl=0)

    @classmethod
    def compact(cls):
        return cls(dimensions=256)

    @classmethod
    def high_precision(cls):
        return cls(dimensions=1536)

    def with_dimensions(self, dimensions: int) -> "EmbeddingOptions":
        return replace(self, dimensions=dimensions)

    def with_cache_ttl(self, cache_ttl: int) -> "EmbeddingOptions":
        return replace(self, cache_ttl=cache_ttl)


@dataclass(frozen=True)
class VisionOptions(_Options):
    """Options for image analysis requests."""

    detail_level: Optional[str] = None
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    provider: Optional[str] = None
    model: Optional[str] = None

    def __post_init__(self):
        _check_choice("detail_level", self.detail_level, DETAIL_LEVELS)
        _check_min("max_tokens", self.max_tokens, 1)
        _check_range("temperature", self.temperature, 0.0, 2.0)

    @classmethod
    def alt_text(cls):
        return cls(detail_level="low", max_tokens=100, temperature=0.5)

    @classmethod
    def detailed(cls):
        return cls(detail_level="high", max_tokens=500, temperature=0.7)

    @classmethod
    def quick(cls):
        return cls(detail_level="low", max_tokens=200, temperature=0.5)

    @classmethod
    def comprehensive(cls):
        return cls(detail_level="high", max_tokens=1000, temperature=0.7)

    def with_detail_level(self, detail_level: str) -> "VisionOptions":
        return replace(self, detail_level=detail_level)


OptionsLike = Union[_Options, Mapping[str, Any], None]


def coerce_options(options: OptionsLike, cls: Type[T]) -> T:
    """Accept an options object, a plain mapping or None."""
    if options is None:
        return cls()
    if isinstance(options, cls):
        return options
    if isinstance(options, _Options):
        return cls.from_dict(options.to_dict())
    return cls.from_dict(options)


def split_provider(options: OptionsLike) -> Tuple[Optional[str], Dict[str, Any]]:
    """Separate the provider selector from the request options.

    Returns:
        Tuple of (provider identifier or None, remaining options dict)
    """
    if options is None:
        return None, {}
    data = dict(options.to_dict() if isinstance(options, _Options) else options)
    provider = data.pop("provider", None)
    return provider, data


__all__ = [
    "ChatOptions",
    "ToolOptions",
    "EmbeddingOptions",
    "VisionOptions",
    "OptionsLike",
    "coerce_options",
    "split_provider",
    "DEFAULT_EMBEDDING_CACHE_TTL",
]
