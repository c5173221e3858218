"""Response types returned by adapters and the dispatcher.

All responses serialize with ``to_dict`` / ``from_dict`` so they can be
stored in the response cache as plain nested data.
"""

import math
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .errors import ValidationError


@dataclass(frozen=True)
class UsageStatistics:
    """Token usage for a single request."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    estimated_cost: Optional[float] = None

    @classmethod
    def from_tokens(
        cls,
        prompt_tokens: int,
        completion_tokens: int,
        estimated_cost: Optional[float] = None,
    ) -> "UsageStatistics":
        return cls(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
            estimated_cost=estimated_cost,
        )

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "UsageStatistics":
        if not data:
            return cls()
        prompt = int(data.get("prompt_tokens", 0) or 0)
        completion = int(data.get("completion_tokens", 0) or 0)
        return cls(
            prompt_tokens=prompt,
            completion_tokens=completion,
            total_tokens=int(data.get("total_tokens", prompt + completion) or 0),
            estimated_cost=data.get("estimated_cost"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class CompletionResponse:
    """Result of a chat, completion or tool-calling request."""

    content: str
    model: str
    usage: UsageStatistics = field(default_factory=UsageStatistics)
    finish_reason: str = "stop"
    provider: str = ""
    tool_calls: Optional[List[Dict[str, Any]]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def was_truncated(self) -> bool:
        return self.finish_reason == "length"

    @property
    def was_filtered(self) -> bool:
        return self.finish_reason == "content_filter"

    @property
    def is_complete(self) -> bool:
        return self.finish_reason == "stop"

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)

    @property
    def text(self) -> str:
        return self.content

    def to_dict(self) -> Dict[str, Any]:
        return {
            "content": self.content,
            "model": self.model,
            "usage": self.usage.to_dict(),
            "finish_reason": self.finish_reason,
            "provider": self.provider,
            "tool_calls": self.tool_calls,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CompletionResponse":
        return cls(
            content=data.get("content") or "",
            model=data.get("model", ""),
            usage=UsageStatistics.from_dict(data.get("usage")),
            finish_reason=data.get("finish_reason") or "stop",
            provider=data.get("provider", ""),
            tool_calls=data.get("tool_calls"),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass(frozen=True)
class EmbeddingResponse:
    """Result of an embeddings request: one vector per input."""

    embeddings: List[List[float]]
    model: str
    usage: UsageStatistics = field(default_factory=UsageStatistics)
    provider: str = ""

    @property
    def vector(self) -> List[float]:
        """The first embedding vector, empty if there is none."""
        return list(self.embeddings[0]) if self.embeddings else []

    @property
    def dimensions(self) -> int:
        return len(self.embeddings[0]) if self.embeddings else 0

    @property
    def count(self) -> int:
        return len(self.embeddings)

    @staticmethod
    def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
        """Cosine similarity of two vectors.

        Returns 0.0 when either vector has zero magnitude.

        Raises:
            ValidationError: If the vectors differ in length
        """
        if len(a) != len(b):
            raise ValidationError(
                f"Vectors must have the same dimensions ({len(a)} != {len(b)})"
            )
        dot = sum(x * y for x, y in zip(a, b))
        norm_a = math.sqrt(sum(x * x for x in a))
        norm_b = math.sqrt(sum(y * y for y in b))
        if norm_a == 0.0 or norm_b == 0.0:
            return 0.0
        # Clamp rounding noise so sim(v, v) is exactly 1.0
        return max(-1.0, min(1.0, dot / (norm_a * norm_b)))

    @staticmethod
    def normalize_vector(vector: Sequence[float]) -> List[float]:
        """Scale a vector to unit length; a zero vector is returned unchanged."""
        magnitude = math.sqrt(sum(x * x for x in vector))
        if magnitude == 0.0:
            return list(vector)
        return [x / magnitude for x in vector]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "embeddings": [list(v) for v in self.embeddings],
            "model": self.model,
            "usage": self.usage.to_dict(),
            "provider": self.provider,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "EmbeddingResponse":
        return cls(
            embeddings=[list(v) for v in data.get("embeddings") or []],
            model=data.get("model", ""),
            usage=UsageStatistics.from_dict(data.get("usage")),
            provider=data.get("provider", ""),
        )


@dataclass(frozen=True)
class VisionResponse:
    """Result of an image analysis request."""

    description: str
    model: str
    usage: UsageStatistics = field(default_factory=UsageStatistics)
    provider: str = ""
    confidence: Optional[float] = None
    detected_objects: Optional[List[Any]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def text(self) -> str:
        return self.description

    def meets_confidence(self, threshold: float) -> bool:
        """True if confidence is known and at least ``threshold``."""
        return self.confidence is not None and self.confidence >= threshold

    def to_dict(self) -> Dict[str, Any]:
        return {
            "description": self.description,
            "model": self.model,
            "usage": self.usage.to_dict(),
            "provider": self.provider,
            "confidence": self.confidence,
            "detected_objects": self.detected_objects,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "VisionResponse":
        return cls(
            description=data.get("description", ""),
            model=data.get("model", ""),
            usage=UsageStatistics.from_dict(data.get("usage")),
            provider=data.get("provider", ""),
            confidence=data.get("confidence"),
            detected_objects=data.get("detected_objects"),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass(frozen=True)
class TranslationResult:
    """A translated text with its language pair.

    ``confidence`` is derived from the finish reason: 0.9 for a complete
    answer, 0.6 when cut off by the token limit, 0.5 otherwise.
    """

    translation: str
    source_language: str
    target_language: str
    confidence: float
    usage: UsageStatistics = field(default_factory=UsageStatistics)
    alternatives: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def text(self) -> str:
        return self.translation

    def is_confident(self, threshold: float = 0.7) -> bool:
        return self.confidence >= threshold


@dataclass(frozen=True)
class RenderedPrompt:
    """A prompt template materialized with variables and generation settings."""

    system_prompt: str
    user_prompt: str
    model: Optional[str] = None
    temperature: float = 0.7
    max_tokens: int = 1000
    top_p: float = 1.0
    metadata: Dict[str, Any] = field(default_factory=dict)

    def estimate_length(self) -> int:
        return len(self.system_prompt) + len(self.user_prompt)

    def estimate_tokens(self) -> int:
        """Rough token estimate at four characters per token."""
        return math.ceil(self.estimate_length() / 4)

    def to_messages(self) -> List[Dict[str, str]]:
        messages = []
        if self.system_prompt:
            messages.append({"role": "system", "content": self.system_prompt})
        messages.append({"role": "user", "content": self.user_prompt})
        return messages

    def to_options(self) -> Dict[str, Any]:
        options: Dict[str, Any] = {
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "top_p": self.top_p,
        }
        if self.model:
            options["model"] = self.model
        return options
