"""OpenAI-compatible adapters.

OpenAIAdapter speaks the ``/chat/completions`` + ``/embeddings`` dialect used
by OpenAI and many compatible services. It is also the fallback for Azure,
custom endpoints and unknown adapter types. OpenRouter, Mistral and Groq
reuse it with their own defaults and capability sets.
"""

import json
import logging
from contextlib import aclosing
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Sequence, Union

from ..types import CompletionResponse, EmbeddingResponse, UsageStatistics, VisionResponse
from .base import BaseAdapter

logger = logging.getLogger(__name__)

DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 4096

# Option name -> payload name for pass-through sampling parameters
_PASSTHROUGH = {
    "top_p": "top_p",
    "frequency_penalty": "frequency_penalty",
    "presence_penalty": "presence_penalty",
    "stop": "stop",
    "stop_sequences": "stop",
    "seed": "seed",
}


def _parse_tool_calls(raw: Optional[List[Dict[str, Any]]]) -> Optional[List[Dict[str, Any]]]:
    """Normalize tool calls, decoding JSON-encoded arguments."""
    if not raw:
        return None
    calls = []
    for call in raw:
        function = call.get("function", {})
        arguments = function.get("arguments", "{}")
        if isinstance(arguments, str):
            try:
                arguments = json.loads(arguments) if arguments else {}
            except json.JSONDecodeError:
                logger.debug(f"Tool call arguments are not JSON: {arguments[:80]}")
        calls.append({
            "id": call.get("id", ""),
            "type": call.get("type", "function"),
            "function": {"name": function.get("name", ""), "arguments": arguments},
        })
    return calls


class OpenAIAdapter(BaseAdapter):
    """Adapter for OpenAI and OpenAI-compatible APIs."""

    adapter_type = "openai"
    name = "OpenAI"
    capabilities = frozenset(
        {"chat", "completion", "embeddings", "vision", "streaming", "tools", "json_mode"}
    )
    default_base_url = "https://api.openai.com/v1"
    default_model_id = "gpt-4o-mini"
    default_embedding_model = "text-embedding-3-small"

    def _default_headers(self) -> Dict[str, str]:
        headers = super()._default_headers()
        if self.organization_id:
            headers["OpenAI-Organization"] = self.organization_id
        return headers

    def available_models(self) -> Dict[str, str]:
        return {
            "gpt-4o": "GPT-4o",
            "gpt-4o-mini": "GPT-4o Mini",
            "o3-mini": "o3-mini",
            "text-embedding-3-small": "Text Embedding 3 Small",
            "text-embedding-3-large": "Text Embedding 3 Large",
        }

    def build_chat_payload(
        self, messages: Sequence[Mapping[str, Any]], options: Mapping[str, Any]
    ) -> Dict[str, Any]:
        """Build a ``/chat/completions`` payload from uniform options."""
        payload: Dict[str, Any] = {
            "model": self._model(options),
            "messages": self._prepare_messages(messages, options),
            "temperature": options.get("temperature", DEFAULT_TEMPERATURE),
            "max_tokens": options.get("max_tokens", DEFAULT_MAX_TOKENS),
        }
        for option_name, payload_name in _PASSTHROUGH.items():
            value = options.get(option_name)
            if value is None:
                continue
            if payload_name == "stop" and not isinstance(value, str):
                value = list(value)
            payload[payload_name] = value

        response_format = options.get("response_format")
        if response_format == "json":
            payload["response_format"] = {"type": "json_object"}
        elif isinstance(response_format, Mapping):
            payload["response_format"] = dict(response_format)
        return payload

    def parse_completion(self, data: Mapping[str, Any], model: str) -> CompletionResponse:
        choice = (data.get("choices") or [{}])[0]
        message = choice.get("message") or {}
        return CompletionResponse(
            content=message.get("content") or "",
            model=data.get("model", model),
            usage=UsageStatistics.from_dict(data.get("usage")),
            finish_reason=choice.get("finish_reason") or "stop",
            provider=self.identifier,
            tool_calls=_parse_tool_calls(message.get("tool_calls")),
        )

    async def chat_completion(
        self, messages: Sequence[Mapping[str, Any]], options: Optional[Mapping[str, Any]] = None
    ) -> CompletionResponse:
        options = options or {}
        payload = self.build_chat_payload(messages, options)
        data = await self._post("/chat/completions", payload)
        return self.parse_completion(data, payload["model"])

    async def chat_completion_with_tools(
        self,
        messages: Sequence[Mapping[str, Any]],
        tools: Sequence[Mapping[str, Any]],
        options: Optional[Mapping[str, Any]] = None,
    ) -> CompletionResponse:
        options = options or {}
        payload = self.build_chat_payload(messages, options)
        payload["tools"] = [dict(tool) for tool in tools]
        if options.get("tool_choice"):
            payload["tool_choice"] = options["tool_choice"]
        if options.get("parallel_tool_calls") is not None:
            payload["parallel_tool_calls"] = options["parallel_tool_calls"]
        data = await self._post("/chat/completions", payload)
        return self.parse_completion(data, payload["model"])

    async def embeddings(
        self, input: Union[str, Sequence[str]], options: Optional[Mapping[str, Any]] = None
    ) -> EmbeddingResponse:
        options = options or {}
        inputs = [input] if isinstance(input, str) else list(input)
        payload: Dict[str, Any] = {
            "model": options.get("model") or self.default_embedding_model,
            "input": inputs,
        }
        if options.get("dimensions"):
            payload["dimensions"] = options["dimensions"]
        data = await self._post("/embeddings", payload)
        items = sorted(data.get("data", []), key=lambda item: item.get("index", 0))
        return EmbeddingResponse(
            embeddings=[item["embedding"] for item in items],
            model=data.get("model", payload["model"]),
            usage=UsageStatistics.from_dict(data.get("usage")),
            provider=self.identifier,
        )

    async def analyze_image(
        self, content: Sequence[Mapping[str, Any]], options: Optional[Mapping[str, Any]] = None
    ) -> VisionResponse:
        options = options or {}
        detail = options.get("detail_level")
        parts = []
        for part in content:
            part = dict(part)
            if detail and part.get("type") == "image_url":
                part["image_url"] = {**part["image_url"], "detail": detail}
            parts.append(part)
        payload = self.build_chat_payload([{"role": "user", "content": parts}], options)
        data = await self._post("/chat/completions", payload)
        completion = self.parse_completion(data, payload["model"])
        return VisionResponse(
            description=completion.content,
            model=completion.model,
            usage=completion.usage,
            provider=self.identifier,
            metadata={"finish_reason": completion.finish_reason},
        )

    async def stream_chat_completion(
        self, messages: Sequence[Mapping[str, Any]], options: Optional[Mapping[str, Any]] = None
    ) -> AsyncIterator[str]:
        payload = self.build_chat_payload(messages, options or {})
        payload["stream"] = True
        async with aclosing(self._stream_sse("/chat/completions", payload)) as events:
            async for event in events:
                choices = event.get("choices") or [{}]
                chunk = (choices[0].get("delta") or {}).get("content")
                if chunk:
                    yield chunk

    async def fetch_models(self) -> List[str]:
        data = await self._get("/models")
        return [model.get("id", "") for model in data.get("data", [])]


class OpenRouterAdapter(OpenAIAdapter):
    """OpenRouter: OpenAI-compatible access to many upstream vendors."""

    adapter_type = "openrouter"
    name = "OpenRouter"
    default_base_url = "https://openrouter.ai/api/v1"
    default_model_id = "anthropic/claude-sonnet-4.5"
    default_embedding_model = "openai/text-embedding-3-small"

    def _default_headers(self) -> Dict[str, str]:
        headers = super()._default_headers()
        if self.options.get("site_url"):
            headers["HTTP-Referer"] = str(self.options["site_url"])
        if self.options.get("app_name"):
            headers["X-Title"] = str(self.options["app_name"])
        return headers

    def available_models(self) -> Dict[str, str]:
        return {
            "anthropic/claude-sonnet-4.5": "Claude Sonnet 4.5",
            "openai/gpt-4o": "GPT-4o",
            "google/gemini-2.0-flash-001": "Gemini 2.0 Flash",
        }


class MistralAdapter(OpenAIAdapter):
    """Mistral AI. No vision or JSON mode."""

    adapter_type = "mistral"
    name = "Mistral AI"
    capabilities = frozenset({"chat", "completion", "embeddings", "streaming", "tools"})
    default_base_url = "https://api.mistral.ai/v1"
    default_model_id = "mistral-large-latest"
    default_embedding_model = "mistral-embed"

    def available_models(self) -> Dict[str, str]:
        return {
            "mistral-large-latest": "Mistral Large",
            "mistral-small-latest": "Mistral Small",
            "codestral-latest": "Codestral",
            "mistral-embed": "Mistral Embed",
        }


class GroqAdapter(OpenAIAdapter):
    """Groq. Chat, streaming and tools only."""

    adapter_type = "groq"
    name = "Groq"
    capabilities = frozenset({"chat", "completion", "streaming", "tools"})
    default_base_url = "https://api.groq.com/openai/v1"
    default_model_id = "llama-3.3-70b-versatile"
    default_embedding_model = ""

    async def embeddings(self, input, options=None) -> EmbeddingResponse:
        raise self._unsupported("embeddings")

    async def analyze_image(self, content, options=None) -> VisionResponse:
        raise self._unsupported("vision")

    def available_models(self) -> Dict[str, str]:
        return {
            "llama-3.3-70b-versatile": "Llama 3.3 70B Versatile",
            "llama-3.1-8b-instant": "Llama 3.1 8B Instant",
            "mixtral-8x7b-32768": "Mixtral 8x7B",
        }
