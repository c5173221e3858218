"""Anthropic Messages API adapter."""

import logging
from contextlib import aclosing
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Sequence, Tuple

import httpx

from ..types import CompletionResponse, UsageStatistics, VisionResponse
from .base import BaseAdapter

logger = logging.getLogger(__name__)

API_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 4096

_STOP_REASONS = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "max_tokens": "length",
    "tool_use": "tool_calls",
    "refusal": "content_filter",
}

_TOOL_CHOICES = {
    "auto": {"type": "auto"},
    "required": {"type": "any"},
    "none": {"type": "none"},
}


def _convert_part(part: Mapping[str, Any]) -> Dict[str, Any]:
    """Convert an OpenAI-style content part to an Anthropic content block."""
    if part.get("type") == "image_url":
        url = part.get("image_url", {}).get("url", "")
        if url.startswith("data:"):
            header, _, data = url.partition(",")
            media_type = header[len("data:"):].split(";")[0] or "image/png"
            return {
                "type": "image",
                "source": {"type": "base64", "media_type": media_type, "data": data},
            }
        return {"type": "image", "source": {"type": "url", "url": url}}
    return {"type": "text", "text": part.get("text", "")}


def _split_system(messages: Sequence[Mapping[str, Any]]) -> Tuple[str, List[Dict[str, Any]]]:
    """Anthropic takes the system prompt as a separate field."""
    system_parts = []
    converted = []
    for msg in messages:
        if msg.get("role") == "system":
            system_parts.append(str(msg.get("content", "")))
            continue
        content = msg.get("content", "")
        if isinstance(content, list):
            content = [_convert_part(part) for part in content]
        converted.append({"role": msg.get("role", "user"), "content": content})
    return "\n\n".join(system_parts), converted


def _convert_tool(tool: Mapping[str, Any]) -> Dict[str, Any]:
    function = tool.get("function", tool)
    return {
        "name": function.get("name", ""),
        "description": function.get("description", ""),
        "input_schema": function.get("parameters", {"type": "object", "properties": {}}),
    }


class AnthropicAdapter(BaseAdapter):
    """Adapter for Anthropic's Claude models."""

    adapter_type = "anthropic"
    name = "Anthropic (Claude)"
    capabilities = frozenset({"chat", "completion", "vision", "streaming", "tools"})
    default_base_url = "https://api.anthropic.com/v1"
    default_model_id = "claude-sonnet-4-5"

    def _apply_credentials(self, request: httpx.Request, secret: str) -> None:
        request.headers["x-api-key"] = secret

    def _default_headers(self) -> Dict[str, str]:
        headers = super()._default_headers()
        headers["anthropic-version"] = API_VERSION
        return headers

    def available_models(self) -> Dict[str, str]:
        return {
            "claude-opus-4-1": "Claude Opus 4.1",
            "claude-sonnet-4-5": "Claude Sonnet 4.5",
            "claude-3-5-haiku-latest": "Claude 3.5 Haiku",
        }

    def build_payload(
        self, messages: Sequence[Mapping[str, Any]], options: Mapping[str, Any]
    ) -> Dict[str, Any]:
        system, converted = _split_system(self._prepare_messages(messages, options))
        payload: Dict[str, Any] = {
            "model": self._model(options),
            "messages": converted,
            "max_tokens": options.get("max_tokens") or DEFAULT_MAX_TOKENS,
        }
        if system:
            payload["system"] = system
        if options.get("temperature") is not None:
            # Anthropic accepts 0..1
            payload["temperature"] = min(float(options["temperature"]), 1.0)
        if options.get("top_p") is not None:
            payload["top_p"] = options["top_p"]
        stop = options.get("stop_sequences") or options.get("stop")
        if stop:
            payload["stop_sequences"] = [stop] if isinstance(stop, str) else list(stop)
        return payload

    def parse_response(self, data: Mapping[str, Any], model: str) -> CompletionResponse:
        text_parts = []
        tool_calls = []
        for block in data.get("content", []):
            if block.get("type") == "text":
                text_parts.append(block.get("text", ""))
            elif block.get("type") == "tool_use":
                tool_calls.append({
                    "id": block.get("id", ""),
                    "type": "function",
                    "function": {"name": block.get("name", ""), "arguments": block.get("input", {})},
                })
        usage = data.get("usage") or {}
        return CompletionResponse(
            content="".join(text_parts),
            model=data.get("model", model),
            usage=UsageStatistics.from_tokens(
                usage.get("input_tokens", 0), usage.get("output_tokens", 0)
            ),
            finish_reason=_STOP_REASONS.get(data.get("stop_reason") or "end_turn", "stop"),
            provider=self.identifier,
            tool_calls=tool_calls or None,
        )

    async def chat_completion(
        self, messages: Sequence[Mapping[str, Any]], options: Optional[Mapping[str, Any]] = None
    ) -> CompletionResponse:
        payload = self.build_payload(messages, options or {})
        data = await self._post("/messages", payload)
        return self.parse_response(data, payload["model"])

    async def chat_completion_with_tools(
        self,
        messages: Sequence[Mapping[str, Any]],
        tools: Sequence[Mapping[str, Any]],
        options: Optional[Mapping[str, Any]] = None,
    ) -> CompletionResponse:
        options = options or {}
        payload = self.build_payload(messages, options)
        payload["tools"] = [_convert_tool(tool) for tool in tools]
        choice = options.get("tool_choice")
        if choice in _TOOL_CHOICES:
            payload["tool_choice"] = dict(_TOOL_CHOICES[choice])
            if options.get("parallel_tool_calls") is False and choice != "none":
                payload["tool_choice"]["disable_parallel_tool_use"] = True
        data = await self._post("/messages", payload)
        return self.parse_response(data, payload["model"])

    async def analyze_image(
        self, content: Sequence[Mapping[str, Any]], options: Optional[Mapping[str, Any]] = None
    ) -> VisionResponse:
        options = options or {}
        payload = self.build_payload([{"role": "user", "content": list(content)}], options)
        data = await self._post("/messages", payload)
        completion = self.parse_response(data, payload["model"])
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
        payload = self.build_payload(messages, options or {})
        payload["stream"] = True
        async with aclosing(self._stream_sse("/messages", payload)) as events:
            async for event in events:
                event_type = event.get("type")
                if event_type == "content_block_delta":
                    text = (event.get("delta") or {}).get("text")
                    if text:
                        yield text
                elif event_type == "message_stop":
                    return

    async def fetch_models(self) -> List[str]:
        data = await self._get("/models")
        return [model.get("id", "") for model in data.get("data", [])]

