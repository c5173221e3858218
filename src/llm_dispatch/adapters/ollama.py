"""Ollama adapter for locally hosted models.

Ollama needs no API key and streams newline-delimited JSON rather than
server-sent events.
"""

import json
import logging
from contextlib import aclosing
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Sequence, Union

from ..types import CompletionResponse, EmbeddingResponse, UsageStatistics
from .base import BaseAdapter

logger = logging.getLogger(__name__)


class OllamaAdapter(BaseAdapter):
    """Adapter for an Ollama server."""

    adapter_type = "ollama"
    name = "Ollama (Local)"
    capabilities = frozenset({"chat", "completion", "embeddings", "streaming"})
    default_base_url = "http://localhost:11434/api"
    default_model_id = "llama3.2"
    default_embedding_model = "nomic-embed-text"
    requires_api_key = False

    def build_payload(
        self, messages: Sequence[Mapping[str, Any]], options: Mapping[str, Any], stream: bool
    ) -> Dict[str, Any]:
        model_options: Dict[str, Any] = {}
        if options.get("temperature") is not None:
            model_options["temperature"] = options["temperature"]
        if options.get("max_tokens") is not None:
            model_options["num_predict"] = options["max_tokens"]
        if options.get("top_p") is not None:
            model_options["top_p"] = options["top_p"]
        stop = options.get("stop_sequences") or options.get("stop")
        if stop:
            model_options["stop"] = [stop] if isinstance(stop, str) else list(stop)

        payload: Dict[str, Any] = {
            "model": self._model(options),
            "messages": self._prepare_messages(messages, options),
            "stream": stream,
        }
        if model_options:
            payload["options"] = model_options
        if options.get("response_format") == "json":
            payload["format"] = "json"
        return payload

    async def chat_completion(
        self, messages: Sequence[Mapping[str, Any]], options: Optional[Mapping[str, Any]] = None
    ) -> CompletionResponse:
        payload = self.build_payload(messages, options or {}, stream=False)
        data = await self._post("/chat", payload)
        done_reason = data.get("done_reason") or "stop"
        return CompletionResponse(
            content=(data.get("message") or {}).get("content", ""),
            model=data.get("model", payload["model"]),
            usage=UsageStatistics.from_tokens(
                data.get("prompt_eval_count", 0), data.get("eval_count", 0)
            ),
            finish_reason="length" if done_reason == "length" else "stop",
            provider=self.identifier,
        )

    async def embeddings(
        self, input: Union[str, Sequence[str]], options: Optional[Mapping[str, Any]] = None
    ) -> EmbeddingResponse:
        options = options or {}
        model = options.get("model") or self.default_embedding_model
        inputs = [input] if isinstance(input, str) else list(input)
        data = await self._post("/embed", {"model": model, "input": inputs})
        return EmbeddingResponse(
            embeddings=data.get("embeddings", []),
            model=data.get("model", model),
            usage=UsageStatistics.from_tokens(data.get("prompt_eval_count", 0), 0),
            provider=self.identifier,
        )

    async def stream_chat_completion(
        self, messages: Sequence[Mapping[str, Any]], options: Optional[Mapping[str, Any]] = None
    ) -> AsyncIterator[str]:
        payload = self.build_payload(messages, options or {}, stream=True)
        async with aclosing(self._stream_lines("/chat", payload)) as lines:
            async for line in lines:
                if not line.strip():
                    continue
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    logger.debug(f"Skipping malformed stream line from {self.identifier}")
                    continue
                chunk = (event.get("message") or {}).get("content")
                if chunk:
                    yield chunk
                if event.get("done"):
                    return

    async def fetch_models(self) -> List[str]:
        data = await self._get("/tags")
        return [model.get("name", "") for model in data.get("models", [])]
