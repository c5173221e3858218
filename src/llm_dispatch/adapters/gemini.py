"""Google Gemini (Generative Language API) adapter."""

from contextlib import aclosing
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Sequence, Union

import httpx

from ..types import CompletionResponse, EmbeddingResponse, UsageStatistics, VisionResponse
from .base import BaseAdapter

_FINISH_REASONS = {
    "STOP": "stop",
    "MAX_TOKENS": "length",
    "SAFETY": "content_filter",
    "RECITATION": "content_filter",
    "BLOCKLIST": "content_filter",
    "PROHIBITED_CONTENT": "content_filter",
}


def _convert_parts(content: Any) -> List[Dict[str, Any]]:
    if isinstance(content, str):
        return [{"text": content}]
    parts = []
    for part in content:
        if part.get("type") == "image_url":
            url = part.get("image_url", {}).get("url", "")
            if url.startswith("data:"):
                header, _, data = url.partition(",")
                mime_type = header[len("data:"):].split(";")[0] or "image/png"
                parts.append({"inlineData": {"mimeType": mime_type, "data": data}})
            else:
                parts.append({"fileData": {"fileUri": url}})
        else:
            parts.append({"text": part.get("text", "")})
    return parts


def _convert_messages(messages: Sequence[Mapping[str, Any]]) -> Dict[str, Any]:
    """Split messages into Gemini ``contents`` and ``systemInstruction``."""
    system_parts: List[Dict[str, Any]] = []
    contents = []
    for msg in messages:
        role = msg.get("role", "user")
        if role == "system":
            system_parts.extend(_convert_parts(msg.get("content", "")))
            continue
        # Gemini uses 'user' and 'model' roles
        contents.append({
            "role": "model" if role == "assistant" else "user",
            "parts": _convert_parts(msg.get("content", "")),
        })
    body: Dict[str, Any] = {"contents": contents}
    if system_parts:
        body["systemInstruction"] = {"parts": system_parts}
    return body


class GeminiAdapter(BaseAdapter):
    """Adapter for Google's Gemini models."""

    adapter_type = "gemini"
    name = "Google Gemini"
    capabilities = frozenset({"chat", "completion", "embeddings", "vision", "streaming", "tools"})
    default_base_url = "https://generativelanguage.googleapis.com/v1beta"
    default_model_id = "gemini-2.0-flash"
    default_embedding_model = "text-embedding-004"

    def _apply_credentials(self, request: httpx.Request, secret: str) -> None:
        request.headers["x-goog-api-key"] = secret

    def available_models(self) -> Dict[str, str]:
        return {
            "gemini-2.0-flash": "Gemini 2.0 Flash",
            "gemini-1.5-pro": "Gemini 1.5 Pro",
            "text-embedding-004": "Text Embedding 004",
        }

    def build_payload(
        self, messages: Sequence[Mapping[str, Any]], options: Mapping[str, Any]
    ) -> Dict[str, Any]:
        payload = _convert_messages(self._prepare_messages(messages, options))
        generation: Dict[str, Any] = {}
        if options.get("temperature") is not None:
            generation["temperature"] = options["temperature"]
        if options.get("max_tokens") is not None:
            generation["maxOutputTokens"] = options["max_tokens"]
        if options.get("top_p") is not None:
            generation["topP"] = options["top_p"]
        stop = options.get("stop_sequences") or options.get("stop")
        if stop:
            generation["stopSequences"] = [stop] if isinstance(stop, str) else list(stop)
        if options.get("response_format") == "json":
            generation["responseMimeType"] = "application/json"
        if generation:
            payload["generationConfig"] = generation
        return payload

    def parse_response(self, data: Mapping[str, Any], model: str) -> CompletionResponse:
        candidate = (data.get("candidates") or [{}])[0]
        text_parts = []
        tool_calls = []
        for part in (candidate.get("content") or {}).get("parts", []):
            if "text" in part:
                text_parts.append(part["text"])
            elif "functionCall" in part:
                call = part["functionCall"]
                tool_calls.append({
                    "id": call.get("id", call.get("name", "")),
                    "type": "function",
                    "function": {"name": call.get("name", ""), "arguments": call.get("args", {})},
                })
        usage = data.get("usageMetadata") or {}
        finish = _FINISH_REASONS.get(candidate.get("finishReason", "STOP"), "stop")
        return CompletionResponse(
            content="".join(text_parts),
            model=data.get("modelVersion", model),
            usage=UsageStatistics(
                prompt_tokens=usage.get("promptTokenCount", 0),
                completion_tokens=usage.get("candidatesTokenCount", 0),
                total_tokens=usage.get("totalTokenCount", 0),
            ),
            finish_reason="tool_calls" if tool_calls else finish,
            provider=self.identifier,
            tool_calls=tool_calls or None,
        )

    async def chat_completion(
        self, messages: Sequence[Mapping[str, Any]], options: Optional[Mapping[str, Any]] = None
    ) -> CompletionResponse:
        options = options or {}
        model = self._model(options)
        payload = self.build_payload(messages, options)
        data = await self._post(f"/models/{model}:generateContent", payload)
        return self.parse_response(data, model)

    async def chat_completion_with_tools(
        self,
        messages: Sequence[Mapping[str, Any]],
        tools: Sequence[Mapping[str, Any]],
        options: Optional[Mapping[str, Any]] = None,
    ) -> CompletionResponse:
        options = options or {}
        model = self._model(options)
        payload = self.build_payload(messages, options)
        declarations = []
        for tool in tools:
            function = tool.get("function", tool)
            declarations.append({
                "name": function.get("name", ""),
                "description": function.get("description", ""),
                "parameters": function.get("parameters", {"type": "object", "properties": {}}),
            })
        payload["tools"] = [{"functionDeclarations": declarations}]
        choice = options.get("tool_choice")
        if choice:
            mode = {"auto": "AUTO", "required": "ANY", "none": "NONE"}.get(choice, "AUTO")
            payload["toolConfig"] = {"functionCallingConfig": {"mode": mode}}
        data = await self._post(f"/models/{model}:generateContent", payload)
        return self.parse_response(data, model)

    async def embeddings(
        self, input: Union[str, Sequence[str]], options: Optional[Mapping[str, Any]] = None
    ) -> EmbeddingResponse:
        options = options or {}
        model = options.get("model") or self.default_embedding_model
        inputs = [input] if isinstance(input, str) else list(input)
        requests = []
        for text in inputs:
            request: Dict[str, Any] = {
                "model": f"models/{model}",
                "content": {"parts": [{"text": text}]},
            }
            if options.get("dimensions"):
                request["outputDimensionality"] = options["dimensions"]
            requests.append(request)
        data = await self._post(f"/models/{model}:batchEmbedContents", {"requests": requests})
        return EmbeddingResponse(
            embeddings=[item.get("values", []) for item in data.get("embeddings", [])],
            model=model,
            provider=self.identifier,
        )

    async def analyze_image(
        self, content: Sequence[Mapping[str, Any]], options: Optional[Mapping[str, Any]] = None
    ) -> VisionResponse:
        completion = await self.chat_completion([{"role": "user", "content": list(content)}], options)
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
        options = options or {}
        model = self._model(options)
        payload = self.build_payload(messages, options)
        events = self._stream_sse(
            f"/models/{model}:streamGenerateContent", payload, params={"alt": "sse"}
        )
        async with aclosing(events):
            async for event in events:
                candidate = (event.get("candidates") or [{}])[0]
                for part in (candidate.get("content") or {}).get("parts", []):
                    if part.get("text"):
                        yield part["text"]

    async def fetch_models(self) -> List[str]:
        data = await self._get("/models")
        return [model.get("name", "").replace("models/", "", 1) for model in data.get("models", [])]
