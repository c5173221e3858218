"""Reference adapters translating the uniform call contract to vendor APIs.

Usage:
    >>> from llm_dispatch.adapters import OpenAIAdapter
    >>> adapter = OpenAIAdapter(secrets=EnvSecretResolver())
    >>> adapter.configure({"api_key_ref": "OPENAI_API_KEY"})
    >>> response = await adapter.chat_completion([{"role": "user", "content": "Hi"}])
"""

from .anthropic import AnthropicAdapter
from .base import (
    BaseAdapter,
    ClientFactory,
    SecretAuth,
    default_client_factory,
    image_part,
)
from .gemini import GeminiAdapter
from .ollama import OllamaAdapter
from .openai import GroqAdapter, MistralAdapter, OpenAIAdapter, OpenRouterAdapter

__all__ = [
    "BaseAdapter",
    "ClientFactory",
    "SecretAuth",
    "default_client_factory",
    "image_part",
    "OpenAIAdapter",
    "OpenRouterAdapter",
    "MistralAdapter",
    "GroqAdapter",
    "AnthropicAdapter",
    "GeminiAdapter",
    "OllamaAdapter",
]
