"""Shared test configuration and fixtures."""
import json
from typing import Any, Callable, Dict, List

import httpx
import pytest

# =============================================================================
# Environment Reset
# =============================================================================

DISPATCH_ENV_VARS = (
    "LLM_DISPATCH_CONFIG",
    "LLM_DISPATCH_DEFAULT_PROVIDER",
    "LLM_DISPATCH_CACHE_ENABLED",
    "LLM_DISPATCH_CACHE_BACKEND",
    "LLM_DISPATCH_CACHE_DIR",
    "LLM_DISPATCH_CACHE_COMPLETIONS",
    "LLM_DISPATCH_TIMEOUT",
    "LLM_DISPATCH_MAX_RETRIES",
)


@pytest.fixture(autouse=True)
def reset_env(monkeypatch):
    """Clear environment variables and the global config before each test."""
    from llm_dispatch.config import _reset_config

    for name in DISPATCH_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    _reset_config()
    yield
    _reset_config()


# =============================================================================
# Secrets and HTTP
# =============================================================================


class StaticSecrets:
    """SecretResolver backed by a dict."""

    def __init__(self, secrets: Dict[str, str]):
        self.secrets = dict(secrets)
        self.lookups: List[str] = []

    def retrieve(self, reference: str):
        self.lookups.append(reference)
        return self.secrets.get(reference)


@pytest.fixture
def secrets():
    """Resolver knowing a key for every built-in vendor."""
    return StaticSecrets({
        "openai-key": "sk-test-openai",
        "anthropic-key": "sk-ant-test",
        "gemini-key": "gemini-test",
        "groq-key": "groq-test",
    })


class MockHttp:
    """Routes adapter requests to a handler and records them."""

    def __init__(self, handler: Callable[[httpx.Request], httpx.Response]):
        self.handler = handler
        self.requests: List[httpx.Request] = []
        self.clients: List[httpx.AsyncClient] = []

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)

    def client_factory(self, base_url, timeout, max_retries, auth=None, headers=None):
        client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            auth=auth,
            headers=headers,
            transport=httpx.MockTransport(self._handle),
        )
        self.clients.append(client)
        return client

    def last_json(self) -> Dict[str, Any]:
        return json.loads(self.requests[-1].content)


@pytest.fixture
def mock_http():
    """Factory for MockHttp instances: ``mock_http(handler)``."""
    return MockHttp


# =============================================================================
# Records
# =============================================================================


@pytest.fixture
def make_provider():
    """Build ProviderRecord instances with test defaults."""
    from llm_dispatch.records import ProviderRecord

    def _make(identifier="openai", **kwargs):
        kwargs.setdefault("adapter_type", "openai")
        kwargs.setdefault("api_key_ref", "openai-key")
        return ProviderRecord(identifier=identifier, **kwargs)

    return _make


@pytest.fixture
def make_model(make_provider):
    """Build ModelRecord instances bound to a provider."""
    from llm_dispatch.records import ModelRecord

    def _make(identifier, provider=None, **kwargs):
        kwargs.setdefault("model_id", identifier)
        if provider is None:
            provider = make_provider(uid=1)
        return ModelRecord(identifier=identifier, provider=provider, **kwargs)

    return _make


# =============================================================================
# Custom Pytest Markers
# =============================================================================


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')")
    config.addinivalue_line("markers", "integration: marks tests as integration tests")
