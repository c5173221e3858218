"""Tests for AdapterFactory: class lookup, construction and caching."""

import logging

import httpx
import pytest


class TestAdapterClassLookup:
    """Test adapter class resolution by adapter type."""

    @pytest.mark.parametrize(
        "adapter_type,class_name",
        [
            ("openai", "OpenAIAdapter"),
            ("anthropic", "AnthropicAdapter"),
            ("gemini", "GeminiAdapter"),
            ("openrouter", "OpenRouterAdapter"),
            ("mistral", "MistralAdapter"),
            ("groq", "GroqAdapter"),
            ("ollama", "OllamaAdapter"),
            ("azure_openai", "OpenAIAdapter"),
            ("custom", "OpenAIAdapter"),
        ],
    )
    def test_builtin_adapters(self, adapter_type, class_name):
        """Every built-in adapter type maps to its class."""
        from llm_dispatch.factory import AdapterFactory

        assert AdapterFactory().get_adapter_class(adapter_type).__name__ == class_name

    def test_unknown_type_falls_back_with_warning(self, caplog):
        """Unknown types use the OpenAI-compatible adapter and log a warning."""
        from llm_dispatch.adapters import OpenAIAdapter
        from llm_dispatch.factory import AdapterFactory

        with caplog.at_level(logging.WARNING, logger="llm_dispatch.factory"):
            adapter_class = AdapterFactory().get_adapter_class("llamafile")

        assert adapter_class is OpenAIAdapter
        assert "llamafile" in caplog.text

    def test_override_wins(self):
        """Registered classes take precedence over built-ins."""
        from llm_dispatch.adapters import OpenAIAdapter
        from llm_dispatch.factory import AdapterFactory

        class InHouseAdapter(OpenAIAdapter):
            adapter_type = "openai"
            name = "In-house"

        factory = AdapterFactory()
        factory.register_adapter("openai", InHouseAdapter)

        assert factory.get_adapter_class("openai") is InHouseAdapter
        assert factory.registered_adapters()["openai"] == "In-house"

    def test_register_rejects_non_adapter(self):
        """Only BaseAdapter subclasses can be registered."""
        from llm_dispatch.errors import ProviderConfigurationError
        from llm_dispatch.factory import AdapterFactory

        with pytest.raises(ProviderConfigurationError):
            AdapterFactory().register_adapter("x", dict)

    def test_has_adapter(self):
        """has_adapter reports built-ins and overrides, not fallbacks."""
        from llm_dispatch.adapters import OpenAIAdapter
        from llm_dispatch.factory import AdapterFactory

        factory = AdapterFactory()
        factory.register_adapter("llamafile", OpenAIAdapter)

        assert factory.has_adapter("anthropic") is True
        assert factory.has_adapter("llamafile") is True
        assert factory.has_adapter("unknown") is False


class TestAdapterCreation:
    """Test building adapters from provider and model records."""

    def test_configuration_from_provider(self, make_provider, secrets):
        """Provider fields configure the adapter; the secret is not stored."""
        from llm_dispatch.factory import AdapterFactory

        provider = make_provider(
            "work-openai",
            uid=7,
            name="Work OpenAI",
            endpoint_url="https://proxy.internal/v1",
            timeout=60,
            max_retries=1,
            organization_id="org-1",
            options={"seed": 3},
        )

        adapter = AdapterFactory(secrets=secrets).create_adapter_from_provider(provider)
        config = adapter.configuration()

        assert adapter.identifier == "work-openai"
        assert adapter.display_name == "Work OpenAI"
        assert config["base_url"] == "https://proxy.internal/v1"
        assert config["timeout"] == 60
        assert config["max_retries"] == 1
        assert config["organization_id"] == "org-1"
        assert config["options"] == {"seed": 3}
        assert config["api_key_ref"] == "openai-key"
        assert "sk-test-openai" not in repr(config)

    def test_default_endpoint_used(self, make_provider):
        """An empty endpoint uses the adapter type's default."""
        from llm_dispatch.factory import AdapterFactory

        adapter = AdapterFactory().create_adapter_from_provider(
            make_provider("claude", adapter_type="anthropic")
        )

        assert adapter.base_url == "https://api.anthropic.com/v1"

    def test_cached_per_uid(self, make_provider):
        """Saved providers reuse one adapter instance."""
        from llm_dispatch.factory import AdapterFactory

        factory = AdapterFactory()
        provider = make_provider(uid=1)

        first = factory.create_adapter_from_provider(provider)

        assert factory.create_adapter_from_provider(provider) is first
        assert factory.create_adapter_from_provider(provider, use_cache=False) is not first

    def test_unsaved_provider_not_cached(self, make_provider):
        """Providers without a uid always get a new instance."""
        from llm_dispatch.factory import AdapterFactory

        factory = AdapterFactory()
        provider = make_provider()

        assert factory.create_adapter_from_provider(provider) is not (
            factory.create_adapter_from_provider(provider)
        )
        assert len(factory.cache) == 0

    def test_model_adapter_binds_model_id(self, make_model, make_provider):
        """A model's adapter defaults to its model id."""
        from llm_dispatch.factory import AdapterFactory

        model = make_model("fast", model_id="gpt-4o-mini", provider=make_provider(uid=1))

        adapter = AdapterFactory().create_adapter_from_model(model)

        assert adapter.default_model == "gpt-4o-mini"

    def test_model_adapter_does_not_mutate_provider_adapter(self, make_model, make_provider):
        """Model-specific adapters are cached separately from the provider's."""
        from llm_dispatch.factory import AdapterFactory

        factory = AdapterFactory()
        provider = make_provider(uid=1)
        generic = factory.create_adapter_from_provider(provider)

        fast = factory.create_adapter_from_model(make_model("fast", model_id="gpt-4o-mini", provider=provider))
        smart = factory.create_adapter_from_model(make_model("smart", model_id="gpt-4o", provider=provider))

        assert generic.default_model == "gpt-4o-mini"
        assert smart.default_model == "gpt-4o"
        assert fast is not smart
        assert generic is not fast
        assert factory.create_adapter_from_model(make_model("again", model_id="gpt-4o", provider=provider)) is smart
        assert sorted(factory.cache.keys(), key=str) == sorted(
            [(1, None), (1, "gpt-4o-mini"), (1, "gpt-4o")], key=str
        )

    def test_model_without_provider(self):
        """A model without a provider cannot produce an adapter."""
        from llm_dispatch.errors import ProviderConfigurationError
        from llm_dispatch.factory import AdapterFactory
        from llm_dispatch.records import ModelRecord

        with pytest.raises(ProviderConfigurationError, match="no provider"):
            AdapterFactory().create_adapter_from_model(ModelRecord("orphan", "gpt-4o"))

    def test_clear_cache(self, make_provider):
        """clear_cache drops one provider's adapters or all of them."""
        from llm_dispatch.factory import AdapterFactory

        factory = AdapterFactory()
        factory.create_adapter_from_provider(make_provider("a", uid=1))
        factory.create_adapter_from_provider(make_provider("b", uid=2))

        assert factory.clear_cache(1) == 1
        assert factory.clear_cache() == 1
        assert len(factory.cache) == 0

    def test_injected_cache_shared(self, make_provider):
        """Factories sharing an AdapterCache share instances."""
        from llm_dispatch.factory import AdapterCache, AdapterFactory

        cache = AdapterCache()
        provider = make_provider(uid=1)

        first = AdapterFactory(cache=cache).create_adapter_from_provider(provider)

        assert AdapterFactory(cache=cache).create_adapter_from_provider(provider) is first


class TestConnectionCheck:
    """Test test_provider_connection, which never raises."""

    @pytest.mark.asyncio
    async def test_successful_connection(self, make_provider, secrets, mock_http):
        """A reachable provider reports its models."""
        from llm_dispatch.factory import AdapterFactory

        http = mock_http(lambda request: httpx.Response(200, json={"data": [{"id": "gpt-4o"}, {"id": "o3"}]}))
        factory = AdapterFactory(secrets=secrets, client_factory=http.client_factory)

        result = await factory.test_provider_connection(make_provider(uid=1))

        assert result["success"] is True
        assert result["message"] == "Connection successful. Found 2 models."
        assert http.requests[0].url.path == "/v1/models"
        assert http.requests[0].headers["Authorization"] == "Bearer sk-test-openai"
        assert len(factory.cache) == 0

    @pytest.mark.asyncio
    async def test_missing_key_reported(self, make_provider, mock_http):
        """Providers without a resolvable key are reported unavailable."""
        from llm_dispatch.factory import AdapterFactory

        http = mock_http(lambda request: httpx.Response(200, json={"data": []}))
        factory = AdapterFactory(client_factory=http.client_factory)

        result = await factory.test_provider_connection(make_provider())

        assert result == {
            "success": False,
            "message": "Provider is not available (API key may be missing)",
        }
        assert http.requests == []

    @pytest.mark.asyncio
    async def test_failures_become_results(self, make_provider, secrets, mock_http):
        """HTTP errors are reported, not raised."""
        from llm_dispatch.factory import AdapterFactory

        http = mock_http(lambda request: httpx.Response(401, json={"error": "bad key"}))
        factory = AdapterFactory(secrets=secrets, client_factory=http.client_factory)

        result = await factory.test_provider_connection(make_provider())

        assert result["success"] is False
        assert result["message"].startswith("Connection failed: Authentication failed")

    @pytest.mark.asyncio
    async def test_network_errors_become_results(self, make_provider, secrets, mock_http):
        """Transport failures are reported, not raised."""
        from llm_dispatch.factory import AdapterFactory

        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        factory = AdapterFactory(secrets=secrets, client_factory=mock_http(refuse).client_factory)

        result = await factory.test_provider_connection(make_provider())

        assert result["success"] is False
        assert "connection refused" in result["message"]

    @pytest.mark.asyncio
    async def test_ollama_needs_no_key(self, make_provider, mock_http):
        """Keyless adapters are checked without a secret."""
        from llm_dispatch.factory import AdapterFactory

        http = mock_http(lambda request: httpx.Response(200, json={"models": [{"name": "llama3.2"}]}))
        factory = AdapterFactory(client_factory=http.client_factory)

        result = await factory.test_provider_connection(
            make_provider("local", adapter_type="ollama", api_key_ref="")
        )

        assert result["success"] is True
        assert result["models"] == ["llama3.2"]
