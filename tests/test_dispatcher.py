"""Tests for the Dispatcher: registry, capability checks, caching and configurations."""

import httpx
import pytest

from llm_dispatch.adapters import BaseAdapter
from llm_dispatch.types import CompletionResponse, EmbeddingResponse


class FakeAdapter(BaseAdapter):
    """In-process adapter that records every call."""

    adapter_type = "fake"
    name = "Fake"
    capabilities = frozenset({"chat", "completion", "embeddings", "streaming"})
    default_model_id = "fake-small"
    requires_api_key = False

    def __init__(self, identifier="fake", **kwargs):
        super().__init__(**kwargs)
        self.identifier = identifier
        self.calls = []

    async def chat_completion(self, messages, options=None):
        self.calls.append(("chat", list(messages), dict(options or {})))
        return CompletionResponse(
            content=f"reply {len(self.calls)}",
            model=(options or {}).get("model", ""),
            provider=self.identifier,
        )

    async def embeddings(self, input, options=None):
        self.calls.append(("embed", input, dict(options or {})))
        inputs = [input] if isinstance(input, str) else list(input)
        return EmbeddingResponse(
            embeddings=[[float(len(text)), 1.0] for text in inputs],
            model="fake-embed",
            provider=self.identifier,
        )

    async def stream_chat_completion(self, messages, options=None):
        self.calls.append(("stream", list(messages), dict(options or {})))
        for chunk in ("Hel", "lo"):
            yield chunk


def _dispatcher(*adapters, **config_values):
    from llm_dispatch.config import DispatchConfig
    from llm_dispatch.dispatcher import Dispatcher

    dispatcher = Dispatcher(config=DispatchConfig(**config_values))
    for adapter in adapters:
        dispatcher.register_provider(adapter)
    return dispatcher


USER_HI = [{"role": "user", "content": "hi"}]


class TestRegistry:
    """Test provider registration and resolution."""

    def test_no_default_raises(self):
        """resolve() without a name or default fails."""
        from llm_dispatch.errors import ProviderNotFoundError

        dispatcher = _dispatcher(FakeAdapter())

        with pytest.raises(ProviderNotFoundError, match="no default provider configured"):
            dispatcher.resolve()

    def test_unknown_provider_raises(self):
        """Unregistered names are reported by name."""
        from llm_dispatch.errors import ProviderNotFoundError

        with pytest.raises(ProviderNotFoundError, match='Provider "ghost" not found'):
            _dispatcher(FakeAdapter()).resolve("ghost")

    def test_set_default_provider(self):
        """The default provider serves requests without a provider option."""
        from llm_dispatch.errors import ProviderNotFoundError

        fake = FakeAdapter()
        dispatcher = _dispatcher(fake)

        with pytest.raises(ProviderNotFoundError):
            dispatcher.set_default_provider("ghost")
        dispatcher.set_default_provider("fake")

        assert dispatcher.default_provider == "fake"
        assert dispatcher.resolve() is fake
        assert dispatcher.get_provider("fake") is fake

    def test_default_from_config(self):
        """default_provider is read from configuration."""
        fake = FakeAdapter("local")

        assert _dispatcher(fake, default_provider="local").resolve() is fake

    def test_register_replaces(self):
        """Registering an identifier again replaces the adapter."""
        first, second = FakeAdapter(), FakeAdapter()
        dispatcher = _dispatcher(first, second)

        assert dispatcher.resolve("fake") is second

    def test_stored_config_applied_on_register(self):
        """Configured providers get their stored settings and transport defaults."""
        fake = FakeAdapter()

        _dispatcher(
            fake,
            providers={"fake": {"default_model": "fake-large", "timeout": 5}},
            transport={"max_retries": 1},
        )

        assert fake.default_model == "fake-large"
        assert fake.timeout == 5
        assert fake.max_retries == 1

    def test_transport_defaults_fill_unset_keys(self):
        """Transport defaults apply only where nothing else set a value."""
        bare, tuned = FakeAdapter("bare"), FakeAdapter("tuned", config={"timeout": 120})

        _dispatcher(bare, tuned, transport={"timeout_seconds": 45, "max_retries": 1})

        assert (bare.timeout, bare.max_retries) == (45, 1)
        assert (tuned.timeout, tuned.max_retries) == (120, 1)

    def test_record_transport_settings_kept(self, make_provider):
        """A record's timeout and retries survive stored configuration."""
        from llm_dispatch.config import DispatchConfig
        from llm_dispatch.dispatcher import Dispatcher
        from llm_dispatch.factory import AdapterFactory

        dispatcher = Dispatcher(
            config=DispatchConfig(providers={"p": {"default_model": "gpt-4o"}}),
            factory=AdapterFactory(),
        )

        adapter = dispatcher.register_provider_record(
            make_provider("p", uid=7, timeout=120, max_retries=0)
        )

        assert adapter.default_model == "gpt-4o"
        assert adapter.timeout == 120
        assert adapter.max_retries == 0

    def test_stored_config_not_shared_with_factory(self, make_provider):
        """Configuring a registered provider leaves the factory's adapters alone."""
        from llm_dispatch.config import DispatchConfig
        from llm_dispatch.dispatcher import Dispatcher
        from llm_dispatch.factory import AdapterFactory

        factory = AdapterFactory()
        dispatcher = Dispatcher(config=DispatchConfig(), factory=factory)
        record = make_provider("p", uid=7)

        registered = dispatcher.register_provider_record(record)
        dispatcher.configure_provider("p", {"default_model": "gpt-4o"})
        shared = factory.create_adapter_from_provider(record)

        assert registered.default_model == "gpt-4o"
        assert shared is not registered
        assert shared.default_model == "gpt-4o-mini"

    def test_configure_provider(self):
        """configure_provider merges, stores and applies settings."""
        fake = FakeAdapter()
        dispatcher = _dispatcher(fake, providers={"fake": {"default_model": "fake-large"}})

        dispatcher.configure_provider("fake", {"organization_id": "org-9"})

        assert fake.organization_id == "org-9"
        stored = dispatcher.provider_configuration("fake")
        assert stored["default_model"] == "fake-large"
        assert stored["organization_id"] == "org-9"

    def test_configure_unknown_provider(self):
        """Configuring an unregistered provider fails and stores nothing."""
        from llm_dispatch.errors import ProviderNotFoundError

        dispatcher = _dispatcher()

        with pytest.raises(ProviderNotFoundError):
            dispatcher.configure_provider("ghost", {"timeout": 5})
        assert dispatcher.provider_configuration("ghost") == {}

    def test_availability(self):
        """Only adapters that can authenticate are available."""
        from llm_dispatch.adapters import OpenAIAdapter

        dispatcher = _dispatcher(FakeAdapter(), OpenAIAdapter())

        assert list(dispatcher.available_providers()) == ["fake"]
        assert dispatcher.has_available_provider() is True
        assert dispatcher.provider_list() == {"fake": "Fake", "openai": "OpenAI"}
        assert dispatcher.has_provider("openai") is True

    def test_nothing_available(self):
        """A dispatcher with no usable adapters reports none available."""
        from llm_dispatch.adapters import OpenAIAdapter

        assert _dispatcher(OpenAIAdapter()).has_available_provider() is False

    def test_supports_feature_never_raises(self):
        """Unknown providers support nothing."""
        dispatcher = _dispatcher(FakeAdapter(), default_provider="fake")

        assert dispatcher.supports_feature("embeddings") is True
        assert dispatcher.supports_feature("vision") is False
        assert dispatcher.supports_feature("chat", provider="ghost") is False

    def test_register_from_repository(self, make_provider):
        """Active providers are registered highest priority first."""
        from llm_dispatch.config import DispatchConfig
        from llm_dispatch.dispatcher import Dispatcher
        from llm_dispatch.factory import AdapterFactory
        from llm_dispatch.repositories import InMemoryProviderRepository

        repository = InMemoryProviderRepository([
            make_provider("low", uid=1, priority=10),
            make_provider("high", uid=2, priority=90, adapter_type="anthropic"),
            make_provider("off", uid=3, is_active=False),
        ])
        dispatcher = Dispatcher(config=DispatchConfig(), factory=AdapterFactory())

        registered = dispatcher.register_providers_from(repository)

        assert registered == ["high", "low"]
        assert dispatcher.resolve("high").adapter_type == "anthropic"
        assert dispatcher.has_provider("off") is False


class TestCapabilityChecks:
    """Test that unsupported operations fail before any adapter call."""

    @pytest.mark.asyncio
    async def test_vision_unsupported(self):
        """Vision needs the vision capability."""
        from llm_dispatch.errors import UnsupportedFeatureError

        fake = FakeAdapter()
        dispatcher = _dispatcher(fake, default_provider="fake")

        with pytest.raises(UnsupportedFeatureError, match='Provider "fake" does not support vision'):
            await dispatcher.vision([{"type": "text", "text": "what is this?"}])
        assert fake.calls == []

    @pytest.mark.asyncio
    async def test_tools_unsupported(self):
        """Tool calling needs the tools capability."""
        from llm_dispatch.errors import UnsupportedFeatureError

        dispatcher = _dispatcher(FakeAdapter(), default_provider="fake")

        with pytest.raises(UnsupportedFeatureError, match="does not support tool calling"):
            await dispatcher.chat_with_tools(USER_HI, [{"type": "function"}])

    @pytest.mark.asyncio
    async def test_embeddings_unsupported(self):
        """Embedding needs the embeddings capability."""
        from llm_dispatch.errors import UnsupportedFeatureError

        fake = FakeAdapter()
        fake.capabilities = frozenset({"chat"})
        dispatcher = _dispatcher(fake, default_provider="fake")

        with pytest.raises(UnsupportedFeatureError, match="does not support embeddings"):
            await dispatcher.embed("hello")
        assert fake.calls == []

    def test_stream_checked_eagerly(self):
        """stream_chat raises when called, before iteration starts."""
        from llm_dispatch.errors import UnsupportedFeatureError

        fake = FakeAdapter()
        fake.capabilities = frozenset({"chat"})
        dispatcher = _dispatcher(fake, default_provider="fake")

        with pytest.raises(UnsupportedFeatureError, match="does not support streaming"):
            dispatcher.stream_chat(USER_HI)

    def test_stream_unknown_provider_eager(self):
        """Provider resolution also happens before iteration."""
        from llm_dispatch.errors import ProviderNotFoundError

        with pytest.raises(ProviderNotFoundError):
            _dispatcher(FakeAdapter()).stream_chat(USER_HI, {"provider": "ghost"})

    @pytest.mark.asyncio
    async def test_invalid_options_rejected(self):
        """Out-of-range options fail validation without a call."""
        from llm_dispatch.errors import ValidationError

        fake = FakeAdapter()
        dispatcher = _dispatcher(fake, default_provider="fake")

        with pytest.raises(ValidationError, match="temperature"):
            await dispatcher.chat(USER_HI, {"temperature": 5})
        assert fake.calls == []


class TestOperations:
    """Test delegation to adapters."""

    @pytest.mark.asyncio
    async def test_chat_fills_model_and_strips_provider(self):
        """Adapters receive the default model and never the provider selector."""
        fake = FakeAdapter()
        dispatcher = _dispatcher(fake)

        response = await dispatcher.chat(USER_HI, {"provider": "fake", "temperature": 0.3})

        assert response.content == "reply 1"
        assert fake.calls == [("chat", USER_HI, {"model": "fake-small", "temperature": 0.3})]

    @pytest.mark.asyncio
    async def test_provider_option_routes(self):
        """The provider option picks the adapter over the default."""
        default, other = FakeAdapter("a"), FakeAdapter("b")
        dispatcher = _dispatcher(default, other, default_provider="a")

        response = await dispatcher.chat(USER_HI, {"provider": "b"})

        assert response.provider == "b"
        assert default.calls == []

    @pytest.mark.asyncio
    async def test_options_object_accepted(self):
        """Typed options are converted to the adapter dict."""
        from llm_dispatch.options import ChatOptions

        fake = FakeAdapter()
        dispatcher = _dispatcher(fake)

        await dispatcher.chat(USER_HI, ChatOptions(max_tokens=20).with_provider("fake"))

        assert fake.calls[0][2] == {"max_tokens": 20, "model": "fake-small"}

    @pytest.mark.asyncio
    async def test_unknown_options_pass_through(self):
        """Keys the options type does not know reach the adapter."""
        fake = FakeAdapter()
        dispatcher = _dispatcher(fake, default_provider="fake")

        await dispatcher.chat(USER_HI, {"seed": 7, "model": "fake-large"})

        assert fake.calls[0][2] == {"seed": 7, "model": "fake-large"}

    @pytest.mark.asyncio
    async def test_complete_sends_user_message(self):
        """complete wraps the prompt in a single user message."""
        fake = FakeAdapter()
        dispatcher = _dispatcher(fake, default_provider="fake")

        await dispatcher.complete("hi")

        assert fake.calls[0][1] == USER_HI

    @pytest.mark.asyncio
    async def test_stream_chat(self):
        """Streaming yields the adapter's chunks in order."""
        fake = FakeAdapter()
        dispatcher = _dispatcher(fake, default_provider="fake")

        chunks = [chunk async for chunk in dispatcher.stream_chat(USER_HI)]

        assert chunks == ["Hel", "lo"]

    @pytest.mark.asyncio
    async def test_aclose(self):
        """aclose closes every registered adapter."""
        from unittest.mock import AsyncMock

        fake = FakeAdapter()
        fake.aclose = AsyncMock()
        dispatcher = _dispatcher(fake)

        await dispatcher.aclose()

        fake.aclose.assert_awaited_once()


class TestEmbeddingCache:
    """Test read-through caching of embeddings."""

    @pytest.mark.asyncio
    async def test_repeat_served_from_cache(self):
        """The second identical request does not reach the adapter."""
        fake = FakeAdapter()
        dispatcher = _dispatcher(fake, default_provider="fake")

        first = await dispatcher.embed("hello")
        second = await dispatcher.embed("hello")

        assert len(fake.calls) == 1
        assert second.embeddings == first.embeddings
        assert second.provider == "fake"

    @pytest.mark.asyncio
    async def test_zero_ttl_bypasses(self):
        """cache_ttl 0 always calls the adapter."""
        fake = FakeAdapter()
        dispatcher = _dispatcher(fake, default_provider="fake")

        await dispatcher.embed("hello", {"cache_ttl": 0})
        await dispatcher.embed("hello", {"cache_ttl": 0})

        assert len(fake.calls) == 2
        assert "cache_ttl" not in fake.calls[0][2]

    @pytest.mark.asyncio
    async def test_disabled_cache(self):
        """With caching disabled every request reaches the adapter."""
        fake = FakeAdapter()
        dispatcher = _dispatcher(fake, default_provider="fake", cache={"enabled": False})

        await dispatcher.embed("hello")
        await dispatcher.embed("hello")

        assert dispatcher.cache is None
        assert len(fake.calls) == 2

    @pytest.mark.asyncio
    async def test_providers_cached_separately(self):
        """The same text under another provider is a miss."""
        a, b = FakeAdapter("a"), FakeAdapter("b")
        dispatcher = _dispatcher(a, b)

        await dispatcher.embed("hello", {"provider": "a"})
        await dispatcher.embed("hello", {"provider": "b"})

        assert len(a.calls) == len(b.calls) == 1

    @pytest.mark.asyncio
    async def test_batch_cached(self):
        """Batches are cached as a whole."""
        fake = FakeAdapter()
        dispatcher = _dispatcher(fake, default_provider="fake")

        await dispatcher.embed(["a", "bb"])
        response = await dispatcher.embed(["a", "bb"])

        assert len(fake.calls) == 1
        assert response.embeddings == [[1.0, 1.0], [2.0, 1.0]]


class TestCompletionCache:
    """Test the optional completion cache."""

    @pytest.mark.asyncio
    async def test_off_by_default(self):
        """Completions are not cached unless enabled."""
        fake = FakeAdapter()
        dispatcher = _dispatcher(fake, default_provider="fake")

        await dispatcher.chat(USER_HI)
        await dispatcher.chat(USER_HI)

        assert len(fake.calls) == 2

    @pytest.mark.asyncio
    async def test_enabled(self):
        """With cache_completions an identical chat is served from cache."""
        fake = FakeAdapter()
        dispatcher = _dispatcher(fake, default_provider="fake", cache={"cache_completions": True})

        first = await dispatcher.chat(USER_HI, {"temperature": 0.1})
        second = await dispatcher.chat(USER_HI, {"temperature": 0.1})
        third = await dispatcher.chat(USER_HI, {"temperature": 0.9})

        assert len(fake.calls) == 2
        assert second == first
        assert third.content == "reply 2"


class TestConfigurationOperations:
    """Test operations driven by stored configuration records."""

    @staticmethod
    def _build(models, secrets, http):
        from llm_dispatch.config import DispatchConfig
        from llm_dispatch.dispatcher import Dispatcher
        from llm_dispatch.factory import AdapterFactory
        from llm_dispatch.repositories import InMemoryModelRepository
        from llm_dispatch.selection import ModelSelectionService

        return Dispatcher(
            config=DispatchConfig(),
            factory=AdapterFactory(secrets=secrets, client_factory=http.client_factory),
            selection=ModelSelectionService(InMemoryModelRepository(models)),
        )

    @staticmethod
    def _reply(request):
        return httpx.Response(200, json={
            "model": "served",
            "choices": [{"message": {"content": "ok"}, "finish_reason": "stop"}],
        })

    @pytest.mark.asyncio
    async def test_fixed_model(self, make_model, secrets, mock_http):
        """A fixed configuration uses its model and generation parameters."""
        from llm_dispatch.records import ConfigurationRecord

        http = mock_http(self._reply)
        model = make_model("fast", model_id="gpt-4o-mini")
        dispatcher = self._build([model], secrets, http)
        configuration = ConfigurationRecord(
            "summaries", model=model, temperature=0.2, max_tokens=300, system_prompt="Be brief."
        )

        response = await dispatcher.chat_with_configuration(USER_HI, configuration)

        payload = http.last_json()
        assert response.content == "ok"
        assert payload["model"] == "gpt-4o-mini"
        assert payload["temperature"] == 0.2
        assert payload["max_tokens"] == 300
        assert payload["messages"][0] == {"role": "system", "content": "Be brief."}

    @pytest.mark.asyncio
    async def test_overrides_win(self, make_model, secrets, mock_http):
        """Caller options override the configuration's parameters."""
        from llm_dispatch.records import ConfigurationRecord

        http = mock_http(self._reply)
        model = make_model("fast", model_id="gpt-4o-mini")
        dispatcher = self._build([model], secrets, http)
        configuration = ConfigurationRecord("c", model=model, options={"seed": 1})

        await dispatcher.complete_with_configuration("hi", configuration, {"temperature": 0.0})

        payload = http.last_json()
        assert payload["temperature"] == 0.0
        assert payload["seed"] == 1
        assert payload["messages"] == USER_HI

    @pytest.mark.asyncio
    async def test_criteria_selection(self, make_model, make_provider, secrets, mock_http):
        """Criteria configurations use the best ranked model."""
        from llm_dispatch.records import ConfigurationRecord, ModelSelectionCriteria, SelectionMode

        http = mock_http(self._reply)
        low = make_provider("low", uid=1, priority=10)
        high = make_provider("high", uid=2, priority=90)
        dispatcher = self._build(
            [
                make_model("cheap", provider=low, model_id="gpt-4o-mini"),
                make_model("best", provider=high, model_id="gpt-4o"),
            ],
            secrets,
            http,
        )
        configuration = ConfigurationRecord(
            "auto", selection_mode=SelectionMode.CRITERIA, criteria=ModelSelectionCriteria(("chat",))
        )

        await dispatcher.chat_with_configuration(USER_HI, configuration)

        assert http.last_json()["model"] == "gpt-4o"

    def test_no_match(self, secrets, mock_http):
        """A configuration resolving to no model fails with its identifier."""
        from llm_dispatch.errors import ProviderConfigurationError
        from llm_dispatch.records import ConfigurationRecord, ModelSelectionCriteria, SelectionMode

        dispatcher = self._build([], secrets, mock_http(self._reply))
        configuration = ConfigurationRecord(
            "vision-only",
            selection_mode=SelectionMode.CRITERIA,
            criteria=ModelSelectionCriteria(("vision",)),
        )

        with pytest.raises(ProviderConfigurationError, match='configuration "vision-only"'):
            dispatcher.stream_chat_with_configuration(USER_HI, configuration)

    def test_no_selection_service(self):
        """Configuration operations need a selection service."""
        from llm_dispatch.errors import ProviderConfigurationError
        from llm_dispatch.records import ConfigurationRecord

        with pytest.raises(ProviderConfigurationError, match="No model selection service"):
            _dispatcher().adapter_from_configuration(ConfigurationRecord("c"))
