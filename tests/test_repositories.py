"""Tests for in-memory repositories and secret resolution."""


class TestProtocols:
    """Test runtime protocol conformance."""

    def test_in_memory_implementations_conform(self):
        """Bundled implementations satisfy their protocols."""
        from llm_dispatch.repositories import (
            EnvSecretResolver,
            InMemoryModelRepository,
            InMemoryProviderRepository,
            InMemoryTemplateRepository,
            ModelRepository,
            ProviderRepository,
            SecretResolver,
            TemplateRepository,
        )

        assert isinstance(InMemoryProviderRepository(), ProviderRepository)
        assert isinstance(InMemoryModelRepository(), ModelRepository)
        assert isinstance(InMemoryTemplateRepository(), TemplateRepository)
        assert isinstance(EnvSecretResolver(load_env_file=False), SecretResolver)


class TestInMemoryRepositories:
    """Test active filtering in the in-memory repositories."""

    def test_inactive_providers_hidden(self, make_provider):
        """find_active skips inactive providers; lookup still finds them."""
        from llm_dispatch.repositories import InMemoryProviderRepository

        repository = InMemoryProviderRepository([
            make_provider("on"),
            make_provider("off", is_active=False),
        ])

        assert [p.identifier for p in repository.find_active()] == ["on"]
        assert repository.find_by_identifier("off").is_active is False

    def test_models_of_inactive_provider_hidden(self, make_model, make_provider):
        """Models are inactive when their provider is."""
        from llm_dispatch.repositories import InMemoryModelRepository

        repository = InMemoryModelRepository([
            make_model("live"),
            make_model("orphaned", provider=make_provider("down", is_active=False)),
            make_model("retired", is_active=False),
        ])

        assert [m.identifier for m in repository.find_active()] == ["live"]

    def test_template_versions(self):
        """The highest active version wins and variants are looked up apart."""
        from llm_dispatch.prompts import PromptTemplate
        from llm_dispatch.repositories import InMemoryTemplateRepository

        repository = InMemoryTemplateRepository([
            PromptTemplate("summary", "v1", version=1),
            PromptTemplate("summary", "v2", version=2),
            PromptTemplate("summary", "short", variant="b"),
        ])

        assert repository.find_by_identifier("summary").user_prompt == "v2"
        assert repository.find_variant("summary", "b").user_prompt == "short"
        assert [t.uid for t in repository.all()] == [1, 2, 3]


class TestEnvSecretResolver:
    """Test environment-backed secret lookup."""

    def test_reference_used_verbatim(self, monkeypatch):
        """A reference naming a variable returns its value."""
        from llm_dispatch.repositories import EnvSecretResolver

        monkeypatch.setenv("OPENAI_API_KEY", "sk-env")

        assert EnvSecretResolver(load_env_file=False).retrieve("OPENAI_API_KEY") == "sk-env"

    def test_reference_normalized(self, monkeypatch):
        """Dashes and dots map to underscores, upper-cased."""
        from llm_dispatch.repositories import EnvSecretResolver

        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-env")

        assert EnvSecretResolver(load_env_file=False).retrieve("anthropic.api-key") == "sk-ant-env"

    def test_overrides_and_misses(self, monkeypatch):
        """Overrides are consulted first; unknown references are None."""
        from llm_dispatch.repositories import EnvSecretResolver

        monkeypatch.delenv("NOT_A_REAL_KEY", raising=False)
        resolver = EnvSecretResolver({"vault:groq": "gsk-1"}, load_env_file=False)

        assert resolver.retrieve("vault:groq") == "gsk-1"
        assert resolver.retrieve("not-a-real-key") is None
        assert resolver.retrieve("") is None
