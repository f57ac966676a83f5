"""Tests for the capability registry and configuration."""

import sys
from pathlib import Path

import pytest

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from app.config import AppConfig, EngineSettings, ProviderConfig
from conftest import MemorySaveProvider, SpyGenerator, ConcurrencyGauge
from pipeline.errors import ConfigurationError, ProviderNotFoundError
from pipeline.executor import FailurePolicy, PipelineExecutor
from providers.registry import CapabilityKind, CapabilityRegistry, build_registry


def offline_config(tmp_path, **providers) -> AppConfig:
    return AppConfig(
        save_base_dir=str(tmp_path),
        providers=ProviderConfig(google_api_key=providers.get("google"), openai_api_key=providers.get("openai")),
    )


class TestRegistration:
    """Build phase."""

    def test_register_and_get(self):
        registry = CapabilityRegistry()
        spy = SpyGenerator(ConcurrencyGauge())
        registry.register_generator(spy)

        entry = registry.get("generator", "spy")

        assert entry.provider is spy
        assert entry.kind == CapabilityKind.GENERATOR
        assert entry.schema.name == "spy"

    def test_frozen_rejects_registration(self):
        registry = CapabilityRegistry().freeze()

        with pytest.raises(ConfigurationError, match="frozen"):
            registry.register_generator(SpyGenerator(ConcurrencyGauge()))

    def test_duplicate_name(self):
        registry = CapabilityRegistry()
        registry.register_save_provider(MemorySaveProvider())

        with pytest.raises(ConfigurationError, match="already registered"):
            registry.register_save_provider(MemorySaveProvider())

    def test_provider_needs_method(self):
        class NotAGenerator:
            name = "broken"

        with pytest.raises(ConfigurationError, match="generate"):
            CapabilityRegistry().register_generator(NotAGenerator())

    def test_transform_needs_operations(self):
        class Empty:
            name = "empty"
            operation_schemas = {}

            async def transform(self, image, operation, params):
                return image

        with pytest.raises(ConfigurationError, match="no operations"):
            CapabilityRegistry().register_transform_provider(Empty())


class TestLookup:
    """Lookups against the test registry."""

    def test_unknown_name_lists_registered(self, registry):
        with pytest.raises(ProviderNotFoundError) as exc_info:
            registry.get("vision", "hawk")

        assert exc_info.value.available == ["eyes"]
        assert exc_info.value.kind == "vision"

    def test_get_transform(self, registry):
        entry, schema = registry.get_transform(None, "resize")

        assert entry.name == "pillow"
        assert schema.name == "resize"

    def test_get_transform_unknown_op(self, registry):
        with pytest.raises(ProviderNotFoundError, match="Unknown operation 'melt'"):
            registry.get_transform("pillow", "melt")

    @pytest.mark.parametrize("destination,provider,path", [
        ("memory://cards/a.png", "memory", "cards/a.png"),
        ("./out/a.png", "fs", "./out/a.png"),
        ("/tmp/a.png", "fs", "/tmp/a.png"),
        ("out/a.png", "fs", "out/a.png"),
    ])
    def test_resolve_save(self, registry, destination, provider, path):
        entry, resolved = registry.resolve_save(destination)

        assert entry.name == provider
        assert resolved == path

    def test_resolve_save_alias_and_explicit(self, registry):
        assert registry.resolve_save("x.png", "mem")[0].name == "memory"
        assert registry.resolve_save("file://a.png")[0].name == "fs"

    def test_resolve_save_unknown_scheme(self, registry):
        with pytest.raises(ProviderNotFoundError, match="s3"):
            registry.resolve_save("s3://bucket/key.png")

    def test_has_and_list(self, registry):
        assert registry.has("save", "filesystem")
        assert not registry.has("text", "nope")
        assert registry.list_names("generator") == ["shapes", "spy"]

    def test_capabilities(self, registry):
        caps = registry.capabilities()

        assert [g["name"] for g in caps["generators"]] == ["shapes", "spy"]
        assert {"provider": "pillow", "name": "resize"}.items() <= next(
            t for t in caps["transforms"] if t["name"] == "resize"
        ).items()
        assert {s["name"] for s in caps["saveProviders"]} == {"fs", "memory"}
        assert caps["visionProviders"][0]["name"] == "eyes"
        assert caps["textProviders"][0]["name"] == "echo"


class TestBuildRegistry:
    """Registry assembled from configuration."""

    def test_offline_registry(self, tmp_path):
        registry = build_registry(offline_config(tmp_path))

        assert registry.frozen
        assert registry.list_names("generator") == ["shapes"]
        assert registry.list_names("transform") == ["pillow"]
        assert registry.list_names("vision") == []
        assert registry.list_names("text") == []
        assert registry.get("save", "fs").provider.base_dir == tmp_path

    def test_google_key_enables_ai_providers(self, tmp_path):
        registry = build_registry(offline_config(tmp_path, google="test-key"))

        assert registry.has("generator", "gemini")
        assert registry.has("vision", "gemini")
        assert registry.has("text", "litellm")


class TestConfig:
    def test_engine_settings_from_env(self, monkeypatch):
        monkeypatch.setenv("PIXELFLOW_MAX_IN_FLIGHT", "2")
        monkeypatch.setenv("PIXELFLOW_FAILURE_POLICY", "continue")
        monkeypatch.setenv("PIXELFLOW_VALIDATE_PARAMS", "yes")

        settings = EngineSettings()

        assert settings.max_in_flight == 2
        assert settings.failure_policy == "continue"
        assert settings.validate_params is True

    def test_bad_int_falls_back(self, monkeypatch):
        monkeypatch.setenv("PIXELFLOW_MAX_IN_FLIGHT", "lots")
        assert EngineSettings().max_in_flight == 4

    def test_gemini_key_alias(self, monkeypatch):
        monkeypatch.delenv("GOOGLE_API_KEY", raising=False)
        monkeypatch.setenv("GEMINI_API_KEY", "g-key")

        assert ProviderConfig().google_api_key == "g-key"

    def test_executor_from_config(self, registry):
        config = AppConfig(engine=EngineSettings(max_in_flight=7, failure_policy="continue"))

        executor = PipelineExecutor.from_config(config, registry)

        assert executor.max_in_flight == 7
        assert executor.failure_policy == FailurePolicy.CONTINUE
        assert executor.get_registry() is registry
