"""Capability registry mapping (kind, name) to provider implementations.

The registry is filled once during startup, then frozen. Execution only
ever reads from it.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from pipeline.errors import ConfigurationError, ProviderNotFoundError

from .base import (
    BaseGenerator,
    BaseSaveProvider,
    BaseTextProvider,
    BaseTransformProvider,
    BaseVisionProvider,
)
from .schema import TransformOperationSchema

logger = logging.getLogger(__name__)


class CapabilityKind(str, Enum):
    """Kinds of capability a provider can offer."""
    GENERATOR = "generator"
    TRANSFORM = "transform"
    SAVE = "save"
    VISION = "vision"
    TEXT = "text"


_BASE_CLASSES: dict[CapabilityKind, type] = {
    CapabilityKind.GENERATOR: BaseGenerator,
    CapabilityKind.TRANSFORM: BaseTransformProvider,
    CapabilityKind.SAVE: BaseSaveProvider,
    CapabilityKind.VISION: BaseVisionProvider,
    CapabilityKind.TEXT: BaseTextProvider,
}

# Duck-typed providers must at least expose these coroutine methods
_REQUIRED_METHODS: dict[CapabilityKind, str] = {
    CapabilityKind.GENERATOR: "generate",
    CapabilityKind.TRANSFORM: "transform",
    CapabilityKind.SAVE: "save",
    CapabilityKind.VISION: "analyze",
    CapabilityKind.TEXT: "generate",
}


@dataclass(frozen=True)
class RegisteredCapability:
    """A provider together with the schema it publishes."""
    kind: CapabilityKind
    name: str
    provider: Any
    schema: Any = None


class CapabilityRegistry:
    """Registry for capability providers."""

    def __init__(
        self,
        default_transform_provider: str = "pillow",
        default_save_provider: str = "fs",
    ):
        self._providers: dict[CapabilityKind, dict[str, Any]] = {kind: {} for kind in CapabilityKind}
        self._save_aliases: dict[str, str] = {}
        self._frozen = False
        self.default_transform_provider = default_transform_provider
        self.default_save_provider = default_save_provider

    # --- Registration (build phase only) ---

    def _register(self, kind: CapabilityKind, provider: Any) -> None:
        if self._frozen:
            raise ConfigurationError(
                f"Cannot register {kind.value} provider after the registry was frozen",
                kind=kind.value,
            )

        name = getattr(provider, "name", None)
        if not isinstance(name, str) or not name or name == "base":
            raise ConfigurationError(
                f"{kind.value} provider {type(provider).__name__} must define a non-empty 'name'",
                kind=kind.value,
            )

        method = _REQUIRED_METHODS[kind]
        if not isinstance(provider, _BASE_CLASSES[kind]) and not callable(getattr(provider, method, None)):
            raise ConfigurationError(
                f"{kind.value} provider '{name}' does not implement {method}()",
                kind=kind.value,
                provider=name,
            )

        if kind == CapabilityKind.TRANSFORM and not getattr(provider, "operation_schemas", None):
            raise ConfigurationError(
                f"Transform provider '{name}' declares no operations",
                kind=kind.value,
                provider=name,
            )

        if name in self._providers[kind]:
            raise ConfigurationError(
                f"{kind.value} provider '{name}' is already registered",
                kind=kind.value,
                provider=name,
            )

        self._providers[kind][name] = provider
        logger.debug(f"Registered {kind.value} provider '{name}'")

    def register_generator(self, generator: BaseGenerator) -> None:
        """Register an image generator."""
        self._register(CapabilityKind.GENERATOR, generator)

    def register_transform_provider(self, provider: BaseTransformProvider) -> None:
        """Register a transform provider and all its operations."""
        self._register(CapabilityKind.TRANSFORM, provider)

    def register_save_provider(self, provider: BaseSaveProvider) -> None:
        """Register a save backend, including its aliases."""
        self._register(CapabilityKind.SAVE, provider)
        for alias in getattr(provider, "aliases", ()):
            self._save_aliases[alias] = provider.name

    def register_vision_provider(self, provider: BaseVisionProvider) -> None:
        """Register an image analysis provider."""
        self._register(CapabilityKind.VISION, provider)

    def register_text_provider(self, provider: BaseTextProvider) -> None:
        """Register a text generation provider."""
        self._register(CapabilityKind.TEXT, provider)

    def freeze(self) -> "CapabilityRegistry":
        """End the build phase. Lookups only from here on."""
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    # --- Lookup ---

    def get(self, kind: CapabilityKind | str, name: str) -> RegisteredCapability:
        """
        Look up a provider by kind and name.

        Raises:
            ProviderNotFoundError: listing the registered names for the kind
        """
        kind = CapabilityKind(kind)
        providers = self._providers[kind]

        if kind == CapabilityKind.SAVE:
            name = self._save_aliases.get(name, name)

        provider = providers.get(name)
        if provider is None:
            raise ProviderNotFoundError(kind.value, name, list(providers.keys()))

        if kind == CapabilityKind.TRANSFORM:
            schema = dict(provider.operation_schemas)
        else:
            schema = getattr(provider, "schema", None)
        return RegisteredCapability(kind=kind, name=name, provider=provider, schema=schema)

    def get_transform(
        self,
        provider_name: Optional[str],
        operation: str,
    ) -> tuple[RegisteredCapability, TransformOperationSchema]:
        """Look up a transform provider and one of its operations."""
        entry = self.get(CapabilityKind.TRANSFORM, provider_name or self.default_transform_provider)
        schemas: dict[str, TransformOperationSchema] = entry.schema
        if operation not in schemas:
            raise ProviderNotFoundError(
                CapabilityKind.TRANSFORM.value,
                entry.name,
                list(schemas.keys()),
                operation=operation,
            )
        return entry, schemas[operation]

    def resolve_save(
        self,
        destination: str,
        provider_name: Optional[str] = None,
    ) -> tuple[RegisteredCapability, str]:
        """
        Pick the save provider for a destination.

        Routing:
            explicit provider      -> that provider, destination unchanged
            "s3://bucket/key"      -> provider "s3", path "bucket/key"
            "./x", "/x", "../x"    -> provider "fs"
            anything else          -> default save provider

        Returns:
            (provider entry, provider-specific path)
        """
        if provider_name:
            return self.get(CapabilityKind.SAVE, provider_name), destination

        if "://" in destination:
            scheme, rest = destination.split("://", 1)
            return self.get(CapabilityKind.SAVE, scheme), rest

        if destination.startswith(("./", "/", "../")):
            return self.get(CapabilityKind.SAVE, "fs"), destination

        return self.get(CapabilityKind.SAVE, self.default_save_provider), destination

    def has(self, kind: CapabilityKind | str, name: str) -> bool:
        kind = CapabilityKind(kind)
        if kind == CapabilityKind.SAVE:
            name = self._save_aliases.get(name, name)
        return name in self._providers[kind]

    def list_names(self, kind: CapabilityKind | str) -> list[str]:
        """List registered provider names for a kind."""
        return list(self._providers[CapabilityKind(kind)].keys())

    def capabilities(self) -> dict[str, list[dict[str, Any]]]:
        """Every published schema, grouped by kind, for discovery."""
        transforms = []
        for provider_name, provider in self._providers[CapabilityKind.TRANSFORM].items():
            for schema in provider.operation_schemas.values():
                transforms.append({"provider": provider_name, **schema.model_dump()})

        def dump(kind: CapabilityKind) -> list[dict[str, Any]]:
            result = []
            for name, provider in self._providers[kind].items():
                schema = getattr(provider, "schema", None)
                result.append(schema.model_dump() if schema is not None else {"name": name})
            return result

        return {
            "generators": dump(CapabilityKind.GENERATOR),
            "transforms": transforms,
            "saveProviders": dump(CapabilityKind.SAVE),
            "visionProviders": dump(CapabilityKind.VISION),
            "textProviders": dump(CapabilityKind.TEXT),
        }


def build_registry(config: Any = None) -> CapabilityRegistry:
    """
    Build and freeze a registry with the built-in providers.

    AI providers are only registered when their credentials are configured.
    """
    from app.config import get_config

    from .filesystem import FilesystemSaveProvider
    from .pillow_transform import PillowTransformProvider
    from .shapes import ShapesGenerator

    config = config or get_config()
    registry = CapabilityRegistry(
        default_transform_provider=config.default_transform_provider,
        default_save_provider=config.default_save_provider,
    )

    registry.register_generator(ShapesGenerator())
    registry.register_transform_provider(PillowTransformProvider())
    registry.register_save_provider(FilesystemSaveProvider(base_dir=config.save_base_dir))

    if config.providers.google_api_key:
        from .gemini import GeminiImageGenerator, GeminiVisionProvider
        registry.register_generator(GeminiImageGenerator(config.providers))
        registry.register_vision_provider(GeminiVisionProvider(config.providers))

    if config.providers.google_api_key or config.providers.openai_api_key:
        from .litellm_provider import LiteLLMTextProvider
        registry.register_text_provider(LiteLLMTextProvider(config.providers))

    registry.freeze()
    logger.info(
        f"Capability registry ready: {len(registry.list_names('generator'))} generators, "
        f"{len(registry.list_names('transform'))} transform providers, "
        f"{len(registry.list_names('save'))} save providers"
    )
    return registry


# Singleton instance
_registry: Optional[CapabilityRegistry] = None


def get_capability_registry() -> CapabilityRegistry:
    """Get the global capability registry, building it on first use."""
    global _registry
    if _registry is None:
        _registry = build_registry()
    return _registry


def reset_capability_registry() -> None:
    """Drop the global registry (next access rebuilds it)."""
    global _registry
    _registry = None
