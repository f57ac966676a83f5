"""Capability providers: generators, transforms, save backends, vision and text."""

from .base import (
    BaseGenerator,
    BaseSaveProvider,
    BaseTextProvider,
    BaseTransformProvider,
    BaseVisionProvider,
)
from .registry import (
    CapabilityKind,
    CapabilityRegistry,
    RegisteredCapability,
    build_registry,
    get_capability_registry,
    reset_capability_registry,
)

__all__ = [
    "BaseGenerator",
    "BaseSaveProvider",
    "BaseTextProvider",
    "BaseTransformProvider",
    "BaseVisionProvider",
    "CapabilityKind",
    "CapabilityRegistry",
    "RegisteredCapability",
    "build_registry",
    "get_capability_registry",
    "reset_capability_registry",
]
