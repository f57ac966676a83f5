"""Base classes for capability providers.

Providers are thin adapters to an image/text service. They must be
reentrant: concurrent calls with different parameters must not share
mutable state.
"""

from abc import ABC, abstractmethod
from typing import Any

from pipeline.payloads import DataBlob, ImageBlob, SaveResult

from .schema import (
    GeneratorSchema,
    SaveProviderSchema,
    TextProviderSchema,
    TransformOperationSchema,
    VisionProviderSchema,
)


class BaseGenerator(ABC):
    """Base class for image generators (SVG, AI, procedural...)."""

    name: str = "base"
    schema: GeneratorSchema

    @abstractmethod
    async def generate(self, params: dict[str, Any]) -> ImageBlob:
        """Generate an image.

        Args:
            params: Generator-specific parameters (see `schema`)

        Returns:
            The generated image
        """
        pass


class BaseTransformProvider(ABC):
    """Base class for transform providers.

    A provider exposes several named operations and dispatches them itself.
    """

    name: str = "base"
    operation_schemas: dict[str, TransformOperationSchema] = {}

    @abstractmethod
    async def transform(
        self,
        image: ImageBlob,
        operation: str,
        params: dict[str, Any],
    ) -> ImageBlob | DataBlob:
        """Apply a named operation to an image.

        Args:
            image: Input image (never modified)
            operation: Operation name, one of `operation_schemas`
            params: Operation parameters

        Returns:
            A new image, or data for analysis-style operations
        """
        pass


class BaseSaveProvider(ABC):
    """Base class for save backends (filesystem, object storage...)."""

    name: str = "base"
    aliases: tuple[str, ...] = ()
    schema: SaveProviderSchema

    @abstractmethod
    async def save(self, image: ImageBlob, destination: str) -> SaveResult:
        """Persist an image.

        Args:
            image: The image to save
            destination: Provider-specific destination (path or key)

        Returns:
            Where the image ended up
        """
        pass


class BaseVisionProvider(ABC):
    """Base class for image analysis providers."""

    name: str = "base"
    schema: VisionProviderSchema

    @abstractmethod
    async def analyze(self, image: ImageBlob, params: dict[str, Any]) -> DataBlob:
        """Analyze an image and return text or JSON."""
        pass


class BaseTextProvider(ABC):
    """Base class for text generation providers."""

    name: str = "base"
    schema: TextProviderSchema

    @abstractmethod
    async def generate(self, params: dict[str, Any]) -> DataBlob:
        """Generate text.

        Args:
            params: Provider parameters. `prompt` is conventional; the engine
                adds `context` when the step has an input variable.
        """
        pass
