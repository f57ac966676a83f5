"""Google Gemini providers for image generation and image analysis."""

import json
import logging
from typing import Any, Optional

from app.config import ProviderConfig, get_config
from pipeline.errors import ConfigurationError, ErrorCategory, GenerationError, VisionError
from pipeline.payloads import DataBlob, ImageBlob

from .base import BaseGenerator, BaseVisionProvider
from .schema import GeneratorSchema, ParameterSchema, VisionProviderSchema

logger = logging.getLogger(__name__)

ASPECT_RATIOS = ["1:1", "2:3", "3:2", "3:4", "4:3", "9:16", "16:9", "21:9"]


class _GeminiClientMixin:
    """Lazy google-genai client shared by the Gemini providers."""

    name: str
    _config: ProviderConfig

    def _init_client(self, config: Optional[ProviderConfig]) -> None:
        self._config = config or get_config().providers
        self._client = None

    @property
    def client(self):
        """Lazy-load the Gemini client."""
        if self._client is None:
            if not self._config.google_api_key:
                raise ConfigurationError(
                    "GOOGLE_API_KEY or GEMINI_API_KEY is not set",
                    provider=self.name,
                )
            from google import genai
            self._client = genai.Client(api_key=self._config.google_api_key)
        return self._client


def _usage(response: Any, model: str, **extra: Any) -> dict[str, Any]:
    """Usage report from a generate_content response."""
    report: dict[str, Any] = {"model": model, **extra}
    metadata = getattr(response, "usage_metadata", None)
    if metadata is not None:
        report["prompt_tokens"] = getattr(metadata, "prompt_token_count", None)
        report["output_tokens"] = getattr(metadata, "candidates_token_count", None)
        report["total_tokens"] = getattr(metadata, "total_token_count", None)
    return report


class GeminiImageGenerator(_GeminiClientMixin, BaseGenerator):
    """Gemini image generation."""

    name = "gemini"
    schema = GeneratorSchema(
        name="gemini",
        description="Generate images from a text prompt with Google Gemini",
        category="AI",
        parameters={
            "prompt": ParameterSchema(type="string", title="Prompt"),
            "aspectRatio": ParameterSchema(type="string", title="Aspect Ratio", enum=ASPECT_RATIOS, default="1:1"),
        },
        required_parameters=["prompt"],
        is_ai=True,
        requires_api_key=True,
        api_key_env_var="GOOGLE_API_KEY",
    )

    def __init__(self, config: Optional[ProviderConfig] = None):
        self._init_client(config)

    @property
    def model(self) -> str:
        return self._config.gemini_model

    async def generate(self, params: dict[str, Any]) -> ImageBlob:
        """Generate an image using Gemini."""
        from google.genai import types

        prompt = params.get("prompt")
        if not prompt:
            raise GenerationError("Gemini generation needs a 'prompt'", category=ErrorCategory.VALIDATION)

        config = types.GenerateContentConfig(
            response_modalities=["IMAGE"],
            image_config=types.ImageConfig(aspect_ratio=params.get("aspectRatio", "1:1")),
        )

        response = await self.client.aio.models.generate_content(
            model=self.model,
            contents=[prompt],
            config=config,
        )

        for part in response.parts or []:
            if part.inline_data is not None and part.inline_data.data:
                return ImageBlob(
                    data=part.inline_data.data,
                    mime=part.inline_data.mime_type or "image/png",
                    source=f"ai:{self.name}",
                    metadata={
                        "prompt": prompt,
                        "usage": _usage(response, self.model, units=1, unit_type="images"),
                    },
                )

        raise GenerationError("No image returned from Gemini", category=ErrorCategory.TRANSIENT, retryable=True)


class GeminiVisionProvider(_GeminiClientMixin, BaseVisionProvider):
    """Gemini image analysis."""

    name = "gemini"
    schema = VisionProviderSchema(
        name="gemini",
        description="Describe or analyze an image with Google Gemini",
        parameters={
            "prompt": ParameterSchema(type="string", title="Prompt", default="Describe this image."),
            "outputFormat": ParameterSchema(type="string", enum=["text", "json"], default="text"),
        },
        output_formats=["text", "json"],
        is_ai=True,
        requires_api_key=True,
        api_key_env_var="GOOGLE_API_KEY",
    )

    def __init__(self, config: Optional[ProviderConfig] = None):
        self._init_client(config)

    @property
    def model(self) -> str:
        return self._config.gemini_vision_model

    async def analyze(self, image: ImageBlob, params: dict[str, Any]) -> DataBlob:
        from google.genai import types

        if image.mime == "image/svg+xml":
            raise VisionError("Gemini cannot analyze SVG input; convert it first", category=ErrorCategory.VALIDATION)

        prompt = params.get("prompt") or "Describe this image."
        as_json = params.get("outputFormat") == "json"
        if as_json:
            prompt = f"{prompt}\n\nRespond with a single valid JSON object."

        config = types.GenerateContentConfig(
            response_mime_type="application/json" if as_json else None,
        )
        response = await self.client.aio.models.generate_content(
            model=self.model,
            contents=[types.Part.from_bytes(data=image.data, mime_type=image.mime), prompt],
            config=config,
        )

        text = response.text or ""
        metadata = {"usage": _usage(response, self.model, units=1, unit_type="requests")}
        if as_json:
            try:
                return DataBlob.from_json(json.loads(text), source=f"vision:{self.name}", metadata=metadata)
            except json.JSONDecodeError as e:
                raise VisionError(f"Gemini returned invalid JSON: {e}", cause=e)
        return DataBlob(data_type="text", content=text, source=f"vision:{self.name}", metadata=metadata)
