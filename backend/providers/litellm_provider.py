"""LiteLLM provider for text generation with optional JSON output."""

import json
import logging
import os
from typing import Any, Optional

from app.config import ProviderConfig, get_config
from pipeline.errors import ConfigurationError, ErrorCategory, TextGenerationError
from pipeline.payloads import DataBlob

from .base import BaseTextProvider
from .schema import ParameterSchema, TextProviderSchema

logger = logging.getLogger(__name__)


def _strip_code_fence(content: str) -> str:
    """Clean up markdown code blocks some models wrap JSON in."""
    content = content.strip()
    if content.startswith("```"):
        lines = content.split("\n")
        content = "\n".join(lines[1:-1] if lines[-1].strip() == "```" else lines[1:])
    return content


class LiteLLMTextProvider(BaseTextProvider):
    """LiteLLM-based text provider."""

    name = "litellm"
    schema = TextProviderSchema(
        name="litellm",
        description="Generate text or JSON with any litellm-supported model",
        parameters={
            "prompt": ParameterSchema(type="string", title="Prompt"),
            "systemPrompt": ParameterSchema(type="string", title="System Prompt"),
            "maxTokens": ParameterSchema(type="integer", default=1024, minimum=1),
            "outputFormat": ParameterSchema(type="string", enum=["text", "json"], default="text"),
            "model": ParameterSchema(type="string", description="Override the configured model"),
        },
        required_parameters=["prompt"],
        output_formats=["text", "json"],
        is_ai=True,
        requires_api_key=True,
    )

    def __init__(self, config: Optional[ProviderConfig] = None):
        """Initialize the LiteLLM provider.

        Args:
            config: Provider settings (default: from the environment)
        """
        self._config = config or get_config().providers
        self.model = self._config.text_model
        self._initialized = False

    def _ensure_init(self):
        """Ensure litellm is configured with API keys."""
        if self._initialized:
            return

        if not (self._config.google_api_key or self._config.openai_api_key):
            raise ConfigurationError("No API key configured for litellm text generation", provider=self.name)

        # Set API keys for the providers litellm routes to
        if self._config.google_api_key:
            os.environ.setdefault("GEMINI_API_KEY", self._config.google_api_key)
        if self._config.openai_api_key:
            os.environ.setdefault("OPENAI_API_KEY", self._config.openai_api_key)

        self._initialized = True

    def _usage(self, response: Any, model: str) -> dict[str, Any]:
        import litellm

        usage = getattr(response, "usage", None)
        report: dict[str, Any] = {
            "model": model,
            "units": getattr(usage, "total_tokens", None),
            "unit_type": "tokens",
            "prompt_tokens": getattr(usage, "prompt_tokens", None),
            "completion_tokens": getattr(usage, "completion_tokens", None),
        }
        try:
            report["cost_usd"] = litellm.completion_cost(completion_response=response)
        except Exception as e:
            # Unknown models have no price table entry
            logger.debug(f"No cost available for {model}: {e}")
        return report

    async def generate(self, params: dict[str, Any]) -> DataBlob:
        """Generate text using litellm."""
        import litellm
        self._ensure_init()

        prompt = params.get("prompt")
        if not prompt:
            raise TextGenerationError("Text generation needs a 'prompt'", category=ErrorCategory.VALIDATION)

        as_json = params.get("outputFormat") == "json"
        model = params.get("model") or self.model

        system_prompt = params.get("systemPrompt")
        if as_json:
            instruction = "Respond with ONLY a valid JSON object. Do NOT include markdown code blocks."
            system_prompt = f"{system_prompt}\n\n{instruction}" if system_prompt else instruction

        user_prompt = prompt
        if params.get("context"):
            user_prompt = f"Context:\n{params['context']}\n\n{prompt}"

        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": user_prompt})

        kwargs: dict[str, Any] = {"max_tokens": params.get("maxTokens", 1024)}
        if as_json:
            kwargs["response_format"] = {"type": "json_object"}

        logger.info(f"Generating {'JSON' if as_json else 'text'} with {model}")
        response = await litellm.acompletion(model=model, messages=messages, **kwargs)

        content = response.choices[0].message.content or ""
        metadata = {"usage": self._usage(response, model)}

        if as_json:
            try:
                parsed = json.loads(_strip_code_fence(content))
            except json.JSONDecodeError as e:
                raise TextGenerationError(f"Model returned invalid JSON: {e}", cause=e)
            return DataBlob.from_json(parsed, source=f"text:{self.name}", metadata=metadata)

        return DataBlob(data_type="text", content=content, source=f"text:{self.name}", metadata=metadata)
