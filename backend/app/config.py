"""Configuration management for PixelFlow."""

import logging
import os
from pathlib import Path
from typing import Literal, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


def load_env_file(env_path: Optional[str] = None) -> Path | None:
    """Load environment file from specified path or search common locations.

    Priority:
    1. Explicitly provided path (CLI flag or PIXELFLOW_ENV_FILE)
    2. .env.local in current directory
    3. .env in current directory
    4. .env.local in the project directory
    5. .env in the project directory
    """
    # Check for explicit path first
    explicit_path = env_path or os.getenv("PIXELFLOW_ENV_FILE")
    if explicit_path:
        path = Path(explicit_path).expanduser().resolve()
        if path.exists():
            load_dotenv(path)
            return path
        else:
            logger.warning(f"Specified env file not found: {path}")

    # Search locations
    cwd = Path.cwd()
    project_dir = Path(__file__).parent.parent.parent

    search_paths = [
        cwd / ".env.local",
        cwd / ".env",
        project_dir / ".env.local",
        project_dir / ".env",
    ]

    for path in search_paths:
        if path.exists():
            load_dotenv(path)
            return path

    # Fallback to default dotenv behavior
    load_dotenv()
    return None


# Load env on module import (can be re-called with explicit path)
_loaded_env_path = load_env_file()


def _get_google_api_key() -> Optional[str]:
    """Get Google API key from environment, checking multiple variable names."""
    return os.getenv("GOOGLE_API_KEY") or os.getenv("GEMINI_API_KEY")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning(f"Ignoring non-integer {name}={value!r}, using {default}")
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class ProviderConfig(BaseModel):
    """Configuration for AI providers."""

    # Google/Gemini (image generation and vision)
    # Supports both GOOGLE_API_KEY and GEMINI_API_KEY
    google_api_key: Optional[str] = Field(default_factory=_get_google_api_key)
    gemini_model: str = Field(default_factory=lambda: os.getenv("PIXELFLOW_GEMINI_MODEL", "gemini-2.5-flash-image"))
    gemini_vision_model: str = "gemini-2.5-flash"

    # Text generation through litellm
    openai_api_key: Optional[str] = Field(default_factory=lambda: os.getenv("OPENAI_API_KEY"))
    text_model: str = Field(default_factory=lambda: os.getenv("PIXELFLOW_TEXT_MODEL", "gemini/gemini-2.5-flash"))


class EngineSettings(BaseModel):
    """Pipeline engine settings."""

    max_in_flight: int = Field(default_factory=lambda: _env_int("PIXELFLOW_MAX_IN_FLIGHT", 4), ge=1)
    event_queue_size: int = Field(default_factory=lambda: _env_int("PIXELFLOW_EVENT_QUEUE_SIZE", 64), ge=1)
    failure_policy: Literal["abort", "continue"] = Field(
        default_factory=lambda: os.getenv("PIXELFLOW_FAILURE_POLICY", "abort").lower()
    )
    validate_params: bool = Field(default_factory=lambda: _env_bool("PIXELFLOW_VALIDATE_PARAMS"))


class AppConfig(BaseModel):
    """Main application configuration."""

    # Server settings
    host: str = "0.0.0.0"
    port: int = Field(default_factory=lambda: _env_int("PORT", 8000))
    debug: bool = Field(default_factory=lambda: os.getenv("DEBUG", "false").lower() == "true")

    # Env file that was loaded
    env_file: Optional[str] = Field(default_factory=lambda: str(_loaded_env_path) if _loaded_env_path else None)

    # Where relative filesystem save destinations resolve
    save_base_dir: str = Field(default_factory=lambda: os.getenv("PIXELFLOW_SAVE_DIR", "."))

    # Provider configuration
    providers: ProviderConfig = Field(default_factory=ProviderConfig)
    engine: EngineSettings = Field(default_factory=EngineSettings)

    # Default providers for steps that don't name one
    default_transform_provider: str = "pillow"
    default_save_provider: str = "fs"


def get_config() -> AppConfig:
    """Get the application configuration."""
    return AppConfig()


def reload_config(env_path: Optional[str] = None) -> AppConfig:
    """Reload configuration with a new env file path."""
    global _loaded_env_path
    _loaded_env_path = load_env_file(env_path)
    return get_config()
