"""Configuration management."""

import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field

# Load environment variables
load_dotenv()


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value else default


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


class Pricing(BaseModel):
    """Cost per successful generation, in the base currency (USD)."""

    image: float = 0.04
    video: float = 0.50
    edit: float = 0.04


class Settings(BaseModel):
    """Application configuration."""

    api_key: str = Field(
        default_factory=lambda: os.getenv("GEMINI_API_KEY", ""),
        description="Google Gemini API key",
    )
    data_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("STORYWEAVER_DATA_DIR", ".storyweaver")),
        description="Directory holding persisted history, bookmarks and settings",
    )
    storage_capacity: int = Field(
        default_factory=lambda: _env_int("STORYWEAVER_STORAGE_CAPACITY", 5 * 1024 * 1024),
        description="Byte budget shared by all persisted keys",
    )
    image_model: str = Field(
        default_factory=lambda: os.getenv(
            "STORYWEAVER_IMAGE_MODEL", "gemini-3-pro-image-preview",
        ),
    )
    text_model: str = Field(
        default_factory=lambda: os.getenv("STORYWEAVER_TEXT_MODEL", "gemini-3-pro-preview"),
    )
    video_model: str = Field(
        default_factory=lambda: os.getenv("STORYWEAVER_VIDEO_MODEL", "veo-2.0-generate-preview"),
    )
    video_resolution: str = "720p"
    batch_delay: float = Field(
        default_factory=lambda: _env_float("STORYWEAVER_BATCH_DELAY", 3.0),
        description="Seconds to wait between image calls within one batch",
    )
    bookmark_ttl_days: int = 30
    log_level: str = Field(
        default_factory=lambda: os.getenv("STORYWEAVER_LOG_LEVEL", "WARNING"),
    )
    pricing: Pricing = Field(default_factory=Pricing)
    currency_rates: dict[str, float] = Field(
        default_factory=lambda: {"USD": 1.0, "EUR": 0.92, "GBP": 0.79, "NGN": 1550.0},
    )

    def validate_required(self) -> None:
        """Validate that the API key is set."""
        if not self.api_key:
            msg = (
                "API Key is missing. "
                "Set GEMINI_API_KEY env var or pass it as an argument."
            )
            raise ValueError(msg)
