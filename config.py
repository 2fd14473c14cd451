"""
Environment-driven settings for the RecipeShare API.
"""

from functools import lru_cache
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        case_sensitive=False,
        extra="ignore",
        frozen=True,
        populate_by_name=True,
    )

    rate_limit_sweep_seconds: float = Field(default=300.0, gt=0, alias="RATE_LIMIT_SWEEP_SECONDS")
    demo_mode: bool = Field(default=True, alias="DEMO_MODE")

    # Upload limits
    max_image_size_mb: float = Field(default=5.0, gt=0, alias="MAX_IMAGE_SIZE_MB")
    max_images_per_upload: int = Field(default=5, gt=0, alias="MAX_IMAGES_PER_UPLOAD")

    cors_allow_origins_raw: str = Field(default="*", alias="CORS_ALLOW_ORIGINS")

    @property
    def cors_allow_origins(self) -> List[str]:
        origins = [o.strip() for o in self.cors_allow_origins_raw.split(",") if o.strip()]
        return origins or ["*"]

    @property
    def max_image_size_bytes(self) -> int:
        return int(self.max_image_size_mb * 1024 * 1024)


@lru_cache
def get_settings() -> Settings:
    return Settings()
