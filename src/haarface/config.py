"""Environment-based configuration for haarface."""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from haarface.ml.face_detector import DetectionConfig


class Settings(BaseSettings):
    """Application settings loaded from HAARFACE_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="HAARFACE_",
        case_sensitive=False,
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8083

    # Authentication (None = disabled)
    api_key: str | None = None

    # Cascade selection
    cascade_name: str = "frontalface_default"
    cascade_file: str | None = None
    cascades_dir: str = "./cascades"

    # Detection
    base_scale: float = Field(default=2.0, gt=0)
    scale_increment: float = Field(default=1.25, gt=1)
    step_fraction: float = Field(default=0.1, gt=0)
    min_neighbours: int = Field(default=2, ge=1)
    do_canny_pruning: bool = True
    image_size_limit: int = Field(default=1000, ge=1)

    # Concurrency (scan_workers 0 = one per CPU)
    max_concurrent: int = Field(default=2, ge=1)
    scan_workers: int = Field(default=0, ge=0)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=52_428_800, ge=1)

    # Cascade cache
    cascade_ttl: int = Field(default=3600, ge=0)

    def detection_config(self) -> DetectionConfig:
        """Detection knobs as a ``DetectionConfig``."""
        return DetectionConfig(
            base_scale=self.base_scale,
            scale_increment=self.scale_increment,
            step_fraction=self.step_fraction,
            min_neighbours=self.min_neighbours,
            do_canny_pruning=self.do_canny_pruning,
            image_size_limit=self.image_size_limit,
        )


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
