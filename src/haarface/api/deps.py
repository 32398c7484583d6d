"""Request dependencies: shared app state."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from fastapi import Request

    from haarface.config import Settings
    from haarface.ml.inference import DetectionPool
    from haarface.ml.model_manager import CascadeManager


def get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def get_detection_pool(request: Request) -> DetectionPool:
    pool: DetectionPool = request.app.state.detection_pool
    return pool


def get_cascade_manager(request: Request) -> CascadeManager:
    manager: CascadeManager = request.app.state.cascade_manager
    return manager
