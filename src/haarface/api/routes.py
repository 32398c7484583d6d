"""API route definitions."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, HTTPException, Request, UploadFile, status

from haarface.api.deps import get_cascade_manager, get_detection_pool, get_settings
from haarface.api.middleware import verify_api_key
from haarface.api.schemas import (
    CascadeInfo,
    CascadesResponse,
    DetectedFace,
    ErrorResponse,
    HealthResponse,
)
from haarface.ml.errors import DecodeFailureError, InvalidCascadeError, InvalidImageError
from haarface.ml.face_detector import HaarFaceDetector
from haarface.ml.model_manager import CASCADE_REGISTRY

if TYPE_CHECKING:
    import threading

    from haarface.config import Settings
    from haarface.ml.merger import Face
    from haarface.ml.model_manager import CascadeManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])


def _run_detection(
    manager: CascadeManager,
    settings: Settings,
    data: bytes,
    cancel_event: threading.Event,
) -> list[Face]:
    detector = HaarFaceDetector(
        manager.get_cascade(),
        settings.detection_config(),
        workers=settings.scan_workers or None,
        max_image_pixels=settings.max_image_pixels,
    )
    return detector.detect_bytes(data, cancel_event)


@router.post(
    "/detect-faces",
    response_model=list[DetectedFace],
    responses={
        status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
        413: {"model": ErrorResponse},
        422: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Detect faces in an image",
)
async def detect_faces(request: Request, file: UploadFile) -> list[DetectedFace]:
    """Detect faces in an uploaded image and return their boxes in image pixels."""
    settings = get_settings(request)
    data = await file.read()
    if len(data) > settings.max_file_size:
        raise HTTPException(
            status_code=413,
            detail=f"File exceeds {settings.max_file_size} bytes",
        )

    try:
        faces = await get_detection_pool(request).run(
            _run_detection,
            get_cascade_manager(request),
            settings,
            data,
        )
    except TimeoutError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Detection capacity exhausted, retry later",
        ) from None
    except InvalidImageError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except DecodeFailureError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except InvalidCascadeError as exc:
        logger.error("Cascade %s unusable: %s", settings.cascade_name, exc)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc

    return [DetectedFace(x=face.x, y=face.y, width=face.width, height=face.height) for face in faces]


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    pool = get_detection_pool(request)
    return HealthResponse(
        status="ok",
        cascade=get_settings(request).cascade_name,
        cascades_loaded=get_cascade_manager(request).get_loaded_cascades(),
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.get(
    "/cascades",
    response_model=CascadesResponse,
    summary="List known cascades",
)
async def list_cascades(request: Request) -> CascadesResponse:
    """Return the known cascades and whether each is active or already on disk."""
    settings = get_settings(request)
    manager = get_cascade_manager(request)

    cascades: list[CascadeInfo] = []
    for name, spec in CASCADE_REGISTRY.items():
        if name == settings.cascade_name:
            cascade_status = "active"
        elif manager.is_downloaded(name):
            cascade_status = "downloaded"
        else:
            cascade_status = "available"
        cascades.append(CascadeInfo(name=name, status=cascade_status, license=spec.license))

    return CascadesResponse(cascades=cascades)
