"""HTTP surface for the capture-and-detect pipeline."""
from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import List, Optional

import cv2
import uvicorn
from fastapi import Depends, FastAPI, File, HTTPException, Query, Request, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response

from ..core.errors import ErrorKind
from ..core.models import Notification, StateSnapshot
from ..services.controller import DetectionController, StepResult
from ..services.image_source import ImageSource
from ..services.inference import ModelResource
from ..services.notifications import NotificationCenter
from ..services.overlay import OverlayRenderer
from ..utils.video import CaptureFactory
from .settings import AppSettings, load_settings

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    ErrorKind.INVALID_INPUT_TYPE: 415,
    ErrorKind.UPLOAD_TOO_LARGE: 413,
    ErrorKind.IMAGE_DECODE: 400,
    ErrorKind.CAMERA_DENIED: 403,
    ErrorKind.CAMERA_UNAVAILABLE: 503,
}


def setup_logging(settings: AppSettings) -> None:
    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)
    if settings.log_format == "json":
        formatter = logging.Formatter(
            '{"time": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s"}'
        )
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    logging.basicConfig(level=log_level, handlers=[handler], force=True)


def build_controller(
    settings: AppSettings,
    *,
    model: Optional[ModelResource] = None,
    capture_factory: Optional[CaptureFactory] = None,
) -> DetectionController:
    return DetectionController(
        ImageSource(settings, capture_factory=capture_factory),
        model or ModelResource.from_settings(settings),
        OverlayRenderer(settings),
        NotificationCenter(history=settings.notification_history),
    )


def get_controller(request: Request) -> DetectionController:
    return request.app.state.controller


def _raise_for_acquisition(result: StepResult) -> None:
    kind = result.error_kind
    if kind is None:
        return
    notification = result.notifications[0]
    raise HTTPException(
        status_code=ERROR_STATUS.get(kind, 400),
        detail=jsonable_encoder(notification),
    )


def create_app(
    settings: Optional[AppSettings] = None,
    controller: Optional[DetectionController] = None,
) -> FastAPI:
    settings = settings or load_settings()
    controller = controller or build_controller(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if settings.prewarm_on_startup:
            controller.submit_warm_up()
        try:
            yield
        finally:
            await controller.aclose()

    app = FastAPI(title="Capture & Detect", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.controller = controller

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/state", response_model=StateSnapshot)
    async def state(ctrl: DetectionController = Depends(get_controller)) -> StateSnapshot:
        return ctrl.snapshot()

    @app.post("/image/upload", response_model=StateSnapshot)
    async def upload_image(
        file: UploadFile = File(...),
        ctrl: DetectionController = Depends(get_controller),
    ) -> StateSnapshot:
        logger.info("Received upload: %s (%s)", file.filename, file.content_type)

        def _progress(percent: int) -> None:
            logger.debug("Upload %s: %d%%", file.filename, percent)

        try:
            result = await ctrl.acquire_upload(file, on_progress=_progress)
        finally:
            await file.close()
        _raise_for_acquisition(result)
        return ctrl.snapshot()

    @app.post("/image/camera", response_model=StateSnapshot)
    async def capture_image(ctrl: DetectionController = Depends(get_controller)) -> StateSnapshot:
        result = await ctrl.acquire_camera()
        _raise_for_acquisition(result)
        return ctrl.snapshot()

    @app.delete("/image", response_model=StateSnapshot)
    async def clear_image(ctrl: DetectionController = Depends(get_controller)) -> StateSnapshot:
        ctrl.reset()
        return ctrl.snapshot()

    @app.post("/detect", response_model=StateSnapshot)
    async def detect(
        wait: bool = Query(default=True),
        ctrl: DetectionController = Depends(get_controller),
    ) -> StateSnapshot:
        if wait:
            await ctrl.request_detection()
        else:
            ctrl.submit_detection()
        return ctrl.snapshot()

    @app.post("/model/warm", response_model=StateSnapshot)
    async def warm_model(ctrl: DetectionController = Depends(get_controller)) -> StateSnapshot:
        ctrl.submit_warm_up()
        return ctrl.snapshot()

    @app.get("/notifications", response_model=List[Notification])
    async def notifications(
        limit: Optional[int] = Query(default=None, ge=1),
        ctrl: DetectionController = Depends(get_controller),
    ) -> List[Notification]:
        return ctrl.notifications.recent(limit)

    @app.get("/overlay.png")
    async def overlay_png(
        display_width: Optional[int] = Query(default=None, ge=1),
        display_height: Optional[int] = Query(default=None, ge=1),
        composite: bool = Query(default=True),
        ctrl: DetectionController = Depends(get_controller),
    ) -> Response:
        if (display_width is None) != (display_height is None):
            raise HTTPException(status_code=400, detail="display_width and display_height go together")
        display_size = (display_width, display_height) if display_width is not None else None
        overlay = ctrl.render(display_size)
        if overlay is None or ctrl.image is None:
            raise HTTPException(status_code=404, detail="No image loaded")
        frame = overlay.composite(ctrl.image) if composite else overlay.surface
        ok, encoded = cv2.imencode(".png", frame)
        if not ok:
            raise HTTPException(status_code=500, detail="Unable to encode overlay")
        return Response(content=encoded.tobytes(), media_type="image/png")

    return app


def main() -> None:
    settings = load_settings()
    setup_logging(settings)
    logger.info("Starting capture-and-detect service on %s:%d", settings.host, settings.port)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port, log_level="warning")


if __name__ == "__main__":  # pragma: no cover
    main()
