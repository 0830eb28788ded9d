"""Coordinate image acquisition, model lifecycle, inference, and rendering."""
from __future__ import annotations

import asyncio
import itertools
import logging
from contextlib import suppress
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Set, Tuple

from ..core.errors import CameraError, ErrorKind, InferenceError, InvalidInput, ModelLoadError
from ..core.models import (
    DetectionPayload,
    DetectionResultSet,
    Image,
    ImageInfo,
    ModelStatus,
    Notification,
    PipelineState,
    StateSnapshot,
    SummaryEntry,
)
from ..core.transitions import (
    AcquisitionFailed,
    BackgroundLoadFailed,
    DetectRequested,
    Effect,
    ImageAcquired,
    ImageCleared,
    InferenceFailed,
    InferenceSucceeded,
    ModelLoaded,
    ModelLoadFailed,
    Step,
    WarmUpRequested,
    transition,
)
from ..utils.geometry import Size
from .image_source import ImageSource, ProgressCallback, UploadSource
from .inference import ModelResource
from .notifications import NotificationCenter
from .overlay import Overlay, OverlayRenderer, SummaryList, summarize

LOGGER = logging.getLogger(__name__)

StateObserver = Callable[[PipelineState], None]


@dataclass(frozen=True)
class StepResult:
    """State after an operation plus the notifications it raised."""

    state: PipelineState
    notifications: Tuple[Notification, ...] = ()

    @property
    def error_kind(self) -> Optional[ErrorKind]:
        for notification in self.notifications:
            if notification.kind is not None:
                return notification.kind
        return None


class DetectionController:
    """Single-flight detection pipeline exposing one current state.

    All state changes funnel through :meth:`_apply`, which runs the pure
    :func:`transition` function. Model loads and inference calls are tagged
    with the request id that started them; results arriving after the state
    has moved on are dropped.
    """

    def __init__(
        self,
        image_source: ImageSource,
        model: ModelResource,
        renderer: OverlayRenderer,
        notifications: Optional[NotificationCenter] = None,
    ) -> None:
        self.image_source = image_source
        self.model = model
        self.renderer = renderer
        self.notifications = notifications or NotificationCenter()
        self._display_size: Optional[Size] = None
        self._state = PipelineState.idle()
        self._image: Optional[Image] = None
        self._results: DetectionResultSet = ()
        self._overlay: Optional[Overlay] = None
        self._request_ids = itertools.count(1)
        self._observers: List[StateObserver] = []
        self._tasks: Set[asyncio.Task] = set()

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def image(self) -> Optional[Image]:
        return self._image

    @property
    def results(self) -> DetectionResultSet:
        return self._results

    @property
    def overlay(self) -> Optional[Overlay]:
        return self._overlay

    @property
    def summary(self) -> SummaryList:
        return summarize(self._results)

    @property
    def model_status(self) -> ModelStatus:
        return self.model.status

    def subscribe(self, observer: StateObserver) -> Callable[[], None]:
        self._observers.append(observer)

        def _unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return _unsubscribe

    # Acquisition -------------------------------------------------------------

    async def acquire_upload(self, upload: UploadSource, on_progress: Optional[ProgressCallback] = None) -> StepResult:
        return await self._acquire(self.image_source.from_upload(upload, on_progress))

    async def acquire_camera(self) -> StepResult:
        return await self._acquire(self.image_source.from_camera())

    def accept_image(self, image: Image) -> StepResult:
        """Replace the current image.

        Earlier results and overlays are dropped and the overlay falls back to
        the new image's natural size until the next ``render(display_size)``.
        """

        raised: List[Notification] = []
        self._image = image
        self._results = ()
        self._overlay = None
        self._display_size = None
        self._apply(ImageAcquired(), raised)
        return StepResult(self._state, tuple(raised))

    def reset(self) -> StepResult:
        raised: List[Notification] = []
        self._image = None
        self._results = ()
        self._overlay = None
        self._display_size = None
        self._apply(ImageCleared(), raised)
        return StepResult(self._state, tuple(raised))

    async def _acquire(self, pending: Awaitable[Image]) -> StepResult:
        try:
            image = await pending
        except (InvalidInput, CameraError) as exc:
            LOGGER.warning("Image acquisition failed (%s): %s", exc.kind.value, exc)
            raised: List[Notification] = []
            self._apply(AcquisitionFailed(exc.kind, exc.message), raised)
            return StepResult(self._state, tuple(raised))
        return self.accept_image(image)

    # Detection ---------------------------------------------------------------

    async def request_detection(self) -> StepResult:
        """Detect objects in the current image, loading the model if needed.

        Ignored while a load or detection is already in flight, and when
        there is no image.
        """

        raised: List[Notification] = []
        request_id = next(self._request_ids)
        step = self._apply(DetectRequested(request_id, model_ready=self.model.ready), raised)
        if not step.applied:
            LOGGER.info("Detect request %d ignored in state %s", request_id, self._state.label)
            return StepResult(self._state, tuple(raised))
        await self._run_effects(step, request_id, raised)
        return StepResult(self._state, tuple(raised))

    def submit_detection(self) -> asyncio.Task:
        """Schedule :meth:`request_detection` without waiting for it."""

        return self._spawn(self.request_detection())

    async def warm_up(self) -> StepResult:
        """Start loading the model before any detect-request arrives."""

        raised: List[Notification] = []
        request_id = next(self._request_ids)
        step = self._apply(WarmUpRequested(request_id, model_ready=self.model.ready), raised)
        if step.applied or step.effect is None:
            await self._run_effects(step, request_id, raised)
            return StepResult(self._state, tuple(raised))

        # Background load: the state is untouched, but a failure is still reported.
        event = await self._load_model(request_id)
        if isinstance(event, ModelLoadFailed):
            self._apply(BackgroundLoadFailed(event.message), raised)
        return StepResult(self._state, tuple(raised))

    def submit_warm_up(self) -> asyncio.Task:
        return self._spawn(self.warm_up())

    async def _run_effects(self, step: Step, request_id: int, raised: List[Notification]) -> None:
        while step.effect is not None:
            if step.effect is Effect.LOAD_MODEL:
                event = await self._load_model(request_id)
                step = self._apply(event, raised)
            else:
                event = await self._infer(request_id)
                step = self._apply(event, raised, on_accept=self._store_results(event))
            if not step.applied:
                LOGGER.info(
                    "Discarding stale %s for request %d (state is %s)",
                    type(event).__name__,
                    request_id,
                    self._state.label,
                )

    async def _load_model(self, request_id: int) -> object:
        try:
            await self.model.load()
        except ModelLoadError as exc:
            return ModelLoadFailed(request_id, exc.message)
        return ModelLoaded(request_id)

    async def _infer(self, request_id: int) -> object:
        # The image current at inference time is the one detected, even if it
        # replaced the image that was shown when the request was issued.
        image = self._image
        handle = self.model.handle
        if image is None or handle is None:
            return InferenceFailed(request_id, "No image or model available")
        try:
            results = await self.model.detect(handle, image)
        except InferenceError as exc:
            return InferenceFailed(request_id, exc.message)
        LOGGER.info("Request %d produced %d detections", request_id, len(results))
        return InferenceSucceeded(request_id, results)

    def _store_results(self, event: object) -> Optional[Callable[[], None]]:
        if not isinstance(event, InferenceSucceeded):
            return None

        def _accept() -> None:
            self._results = event.results
            self.render()

        return _accept

    # Rendering ---------------------------------------------------------------

    def render(self, display_size: Optional[Size] = None) -> Optional[Overlay]:
        """Re-render the overlay, optionally for a new displayed image size."""

        if display_size is not None:
            self._display_size = display_size
        if self._image is None:
            self._overlay = None
            return None
        self._overlay = self.renderer.render(self._image, self._results, self._display_size)
        return self._overlay

    def snapshot(self) -> StateSnapshot:
        image_info = None
        if self._image is not None:
            image_info = ImageInfo(
                width=self._image.width,
                height=self._image.height,
                media_type=self._image.media_type,
                source=self._image.source,
                name=self._image.name,
            )
        return StateSnapshot(
            state=self._state.label,
            phase=self._state.phase,
            reason=self._state.reason,
            message=self._state.message,
            request_id=self._state.request_id,
            model_status=self.model.status,
            image=image_info,
            detections=[
                DetectionPayload(
                    label=detection.class_label,
                    confidence=detection.confidence,
                    bbox=list(detection.bbox.as_tuple()),
                )
                for detection in self._results
            ],
            summary=[SummaryEntry(label=label, percent=percent) for label, percent in self.summary],
        )

    # Internal ----------------------------------------------------------------

    def _apply(
        self,
        event: object,
        raised: List[Notification],
        on_accept: Optional[Callable[[], None]] = None,
    ) -> Step:
        step = transition(self._state, event)
        if step.applied:
            if on_accept is not None:
                on_accept()
            previous, self._state = self._state, step.state
            if previous != step.state:
                LOGGER.info(
                    "STATE TRANSITION: %s -> %s (event: %s)",
                    previous.label,
                    step.state.label,
                    type(event).__name__,
                )
                for observer in list(self._observers):
                    observer(step.state)
        for notification in step.notifications:
            self.notifications.publish(notification)
            raised.append(notification)
        return step

    def _spawn(self, coroutine: Awaitable[StepResult]) -> asyncio.Task:
        task = asyncio.ensure_future(coroutine)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def aclose(self) -> None:
        """Cancel background work scheduled through ``submit_*``."""

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        for task in tasks:
            with suppress(asyncio.CancelledError):
                await task
