import asyncio
import threading

from capture_detect.core.errors import ErrorKind
from capture_detect.core.models import ModelStatus, NotificationCategory, Phase
from capture_detect.services.image_source import BytesUpload
from capture_detect.tests.stubs import (
    THREE_PREDICTIONS,
    CountingLoader,
    FakeCapture,
    StubBackend,
    build_controller,
    build_settings,
    encode_png,
    make_image,
    wait_for,
)


def test_detection_produces_boxes_and_summary() -> None:
    settings = build_settings()
    backend = StubBackend([THREE_PREDICTIONS])
    controller = build_controller(settings, CountingLoader(backend))
    seen = []
    controller.subscribe(lambda state: seen.append(state.label))

    async def scenario():
        controller.accept_image(make_image())
        return await controller.request_detection()

    result = asyncio.run(scenario())

    assert result.state.phase is Phase.DETECTED
    assert result.state.result_count == 3
    assert result.notifications == ()
    assert seen == ["AwaitingImage", "ModelLoading", "Detecting", "Detected"]
    assert controller.summary == (("person", 95), ("dog", 80), ("cup", 41))
    assert controller.overlay is not None
    assert len(controller.overlay.boxes) == 3
    assert [label.text for label in controller.overlay.labels] == ["person 95%", "dog 80%", "cup 41%"]
    assert controller.model_status is ModelStatus.READY


def test_empty_result_notifies_once() -> None:
    settings = build_settings()
    controller = build_controller(settings, CountingLoader(StubBackend([[]])))

    async def scenario():
        controller.accept_image(make_image())
        return await controller.request_detection()

    result = asyncio.run(scenario())

    assert result.state.phase is Phase.DETECTED
    assert result.state.result_count == 0
    assert len(result.notifications) == 1
    assert result.notifications[0].category is NotificationCategory.INFO
    assert controller.notifications.recent() == list(result.notifications)
    assert controller.overlay is not None
    assert controller.overlay.boxes == ()


def test_model_load_failure_skips_inference() -> None:
    settings = build_settings()
    backend = StubBackend([THREE_PREDICTIONS])
    loader = CountingLoader(backend, error=RuntimeError("weights missing"))
    controller = build_controller(settings, loader)

    async def scenario():
        controller.accept_image(make_image())
        return await controller.request_detection()

    result = asyncio.run(scenario())

    assert result.state.label == "Failed(model_load)"
    assert result.error_kind is ErrorKind.MODEL_LOAD
    assert backend.calls == 0
    assert controller.model_status is ModelStatus.FAILED

    controller.accept_image(make_image(name="next.png"))
    assert controller.state.phase is Phase.AWAITING_IMAGE


def test_retry_after_load_failure_loads_again() -> None:
    settings = build_settings()
    backend = StubBackend([THREE_PREDICTIONS])
    loader = CountingLoader(backend, error=RuntimeError("network down"))
    controller = build_controller(settings, loader)

    async def scenario():
        controller.accept_image(make_image())
        await controller.request_detection()
        loader.error = None
        return await controller.request_detection()

    result = asyncio.run(scenario())

    assert loader.calls == 2
    assert result.state.phase is Phase.DETECTED
    assert result.state.result_count == 3


def test_inference_failure_moves_to_failed() -> None:
    settings = build_settings()
    backend = StubBackend(error=RuntimeError("device lost"))
    controller = build_controller(settings, CountingLoader(backend))

    async def scenario():
        controller.accept_image(make_image())
        return await controller.request_detection()

    result = asyncio.run(scenario())

    assert result.state.label == "Failed(inference)"
    assert controller.results == ()


def test_malformed_payload_is_an_inference_failure() -> None:
    settings = build_settings()
    backend = StubBackend([[{"class": "person", "score": 3.0, "bbox": [0, 0, 1, 1]}]])
    controller = build_controller(settings, CountingLoader(backend))

    async def scenario():
        controller.accept_image(make_image())
        return await controller.request_detection()

    result = asyncio.run(scenario())

    assert result.state.reason is ErrorKind.INFERENCE


def test_detect_without_image_is_ignored() -> None:
    settings = build_settings()
    loader = CountingLoader(StubBackend())
    controller = build_controller(settings, loader)

    result = asyncio.run(controller.request_detection())

    assert result.state.phase is Phase.IDLE
    assert loader.calls == 0


def test_second_request_during_detection_is_ignored() -> None:
    settings = build_settings()
    gate = threading.Event()
    backend = StubBackend([THREE_PREDICTIONS], gates=[gate])
    controller = build_controller(settings, CountingLoader(backend))

    async def scenario():
        controller.accept_image(make_image())
        first = asyncio.create_task(controller.request_detection())
        await wait_for(lambda: backend.calls == 1)
        second = await controller.request_detection()
        assert second.state.phase is Phase.DETECTING
        gate.set()
        return await first

    result = asyncio.run(scenario())

    assert backend.calls == 1
    assert result.state.phase is Phase.DETECTED


def test_second_request_during_model_load_is_ignored() -> None:
    settings = build_settings()
    gate = threading.Event()
    loader = CountingLoader(StubBackend([THREE_PREDICTIONS]), gate=gate)
    controller = build_controller(settings, loader)

    async def scenario():
        controller.accept_image(make_image())
        first = asyncio.create_task(controller.request_detection())
        await wait_for(lambda: loader.calls == 1)
        ignored = await controller.request_detection()
        assert ignored.state.phase is Phase.MODEL_LOADING
        gate.set()
        return await first

    result = asyncio.run(scenario())

    assert loader.calls == 1
    assert controller.model.load_attempts == 1
    assert result.state.phase is Phase.DETECTED


def test_stale_inference_result_is_discarded() -> None:
    settings = build_settings()
    gate = threading.Event()
    late = [{"class": "stale", "score": 0.9, "bbox": [0, 0, 5, 5]}]
    fresh = [{"class": "fresh", "score": 0.7, "bbox": [1, 1, 5, 5]}]
    backend = StubBackend([late, fresh], gates=[gate])
    controller = build_controller(settings, CountingLoader(backend))

    async def scenario():
        controller.accept_image(make_image(name="first.png"))
        first = asyncio.create_task(controller.request_detection())
        await wait_for(lambda: backend.calls == 1)
        controller.accept_image(make_image(width=80, height=60, name="second.png"))
        second = await controller.request_detection()
        gate.set()
        await first
        return second

    second = asyncio.run(scenario())

    assert second.state.phase is Phase.DETECTED
    assert controller.state == second.state
    assert controller.summary == (("fresh", 70),)
    assert controller.image.name == "second.png"


def test_image_replaced_during_load_is_the_one_detected() -> None:
    settings = build_settings()
    gate = threading.Event()
    backend = StubBackend([THREE_PREDICTIONS])
    loader = CountingLoader(backend, gate=gate)
    controller = build_controller(settings, loader)

    async def scenario():
        controller.accept_image(make_image())
        first = asyncio.create_task(controller.request_detection())
        await wait_for(lambda: loader.calls == 1)
        controller.accept_image(make_image(width=80, height=60))
        second = asyncio.create_task(controller.request_detection())
        await asyncio.sleep(0)
        gate.set()
        await asyncio.gather(first, second)

    asyncio.run(scenario())

    assert loader.calls == 1
    assert backend.frame_shapes == [(60, 80, 3)]
    assert controller.state.phase is Phase.DETECTED


def test_new_image_clears_previous_results() -> None:
    settings = build_settings()
    controller = build_controller(settings, CountingLoader(StubBackend([THREE_PREDICTIONS])))

    async def scenario():
        controller.accept_image(make_image())
        await controller.request_detection()

    asyncio.run(scenario())
    assert controller.results

    controller.accept_image(make_image(name="other.png"))

    assert controller.state.phase is Phase.AWAITING_IMAGE
    assert controller.results == ()
    assert controller.overlay is None
    assert controller.snapshot().detections == []


def test_invalid_upload_keeps_idle_state() -> None:
    settings = build_settings()
    controller = build_controller(settings, CountingLoader(StubBackend()))

    result = asyncio.run(controller.acquire_upload(BytesUpload(b"plain text", "text/plain", "notes.txt")))

    assert result.state.phase is Phase.IDLE
    assert result.error_kind is ErrorKind.INVALID_INPUT_TYPE
    assert result.notifications[0].category is NotificationCategory.VALIDATION
    assert controller.image is None


def test_invalid_upload_keeps_detected_state() -> None:
    settings = build_settings()
    controller = build_controller(settings, CountingLoader(StubBackend([THREE_PREDICTIONS])))

    async def scenario():
        controller.accept_image(make_image())
        await controller.request_detection()
        return await controller.acquire_upload(BytesUpload(b"%PDF", "application/pdf", "doc.pdf"))

    result = asyncio.run(scenario())

    assert result.state.phase is Phase.DETECTED
    assert len(controller.results) == 3


def test_valid_upload_moves_to_awaiting_image() -> None:
    settings = build_settings()
    controller = build_controller(settings, CountingLoader(StubBackend()))

    result = asyncio.run(controller.acquire_upload(BytesUpload(encode_png(), "image/png", "shot.png")))

    assert result.state.phase is Phase.AWAITING_IMAGE
    assert controller.image.natural_size == (40, 30)


def test_camera_failure_keeps_state() -> None:
    settings = build_settings()
    capture = FakeCapture(opened=False)
    controller = build_controller(settings, CountingLoader(StubBackend()), capture_factory=lambda device: capture)

    result = asyncio.run(controller.acquire_camera())

    assert result.state.phase is Phase.IDLE
    assert result.error_kind is ErrorKind.CAMERA_UNAVAILABLE
    assert capture.released


def test_reset_returns_to_idle() -> None:
    settings = build_settings()
    controller = build_controller(settings, CountingLoader(StubBackend()))
    controller.accept_image(make_image())

    result = controller.reset()

    assert result.state.phase is Phase.IDLE
    assert controller.image is None
    assert controller.render() is None


def test_warm_up_loads_model_in_background() -> None:
    settings = build_settings(warm_up_model=True)
    backend = StubBackend()
    controller = build_controller(settings, CountingLoader(backend))

    result = asyncio.run(controller.warm_up())

    assert result.state.phase is Phase.IDLE
    assert controller.model_status is ModelStatus.READY
    assert backend.warm_ups == 1


def test_warm_up_with_image_passes_through_model_loading() -> None:
    settings = build_settings()
    controller = build_controller(settings, CountingLoader(StubBackend()))
    seen = []
    controller.subscribe(lambda state: seen.append(state.phase))
    controller.accept_image(make_image())

    result = asyncio.run(controller.warm_up())

    assert seen == [Phase.AWAITING_IMAGE, Phase.MODEL_LOADING, Phase.AWAITING_IMAGE]
    assert result.state.phase is Phase.AWAITING_IMAGE


def test_render_rescales_for_display_size() -> None:
    settings = build_settings()
    controller = build_controller(settings, CountingLoader(StubBackend([THREE_PREDICTIONS])))

    async def scenario():
        controller.accept_image(make_image(width=160, height=120))
        await controller.request_detection()

    asyncio.run(scenario())
    overlay = controller.render((80, 60))

    assert overlay.display_size == (80, 60)
    assert overlay.boxes[0].as_tuple() == (5.0, 15.0, 20.0, 30.0)


def test_unsubscribed_observer_is_not_called() -> None:
    settings = build_settings()
    controller = build_controller(settings, CountingLoader(StubBackend()))
    seen = []
    unsubscribe = controller.subscribe(seen.append)
    controller.accept_image(make_image())
    unsubscribe()
    controller.reset()

    assert [state.phase for state in seen] == [Phase.AWAITING_IMAGE]


def test_aclose_cancels_pending_work() -> None:
    settings = build_settings()
    gate = threading.Event()
    loader = CountingLoader(StubBackend(), gate=gate)
    controller = build_controller(settings, loader)

    async def scenario():
        controller.accept_image(make_image())
        task = controller.submit_detection()
        await wait_for(lambda: loader.calls == 1)
        await controller.aclose()
        gate.set()
        return task

    task = asyncio.run(scenario())

    assert task.cancelled()


def test_new_image_is_rendered_at_its_own_natural_size() -> None:
    settings = build_settings()
    controller = build_controller(settings, CountingLoader(StubBackend([THREE_PREDICTIONS])))
    controller.accept_image(make_image(width=160, height=120))
    controller.render((80, 60))
    replacement = make_image(width=40, height=120, name="tall.png")

    async def scenario():
        controller.accept_image(replacement)
        await controller.request_detection()

    asyncio.run(scenario())

    assert controller.overlay.display_size == replacement.natural_size
    assert controller.overlay.scale == (1.0, 1.0)
    assert controller.render().display_size == (40, 120)


def test_reset_forgets_display_size() -> None:
    settings = build_settings()
    controller = build_controller(settings, CountingLoader(StubBackend()))
    controller.accept_image(make_image(width=160, height=120))
    controller.render((80, 60))

    controller.reset()
    controller.accept_image(make_image(width=64, height=48))

    assert controller.render().display_size == (64, 48)


def test_failed_background_warm_up_is_reported() -> None:
    settings = build_settings()
    loader = CountingLoader(StubBackend(), error=RuntimeError("weights missing"))
    controller = build_controller(settings, loader)

    result = asyncio.run(controller.warm_up())

    assert result.state.phase is Phase.IDLE
    assert controller.model_status is ModelStatus.FAILED
    assert result.error_kind is ErrorKind.MODEL_LOAD
    (notification,) = controller.notifications.recent()
    assert notification.title == "Model loading failed"
    assert notification.category is NotificationCategory.OPERATIONAL


def test_failed_warm_up_with_image_is_reported_once() -> None:
    settings = build_settings()
    loader = CountingLoader(StubBackend(), error=RuntimeError("weights missing"))
    controller = build_controller(settings, loader)
    controller.accept_image(make_image())

    result = asyncio.run(controller.warm_up())

    assert result.state.label == "Failed(model_load)"
    assert len(controller.notifications.recent()) == 1


def test_failed_background_load_joined_by_detect_is_reported_once() -> None:
    settings = build_settings()
    gate = threading.Event()
    loader = CountingLoader(StubBackend(), error=RuntimeError("weights missing"), gate=gate)
    controller = build_controller(settings, loader)

    async def scenario():
        warm = asyncio.create_task(controller.warm_up())
        await wait_for(lambda: loader.calls == 1)
        controller.accept_image(make_image())
        detect = asyncio.create_task(controller.request_detection())
        await wait_for(lambda: controller.state.phase is Phase.MODEL_LOADING)
        gate.set()
        await asyncio.gather(warm, detect)

    asyncio.run(scenario())

    assert loader.calls == 1
    assert controller.state.label == "Failed(model_load)"
    assert [item.title for item in controller.notifications.recent()] == ["Model loading failed"]
