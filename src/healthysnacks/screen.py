"""Screen controller and its gradio rendering.

The controller holds the screen state independently of any UI toolkit.
:class:`SnackScreen` binds one controller per browser session to gradio
components: a photo upload, a webcam capture, the result panel and its label.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import AsyncIterator
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import gradio as gr

from healthysnacks.classification import ClassificationAdapter
from healthysnacks.config import Settings, get_settings
from healthysnacks.ml.inference import InferencePool
from healthysnacks.ml.model_manager import OnnxModelManager
from healthysnacks.ml.pipeline import PipelineStartupError, build_pipeline
from healthysnacks.ml.preprocessing import ImageDecodeError, to_picked_image

if TYPE_CHECKING:
    from healthysnacks.ml.preprocessing import PickedImage

logger = logging.getLogger(__name__)

HINT_TEXT = "Choose or take a photo"


class SourceType(StrEnum):
    CAMERA = "webcam"
    PHOTO_LIBRARY = "upload"


@dataclass
class ScreenState:
    image: PickedImage | None = None
    result_text: str = ""
    results_visible: bool = False
    camera_enabled: bool = True
    picker_source: SourceType | None = None


class ScreenController:
    """Owns the screen state and forwards picked images to classification."""

    def __init__(
        self,
        adapter: ClassificationAdapter,
        camera_available: bool = True,
        hint_delay: float = 0.5,
        max_image_pixels: int | None = None,
    ) -> None:
        self._adapter = adapter
        self._camera_available = camera_available
        self._hint_delay = hint_delay
        self._max_image_pixels = max_image_pixels
        self._first_time = True
        self.state = ScreenState()

    # -- Lifecycle ----------------------------------------------------------

    def did_load(self) -> None:
        self.state.camera_enabled = self._camera_available
        self.state.results_visible = False
        self.state.result_text = HINT_TEXT

    def did_appear(self) -> float | None:
        """Return the delay before showing the hint, on the first appearance only."""
        if not self._first_time:
            return None
        self._first_time = False
        return self._hint_delay

    # -- Actions ------------------------------------------------------------

    def take_picture(self) -> SourceType | None:
        if not self.state.camera_enabled:
            return None
        return self._present_picker(SourceType.CAMERA)

    def choose_photo(self) -> SourceType:
        return self._present_picker(SourceType.PHOTO_LIBRARY)

    def _present_picker(self, source: SourceType) -> SourceType:
        self.state.picker_source = source
        self.hide_results()
        return source

    def did_cancel(self) -> None:
        self.state.picker_source = None

    def did_finish_picking(self, source: object) -> asyncio.Task[str] | None:
        """Display the picked image and start classifying it.

        Returns the task that updates the result panel, or None if the image
        could not be used.
        """
        self.state.picker_source = None
        try:
            picked = to_picked_image(source, self._max_image_pixels)
        except ImageDecodeError as exc:
            logger.warning("Cannot use picked image: %s", exc)
            return None

        self.state.image = picked
        self.hide_results()
        return asyncio.create_task(self._classify(picked))

    # -- Result panel -------------------------------------------------------

    def show_results(self) -> None:
        self.state.results_visible = True

    def hide_results(self) -> None:
        self.state.results_visible = False

    async def _classify(self, picked: PickedImage) -> str:
        outcome = await self._adapter.classify(picked)
        # Back on the event loop; whichever request finishes last owns the label.
        self.state.result_text = self._adapter.describe(outcome)
        self.show_results()
        return self.state.result_text


# ---------------------------------------------------------------------------
# gradio binding
# ---------------------------------------------------------------------------

PanelOutputs = tuple[Any, str, ScreenController]


class SnackScreen:
    """Gradio front end for the screen.

    Every browser session gets its own ScreenController. It lives in a
    ``gr.State`` and is passed into, and returned from, each event handler.
    """

    def __init__(
        self,
        adapter: ClassificationAdapter,
        camera_available: bool = True,
        hint_delay: float = 0.5,
        max_image_pixels: int | None = None,
    ) -> None:
        self._adapter = adapter
        self.camera_available = camera_available
        self._hint_delay = hint_delay
        self._max_image_pixels = max_image_pixels

    def new_controller(self) -> ScreenController:
        controller = ScreenController(
            self._adapter,
            camera_available=self.camera_available,
            hint_delay=self._hint_delay,
            max_image_pixels=self._max_image_pixels,
        )
        controller.did_load()
        return controller

    def _session(self, controller: ScreenController | None) -> ScreenController:
        return controller if controller is not None else self.new_controller()

    @staticmethod
    def _outputs(controller: ScreenController) -> PanelOutputs:
        return gr.update(visible=controller.state.results_visible), controller.state.result_text, controller

    async def on_appear(self, controller: ScreenController | None = None) -> PanelOutputs:
        controller = self._session(controller)
        delay = controller.did_appear()
        if delay is not None:
            await asyncio.sleep(delay)
            controller.show_results()
        return self._outputs(controller)

    async def on_photo_chosen(
        self, image: Any, controller: ScreenController | None = None
    ) -> AsyncIterator[PanelOutputs]:
        controller = self._session(controller)
        controller.choose_photo()
        async for outputs in self._finish_picking(controller, image):
            yield outputs

    async def on_picture_taken(
        self, image: Any, controller: ScreenController | None = None
    ) -> AsyncIterator[PanelOutputs]:
        controller = self._session(controller)
        if controller.take_picture() is None:
            logger.warning("Ignoring camera capture, no camera available")
            yield self._outputs(controller)
            return
        async for outputs in self._finish_picking(controller, image):
            yield outputs

    async def _finish_picking(self, controller: ScreenController, image: Any) -> AsyncIterator[PanelOutputs]:
        # First update hides the panel while the picker result is processed.
        yield self._outputs(controller)
        if image is None:
            controller.did_cancel()
            return
        task = controller.did_finish_picking(image)
        if task is not None:
            await task
            yield self._outputs(controller)

    def build_demo(self) -> gr.Blocks:
        """Render the screen as a gradio Blocks app."""
        with gr.Blocks(title="HealthySnacks") as demo:
            gr.Markdown("## HealthySnacks\nTake or choose a photo of a snack.")
            session = gr.State(None)
            with gr.Row():
                photo_in = gr.Image(sources=[SourceType.PHOTO_LIBRARY.value], type="pil", label="Choose photo")
                camera_in = None
                if self.camera_available:
                    camera_in = gr.Image(sources=[SourceType.CAMERA.value], type="pil", label="Take picture")
            with gr.Column(visible=False) as results_panel:
                results_label = gr.Textbox(value=HINT_TEXT, label="Result", interactive=False)

            outputs = [results_panel, results_label, session]
            demo.load(self.on_appear, inputs=[session], outputs=outputs)
            photo_in.input(self.on_photo_chosen, inputs=[photo_in, session], outputs=outputs)
            if camera_in is not None:
                camera_in.input(self.on_picture_taken, inputs=[camera_in, session], outputs=outputs)
        return demo


def create_screen(settings: Settings) -> tuple[SnackScreen, InferencePool]:
    """Build the pipeline eagerly and wire the screen to it.

    Raises:
        PipelineStartupError: If the model cannot be loaded.
    """
    manager = OnnxModelManager(settings)
    pipeline = build_pipeline(settings, manager)
    pool = InferencePool(settings)
    adapter = ClassificationAdapter(pipeline, pool, settings.confidence_threshold)
    screen = SnackScreen(
        adapter,
        camera_available=settings.camera_enabled,
        hint_delay=settings.hint_delay,
        max_image_pixels=settings.max_image_pixels,
    )
    return screen, pool


def launch(**kwargs: Any) -> None:
    """Start the screen. Exits the process if the model cannot be loaded."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    settings = get_settings()
    try:
        screen, pool = create_screen(settings)
    except PipelineStartupError:
        logger.critical("Cannot start without a classification model", exc_info=True)
        sys.exit(1)

    try:
        screen.build_demo().launch(server_name=settings.host, server_port=settings.port, **kwargs)
    finally:
        pool.shutdown()


if __name__ == "__main__":
    launch()
