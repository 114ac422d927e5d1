"""Frame capture loop: seek, settle, snapshot, write, strictly in order."""

import logging
import math
from typing import Callable, Iterator

from src.render.encoder import FramePipe
from src.render.surface import RenderSurface
from src.schemas.render import RenderPhase, RenderProgress

logger = logging.getLogger(__name__)

# Share of the progress bar covered by capturing; the rest is encoder flush
CAPTURE_PERCENT_SHARE = 95


def total_frame_count(fps: float, duration: float) -> int:
    """ceil(fps * duration), ignoring float noise (30 * 0.1 is 3, not 4)."""
    return math.ceil(round(fps * duration, 6))


def frame_times(fps: float, duration: float) -> Iterator[tuple[int, float]]:
    """Yield (index, timestamp) for every frame of the render."""
    for index in range(total_frame_count(fps, duration)):
        yield index, index / fps


def capture_percent(index: int, total_frames: int) -> int:
    """Half-up rounding of index / total * 95."""
    if total_frames <= 0:
        return 0
    return int(math.floor(index / total_frames * CAPTURE_PERCENT_SHARE + 0.5))


class FrameCaptureLoop:
    """
    Drives the rendering surface frame by frame into the frame pipe.

    The surface has a single time cursor, so frame i+1 is never requested
    before frame i has been handed to the pipe. The only suspension points
    are the settle wait and pipe backpressure.
    """

    def __init__(
        self,
        surface: RenderSurface,
        pipe: FramePipe,
        width: int,
        height: int,
        fps: float,
        duration: float,
        on_progress: Callable[[RenderProgress], None] | None = None,
    ) -> None:
        self.surface = surface
        self.pipe = pipe
        self.width = width
        self.height = height
        self.fps = fps
        self.duration = duration
        self.total_frames = total_frame_count(fps, duration)
        self._on_progress = on_progress
        self.frames_captured = 0

    def _report(self, progress: RenderProgress) -> None:
        if self._on_progress:
            self._on_progress(progress)

    async def run(self) -> int:
        """Capture every frame, then close the pipe. Returns frames written."""
        logger.info(
            f"[CAPTURE] Capturing {self.total_frames} frames at {self.fps} fps "
            f"({self.duration}s)"
        )
        self._report(RenderProgress(
            phase=RenderPhase.CAPTURING,
            current_frame=0,
            total_frames=self.total_frames,
            percent=0,
        ))

        for index, time in frame_times(self.fps, self.duration):
            await self.surface.seek_and_wait(time)
            frame = await self.surface.screenshot(self.width, self.height)
            await self.pipe.write(frame)
            self.frames_captured = index + 1
            logger.debug(f"[CAPTURE] Frame {index + 1}/{self.total_frames} at t={time:.3f}s")

            self._report(RenderProgress(
                phase=RenderPhase.CAPTURING,
                current_frame=index + 1,
                total_frames=self.total_frames,
                percent=capture_percent(index, self.total_frames),
            ))

        # End-of-input for the encoder
        await self.pipe.close()
        return self.frames_captured
