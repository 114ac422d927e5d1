"""
Streaming render pipeline.

This module orchestrates one render from request to finished MP4 stream:
1. Issue a render token for the render-only view
2. Extract, resolve and probe the project's audio tracks
3. Launch the rendering surface and load the view
4. Start the encoder with the surviving audio inputs
5. Capture frames into the encoder while its output is streamed out
6. Tear everything down exactly once, however the render ends

Progress is published on the progress channel under the render session id.
"""

import asyncio
import logging
import urllib.parse
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable

from src.config import Settings, get_settings
from src.exceptions import (
    ConsumerDisconnect,
    EncoderError,
    RenderError,
    RenderSessionInUseError,
    RenderTimeoutError,
)
from src.render.audio_tracks import (
    AudioProbe,
    AudioTrackInfo,
    extract_audio_tracks,
    prepare_audio_inputs,
)
from src.render.encoder import FFmpegEncoder
from src.render.frame_capture import FrameCaptureLoop
from src.render.lifecycle import RenderLifecycle
from src.render.surface import PlaywrightSurface, RenderSurface
from src.schemas.render import RenderPhase, RenderProgress, RenderRequest
from src.services.media_url_resolver import MediaURLResolver, get_media_url_resolver
from src.services.progress_channel import RenderProgressChannel, get_progress_channel
from src.services.render_token_store import RenderToken, RenderTokenStore, get_render_token_store
from src.utils.media_info import has_audio_stream

logger = logging.getLogger(__name__)

SurfaceFactory = Callable[[int, int], RenderSurface]
EncoderFactory = Callable[..., FFmpegEncoder]


@dataclass
class RenderJobConfig:
    """Everything one render needs. Times are in seconds."""

    project_id: str
    render_session_id: str
    width: int
    height: int
    fps: int
    duration: float
    view_base_url: str
    project_snapshot: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_project(
        cls,
        project_id: str,
        document: dict[str, Any],
        request: RenderRequest | None = None,
        settings: Settings | None = None,
    ) -> "RenderJobConfig":
        """Build a job from a project document, applying request overrides."""
        settings = settings or get_settings()
        request = request or RenderRequest()
        return cls(
            project_id=str(project_id),
            render_session_id=request.render_session_id or str(uuid.uuid4()),
            width=request.width or document["width"],
            height=request.height or document["height"],
            fps=request.fps or document["fps"],
            duration=document["duration"],
            view_base_url=settings.render_view_base_url,
            project_snapshot=document,
        )


def _as_render_error(exc: BaseException) -> RenderError:
    if isinstance(exc, RenderError):
        return exc
    return RenderError(f"Render failed: {exc}")


def _positive_number(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value) if value > 0 else None


class RenderSession:
    """One end-to-end render, from token issue to the last output byte."""

    def __init__(
        self,
        job: RenderJobConfig,
        *,
        token_store: RenderTokenStore,
        channel: RenderProgressChannel,
        resolver: MediaURLResolver,
        surface_factory: SurfaceFactory,
        encoder_factory: EncoderFactory,
        probe: AudioProbe,
        settings: Settings,
    ) -> None:
        self.job = job
        self.session_id = job.render_session_id
        self.width = job.width
        self.height = job.height
        self.fps = job.fps
        self.duration = job.duration

        self._token_store = token_store
        self._channel = channel
        self._resolver = resolver
        self._surface_factory = surface_factory
        self._encoder_factory = encoder_factory
        self._probe = probe
        self._settings = settings

        self.lifecycle = RenderLifecycle(
            self.session_id, grace_seconds=settings.render_cleanup_grace_seconds
        )
        self.audio_tracks: list[AudioTrackInfo] = []
        self.total_frames = 0
        self.frames_captured = 0
        self.bytes_streamed = 0
        self.failure: RenderError | None = None
        self.disconnect: ConsumerDisconnect | None = None
        self.completed = False

        self._token: RenderToken | None = None
        self._probed_sources: dict[str, str | None] = {}
        self._watchdog: asyncio.Task | None = None
        self._last_progress = RenderProgress(phase=RenderPhase.INITIALIZING)
        self._terminal_published = False
        # Set once the outcome (completed, failed, disconnected) is decided
        self._ended = False

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    def _publish(self, progress: RenderProgress) -> None:
        if self._terminal_published:
            return
        if progress.is_terminal:
            self._terminal_published = True
        self._last_progress = progress
        self._channel.publish(self.session_id, progress)

    def _publish_error(self, message: str) -> None:
        last = self._last_progress
        self._publish(RenderProgress(
            phase=RenderPhase.ERROR,
            current_frame=last.current_frame,
            total_frames=last.total_frames,
            percent=last.percent,
            error=message,
        ))

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def build_view_url(self, token: str) -> str:
        base = self.job.view_base_url.rstrip("/")
        project_id = urllib.parse.quote(self.job.project_id, safe="")
        return f"{base}/render/{project_id}?{urllib.parse.urlencode({'token': token})}"

    def _apply_realized_config(self, config: dict[str, Any]) -> bool:
        """The loaded project decides fps and duration; dimensions stay as requested.

        Returns:
            True if the duration changed
        """
        fps = _positive_number(config.get("fps"))
        duration = _positive_number(config.get("duration"))
        if fps is not None and fps != self.fps:
            logger.info(f"[RENDER] {self.session_id}: view reports fps {fps} (requested {self.fps})")
            self.fps = int(fps) if fps.is_integer() else fps
        if duration is not None and duration != self.duration:
            logger.info(
                f"[RENDER] {self.session_id}: view reports duration {duration}s "
                f"(requested {self.duration}s)"
            )
            self.duration = duration
            return True
        return False

    async def _prepare_audio(self) -> list[AudioTrackInfo]:
        """Extract, resolve and probe audio tracks for the current duration.

        Probe results are kept per source, so a second call only probes
        sources it has not seen.
        """
        layers = self.job.project_snapshot.get("layers") or []
        return await prepare_audio_inputs(
            extract_audio_tracks(layers, self.duration),
            self._resolver,
            self._probe,
            fail_on_probe_error=self._settings.render_fail_on_probe_error,
            probed=self._probed_sources,
        )

    def _cancel_watchdog(self) -> None:
        task = self._watchdog
        if task is not None and not task.done():
            task.cancel()

    async def start(self) -> None:
        """Allocate every resource and begin capturing.

        Raises:
            RenderError: If setup fails. Resources allocated so far are released.
        """
        job = self.job
        logger.info(
            f"[RENDER] {self.session_id}: starting project {job.project_id} "
            f"({self.width}x{self.height}@{self.fps}, {self.duration}s)"
        )
        self._publish(RenderProgress(phase=RenderPhase.INITIALIZING))
        self.lifecycle.add_finalizer(self._cancel_watchdog)

        try:
            self._token = self._token_store.issue(job.project_id)
            token = self._token.token
            self.lifecycle.add_finalizer(lambda: self._token_store.invalidate(token))

            # Audio inputs are fixed before the first frame is written
            self.audio_tracks = await self._prepare_audio()

            surface = self._surface_factory(self.width, self.height)
            self.lifecycle.surface = surface
            await surface.launch()
            await surface.open(self.build_view_url(token))
            self._token_store.invalidate(token)
            if self._apply_realized_config(await surface.get_config()):
                # Track windows end at the project duration; derive them again
                self.audio_tracks = await self._prepare_audio()

            encoder = self._encoder_factory(
                width=self.width,
                height=self.height,
                fps=self.fps,
                duration=self.duration,
                audio_tracks=self.audio_tracks,
            )
            self.lifecycle.encoder = encoder
            await encoder.start()

            capture = FrameCaptureLoop(
                surface,
                encoder.frame_pipe,
                width=self.width,
                height=self.height,
                fps=self.fps,
                duration=self.duration,
                on_progress=self._publish,
            )
            self.total_frames = capture.total_frames
            self.lifecycle.capture_task = asyncio.create_task(self._capture(capture))
            self._watchdog = asyncio.create_task(self._watch())
        except asyncio.CancelledError:
            self._disconnected()
            raise
        except Exception as e:
            error = await self._fail(e)
            if error is e:
                raise
            raise error from e

    # ------------------------------------------------------------------
    # Background tasks
    # ------------------------------------------------------------------

    async def _capture(self, capture: FrameCaptureLoop) -> None:
        try:
            self.frames_captured = await capture.run()
        except EncoderError as e:
            await self._fail(await self._encoder_failure(e))
            return
        except Exception as e:
            await self._fail(e)
            return
        finally:
            self.frames_captured = capture.frames_captured

        logger.info(f"[RENDER] {self.session_id}: {self.frames_captured} frames captured, flushing encoder")
        self._publish(RenderProgress(
            phase=RenderPhase.ENCODING,
            current_frame=self.total_frames,
            total_frames=self.total_frames,
            percent=95,
        ))

    async def _encoder_failure(self, pipe_error: EncoderError) -> EncoderError:
        """A broken frame pipe usually means the encoder died; prefer its own report."""
        encoder = self.lifecycle.encoder
        if encoder is None:
            return pipe_error
        try:
            await asyncio.wait_for(encoder.wait(), timeout=self._settings.render_cleanup_grace_seconds)
        except asyncio.TimeoutError:
            return pipe_error
        if encoder.returncode:
            return encoder.error()
        return pipe_error

    async def _watch(self) -> None:
        timeout = self._settings.render_timeout_seconds
        await asyncio.sleep(timeout)
        await self._fail(
            RenderTimeoutError(f"Render exceeded {timeout:g}s"), reason="timeout"
        )

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    async def _fail(self, exc: BaseException, reason: str = "error") -> RenderError:
        """Record the first failure, report it, and tear down.

        Only the first trigger reports; later ones (or failures caused by an
        earlier teardown) just return the recorded outcome.
        """
        error = _as_render_error(exc)
        if not self._ended:
            self._ended = True
            self.failure = error
            logger.error(f"[RENDER] {self.session_id}: render failed ({error.code}): {error.message}")
            if isinstance(error, EncoderError) and error.stderr:
                logger.error(f"[ENCODER] stderr tail:\n{error.stderr}")
            self._publish_error(error.message)
        await self.lifecycle.cleanup(reason)
        return self.failure or error

    def _disconnected(self) -> None:
        """The consumer went away. Cleanup runs in its own task, never awaited here."""
        if self._ended:
            return
        self._ended = True
        self.disconnect = ConsumerDisconnect("consumer disconnected")
        logger.info(f"[RENDER] {self.session_id}: consumer disconnected, cancelling render")
        self._publish_error(f"cancelled: {self.disconnect}")
        self.lifecycle.schedule_cleanup("consumer_disconnect")

    async def stream(self) -> AsyncIterator[bytes]:
        """Yield the encoder's MP4 output as it is produced.

        Raises the render's error instead of ending cleanly when the render
        fails, so the transport aborts rather than delivering a truncated file.
        Closing this iterator early cancels the render.
        """
        encoder = self.lifecycle.encoder
        if encoder is None:
            raise RenderError("Render session was not started")
        chunk_size = self._settings.render_output_chunk_size

        try:
            while True:
                chunk = await encoder.read(chunk_size)
                if not chunk:
                    break
                self.bytes_streamed += len(chunk)
                yield chunk

            returncode = await encoder.wait()
            if self.failure is None and returncode != 0:
                await self._fail(encoder.error())
            if self.failure is not None:
                raise self.failure

            # The capture task has closed the pipe by now; let it finish reporting
            if self.lifecycle.capture_task is not None:
                await self.lifecycle.capture_task
            if self.failure is not None:
                raise self.failure

            self._ended = True
            self.completed = True
            logger.info(
                f"[RENDER] {self.session_id}: completed, {self.frames_captured} frames, "
                f"{self.bytes_streamed} bytes"
            )
            self._publish(RenderProgress(
                phase=RenderPhase.DONE,
                current_frame=self.total_frames,
                total_frames=self.total_frames,
                percent=100,
            ))
            await self.lifecycle.cleanup("completed")
        finally:
            # Reached without an outcome only when the consumer closed or
            # cancelled the stream. Nothing may be awaited here.
            if not self._ended:
                self._disconnected()


class VideoRenderer:
    """Starts render sessions and keeps the registry of live ones.

    Renders are independent: each session owns its own browser, encoder and
    pipes. Only the token store and progress channel are shared, both keyed.
    """

    def __init__(
        self,
        token_store: RenderTokenStore | None = None,
        channel: RenderProgressChannel | None = None,
        resolver: MediaURLResolver | None = None,
        surface_factory: SurfaceFactory | None = None,
        encoder_factory: EncoderFactory | None = None,
        probe: AudioProbe | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.token_store = token_store or get_render_token_store()
        self.channel = channel or get_progress_channel()
        self.resolver = resolver or get_media_url_resolver()
        self.surface_factory = surface_factory or (
            lambda width, height: PlaywrightSurface(width, height, self.settings)
        )
        self.encoder_factory = encoder_factory or FFmpegEncoder
        self.probe = probe or has_audio_stream
        self._sessions: dict[str, RenderSession] = {}

    @property
    def active_sessions(self) -> int:
        return len(self._sessions)

    def _release(self, session: RenderSession) -> None:
        if self._sessions.get(session.session_id) is session:
            del self._sessions[session.session_id]

    async def start(self, job: RenderJobConfig) -> RenderSession:
        """Start a render and return it once frames are flowing.

        Raises:
            RenderSessionInUseError: If a live render already uses the session id
            RenderError: If setup fails
        """
        if job.render_session_id in self._sessions:
            raise RenderSessionInUseError(
                f"Render session {job.render_session_id} is already in use"
            )

        session = RenderSession(
            job,
            token_store=self.token_store,
            channel=self.channel,
            resolver=self.resolver,
            surface_factory=self.surface_factory,
            encoder_factory=self.encoder_factory,
            probe=self.probe,
            settings=self.settings,
        )
        self._sessions[session.session_id] = session
        session.lifecycle.add_finalizer(lambda: self._release(session))
        logger.info(f"[RENDER] {self.active_sessions} active render sessions")
        await session.start()
        return session


_renderer: VideoRenderer | None = None


def get_video_renderer() -> VideoRenderer:
    global _renderer
    if _renderer is None:
        _renderer = VideoRenderer()
    return _renderer
