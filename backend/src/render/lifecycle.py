"""Single-shot teardown of the resources owned by one render.

Every way a render can end (completion, encoder failure, capture failure,
consumer disconnect, watchdog timeout) calls the same cleanup(). The first
call wins; later calls return immediately.

Teardown order:
1. kill the encoder
2. destroy the frame pipe (unblocks a capture waiting on backpressure)
3. close the page
4. close the browser
The capture task is cancelled and awaited between 2 and 3 so the page is
never closed under an in-flight snapshot. Teardown runs in a task of its own,
so a caller that is cancelled while waiting (a disconnecting consumer) does
not cut it short.
"""

import asyncio
import logging
from typing import Awaitable, Callable

from src.render.encoder import FFmpegEncoder
from src.render.surface import RenderSurface

logger = logging.getLogger(__name__)

Finalizer = Callable[[], None]


class RenderLifecycle:
    """Owns the surface, encoder and frame pipe of one render session."""

    def __init__(self, session_id: str, grace_seconds: float = 5.0) -> None:
        self.session_id = session_id
        self.grace_seconds = grace_seconds

        self.surface: RenderSurface | None = None
        self.encoder: FFmpegEncoder | None = None
        self.capture_task: asyncio.Task | None = None

        self.reason: str | None = None
        self.teardown_count = 0
        self._cleaning_up = False
        self._requested_by: asyncio.Task | None = None
        self._closed = asyncio.Event()
        self._finalizers: list[Finalizer] = []
        self._background: set[asyncio.Task] = set()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def add_finalizer(self, finalizer: Finalizer) -> None:
        """Register a synchronous callback run once, after teardown."""
        self._finalizers.append(finalizer)

    async def _step(self, name: str, action: Callable[[], Awaitable[None]]) -> None:
        try:
            await asyncio.wait_for(action(), timeout=self.grace_seconds)
        except asyncio.TimeoutError:
            logger.warning(f"[CLEANUP] {self.session_id}: {name} timed out")
        except Exception as e:
            logger.warning(f"[CLEANUP] {self.session_id}: {name} failed: {e}")

    async def _stop_encoder(self) -> None:
        encoder = self.encoder
        if encoder is None or encoder.pid is None:
            return
        encoder.kill()
        await encoder.wait()

    async def _destroy_pipe(self) -> None:
        encoder = self.encoder
        if encoder is not None and encoder.frame_pipe is not None:
            encoder.frame_pipe.destroy()

    async def _stop_capture(self) -> None:
        task = self.capture_task
        # The capture task may itself be waiting on this teardown
        if task is None or task.done() or task is self._requested_by:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.debug(f"[CLEANUP] {self.session_id}: capture ended with {e!r}")

    async def _close_page(self) -> None:
        if self.surface is not None:
            await self.surface.close_page()

    async def _close_browser(self) -> None:
        if self.surface is not None:
            await self.surface.close_browser()

    async def _teardown(self, reason: str) -> None:
        logger.info(f"[CLEANUP] {self.session_id}: tearing down ({reason})")
        try:
            await self._step("encoder kill", self._stop_encoder)
            await self._step("frame pipe destroy", self._destroy_pipe)
            await self._step("capture stop", self._stop_capture)
            await self._step("page close", self._close_page)
            await self._step("browser close", self._close_browser)
        finally:
            for finalizer in self._finalizers:
                try:
                    finalizer()
                except Exception as e:
                    logger.warning(f"[CLEANUP] {self.session_id}: finalizer failed: {e}")
            self._closed.set()

    async def cleanup(self, reason: str) -> bool:
        """Release every resource exactly once.

        Teardown runs in its own task; cancelling the caller stops the wait,
        not the teardown.

        Returns:
            True if this call performed the teardown, False if another
            trigger already had
        """
        task = self.schedule_cleanup(reason)
        if task is None:
            return False
        await asyncio.shield(task)
        return True

    def schedule_cleanup(self, reason: str) -> asyncio.Task | None:
        """Start teardown in its own task without waiting for it.

        Used from paths that must not await (a response stream being closed).
        Returns None if teardown was already started.
        """
        if self._cleaning_up:
            return None
        self._cleaning_up = True
        self.reason = reason
        self.teardown_count += 1
        self._requested_by = asyncio.current_task()
        task = asyncio.get_running_loop().create_task(self._teardown(reason))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def wait_closed(self, timeout: float | None = None) -> None:
        await asyncio.wait_for(self._closed.wait(), timeout=timeout)
