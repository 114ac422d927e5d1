"""Tests for single-shot render teardown."""

import asyncio

import pytest

from conftest import FakeSurface
from src.render.lifecycle import RenderLifecycle


class FakePipe:
    def __init__(self, events: list[str]) -> None:
        self.events = events

    def destroy(self) -> None:
        self.events.append("pipe_destroy")


class FakeEncoder:
    def __init__(self, events: list[str]) -> None:
        self.events = events
        self.pid = 4242
        self.frame_pipe = FakePipe(events)
        self._exited = asyncio.Event()

    def kill(self) -> None:
        self.events.append("encoder_kill")
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        return -9


async def hanging_capture(events: list[str]) -> None:
    try:
        await asyncio.sleep(60)
    finally:
        events.append("capture_stopped")


@pytest.fixture
def events() -> list[str]:
    return []


@pytest.fixture
def lifecycle(events) -> RenderLifecycle:
    lifecycle = RenderLifecycle("session-1", grace_seconds=0.5)
    lifecycle.surface = FakeSurface(events=events)
    lifecycle.encoder = FakeEncoder(events)
    lifecycle.add_finalizer(lambda: events.append("finalizer"))
    return lifecycle


class TestRenderLifecycle:
    @pytest.mark.asyncio
    async def test_teardown_order(self, lifecycle, events):
        lifecycle.capture_task = asyncio.create_task(hanging_capture(events))
        await asyncio.sleep(0)

        assert await lifecycle.cleanup("completed") is True

        assert events == [
            "encoder_kill",
            "pipe_destroy",
            "capture_stopped",
            "close_page",
            "close_browser",
            "finalizer",
        ]
        assert lifecycle.reason == "completed"
        assert lifecycle.closed

    @pytest.mark.asyncio
    async def test_concurrent_cleanup_runs_once(self, lifecycle, events):
        lifecycle.capture_task = asyncio.create_task(hanging_capture(events))
        await asyncio.sleep(0)

        results = await asyncio.gather(
            lifecycle.cleanup("timeout"),
            lifecycle.cleanup("consumer_disconnect"),
            lifecycle.cleanup("error"),
        )

        assert results == [True, False, False]
        assert lifecycle.teardown_count == 1
        assert lifecycle.reason == "timeout"
        assert events.count("encoder_kill") == 1
        assert events.count("close_browser") == 1
        assert events.count("finalizer") == 1

    @pytest.mark.asyncio
    async def test_cleanup_without_resources(self, events):
        lifecycle = RenderLifecycle("session-2", grace_seconds=0.5)
        lifecycle.add_finalizer(lambda: events.append("finalizer"))

        assert await lifecycle.cleanup("error") is True
        assert events == ["finalizer"]

    @pytest.mark.asyncio
    async def test_hung_step_bounded_by_grace(self, lifecycle, events):
        async def close_page_forever():
            events.append("close_page_started")
            await asyncio.sleep(60)

        lifecycle.surface.close_page = close_page_forever

        await asyncio.wait_for(lifecycle.cleanup("timeout"), timeout=5)

        assert "close_page_started" in events
        assert events[-2:] == ["close_browser", "finalizer"]

    @pytest.mark.asyncio
    async def test_failing_step_does_not_stop_teardown(self, lifecycle, events):
        def broken_kill():
            raise ProcessLookupError("gone")

        lifecycle.encoder.kill = broken_kill

        await lifecycle.cleanup("error")

        assert events[-3:] == ["close_page", "close_browser", "finalizer"]

    @pytest.mark.asyncio
    async def test_schedule_cleanup_survives_caller_cancellation(self, lifecycle, events):
        async def caller():
            lifecycle.schedule_cleanup("consumer_disconnect")
            raise asyncio.CancelledError

        with pytest.raises(asyncio.CancelledError):
            await caller()

        await lifecycle.wait_closed(timeout=5)
        assert lifecycle.reason == "consumer_disconnect"
        assert "close_browser" in events
        assert lifecycle.schedule_cleanup("again") is None

    @pytest.mark.asyncio
    async def test_capture_task_calling_cleanup_is_not_self_cancelled(self, lifecycle, events):
        async def capture():
            await lifecycle.cleanup("error")
            events.append("capture_finished")

        lifecycle.capture_task = asyncio.create_task(capture())
        await lifecycle.capture_task

        assert events[-1] == "capture_finished"
        assert "finalizer" in events

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_cut_teardown_short(self, events):
        lifecycle = RenderLifecycle("session-3", grace_seconds=2)
        lifecycle.surface = FakeSurface(events=events, close_delay=0.3)
        lifecycle.encoder = FakeEncoder(events)
        lifecycle.add_finalizer(lambda: events.append("finalizer"))

        caller = asyncio.create_task(lifecycle.cleanup("completed"))
        await asyncio.sleep(0.1)
        caller.cancel()

        with pytest.raises(asyncio.CancelledError):
            await caller
        assert not lifecycle.closed

        await lifecycle.wait_closed(timeout=5)
        assert events[-3:] == ["close_page", "close_browser", "finalizer"]
        assert lifecycle.surface.is_closed
        assert lifecycle.teardown_count == 1
