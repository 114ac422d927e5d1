"""
Pytest fixtures for the render backend tests.

The rendering surface is replaced by an in-process fake. The encoder is
exercised as a real subprocess: tests swap ffmpeg for `cat` (or a failing
`sh -c ...`) through the encoder's command builder, so pipes, backpressure
and exit codes behave like the real thing.

CI/CD Note:
Tests that need a real ffmpeg/ffprobe are marked with @requires_ffmpeg and
are skipped when the binaries are not on PATH.
"""

import asyncio
import shutil
import struct
import zlib
from typing import Any

import pytest

from src.config import Settings
from src.render.encoder import FFmpegEncoder
from src.services.media_url_resolver import MediaURLResolver
from src.services.progress_channel import RenderProgressChannel
from src.services.render_token_store import InMemoryRenderTokenStore


def pytest_configure(config):
    """Register custom markers for CI/CD test filtering."""
    config.addinivalue_line(
        "markers",
        "requires_ffmpeg: mark test as requiring ffmpeg/ffprobe on PATH"
    )


requires_ffmpeg = pytest.mark.skipif(
    shutil.which("ffmpeg") is None or shutil.which("ffprobe") is None,
    reason="ffmpeg/ffprobe not available",
)


def solid_png(width: int, height: int, rgb: tuple[int, int, int] = (0, 128, 255)) -> bytes:
    """A valid, uncompressed-ish RGB PNG of one color."""

    def chunk(kind: bytes, data: bytes) -> bytes:
        body = kind + data
        return struct.pack(">I", len(data)) + body + struct.pack(">I", zlib.crc32(body) & 0xFFFFFFFF)

    row = b"\x00" + bytes(rgb) * width
    ihdr = struct.pack(">IIBBBBB", width, height, 8, 2, 0, 0, 0)
    return (
        b"\x89PNG\r\n\x1a\n"
        + chunk(b"IHDR", ihdr)
        + chunk(b"IDAT", zlib.compress(row * height))
        + chunk(b"IEND", b"")
    )


class FakeSurface:
    """In-process stand-in for the headless browser page.

    Records every call in `events` so tests can check ordering.
    """

    def __init__(
        self,
        width: int = 64,
        height: int = 36,
        config: dict[str, Any] | None = None,
        frame_delay: float = 0.0,
        fail_at_frame: int | None = None,
        events: list[str] | None = None,
        close_delay: float = 0.0,
    ) -> None:
        self.width = width
        self.height = height
        self.config = config or {}
        self.frame_delay = frame_delay
        self.fail_at_frame = fail_at_frame
        self.events = events if events is not None else []
        self.close_delay = close_delay
        self.seeks: list[float] = []
        self.opened_url: str | None = None
        self.page_closed = False
        self.browser_closed = False

    @property
    def is_closed(self) -> bool:
        return self.page_closed and self.browser_closed

    async def launch(self) -> None:
        self.events.append("launch")

    async def open(self, url: str) -> None:
        self.opened_url = url
        self.events.append("open")

    async def get_config(self) -> dict[str, Any]:
        return dict(self.config)

    async def seek_and_wait(self, time: float) -> None:
        from src.exceptions import CaptureError

        if self.fail_at_frame is not None and len(self.seeks) == self.fail_at_frame:
            raise CaptureError(f"Rendering surface timed out trying to settle at t={time:.3f}s")
        self.seeks.append(time)
        if self.frame_delay:
            await asyncio.sleep(self.frame_delay)

    async def screenshot(self, width: int, height: int) -> bytes:
        return b"FRAME%05d;" % (len(self.seeks) - 1)

    async def close_page(self) -> None:
        if self.close_delay:
            await asyncio.sleep(self.close_delay)
        self.page_closed = True
        self.events.append("close_page")

    async def close_browser(self) -> None:
        self.browser_closed = True
        self.events.append("close_browser")


class CommandEncoder(FFmpegEncoder):
    """FFmpegEncoder running an arbitrary command instead of ffmpeg."""

    command: list[str] = ["cat"]

    def build_command(self) -> list[str]:
        return list(self.command)


def encoder_running(*command: str):
    """Encoder factory whose process is `command` (default: cat)."""
    command_list = list(command) or ["cat"]

    def factory(**kwargs) -> FFmpegEncoder:
        encoder = CommandEncoder(ffmpeg_path="unused", **kwargs)
        encoder.command = command_list
        return encoder

    return factory


class FakeStorage:
    """Signs URLs without talking to any storage backend."""

    def __init__(self) -> None:
        self.signed: list[tuple[str, int]] = []

    def generate_download_url(self, storage_key: str, expires_minutes: int = 60) -> str:
        self.signed.append((storage_key, expires_minutes))
        return f"https://storage.test/bucket/{storage_key}?X-Goog-Signature=abc"


@pytest.fixture
def settings() -> Settings:
    return Settings(
        render_view_base_url="http://view.test",
        public_base_url="http://api.test",
        render_timeout_seconds=30,
        render_cleanup_grace_seconds=2,
        render_output_chunk_size=4096,
        use_local_storage=True,
    )


@pytest.fixture
def token_store() -> InMemoryRenderTokenStore:
    return InMemoryRenderTokenStore(ttl_seconds=300)


@pytest.fixture
def channel() -> RenderProgressChannel:
    return RenderProgressChannel()


@pytest.fixture
def fake_storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def resolver(fake_storage: FakeStorage) -> MediaURLResolver:
    return MediaURLResolver(
        storage=fake_storage,
        proxy_path="/api/storage/media/",
        own_hosts={"api.test"},
        expires_minutes=180,
    )


async def wait_for_subscribers(channel: RenderProgressChannel, session_id: str, count: int = 1) -> None:
    """Subscriptions register on first iteration; wait until they have."""
    for _ in range(200):
        if channel.get_subscriber_count(session_id) >= count:
            return
        await asyncio.sleep(0.005)
    raise AssertionError(f"no subscriber registered for {session_id}")
