"""Rendering surface: a headless browser page showing the render-only view.

The render view exposes a global API object (``window.__DEVMOTION__`` by
default) with:
- ready: a promise that resolves once initial layout and media are loaded
- seek(time) / seekAndWait(time): move the animation to a timestamp;
  seekAndWait also resolves once time-dependent media have settled
- getConfig(): {width, height, fps, duration} as loaded
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Protocol

from playwright.async_api import Browser, Page, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError

from src.config import Settings, get_settings
from src.exceptions import CaptureError

logger = logging.getLogger(__name__)

BASE_LAUNCH_ARGS = [
    "--disable-gpu",
    "--disable-dev-shm-usage",
    "--disable-setuid-sandbox",
]
INSECURE_LAUNCH_ARGS = ["--no-sandbox", "--disable-web-security"]

_SEEK_AND_WAIT_JS = """
([name, time]) => {
    const api = window[name];
    if (typeof api.seekAndWait === "function") {
        return api.seekAndWait(time);
    }
    api.seek(time);
    return new Promise((resolve) => requestAnimationFrame(() => resolve()));
}
"""


class RenderSurface(Protocol):
    """What the capture loop and lifecycle need from a rendering surface."""

    async def launch(self) -> None: ...

    async def open(self, url: str) -> None: ...

    async def get_config(self) -> dict[str, Any]: ...

    async def seek_and_wait(self, time: float) -> None: ...

    async def screenshot(self, width: int, height: int) -> bytes: ...

    async def close_page(self) -> None: ...

    async def close_browser(self) -> None: ...


@asynccontextmanager
async def _capture_errors(action: str) -> AsyncIterator[None]:
    """Translate browser failures and timeouts into CaptureError."""
    try:
        yield
    except PlaywrightError as e:
        raise CaptureError(f"Rendering surface failed to {action}: {e.message}") from e
    except asyncio.TimeoutError as e:
        raise CaptureError(f"Rendering surface timed out trying to {action}") from e


class PlaywrightSurface:
    """Headless Chromium driven through Playwright's async API."""

    def __init__(self, width: int, height: int, settings: Settings | None = None) -> None:
        self.width = width
        self.height = height
        self.settings = settings or get_settings()
        self.global_name = self.settings.render_view_global

        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._page: Page | None = None

    @property
    def launch_args(self) -> list[str]:
        args = list(BASE_LAUNCH_ARGS)
        if self.settings.browser_allow_insecure_flags:
            args.extend(INSECURE_LAUNCH_ARGS)
        return args

    @property
    def page(self) -> Page:
        if self._page is None:
            raise CaptureError("Rendering surface is not open")
        return self._page

    @property
    def is_closed(self) -> bool:
        return self._page is None and self._browser is None

    async def launch(self) -> None:
        async with _capture_errors("launch"):
            self._playwright = await async_playwright().start()
            self._browser = await self._playwright.chromium.launch(
                headless=self.settings.browser_headless,
                args=self.launch_args,
            )
            self._page = await self._browser.new_page(
                viewport={"width": self.width, "height": self.height},
                device_scale_factor=1,
            )
        logger.info(f"[CAPTURE] Browser launched ({self.width}x{self.height})")

    async def open(self, url: str) -> None:
        """Navigate to the render view and wait for its readiness signal."""
        async with _capture_errors("load the render view"):
            await self.page.goto(
                url,
                wait_until="networkidle",
                timeout=self.settings.render_navigation_timeout_ms,
            )
            await self.page.wait_for_function(
                "(name) => !!(window[name] && window[name].ready)",
                arg=self.global_name,
                timeout=self.settings.render_ready_timeout_ms,
            )
            await asyncio.wait_for(
                self.page.evaluate("(name) => window[name].ready", self.global_name),
                timeout=self.settings.render_ready_timeout_ms / 1000,
            )

    async def get_config(self) -> dict[str, Any]:
        async with _capture_errors("report its config"):
            config = await self.page.evaluate(
                "(name) => window[name].getConfig()", self.global_name
            )
        return config or {}

    async def seek_and_wait(self, time: float) -> None:
        async with _capture_errors(f"settle at t={time:.3f}s"):
            await asyncio.wait_for(
                self.page.evaluate(_SEEK_AND_WAIT_JS, [self.global_name, time]),
                timeout=self.settings.render_frame_timeout_ms / 1000,
            )

    async def screenshot(self, width: int, height: int) -> bytes:
        async with _capture_errors("take a snapshot"):
            return await self.page.screenshot(
                type="png",
                clip={"x": 0, "y": 0, "width": width, "height": height},
                timeout=self.settings.render_frame_timeout_ms,
            )

    async def close_page(self) -> None:
        page, self._page = self._page, None
        if page is not None and not page.is_closed():
            await page.close()

    async def close_browser(self) -> None:
        browser, self._browser = self._browser, None
        playwright, self._playwright = self._playwright, None
        try:
            if browser is not None and browser.is_connected():
                await browser.close()
        finally:
            if playwright is not None:
                await playwright.stop()
