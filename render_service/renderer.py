"""
PDF Renderer - turns a server-rendered CRM page into PDF bytes.

Uses Playwright/Chromium. Each render launches one browser, renders one
page and always closes the browser before returning or raising, so a
process never keeps more than one Chromium instance alive.

Layout differences between document families (auto-height itinerary pages,
A4 print pages, wide magazine pages) are expressed as RenderProfile records
instead of separate code paths.
"""

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from tenacity import AsyncRetrying, RetryCallState, stop_after_attempt, wait_exponential

logger = logging.getLogger(__name__)

PLAYWRIGHT_HEADLESS = os.getenv("PLAYWRIGHT_HEADLESS", "true").lower() == "true"

# Flags that keep headless Chromium stable inside small containers
CHROMIUM_ARGS = [
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--disable-background-timer-throttling",
    "--disable-backgrounding-occluded-windows",
    "--disable-renderer-backgrounding",
    "--disable-setuid-sandbox",
    "--no-sandbox",
    "--no-zygote",
]

BODY_SELECTOR_TIMEOUT_MS = 8000
VIEWPORT_HEIGHT = 800

AUTO_HEIGHT = "auto-height"
FIXED_A4 = "fixed-A4"

# Scrolls to the bottom in small steps so lazy-loaded sections render
AUTO_SCROLL_SCRIPT = """
async () => {
    await new Promise((resolve) => {
        let totalHeight = 0;
        const distance = 200;
        const timer = setInterval(() => {
            const scrollHeight = document.body.scrollHeight;
            window.scrollBy(0, distance);
            totalHeight += distance;
            if (totalHeight >= scrollHeight) {
                clearInterval(timer);
                resolve();
            }
        }, 50);
    });
}
"""

MEASURE_HEIGHT_SCRIPT = "() => document.documentElement.scrollHeight"

# Single continuous page: stop the browser from splitting blocks
NO_PAGE_BREAK_CSS = """
* {
    page-break-inside: avoid !important;
    break-inside: avoid !important;
}
body {
    overflow: visible !important;
    height: auto !important;
}
"""


class RenderError(Exception):
    """Raised when every render attempt for a URL has failed."""

    def __init__(self, message: str, url: Optional[str] = None, attempts: int = 0):
        super().__init__(message)
        self.url = url
        self.attempts = attempts


@dataclass(frozen=True)
class RenderProfile:
    """
    Rendering configuration for one document family.

    Attributes:
        name: Profile identifier used in job payloads
        page_format: "auto-height" (one tall page) or "fixed-A4" (paginated)
        timeout_ms: Navigation and default page timeout
        wait_after_load_ms: Extra settle time for client-side rendering
        max_height_px: Clamp for auto-height pages (None for A4)
        scale: PDF scale factor
        page_width_px: Unscaled PDF width for auto-height pages
        viewport_width: Browser viewport width
        auto_scroll: Scroll the page to trigger lazy loading
        margins: Page margins for A4 output
        max_retries: Browser-level attempts before RenderError
        retry_base_delay_ms: Base of the exponential delay between attempts
    """

    name: str
    page_format: str = AUTO_HEIGHT
    timeout_ms: int = 120000
    wait_after_load_ms: int = 4000
    max_height_px: Optional[int] = 200000
    scale: float = 0.75
    page_width_px: int = 650
    viewport_width: int = 400
    auto_scroll: bool = True
    margins: Optional[Dict[str, str]] = None
    max_retries: int = 3
    retry_base_delay_ms: int = 1500


STANDARD_PROFILE = RenderProfile(name="standard")

PRINT_PROFILE = RenderProfile(
    name="print",
    page_format=FIXED_A4,
    timeout_ms=45000,
    max_height_px=None,
    scale=1.0,
    auto_scroll=False,
    margins={"top": "20mm", "bottom": "20mm", "left": "15mm", "right": "15mm"},
)

MAGAZINE_PROFILE = RenderProfile(
    name="magazine",
    timeout_ms=45000,
    max_height_px=50000,
    scale=1.0,
    page_width_px=850,
    viewport_width=850,
    auto_scroll=False,
)

RENDER_PROFILES: Dict[str, RenderProfile] = {
    profile.name: profile
    for profile in (STANDARD_PROFILE, PRINT_PROFILE, MAGAZINE_PROFILE)
}


def get_profile(name: str) -> RenderProfile:
    """Look up a render profile by name, raising ValueError if unknown."""
    try:
        return RENDER_PROFILES[name]
    except KeyError:
        raise ValueError(
            f"Unknown render profile '{name}'. Allowed: {', '.join(sorted(RENDER_PROFILES))}"
        )


class PdfRenderer:
    """
    Render Collaborator: URL in, PDF bytes out.

    Retries transient failures (navigation errors, non-2xx status, empty
    output) with exponential backoff: the delay after attempt n is
    retry_base_delay_ms * 2 ** (n - 1).

    Calls are serialized through an asyncio.Lock; Chromium is not safe to
    run several times in parallel in one worker container.
    """

    def __init__(
        self,
        headless: bool = PLAYWRIGHT_HEADLESS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.headless = headless
        self._sleep = sleep
        self._lock = asyncio.Lock()

    @property
    def busy(self) -> bool:
        """True while a render is in flight."""
        return self._lock.locked()

    async def render(self, url: str, profile: RenderProfile = STANDARD_PROFILE) -> bytes:
        """
        Render a URL to PDF.

        Args:
            url: Page to render
            profile: Rendering configuration

        Returns:
            Non-empty PDF bytes

        Raises:
            RenderError: When all attempts failed
        """
        async with self._lock:
            return await self._render_with_retries(url, profile)

    async def _render_with_retries(self, url: str, profile: RenderProfile) -> bytes:
        attempt = 0
        pdf_bytes = b""
        try:
            async for attempt_state in AsyncRetrying(
                stop=stop_after_attempt(profile.max_retries),
                wait=wait_exponential(multiplier=profile.retry_base_delay_ms / 1000),
                before_sleep=self._log_retry,
                sleep=self._sleep,
                reraise=True,
            ):
                with attempt_state:
                    attempt = attempt_state.retry_state.attempt_number
                    logger.info(
                        f"PDF attempt {attempt}/{profile.max_retries} "
                        f"[{profile.name}] -> {url}"
                    )
                    pdf_bytes = await self._render_once(url, profile)
        except Exception as e:
            logger.error(f"PDF generation failed for {url}: {e}")
            raise RenderError(
                f"PDF generation failed after {attempt} attempts → {e}",
                url=url,
                attempts=attempt,
            ) from e

        logger.info(f"PDF success -> {len(pdf_bytes)} bytes")
        return pdf_bytes

    @staticmethod
    def _log_retry(retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0
        logger.warning(
            f"PDF attempt {retry_state.attempt_number} failed: {error}. "
            f"Retrying in {delay:.1f}s"
        )

    async def _render_once(self, url: str, profile: RenderProfile) -> bytes:
        # Import here to avoid loading Playwright until a render is requested
        from playwright.async_api import async_playwright

        async with async_playwright() as p:
            browser = await p.chromium.launch(headless=self.headless, args=CHROMIUM_ARGS)
            try:
                page = await browser.new_page(
                    viewport={"width": profile.viewport_width, "height": VIEWPORT_HEIGHT},
                    device_scale_factor=1,
                )
                page.set_default_timeout(profile.timeout_ms)
                page.set_default_navigation_timeout(profile.timeout_ms)

                response = await page.goto(
                    url, wait_until="networkidle", timeout=profile.timeout_ms
                )
                if response is None or not response.ok:
                    status = response.status if response is not None else None
                    raise RuntimeError(f"Failed to load page. Status: {status}")

                await page.wait_for_selector("body", timeout=BODY_SELECTOR_TIMEOUT_MS)

                if profile.auto_scroll:
                    await page.evaluate(AUTO_SCROLL_SCRIPT)

                await page.wait_for_timeout(profile.wait_after_load_ms)
                await page.emulate_media(media="print")

                pdf_options = await self._pdf_options(page, profile)
                pdf_bytes = await page.pdf(**pdf_options)
            finally:
                await self._close_browser(browser)

        if not pdf_bytes:
            raise RuntimeError("Generated PDF is empty")
        return pdf_bytes

    async def _pdf_options(self, page, profile: RenderProfile) -> Dict[str, Any]:
        """Build page.pdf() keyword arguments for the profile's page format."""
        if profile.page_format == FIXED_A4:
            return {
                "format": "A4",
                "print_background": True,
                "prefer_css_page_size": True,
                "display_header_footer": False,
                "margin": dict(profile.margins or {}),
            }

        height = await page.evaluate(MEASURE_HEIGHT_SCRIPT)
        adjusted_height = min(int(height), profile.max_height_px or int(height))
        logger.info(f"Measured height: {height}px, PDF height: {adjusted_height}px")

        await page.add_style_tag(content=NO_PAGE_BREAK_CSS)

        return {
            "print_background": True,
            "prefer_css_page_size": False,
            "display_header_footer": False,
            "scale": profile.scale,
            "width": f"{profile.page_width_px * profile.scale}px",
            # +2px keeps the last line from being cut off
            "height": f"{(adjusted_height + 2) * profile.scale}px",
            "margin": {"top": "0px", "bottom": "0px", "left": "0px", "right": "0px"},
        }

    @staticmethod
    async def _close_browser(browser) -> None:
        try:
            await browser.close()
        except Exception as e:
            logger.error(f"Error closing browser: {e}")
