"""
Browser Fetcher Module

Playwright implementation of the session pool factory plus the page loader
used by the orchestrator. Includes stealth and resource blocking, and maps
navigation outcomes onto the harvester error taxonomy.
"""

import logging
import re
from typing import Any, Optional

from harvester.config import config
from harvester.errors import (
    BlockedError,
    CaptchaError,
    NetworkError,
    RateLimitedError,
    ScrapeTimeoutError,
)
from harvester.pool.session_pool import BrowserInstance, Session
from harvester.safety.retry import with_timeout
from harvester.stealth.proxy_pool import Proxy
from harvester.stealth.user_agents import UserAgentRotator

logger = logging.getLogger(__name__)


CAPTCHA_SELECTORS = (
    "[data-testid='captcha']",
    ".captcha",
    "#captcha",
    ".recaptcha",
    "iframe[src*='recaptcha']",
    "iframe[src*='hcaptcha']",
)

BLOCKED_SELECTORS = (
    ".blocked",
    ".access-denied",
    "h1:has-text('Access Denied')",
    "h1:has-text('Blocked')",
)

RATE_LIMIT_PATTERNS = (
    re.compile(r"rate limit", re.I),
    re.compile(r"too many requests", re.I),
    re.compile(r"please slow down", re.I),
)

LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--window-size=1920,1080",
]


class PlaywrightSessionFactory:
    """
    SessionFactory backed by headless Chromium.

    Features:
    - One browser per pool instance, one context+page per session
    - Rotated desktop fingerprint per context
    - Optional per-session proxy
    - Stealth plugin to avoid detection
    - Resource blocking (images, fonts, media, analytics)

    Example:
        factory = PlaywrightSessionFactory()
        pool = SessionPool(factory, instances=2, sessions_per_instance=3)
        await pool.start()
    """

    def __init__(
        self,
        headless: bool | None = None,
        user_agents: UserAgentRotator | None = None,
    ):
        """
        Args:
            headless: Run in headless mode (default from config)
            user_agents: Fingerprint source for new contexts
        """
        self._headless = headless if headless is not None else config.browser.headless
        self._user_agents = user_agents or UserAgentRotator()
        self._playwright = None
        self._stealth_async = None

    async def _ensure_playwright(self) -> None:
        if self._playwright is not None:
            return
        try:
            from playwright.async_api import async_playwright
            from playwright_stealth import stealth_async
        except ImportError as e:
            raise ImportError(
                "playwright and playwright-stealth are required. "
                "Install with: pip install playwright playwright-stealth && playwright install chromium"
            ) from e

        self._stealth_async = stealth_async
        self._playwright = await async_playwright().start()

    async def launch_instance(self) -> Any:
        await self._ensure_playwright()
        browser = await self._playwright.chromium.launch(headless=self._headless, args=LAUNCH_ARGS)
        logger.debug("Launched Chromium instance")
        return browser

    async def open_session(self, instance: BrowserInstance, proxy: Optional[Proxy]) -> Any:
        options = self._user_agents.get_context_options()
        if proxy is not None:
            options["proxy"] = proxy.to_playwright()

        context = await instance.handle.new_context(**options)
        page = await context.new_page()
        page.set_default_timeout(config.browser.navigation_timeout)
        await self._stealth_async(page)
        await page.route("**/*", self._handle_route)
        return page

    @staticmethod
    def _should_block(resource_type: str, url: str) -> bool:
        """Check if a request should be blocked."""
        browser = config.browser
        if browser.block_images and resource_type == "image":
            return True
        if browser.block_fonts and resource_type == "font":
            return True
        if browser.block_media and resource_type == "media":
            return True
        if browser.block_analytics:
            url = url.lower()
            return any(blocked in url for blocked in browser.blocked_domains)
        return False

    async def _handle_route(self, route) -> None:
        request = route.request
        if self._should_block(request.resource_type, request.url):
            await route.abort()
        else:
            await route.continue_()

    async def close_session(self, session: Session) -> None:
        page = session.handle
        context = page.context
        await page.close()
        await context.close()

    async def close_instance(self, instance: BrowserInstance) -> None:
        await instance.handle.close()

    async def shutdown(self) -> None:
        """Stop the Playwright driver once every instance is closed."""
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None


class PlaywrightPageLoader:
    """
    Loads a URL in a pooled session and returns the rendered HTML.

    Raises ScrapeTimeoutError, BlockedError, RateLimitedError, CaptchaError
    or NetworkError so that the retry layer can classify the failure.
    """

    def __init__(self, timeout_ms: int | None = None, wait_until: str = "domcontentloaded"):
        self._timeout_ms = timeout_ms or config.browser.navigation_timeout
        self._wait_until = wait_until

    async def load(self, session: Session, url: str) -> str:
        """
        Navigate and return page content.

        Args:
            session: Pooled session whose handle is a Playwright page
            url: The URL to load

        Returns:
            Rendered HTML
        """
        from playwright.async_api import Error as PlaywrightError
        from playwright.async_api import TimeoutError as PlaywrightTimeoutError

        page = session.handle
        # Hard ceiling on top of Playwright's own navigation timeout
        hard_timeout = self._timeout_ms / 1000 + 5

        try:
            response = await with_timeout(
                page.goto(url, timeout=self._timeout_ms, wait_until=self._wait_until),
                hard_timeout,
                f"Navigation to {url} timed out",
            )
        except PlaywrightTimeoutError as e:
            raise ScrapeTimeoutError(f"Navigation to {url} timed out", context={"url": url}) from e
        except PlaywrightError as e:
            if "net::err" in str(e).lower():
                raise NetworkError(str(e), context={"url": url}) from e
            raise

        status = response.status if response else 0
        if status == 403:
            raise BlockedError(f"Access denied (HTTP 403) for {url}", context={"url": url})
        if status == 429:
            raise RateLimitedError(f"Too many requests (HTTP 429) for {url}", context={"url": url})

        await self._check_page(page, url)
        return await page.content()

    async def _check_page(self, page: Any, url: str) -> None:
        for selector in CAPTCHA_SELECTORS:
            if await page.query_selector(selector):
                raise CaptchaError(f"Captcha detected on {url}", context={"selector": selector})

        for selector in BLOCKED_SELECTORS:
            element = await page.query_selector(selector)
            if element:
                text = (await element.text_content() or "").strip()
                raise BlockedError(f"Access blocked on {url}: {text[:100]}", context={"selector": selector})

        body = await page.text_content("body") or ""
        for pattern in RATE_LIMIT_PATTERNS:
            if pattern.search(body[:5000]):
                raise RateLimitedError(f"Rate limit page served for {url}")
