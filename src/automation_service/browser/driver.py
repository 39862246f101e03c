"""Playwright automation driver.

One browser instance is shared for the life of the process. Every execution
gets its own ``BrowserSession`` (an isolated context plus its page), so
concurrent tasks never share cookies, storage or navigation state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from playwright.async_api import async_playwright
from pydantic import BaseModel, ConfigDict, Field

from automation_service.browser.extraction import SelectorSpec, extract_record
from automation_service.browser.session_store import SessionStore
from automation_service.errors import BrowserNotReadyError

logger = logging.getLogger(__name__)

DESKTOP_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)
DESKTOP_VIEWPORT = {"width": 1280, "height": 800}


class LoginCredentials(BaseModel):
    """Login form description carried in a task config."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    url: str
    username_selector: str = Field(alias="usernameSelector")
    password_selector: str = Field(alias="passwordSelector")
    submit_selector: str = Field(alias="submitSelector")
    username: str
    password: str
    success_selector: str | None = Field(default=None, alias="successSelector")
    save_session: bool = Field(default=False, alias="saveSession")
    domain: str | None = None


@dataclass
class BrowserSession:
    """Context/page pair owned by exactly one execution."""

    context: Any
    page: Any
    user_data_key: str | None = None

    async def close(self) -> None:
        """Close the context; failures are logged, never raised."""
        try:
            await self.context.close()
        except Exception as exc:  # noqa: BLE001
            logger.warning("browser event=context_close_failed reason=%s", exc)


class AutomationDriver:
    """Owns the shared browser and hands out per-execution sessions."""

    def __init__(
        self,
        *,
        session_store: SessionStore,
        headless: bool = True,
        slow_mo_ms: int = 0,
        default_timeout_ms: int = 30_000,
    ) -> None:
        self.session_store = session_store
        self.headless = headless
        self.slow_mo_ms = slow_mo_ms
        self.default_timeout_ms = default_timeout_ms
        self._playwright: Any = None
        self._browser: Any = None

    @property
    def is_initialized(self) -> bool:
        return self._browser is not None

    async def initialize(self) -> None:
        """Launch Chromium. Not idempotent: callers check ``is_initialized`` first."""
        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(
            headless=self.headless,
            slow_mo=self.slow_mo_ms,
        )
        logger.info(
            "browser event=launched headless=%s slow_mo_ms=%s", self.headless, self.slow_mo_ms
        )

    async def create_context(self, user_data_key: str | None = None) -> BrowserSession:
        """Open an isolated context, restore the stored session if asked, then open a page."""
        if self._browser is None:
            await self.initialize()
        context = await self._browser.new_context(
            user_agent=DESKTOP_USER_AGENT,
            viewport=DESKTOP_VIEWPORT,
            device_scale_factor=1,
        )
        if user_data_key:
            await self.session_store.load_stored_user_data(context, user_data_key)
        page = await context.new_page()
        page.set_default_timeout(self.default_timeout_ms)
        self._attach_listeners(page)
        return BrowserSession(context=context, page=page, user_data_key=user_data_key)

    async def navigate(self, url: str, session: BrowserSession | None = None) -> BrowserSession:
        """Go to ``url`` and wait for network idle, opening a context if none was given."""
        if session is None:
            session = await self.create_context()
        await session.page.goto(url, wait_until="networkidle")
        logger.info("browser event=navigated url=%s", url)
        return session

    async def login(self, session: BrowserSession, credentials: LoginCredentials) -> None:
        """Fill and submit a login form; any failing step raises."""
        page = session.page
        await self.navigate(credentials.url, session)
        await page.fill(credentials.username_selector, credentials.username)
        await page.fill(credentials.password_selector, credentials.password)
        await page.click(credentials.submit_selector)
        if credentials.success_selector:
            await page.wait_for_selector(
                credentials.success_selector, timeout=self.default_timeout_ms
            )
        else:
            await page.wait_for_load_state("networkidle")
        if credentials.save_session and credentials.domain:
            await self.save_user_data(session, credentials.domain)
        logger.info("browser event=logged_in url=%s", credentials.url)

    async def extract_data(
        self,
        session: BrowserSession,
        selectors: list[SelectorSpec],
        *,
        url: str | None = None,
    ) -> dict[str, Any]:
        if url:
            await self.navigate(url, session)
        return await extract_record(session.page, selectors)

    async def take_screenshot(
        self, session: BrowserSession | None, *, full_page: bool = False
    ) -> bytes:
        if session is None or session.page is None:
            raise BrowserNotReadyError("No active page")
        screenshot = await session.page.screenshot(full_page=full_page, type="png")
        logger.info("browser event=screenshot bytes=%d full_page=%s", len(screenshot), full_page)
        return screenshot

    async def save_user_data(self, session: BrowserSession, domain: str) -> bool:
        return await self.session_store.save_user_data(session.context, session.page, domain)

    async def load_stored_user_data(self, session: BrowserSession, domain: str) -> bool:
        return await self.session_store.load_stored_user_data(session.context, domain)

    async def close(self) -> None:
        """Tear down the shared browser. Never raises."""
        try:
            if self._browser is not None:
                await self._browser.close()
            if self._playwright is not None:
                await self._playwright.stop()
            logger.info("browser event=closed")
        except Exception as exc:  # noqa: BLE001
            logger.error("browser event=close_failed reason=%s", exc)
        finally:
            self._browser = None
            self._playwright = None

    @staticmethod
    def _attach_listeners(page: Any) -> None:
        page.on(
            "console",
            lambda message: logger.debug("page console %s: %s", message.type, message.text),
        )
        page.on("pageerror", lambda error: logger.warning("page error: %s", error))
        page.on("requestfailed", lambda request: logger.warning("request failed: %s", request.url))
