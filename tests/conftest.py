from __future__ import annotations

import asyncio
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any

import pytest
from fastapi.testclient import TestClient

from automation_service.api.main import create_app
from automation_service.browser import driver as driver_module
from automation_service.browser.driver import AutomationDriver
from automation_service.browser.session_store import SessionStore
from automation_service.config.settings import Settings
from automation_service.normalization.adapter import NormalizationAdapter
from automation_service.storage.memory import InMemoryTaskStorage
from automation_service.tasks.orchestrator import TaskOrchestrator


class FakeElement:
    def __init__(
        self,
        text: str | None = "",
        html: str = "",
        attributes: dict[str, str] | None = None,
    ) -> None:
        self.text = text
        self.html = html
        self.attributes = attributes or {}

    async def text_content(self) -> str | None:
        return self.text

    async def inner_html(self) -> str:
        return self.html

    async def get_attribute(self, name: str) -> str | None:
        return self.attributes.get(name)


@dataclass
class FakeSite:
    """URL -> {selector: matching elements}, shared by every page of a fake browser."""

    pages: dict[str, dict[str, list[FakeElement]]] = field(default_factory=dict)
    local_storage: dict[str, str] = field(default_factory=dict)


class FakePage:
    def __init__(self, context: FakeContext, site: FakeSite) -> None:
        self.context = context
        self.site = site
        self.url = "about:blank"
        self.elements: dict[str, list[FakeElement]] = {}
        self.visited: list[str] = []
        self.filled: dict[str, str] = {}
        self.clicked: list[str] = []
        self.listeners: dict[str, Any] = {}
        self.default_timeout: int | None = None
        self.screenshot_bytes = b"\x89PNG-fake-screenshot"

    def set_default_timeout(self, timeout: int) -> None:
        self.default_timeout = timeout

    def on(self, event: str, handler: Any) -> None:
        self.listeners[event] = handler

    async def goto(self, url: str, wait_until: str | None = None) -> None:
        if url not in self.site.pages:
            raise RuntimeError(f"net::ERR_NAME_NOT_RESOLVED at {url}")
        self.url = url
        self.visited.append(url)
        self.elements = self.site.pages[url]

    def _require(self, selector: str) -> None:
        if selector not in self.elements:
            raise TimeoutError(f"Timeout 30000ms exceeded waiting for selector {selector!r}")

    async def fill(self, selector: str, value: str) -> None:
        self._require(selector)
        self.filled[selector] = value

    async def click(self, selector: str) -> None:
        self._require(selector)
        self.clicked.append(selector)

    async def wait_for_selector(self, selector: str, timeout: int | None = None) -> FakeElement:
        self._require(selector)
        return self.elements[selector][0]

    async def wait_for_load_state(self, state: str) -> None:
        return None

    async def query_selector(self, selector: str) -> FakeElement | None:
        matches = self.elements.get(selector, [])
        return matches[0] if matches else None

    async def query_selector_all(self, selector: str) -> list[FakeElement]:
        return list(self.elements.get(selector, []))

    async def evaluate(self, expression: str, arg: Any = None) -> Any:
        return dict(self.site.local_storage)

    async def screenshot(self, full_page: bool = False, type: str = "png") -> bytes:
        return self.screenshot_bytes


class FakeContext:
    def __init__(self, site: FakeSite, options: dict[str, Any]) -> None:
        self.site = site
        self.options = options
        self.cookie_jar: list[dict[str, Any]] = []
        self.init_scripts: list[str] = []
        self.pages: list[FakePage] = []
        self.closed = False

    async def new_page(self) -> FakePage:
        page = FakePage(self, self.site)
        self.pages.append(page)
        return page

    async def cookies(self) -> list[dict[str, Any]]:
        return [dict(cookie) for cookie in self.cookie_jar]

    async def add_cookies(self, cookies: list[dict[str, Any]]) -> None:
        self.cookie_jar.extend(dict(cookie) for cookie in cookies)

    async def add_init_script(self, script: str | None = None, path: str | None = None) -> None:
        self.init_scripts.append(script or "")

    async def close(self) -> None:
        self.closed = True


class FakeBrowser:
    def __init__(self, site: FakeSite) -> None:
        self.site = site
        self.contexts: list[FakeContext] = []
        self.closed = False

    async def new_context(self, **options: Any) -> FakeContext:
        context = FakeContext(self.site, options)
        self.contexts.append(context)
        return context

    async def close(self) -> None:
        self.closed = True


class FakeChromium:
    def __init__(self, browser: FakeBrowser) -> None:
        self.browser = browser
        self.launches: list[dict[str, Any]] = []

    async def launch(self, **kwargs: Any) -> FakeBrowser:
        self.launches.append(kwargs)
        return self.browser


class FakePlaywright:
    def __init__(self, browser: FakeBrowser) -> None:
        self.chromium = FakeChromium(browser)
        self.stopped = False

    async def stop(self) -> None:
        self.stopped = True


class FakePlaywrightManager:
    def __init__(self, playwright: FakePlaywright) -> None:
        self.playwright = playwright

    async def start(self) -> FakePlaywright:
        return self.playwright


class FakeTextGenerator:
    """Blocking generator double that replays a canned reply."""

    def __init__(self, reply: str = '{"ok": true}') -> None:
        self.reply = reply
        self.error: Exception | None = None
        self.calls: list[dict[str, Any]] = []

    def complete(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        temperature: float,
        timeout_s: float,
    ) -> str:
        self.calls.append(
            {
                "system_prompt": system_prompt,
                "user_prompt": user_prompt,
                "temperature": temperature,
                "timeout_s": timeout_s,
            }
        )
        if self.error is not None:
            raise self.error
        return self.reply


@pytest.fixture
def site() -> FakeSite:
    return FakeSite(
        pages={
            "https://example.com": {
                "h1": [FakeElement(text="  Example Domain  ", html="<b>Example</b> Domain")],
                "a": [
                    FakeElement(text="More", attributes={"href": "https://iana.org"}),
                    FakeElement(text="Docs", attributes={"href": "https://example.com/docs"}),
                ],
            },
            "https://example.com/login": {
                "#user": [FakeElement()],
                "#pass": [FakeElement()],
                "button[type=submit]": [FakeElement(text="Sign in")],
                ".welcome": [FakeElement(text="Welcome back")],
            },
        }
    )


@pytest.fixture
def browser(site: FakeSite) -> FakeBrowser:
    return FakeBrowser(site)


@pytest.fixture
def fake_playwright(monkeypatch: pytest.MonkeyPatch, browser: FakeBrowser) -> FakePlaywright:
    playwright = FakePlaywright(browser)
    monkeypatch.setattr(driver_module, "async_playwright", lambda: FakePlaywrightManager(playwright))
    return playwright


@pytest.fixture
def storage() -> InMemoryTaskStorage:
    return InMemoryTaskStorage()


@pytest.fixture
def session_store(storage: InMemoryTaskStorage) -> SessionStore:
    return SessionStore(storage)


@pytest.fixture
def driver(session_store: SessionStore, fake_playwright: FakePlaywright) -> AutomationDriver:
    return AutomationDriver(session_store=session_store, default_timeout_ms=5_000)


@pytest.fixture
def text_generator() -> FakeTextGenerator:
    return FakeTextGenerator()


@pytest.fixture
def orchestrator(
    storage: InMemoryTaskStorage,
    driver: AutomationDriver,
    text_generator: FakeTextGenerator,
) -> TaskOrchestrator:
    return TaskOrchestrator(
        storage=storage,
        driver=driver,
        normalizer=NormalizationAdapter(text_generator, timeout_s=5.0),
    )


@dataclass
class ApiUser:
    user_id: str
    api_key: str

    @property
    def headers(self) -> dict[str, str]:
        return {"X-API-Key": self.api_key}


async def _seed_user(storage: InMemoryTaskStorage, email: str) -> ApiUser:
    user = await storage.create_user(email=email, name=email.split("@")[0])
    key = await storage.create_api_key(user_id=user.id, name="tests")
    return ApiUser(user_id=user.id, api_key=key.key)


@pytest.fixture
def api_users(storage: InMemoryTaskStorage) -> tuple[ApiUser, ApiUser]:
    owner = asyncio.run(_seed_user(storage, "owner@example.com"))
    other = asyncio.run(_seed_user(storage, "other@example.com"))
    return owner, other


@pytest.fixture
def client(
    storage: InMemoryTaskStorage,
    driver: AutomationDriver,
    text_generator: FakeTextGenerator,
) -> Iterator[TestClient]:
    app = create_app(
        storage=storage,
        driver=driver,
        text_generator=text_generator,
        settings_override=Settings(scheduler_enabled=False, shutdown_grace_s=5.0),
    )
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def page(site: FakeSite) -> FakePage:
    page = FakePage(FakeContext(site, {}), site)
    page.url = "https://example.com"
    page.elements = site.pages["https://example.com"]
    return page
