"""
Pytest Configuration and Fixtures

Provides in-memory stand-ins for Playwright pages/contexts, the browser
driver and the decision oracle so the runtime can be tested without a
browser or an LLM.
"""

from typing import List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
from playwright.async_api import Error as PlaywrightError

from src.agents.web_agent.driver import DriverLaunchError
from src.agents.web_agent.models import Decision, ElementDescriptor, PageContent, ParsedRequest

CLOSED_MESSAGE = "Target page, context or browser has been closed"


# ==============================================================================
# Fake Playwright objects
# ==============================================================================

class FakePage:
    """Just enough of playwright's Page for the session manager and driver."""

    def __init__(self, url: str = "about:blank", title: str = "Blank", body: str = ""):
        self.url = url
        self._title = title
        self.closed = False
        self.handlers = {}

        self.goto = AsyncMock(side_effect=self._goto)
        self.click = AsyncMock()
        self.fill = AsyncMock()
        self.focus = AsyncMock()
        self.bring_to_front = AsyncMock()
        self.wait_for_load_state = AsyncMock()
        self.evaluate = AsyncMock(return_value=[])
        self.inner_text = AsyncMock(return_value=body)
        self.keyboard = MagicMock()
        self.keyboard.press = AsyncMock()
        self.locator = MagicMock()
        self.locator.return_value.first.press_sequentially = AsyncMock()

    def on(self, event, handler):
        self.handlers.setdefault(event, []).append(handler)

    def emit(self, event):
        for handler in self.handlers.get(event, []):
            handler(self)

    async def title(self):
        if self.closed:
            raise PlaywrightError(CLOSED_MESSAGE)
        return self._title

    async def _goto(self, url):
        if self.closed:
            raise PlaywrightError(CLOSED_MESSAGE)
        self.url = url

    def close(self):
        self.closed = True
        self.emit("close")

    def crash(self):
        self.closed = True
        self.emit("crash")


class SelfClosingPage(FakePage):
    """Closes itself the first time its title is read, and still answers that read."""

    async def title(self):
        if not self.closed:
            self.close()
            return self._title
        return await super().title()


class FakeContext:
    def __init__(self, pages: Optional[List[FakePage]] = None):
        self.pages = pages if pages is not None else [FakePage()]
        self.handlers = {}
        self.storage_state = AsyncMock()

    def on(self, event, handler):
        self.handlers.setdefault(event, []).append(handler)

    def open_page(self, page: FakePage) -> FakePage:
        self.pages.append(page)
        for handler in self.handlers.get("page", []):
            handler(page)
        return page

    def terminate(self):
        for page in self.pages:
            page.closed = True
        for handler in self.handlers.get("close", []):
            handler(self)


class FakeDriver:
    """Hands out queued contexts; an exception in the queue is raised instead."""

    def __init__(self, *contexts):
        self.queue = list(contexts)
        self.launched: List[FakeContext] = []
        self.restart = AsyncMock()
        self.stop = AsyncMock()
        self.close_context = AsyncMock()

    async def launch_context(self):
        if not self.queue:
            raise DriverLaunchError("no browser available")
        item = self.queue.pop(0)
        if isinstance(item, Exception):
            raise item
        self.launched.append(item)
        return item


# ==============================================================================
# Fixtures
# ==============================================================================

@pytest.fixture
def fake_page():
    return FakePage(url="https://example.com/", title="Example Domain")


@pytest.fixture
def fake_context(fake_page):
    return FakeContext([fake_page])


@pytest.fixture
def fake_driver(fake_context):
    return FakeDriver(fake_context)


def make_content(url="https://example.com/", title="Example Domain", elements=None, body="") -> PageContent:
    return PageContent(
        title=title,
        url=url,
        elements=elements if elements is not None else [
            ElementDescriptor(kind="button", label="Search", selector='[id="search"]'),
        ],
        body_excerpt=body,
    )


@pytest.fixture
def fake_session():
    """A SessionManager stand-in that always reports a plain, unblocked page."""
    from src.agents.web_agent.models import ActionResult, TabInfo

    session = MagicMock()
    session.current_content = AsyncMock(return_value=make_content())
    session.list_tabs = AsyncMock(return_value=[
        TabInfo(index=1, title="Example Domain", url="https://example.com/", active=True),
    ])
    session.navigate = AsyncMock(
        side_effect=lambda url: ActionResult(success=True, action="navigate", detail=f"Navigated to {url}")
    )
    session.dispatch_action = AsyncMock(
        side_effect=lambda kind, selector=None, text=None: ActionResult(
            success=True, action=kind, detail=f"{kind} {selector or text}"
        )
    )
    session.wait_for_navigation = AsyncMock()
    session.switch_active_tab = AsyncMock(
        return_value=TabInfo(index=2, title="Results", url="https://example.com/results", active=True)
    )
    return session


@pytest.fixture
def fake_oracle():
    """Oracle whose plan call fails and whose decisions are scripted per test."""
    oracle = MagicMock()
    oracle.label = "fake-model"
    oracle.plan = AsyncMock(side_effect=_planning_error)
    oracle.decide = AsyncMock(return_value=(Decision(action="wait", reasoning="looking around"), '{"action": "wait"}'))
    oracle.parse_user_request = AsyncMock(return_value=ParsedRequest(task="do it", url=None))
    oracle.check_reachable = AsyncMock(return_value=(True, "ok"))
    return oracle


async def _planning_error(task, page_description):
    from src.agents.web_agent.oracle import PlanningError
    raise PlanningError("no plan")


@pytest.fixture
def approve_all():
    return AsyncMock(return_value=True)


@pytest.fixture
def deny_all():
    return AsyncMock(return_value=False)
