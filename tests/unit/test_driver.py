"""Unit Tests for the Playwright driver helpers."""

import pytest
from playwright.async_api import Error as PlaywrightError

from conftest import CLOSED_MESSAGE, FakePage
from src.agents.web_agent import driver as drv
from src.agents.web_agent.driver import PageTerminatedError, PlaywrightDriver, is_page_terminated


class TestPageTerminated:

    @pytest.mark.parametrize("message", [
        CLOSED_MESSAGE,
        "Target closed",
        "Page closed",
        "Browser has been closed",
    ])
    def test_terminated_messages(self, message):
        assert is_page_terminated(PlaywrightError(message)) is True

    def test_other_errors(self):
        assert is_page_terminated(PlaywrightError("Timeout 30000ms exceeded")) is False

    @pytest.mark.asyncio
    async def test_primitives_translate_closed_page(self):
        page = FakePage()
        page.click.side_effect = PlaywrightError(CLOSED_MESSAGE)
        with pytest.raises(PageTerminatedError):
            await drv.click(page, "#go")

    @pytest.mark.asyncio
    async def test_primitives_pass_other_errors_through(self):
        page = FakePage()
        page.fill.side_effect = PlaywrightError("element is not an <input>")
        with pytest.raises(PlaywrightError):
            await drv.fill(page, "#q", "x")


class TestExtractContent:

    @pytest.mark.asyncio
    async def test_evaluation_failure_yields_no_elements(self):
        page = FakePage(url="https://example.com/", title="Example", body="hello")
        page.evaluate.side_effect = PlaywrightError("Execution context was destroyed")
        content = await drv.extract_content(page)
        assert content.elements == []
        assert content.body_excerpt == "hello"

    @pytest.mark.asyncio
    async def test_closed_page_raises(self):
        page = FakePage()
        page.closed = True
        with pytest.raises(PageTerminatedError):
            await drv.extract_content(page)


class TestEngineOrder:

    def test_requested_engine_first(self):
        assert PlaywrightDriver(engine="firefox")._engine_order() == ["firefox", "chromium", "webkit"]

    def test_default_order(self):
        assert PlaywrightDriver()._engine_order() == ["chromium", "firefox", "webkit"]
