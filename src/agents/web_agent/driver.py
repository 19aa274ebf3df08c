"""
Browser driver built on Playwright.

Owns the Playwright runtime and the persistent browser context, and gives
the session manager page-level primitives: content extraction and
click/fill/focus/type/press/goto. Every primitive translates "the page went
away under us" into PageTerminatedError so callers can tolerate it, and
lets every other failure propagate unchanged.
"""

import logging
import os
from typing import List, Optional

from playwright.async_api import (
    BrowserContext,
    Error as PlaywrightError,
    Page,
    Playwright,
    async_playwright,
)

from .models import ElementDescriptor, PageContent

logger = logging.getLogger(__name__)

DEFAULT_LAUNCH_ARGS = [
    "--disable-gpu",
    "--disable-features=IsolatedSiteInstances",
]

ENGINES = ("chromium", "firefox", "webkit")

_TERMINATED_MARKERS = (
    "page closed",
    "target closed",
    "target page, context or browser has been closed",
    "browser has been closed",
    "context has been closed",
    "page has been closed",
)


class PageTerminatedError(Exception):
    """The target page was torn down while an operation was in flight."""


class DriverLaunchError(Exception):
    """No browser engine could be launched."""


def is_page_terminated(exc: BaseException) -> bool:
    message = str(exc).lower()
    return any(marker in message for marker in _TERMINATED_MARKERS)


async def _guarded(op: str, awaitable):
    try:
        return await awaitable
    except PlaywrightError as e:
        if is_page_terminated(e):
            raise PageTerminatedError(f"page closed during {op}: {e}") from e
        raise


# ── In-page element extraction ────────────────────────────────────────────

_EXTRACT_ELEMENTS_JS = """(max) => {
    const selectorFor = (el) => {
        const esc = (v) => v.replace(/\\\\/g, '\\\\\\\\').replace(/"/g, '\\\\"');
        if (el.id) return `[id="${esc(el.id)}"]`;
        const name = el.getAttribute('name');
        if (name) return `${el.tagName.toLowerCase()}[name="${esc(name)}"]`;
        const path = [];
        let current = el;
        while (current && current.tagName !== 'BODY' && current.tagName !== 'HTML') {
            let index = 0;
            let sibling = current.previousElementSibling;
            while (sibling) {
                if (sibling.tagName === current.tagName) index++;
                sibling = sibling.previousElementSibling;
            }
            path.unshift(current.tagName.toLowerCase() + ':nth-of-type(' + (index + 1) + ')');
            current = current.parentElement;
        }
        return path.join(' > ');
    };
    const groups = [
        ['button', 'button'],
        ['a[href]', 'link'],
        ['input', 'input'],
        ['textarea', 'textarea'],
        ['[contenteditable], [role="textbox"]', 'editable'],
    ];
    const results = [];
    const seen = new Set();
    for (const [sel, kind] of groups) {
        for (const el of document.querySelectorAll(sel)) {
            if (results.length >= max) return results;
            if (seen.has(el)) continue;
            seen.add(el);
            let label = '';
            if (kind === 'button' || kind === 'link') {
                label = (el.innerText || el.textContent || '').trim();
                if (!label) continue;
            } else if (kind === 'input') {
                label = el.getAttribute('placeholder') || el.getAttribute('type') || 'text';
            } else if (kind === 'textarea') {
                label = el.getAttribute('placeholder') || 'textarea';
            } else {
                label = el.getAttribute('aria-label') || el.getAttribute('placeholder') || 'text field';
            }
            results.push({
                kind: kind,
                label: label.substring(0, 80),
                selector: selectorFor(el),
                href: kind === 'link' ? el.getAttribute('href') : null,
            });
        }
    }
    return results;
}"""


async def extract_content(page: Page, max_elements: int = 60, body_chars: int = 2000) -> PageContent:
    """Snapshot title, URL, interactive elements and a body text excerpt."""
    try:
        title = await _guarded("title", page.title())
    except PageTerminatedError:
        raise
    except PlaywrightError:
        title = "Unknown"

    try:
        raw_elements = await _guarded("element extraction", page.evaluate(_EXTRACT_ELEMENTS_JS, max_elements))
    except PageTerminatedError:
        raise
    except PlaywrightError as e:
        logger.warning(f"Failed to extract elements: {e}")
        raw_elements = []

    try:
        body = await _guarded("body text", page.inner_text("body"))
    except PageTerminatedError:
        raise
    except PlaywrightError:
        body = ""

    elements = [
        ElementDescriptor(
            kind=el.get("kind", "?"),
            label=" ".join((el.get("label") or "").split()),
            selector=el.get("selector", ""),
            href=el.get("href"),
        )
        for el in (raw_elements or [])
        if el.get("selector")
    ]
    body = (body or "").strip()
    if len(body) > body_chars:
        body = body[:body_chars] + "..."
    return PageContent(title=title or "Unknown", url=page.url, elements=elements, body_excerpt=body)


# ── Page primitives ───────────────────────────────────────────────────────

async def goto(page: Page, url: str) -> None:
    await _guarded("navigation", page.goto(url))


async def click(page: Page, selector: str) -> None:
    await _guarded("click", page.click(selector))


async def fill(page: Page, selector: str, text: str) -> None:
    await _guarded("fill", page.fill(selector, text))


async def focus(page: Page, selector: str) -> None:
    await _guarded("focus", page.focus(selector))


async def type_text(page: Page, selector: str, text: str) -> None:
    await _guarded("type", page.locator(selector).first.press_sequentially(text))


async def press_key(page: Page, key: str) -> None:
    await _guarded("key press", page.keyboard.press(key))


async def wait_for_load(page: Page) -> None:
    await _guarded("load wait", page.wait_for_load_state())


# ── Runtime & context lifecycle ───────────────────────────────────────────

class PlaywrightDriver:
    """Starts Playwright and launches persistent browser contexts."""

    def __init__(
        self,
        user_data_dir: str = ".pw_user_data",
        engine: str = "",
        headless: bool = False,
        launch_args: Optional[List[str]] = None,
    ):
        self.user_data_dir = user_data_dir
        self.engine = engine
        self.headless = headless
        self.launch_args = launch_args or list(DEFAULT_LAUNCH_ARGS)
        self._playwright: Optional[Playwright] = None

    @property
    def running(self) -> bool:
        return self._playwright is not None

    async def start(self) -> None:
        if self._playwright is None:
            self._playwright = await async_playwright().start()
            logger.info("Playwright runtime started")

    async def stop(self) -> None:
        if self._playwright is not None:
            try:
                await self._playwright.stop()
            finally:
                self._playwright = None
            logger.info("Playwright runtime stopped")

    async def restart(self) -> None:
        try:
            await self.stop()
        except PlaywrightError as e:
            logger.warning(f"Playwright stop failed during restart: {e}")
            self._playwright = None
        await self.start()

    def _engine_order(self) -> List[str]:
        order = []
        for name in ([self.engine] if self.engine else []) + list(ENGINES):
            if name and name not in order:
                order.append(name)
        return order

    async def launch_context(self) -> BrowserContext:
        """Launch a persistent context, trying the requested engine first."""
        await self.start()
        try:
            os.makedirs(self.user_data_dir, exist_ok=True)
        except OSError as e:
            logger.warning(f"Failed to ensure user data dir {self.user_data_dir}: {e}")

        attempts = self._engine_order()
        for name in attempts:
            browser_type = getattr(self._playwright, name)
            try:
                context = await browser_type.launch_persistent_context(
                    self.user_data_dir,
                    headless=self.headless,
                    args=self.launch_args if name == "chromium" else None,
                )
            except PlaywrightError as e:
                logger.warning(f"{name.title()} launch failed: {e}")
                continue
            if self.engine and name != self.engine:
                logger.info(f"Requested browser {self.engine} unavailable, using {name} fallback")
            if not context.pages:
                await context.new_page()
            logger.info(f"Browser context launched ({name}, headless={self.headless})")
            return context

        raise DriverLaunchError(f"failed to launch persistent browser context (tried {attempts})")

    async def close_context(self, context: Optional[BrowserContext]) -> None:
        if context is None:
            return
        try:
            await context.close()
        except PlaywrightError as e:
            logger.debug(f"Context close failed (already gone?): {e}")
