"""
Browser session manager.

Tracks every open tab of the persistent browser context, which one is
active, and whether the browser is still usable. Playwright reports new,
closed and crashed pages through event callbacks that can fire while a
command is awaiting the browser, so the page registry (page map, opening
order, active pointer) is only touched inside ``self._lock`` and no code
awaits while holding it.

Liveness is checked before every command:

    ALIVE ──check fails──▶ RECOVER_LIGHT ──fails──▶ RECOVER_FULL ──fails──▶ UNRECOVERABLE
      ▲                        │ new context             │ restart playwright
      └────────────────────────┴─────────────────────────┘ + new context
"""

import itertools
import logging
import threading
from enum import Enum
from typing import Dict, List, Optional, Tuple

from playwright.async_api import Error as PlaywrightError

from . import driver as drv
from .driver import DriverLaunchError, PageTerminatedError
from .models import ActionResult, PageContent, TabInfo

logger = logging.getLogger(__name__)

# Times the liveness check follows a moving active pointer before recovering
MAX_LIVENESS_CHECKS = 3
# Attempts at reading page content when the page keeps closing underneath
MAX_CONTENT_ATTEMPTS = 3


class SessionUnrecoverable(Exception):
    """Both recovery tiers failed; the browser cannot be used."""


class TargetNotFound(Exception):
    """A tab switch target matched no tab, several tabs, or was out of range."""


class LivenessState(str, Enum):
    alive = "alive"
    recover_light = "recover_light"
    recover_full = "recover_full"
    unrecoverable = "unrecoverable"


class _RecoveryFailed(Exception):
    pass


def normalize_url(url: str) -> str:
    url = (url or "").strip()
    if not url or url.startswith(("http://", "https://", "about:", "file://", "data:")):
        return url
    return "https://" + url


class SessionManager:
    """Owns the page registry of one browser context and keeps it alive."""

    ELEMENT_ACTIONS = ("click", "fill", "focus", "type", "press")

    def __init__(self, driver, max_elements: int = 60, body_chars: int = 2000):
        self.driver = driver
        self.max_elements = max_elements
        self.body_chars = body_chars
        self.state = LivenessState.alive

        self._lock = threading.Lock()
        self._context = None
        self._pages: Dict[str, object] = {}
        self._order: List[str] = []
        self._ids: Dict[int, str] = {}
        self._active_id: Optional[str] = None
        self._explicit = False
        self._needs_front = False
        self._seq = itertools.count(1)

    # ── Lifecycle ────────────────────────────────────────────────────

    async def start(self) -> None:
        context = await self.driver.launch_context()
        self._attach(context)

    async def close(self) -> None:
        context = self._detach()
        await self.driver.close_context(context)
        await self.driver.stop()
        logger.info("Browser session closed")

    async def save_storage_state(self, path: str) -> None:
        """Persist cookies/local storage of the current context to a file."""
        with self._lock:
            context = self._context
        if context is None:
            raise SessionUnrecoverable("no browser context available")
        await context.storage_state(path=path)
        logger.info(f"Saved storage state to {path}")

    def _attach(self, context) -> None:
        with self._lock:
            self._context = context
        context.on("page", self._on_page_opened)
        context.on("close", self._on_context_closed)
        self._rebuild(list(context.pages))

    def _detach(self):
        with self._lock:
            context = self._context
            self._context = None
            self._clear_locked()
        return context

    # ── Registry (call *_locked only while holding self._lock) ──────

    def _clear_locked(self) -> None:
        self._pages.clear()
        self._order.clear()
        self._ids.clear()
        self._active_id = None
        self._explicit = False
        self._needs_front = False

    def _register_locked(self, page) -> Tuple[str, bool]:
        key = id(page)
        if key in self._ids:
            return self._ids[key], False
        page_id = f"page-{next(self._seq)}"
        self._ids[key] = page_id
        self._pages[page_id] = page
        self._order.append(page_id)
        return page_id, True

    def _listen(self, page) -> None:
        page.on("close", self._on_page_closed)
        page.on("crash", self._on_page_crashed)

    def _rebuild(self, pages) -> None:
        fresh = []
        with self._lock:
            self._clear_locked()
            for page in pages:
                _, created = self._register_locked(page)
                if created:
                    fresh.append(page)
            if self._order:
                self._active_id = self._order[0]
        for page in fresh:
            self._listen(page)
        logger.info(f"Tracking {len(fresh)} open page(s)")

    def _deregister(self, page) -> Optional[str]:
        with self._lock:
            page_id = self._ids.pop(id(page), None)
            if page_id is None:
                return None
            self._pages.pop(page_id, None)
            self._order.remove(page_id)
            if self._active_id == page_id:
                self._active_id = self._order[-1] if self._order else None
                self._explicit = False
                self._needs_front = self._active_id is not None
            return page_id

    # ── Driver events ────────────────────────────────────────────────

    def _on_page_opened(self, page) -> None:
        with self._lock:
            page_id, created = self._register_locked(page)
            if created and (self._active_id is None or not self._explicit):
                self._active_id = page_id
                self._explicit = False
                self._needs_front = True
        if created:
            self._listen(page)
            logger.info(f"New page opened: {page_id} ({_safe_url(page)})")

    def _on_page_closed(self, page) -> None:
        page_id = self._deregister(page)
        if page_id:
            logger.warning(f"⚠️  Page closed: {page_id} ({_safe_url(page)}), active is now {self.active_page_id}")

    def _on_page_crashed(self, page) -> None:
        page_id = self._deregister(page)
        if page_id:
            logger.error(f"❌ Page crashed: {page_id} ({_safe_url(page)}), active is now {self.active_page_id}")

    def _on_context_closed(self, context) -> None:
        with self._lock:
            if context is not self._context:
                return
            self._context = None
            self._clear_locked()
        logger.warning("Browser context closed (window terminated or Playwright restarted)")

    # ── Accessors ────────────────────────────────────────────────────

    @property
    def active_page_id(self) -> Optional[str]:
        with self._lock:
            return self._active_id

    @property
    def page_ids(self) -> List[str]:
        with self._lock:
            return list(self._order)

    def _active_page(self):
        with self._lock:
            if self._active_id is None:
                return None
            return self._pages.get(self._active_id)

    # ── Liveness & recovery ──────────────────────────────────────────

    async def is_alive(self) -> bool:
        return await self._responsive_page() is not None

    async def _responsive_page(self):
        """Return the active page once it has answered a title query, else None.

        Close and popup events can fire while the query is in flight. If the
        active pointer moved meanwhile, the new active page is queried instead.
        """
        for _ in range(MAX_LIVENESS_CHECKS):
            with self._lock:
                context = self._context
            page = self._active_page()
            if context is None or page is None:
                return None
            try:
                await page.title()
            except PlaywrightError:
                return None
            if self._active_page() is page:
                return page
        return None

    async def ensure_alive(self):
        """Return a responsive active page, recovering the browser if needed.

        Raises SessionUnrecoverable when both recovery steps fail.
        """
        page = await self._responsive_page()
        if page is not None:
            self.state = LivenessState.alive
            await self._bring_pending_to_front()
            return page

        logger.warning("Browser session is not responding, attempting recovery...")
        self.state = LivenessState.recover_light
        try:
            page = await self._recover_light()
            self.state = LivenessState.alive
            logger.info("✅ Browser recovered (new context)")
            return page
        except (PlaywrightError, DriverLaunchError, OSError, _RecoveryFailed) as e:
            logger.warning(f"Light recovery failed: {e}")

        self.state = LivenessState.recover_full
        try:
            page = await self._recover_full()
            self.state = LivenessState.alive
            logger.info("✅ Browser restarted (new Playwright runtime)")
            return page
        except (PlaywrightError, DriverLaunchError, OSError, _RecoveryFailed) as e:
            self.state = LivenessState.unrecoverable
            logger.error(f"Full recovery failed: {e}")
            raise SessionUnrecoverable(f"browser could not be recovered: {e}") from e

    async def _recover_light(self):
        await self.driver.close_context(self._detach())
        self._attach(await self.driver.launch_context())
        page = await self._responsive_page()
        if page is None:
            raise _RecoveryFailed("new context has no responsive page")
        return page

    async def _recover_full(self):
        await self.driver.close_context(self._detach())
        await self.driver.restart()
        self._attach(await self.driver.launch_context())
        page = await self._responsive_page()
        if page is None:
            raise _RecoveryFailed("restarted browser has no responsive page")
        return page

    async def _bring_pending_to_front(self) -> None:
        with self._lock:
            if not self._needs_front:
                return
            self._needs_front = False
            page = self._pages.get(self._active_id) if self._active_id else None
        if page is not None:
            await _bring_to_front(page)

    # ── Commands ─────────────────────────────────────────────────────

    async def current_content(self) -> PageContent:
        for attempt in range(1, MAX_CONTENT_ATTEMPTS + 1):
            page = await self.ensure_alive()
            try:
                return await drv.extract_content(page, self.max_elements, self.body_chars)
            except PageTerminatedError as e:
                logger.warning(f"{e}; re-checking session (attempt {attempt}/{MAX_CONTENT_ATTEMPTS})")
        raise SessionUnrecoverable(f"page kept closing while reading content ({MAX_CONTENT_ATTEMPTS} attempts)")

    async def navigate(self, url: str) -> ActionResult:
        page = await self.ensure_alive()
        url = normalize_url(url)
        try:
            await drv.goto(page, url)
        except PageTerminatedError as e:
            logger.warning(f"Page closed during navigation to {url} (possibly CAPTCHA): {e}")
            return ActionResult(success=True, action="navigate", detail=url, warning=str(e))
        except PlaywrightError as e:
            return ActionResult(success=False, action="navigate", detail=url, error=str(e))
        return ActionResult(success=True, action="navigate", detail=f"Navigated to {url}")

    async def dispatch_action(self, kind: str, selector: Optional[str] = None, text: Optional[str] = None) -> ActionResult:
        """Run an element/keyboard action on the active page."""
        if kind not in self.ELEMENT_ACTIONS:
            raise ValueError(f"unsupported page action: {kind}")
        page = await self.ensure_alive()
        try:
            if kind == "click":
                await drv.click(page, selector)
            elif kind == "fill":
                await drv.fill(page, selector, text or "")
            elif kind == "focus":
                await drv.focus(page, selector)
            elif kind == "type":
                await drv.type_text(page, selector, text or "")
            else:
                await drv.press_key(page, text)
        except PageTerminatedError as e:
            logger.warning(f"Page closed during {kind} (possibly CAPTCHA): {e}")
            return ActionResult(success=True, action=kind, detail=selector or text or "", warning=str(e))
        except PlaywrightError as e:
            return ActionResult(success=False, action=kind, detail=selector or text or "", error=str(e))

        target = selector if kind != "press" else text
        return ActionResult(success=True, action=kind, detail=f"{kind} {target}")

    async def wait_for_navigation(self) -> None:
        page = self._active_page()
        if page is None:
            return
        try:
            await drv.wait_for_load(page)
        except PageTerminatedError as e:
            logger.warning(f"Page closed during load wait (possibly CAPTCHA): {e}")
        except PlaywrightError as e:
            logger.warning(f"Navigation wait failed: {e}")

    # ── Tabs ─────────────────────────────────────────────────────────

    async def _tab_snapshot(self) -> List[Tuple[TabInfo, str]]:
        with self._lock:
            entries = [(pid, self._pages[pid]) for pid in self._order]
            active = self._active_id
        tabs = []
        for index, (page_id, page) in enumerate(entries, start=1):
            title = await _safe_title(page)
            tabs.append((TabInfo(index=index, title=title, url=_safe_url(page), active=page_id == active), page_id))
        return tabs

    async def list_tabs(self) -> List[TabInfo]:
        return [tab for tab, _ in await self._tab_snapshot()]

    async def switch_active_tab(self, target: str) -> TabInfo:
        """Activate a tab by 1-based index or title/URL substring.

        An empty target selects the most recently opened tab. Failures raise
        TargetNotFound and leave the active tab as it was.
        """
        await self.ensure_alive()
        snapshot = await self._tab_snapshot()
        if not snapshot:
            raise TargetNotFound("no open tabs to switch to")

        target = (target or "").strip()
        if not target:
            chosen = snapshot[-1]
        elif target.isdigit():
            index = int(target)
            if not 1 <= index <= len(snapshot):
                raise TargetNotFound(f"tab index {index} out of range (1-{len(snapshot)})")
            chosen = snapshot[index - 1]
        else:
            needle = target.lower()
            matches = [
                entry for entry in snapshot
                if needle in entry[0].title.lower() or needle in entry[0].url.lower()
            ]
            if not matches:
                raise TargetNotFound(f"no tab matches {target!r}")
            if len(matches) > 1:
                raise TargetNotFound(
                    f"{target!r} is ambiguous, matches tabs {[m[0].index for m in matches]}"
                )
            chosen = matches[0]

        tab, page_id = chosen
        with self._lock:
            page = self._pages.get(page_id)
            if page is None:
                raise TargetNotFound(f"tab {tab.index} closed before it could be activated")
            self._active_id = page_id
            self._explicit = True
            self._needs_front = False
        await _bring_to_front(page)
        logger.info(f"Switched to tab {tab.index}: {tab.title} ({tab.url})")
        return TabInfo(index=tab.index, title=tab.title, url=tab.url, active=True)


async def _bring_to_front(page) -> None:
    try:
        await page.bring_to_front()
    except PlaywrightError as e:
        logger.warning(f"Failed to bring page to front: {e}")


async def _safe_title(page) -> str:
    try:
        return (await page.title()) or "Unknown"
    except PlaywrightError:
        return "Unknown"


def _safe_url(page) -> str:
    try:
        return page.url or "unknown"
    except PlaywrightError:
        return "unknown"
