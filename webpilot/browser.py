import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from playwright.async_api import Browser, BrowserContext, Page, async_playwright
from playwright.async_api import Error as PlaywrightError

from .actuator import ActuatorCommand, Observation
from .errors import ActuatorError
from .extraction import INVENTORY_SELECTOR, MAX_INVENTORY
from .schemas import UiElement


logger = logging.getLogger("uvicorn.error")

MAX_DOM_TEXT = 20000
RECORDING_FILE = "recording.webm"

INVENTORY_JS = r"""
([selector, limit]) => {
  const cssPath = (el) => {
    const parts = [];
    let node = el;
    while (node && node.nodeType === 1 && node !== document.documentElement) {
      if (node.id) {
        parts.unshift(`#${CSS.escape(node.id)}`);
        break;
      }
      let part = node.tagName.toLowerCase();
      const name = node.getAttribute("name");
      const testId = ["data-testid", "data-test", "data-qa"].find((a) => node.getAttribute(a));
      if (name) part += `[name="${name.replace(/"/g, '\\"')}"]`;
      else if (testId) part += `[${testId}="${node.getAttribute(testId).replace(/"/g, '\\"')}"]`;
      const parent = node.parentElement;
      if (parent) {
        const same = Array.from(parent.children).filter((c) => c.tagName === node.tagName);
        if (same.length > 1) part += `:nth-of-type(${same.indexOf(node) + 1})`;
      }
      parts.unshift(part);
      node = parent;
    }
    return parts.join(" > ");
  };
  return Array.from(document.querySelectorAll(selector))
    .filter((el) => el.offsetParent !== null && !(el.tagName === "INPUT" && el.type === "hidden"))
    .slice(0, limit)
    .map((el) => ({
      tag: el.tagName.toLowerCase(),
      selector: cssPath(el),
      text: (el.innerText || el.getAttribute("aria-label") || el.value || "").trim().slice(0, 160) || null,
      role: el.getAttribute("role"),
      type: el.getAttribute("type"),
      name: el.getAttribute("name"),
      placeholder: el.getAttribute("placeholder"),
      href: el.getAttribute("href"),
    }));
}
"""


class PlaywrightActuator:
    """One browser, one context, one page per run."""

    def __init__(
        self,
        browser_type: str = "chromium",
        headless: bool = True,
        viewport_width: int = 1280,
        viewport_height: int = 800,
        navigation_timeout_ms: int = 20000,
        record_dir: Optional[Path] = None,
    ) -> None:
        self.browser_type = browser_type
        self.headless = headless
        self.viewport = {"width": viewport_width, "height": viewport_height}
        self.navigation_timeout_ms = navigation_timeout_ms
        self.record_dir = record_dir
        self.recording: Optional[str] = None
        self._playwright = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._page: Optional[Page] = None
        self._logs: List[Dict[str, str]] = []
        self._cursor = {"x": 0, "y": 0}

    async def start(self) -> None:
        try:
            self._playwright = await async_playwright().start()
            if self.browser_type == "firefox":
                launcher = self._playwright.firefox
            elif self.browser_type == "webkit":
                launcher = self._playwright.webkit
            else:
                launcher = self._playwright.chromium
            self._browser = await launcher.launch(headless=self.headless)
            if self.record_dir is not None:
                self.record_dir.mkdir(parents=True, exist_ok=True)
                self._context = await self._browser.new_context(
                    viewport=self.viewport,
                    record_video_dir=str(self.record_dir),
                    record_video_size=self.viewport,
                )
            else:
                self._context = await self._browser.new_context(viewport=self.viewport)
            self._page = await self._context.new_page()
            self._page.set_default_timeout(self.navigation_timeout_ms)
            self._page.on("console", self._on_console)
            self._page.on("pageerror", self._on_pageerror)
            self._page.on("requestfailed", self._on_requestfailed)
            logger.info("Started %s browser (headless=%s)", self.browser_type, self.headless)
        except PlaywrightError as exc:
            await self.close()
            raise ActuatorError(f"Failed to start browser: {exc}") from exc

    def _on_console(self, msg) -> None:
        level = "error" if msg.type == "error" else "warning" if msg.type == "warning" else "info"
        self._logs.append({"level": level, "message": msg.text})

    def _on_pageerror(self, error) -> None:
        self._logs.append({"level": "error", "message": str(error)})

    def _on_requestfailed(self, request) -> None:
        failure = request.failure or "failed"
        self._logs.append({"level": "warning", "message": f"Request failed {request.url}: {failure}"})

    @property
    def page(self) -> Page:
        if self._page is None:
            raise ActuatorError("Browser not started")
        return self._page

    async def perform(self, command: ActuatorCommand) -> None:
        page = self.page
        try:
            if command.action == "goto":
                if not command.url:
                    raise ActuatorError("goto requires a url")
                await page.goto(command.url, wait_until="domcontentloaded", timeout=self.navigation_timeout_ms)
            elif command.action == "reload":
                await page.reload(wait_until="domcontentloaded", timeout=self.navigation_timeout_ms)
            elif command.action == "click":
                if not command.selector:
                    raise ActuatorError("click requires a selector")
                box = await page.locator(command.selector).first.bounding_box()
                await page.click(command.selector)
                if box:
                    self._cursor = {"x": int(box["x"] + box["width"] / 2), "y": int(box["y"] + box["height"] / 2)}
            elif command.action == "type":
                if not command.selector:
                    raise ActuatorError("type requires a selector")
                await page.fill(command.selector, command.value or "")
            elif command.action == "scroll":
                await page.mouse.wheel(0, int(command.value or 600))
            elif command.action == "wait":
                await page.wait_for_timeout(int(command.value or 1000))
            elif command.action in ("snapshot", "extract"):
                pass
            else:
                raise ActuatorError(f"Unsupported action: {command.action}")
        except PlaywrightError as exc:
            raise ActuatorError(str(exc)) from exc

    async def observe(self) -> Observation:
        page = self.page
        try:
            dom_text = await page.evaluate("() => document.body ? document.body.innerText : ''")
            html = await page.content()
            title = await page.title()
            screenshot = await page.screenshot(type="png")
        except PlaywrightError as exc:
            raise ActuatorError(f"Failed to observe page: {exc}") from exc
        inventory = await self._inventory(page)
        logs, self._logs = self._logs, []
        return Observation(
            url=page.url,
            title=title,
            dom_text=(dom_text or "")[:MAX_DOM_TEXT],
            html=html,
            screenshot=screenshot,
            cursor=dict(self._cursor),
            viewport=page.viewport_size or dict(self.viewport),
            logs=logs,
            inventory=inventory,
        )

    async def _inventory(self, page: Page) -> List[UiElement]:
        try:
            raw: List[Dict[str, Any]] = await page.evaluate(INVENTORY_JS, [INVENTORY_SELECTOR, MAX_INVENTORY])
        except PlaywrightError as exc:
            logger.warning("Failed to capture UI inventory: %s", exc)
            return []
        return [UiElement.model_validate(item) for item in raw or [] if isinstance(item, dict)]

    async def _save_recording(self, video) -> None:
        target = self.record_dir / RECORDING_FILE
        try:
            await video.save_as(str(target))
            await video.delete()
        except PlaywrightError as exc:
            logger.warning("Saving recording to %s failed: %s", target, exc)
            return
        self.recording = RECORDING_FILE

    async def close(self) -> None:
        video = self._page.video if self._page is not None and self.record_dir is not None else None
        try:
            if self._context is not None:
                await self._context.close()
            # The video is only complete once its context has closed.
            if video is not None:
                await self._save_recording(video)
            if self._browser is not None:
                await self._browser.close()
        except PlaywrightError as exc:
            logger.warning("Browser close failed: %s", exc)
        finally:
            self._context = None
            self._browser = None
            self._page = None
            if self._playwright is not None:
                await self._playwright.stop()
                self._playwright = None
