"""Playwright-backed engine (the ``native`` backend).

Imported only inside the daemon process, so the CLI never pays for the
Playwright import. Covers the basic page actions; anything else is
reported back as unsupported.
"""

import base64
import logging
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional

from agentbrowser.core.configs import StartupConfig, parse_proxy
from agentbrowser.daemon.errors import EngineError
from agentbrowser.engine.base import BaseEngine

logger = logging.getLogger(__name__)


def build_launch_args(config: StartupConfig) -> list:
    """Chromium command-line switches implied by the startup configuration."""
    args = list(config.args)
    if config.extensions:
        joined = ",".join(config.extensions)
        args.append(f"--disable-extensions-except={joined}")
        args.append(f"--load-extension={joined}")
    if config.stealth:
        args.append("--disable-blink-features=AutomationControlled")
    return args


def cdp_url(endpoint: str) -> str:
    """Address for connect_over_cdp: a bare port means a local DevTools listener."""
    if endpoint.startswith(("ws://", "wss://")):
        return endpoint
    return f"http://localhost:{endpoint}"


def build_context_options(config: StartupConfig) -> Dict[str, Any]:
    options: Dict[str, Any] = {"ignore_https_errors": config.ignore_https_errors}
    if config.user_agent:
        options["user_agent"] = config.user_agent
    return options


class PlaywrightEngine(BaseEngine):
    """Single-page Chromium driven through playwright.async_api."""

    name = "native"

    def __init__(self):
        self._playwright = None
        self._browser = None
        self._context = None
        self._page = None
        # Attached to a browser we did not start; leave it running on close
        self._attached = False

    async def launch(self, config: StartupConfig, storage_state: Optional[Path] = None) -> None:
        from playwright.async_api import async_playwright

        self._playwright = await async_playwright().start()
        chromium = self._playwright.chromium

        if config.cdp:
            await self._connect(chromium, config)
            return

        launch_options: Dict[str, Any] = {
            "headless": config.headless,
            "executable_path": config.executable_path,
            "args": build_launch_args(config),
        }
        if config.proxy:
            launch_options["proxy"] = parse_proxy(config.proxy)
        context_options = build_context_options(config)

        # Profiles and extensions both need a persistent context
        if config.profile or config.extensions:
            user_data_dir = config.profile or tempfile.mkdtemp(prefix="agent-browser-profile-")
            self._context = await chromium.launch_persistent_context(
                str(Path(user_data_dir).expanduser()),
                **launch_options,
                **context_options,
            )
            pages = self._context.pages
            self._page = pages[0] if pages else await self._context.new_page()
        else:
            self._browser = await chromium.launch(**launch_options)
            if storage_state is not None:
                context_options["storage_state"] = str(storage_state)
            self._context = await self._browser.new_context(**context_options)
            self._page = await self._context.new_page()

        logger.info("Browser launched (headless=%s)", config.headless)

    async def _connect(self, chromium, config: StartupConfig) -> None:
        url = cdp_url(config.cdp)
        try:
            self._browser = await chromium.connect_over_cdp(url)
        except Exception as e:
            await self._playwright.stop()
            self._playwright = None
            raise EngineError(f"Failed to connect via CDP to {url}: {e}") from e
        self._attached = True

        contexts = self._browser.contexts
        if contexts:
            self._context = contexts[0]
        else:
            self._context = await self._browser.new_context(**build_context_options(config))
        pages = self._context.pages
        self._page = pages[0] if pages else await self._context.new_page()
        logger.info("Connected to browser via CDP at %s", url)

    @property
    def page(self):
        if self._page is None:
            raise EngineError("Browser is not launched")
        return self._page

    async def save_state(self, path: Path) -> None:
        if self._context is None:
            return
        path.parent.mkdir(parents=True, exist_ok=True)
        await self._context.storage_state(path=str(path))

    async def close(self) -> None:
        if self._attached:
            # Disconnects without closing the remote browser
            if self._browser is not None:
                await self._browser.close()
        else:
            if self._context is not None:
                await self._context.close()
            if self._browser is not None:
                await self._browser.close()
        if self._playwright is not None:
            await self._playwright.stop()
        self._playwright = self._browser = self._context = self._page = None
        self._attached = False

    async def do_navigate(self, url: str, **options: Any) -> Dict[str, Any]:
        wait_until = options.get("waitUntil", "load")
        await self.page.goto(url, wait_until=wait_until)
        return {"url": self.page.url, "title": await self.page.title()}

    async def do_url(self, **_: Any) -> Dict[str, Any]:
        return {"url": self.page.url}

    async def do_title(self, **_: Any) -> Dict[str, Any]:
        return {"title": await self.page.title()}

    async def do_back(self, **_: Any) -> Dict[str, Any]:
        await self.page.go_back()
        return {"url": self.page.url}

    async def do_forward(self, **_: Any) -> Dict[str, Any]:
        await self.page.go_forward()
        return {"url": self.page.url}

    async def do_reload(self, **_: Any) -> Dict[str, Any]:
        await self.page.reload()
        return {"url": self.page.url}

    async def do_click(self, selector: str, **options: Any) -> Dict[str, Any]:
        await self.page.click(
            selector,
            button=options.get("button", "left"),
            click_count=options.get("clickCount", 1),
        )
        return {"clicked": selector}

    async def do_fill(self, selector: str, value: str, **_: Any) -> Dict[str, Any]:
        await self.page.fill(selector, value)
        return {"filled": selector}

    async def do_type(self, selector: str, text: str, **options: Any) -> Dict[str, Any]:
        await self.page.type(selector, text, delay=options.get("delay", 0))
        return {"typed": text}

    async def do_press(self, key: str, **options: Any) -> Dict[str, Any]:
        selector = options.get("selector")
        if selector:
            await self.page.press(selector, key)
        else:
            await self.page.keyboard.press(key)
        return {"pressed": key}

    async def do_hover(self, selector: str, **_: Any) -> Dict[str, Any]:
        await self.page.hover(selector)
        return {"hovered": selector}

    async def do_evaluate(self, script: str, **_: Any) -> Dict[str, Any]:
        return {"result": await self.page.evaluate(script)}

    async def do_content(self, **_: Any) -> Dict[str, Any]:
        return {"html": await self.page.content()}

    async def do_screenshot(self, **options: Any) -> Dict[str, Any]:
        path = options.get("path")
        image = await self.page.screenshot(
            path=path,
            full_page=bool(options.get("fullPage", False)),
            type=options.get("format", "png"),
        )
        if path:
            return {"path": path}
        return {"base64": base64.b64encode(image).decode("ascii")}

    async def do_wait(self, **options: Any) -> Dict[str, Any]:
        selector = options.get("selector")
        if selector:
            await self.page.wait_for_selector(selector, timeout=options.get("timeout"))
        elif options.get("timeout"):
            await self.page.wait_for_timeout(options["timeout"])
        return {"waited": True}
