"""
Tests for backend resolution, launch options and daemon-side command execution.
"""

import asyncio
import unittest
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

from agentbrowser.core.configs import StartupConfig
from agentbrowser.daemon.errors import EngineError, UnknownBackend, UnsupportedAction
from agentbrowser.daemon.protocol import build_command
from agentbrowser.daemon.state import PERSIST_DIR, DaemonState
from agentbrowser.engine import DEFAULT_BACKEND, BaseEngine, load_engine_factory
from agentbrowser.engine.native import PlaywrightEngine, build_context_options, build_launch_args, cdp_url


class EchoEngine(BaseEngine):
    name = "echo"

    def __init__(self):
        self.launches = 0
        self.closed = False

    async def launch(self, config, storage_state=None):
        self.launches += 1
        self.config = config
        self.storage_state = storage_state

    async def close(self):
        self.closed = True

    async def do_echo(self, text, **_):
        return {"text": text}

    async def do_fail(self, **_):
        raise EngineError("Timeout waiting for selector")


class TestEngineRegistry(unittest.TestCase):

    def test_default_backend_is_native(self):
        self.assertEqual(DEFAULT_BACKEND, "native")
        self.assertIs(load_engine_factory(), PlaywrightEngine)
        self.assertIs(load_engine_factory("native"), PlaywrightEngine)

    def test_module_reference(self):
        factory = load_engine_factory("agentbrowser.engine.native:PlaywrightEngine")
        self.assertIs(factory, PlaywrightEngine)

    def test_entry_point_backend(self):
        entry = MagicMock()
        entry.name = "echo"
        entry.load.return_value = EchoEngine

        with patch("agentbrowser.engine.entry_points", return_value=[entry]) as eps:
            self.assertIs(load_engine_factory("echo"), EchoEngine)
        eps.assert_called_once_with(group="agentbrowser.backends")

    def test_unknown_backend(self):
        for name in ("nope", "no.such.module:Engine", "agentbrowser.engine.native:Missing"):
            with self.subTest(name=name):
                with self.assertRaises(UnknownBackend):
                    load_engine_factory(name)


class TestLaunchOptions(unittest.TestCase):

    def test_defaults(self):
        config = StartupConfig()
        self.assertEqual(build_launch_args(config), [])
        self.assertEqual(build_context_options(config), {"ignore_https_errors": False})

    def test_extensions_stealth_and_args(self):
        config = StartupConfig(
            extensions=("/ext/a", "/ext/b"), stealth=True, args=("--mute-audio",)
        )
        self.assertEqual(build_launch_args(config), [
            "--mute-audio",
            "--disable-extensions-except=/ext/a,/ext/b",
            "--load-extension=/ext/a,/ext/b",
            "--disable-blink-features=AutomationControlled",
        ])

    def test_context_options(self):
        config = StartupConfig(ignore_https_errors=True, user_agent="UA/1")
        self.assertEqual(
            build_context_options(config), {"ignore_https_errors": True, "user_agent": "UA/1"}
        )

    def test_cdp_url(self):
        self.assertEqual(cdp_url("9222"), "http://localhost:9222")
        self.assertEqual(cdp_url("ws://host:9222/devtools/browser/x"), "ws://host:9222/devtools/browser/x")

    def test_cdp_attaches_and_leaves_remote_browser_running(self):
        page = MagicMock()
        context = MagicMock(pages=[page])
        context.close = AsyncMock()
        browser = MagicMock(contexts=[context])
        browser.close = AsyncMock()
        playwright = MagicMock()
        playwright.chromium.connect_over_cdp = AsyncMock(return_value=browser)
        playwright.stop = AsyncMock()
        starter = MagicMock()
        starter.start = AsyncMock(return_value=playwright)
        engine = PlaywrightEngine()

        async def scenario():
            await engine.launch(StartupConfig(cdp="9222"))
            attached_page = engine.page
            await engine.close()
            return attached_page

        with patch("playwright.async_api.async_playwright", return_value=starter):
            attached_page = asyncio.run(scenario())

        playwright.chromium.connect_over_cdp.assert_awaited_once_with("http://localhost:9222")
        playwright.chromium.launch.assert_not_called()
        self.assertIs(attached_page, page)
        context.close.assert_not_awaited()
        browser.close.assert_awaited_once()
        playwright.stop.assert_awaited_once()

    def test_cdp_connect_failure_is_engine_error(self):
        playwright = MagicMock()
        playwright.chromium.connect_over_cdp = AsyncMock(side_effect=RuntimeError("ECONNREFUSED"))
        playwright.stop = AsyncMock()
        starter = MagicMock()
        starter.start = AsyncMock(return_value=playwright)

        with patch("playwright.async_api.async_playwright", return_value=starter):
            with self.assertRaises(EngineError) as context:
                asyncio.run(PlaywrightEngine().launch(StartupConfig(cdp="9")))

        self.assertIn("http://localhost:9", str(context.exception))
        playwright.stop.assert_awaited_once()

    def test_page_before_launch_is_engine_error(self):
        with self.assertRaises(EngineError):
            PlaywrightEngine().page


class TestBaseEngine(unittest.TestCase):

    def test_dispatches_to_handler(self):
        result = asyncio.run(EchoEngine().execute(build_command("echo", text="hi")))
        self.assertEqual(result, {"text": "hi"})

    def test_unsupported_action(self):
        with self.assertRaises(UnsupportedAction) as context:
            asyncio.run(EchoEngine().execute(build_command("fly")))
        self.assertEqual(str(context.exception), 'Action "fly" not supported by the echo backend')


class TestDaemonState(unittest.TestCase):

    def test_launches_once_and_counts_commands(self):
        state = DaemonState("s", StartupConfig(), engine_factory=EchoEngine)

        async def scenario():
            first = await state.execute(build_command("echo", text="a"))
            second = await state.execute(build_command("echo", text="b"))
            return first, second

        first, second = asyncio.run(scenario())

        self.assertEqual(first.data, {"text": "a"})
        self.assertEqual(second.data, {"text": "b"})
        self.assertEqual(state.engine.launches, 1)
        self.assertEqual(state.get_stats()["commands_served"], 2)
        self.assertTrue(state.get_stats()["engine_launched"])

    def test_engine_error_keeps_command_id(self):
        state = DaemonState("s", StartupConfig(), engine_factory=EchoEngine)
        command = build_command("fail")

        response = asyncio.run(state.execute(command))

        self.assertFalse(response.success)
        self.assertEqual(response.id, command.id)
        self.assertEqual(response.error, "Timeout waiting for selector")

    def test_unknown_backend_is_error_response(self):
        state = DaemonState("s", StartupConfig(backend="missing-backend"))
        response = asyncio.run(state.execute(build_command("url")))
        self.assertFalse(response.success)
        self.assertEqual(response.error, "Unknown browser backend 'missing-backend'")

    def test_shutdown_closes_engine(self):
        state = DaemonState("s", StartupConfig(), engine_factory=EchoEngine)

        async def scenario():
            await state.execute(build_command("echo", text="a"))
            engine = state.engine
            await state.shutdown()
            await state.shutdown()
            return engine

        engine = asyncio.run(scenario())
        self.assertTrue(engine.closed)
        self.assertIsNone(state.engine)

    def test_launch_command_reconnects_when_endpoint_changes(self):
        state = DaemonState("s", StartupConfig(), engine_factory=EchoEngine)

        async def scenario():
            await state.execute(build_command("echo", text="a"))
            first_engine = state.engine
            first = await state.execute(build_command("launch", cdpPort=9222))
            second_engine = state.engine
            again = await state.execute(build_command("launch", cdpPort="9222"))
            moved = await state.execute(build_command("launch", cdpPort="ws://remote:9333/devtools"))
            return first_engine, second_engine, first, again, moved

        first_engine, second_engine, first, again, moved = asyncio.run(scenario())

        self.assertTrue(first_engine.closed)
        self.assertEqual(first.data, {"launched": True, "cdp": "9222"})
        self.assertEqual(second_engine.config.cdp, "9222")
        self.assertEqual(again.data, {"launched": False, "cdp": "9222"})
        self.assertTrue(second_engine.closed)
        self.assertEqual(moved.data, {"launched": True, "cdp": "ws://remote:9333/devtools"})
        self.assertEqual(state.engine.config.cdp, "ws://remote:9333/devtools")

    def test_launch_command_carries_context_options(self):
        state = DaemonState("s", StartupConfig(), engine_factory=EchoEngine)
        command = build_command(
            "launch", cdpPort=9222, ignoreHTTPSErrors=True, args=["--mute-audio"], userAgent="UA/2"
        )

        asyncio.run(state.execute(command))

        self.assertEqual(
            state.config,
            StartupConfig(cdp="9222", ignore_https_errors=True, args=("--mute-audio",), user_agent="UA/2"),
        )

    def test_launch_command_rejects_bad_port(self):
        state = DaemonState("s", StartupConfig(), engine_factory=EchoEngine)

        response = asyncio.run(state.execute(build_command("launch", cdpPort=0)))

        self.assertFalse(response.success)
        self.assertEqual(response.error, "Invalid CDP port: port must be greater than 0")
        self.assertIsNone(state.engine)
        self.assertIsNone(state.config.cdp)

    def test_persist_path(self):
        self.assertIsNone(DaemonState("s", StartupConfig()).persist_path())
        self.assertEqual(
            DaemonState("work", StartupConfig(persist=True)).persist_path(),
            PERSIST_DIR / "work.json",
        )
        self.assertEqual(
            DaemonState("s", StartupConfig(state="/tmp/state.json")).persist_path(),
            Path("/tmp/state.json"),
        )

    def test_backend_name(self):
        self.assertEqual(DaemonState("s", StartupConfig()).backend, "native")
        self.assertEqual(DaemonState("s", StartupConfig(backend="x")).backend, "x")


if __name__ == "__main__":
    unittest.main()
