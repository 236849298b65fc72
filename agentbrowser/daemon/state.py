"""In-memory state for the daemon.

Holds the resources that outlive a single command: the browser engine and
its startup configuration. The engine is launched lazily on the first
action that needs it, so a daemon that only answers ``health`` or
``close`` never starts a browser.

Thread safety: not thread-safe. The daemon runs on one asyncio loop and
commands are serialized through an asyncio.Lock.
"""

import asyncio
import logging
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from agentbrowser.core.configs import StartupConfig, parse_cdp_endpoint
from agentbrowser.daemon.errors import EngineError
from agentbrowser.daemon.protocol import Command, Response, error_response, success_response
from agentbrowser.engine import BaseEngine, DEFAULT_BACKEND, load_engine_factory

logger = logging.getLogger(__name__)

PERSIST_DIR = Path.home() / ".agent-browser" / "sessions"


class DaemonState:
    """
    Per-daemon state: one session, one configuration, at most one engine.
    """

    def __init__(
        self,
        session: str,
        config: StartupConfig,
        engine_factory: Optional[Callable[[], BaseEngine]] = None,
    ):
        """
        Args:
            session: Session this daemon serves
            config: Startup configuration from the spawning invocation
            engine_factory: Engine constructor; resolved from config.backend when omitted
        """
        self.session = session
        self.config = config
        self.start_time = time.time()
        self.commands_served = 0

        self._engine_factory = engine_factory
        self.engine: Optional[BaseEngine] = None
        self._lock = asyncio.Lock()

    @property
    def backend(self) -> str:
        return self.config.backend or DEFAULT_BACKEND

    def persist_path(self) -> Optional[Path]:
        """Where storage state is saved on close, if persistence is on."""
        if self.config.state:
            return Path(self.config.state).expanduser()
        if self.config.persist:
            return PERSIST_DIR / f"{self.session}.json"
        return None

    def _initial_storage_state(self) -> Optional[Path]:
        path = self.persist_path()
        if path is not None and path.exists():
            return path
        return None

    async def get_engine(self) -> BaseEngine:
        """Launch the engine on first use."""
        if self.engine is None:
            factory = self._engine_factory or load_engine_factory(self.config.backend)
            engine = factory()
            await engine.launch(self.config, storage_state=self._initial_storage_state())
            self.engine = engine
            logger.info("Engine '%s' ready for session '%s'", self.backend, self.session)
        return self.engine

    def launch_config(self, fields: Dict[str, Any]) -> StartupConfig:
        """
        Configuration requested by a ``launch`` command.

        Raises:
            EngineError: cdpPort is not a port or WebSocket URL
        """
        overrides: Dict[str, Any] = {}
        if fields.get("cdpPort") is not None:
            try:
                overrides["cdp"] = str(parse_cdp_endpoint(fields["cdpPort"]))
            except ValueError as e:
                raise EngineError(str(e)) from e
        if fields.get("ignoreHTTPSErrors"):
            overrides["ignore_https_errors"] = True
        if fields.get("args"):
            overrides["args"] = [str(a) for a in fields["args"]]
        if fields.get("userAgent"):
            overrides["user_agent"] = fields["userAgent"]
        return self.config.with_overrides(**overrides)

    async def _close_engine(self) -> None:
        """Persist storage state if requested, then close the engine. Caller holds the lock."""
        if self.engine is None:
            return
        path = self.persist_path()
        if path is not None and self.config.persist:
            try:
                await self.engine.save_state(path)
                logger.info("Saved storage state to %s", path)
            except Exception as e:
                logger.warning("Could not save storage state: %s", e)
        try:
            await self.engine.close()
        finally:
            self.engine = None

    async def _launch(self, command: Command) -> Dict[str, Any]:
        """Relaunch the engine if the requested configuration differs."""
        config = self.launch_config(command.fields)
        if self.engine is not None and config == self.config:
            return {"launched": False, "cdp": config.cdp}
        await self._close_engine()
        self.config = config
        await self.get_engine()
        return {"launched": True, "cdp": config.cdp}

    async def execute(self, command: Command) -> Response:
        """Run a command on the engine, turning failures into error responses."""
        async with self._lock:
            self.commands_served += 1
            try:
                if command.action == "launch":
                    return success_response(command.id, await self._launch(command))
                engine = await self.get_engine()
                data = await engine.execute(command)
            except EngineError as e:
                return error_response(command.id, str(e))
            except Exception as e:
                logger.exception("Action '%s' failed", command.action)
                return error_response(command.id, str(e) or type(e).__name__)
            return success_response(command.id, data)

    async def shutdown(self) -> None:
        """Persist storage state if requested, then close the engine."""
        async with self._lock:
            await self._close_engine()

    def get_stats(self) -> Dict[str, Any]:
        """Daemon statistics for the health action."""
        return {
            "session": self.session,
            "backend": self.backend,
            "uptime_seconds": time.time() - self.start_time,
            "commands_served": self.commands_served,
            "engine_launched": self.engine is not None,
        }
