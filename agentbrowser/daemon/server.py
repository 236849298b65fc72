"""Async socket server for the agent-browser daemon.

This is the process the supervisor spawns for a session. It:
1. Binds the session endpoint (Unix socket; loopback TCP on Windows)
2. Writes its pid into the session marker once the endpoint is bound
3. Answers newline-delimited JSON commands, one response per command line
4. Removes marker and socket on every shutdown path

Usage:
    python -m agentbrowser.daemon.server [--session NAME] [--idle-timeout SECONDS]

Startup configuration arrives through AGENT_BROWSER_* environment variables.
"""

import asyncio
import json
import logging
import os
import signal
import sys
import threading
import time
from pathlib import Path
from typing import Callable, Optional

from agentbrowser.core.configs import StartupConfig
from agentbrowser.daemon.errors import ProtocolError, SessionBusy
from agentbrowser.daemon.protocol import (
    MAX_FRAME_BYTES,
    Command,
    Response,
    deserialize_command,
    error_response,
    serialize_response,
    success_response,
)
from agentbrowser.daemon.registry import IS_WINDOWS, SessionPaths, read_marker, resolve
from agentbrowser.daemon.state import DaemonState
from agentbrowser.engine import BaseEngine
from agentbrowser.utils.process import is_process_alive

logger = logging.getLogger(__name__)

# Delay between answering "close" and stopping the server
CLOSE_GRACE = 0.1


def _salvage_id(line: bytes) -> Optional[str]:
    """Best-effort id from a frame that failed validation."""
    try:
        payload = json.loads(line)
    except ValueError:
        return None
    if isinstance(payload, dict) and isinstance(payload.get("id"), str):
        return payload["id"]
    return None


class DaemonServer:
    """
    Async socket server for one session.

    Each connection may carry several command lines; each gets exactly one
    response line. Engine work is serialized by DaemonState.
    """

    def __init__(
        self,
        paths: SessionPaths,
        config: Optional[StartupConfig] = None,
        idle_timeout: float = 0.0,
        engine_factory: Optional[Callable[[], BaseEngine]] = None,
    ):
        """
        Initialize daemon server.

        Args:
            paths: Marker and endpoint of the session to serve
            config: Startup configuration (default: all defaults)
            idle_timeout: Shut down after this many seconds idle (0 = never)
            engine_factory: Engine constructor override
        """
        self.paths = paths
        self.idle_timeout = idle_timeout
        self.state = DaemonState(paths.session, config or StartupConfig(), engine_factory)

        self.server: Optional[asyncio.AbstractServer] = None
        self.last_request_time: float = time.time()
        self._shutdown_event: Optional[asyncio.Event] = None
        self._ready_event: Optional[asyncio.Event] = None
        self._writers: set = set()
        self._idle_task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """Bind, publish the marker and serve until shutdown."""
        self._shutdown_event = asyncio.Event()
        self._ready_event = asyncio.Event()
        logger.info("Starting agent-browser daemon for session '%s'", self.paths.session)

        try:
            self._check_ownership()
            await self._bind()
            self._write_marker()
            self._ready_event.set()
            logger.info("Daemon listening on %s (pid %s)", self.paths.endpoint, os.getpid())

            if not IS_WINDOWS and threading.current_thread() is threading.main_thread():
                loop = asyncio.get_running_loop()
                for sig in (signal.SIGTERM, signal.SIGINT, signal.SIGHUP):
                    loop.add_signal_handler(sig, self._signal_handler)

            if self.idle_timeout > 0:
                self._idle_task = asyncio.create_task(self._idle_watcher())

            await self._shutdown_event.wait()
        finally:
            await self._cleanup()

    async def wait_ready(self) -> None:
        """Block until the endpoint is bound and the marker written."""
        while self._ready_event is None:
            await asyncio.sleep(0.01)
        await self._ready_event.wait()

    def request_shutdown(self) -> None:
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    def _check_ownership(self) -> None:
        """Refuse to serve a session whose marker names another live daemon."""
        owner = read_marker(self.paths.marker)
        if owner and owner != os.getpid() and is_process_alive(owner):
            raise SessionBusy(self.paths.session, owner)

    async def _bind(self) -> None:
        if IS_WINDOWS:
            host, port = self.paths.endpoint.rsplit(":", 1)
            self.server = await asyncio.start_server(
                self._handle_client, host=host, port=int(port), limit=MAX_FRAME_BYTES
            )
            return

        socket_path = Path(self.paths.endpoint)
        # The marker is empty or ours, so nothing live is listening here
        socket_path.unlink(missing_ok=True)
        socket_path.parent.mkdir(parents=True, exist_ok=True)
        self.server = await asyncio.start_unix_server(
            self._handle_client, path=str(socket_path), limit=MAX_FRAME_BYTES
        )
        os.chmod(socket_path, 0o600)

    def _write_marker(self) -> None:
        """Atomically replace the (claimed, empty) marker with our pid."""
        marker = self.paths.marker
        tmp = marker.with_name(f"{marker.name}.{os.getpid()}.tmp")
        tmp.write_text(str(os.getpid()))
        os.replace(tmp, marker)

    async def _handle_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Serve command lines from one connection until it closes."""
        self._writers.add(writer)
        try:
            while not self._shutdown_event.is_set():
                try:
                    line = await reader.readline()
                except ValueError:
                    response = error_response(None, f"Command exceeds {MAX_FRAME_BYTES} bytes")
                    writer.write(serialize_response(response))
                    await writer.drain()
                    break
                if not line:
                    break
                if not line.strip():
                    continue

                response = await self.dispatch(line)
                writer.write(serialize_response(response))
                await writer.drain()
        except (ConnectionResetError, BrokenPipeError):
            logger.debug("Client disconnected")
        except Exception as e:
            logger.exception(f"Error handling client: {e}")
        finally:
            self._writers.discard(writer)
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass

    async def dispatch(self, line: bytes) -> Response:
        """Parse one command line and route it."""
        self.last_request_time = time.time()

        try:
            command = deserialize_command(line)
        except ProtocolError as e:
            return error_response(_salvage_id(line.strip()), str(e))

        if command.action == "health":
            return success_response(command.id, self.state.get_stats())
        if command.action == "close":
            return await self._handle_close(command)
        return await self.state.execute(command)

    async def _handle_close(self, command: Command) -> Response:
        """Close the browser, answer, then stop shortly after."""
        logger.info("Close requested via socket")
        try:
            await self.state.shutdown()
        except Exception as e:
            logger.exception("Engine close failed")
            response = error_response(command.id, str(e))
        else:
            response = success_response(command.id, {"closed": True})
        asyncio.get_running_loop().call_later(CLOSE_GRACE, self.request_shutdown)
        return response

    async def _idle_watcher(self) -> None:
        """Watch for idle timeout and shutdown if exceeded."""
        interval = min(60.0, max(self.idle_timeout / 4, 0.05))
        while not self._shutdown_event.is_set():
            await asyncio.sleep(interval)

            idle_time = time.time() - self.last_request_time
            if idle_time > self.idle_timeout:
                logger.info(
                    f"Idle timeout reached ({idle_time:.0f}s > {self.idle_timeout:.0f}s), "
                    "shutting down"
                )
                self.request_shutdown()
                break

    def _signal_handler(self) -> None:
        """Handle SIGTERM/SIGINT/SIGHUP for graceful shutdown."""
        logger.info("Received shutdown signal")
        self.request_shutdown()

    async def _cleanup(self) -> None:
        """Cleanup on shutdown."""
        logger.info("Cleaning up...")

        if self._idle_task is not None and not self._idle_task.done():
            self._idle_task.cancel()
            try:
                await self._idle_task
            except asyncio.CancelledError:
                pass

        try:
            await self.state.shutdown()
        except Exception as e:
            logger.warning(f"Engine shutdown failed: {e}")

        if self.server:
            self.server.close()
            for writer in list(self._writers):
                writer.close()
            await self.server.wait_closed()

        # Marker and socket belong to whoever the marker names
        if read_marker(self.paths.marker) == os.getpid():
            self.paths.marker.unlink(missing_ok=True)
            if not IS_WINDOWS:
                Path(self.paths.endpoint).unlink(missing_ok=True)

        logger.info("Daemon stopped")


def paths_from_env(session: Optional[str] = None) -> SessionPaths:
    """Session paths handed over by the supervisor, falling back to the registry."""
    session = session or os.environ.get("AGENT_BROWSER_SESSION") or "default"
    paths = resolve(session)
    marker = os.environ.get("AGENT_BROWSER_MARKER")
    endpoint = os.environ.get("AGENT_BROWSER_ENDPOINT")
    return SessionPaths(
        session=session,
        marker=Path(marker) if marker else paths.marker,
        endpoint=endpoint or paths.endpoint,
        log=paths.log,
    )


def run_daemon(
    session: Optional[str] = None,
    idle_timeout: float = 0.0,
) -> None:
    """
    Run the daemon server in the foreground.

    Args:
        session: Session name (default: AGENT_BROWSER_SESSION or "default")
        idle_timeout: Shutdown after this many seconds idle (0 = never)
    """
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    server = DaemonServer(
        paths=paths_from_env(session),
        config=StartupConfig.from_env(os.environ),
        idle_timeout=idle_timeout,
    )

    try:
        asyncio.run(server.start())
    except SessionBusy as e:
        logger.error(str(e))
        sys.exit(1)
    except OSError as e:
        logger.error(f"Could not bind {server.paths.endpoint}: {e}")
        sys.exit(1)


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="agent-browser daemon server")
    parser.add_argument(
        "--session",
        help="Session name (default: $AGENT_BROWSER_SESSION or 'default')",
    )
    parser.add_argument(
        "--idle-timeout",
        type=float,
        default=float(os.environ.get("AGENT_BROWSER_IDLE_TIMEOUT_S") or 0),
        help="Shutdown after this many seconds idle (0 = never)",
    )

    args = parser.parse_args()

    run_daemon(session=args.session, idle_timeout=args.idle_timeout)
