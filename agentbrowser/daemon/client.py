"""Lightweight client for daemon communication.

One connection carries exactly one command and one response:

    connect (short timeout) -> write frame -> read frame (long timeout) -> close

No retries happen here: browser actions such as clicks have side effects,
so a failed send is reported to the caller instead of being replayed.

Usage:
    client = DaemonClient(session="default")
    response = client.send("navigate", url="https://example.com")
"""

import logging
import socket
import time
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

from agentbrowser.daemon.errors import (
    ProtocolError,
    ResponseTimeout,
    TransportUnreachable,
)
from agentbrowser.daemon.protocol import (
    FRAME_DELIMITER,
    MAX_FRAME_BYTES,
    Command,
    Response,
    build_command,
    deserialize_response,
    serialize_command,
)
from agentbrowser.daemon.registry import IS_WINDOWS, is_alive, resolve

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT = 1.0
DEFAULT_READ_TIMEOUT = 30.0


def connect_endpoint(endpoint: str, timeout: float) -> socket.socket:
    """
    Open a stream connection to a session endpoint.

    Raises:
        OSError: If the connection cannot be established (includes timeouts)
    """
    if IS_WINDOWS:
        host, port = endpoint.rsplit(":", 1)
        return socket.create_connection((host, int(port)), timeout=timeout)

    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    sock.settimeout(timeout)
    try:
        sock.connect(endpoint)
    except BaseException:
        sock.close()
        raise
    return sock


def probe_endpoint(endpoint: str, timeout: float) -> bool:
    """Connect-and-close readiness check."""
    try:
        with connect_endpoint(endpoint, timeout):
            return True
    except OSError:
        return False


def _read_frame(sock: socket.socket, timeout: float) -> bytes:
    """Read up to the first frame delimiter within an overall deadline."""
    deadline = time.monotonic() + timeout
    buffer = bytearray()

    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise ResponseTimeout(timeout)
        sock.settimeout(remaining)

        try:
            chunk = sock.recv(65536)
        except socket.timeout:
            raise ResponseTimeout(timeout)
        except OSError as e:
            raise ProtocolError(f"connection lost while reading response: {e}")

        if not chunk:
            if buffer:
                raise ProtocolError(
                    f"truncated response: connection closed after {len(buffer)} bytes"
                )
            raise ProtocolError("connection closed without a response")

        buffer.extend(chunk)
        end = buffer.find(FRAME_DELIMITER)
        if end >= 0:
            return bytes(buffer[:end])
        if len(buffer) > MAX_FRAME_BYTES:
            raise ProtocolError(f"response exceeds {MAX_FRAME_BYTES} bytes")


def send_command(
    command: Union[Command, Mapping[str, Any]],
    session: str = "default",
    *,
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
    read_timeout: float = DEFAULT_READ_TIMEOUT,
    runtime_dir: Optional[Path] = None,
) -> Response:
    """
    Deliver one command to a session's daemon and return its response.

    Does not check liveness first: an unreachable endpoint is the signal.

    Args:
        command: Command, or flat mapping with 'action' (and usually 'id')
        session: Session name
        connect_timeout: Seconds allowed for the connection
        read_timeout: Seconds allowed for the whole response
        runtime_dir: Override for the shared runtime directory

    Raises:
        TransportUnreachable: Endpoint refused or did not accept in time
        ResponseTimeout: No complete response within read_timeout
        ProtocolError: Truncated, malformed or mismatched response
    """
    if not isinstance(command, Command):
        command = Command.from_dict(command)

    paths = resolve(session, runtime_dir)
    frame = serialize_command(command)

    try:
        sock = connect_endpoint(paths.endpoint, connect_timeout)
    except OSError as e:
        raise TransportUnreachable(paths.endpoint, str(e) or type(e).__name__) from e

    logger.debug("-> %s %s", session, frame[:200])
    with sock:
        try:
            sock.settimeout(read_timeout)
            sock.sendall(frame)
        except socket.timeout:
            raise ResponseTimeout(read_timeout)
        except OSError as e:
            raise TransportUnreachable(paths.endpoint, f"send failed: {e}") from e

        line = _read_frame(sock, read_timeout)

    logger.debug("<- %s %s", session, line[:200])
    response = deserialize_response(line)
    if response.id is not None and response.id != command.id:
        raise ProtocolError(
            f"response id {response.id!r} does not match command id {command.id!r}"
        )
    return response


class DaemonClient:
    """
    Session-bound wrapper around send_command.

    Designed for minimal overhead:
    - Uses stdlib socket (no external deps)
    - One connection per command
    """

    def __init__(
        self,
        session: str = "default",
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        read_timeout: float = DEFAULT_READ_TIMEOUT,
        runtime_dir: Optional[Path] = None,
    ):
        """
        Initialize client.

        Args:
            session: Session name whose daemon receives the commands
            connect_timeout: Connect timeout in seconds
            read_timeout: Response timeout in seconds
            runtime_dir: Override for the shared runtime directory
        """
        self.session = session
        self.connect_timeout = connect_timeout
        self.read_timeout = read_timeout
        self.runtime_dir = runtime_dir
        self.paths = resolve(session, runtime_dir)

    def send_command(self, command: Union[Command, Mapping[str, Any]]) -> Response:
        return send_command(
            command,
            self.session,
            connect_timeout=self.connect_timeout,
            read_timeout=self.read_timeout,
            runtime_dir=self.runtime_dir,
        )

    def send(self, action: str, **fields: Any) -> Response:
        """Build a command with a fresh id and send it."""
        return self.send_command(build_command(action, **fields))

    def is_daemon_running(self) -> bool:
        """
        Check if the daemon is alive and accepting connections.

        Returns True if:
        1. The marker names a live process
        2. The endpoint accepts a connection
        """
        if not is_alive(self.paths.marker):
            return False
        return probe_endpoint(self.paths.endpoint, self.connect_timeout)

    def health(self) -> Optional[Dict[str, Any]]:
        """
        Get daemon health and stats.

        Returns stats dict or None if the daemon is not reachable.
        """
        try:
            response = self.send("health")
        except (TransportUnreachable, ResponseTimeout, ProtocolError):
            return None
        return response.data if response.success else None

    def close(self) -> Response:
        """Ask the daemon to close the browser and exit."""
        return self.send("close")
