"""Session registry - maps session names to their on-disk identity.

Every session owns two names in a shared runtime directory:

    agent-browser-<session>.pid    liveness marker (daemon pid as text)
    agent-browser-<session>.sock   Unix socket endpoint (POSIX)

On Windows the endpoint is a loopback TCP port derived from the session
name instead of a socket file. The marker is the only source of liveness
truth; a marker whose pid is gone is stale and simply means "not running".
"""

import os
import re
import sys
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from agentbrowser.daemon.errors import InvalidSessionName
from agentbrowser.utils.process import is_process_alive

PREFIX = "agent-browser"
MARKER_SUFFIX = ".pid"
SOCKET_SUFFIX = ".sock"
LOG_SUFFIX = ".log"

IS_WINDOWS = sys.platform == "win32"

_SESSION_NAME = re.compile(r"[A-Za-z0-9._-]+")

# Dynamic/private port range used for the Windows TCP endpoint
_PORT_BASE = 49152
_PORT_SPAN = 16383


@dataclass(frozen=True)
class SessionPaths:
    """Filesystem identity of one session."""
    session: str
    marker: Path
    endpoint: str
    log: Path


@dataclass(frozen=True)
class SessionInfo:
    name: str
    alive: bool


def get_runtime_dir() -> Path:
    """Shared directory holding markers and sockets for all sessions."""
    override = os.environ.get("AGENT_BROWSER_RUNTIME_DIR")
    return Path(override) if override else Path(tempfile.gettempdir())


def validate_session_name(session: str) -> str:
    """Return the name unchanged, or raise InvalidSessionName."""
    if not session or not _SESSION_NAME.fullmatch(session) or session in (".", ".."):
        raise InvalidSessionName(session)
    return session


def port_for_session(session: str) -> int:
    """
    Stable TCP port for a session (Windows endpoint).

    Uses the 32-bit ``h = h * 31 + c`` string hash folded into 49152-65534.
    """
    h = 0
    for ch in session:
        h = (h * 31 + ord(ch)) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return _PORT_BASE + abs(h) % _PORT_SPAN


def resolve(session: str, runtime_dir: Optional[Path] = None) -> SessionPaths:
    """
    Derive marker, endpoint and log paths for a session.

    Deterministic in the session name and runtime directory; touches
    nothing on disk.
    """
    validate_session_name(session)
    base = runtime_dir or get_runtime_dir()
    stem = f"{PREFIX}-{session}"

    if IS_WINDOWS:
        endpoint = f"127.0.0.1:{port_for_session(session)}"
    else:
        endpoint = str(base / f"{stem}{SOCKET_SUFFIX}")

    return SessionPaths(
        session=session,
        marker=base / f"{stem}{MARKER_SUFFIX}",
        endpoint=endpoint,
        log=base / f"{stem}{LOG_SUFFIX}",
    )


def parse_marker(text: str) -> Optional[int]:
    text = text.strip()
    if not text.isdigit():
        return None
    return int(text)


def read_marker(marker: Path) -> Optional[int]:
    """Pid stored in a marker file, or None if missing, empty or garbled."""
    try:
        return parse_marker(marker.read_text())
    except (OSError, UnicodeDecodeError):
        return None


def is_alive(marker: Path) -> bool:
    """True if the marker names a process that currently exists."""
    pid = read_marker(marker)
    if pid is None:
        return False
    return is_process_alive(pid)


def list_sessions(runtime_dir: Optional[Path] = None) -> List[SessionInfo]:
    """
    Enumerate sessions that have a marker file, with their liveness.

    Order follows directory enumeration; sort before display. Markers that
    vanish while being read are skipped.
    """
    base = runtime_dir or get_runtime_dir()
    head = f"{PREFIX}-"
    sessions: List[SessionInfo] = []

    try:
        entries = list(os.scandir(base))
    except FileNotFoundError:
        return sessions

    for entry in entries:
        name = entry.name
        if not (name.startswith(head) and name.endswith(MARKER_SUFFIX)):
            continue
        session = name[len(head):-len(MARKER_SUFFIX)]
        if not session:
            continue

        try:
            text = Path(entry.path).read_text()
        except FileNotFoundError:
            continue
        except (OSError, UnicodeDecodeError):
            sessions.append(SessionInfo(session, False))
            continue

        pid = parse_marker(text)
        sessions.append(SessionInfo(session, pid is not None and is_process_alive(pid)))

    return sessions


def cleanup_session(paths: SessionPaths) -> None:
    """Remove a session's marker and socket file; missing files are fine."""
    paths.marker.unlink(missing_ok=True)
    if not IS_WINDOWS:
        Path(paths.endpoint).unlink(missing_ok=True)
