"""Exception hierarchy for the daemon lifecycle and command transport.

Every failure is raised to the calling invocation, which decides how to
render it and which exit code to use. Nothing here prints.
"""

from dataclasses import dataclass
from typing import Optional


class AgentBrowserError(Exception):
    """Base exception for all agent-browser errors."""


class InvalidSessionName(AgentBrowserError, ValueError):
    """Session name cannot be mapped to a marker file and endpoint."""

    def __init__(self, session: str):
        self.session = session
        super().__init__(
            f"Invalid session name {session!r}: use letters, digits, '.', '_' or '-'"
        )


class StaleSessionMarker(AgentBrowserError):
    """Marker file exists but no live daemon stands behind it.

    Recovered automatically by the supervisor; never reaches the user.
    """

    def __init__(self, session: str, pid: Optional[int]):
        self.session = session
        self.pid = pid
        detail = f"pid {pid} is not running" if pid else "marker was never completed"
        super().__init__(f"Stale marker for session '{session}': {detail}")


class SessionBusy(AgentBrowserError):
    """Another live daemon already owns the session's marker."""

    def __init__(self, session: str, pid: int):
        self.session = session
        self.pid = pid
        super().__init__(f"Session '{session}' is already served by daemon pid {pid}")


class DaemonSpawnFailed(AgentBrowserError):
    """Daemon failed to launch or exited before it became ready."""

    def __init__(self, session: str, reason: str):
        self.session = session
        self.reason = reason
        super().__init__(f"Daemon for session '{session}' failed to start: {reason}")


class ReadinessTimeout(DaemonSpawnFailed):
    """Daemon launched but its endpoint never accepted a connection."""

    def __init__(self, session: str, timeout: float, reason: str = ""):
        self.timeout = timeout
        message = f"endpoint not ready after {timeout:.1f}s"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(session, message)


class TransportError(AgentBrowserError):
    """Base class for failures while talking to a running daemon."""


class TransportUnreachable(TransportError):
    """Connecting to the session endpoint failed - the daemon is gone."""

    def __init__(self, endpoint: str, reason: str):
        self.endpoint = endpoint
        self.reason = reason
        super().__init__(f"Daemon not reachable at {endpoint}: {reason}")


class ResponseTimeout(TransportError):
    """The daemon accepted the command but did not answer in time."""

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"No response from daemon within {timeout:.1f}s")


class ProtocolError(TransportError):
    """Malformed, truncated or mismatched response frame."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Protocol error: {reason}")


class EngineError(AgentBrowserError):
    """Raised inside the daemon when the browser engine cannot serve an action."""


class UnknownBackend(EngineError):
    def __init__(self, backend: str):
        self.backend = backend
        super().__init__(f"Unknown browser backend '{backend}'")


class UnsupportedAction(EngineError):
    def __init__(self, action: str, backend: str):
        self.action = action
        self.backend = backend
        super().__init__(f"Action \"{action}\" not supported by the {backend} backend")


@dataclass(frozen=True)
class IgnoredConfiguration:
    """Warning: a startup-only option was supplied to an already running daemon."""
    field: str
    flag: str

    @property
    def message(self) -> str:
        return (
            f"{self.flag} ignored: daemon already running. "
            "Use 'agent-browser close' first to restart with new options."
        )
