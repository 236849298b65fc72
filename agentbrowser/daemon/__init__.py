"""Daemon lifecycle and command transport for agent-browser.

Each CLI invocation is a short-lived process. A long-lived daemon per session
owns the browser, so state (pages, cookies) survives between invocations.

Architecture:
- registry: session name -> marker file + endpoint, liveness checks
- supervisor: start the session daemon exactly once, even under races
- client: one command, one correlated response, per connection
- server/state: the daemon process itself (imported only by the daemon)
"""

from agentbrowser.daemon.client import DaemonClient, send_command
from agentbrowser.daemon.protocol import (
    Command,
    Response,
    build_command,
    gen_id,
    serialize_command,
    deserialize_command,
    serialize_response,
    deserialize_response,
)
from agentbrowser.daemon.registry import SessionInfo, SessionPaths, is_alive, list_sessions, resolve
from agentbrowser.daemon.supervisor import EnsureResult, ensure_daemon, stop_daemon

__all__ = [
    "Command",
    "DaemonClient",
    "EnsureResult",
    "Response",
    "SessionInfo",
    "SessionPaths",
    "build_command",
    "deserialize_command",
    "deserialize_response",
    "ensure_daemon",
    "gen_id",
    "is_alive",
    "list_sessions",
    "resolve",
    "send_command",
    "serialize_command",
    "serialize_response",
    "stop_daemon",
]
