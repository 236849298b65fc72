"""Small platform helpers shared by the CLI and the daemon."""

from agentbrowser.utils.process import is_process_alive

__all__ = ["is_process_alive"]
