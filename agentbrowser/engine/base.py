"""
Base engine interface used by the daemon.

The daemon never touches a browser directly; it hands each command to an
engine and wraps whatever comes back in a Response.
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

from agentbrowser.core.configs import StartupConfig
from agentbrowser.daemon.errors import UnsupportedAction
from agentbrowser.daemon.protocol import Command


class BaseEngine(ABC):
    """Abstract browser engine driven by the daemon."""

    name = "base"

    @abstractmethod
    async def launch(self, config: StartupConfig, storage_state: Optional[Path] = None) -> None:
        """
        Start the browser according to the startup configuration.

        Args:
            config: Launch parameters the daemon was spawned with
            storage_state: Saved cookies/localStorage to restore, if any
        """

    @abstractmethod
    async def close(self) -> None:
        """Close the browser; must be safe to call when never launched."""

    async def save_state(self, path: Path) -> None:
        """Write storage state to path. Engines without state ignore this."""

    async def execute(self, command: Command) -> Any:
        """
        Run one action and return its data payload.

        Dispatches to ``do_<action>(**fields)``.

        Raises:
            UnsupportedAction: No handler for the action
        """
        handler = getattr(self, f"do_{command.action}", None)
        if handler is None:
            raise UnsupportedAction(command.action, self.name)
        return await handler(**command.fields)
