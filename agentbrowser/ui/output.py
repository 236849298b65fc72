"""
Terminal output for agent-browser.

Human mode prints short colored lines through rich; JSON mode prints one
JSON object per invocation on stdout so scripts can parse it. Whether color
is used is decided once per invocation and passed in.
"""

import json
import os
from typing import Any, Iterable, Optional

import typer
from rich.console import Console
from rich.markup import escape

from agentbrowser.daemon.protocol import Response
from agentbrowser.daemon.registry import SessionInfo


def colors_enabled(no_color_flag: bool = False) -> bool:
    """Color is on unless --no-color is given or NO_COLOR is set (https://no-color.org/)."""
    return not no_color_flag and "NO_COLOR" not in os.environ


class UIManager:
    """Manages colored terminal output for agent-browser."""

    def __init__(self, use_color: bool = True, json_mode: bool = False):
        """
        Args:
            use_color: Emit ANSI colors
            json_mode: Print machine-readable JSON instead of text
        """
        self.json_mode = json_mode
        self.console = Console(no_color=not use_color, highlight=False, soft_wrap=True)
        self.err_console = Console(stderr=True, no_color=not use_color, highlight=False, soft_wrap=True)

    def success(self, message: str) -> None:
        self.console.print(f"[green]✓[/green] {escape(message)}")

    def error(self, message: str) -> None:
        self.err_console.print(f"[red]✗[/red] {escape(message)}")

    def warning(self, message: str) -> None:
        self.err_console.print(f"[yellow]⚠[/yellow] {escape(message)}")

    def info(self, message: str) -> None:
        self.console.print(escape(message))

    def dim(self, message: str) -> None:
        self.console.print(f"[bright_black]{escape(message)}[/bright_black]")

    def emit_json(self, payload: Any) -> None:
        typer.echo(json.dumps(payload, ensure_ascii=False))

    def failure(self, message: str) -> None:
        """Report an invocation-level error (no response from the daemon)."""
        if self.json_mode:
            self.emit_json({"success": False, "error": message})
        else:
            self.error(message)

    def response(self, response: Response) -> None:
        """Render a daemon response."""
        if self.json_mode:
            self.emit_json(response.to_dict())
            return

        if not response.success:
            self.error(response.error or "Unknown error")
            return

        data = response.data
        if data is None or data == {}:
            self.success("Done")
        elif isinstance(data, dict) and len(data) == 1:
            value = next(iter(data.values()))
            if isinstance(value, (dict, list)):
                self.console.print_json(data=value)
            else:
                self.info(str(value))
        elif isinstance(data, (dict, list)):
            self.console.print_json(data=data)
        else:
            self.info(str(data))

    def sessions(
        self,
        sessions: Iterable[SessionInfo],
        current: str,
        include_stale: bool = False,
    ) -> None:
        """List sessions sorted by name, marking the current one."""
        rows = sorted(
            (s for s in sessions if s.alive or include_stale), key=lambda s: s.name
        )

        if self.json_mode:
            names = [s.name for s in rows if s.alive]
            payload: dict = {"sessions": names}
            if include_stale:
                payload["stale"] = [s.name for s in rows if not s.alive]
            self.emit_json({"success": True, "data": payload})
            return

        if not rows:
            self.info("No active sessions")
            return

        self.info("Active sessions:")
        for s in rows:
            marker = "→" if s.name == current else " "
            suffix = "" if s.alive else " (stale)"
            line = f"{marker} {s.name}{suffix}"
            if s.alive:
                self.info(line)
            else:
                self.dim(line)

    def current_session(self, session: str) -> None:
        if self.json_mode:
            self.emit_json({"success": True, "data": {"session": session}})
        else:
            self.info(session)

    def health(self, session: str, stats: Optional[dict]) -> None:
        if self.json_mode:
            self.emit_json({"success": stats is not None, "data": stats})
            return
        if stats is None:
            self.info(f"No daemon running for session '{session}'")
            return
        self.success(f"Daemon running for session '{session}'")
        for key, value in stats.items():
            if isinstance(value, float):
                value = f"{value:.1f}"
            self.dim(f"  {key}: {value}")
