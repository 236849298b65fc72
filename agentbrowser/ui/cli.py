"""Main CLI entry point - one invocation, one command to the session daemon."""

import json
import logging
import sys
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import typer

from agentbrowser.core.configs import (
    ClientSettings,
    StartupConfig,
    get_client_settings,
    get_startup_config,
    load_environment,
    parse_cdp_endpoint,
)
from agentbrowser.daemon.client import DaemonClient, send_command
from agentbrowser.daemon.errors import AgentBrowserError
from agentbrowser.daemon.protocol import build_command
from agentbrowser.daemon.registry import list_sessions, validate_session_name
from agentbrowser.daemon.supervisor import ensure_daemon, stop_daemon
from agentbrowser.ui.output import UIManager, colors_enabled

app = typer.Typer(
    add_completion=False,
    no_args_is_help=True,
    help="agent-browser - Browser automation for agents, one command at a time.",
)
session_app = typer.Typer(help="Show or list sessions.", invoke_without_command=True)
daemon_app = typer.Typer(help="Inspect or stop the session daemon.", no_args_is_help=True)
app.add_typer(session_app, name="session")
app.add_typer(daemon_app, name="daemon")

# Startup options a "launch" command can change on a running daemon
CDP_LAUNCH_FIELDS = ("cdp", "ignore_https_errors", "args", "user_agent")


@dataclass
class Invocation:
    """Everything one CLI invocation needs, computed once in the callback."""
    settings: ClientSettings
    startup: StartupConfig
    ui: UIManager


# ============================================================================
# Shared Setup - called on every invocation
# ============================================================================

@app.callback()
def main(
    ctx: typer.Context,
    session: Optional[str] = typer.Option(None, "--session", help="Session name (default: $AGENT_BROWSER_SESSION or 'default')"),
    json_output: bool = typer.Option(False, "--json", help="Machine-readable JSON output"),
    debug: bool = typer.Option(False, "--debug", help="Log daemon lifecycle details to stderr"),
    no_color: bool = typer.Option(False, "--no-color", help="Disable colored output"),
    headed: bool = typer.Option(False, "--headed", help="Show the browser window"),
    executable_path: Optional[str] = typer.Option(None, "--executable-path", help="Custom browser executable"),
    extension: Optional[List[str]] = typer.Option(None, "--extension", help="Load a browser extension (repeatable)"),
    state: Optional[str] = typer.Option(None, "--state", help="Storage state file to load"),
    persist: bool = typer.Option(False, "--persist", "-p", help="Save storage state on close"),
    stealth: bool = typer.Option(False, "--stealth", help="Reduce automation fingerprints"),
    profile: Optional[str] = typer.Option(None, "--profile", help="Persistent browser profile directory"),
    ignore_https_errors: bool = typer.Option(False, "--ignore-https-errors", help="Accept invalid TLS certificates"),
    args: Optional[str] = typer.Option(None, "--args", help="Extra browser arguments, comma-separated"),
    user_agent: Optional[str] = typer.Option(None, "--user-agent", help="User-agent override"),
    backend: Optional[str] = typer.Option(None, "--backend", help="Browser backend (default: native)"),
    proxy: Optional[str] = typer.Option(None, "--proxy", help="Proxy URL, credentials allowed"),
    cdp: Optional[str] = typer.Option(None, "--cdp", help="Attach to a running browser: DevTools port or ws:// URL"),
) -> None:
    """
    Resolve settings (config file, .env, environment, flags) for this invocation.

    Startup options only apply when the daemon is started; they are ignored,
    with a warning, if the session's daemon is already running.
    """
    ui = UIManager(use_color=colors_enabled(no_color), json_mode=json_output)

    if debug:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%H:%M:%S",
            stream=sys.stderr,
        )

    try:
        raw = load_environment()
        settings = get_client_settings(raw)
        startup = get_startup_config(raw)
        if session:
            settings.session = session
        validate_session_name(settings.session)
    except (ValueError, AgentBrowserError) as e:
        ui.failure(f"Error loading configuration: {e}")
        raise typer.Exit(1)

    startup = startup.with_overrides(
        headless=False if headed else None,
        executable_path=executable_path,
        extensions=tuple(startup.extensions) + tuple(extension) if extension else None,
        state=state,
        persist=persist or None,
        stealth=stealth or None,
        profile=profile,
        ignore_https_errors=ignore_https_errors or None,
        args=[a.strip() for a in args.split(",") if a.strip()] if args else None,
        user_agent=user_agent,
        backend=backend,
        proxy=proxy,
        cdp=cdp,
    )

    if startup.cdp is not None:
        try:
            startup = startup.with_overrides(cdp=str(parse_cdp_endpoint(startup.cdp)))
        except ValueError as e:
            ui.failure(str(e))
            raise typer.Exit(1)

    ctx.obj = Invocation(settings=settings, startup=startup, ui=ui)


def _run_action(ctx: typer.Context, action: str, fields: Dict[str, Any]) -> None:
    """
    Ensure the daemon, send one command, render the response.

    Exits non-zero on any failure.
    """
    inv: Invocation = ctx.obj
    settings = inv.settings

    try:
        result = ensure_daemon(
            settings.session,
            inv.startup,
            timeout=settings.ready_timeout,
            daemon_command=settings.daemon_command,
        )
    except AgentBrowserError as e:
        inv.ui.failure(str(e))
        raise typer.Exit(1)

    ignored = result.ignored
    if inv.startup.cdp:
        # The launch command below applies these to a running daemon too
        ignored = [i for i in ignored if i.field not in CDP_LAUNCH_FIELDS]
    if not inv.ui.json_mode:
        for item in ignored:
            inv.ui.warning(item.message)

    if inv.startup.cdp:
        _attach_cdp(inv)

    try:
        response = send_command(
            build_command(action, **fields),
            settings.session,
            connect_timeout=settings.connect_timeout,
            read_timeout=settings.read_timeout,
        )
    except AgentBrowserError as e:
        inv.ui.failure(str(e))
        raise typer.Exit(1)

    inv.ui.response(response)
    if not response.success:
        raise typer.Exit(1)


def _attach_cdp(inv: Invocation) -> None:
    """Point the session's daemon at the browser named by --cdp."""
    startup = inv.startup
    fields: Dict[str, Any] = {"cdpPort": parse_cdp_endpoint(startup.cdp)}
    if startup.ignore_https_errors:
        fields["ignoreHTTPSErrors"] = True
    if startup.args:
        fields["args"] = list(startup.args)
    if startup.user_agent:
        fields["userAgent"] = startup.user_agent

    try:
        response = send_command(
            build_command("launch", **fields),
            inv.settings.session,
            connect_timeout=inv.settings.connect_timeout,
            read_timeout=inv.settings.read_timeout,
        )
    except AgentBrowserError as e:
        inv.ui.failure(str(e))
        raise typer.Exit(1)

    if not response.success:
        inv.ui.failure(response.error or "CDP connection failed")
        raise typer.Exit(1)


def parse_fields(pairs: List[str]) -> Dict[str, Any]:
    """
    Turn KEY=VALUE arguments into command fields.

    Values that parse as JSON (numbers, booleans, objects) keep their type;
    everything else is a string.
    """
    fields: Dict[str, Any] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"expected KEY=VALUE, got {pair!r}")
        if key in ("id", "action"):
            raise typer.BadParameter(f"'{key}' is set automatically")
        try:
            fields[key] = json.loads(value)
        except ValueError:
            fields[key] = value
    return fields


# ============================================================================
# Commands
# ============================================================================

@app.command()
def send(
    ctx: typer.Context,
    action: str = typer.Argument(..., help="Daemon action, e.g. navigate, click, evaluate"),
    fields: Optional[List[str]] = typer.Argument(None, help="Action fields as KEY=VALUE"),
) -> None:
    """
    Send any action with flat fields.

    Example: agent-browser send click selector='#submit'
    """
    _run_action(ctx, action, parse_fields(fields or []))


@app.command("open")
def open_url(
    ctx: typer.Context,
    url: str = typer.Argument(..., help="URL to open"),
) -> None:
    """
    Navigate the session's page to a URL.

    Example: agent-browser open example.com
    """
    if "://" not in url and not url.startswith(("about:", "data:", "file:")):
        url = f"https://{url}"
    _run_action(ctx, "navigate", {"url": url})


@app.command()
def url(ctx: typer.Context) -> None:
    """Print the current page URL."""
    _run_action(ctx, "url", {})


@app.command()
def close(ctx: typer.Context) -> None:
    """Close the browser and stop the session daemon."""
    inv: Invocation = ctx.obj
    client = DaemonClient(
        inv.settings.session,
        connect_timeout=inv.settings.connect_timeout,
        read_timeout=inv.settings.read_timeout,
    )
    if not client.is_daemon_running():
        stop_daemon(inv.settings.session, timeout=inv.settings.ready_timeout)
        if inv.ui.json_mode:
            inv.ui.emit_json({"success": True, "data": {"closed": False}})
        else:
            inv.ui.info(f"No daemon running for session '{inv.settings.session}'")
        return

    try:
        response = client.close()
    except AgentBrowserError as e:
        inv.ui.failure(str(e))
        raise typer.Exit(1)

    if response.success and not inv.ui.json_mode:
        inv.ui.success(f"Browser closed for session '{inv.settings.session}'")
    else:
        inv.ui.response(response)
    if not response.success:
        raise typer.Exit(1)


@session_app.callback()
def session_main(ctx: typer.Context) -> None:
    """Print the current session name."""
    if ctx.invoked_subcommand is None:
        inv: Invocation = ctx.obj
        inv.ui.current_session(inv.settings.session)


@session_app.command("list")
def session_list(
    ctx: typer.Context,
    all_: bool = typer.Option(False, "--all", "-a", help="Include stale sessions"),
) -> None:
    """List sessions with a running daemon."""
    inv: Invocation = ctx.obj
    inv.ui.sessions(list_sessions(), inv.settings.session, include_stale=all_)


@daemon_app.command("status")
def daemon_status(ctx: typer.Context) -> None:
    """Show daemon health for the current session."""
    inv: Invocation = ctx.obj
    client = DaemonClient(
        inv.settings.session,
        connect_timeout=inv.settings.connect_timeout,
        read_timeout=inv.settings.read_timeout,
    )
    stats = client.health() if client.is_daemon_running() else None
    inv.ui.health(inv.settings.session, stats)
    if stats is None and inv.ui.json_mode:
        raise typer.Exit(1)


@daemon_app.command("stop")
def daemon_stop(ctx: typer.Context) -> None:
    """Stop the current session's daemon and remove stale files."""
    inv: Invocation = ctx.obj
    stopped = stop_daemon(inv.settings.session, timeout=inv.settings.ready_timeout)
    if inv.ui.json_mode:
        inv.ui.emit_json({"success": True, "data": {"stopped": stopped}})
    elif stopped:
        inv.ui.success(f"Stopped daemon for session '{inv.settings.session}'")
    else:
        inv.ui.info(f"No daemon running for session '{inv.settings.session}'")


def run() -> None:
    """Entry point for console script mapping."""
    app()


if __name__ == "__main__":
    run()
