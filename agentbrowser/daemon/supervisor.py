"""Daemon supervisor - makes sure a session's daemon is up exactly once.

Many short-lived CLI processes may race to start the same session. The only
coordination point is the marker file:

1. A live pid in the marker means the daemon is running; nothing is touched.
2. Otherwise the marker is created with O_CREAT | O_EXCL. Exactly one racer
   wins and spawns the daemon; the file stays empty until the daemon has
   bound its endpoint and writes its own pid into it.
3. Losers watch the winner: live pid + connectable endpoint means
   "already running"; a dead pid, or an empty marker older than the
   readiness window, is stale. Stale markers are removed under a side lock
   (marker + ".reap") after re-checking, then the claim is retried.
"""

import logging
import os
import subprocess
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from agentbrowser.core.configs import STARTUP_ENV_VARS, StartupConfig
from agentbrowser.daemon.client import probe_endpoint, send_command
from agentbrowser.daemon.errors import (
    DaemonSpawnFailed,
    IgnoredConfiguration,
    ReadinessTimeout,
    StaleSessionMarker,
    TransportError,
)
from agentbrowser.daemon.protocol import build_command
from agentbrowser.daemon.registry import (
    IS_WINDOWS,
    SessionPaths,
    cleanup_session,
    is_alive,
    parse_marker,
    read_marker,
    resolve,
)
from agentbrowser.utils.process import is_process_alive

logger = logging.getLogger(__name__)

DAEMON_MODULE = "agentbrowser.daemon.server"

DEFAULT_READY_TIMEOUT = 5.0
READY_POLL_INTERVAL = 0.1
READY_PROBE_TIMEOUT = 0.2
MAX_CLAIM_ATTEMPTS = 5
REAP_LOCK_SUFFIX = ".reap"
REAP_LOCK_STALE = 2.0
LOG_TAIL_BYTES = 2048


@dataclass
class EnsureResult:
    """Outcome of ensure_daemon."""
    already_running: bool
    ignored: List[IgnoredConfiguration] = field(default_factory=list)
    pid: Optional[int] = None


@dataclass
class DaemonHandle:
    """A freshly spawned daemon, held only until it becomes ready."""
    process: subprocess.Popen
    paths: SessionPaths

    @property
    def pid(self) -> int:
        return self.process.pid


def default_daemon_command() -> List[str]:
    return [sys.executable, "-m", DAEMON_MODULE]


def ignored_configuration(config: StartupConfig) -> List[IgnoredConfiguration]:
    """One warning per startup option that differs from its default."""
    return [
        IgnoredConfiguration(name, StartupConfig.flag_for(name))
        for name in config.non_default_fields()
    ]


def claim_marker(marker: Path) -> bool:
    """
    Atomically create an empty marker.

    Returns:
        True if this process created it, False if it already existed
    """
    try:
        fd = os.open(marker, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
    except FileExistsError:
        return False
    os.close(fd)
    return True


def _marker_state(marker: Path, grace: float) -> str:
    """Classify a marker as 'missing', 'starting', 'alive' or 'stale'."""
    try:
        text = marker.read_text()
        age = time.time() - marker.stat().st_mtime
    except FileNotFoundError:
        return "missing"
    except (OSError, UnicodeDecodeError):
        return "stale"

    pid = parse_marker(text)
    if pid is None:
        return "starting" if age < grace else "stale"
    return "alive" if is_process_alive(pid) else "stale"


def _reap_lock(paths: SessionPaths) -> Path:
    return paths.marker.with_name(paths.marker.name + REAP_LOCK_SUFFIX)


def _try_lock(lock: Path) -> bool:
    if claim_marker(lock):
        return True
    _break_abandoned_lock(lock)
    return False


def _break_abandoned_lock(lock: Path) -> None:
    """A reap lock only lives for a read and an unlink; an old one lost its owner."""
    try:
        age = time.time() - lock.stat().st_mtime
    except FileNotFoundError:
        return
    if age > REAP_LOCK_STALE:
        lock.unlink(missing_ok=True)


def _marker_identity(marker: Path) -> Optional[Tuple[int, int]]:
    try:
        st = marker.stat()
    except FileNotFoundError:
        return None
    return st.st_ino, st.st_mtime_ns


def reap_stale_marker(paths: SessionPaths, grace: float, remove_endpoint: bool = False) -> bool:
    """
    Remove the marker if, and only if, it is stale right now.

    Removal is serialized on an exclusive side lock and staleness is checked
    again under it, so a racer that judged an older marker stale can never
    delete a claim made after that judgement.

    Args:
        paths: Session to check
        grace: Age after which an empty marker counts as abandoned
        remove_endpoint: Also remove the leftover socket file

    Returns:
        True if this call removed a stale marker
    """
    lock = _reap_lock(paths)
    if not _try_lock(lock):
        return False
    try:
        if _marker_state(paths.marker, grace) != "stale":
            return False
        if remove_endpoint:
            cleanup_session(paths)
        else:
            paths.marker.unlink(missing_ok=True)
        logger.debug("Removed stale marker for session '%s'", paths.session)
        return True
    finally:
        lock.unlink(missing_ok=True)


def _release_claim(paths: SessionPaths, claim: Optional[Tuple[int, int]]) -> None:
    """
    Drop our own claim after a failed spawn.

    By then the empty marker may have aged past the grace period and been
    replaced by another invocation's claim, so only the exact file we
    created is removed.
    """
    lock = _reap_lock(paths)
    while not _try_lock(lock):
        time.sleep(0.01)
    try:
        if claim is not None and _marker_identity(paths.marker) == claim:
            paths.marker.unlink(missing_ok=True)
    finally:
        lock.unlink(missing_ok=True)


def _await_peer(paths: SessionPaths, deadline: float, timeout: float) -> bool:
    """
    Follow another invocation's startup of the same session.

    Returns:
        True once the peer's daemon is alive and connectable, False if the
        marker disappeared

    Raises:
        StaleSessionMarker: The marker belongs to nobody
        ReadinessTimeout: The peer did not finish within the deadline
    """
    while True:
        state = _marker_state(paths.marker, grace=timeout)
        if state == "missing":
            return False
        if state == "stale":
            raise StaleSessionMarker(paths.session, read_marker(paths.marker))
        if state == "alive" and probe_endpoint(paths.endpoint, READY_PROBE_TIMEOUT):
            return True
        if time.monotonic() >= deadline:
            # An abandoned empty marker ages past the grace period right at the deadline
            if _marker_state(paths.marker, grace=timeout) == "stale":
                raise StaleSessionMarker(paths.session, read_marker(paths.marker))
            raise ReadinessTimeout(
                paths.session, timeout, "another process is starting this session"
            )
        time.sleep(READY_POLL_INTERVAL)


def _daemon_environment(paths: SessionPaths, config: StartupConfig) -> dict:
    env = {k: v for k, v in os.environ.items() if k not in STARTUP_ENV_VARS}
    env.update(config.to_env())
    env.update({
        "AGENT_BROWSER_DAEMON": "1",
        "AGENT_BROWSER_SESSION": paths.session,
        "AGENT_BROWSER_MARKER": str(paths.marker),
        "AGENT_BROWSER_ENDPOINT": paths.endpoint,
    })
    return env


def _detach_kwargs() -> dict:
    """Popen arguments that let the daemon outlive this invocation."""
    if IS_WINDOWS:
        flags = getattr(subprocess, "DETACHED_PROCESS", 0) | getattr(
            subprocess, "CREATE_NEW_PROCESS_GROUP", 0
        )
        return {"creationflags": flags}
    return {"start_new_session": True}


def _log_tail(log: Path) -> str:
    try:
        with open(log, "rb") as f:
            f.seek(0, os.SEEK_END)
            size = f.tell()
            f.seek(max(0, size - LOG_TAIL_BYTES))
            tail = f.read().decode("utf-8", errors="replace")
    except OSError:
        return ""
    lines = [line for line in tail.splitlines() if line.strip()]
    return "\n".join(lines[-5:])


def _stop_process(process: subprocess.Popen) -> None:
    if process.poll() is not None:
        return
    process.terminate()
    try:
        process.wait(timeout=1.0)
    except subprocess.TimeoutExpired:
        process.kill()


def _spawn(paths: SessionPaths, config: StartupConfig, command: Sequence[str]) -> DaemonHandle:
    """Launch the daemon detached, with stdout/stderr appended to the session log."""
    try:
        log = open(paths.log, "ab")
    except OSError:
        log = None

    try:
        process = subprocess.Popen(
            list(command),
            stdin=subprocess.DEVNULL,
            stdout=log if log is not None else subprocess.DEVNULL,
            stderr=subprocess.STDOUT if log is not None else subprocess.DEVNULL,
            env=_daemon_environment(paths, config),
            close_fds=True,
            **_detach_kwargs(),
        )
    except OSError as e:
        raise DaemonSpawnFailed(paths.session, f"could not launch {command[0]}: {e}") from e
    finally:
        if log is not None:
            log.close()

    logger.debug("Spawned daemon pid %s for session '%s'", process.pid, paths.session)
    return DaemonHandle(process=process, paths=paths)


def _wait_until_ready(handle: DaemonHandle, timeout: float) -> None:
    """
    Poll the endpoint until one connect succeeds.

    A non-zero exit before readiness fails immediately. A zero exit is
    treated as a launcher that detached its real daemon, so polling goes on.
    """
    paths = handle.paths
    deadline = time.monotonic() + timeout
    exited_cleanly = False

    while True:
        if probe_endpoint(paths.endpoint, READY_PROBE_TIMEOUT) and is_alive(paths.marker):
            return

        code = handle.process.poll()
        if code is not None and code != 0:
            reason = f"daemon exited with code {code}"
            tail = _log_tail(paths.log)
            if tail:
                reason = f"{reason}\n{tail}"
            raise DaemonSpawnFailed(paths.session, reason)
        if code == 0:
            exited_cleanly = True

        if time.monotonic() >= deadline:
            _stop_process(handle.process)
            reason = "daemon exited with code 0" if exited_cleanly else ""
            tail = _log_tail(paths.log)
            if tail:
                reason = f"{reason}\n{tail}" if reason else tail
            raise ReadinessTimeout(paths.session, timeout, reason)

        time.sleep(READY_POLL_INTERVAL)


def _already_running(paths: SessionPaths, config: StartupConfig) -> EnsureResult:
    ignored = ignored_configuration(config)
    for item in ignored:
        logger.debug("Ignoring %s for running daemon", item.flag)
    return EnsureResult(already_running=True, pid=read_marker(paths.marker), ignored=ignored)


def ensure_daemon(
    session: str = "default",
    config: Optional[StartupConfig] = None,
    *,
    timeout: float = DEFAULT_READY_TIMEOUT,
    daemon_command: Optional[Sequence[str]] = None,
    runtime_dir: Optional[Path] = None,
) -> EnsureResult:
    """
    Guarantee a daemon for the session is running and accepting commands.

    Args:
        session: Session name
        config: Launch parameters, applied only if a daemon is spawned
        timeout: Readiness bound in seconds
        daemon_command: Override for the daemon argv
        runtime_dir: Override for the shared runtime directory

    Returns:
        EnsureResult; already_running is False only for the invocation
        that spawned the daemon

    Raises:
        DaemonSpawnFailed: Launch failed or the daemon exited early
        ReadinessTimeout: The endpoint never became connectable
    """
    config = config or StartupConfig()
    paths = resolve(session, runtime_dir)

    if is_alive(paths.marker):
        return _already_running(paths, config)

    paths.marker.parent.mkdir(parents=True, exist_ok=True)
    deadline = time.monotonic() + timeout
    command = list(daemon_command or default_daemon_command())

    reaped = 0
    while True:
        if claim_marker(paths.marker):
            claim = _marker_identity(paths.marker)
            try:
                handle = _spawn(paths, config, command)
                _wait_until_ready(handle, timeout)
            except DaemonSpawnFailed:
                _release_claim(paths, claim)
                raise
            return EnsureResult(already_running=False, pid=read_marker(paths.marker))

        try:
            if _await_peer(paths, deadline, timeout):
                return _already_running(paths, config)
            if time.monotonic() >= deadline:
                raise ReadinessTimeout(session, timeout, "marker keeps changing hands")
            continue
        except StaleSessionMarker as e:
            logger.debug("%s; reclaiming", e)

        if reap_stale_marker(paths, grace=timeout):
            reaped += 1
            if reaped >= MAX_CLAIM_ATTEMPTS:
                raise DaemonSpawnFailed(
                    session, f"could not claim {paths.marker} after {MAX_CLAIM_ATTEMPTS} attempts"
                )
        elif time.monotonic() >= deadline:
            raise ReadinessTimeout(session, timeout, "stale marker could not be removed")
        else:
            # Another invocation is removing it
            time.sleep(READY_POLL_INTERVAL)


def stop_daemon(
    session: str = "default",
    timeout: float = DEFAULT_READY_TIMEOUT,
    runtime_dir: Optional[Path] = None,
) -> bool:
    """
    Ask a session's daemon to close and wait for its marker to clear.

    Returns:
        True if a running daemon was stopped, False if none was running
    """
    paths = resolve(session, runtime_dir)
    if not is_alive(paths.marker):
        # An empty marker may be a claim in progress; only stale ones go
        reap_stale_marker(paths, grace=timeout, remove_endpoint=True)
        return False

    try:
        send_command(build_command("close"), session, read_timeout=timeout, runtime_dir=runtime_dir)
    except TransportError as e:
        logger.debug("close failed for session '%s': %s", session, e)

    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if not is_alive(paths.marker):
            return True
        time.sleep(READY_POLL_INTERVAL)
    return False
