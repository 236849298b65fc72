"""
Tests for ensure_daemon / stop_daemon using a stand-in daemon process.

The stand-in (tests/fakes/fake_daemon.py) follows the same contract as the
real daemon: bind the endpoint, then replace the claimed marker with its pid.
"""

import json
import os
import shutil
import signal
import subprocess
import sys
import tempfile
import threading
import time
import unittest
from pathlib import Path
from unittest.mock import patch

from agentbrowser.core.configs import StartupConfig
from agentbrowser.daemon.client import send_command
from agentbrowser.daemon.errors import DaemonSpawnFailed, ReadinessTimeout
from agentbrowser.daemon.protocol import build_command
from agentbrowser.daemon.registry import is_alive, read_marker, resolve
from agentbrowser.daemon.supervisor import (
    REAP_LOCK_STALE,
    REAP_LOCK_SUFFIX,
    _marker_identity,
    _release_claim,
    claim_marker,
    ensure_daemon,
    ignored_configuration,
    reap_stale_marker,
    stop_daemon,
)
from agentbrowser.utils.process import is_process_alive

PROJECT_ROOT = Path(__file__).resolve().parent.parent
FAKE_DAEMON = str(Path(__file__).parent / "fakes" / "fake_daemon.py")
RACE_ENSURE = str(Path(__file__).parent / "fakes" / "race_ensure.py")


def fake_daemon(mode: str, delay: float = 0.0) -> list:
    return [sys.executable, FAKE_DAEMON, mode, str(delay)]


@unittest.skipIf(sys.platform == "win32", "stand-in daemon uses Unix sockets")
class TestEnsureDaemon(unittest.TestCase):

    def setUp(self):
        self.temp_dir = Path(tempfile.mkdtemp())
        self.session = "sup"
        self.paths = resolve(self.session, self.temp_dir)

    def tearDown(self):
        pid = read_marker(self.paths.marker)
        if pid and is_process_alive(pid):
            try:
                send_command(build_command("close"), self.session, read_timeout=2, runtime_dir=self.temp_dir)
            except Exception:
                os.kill(pid, signal.SIGTERM)
            deadline = time.monotonic() + 2
            while self.paths.marker.exists() and time.monotonic() < deadline:
                time.sleep(0.05)
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _ensure(self, mode="ok", config=None, timeout=5.0, delay=0.0):
        return ensure_daemon(
            self.session,
            config,
            timeout=timeout,
            daemon_command=fake_daemon(mode, delay),
            runtime_dir=self.temp_dir,
        )

    def _send(self, action):
        return send_command(build_command(action), self.session, runtime_dir=self.temp_dir)

    def test_spawns_when_nothing_running(self):
        result = self._ensure()

        self.assertFalse(result.already_running)
        self.assertEqual(result.ignored, [])
        self.assertTrue(is_alive(self.paths.marker))
        self.assertEqual(result.pid, read_marker(self.paths.marker))
        self.assertNotEqual(result.pid, os.getpid())
        self.assertEqual(self._send("url").data, {"url": "about:blank"})

    def test_second_call_reuses_daemon(self):
        first = self._ensure()
        second = self._ensure()

        self.assertFalse(first.already_running)
        self.assertTrue(second.already_running)
        self.assertEqual(read_marker(self.paths.marker), first.pid)

    def test_startup_options_ignored_when_running(self):
        self._ensure()

        result = self._ensure(config=StartupConfig(headless=False, proxy="http://p:1"))

        self.assertTrue(result.already_running)
        self.assertEqual([i.flag for i in result.ignored], ["--headed", "--proxy"])
        self.assertEqual(
            result.ignored[0].message,
            "--headed ignored: daemon already running. "
            "Use 'agent-browser close' first to restart with new options.",
        )

    def test_startup_config_reaches_daemon(self):
        with patch.dict(os.environ, {"AGENT_BROWSER_PROXY": "http://inherited:1"}):
            self._ensure(config=StartupConfig(headless=False, user_agent="TestAgent/1.0"))

        env = self._send("env").data
        self.assertEqual(env["AGENT_BROWSER_HEADED"], "1")
        self.assertEqual(env["AGENT_BROWSER_USER_AGENT"], "TestAgent/1.0")
        self.assertEqual(env["AGENT_BROWSER_SESSION"], self.session)
        self.assertEqual(env["AGENT_BROWSER_DAEMON"], "1")
        self.assertNotIn("AGENT_BROWSER_PROXY", env)

    def test_recovers_from_dead_pid_marker(self):
        self.paths.marker.write_text("999999999")

        result = self._ensure()

        self.assertFalse(result.already_running)
        self.assertNotEqual(read_marker(self.paths.marker), 999999999)
        self.assertTrue(is_alive(self.paths.marker))

    def test_recovers_from_abandoned_empty_marker(self):
        self.paths.marker.write_text("")
        old = time.time() - 60
        os.utime(self.paths.marker, (old, old))

        result = self._ensure(timeout=2.0)

        self.assertFalse(result.already_running)
        self.assertTrue(is_alive(self.paths.marker))

    def test_recovers_when_claimer_never_finishes(self):
        # Looks like a peer mid-startup, but nobody ever fills it in
        self.paths.marker.write_text("")
        recent = time.time() - 0.2
        os.utime(self.paths.marker, (recent, recent))

        result = self._ensure(timeout=0.8)

        self.assertFalse(result.already_running)
        self.assertTrue(is_alive(self.paths.marker))

    def test_exit_before_ready_reports_log_tail(self):
        start = time.monotonic()
        with self.assertRaises(DaemonSpawnFailed) as context:
            self._ensure(mode="fail")

        self.assertNotIsInstance(context.exception, ReadinessTimeout)
        message = str(context.exception)
        self.assertIn("exited with code 3", message)
        self.assertIn("browser failed to launch", message)
        self.assertLess(time.monotonic() - start, 4.0)
        self.assertFalse(self.paths.marker.exists())

    def test_never_ready_times_out(self):
        start = time.monotonic()
        with self.assertRaises(ReadinessTimeout) as context:
            self._ensure(mode="hang", timeout=0.5)

        self.assertLess(time.monotonic() - start, 3.0)
        self.assertEqual(context.exception.timeout, 0.5)
        self.assertFalse(self.paths.marker.exists())

    def test_launcher_that_exits_zero_keeps_polling(self):
        result = self._ensure(mode="launch", delay=0.3)

        self.assertFalse(result.already_running)
        self.assertTrue(is_alive(self.paths.marker))

    def test_missing_executable_is_spawn_failure(self):
        with self.assertRaises(DaemonSpawnFailed):
            ensure_daemon(
                self.session,
                daemon_command=[str(self.temp_dir / "no-such-binary")],
                runtime_dir=self.temp_dir,
            )
        self.assertFalse(self.paths.marker.exists())

    def test_concurrent_invocations_spawn_exactly_one(self):
        workers = 6
        barrier = threading.Barrier(workers)
        results, errors = [], []

        def invoke():
            barrier.wait()
            try:
                results.append(self._ensure(delay=0.3))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=invoke) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=15)

        self.assertEqual(errors, [])
        self.assertEqual(len(results), workers)
        self.assertEqual(sum(1 for r in results if not r.already_running), 1)
        self.assertTrue(is_alive(self.paths.marker))

    def test_processes_racing_on_dead_pid_marker_spawn_exactly_one(self):
        workers = 8
        env = dict(os.environ)
        env["PYTHONPATH"] = os.pathsep.join(filter(None, [str(PROJECT_ROOT), env.get("PYTHONPATH")]))

        for _ in range(3):
            self.paths.marker.write_text("999999999")
            start_at = time.time() + 1.0
            procs = [
                subprocess.Popen(
                    [sys.executable, RACE_ENSURE, str(self.temp_dir), self.session, str(start_at)]
                    + fake_daemon("ok", 0.2),
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    env=env,
                )
                for _ in range(workers)
            ]
            outcomes = []
            for proc in procs:
                out, err = proc.communicate(timeout=30)
                self.assertEqual(proc.returncode, 0, err.decode(errors="replace"))
                outcomes.append(json.loads(out))

            spawned = [o for o in outcomes if not o["already_running"]]
            self.assertEqual(len(spawned), 1, outcomes)
            self.assertEqual({o["pid"] for o in outcomes}, {read_marker(self.paths.marker)})

            self.assertTrue(stop_daemon(self.session, timeout=3.0, runtime_dir=self.temp_dir))
            self.assertFalse(self.paths.marker.exists())

    def test_clean_exit_without_daemon_times_out_with_reason(self):
        with self.assertRaises(ReadinessTimeout) as context:
            self._ensure(mode="quit", timeout=0.5)

        self.assertIn("daemon exited with code 0", str(context.exception))
        self.assertFalse(self.paths.marker.exists())

    def test_stop_daemon(self):
        self._ensure()

        self.assertTrue(stop_daemon(self.session, timeout=3.0, runtime_dir=self.temp_dir))
        self.assertFalse(self.paths.marker.exists())
        self.assertFalse(stop_daemon(self.session, timeout=1.0, runtime_dir=self.temp_dir))

    def test_stop_daemon_clears_stale_files(self):
        self.paths.marker.write_text("999999999")

        self.assertFalse(stop_daemon(self.session, runtime_dir=self.temp_dir))
        self.assertFalse(self.paths.marker.exists())

    def test_stop_daemon_leaves_fresh_claim_alone(self):
        # Another invocation has claimed the marker and is still spawning
        self.paths.marker.write_text("")

        self.assertFalse(stop_daemon(self.session, timeout=5.0, runtime_dir=self.temp_dir))
        self.assertTrue(self.paths.marker.exists())


class TestSupervisorHelpers(unittest.TestCase):

    def setUp(self):
        self.temp_dir = Path(tempfile.mkdtemp())

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_claim_marker_is_exclusive(self):
        marker = self.temp_dir / "agent-browser-x.pid"
        self.assertTrue(claim_marker(marker))
        self.assertFalse(claim_marker(marker))
        self.assertEqual(marker.read_text(), "")

    def _paths(self):
        return resolve("reap", self.temp_dir)

    def test_reap_keeps_fresh_empty_marker(self):
        paths = self._paths()
        paths.marker.write_text("")

        self.assertFalse(reap_stale_marker(paths, grace=5.0))
        self.assertTrue(paths.marker.exists())

    def test_reap_keeps_live_marker(self):
        paths = self._paths()
        paths.marker.write_text(str(os.getpid()))

        self.assertFalse(reap_stale_marker(paths, grace=5.0))
        self.assertTrue(paths.marker.exists())

    def test_reap_removes_dead_pid_marker(self):
        paths = self._paths()
        paths.marker.write_text("999999999")

        self.assertTrue(reap_stale_marker(paths, grace=5.0))
        self.assertFalse(paths.marker.exists())
        self.assertFalse(Path(str(paths.marker) + REAP_LOCK_SUFFIX).exists())

    def test_reap_backs_off_while_lock_is_held(self):
        paths = self._paths()
        paths.marker.write_text("999999999")
        lock = Path(str(paths.marker) + REAP_LOCK_SUFFIX)
        lock.write_text("")

        self.assertFalse(reap_stale_marker(paths, grace=5.0))
        self.assertTrue(paths.marker.exists())
        self.assertTrue(lock.exists())

    def test_reap_breaks_abandoned_lock(self):
        paths = self._paths()
        paths.marker.write_text("999999999")
        lock = Path(str(paths.marker) + REAP_LOCK_SUFFIX)
        lock.write_text("")
        old = time.time() - (REAP_LOCK_STALE + 5)
        os.utime(lock, (old, old))

        self.assertFalse(reap_stale_marker(paths, grace=5.0))
        self.assertFalse(lock.exists())
        self.assertTrue(reap_stale_marker(paths, grace=5.0))
        self.assertFalse(paths.marker.exists())

    def test_failed_spawn_only_releases_its_own_claim(self):
        paths = self._paths()
        self.assertTrue(claim_marker(paths.marker))
        claim = _marker_identity(paths.marker)

        # Our claim aged out and another invocation reclaimed the session
        paths.marker.unlink()
        time.sleep(0.01)
        self.assertTrue(claim_marker(paths.marker))

        _release_claim(paths, claim)
        self.assertTrue(paths.marker.exists())

        _release_claim(paths, _marker_identity(paths.marker))
        self.assertFalse(paths.marker.exists())

    def test_ignored_configuration_defaults_empty(self):
        self.assertEqual(ignored_configuration(StartupConfig()), [])

    def test_ignored_configuration_lists_each_flag(self):
        config = StartupConfig(extensions=("/ext",), persist=True, backend="native")
        self.assertEqual(
            [(i.field, i.flag) for i in ignored_configuration(config)],
            [("extensions", "--extension"), ("persist", "--persist"), ("backend", "--backend")],
        )


if __name__ == "__main__":
    unittest.main()
