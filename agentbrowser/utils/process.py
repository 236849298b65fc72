"""
Process liveness probing.

One capability, `is_process_alive(pid)`, with the platform implementation
picked once at import time. Neither implementation signals or terminates
the target process.
"""

import os
import sys


def _posix_is_alive(pid: int) -> bool:
    """Signal 0 performs the permission and existence checks only."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Owned by another user, but it exists
        return True
    except OSError:
        return False
    return True


def _windows_is_alive(pid: int) -> bool:
    # os.kill(pid, 0) on Windows terminates the target, so ask psutil instead
    import psutil

    return psutil.pid_exists(pid)


_probe = _windows_is_alive if sys.platform == "win32" else _posix_is_alive


def is_process_alive(pid: int) -> bool:
    """
    Check whether a process with the given id currently exists.

    Args:
        pid: Process id read from a session marker

    Returns:
        True if the process exists, False otherwise (including pid <= 0)
    """
    if pid <= 0:
        return False
    return _probe(pid)
