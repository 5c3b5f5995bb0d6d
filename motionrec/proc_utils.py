"""Shared helpers for stopping supervised child processes."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import time
from pathlib import Path
from typing import Optional

_log = logging.getLogger("proc_utils")

_PROC_ROOT = Path("/proc")
_GROUP_POLL_SEC = 0.05


class ProcessStopError(RuntimeError):
    """Raised when a child survives SIGTERM and SIGKILL within the timeouts."""

    def __init__(self, message: str, pid: int | None = None) -> None:
        super().__init__(message)
        self.pid = pid


def _live_group_members(pgid: int) -> Optional[int]:
    """Count non-zombie processes in ``pgid`` via /proc; None when /proc is unavailable."""
    if not _PROC_ROOT.is_dir():
        return None
    count = 0
    for entry in _PROC_ROOT.iterdir():
        if not entry.name.isdigit():
            continue
        try:
            with open(entry / "stat", "r", encoding="utf-8") as handle:
                raw = handle.read()
            # Fields after "comm)": state ppid pgrp ...
            fields = raw.rsplit(")", 1)[1].split()
            state, pgrp = fields[0], int(fields[2])
        except (OSError, IndexError, ValueError):
            continue
        if pgrp == pgid and state not in ("Z", "X"):
            count += 1
    return count


def group_alive(pgid: int) -> bool:
    """True while any member of process group ``pgid`` is still running."""
    try:
        os.killpg(pgid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    members = _live_group_members(pgid)
    if members is None:
        return True
    # Zombies still answer signal 0 until their new parent reaps them.
    return members > 0


def signal_process(proc: subprocess.Popen, sig: int, *, process_group: bool = True) -> None:
    """
    Deliver ``sig`` to ``proc``'s whole group, or to ``proc`` alone.

    The group is signalled even when the leader was already reaped; its pgid
    stays valid while any member lives.
    """
    if process_group:
        try:
            os.killpg(proc.pid, sig)
            return
        except ProcessLookupError:
            return
        except OSError as exc:
            _log.debug("killpg(%s, %s) failed: %r; signalling pid only", proc.pid, sig, exc)
    if proc.poll() is not None:
        return
    if sig == signal.SIGKILL:
        proc.kill()
    else:
        proc.terminate()


def _wait_stopped(proc: subprocess.Popen, pgid: Optional[int], timeout: float) -> bool:
    deadline = time.monotonic() + timeout
    try:
        proc.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        return False
    if pgid is None:
        return True
    while group_alive(pgid):
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return False
        time.sleep(min(_GROUP_POLL_SEC, remaining))
    return True


def stop_process(
    proc: subprocess.Popen,
    *,
    term_timeout: float,
    kill_timeout: float,
    process_group: bool = True,
    label: str = "process",
) -> Optional[int]:
    """
    Stop ``proc`` (and, with ``process_group``, every member of its group).
    - SIGTERM with timeout; if the leader or any group member is still alive,
      SIGKILL with a second timeout.
    - Raise ProcessStopError if anything is still running after that.
    Returns the leader's exit status.
    """
    pgid = proc.pid if process_group else None
    rc = proc.poll()
    if rc is not None:
        if pgid is None or not group_alive(pgid):
            _log.debug("%s pid=%s already exited rc=%s", label, proc.pid, rc)
            return rc
        _log.info("%s pid=%s exited rc=%s but its process group is still running", label, proc.pid, rc)

    signal_process(proc, signal.SIGTERM, process_group=process_group)
    if _wait_stopped(proc, pgid, term_timeout):
        _log.info("%s pid=%s terminated rc=%s", label, proc.pid, proc.returncode)
        return proc.returncode
    _log.warning(
        "%s pid=%s did not exit %.1fs after SIGTERM; sending SIGKILL",
        label,
        proc.pid,
        term_timeout,
    )

    signal_process(proc, signal.SIGKILL, process_group=process_group)
    if not _wait_stopped(proc, pgid, kill_timeout):
        # Unkillable (D state) or not yet reaped by the kernel.
        _log.error("%s pid=%s still not reaped after SIGKILL; zombie risk", label, proc.pid)
        raise ProcessStopError(f"{label} pid={proc.pid} survived SIGKILL", pid=proc.pid)
    _log.info("%s pid=%s killed rc=%s", label, proc.pid, proc.returncode)
    return proc.returncode
