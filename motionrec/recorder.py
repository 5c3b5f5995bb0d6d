#!/usr/bin/env python3
"""
Recorder process lifecycle.

- RecorderLauncher spawns the external recorder (no required arguments)
- RecordingHandle owns one live recorder process until released
- release() sends SIGTERM, waits, escalates to SIGKILL, and raises
  RecorderReleaseError if the process still cannot be reaped

The recorder runs in its own session so both signals reach the whole process
group; a wrapper script and the encoder it forks are stopped together.
"""

from __future__ import annotations

import logging
import subprocess
import time
from dataclasses import dataclass, field
from typing import Optional, Sequence

from motionrec.proc_utils import ProcessStopError, stop_process

_log = logging.getLogger("recorder")


class RecorderError(RuntimeError):
    """Base class for recorder lifecycle failures."""


class RecorderLaunchError(RecorderError):
    """Raised when the recorder process cannot be started."""


class RecorderReleaseError(RecorderError):
    """Raised when the recorder survives both SIGTERM and SIGKILL."""

    def __init__(self, message: str, pid: int | None = None) -> None:
        super().__init__(message)
        self.pid = pid


class RecordingHandle:
    def __init__(
        self,
        proc: subprocess.Popen,
        command: Sequence[str],
        *,
        process_group: bool = True,
        term_timeout: float = 5.0,
        kill_timeout: float = 2.0,
    ) -> None:
        self._proc = proc
        self.command = list(command)
        self.process_group = bool(process_group)
        self.term_timeout = max(0.0, float(term_timeout))
        self.kill_timeout = max(0.0, float(kill_timeout))
        self.started_at = time.monotonic()
        self.returncode: Optional[int] = None
        self._released = False
        self._exit_reported = False

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def released(self) -> bool:
        return self._released

    def poll(self) -> Optional[int]:
        rc = self._proc.poll()
        if rc is not None:
            self.returncode = rc
        return rc

    def report_unexpected_exit(self) -> bool:
        """Log a recorder that exited by itself; True only the first time."""
        if self._released or self._exit_reported:
            return False
        rc = self.poll()
        if rc is None:
            return False
        self._exit_reported = True
        _log.warning(
            "recorder pid=%s exited on its own rc=%s after %.1fs; waiting for motion stop",
            self.pid,
            rc,
            time.monotonic() - self.started_at,
        )
        return True

    def release(self) -> Optional[int]:
        if self._released:
            return self.returncode

        if self._proc.poll() is not None:
            _log.info("recorder pid=%s already exited rc=%s", self.pid, self._proc.returncode)
        # The leader may be gone while the encoder it forked still runs.
        try:
            rc = stop_process(
                self._proc,
                term_timeout=self.term_timeout,
                kill_timeout=self.kill_timeout,
                process_group=self.process_group,
                label="recorder",
            )
        except ProcessStopError as exc:
            raise RecorderReleaseError(str(exc), pid=exc.pid) from exc

        self._released = True
        self.returncode = rc
        return rc


@dataclass
class RecorderLauncher:
    command: list[str] = field(default_factory=list)
    working_dir: str = ""
    process_group: bool = True
    term_timeout: float = 5.0
    kill_timeout: float = 2.0

    def launch(self) -> RecordingHandle:
        argv = list(self.command)
        if not argv:
            raise RecorderLaunchError("recorder command is empty")
        try:
            proc = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                cwd=self.working_dir or None,
                start_new_session=self.process_group,
            )
        except (OSError, subprocess.SubprocessError, ValueError) as exc:
            raise RecorderLaunchError(f"failed to launch {argv[0]}: {exc}") from exc
        _log.info("recorder started pid=%s: %s", proc.pid, " ".join(argv))
        return RecordingHandle(
            proc,
            argv,
            process_group=self.process_group,
            term_timeout=self.term_timeout,
            kill_timeout=self.kill_timeout,
        )
