#!/usr/bin/env python3
"""
Recording supervisor (motion-driven recorder orchestration).

Why this file exists:
- The recorder should run only while motion is active.
- The debouncer hands us MOTION_START / MOTION_STOP transitions; we spawn the
  recorder on the first and release it on the second.
- Shutdown always ends with no recorder running.

Only the daemon's consumer loop calls into the supervisor, so the handle is
never touched from two threads and no lock is needed. Signal handlers request
shutdown through the daemon; they never call release() themselves.
"""

from __future__ import annotations

import enum
import logging
from typing import Optional, Protocol

from motionrec.motion_state import Transition
from motionrec.recorder import (
    RecorderLaunchError,
    RecorderReleaseError,
    RecordingHandle,
)

_log = logging.getLogger("supervisor")


class SupervisorState(enum.Enum):
    NO_RECORDING = "no_recording"
    RECORDING = "recording"


class Launcher(Protocol):
    def launch(self) -> RecordingHandle: ...


class RecordingSupervisor:
    def __init__(self, launcher: Launcher) -> None:
        self._launcher = launcher
        self._handle: Optional[RecordingHandle] = None
        self.release_failed = False
        self.launch_failures = 0
        self.spawn_count = 0
        self.release_count = 0

    @property
    def state(self) -> SupervisorState:
        if self._handle is None:
            return SupervisorState.NO_RECORDING
        return SupervisorState.RECORDING

    @property
    def handle(self) -> Optional[RecordingHandle]:
        return self._handle

    def handle_transition(self, transition: Transition) -> None:
        if transition is Transition.MOTION_START:
            self._start_recording()
        elif transition is Transition.MOTION_STOP:
            self._stop_recording()

    def _start_recording(self) -> None:
        if self._handle is not None:
            _log.warning("motion start while recorder pid=%s is live; ignoring", self._handle.pid)
            return
        _log.info("Motion detected.")
        try:
            handle = self._launcher.launch()
        except RecorderLaunchError as exc:
            self.launch_failures += 1
            _log.error("recorder launch failed: %s", exc)
            return
        self._handle = handle
        self.spawn_count += 1

    def _stop_recording(self) -> bool:
        handle = self._handle
        if handle is None:
            return True
        _log.info("Motion stopped.")
        # Ownership ends here even when release() raises.
        self._handle = None
        self.release_count += 1
        try:
            handle.release()
        except RecorderReleaseError as exc:
            self.release_failed = True
            _log.error("recorder release failed: %s", exc)
            return False
        return True

    def check_recorder(self) -> None:
        if self._handle is not None:
            self._handle.report_unexpected_exit()

    def shutdown(self) -> bool:
        """Release any live recorder; returns False if the release failed."""
        if self._handle is None:
            return not self.release_failed
        _log.info("shutting down with recorder pid=%s live; releasing", self._handle.pid)
        released = self._stop_recording()
        return released and not self.release_failed
