#!/usr/bin/env python3
"""Motion-driven recording daemon.

Reads ``start`` / ``stop`` lines from the motion producer, debounces them, and
keeps at most one recorder process running per motion episode. SIGINT, SIGTERM
and SIGHUP request a clean shutdown; the recorder is always released before
the process exits.
"""

from __future__ import annotations

import logging
import signal
import sys
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from motionrec.config import command_from_value, get_cfg
from motionrec.event_source import EventSource, EventSourceError, open_event_source
from motionrec.motion_state import EventDebouncer
from motionrec.recorder import RecorderLauncher
from motionrec.supervisor import RecordingSupervisor

EXIT_OK = 0
EXIT_SOURCE_FAILURE = 0b01
EXIT_RELEASE_FAILURE = 0b10

LOG_FORMAT = "[%(name)s] %(message)s"

_log = logging.getLogger("daemon")


def _clamp_float(value: Any, default: float, low: float, high: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if number != number:  # NaN
        return default
    return max(low, min(high, number))


@dataclass(slots=True)
class SupervisorSettings:
    recorder_command: list[str] = field(default_factory=list)
    recorder_working_dir: str = ""
    term_timeout: float = 5.0
    kill_timeout: float = 2.0
    process_group: bool = True
    producer_command: list[str] = field(default_factory=list)
    producer_term_timeout: float = 2.0
    poll_interval: float = 0.25
    eof_is_clean: bool = False

    @classmethod
    def from_cfg(cls, cfg: Dict[str, Any]) -> "SupervisorSettings":
        recorder_cfg = cfg.get("recorder", {}) or {}
        events_cfg = cfg.get("events", {}) or {}
        return cls(
            recorder_command=command_from_value(recorder_cfg.get("command")),
            recorder_working_dir=str(recorder_cfg.get("working_dir") or ""),
            term_timeout=_clamp_float(recorder_cfg.get("term_timeout_sec"), 5.0, 0.1, 120.0),
            kill_timeout=_clamp_float(recorder_cfg.get("kill_timeout_sec"), 2.0, 0.1, 120.0),
            process_group=bool(recorder_cfg.get("process_group", True)),
            producer_command=command_from_value(events_cfg.get("producer_command")),
            producer_term_timeout=_clamp_float(
                events_cfg.get("producer_term_timeout_sec"), 2.0, 0.1, 120.0
            ),
            poll_interval=_clamp_float(events_cfg.get("poll_interval_sec"), 0.25, 0.01, 5.0),
            eof_is_clean=bool(events_cfg.get("eof_is_clean", False)),
        )

    def launcher(self) -> RecorderLauncher:
        return RecorderLauncher(
            command=list(self.recorder_command),
            working_dir=self.recorder_working_dir,
            process_group=self.process_group,
            term_timeout=self.term_timeout,
            kill_timeout=self.kill_timeout,
        )


def configure_logging(cfg: Dict[str, Any]) -> int:
    logging_cfg = cfg.get("logging", {}) or {}
    level_name = str(logging_cfg.get("level") or "").strip().upper()
    level = logging.getLevelName(level_name) if level_name else None
    if not isinstance(level, int):
        level = logging.DEBUG if logging_cfg.get("dev_mode") else logging.INFO
    try:
        sys.stdout.reconfigure(line_buffering=True)
    except (AttributeError, ValueError):
        pass
    logging.basicConfig(level=level, format=LOG_FORMAT, stream=sys.stdout, force=True)
    return level


class MotionDaemon:
    """Single consumer loop: source -> debouncer -> supervisor."""

    def __init__(
        self,
        source: Optional[EventSource],
        supervisor: RecordingSupervisor,
        *,
        poll_interval: float = 0.25,
        eof_is_clean: bool = False,
        debouncer: EventDebouncer | None = None,
    ) -> None:
        self.source = source
        self.supervisor = supervisor
        self.debouncer = debouncer or EventDebouncer()
        self.poll_interval = max(0.01, float(poll_interval))
        self.eof_is_clean = bool(eof_is_clean)
        self.stop_event = threading.Event()
        self.stop_reason: Optional[str] = None

    def request_stop(self, reason: str = "requested") -> None:
        if self.stop_reason is None:
            self.stop_reason = reason
        self.stop_event.set()

    def _handle_signal(self, signum: int, _: object) -> None:
        _log.info("received signal %s, shutting down...", signum)
        self.request_stop(f"signal {signum}")

    def install_signal_handlers(self) -> None:
        for sig in (signal.SIGINT, signal.SIGTERM, signal.SIGHUP):
            try:
                signal.signal(sig, self._handle_signal)
            except ValueError:
                # Signal registration fails outside the main thread (tests).
                pass

    def _consume(self) -> int:
        while not self.stop_event.is_set():
            lines = self.source.read_lines(self.poll_interval)
            for line in lines:
                if self.stop_event.is_set():
                    return EXIT_OK
                transition = self.debouncer.process(line)
                if transition is not None:
                    self.supervisor.handle_transition(transition)
                if self.supervisor.release_failed:
                    _log.error("recorder could not be stopped; shutting down")
                    return EXIT_RELEASE_FAILURE
            if self.source.eof:
                if self.eof_is_clean:
                    _log.info("%s closed; shutting down", self.source.name)
                    return EXIT_OK
                _log.error("%s closed unexpectedly; shutting down", self.source.name)
                return EXIT_SOURCE_FAILURE
            self.supervisor.check_recorder()
        return EXIT_OK

    def run(self) -> int:
        if self.source is None:
            raise RuntimeError("MotionDaemon.run() called before an event source was attached")
        code = EXIT_OK
        _log.info("waiting for motion events on %s", self.source.name)
        try:
            code = self._consume()
        except EventSourceError as exc:
            _log.error("event source failed: %s", exc)
            code = EXIT_SOURCE_FAILURE
        except Exception:
            _log.exception("unexpected error in event loop")
            code = EXIT_SOURCE_FAILURE
        finally:
            if not self.supervisor.shutdown():
                code |= EXIT_RELEASE_FAILURE
            if not self.source.close():
                code |= EXIT_RELEASE_FAILURE
        if self.stop_reason is not None:
            _log.info("stopped (%s)", self.stop_reason)
        if code == EXIT_OK:
            _log.info("clean shutdown complete")
        else:
            _log.warning("shutdown complete, exit code %s", code)
        return code


def main() -> int:
    cfg = get_cfg()
    configure_logging(cfg)
    try:
        settings = SupervisorSettings.from_cfg(cfg)
    except ValueError as exc:
        _log.error("invalid configuration: %s", exc)
        return EXIT_SOURCE_FAILURE
    _log.info("recorder command: %s", " ".join(settings.recorder_command) or "(none)")

    daemon = MotionDaemon(
        None,
        RecordingSupervisor(settings.launcher()),
        poll_interval=settings.poll_interval,
        eof_is_clean=settings.eof_is_clean,
    )
    # Handlers must be live before the producer exists.
    daemon.install_signal_handlers()
    try:
        daemon.source = open_event_source(
            settings.producer_command,
            producer_term_timeout=settings.producer_term_timeout,
        )
    except EventSourceError as exc:
        _log.error("cannot open event source: %s", exc)
        return EXIT_SOURCE_FAILURE
    if daemon.stop_event.is_set():
        _log.info("stop requested during startup (%s)", daemon.stop_reason)
    return daemon.run()


if __name__ == "__main__":
    raise SystemExit(main())
