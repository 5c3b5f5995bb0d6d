from __future__ import annotations

import logging
import os
import signal
import sys
import threading
import time
from pathlib import Path

import pytest
import yaml

from motionrec import config as config_module
from motionrec import daemon as daemon_module
from motionrec.daemon import (
    EXIT_OK,
    EXIT_RELEASE_FAILURE,
    EXIT_SOURCE_FAILURE,
    MotionDaemon,
    configure_logging,
)
from motionrec.event_source import EventSource, EventSourceError
from motionrec.recorder import RecorderLaunchError, RecorderReleaseError
from motionrec.supervisor import RecordingSupervisor, SupervisorState


class DummyHandle:
    def __init__(self, launcher, pid, fail_release=False):
        self.launcher = launcher
        self.pid = pid
        self.fail_release = fail_release

    def release(self):
        self.launcher.actions.append("terminate")
        if self.fail_release:
            raise RecorderReleaseError("stuck", pid=self.pid)
        return 0

    def report_unexpected_exit(self):
        return False


class DummyLauncher:
    def __init__(self, fail_release=False, fail_launch=False):
        self.actions: list[str] = []
        self.fail_release = fail_release
        self.fail_launch = fail_launch

    def launch(self):
        if self.fail_launch:
            self.actions.append("spawn_failed")
            raise RecorderLaunchError("missing")
        self.actions.append("spawn")
        return DummyHandle(self, 100 + len(self.actions), self.fail_release)


class ScriptedSource:
    """Yields prepared batches of lines, then raises or reports EOF."""

    def __init__(self, batches, *, error=None):
        self.batches = list(batches)
        self.error = error
        self.eof = False
        self.name = "scripted"
        self.closed = False

    def read_lines(self, timeout):
        if self.batches:
            return self.batches.pop(0)
        if self.error is not None:
            raise self.error
        self.eof = True
        return []

    def close(self):
        self.closed = True
        return True


@pytest.fixture
def pipe_source():
    r, w = os.pipe()
    source = EventSource(r, name="pipe")
    state = {"w": w}

    def write(data: bytes) -> None:
        os.write(state["w"], data)

    def close_writer() -> None:
        os.close(state["w"])
        state["w"] = None

    yield source, write, close_writer
    source.close()
    if state["w"] is not None:
        os.close(state["w"])
    os.close(r)


def test_unexpected_eof_releases_recorder_and_fails(pipe_source):
    source, write, close_writer = pipe_source
    launcher = DummyLauncher()
    daemon = MotionDaemon(source, RecordingSupervisor(launcher), poll_interval=0.05)

    write(b"start\nstart\nstop\nstart\n")
    close_writer()

    assert daemon.run() == EXIT_SOURCE_FAILURE
    assert launcher.actions == ["spawn", "terminate", "spawn", "terminate"]
    assert daemon.supervisor.state is SupervisorState.NO_RECORDING


def test_clean_eof_exits_zero(pipe_source):
    source, write, close_writer = pipe_source
    launcher = DummyLauncher()
    daemon = MotionDaemon(
        source, RecordingSupervisor(launcher), poll_interval=0.05, eof_is_clean=True
    )

    write(b"warming up\nready\nstart\nstop\nstop\n")
    close_writer()

    assert daemon.run() == EXIT_OK
    assert launcher.actions == ["spawn", "terminate"]


def test_signal_while_recording_terminates_once(pipe_source):
    source, write, _ = pipe_source
    launcher = DummyLauncher()
    daemon = MotionDaemon(source, RecordingSupervisor(launcher), poll_interval=0.05)
    result: dict[str, int] = {}

    worker = threading.Thread(target=lambda: result.setdefault("code", daemon.run()))
    worker.start()
    try:
        write(b"start\nstart\n")
        deadline = time.monotonic() + 5.0
        while launcher.actions != ["spawn"] and time.monotonic() < deadline:
            time.sleep(0.01)
        assert launcher.actions == ["spawn"]

        daemon._handle_signal(signal.SIGTERM, None)
    finally:
        daemon.request_stop("test teardown")
        worker.join(timeout=5.0)

    assert not worker.is_alive()
    assert result["code"] == EXIT_OK
    assert launcher.actions == ["spawn", "terminate"]
    assert daemon.stop_reason == f"signal {signal.SIGTERM}"


def test_stop_requested_before_run_processes_nothing():
    launcher = DummyLauncher()
    source = ScriptedSource([["start"]])
    daemon = MotionDaemon(source, RecordingSupervisor(launcher))

    daemon.request_stop()

    assert daemon.run() == EXIT_OK
    assert launcher.actions == []
    assert source.closed is True


def test_read_failure_runs_shutdown_protocol():
    launcher = DummyLauncher()
    source = ScriptedSource([["start"]], error=EventSourceError("read failed"))
    daemon = MotionDaemon(source, RecordingSupervisor(launcher))

    assert daemon.run() == EXIT_SOURCE_FAILURE
    assert launcher.actions == ["spawn", "terminate"]
    assert source.closed is True


def test_unexpected_error_still_releases_recorder(caplog):
    caplog.set_level(logging.ERROR, logger="daemon")
    launcher = DummyLauncher()
    source = ScriptedSource([["start"]], error=ValueError("bug"))
    daemon = MotionDaemon(source, RecordingSupervisor(launcher))

    assert daemon.run() == EXIT_SOURCE_FAILURE
    assert launcher.actions == ["spawn", "terminate"]
    assert any("unexpected error" in record.message for record in caplog.records)


def test_release_failure_stops_daemon_with_release_code():
    launcher = DummyLauncher(fail_release=True)
    source = ScriptedSource([["start", "stop", "start"], ["stop"]])
    daemon = MotionDaemon(source, RecordingSupervisor(launcher))

    code = daemon.run()

    assert code & EXIT_RELEASE_FAILURE
    assert launcher.actions == ["spawn", "terminate"]


def test_launch_failure_keeps_daemon_running():
    launcher = DummyLauncher(fail_launch=True)
    source = ScriptedSource([["start", "stop", "start", "stop"]])
    daemon = MotionDaemon(source, RecordingSupervisor(launcher), eof_is_clean=True)

    assert daemon.run() == EXIT_OK
    assert launcher.actions == ["spawn_failed", "spawn_failed"]


def test_install_signal_handlers_routes_sigterm():
    daemon = MotionDaemon(ScriptedSource([]), RecordingSupervisor(DummyLauncher()))
    previous = {
        sig: signal.getsignal(sig) for sig in (signal.SIGINT, signal.SIGTERM, signal.SIGHUP)
    }
    try:
        daemon.install_signal_handlers()
        os.kill(os.getpid(), signal.SIGTERM)
        for _ in range(100):
            if daemon.stop_event.is_set():
                break
            time.sleep(0.01)
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    assert daemon.stop_event.is_set()


def test_configure_logging_levels(monkeypatch):
    calls: list[dict] = []
    monkeypatch.setattr(logging, "basicConfig", lambda **kwargs: calls.append(kwargs))

    assert configure_logging({"logging": {"dev_mode": True}}) == logging.DEBUG
    assert configure_logging({"logging": {"dev_mode": False}}) == logging.INFO
    assert configure_logging({"logging": {"level": "warning"}}) == logging.WARNING
    assert configure_logging({"logging": {"level": "bogus"}}) == logging.INFO
    assert calls[0]["format"] == daemon_module.LOG_FORMAT


@pytest.mark.skipif(not Path("/proc").is_dir(), reason="requires /proc")
def test_main_end_to_end(monkeypatch, tmp_path):
    pid_log = tmp_path / "recorder.pids"
    recorder_code = (
        "import os, sys, time\n"
        "with open(sys.argv[1], 'a') as fh:\n"
        "    fh.write(str(os.getpid()) + '\\n')\n"
        "time.sleep(60)\n"
    )
    producer_code = (
        "import time\n"
        "for token in ['warming up', 'ready', 'start', 'start']:\n"
        "    print(token, flush=True)\n"
        "time.sleep(1.0)\n"
        "print('stop', flush=True)\n"
        "print('start', flush=True)\n"
        "time.sleep(1.0)\n"
    )
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        yaml.safe_dump(
            {
                "recorder": {
                    "command": [sys.executable, "-c", recorder_code, str(pid_log)],
                    "term_timeout_sec": 5,
                },
                "events": {
                    "producer_command": [sys.executable, "-c", producer_code],
                    "poll_interval_sec": 0.05,
                    "eof_is_clean": True,
                },
            }
        ),
        encoding="utf-8",
    )
    monkeypatch.setenv("MOTIONREC_CONFIG", str(config_path))
    monkeypatch.setattr(config_module, "_cfg_cache", None, raising=False)
    monkeypatch.setattr(daemon_module, "configure_logging", lambda cfg: logging.INFO)
    monkeypatch.setattr(MotionDaemon, "install_signal_handlers", lambda self: None)

    assert daemon_module.main() == EXIT_OK

    pids = [int(line) for line in pid_log.read_text().split()]
    assert len(pids) == 2
    for pid in pids:
        assert not Path(f"/proc/{pid}").exists()


def test_signal_during_startup_stops_before_consuming(monkeypatch):
    launcher = DummyLauncher()
    source = ScriptedSource([["start"]])

    def fake_open_event_source(producer_command, *, producer_term_timeout):
        # Handlers are already in place when the source is opened.
        daemon = signal.getsignal(signal.SIGTERM).__self__
        os.kill(os.getpid(), signal.SIGTERM)
        deadline = time.monotonic() + 5.0
        while not daemon.stop_event.is_set() and time.monotonic() < deadline:
            time.sleep(0.01)
        return source

    monkeypatch.setattr(daemon_module, "get_cfg", lambda: {})
    monkeypatch.setattr(daemon_module, "configure_logging", lambda cfg: logging.INFO)
    monkeypatch.setattr(daemon_module, "open_event_source", fake_open_event_source)
    monkeypatch.setattr(daemon_module.SupervisorSettings, "launcher", lambda self: launcher)
    previous = {
        sig: signal.getsignal(sig) for sig in (signal.SIGINT, signal.SIGTERM, signal.SIGHUP)
    }
    try:
        code = daemon_module.main()
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    assert code == EXIT_OK
    assert launcher.actions == []
    assert source.closed is True


def test_main_rejects_unparsable_command(monkeypatch, tmp_path, caplog):
    caplog.set_level(logging.ERROR, logger="daemon")
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        yaml.safe_dump({"recorder": {"command": "sh -c 'unbalanced"}}),
        encoding="utf-8",
    )
    monkeypatch.setenv("MOTIONREC_CONFIG", str(config_path))
    monkeypatch.setattr(config_module, "_cfg_cache", None, raising=False)
    monkeypatch.setattr(daemon_module, "configure_logging", lambda cfg: logging.INFO)

    def fail_open(*args, **kwargs):
        raise AssertionError("event source must not be opened")

    monkeypatch.setattr(daemon_module, "open_event_source", fail_open)

    assert daemon_module.main() == EXIT_SOURCE_FAILURE
    assert any("invalid configuration" in record.message for record in caplog.records)
