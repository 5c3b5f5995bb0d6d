"""Line-oriented motion event sources (stdin or a producer subprocess)."""

from __future__ import annotations

import logging
import os
import selectors
import subprocess
import sys
from typing import Optional, Sequence

from motionrec.proc_utils import ProcessStopError, stop_process

CHUNK_BYTES = 4096
MAX_LINE_BYTES = 4096

_log = logging.getLogger("event_source")


class EventSourceError(RuntimeError):
    """Raised when the event stream cannot be read or started."""


class ProducerProcess:
    """Motion producer launched by the daemon; its stdout is the event stream."""

    def __init__(self, command: Sequence[str], *, term_timeout: float = 2.0) -> None:
        self.command = list(command)
        if not self.command:
            raise EventSourceError("producer command is empty")
        self.term_timeout = max(0.0, float(term_timeout))
        try:
            self._proc = subprocess.Popen(
                self.command,
                stdout=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                bufsize=0,
                start_new_session=True,
            )
        except (OSError, subprocess.SubprocessError, ValueError) as exc:
            raise EventSourceError(f"failed to launch producer {self.command[0]}: {exc}") from exc
        assert self._proc.stdout is not None
        _log.info("producer started pid=%s: %s", self._proc.pid, " ".join(self.command))

    @property
    def pid(self) -> int:
        return self._proc.pid

    def fileno(self) -> int:
        assert self._proc.stdout is not None
        return self._proc.stdout.fileno()

    def poll(self) -> Optional[int]:
        return self._proc.poll()

    def stop(self) -> bool:
        """Stop the producer; False if it could not be reaped."""
        ok = True
        try:
            rc = stop_process(
                self._proc,
                term_timeout=self.term_timeout,
                kill_timeout=self.term_timeout,
                label="producer",
            )
        except ProcessStopError as exc:
            _log.error("producer stop failed: %s", exc)
            ok = False
        else:
            _log.info("producer exited rc=%s", rc)
        if self._proc.stdout is not None:
            try:
                self._proc.stdout.close()
            except OSError as exc:
                _log.debug("producer stdout close error: %r", exc)
        return ok


class EventSource:
    """
    Poll-based reader that splits a byte stream into lines.

    read_lines(timeout) never blocks longer than ``timeout`` so the caller can
    notice a pending shutdown between polls. Partial lines are buffered across
    reads; a line longer than MAX_LINE_BYTES is discarded as noise.
    """

    def __init__(self, fd: int, *, producer: ProducerProcess | None = None, name: str = "stdin") -> None:
        self._fd = fd
        self.producer = producer
        self.name = name
        self.eof = False
        self._buffer = bytearray()
        self._overflow = False
        self._selector: selectors.BaseSelector = selectors.DefaultSelector()
        try:
            self._selector.register(self._fd, selectors.EVENT_READ)
        except PermissionError:
            # epoll refuses regular files (stdin redirected from a file).
            self._selector.close()
            self._selector = selectors.SelectSelector()
            self._selector.register(self._fd, selectors.EVENT_READ)

    def read_lines(self, timeout: float | None) -> list[str]:
        if self.eof:
            return []
        try:
            ready = self._selector.select(timeout)
        except OSError as exc:
            raise EventSourceError(f"{self.name}: poll failed: {exc}") from exc
        if not ready:
            return []
        try:
            chunk = os.read(self._fd, CHUNK_BYTES)
        except BlockingIOError:
            return []
        except OSError as exc:
            raise EventSourceError(f"{self.name}: read failed: {exc}") from exc

        lines: list[str] = []
        if not chunk:
            self.eof = True
            if self._buffer and not self._overflow:
                lines.append(self._buffer.decode("utf-8", errors="replace"))
            self._buffer.clear()
            return lines

        self._buffer.extend(chunk)
        while True:
            idx = self._buffer.find(b"\n")
            if idx < 0:
                break
            line = bytes(self._buffer[:idx])
            del self._buffer[: idx + 1]
            if self._overflow:
                self._overflow = False
                continue
            lines.append(line.decode("utf-8", errors="replace"))
        if len(self._buffer) > MAX_LINE_BYTES:
            _log.debug("%s: dropping %d bytes without newline", self.name, len(self._buffer))
            self._buffer.clear()
            self._overflow = True
        return lines

    def close(self) -> bool:
        """Release the selector and stop the producer if there is one."""
        try:
            self._selector.close()
        except (OSError, ValueError) as exc:
            _log.debug("%s: selector close error: %r", self.name, exc)
        if self.producer is not None:
            return self.producer.stop()
        return True


def open_event_source(producer_command: Sequence[str], *, producer_term_timeout: float = 2.0) -> EventSource:
    if producer_command:
        producer = ProducerProcess(producer_command, term_timeout=producer_term_timeout)
        return EventSource(producer.fileno(), producer=producer, name="producer")
    try:
        fd = sys.stdin.fileno()
    except (AttributeError, ValueError, OSError) as exc:
        raise EventSourceError(f"stdin is not readable: {exc}") from exc
    return EventSource(fd, name="stdin")
