"""Two-state debouncing of raw motion events from an external producer."""

from __future__ import annotations

import enum
import logging
from typing import Iterable

START_TOKEN = "start"
STOP_TOKEN = "stop"

_log = logging.getLogger("motion_state")


class MotionState(enum.Enum):
    IDLE = "idle"
    ACTIVE = "active"


class Transition(enum.Enum):
    MOTION_START = "motion_start"
    MOTION_STOP = "motion_stop"


def normalize_token(raw: str | bytes | None) -> str:
    if raw is None:
        return ""
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    return raw.strip()


class EventDebouncer:
    """Collapse runs of identical raw events into single logical transitions.

    The producer is untrusted: it may repeat ``start`` while motion continues,
    send ``stop`` before anything started, or interleave status chatter such as
    ``warming up`` and ``ready``. Only a ``start`` seen while idle and a ``stop``
    seen while active change state; everything else is dropped.
    """

    def __init__(self) -> None:
        self._state = MotionState.IDLE

    @property
    def state(self) -> MotionState:
        return self._state

    @property
    def active(self) -> bool:
        return self._state is MotionState.ACTIVE

    def process(self, raw: str | bytes | None) -> Transition | None:
        token = normalize_token(raw)
        if token == START_TOKEN:
            if self._state is MotionState.IDLE:
                self._state = MotionState.ACTIVE
                return Transition.MOTION_START
        elif token == STOP_TOKEN:
            if self._state is MotionState.ACTIVE:
                self._state = MotionState.IDLE
                return Transition.MOTION_STOP
        elif token:
            _log.debug("ignoring producer output: %s", token)
        return None


def debounce(tokens: Iterable[str | bytes], debouncer: EventDebouncer | None = None) -> list[Transition]:
    debouncer = debouncer or EventDebouncer()
    transitions: list[Transition] = []
    for token in tokens:
        transition = debouncer.process(token)
        if transition is not None:
            transitions.append(transition)
    return transitions
