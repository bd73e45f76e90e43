"""Outcome codes for timer and sequence operations.

Misuse of the state machine (double-clicking Start, pausing a stopped timer,
advancing a process that isn't in sequence mode) is expected from a UI, so
it is reported as a value rather than raised.
"""

from enum import Enum


class Status(Enum):
    OK = "ok"
    ALREADY_RUNNING = "already_running"
    NOT_RUNNING = "not_running"
    SUSPENDED = "suspended"
    SEQUENCE_NOT_ENABLED = "sequence_not_enabled"
    BUSY = "busy"

    def __bool__(self):
        return self is Status.OK

    @property
    def message(self):
        return _MESSAGES[self]


_MESSAGES = {
    Status.OK: "OK",
    Status.ALREADY_RUNNING: "Timer is already running",
    Status.NOT_RUNNING: "No active timer",
    Status.SUSPENDED: "Exit setup mode to start timers",
    Status.SEQUENCE_NOT_ENABLED: "Sequence mode must be enabled with subprocesses",
    Status.BUSY: "Already moving to the next step",
}
