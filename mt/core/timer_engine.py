"""Stopwatch table: one timer per (process, subprocess), pure logic plus Qt refresh ticks.

A timer is either running or paused while it is in the table; resetting it
removes it entirely.  Elapsed time is always derived from a monotonic clock
against a "virtual" start instant, so resuming and lapping only ever rewrite
the start, never accumulate ticks.
"""

import time
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import NamedTuple

from PySide6.QtCore import QObject, QTimer, Signal

from mt.common.logger import log
from mt.core.status import Status


class TimerKey(NamedTuple):
    process_id: str
    subprocess_id: str

    def __str__(self):
        return f"{self.process_id}-{self.subprocess_id}"


class TimerPhase(Enum):
    RUNNING = "running"
    PAUSED = "paused"


@dataclass(frozen=True)
class Reading:
    """One captured measurement.  should_persist marks whether it belongs in the store."""
    elapsed_ms: int
    start_instant: datetime
    end_instant: datetime
    formatted_time: str
    should_persist: bool
    lap_number: int | None = None

    def as_persisted(self):
        """Copy of this reading flagged for persistence (used when a pause completes a step)."""
        return replace(self, should_persist=True)

    def to_dict(self):
        return {
            "time_milliseconds": self.elapsed_ms,
            "start_time": self.start_instant.isoformat(),
            "end_time": self.end_instant.isoformat(),
            "formatted_time": self.formatted_time,
            "lap_number": self.lap_number,
        }


@dataclass(frozen=True)
class ActiveTimer:
    key: TimerKey
    elapsed_ms: int
    formatted_time: str


# Formats a millisecond duration as HH:MM:SS.cc (or HH:MM:SS). Truncates, never rounds. Negative values clamp to zero.
def format_time(milliseconds, centiseconds=True):
    milliseconds = max(0, int(milliseconds))
    h, rem = divmod(milliseconds, 3_600_000)
    m, rem = divmod(rem, 60_000)
    s, rem = divmod(rem, 1000)
    if centiseconds:
        return f"{h:02d}:{m:02d}:{s:02d}.{rem // 10:02d}"
    return f"{h:02d}:{m:02d}:{s:02d}"


def _monotonic_ms():
    return time.monotonic_ns() // 1_000_000


def _wall_now():
    return datetime.now().astimezone()


class _Timer:
    """Mutable table entry.  Only TimerEngine touches these."""

    def __init__(self, key, start_ms, started_at):
        self.key = key
        self.phase = TimerPhase.RUNNING
        self.start_ms = start_ms        # virtual start on the monotonic clock
        self.started_at = started_at    # same instant on the wall clock, for readings
        self.elapsed_ms = 0             # snapshot, authoritative while paused
        self.laps = []
        self.last_recorded_time = None


class TimerEngine(QObject):
    """Owns every stopwatch for one application session.

    Operations never raise for state-machine misuse: start() reports a
    Status, pause()/lap() return None when there is nothing running.
    Subscribers listen to the signals instead of polling, although display()
    is always exact when called directly.
    """

    started = Signal(object)                    # key
    paused = Signal(object, object)             # key, Reading
    lapped = Signal(object, object)             # key, Reading
    reset_done = Signal(object)                 # key
    display_changed = Signal(object, str)       # key, formatted elapsed
    last_recorded_changed = Signal(object, str) # key, formatted time ("" when cleared)
    suspended_changed = Signal(bool)

    def __init__(self, refresh_interval_ms=50, centiseconds=True, clock=None, wall_clock=None, parent=None):
        super().__init__(parent)
        self.refresh_interval_ms = int(refresh_interval_ms)
        self.centiseconds = centiseconds
        self._clock = clock or _monotonic_ms
        self._wall = wall_clock or _wall_now
        self._timers = {}
        self._suspended = False

        # -- Refresh tick, shared by every running timer --
        self._refresh = QTimer(self)
        self._refresh.setInterval(self.refresh_interval_ms)
        self._refresh.timeout.connect(self._tick)

    @classmethod
    def from_settings(cls, settings, parent=None):
        return cls(
            refresh_interval_ms=settings["refresh_interval_ms"],
            centiseconds=settings["show_centiseconds"],
            parent=parent,
        )

    #region === Operations ===

    def start(self, key, fresh=False):
        """Start or resume a timer.  fresh=True starts a paused timer over from zero instead of resuming it."""
        key = TimerKey(*key)
        if self._suspended:
            log.info(f"Timer start blocked for '{key}', setup mode is active")
            return Status.SUSPENDED

        timer = self._timers.get(key)
        now = self._clock()
        if timer is not None and timer.phase is TimerPhase.RUNNING:
            log.debug(f"Timer '{key}' is already running")
            return Status.ALREADY_RUNNING

        if timer is not None:
            if fresh:
                timer.elapsed_ms = 0
            # Resume: shift the virtual start back by what was already measured.
            timer.start_ms = now - timer.elapsed_ms
            timer.started_at = self._wall() - timedelta(milliseconds=timer.elapsed_ms)
            timer.phase = TimerPhase.RUNNING
            log.debug(f"Resumed timer '{key}' from {timer.elapsed_ms} ms")
        else:
            timer = _Timer(key, now, self._wall())
            self._timers[key] = timer
            log.debug(f"Started timer '{key}' at mono {now}")

        self._sync_refresh()
        self.started.emit(key)
        self.display_changed.emit(key, self.display(key))
        return Status.OK

    def pause(self, key):
        key = TimerKey(*key)
        timer = self._timers.get(key)
        if timer is None or timer.phase is not TimerPhase.RUNNING:
            log.debug(f"No active timer to pause for '{key}'")
            return None

        elapsed = self._clock() - timer.start_ms
        timer.elapsed_ms = elapsed
        timer.phase = TimerPhase.PAUSED
        self._sync_refresh()

        reading = Reading(
            elapsed_ms=elapsed,
            start_instant=timer.started_at,
            end_instant=self._wall(),
            formatted_time=self.format(elapsed),
            should_persist=False,
        )
        log.debug(f"Paused timer '{key}' at {reading.formatted_time} (not recorded)")
        self.paused.emit(key, reading)
        self.display_changed.emit(key, reading.formatted_time)
        return reading

    def lap(self, key):
        key = TimerKey(*key)
        timer = self._timers.get(key)
        if timer is None or timer.phase is not TimerPhase.RUNNING:
            log.debug(f"No active timer for lap on '{key}'")
            return None

        now = self._clock()
        end_instant = self._wall()
        elapsed = now - timer.start_ms
        reading = Reading(
            elapsed_ms=elapsed,
            start_instant=timer.started_at,
            end_instant=end_instant,
            formatted_time=self.format(elapsed),
            should_persist=True,
            lap_number=len(timer.laps) + 1,
        )

        # Restart in place; the shared refresh tick keeps running against the new start.
        timer.laps.append(reading)
        timer.start_ms = now
        timer.started_at = end_instant
        timer.elapsed_ms = 0
        timer.last_recorded_time = reading.formatted_time

        log.debug(f"Recorded lap {reading.lap_number} for '{key}' at {reading.formatted_time}, timer restarted")
        self.lapped.emit(key, reading)
        self.last_recorded_changed.emit(key, reading.formatted_time)
        self.display_changed.emit(key, self.format(0))
        return reading

    def reset(self, key):
        key = TimerKey(*key)
        timer = self._timers.pop(key, None)
        if timer is None:
            return
        self._sync_refresh()
        log.debug(f"Reset timer '{key}'")
        self.reset_done.emit(key)
        self.display_changed.emit(key, self.format(0))
        if timer.last_recorded_time:
            self.last_recorded_changed.emit(key, "")

    def reset_all(self):
        for key in list(self._timers):
            self.reset(key)
        log.debug("Cleaned up all timers")

    # Drops every timer (running or paused) belonging to one process. Returns how many were removed.
    def reset_process(self, process_id):
        keys = [k for k in self._timers if k.process_id == process_id]
        for key in keys:
            self.reset(key)
        if keys:
            log.debug(f"Cleaned up {len(keys)} timer(s) for process '{process_id}'")
        return len(keys)

    # Pauses every running timer belonging to one process, optionally sparing a single key.
    def stop_process(self, process_id, except_key=None):
        readings = []
        for key in [k for k in self._timers if k.process_id == process_id]:
            if key == except_key or not self.is_running(key):
                continue
            readings.append(self.pause(key))
        return readings

    def mark_recorded(self, key, reading):
        """Show a reading captured outside lap() as the key's last recorded time."""
        key = TimerKey(*key)
        timer = self._timers.get(key)
        if timer is not None:
            timer.last_recorded_time = reading.formatted_time
        self.last_recorded_changed.emit(key, reading.formatted_time)

    #endregion === Operations ===

    #region === Setup mode ===

    @property
    def is_suspended(self):
        return self._suspended

    # Pauses everything and blocks start() until release(). Returns the pause readings (never persisted).
    def suspend_all(self):
        if self._suspended:
            return []
        self._suspended = True
        readings = [self.pause(key) for key in list(self._timers) if self.is_running(key)]
        log.info(f"Setup mode enabled, paused {len(readings)} running timer(s)")
        self.suspended_changed.emit(True)
        return readings

    def release(self):
        if not self._suspended:
            return
        self._suspended = False
        log.info("Setup mode disabled, timers enabled")
        self.suspended_changed.emit(False)

    #endregion === Setup mode ===

    #region === Queries ===

    def format(self, milliseconds):
        return format_time(milliseconds, self.centiseconds)

    def exists(self, key):
        return TimerKey(*key) in self._timers

    def is_running(self, key):
        timer = self._timers.get(TimerKey(*key))
        return timer is not None and timer.phase is TimerPhase.RUNNING

    def is_paused(self, key):
        timer = self._timers.get(TimerKey(*key))
        return timer is not None and timer.phase is TimerPhase.PAUSED

    def elapsed_ms(self, key):
        timer = self._timers.get(TimerKey(*key))
        if timer is None:
            return 0
        if timer.phase is TimerPhase.RUNNING:
            return self._clock() - timer.start_ms
        return timer.elapsed_ms

    def display(self, key):
        return self.format(self.elapsed_ms(key))

    def last_recorded_time(self, key):
        timer = self._timers.get(TimerKey(*key))
        return timer.last_recorded_time if timer is not None else None

    def laps(self, key):
        timer = self._timers.get(TimerKey(*key))
        return tuple(timer.laps) if timer is not None else ()

    def keys(self):
        return list(self._timers)

    def active_timers(self):
        active = []
        for key, timer in self._timers.items():
            if timer.phase is TimerPhase.RUNNING:
                elapsed = self._clock() - timer.start_ms
                active.append(ActiveTimer(key, elapsed, self.format(elapsed)))
        return active

    #endregion === Queries ===

    #region === Refresh ticks ===

    # Runs the shared tick only while at least one timer is running. The QTimer itself lives as long as the engine.
    def _sync_refresh(self):
        running = any(t.phase is TimerPhase.RUNNING for t in self._timers.values())
        if running and not self._refresh.isActive():
            self._refresh.start()
        elif not running and self._refresh.isActive():
            self._refresh.stop()

    def _tick(self):
        now = self._clock()
        for key, timer in list(self._timers.items()):
            if timer.phase is not TimerPhase.RUNNING:
                continue
            timer.elapsed_ms = now - timer.start_ms
            self.display_changed.emit(key, self.format(timer.elapsed_ms))

    #endregion === Refresh ticks ===
