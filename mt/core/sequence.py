"""Sequence mode: walks one process's subprocesses in order, one live timer at a time.

advance() closes out the current step (capturing its time if it was being
timed), starts the next one, and moves the pointer, wrapping after the last
step.  State changes happen immediately; the store is written behind them
through the Persister and is never waited on.
"""

from dataclasses import dataclass

from mt.common.logger import log
from mt.core.models import NO_STEP, ReadingForm, SequenceState
from mt.core.status import Status
from mt.core.timer_engine import Reading, TimerKey


@dataclass(frozen=True)
class AdvanceResult:
    status: Status                      # outcome of starting the next step (ALREADY_RUNNING reads as OK)
    current_index: int
    reading: Reading | None = None      # the step's captured reading, already flagged for persistence
    next_key: TimerKey | None = None
    start_status: Status | None = None  # outcome of starting the next step's timer

    def __bool__(self):
        return bool(self.status)


class SequenceController:

    def __init__(self, engine, store, persister, notifier=None, on_reading_saved=None, form_defaults=None):
        self.engine = engine
        self.store = store
        self.persister = persister
        self.notifier = notifier
        self.on_reading_saved = on_reading_saved
        self.form_defaults = form_defaults
        self._states = {}
        self._in_flight = set()

    #region === State ===

    # Sequence state for a process, loaded from its record the first time and repaired if the stored index is stale.
    def state(self, process):
        state = self._states.get(process.id)
        if state is None:
            state = self._heal(process, SequenceState(process.sequence_mode, process.current_sequence_index))
            self._states[process.id] = state
        return state

    @staticmethod
    def _heal(process, state):
        count = len(process.subprocesses)
        if not state.enabled or count == 0:
            index = NO_STEP
        elif 0 <= state.current_index < count:
            index = state.current_index
        else:
            log.info(f"Fixed invalid sequence index for process '{process.id}': {state.current_index} -> 0")
            index = 0
        return SequenceState(state.enabled, index)

    def forget(self, process_id):
        self._states.pop(process_id, None)

    def forget_all(self):
        self._states.clear()

    def _set(self, process, state):
        self._states[process.id] = state
        process.sequence_mode = state.enabled
        process.current_sequence_index = state.current_index
        self.persister.submit(
            f"sequence position for '{process.name}'",
            self.store.update_process_sequence_state, process.id, state,
        )

    def _record(self, process_id, subprocess_id, reading, form):
        self.store.record_reading(process_id, subprocess_id, reading, form)
        if self.on_reading_saved is not None:
            self.on_reading_saved(process_id, subprocess_id)

    def _notify(self, kind, title, message):
        if self.notifier is not None:
            self.notifier.notify(kind, title, message)

    #endregion === State ===

    #region === Mode toggling ===

    def enable(self, process):
        stopped = self.engine.stop_process(process.id)
        index = 0 if process.subprocesses else NO_STEP
        state = SequenceState(True, index)
        self._set(process, state)
        if index == NO_STEP:
            log.info(f"Sequence mode enabled for '{process.name}' but it has no subprocesses")
        else:
            log.info(f"Sequence mode enabled for '{process.name}', stopped {len(stopped)} timer(s)")
        self._notify("success", "Sequence Mode", "Sequence Mode enabled - Ready for first subprocess")
        return state

    def disable(self, process):
        stopped = self.engine.stop_process(process.id)
        state = SequenceState(False, NO_STEP)
        self._set(process, state)
        log.info(f"Sequence mode disabled for '{process.name}', stopped {len(stopped)} timer(s)")
        self._notify("success", "Sequence Mode", "Sequence Mode disabled")
        return state

    def toggle(self, process):
        if self.state(process).enabled:
            return self.disable(process)
        return self.enable(process)

    #endregion === Mode toggling ===

    #region === Advancing ===

    def advance(self, process):
        state = self.state(process)
        if process.id in self._in_flight:
            log.debug(f"Ignoring overlapping advance for process '{process.id}'")
            return AdvanceResult(Status.BUSY, state.current_index)

        subprocesses = process.subprocesses
        if not state.enabled or not subprocesses:
            log.info(f"Cannot advance '{process.name}': enabled={state.enabled}, subprocesses={len(subprocesses)}")
            self._notify("error", "Sequence Error", Status.SEQUENCE_NOT_ENABLED.message)
            return AdvanceResult(Status.SEQUENCE_NOT_ENABLED, state.current_index)

        self._in_flight.add(process.id)
        try:
            return self._advance(process, state, subprocesses)
        finally:
            self._in_flight.discard(process.id)

    def _advance(self, process, state, subprocesses):
        index = state.current_index
        if not 0 <= index < len(subprocesses):
            log.info(f"Fixed invalid current index for process '{process.id}': {index} -> 0")
            index = 0

        current = subprocesses[index]
        current_key = TimerKey(process.id, current.id)

        # A pause here completes the step, so its reading is persisted even though pause() never flags one.
        reading = None
        if self.engine.is_running(current_key):
            reading = self.engine.pause(current_key).as_persisted()
            form = ReadingForm.from_subprocess(current, defaults=self.form_defaults)
            self.persister.submit(
                f"time reading for '{current.name}'",
                self._record, process.id, current.id, reading, form,
            )
            self.engine.mark_recorded(current_key, reading)
            self._notify("success", "Time Recorded", f"{current.name}: {reading.formatted_time}")
        else:
            log.debug(f"Step '{current.name}' was not being timed, nothing recorded")

        next_index = (index + 1) % len(subprocesses)
        if next_index == 0:
            log.debug(f"Sequence complete for '{process.name}', looping back to first subprocess")
        upcoming = subprocesses[next_index]
        next_key = TimerKey(process.id, upcoming.id)

        self.engine.stop_process(process.id, except_key=next_key)
        start_status = self.engine.start(next_key, fresh=True)
        if start_status or start_status is Status.ALREADY_RUNNING:
            self._notify("info", "Next Step", f"Now timing: {upcoming.name}")
        else:
            log.info(f"Could not start timer for '{upcoming.name}': {start_status.message}")
            self._notify("error", "Timer Error", f"Could not start timer for {upcoming.name}")

        # The step boundary is crossed either way, so the index moves even if the start failed.
        self._set(process, SequenceState(True, next_index))
        log.debug(f"Advanced '{process.name}' from step {index} to {next_index}")
        # The next step already running still counts as a successful start.
        status = Status.OK if start_status is Status.ALREADY_RUNNING else start_status
        return AdvanceResult(status, next_index, reading, next_key, start_status)

    #endregion === Advancing ===
