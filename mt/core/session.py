"""Caller-side handlers for one study session.

Wires a TimerEngine, SequenceController, store, Persister and Notifier
together and gives each button its handler: start, pause, lap, reset,
advance, toggle sequence mode, toggle setup mode, plus adding a step,
deleting a process and leaving the project.  Every handler reports
its outcome through the Notifier and returns the engine's result so a view
can update itself directly.
"""

from PySide6.QtCore import QObject, Signal

from mt.common.logger import log
from mt.core import config
from mt.core.models import FormDefaults, ReadingForm
from mt.core.notify import Notifier
from mt.core.sequence import SequenceController
from mt.core.status import Status
from mt.core.store import Persister, StoreError
from mt.core.timer_engine import TimerEngine, TimerKey

# Persister descriptions that belong to reading writes or deletions rather than process updates.
_READING_WRITES = ("time reading", "lap time")
_DELETES = ("removal of",)


class StudySession(QObject):
    reading_added = Signal(str, str)    # process_id, subprocess_id

    def __init__(self, store, engine=None, settings=None, persister=None, notifier=None, parent=None):
        super().__init__(parent)
        self.settings = settings if settings is not None else config.load_settings()
        self.store = store
        self.engine = engine or TimerEngine.from_settings(self.settings, parent=self)
        self.persister = persister or Persister(parent=self)
        self.notifier = notifier or Notifier(history=self.settings["notification_history"], parent=self)
        self.form_defaults = FormDefaults.from_settings(self.settings)
        self.sequence = SequenceController(
            self.engine, self.store, self.persister, self.notifier,
            on_reading_saved=self.reading_added.emit, form_defaults=self.form_defaults,
        )

        self.persister.failed.connect(self._on_persist_failed)

    # ------------------------------------------------------------------ #
    #  Timer buttons                                                       #
    # ------------------------------------------------------------------ #

    def start(self, process, subprocess):
        status = self.engine.start(TimerKey(process.id, subprocess.id))
        if status is Status.SUSPENDED:
            self.notifier.error("Timer Disabled", status.message)
        elif not status:
            self.notifier.error("Timer Error", f"Failed to start timer: {status.message}")
        else:
            self.notifier.success("Timer Started", f"Timer started for: {subprocess.name}")
        return status

    def pause(self, process, subprocess):
        reading = self.engine.pause(TimerKey(process.id, subprocess.id))
        if reading is not None:
            self.notifier.info("Timer Paused", f"Timer paused at {reading.formatted_time} (not recorded)")
        return reading

    def lap(self, process, subprocess, form=None):
        reading = self.engine.lap(TimerKey(process.id, subprocess.id))
        if reading is None:
            self.notifier.error("Timer Error", Status.NOT_RUNNING.message)
            return None
        form = form or ReadingForm.from_subprocess(subprocess, defaults=self.form_defaults)
        self.persister.submit(f"lap time for '{subprocess.name}'", self._record, process.id, subprocess.id, reading, form)
        self.notifier.success("Lap Recorded", f"{subprocess.name}: {reading.formatted_time} - Timer restarted")
        return reading

    def reset(self, process, subprocess):
        self.engine.reset(TimerKey(process.id, subprocess.id))
        self.notifier.info("Timer Reset", "Timer has been reset")

    # ------------------------------------------------------------------ #
    #  Sequence and setup mode                                             #
    # ------------------------------------------------------------------ #

    def advance(self, process):
        return self.sequence.advance(process)

    def toggle_sequence(self, process):
        return self.sequence.toggle(process)

    def toggle_setup_mode(self):
        if self.engine.is_suspended:
            self.engine.release()
            self.notifier.info("Setup Mode", "Setup mode disabled - Timers enabled")
        else:
            self.engine.suspend_all()
            self.notifier.info("Setup Mode", "Setup mode enabled - All timers disabled")
        return self.engine.is_suspended

    # ------------------------------------------------------------------ #
    #  Processes and projects                                              #
    # ------------------------------------------------------------------ #

    def add_subprocess(self, process, name):
        """Add a step to the process, seeded with the configured form defaults.  Returns None on failure."""
        try:
            subprocess = self.store.add_subprocess(process.id, name, self.form_defaults)
        except (ValueError, StoreError) as e:
            log.warning(f"Could not add subprocess '{name}' to '{process.name}': {e}")
            self.notifier.error("Add Error", str(e))
            return None
        process.subprocesses.append(subprocess)
        self.notifier.success("Subprocess Added", f"Added: {subprocess.name}")
        return subprocess

    def delete_process(self, process):
        # Timers and sequence state go right away; the store catches up on the next event-loop turn.
        removed = self.engine.reset_process(process.id)
        self.sequence.forget(process.id)
        log.info(f"Deleting process '{process.name}', dropped {removed} timer(s)")
        self.persister.submit(f"removal of process '{process.name}'", self._delete_process, process.id)

    def leave_project(self):
        """Going back to the project list: every timer and cached sequence position is dropped."""
        self.engine.reset_all()
        self.sequence.forget_all()
        self.notifier.info("Project Saved", "Your work has been saved")

    # ------------------------------------------------------------------ #
    #  Persistence helpers                                                 #
    # ------------------------------------------------------------------ #

    def _record(self, process_id, subprocess_id, reading, form):
        self.store.record_reading(process_id, subprocess_id, reading, form)
        self.reading_added.emit(process_id, subprocess_id)

    def _delete_process(self, process_id):
        self.store.delete_process(process_id)
        self.notifier.success("Process Deleted", "Process and all data have been removed")

    def _on_persist_failed(self, description, message):
        log.warning(f"Could not save {description}: {message}")
        if description.startswith(_DELETES):
            self.notifier.error("Delete Error", f"Failed to complete {description}")
            return
        title = "Save Error" if description.startswith(_READING_WRITES) else "Update Error"
        self.notifier.error(title, f"Failed to save {description}")

    def close(self):
        """Stop every timer; pending writes still flush on the event loop."""
        self.engine.reset_all()
        self.sequence.forget_all()
