"""Study persistence: the store interface the timer core writes through, and a JSON-file store.

The timer core only ever calls record_reading(), update_process_sequence_state()
and delete_process(), and always through a Persister so a slow or failing write
never holds up the live timers.  Everything else here is the
data-access surface the session uses to manage projects and processes.
"""

import copy
import json
from abc import ABC, abstractmethod

from PySide6.QtCore import QObject, QTimer, Signal

from mt.common.logger import log
from mt.common.setup import PATHS
from mt.core.models import FormDefaults, Process, Project, Subprocess, sort_subprocesses
from mt.util.misc import new_id, now_iso


_SCHEMA_VERSION = 1

STUDY_PATH = PATHS.studies / "study.json"

_SECTIONS = ("projects", "processes", "subprocesses", "readings")

_PROCESS_FIELDS = {"name", "sequence_mode", "current_sequence_index"}
_PROJECT_FIELDS = {"company_name", "plant_name", "product", "study_performed_by", "tentative_completion_date", "status"}
_READING_FIELDS = {"remarks", "activity_type", "person_count", "production_qty", "rating"}


class StoreError(Exception):
    """A read or write against the study store failed."""


class StudyStore(ABC):
    """What the timer core needs from persistence."""

    @abstractmethod
    def record_reading(self, process_id, subprocess_id, reading, form):
        """Persist one completed reading with its form data.  Raises StoreError."""

    @abstractmethod
    def update_process_sequence_state(self, process_id, state):
        """Persist a process's SequenceState.  Raises StoreError."""

    @abstractmethod
    def delete_process(self, process_id):
        """Remove a process with its subprocesses and readings.  Raises StoreError."""


# Helper to return a truly fresh, empty study document.
def build_default_document():
    return {
        "meta": {"schema_version": _SCHEMA_VERSION, "saved_at": now_iso()},
        "projects": [],
        "processes": [],
        "subprocesses": [],
        "readings": [],
    }


class JsonStudyStore(StudyStore):
    """Whole study kept in one JSON document, written back after every change."""

    def __init__(self, path=None):
        self.path = path or STUDY_PATH
        self._doc = self._load()
        # Last state known to match the file; a failed write rolls back to it.
        self._saved = copy.deepcopy(self._doc)

    #region === Saving and Loading ===

    def _load(self):
        try:
            if not self.path.exists():
                log.info(f"No existing study file found at '{self.path}', starting a fresh study.")
                return build_default_document()

            with open(self.path, "r", encoding="utf-8") as f:
                doc = json.load(f)
            if not isinstance(doc, dict):
                raise TypeError("study document is not an object")

            defaulted_values = set()
            if not isinstance(doc.get("meta"), dict):
                defaulted_values.add("meta")
                doc["meta"] = {"schema_version": _SCHEMA_VERSION}
            for section in _SECTIONS:
                if not isinstance(doc.get(section), list):
                    defaulted_values.add(section)
                    doc[section] = []

            if defaulted_values:
                log.warning(f"Loaded study from '{self.path}', but with missing values that were defaulted: {', '.join(sorted(defaulted_values))}")
            else:
                log.info(f"Successfully loaded study from '{self.path}'.")
            return doc
        except (json.JSONDecodeError, OSError, TypeError):
            log.warning(f"Ran into an error while trying to load '{self.path}', falling back to a fresh study.",exc_info=True)
            return build_default_document()

    def _save(self):
        self._doc["meta"]["saved_at"] = now_iso()
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "w", encoding="utf-8") as f:
                json.dump(self._doc, f, indent=2)
        except OSError as e:
            self._doc = copy.deepcopy(self._saved)
            raise StoreError(f"Failed to write study to '{self.path}': {e}") from e
        self._saved = copy.deepcopy(self._doc)
        log.debug(f"Saved study to '{self.path}'")

    def _find(self, section, record_id):
        for record in self._doc[section]:
            if record["id"] == record_id:
                return record
        raise StoreError(f"No {section[:-1]} with id '{record_id}'")

    #endregion === Saving and Loading ===

    #region === Projects ===

    def create_project(self, company_name, plant_name, product, study_performed_by, tentative_completion_date=None):
        project = Project(
            id=new_id(),
            company_name=company_name.strip(),
            plant_name=plant_name.strip(),
            product=product.strip(),
            study_performed_by=study_performed_by.strip(),
            tentative_completion_date=tentative_completion_date or None,
            created_at=now_iso(),
        )
        if not project.company_name:
            raise ValueError("Company name is required")
        self._doc["projects"].append(project.to_dict())
        self._save()
        log.info(f"Created project '{project.company_name}' ({project.id})")
        return project

    # Newest first.
    def get_projects(self):
        return [Project.from_dict(p) for p in reversed(self._doc["projects"])]

    def update_project(self, project_id, **updates):
        record = self._find("projects", project_id)
        record.update({k: v for k, v in updates.items() if k in _PROJECT_FIELDS})
        self._save()
        return Project.from_dict(record)

    def delete_project(self, project_id):
        self._find("projects", project_id)
        process_ids = [p["id"] for p in self._doc["processes"] if p["project_id"] == project_id]
        for process_id in process_ids:
            self._drop_process(process_id)
        self._doc["projects"] = [p for p in self._doc["projects"] if p["id"] != project_id]
        self._save()
        log.info(f"Deleted project '{project_id}' with {len(process_ids)} process(es)")

    def get_project_stats(self, project_id):
        process_ids = {p["id"] for p in self._doc["processes"] if p["project_id"] == project_id}
        return {
            "total_processes": len(process_ids),
            "total_subprocesses": sum(1 for s in self._doc["subprocesses"] if s["process_id"] in process_ids),
            "total_readings": sum(1 for r in self._doc["readings"] if r["process_id"] in process_ids),
        }

    #endregion === Projects ===

    #region === Processes and Subprocesses ===

    def add_process(self, name, project_id):
        if not project_id:
            raise ValueError("Project ID is required")
        if not name or not name.strip():
            raise ValueError("Process name is required")
        self._find("projects", project_id)
        process = Process(id=new_id(), project_id=project_id, name=name.strip(), created_at=now_iso())
        self._doc["processes"].append(process.to_dict())
        self._save()
        log.info(f"Added process '{process.name}' to project '{project_id}'")
        return process

    def _subprocesses_of(self, process_id):
        return [Subprocess.from_dict(s) for s in self._doc["subprocesses"] if s["process_id"] == process_id]

    def get_process(self, process_id):
        return Process.from_dict(self._find("processes", process_id), self._subprocesses_of(process_id))

    # Oldest first, each with its subprocesses in step order.
    def get_processes(self, project_id):
        return [
            Process.from_dict(p, self._subprocesses_of(p["id"]))
            for p in self._doc["processes"] if p["project_id"] == project_id
        ]

    def update_process(self, process_id, **updates):
        record = self._find("processes", process_id)
        record.update({k: v for k, v in updates.items() if k in _PROCESS_FIELDS})
        record["updated_at"] = now_iso()
        self._save()
        return self.get_process(process_id)

    def delete_process(self, process_id):
        self._find("processes", process_id)
        self._drop_process(process_id)
        self._save()
        log.info(f"Deleted process '{process_id}'")

    def _drop_process(self, process_id):
        doc = self._doc
        doc["readings"] = [r for r in doc["readings"] if r["process_id"] != process_id]
        doc["subprocesses"] = [s for s in doc["subprocesses"] if s["process_id"] != process_id]
        doc["processes"] = [p for p in doc["processes"] if p["id"] != process_id]

    # New subprocesses start from the given FormDefaults (the built-in ones when omitted).
    def add_subprocess(self, process_id, name, defaults=None):
        if not name or not name.strip():
            raise ValueError("Subprocess name is required")
        defaults = defaults or FormDefaults()
        self._find("processes", process_id)
        subprocess = Subprocess(
            id=new_id(),
            process_id=process_id,
            name=name.strip(),
            order_index=len(self._subprocesses_of(process_id)),
            person_count=defaults.person_count,
            production_qty=defaults.production_qty,
            rating=defaults.rating,
            created_at=now_iso(),
        )
        self._doc["subprocesses"].append(subprocess.to_dict())
        self._save()
        log.info(f"Added subprocess '{subprocess.name}' to process '{process_id}'")
        return subprocess

    def update_subprocess_properties(self, subprocess_id, form):
        """Store a ReadingForm's classification fields as the subprocess defaults."""
        record = self._find("subprocesses", subprocess_id)
        values = form.to_dict()
        values.pop("remarks")
        record.update(values)
        record["updated_at"] = now_iso()
        self._save()
        return Subprocess.from_dict(record)

    def delete_subprocess(self, subprocess_id):
        self._find("subprocesses", subprocess_id)
        doc = self._doc
        doc["readings"] = [r for r in doc["readings"] if r["subprocess_id"] != subprocess_id]
        doc["subprocesses"] = [s for s in doc["subprocesses"] if s["id"] != subprocess_id]
        self._save()
        log.info(f"Deleted subprocess '{subprocess_id}'")

    # Re-number order_index in the given order.
    def reorder_subprocesses(self, process_id, subprocess_ids):
        by_id = {s["id"]: s for s in self._doc["subprocesses"] if s["process_id"] == process_id}
        if set(subprocess_ids) != set(by_id):
            raise StoreError(f"Reorder for process '{process_id}' must list each subprocess exactly once")
        for i, subprocess_id in enumerate(subprocess_ids):
            by_id[subprocess_id]["order_index"] = i
        self._save()
        return sort_subprocesses(Subprocess.from_dict(s) for s in by_id.values())

    def update_process_sequence_state(self, process_id, state):
        record = self._find("processes", process_id)
        record.update(state.to_dict())
        record["updated_at"] = now_iso()
        self._save()
        log.debug(f"Saved sequence state for process '{process_id}': enabled={state.enabled}, index={state.current_index}")

    #endregion === Processes and Subprocesses ===

    #region === Readings ===

    def record_reading(self, process_id, subprocess_id, reading, form):
        if not reading.should_persist:
            raise StoreError("Refusing to store a reading that is not marked for persistence")
        self._find("processes", process_id)
        self._find("subprocesses", subprocess_id)
        record = {
            "id": new_id(),
            "process_id": process_id,
            "subprocess_id": subprocess_id,
            **reading.to_dict(),
            **form.to_dict(),
            "created_at": now_iso(),
        }
        self._doc["readings"].append(record)
        self._save()
        log.info(f"Recorded reading {reading.formatted_time} for '{process_id}-{subprocess_id}'")
        return copy.deepcopy(record)

    # Newest first.
    def get_readings(self, process_id, limit=100):
        found = [r for r in reversed(self._doc["readings"]) if r["process_id"] == process_id]
        return copy.deepcopy(found[:limit])

    def get_subprocess_readings(self, subprocess_id, limit=50):
        found = [r for r in reversed(self._doc["readings"]) if r["subprocess_id"] == subprocess_id]
        return copy.deepcopy(found[:limit])

    # Newest first, with process and subprocess names attached for reporting.
    def get_readings_for_project(self, project_id, limit=500):
        processes = {p["id"]: p for p in self._doc["processes"] if p["project_id"] == project_id}
        names = {s["id"]: s["name"] for s in self._doc["subprocesses"] if s["process_id"] in processes}
        found = []
        for r in reversed(self._doc["readings"]):
            if r["process_id"] not in processes:
                continue
            entry = copy.deepcopy(r)
            entry["process_name"] = processes[r["process_id"]]["name"]
            entry["subprocess_name"] = names.get(r["subprocess_id"], "")
            found.append(entry)
            if len(found) >= limit:
                break
        return found

    def update_reading(self, reading_id, **updates):
        record = self._find("readings", reading_id)
        record.update({k: v for k, v in updates.items() if k in _READING_FIELDS})
        record["updated_at"] = now_iso()
        self._save()
        return copy.deepcopy(record)

    def delete_reading(self, reading_id):
        self._find("readings", reading_id)
        self._doc["readings"] = [r for r in self._doc["readings"] if r["id"] != reading_id]
        self._save()
        log.info(f"Deleted reading '{reading_id}'")

    #endregion === Readings ===


class Persister(QObject):
    """Runs store writes on the next event-loop turn so callers never wait on them.

    Failures are logged and reported through ``failed``; nothing is rolled
    back.  ``immediate=True`` runs writes inline (tests, scripts without an
    event loop).
    """

    completed = Signal(str)         # description
    failed = Signal(str, str)       # description, error message

    def __init__(self, immediate=False, parent=None):
        super().__init__(parent)
        self.immediate = immediate

    def submit(self, description, fn, *args):
        if self.immediate:
            self._run(description, fn, args)
        else:
            QTimer.singleShot(0, lambda: self._run(description, fn, args))

    def _run(self, description, fn, args):
        try:
            fn(*args)
        except (StoreError, OSError) as e:
            log.warning(f"Persisting '{description}' failed", exc_info=True)
            self.failed.emit(description, str(e))
            return
        self.completed.emit(description)
