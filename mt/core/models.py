"""Study records: projects, processes, subprocesses and reading form data.

Plain dataclasses with to_dict/from_dict so the JSON store can round-trip
them.  None of these know about timers.
"""

from dataclasses import asdict, dataclass, field
from enum import Enum

from mt.util.misc import int_or_default

DEFAULT_PERSON_COUNT = 1
DEFAULT_RATING = 100
DEFAULT_PRODUCTION_QTY = 0

# Sentinel index meaning "no valid step".
NO_STEP = -1


class ActivityType(str, Enum):
    """Time-study activity classification.  Blank means unclassified."""
    NONE = ""
    VA = "VA"        # value added
    NVA = "NVA"      # non-value added
    RNVA = "RNVA"    # required non-value added

    @classmethod
    def parse(cls, value):
        try:
            return cls(value or "")
        except ValueError:
            return cls.NONE


@dataclass
class Project:
    id: str
    company_name: str
    plant_name: str
    product: str
    study_performed_by: str
    tentative_completion_date: str | None = None
    status: str = "active"
    created_at: str = ""

    def to_dict(self):
        return asdict(self)

    @staticmethod
    def from_dict(d):
        return Project(
            id=d["id"],
            company_name=d.get("company_name", ""),
            plant_name=d.get("plant_name", ""),
            product=d.get("product", ""),
            study_performed_by=d.get("study_performed_by", ""),
            tentative_completion_date=d.get("tentative_completion_date"),
            status=d.get("status", "active"),
            created_at=d.get("created_at", ""),
        )


@dataclass
class Subprocess:
    id: str
    process_id: str
    name: str
    order_index: int = 0
    activity_type: ActivityType = ActivityType.NONE
    person_count: int = DEFAULT_PERSON_COUNT
    production_qty: int = DEFAULT_PRODUCTION_QTY
    rating: int = DEFAULT_RATING
    created_at: str = ""

    def to_dict(self):
        d = asdict(self)
        d["activity_type"] = self.activity_type.value
        return d

    @staticmethod
    def from_dict(d):
        return Subprocess(
            id=d["id"],
            process_id=d["process_id"],
            name=d.get("name", ""),
            order_index=int_or_default(d.get("order_index"), 0),
            activity_type=ActivityType.parse(d.get("activity_type")),
            person_count=int_or_default(d.get("person_count"), DEFAULT_PERSON_COUNT),
            production_qty=int_or_default(d.get("production_qty"), DEFAULT_PRODUCTION_QTY),
            rating=int_or_default(d.get("rating"), DEFAULT_RATING),
            created_at=d.get("created_at", ""),
        )


@dataclass
class Process:
    id: str
    project_id: str
    name: str
    subprocesses: list = field(default_factory=list)
    sequence_mode: bool = False
    current_sequence_index: int = NO_STEP
    created_at: str = ""

    def to_dict(self):
        """Process record without its subprocesses (those are stored separately)."""
        return {
            "id": self.id,
            "project_id": self.project_id,
            "name": self.name,
            "sequence_mode": self.sequence_mode,
            "current_sequence_index": self.current_sequence_index,
            "created_at": self.created_at,
        }

    @staticmethod
    def from_dict(d, subprocesses=()):
        return Process(
            id=d["id"],
            project_id=d.get("project_id", ""),
            name=d.get("name", ""),
            subprocesses=sort_subprocesses(subprocesses),
            sequence_mode=bool(d.get("sequence_mode", False)),
            current_sequence_index=int_or_default(d.get("current_sequence_index"), NO_STEP),
            created_at=d.get("created_at", ""),
        )


# Ordered by order_index, ties broken by creation time.
def sort_subprocesses(subprocesses):
    return sorted(subprocesses, key=lambda s: (s.order_index or 0, s.created_at))


@dataclass(frozen=True)
class SequenceState:
    enabled: bool = False
    current_index: int = NO_STEP

    def to_dict(self):
        return {"sequence_mode": self.enabled, "current_sequence_index": self.current_index}


@dataclass(frozen=True)
class FormDefaults:
    """Fallbacks for reading-form fields left blank (or zero) on a subprocess.  Configurable via settings.json."""
    person_count: int = DEFAULT_PERSON_COUNT
    production_qty: int = DEFAULT_PRODUCTION_QTY
    rating: int = DEFAULT_RATING

    @staticmethod
    def from_settings(settings):
        return FormDefaults(
            person_count=int_or_default(settings.get("default_person_count"), DEFAULT_PERSON_COUNT),
            production_qty=max(0, int_or_default(settings.get("default_production_qty"), DEFAULT_PRODUCTION_QTY)),
            rating=int_or_default(settings.get("default_rating"), DEFAULT_RATING),
        )


@dataclass(frozen=True)
class ReadingForm:
    """Contextual data saved alongside a reading."""
    activity_type: ActivityType = ActivityType.NONE
    person_count: int = DEFAULT_PERSON_COUNT
    production_qty: int = DEFAULT_PRODUCTION_QTY
    rating: int = DEFAULT_RATING
    remarks: str = ""

    @staticmethod
    def from_subprocess(subprocess, remarks="", defaults=None):
        defaults = defaults or FormDefaults()
        return ReadingForm(
            activity_type=ActivityType.parse(subprocess.activity_type),
            person_count=int_or_default(subprocess.person_count, defaults.person_count),
            production_qty=int_or_default(subprocess.production_qty, defaults.production_qty),
            rating=int_or_default(subprocess.rating, defaults.rating),
            remarks=remarks or "",
        )

    def to_dict(self):
        d = asdict(self)
        d["activity_type"] = self.activity_type.value
        return d
