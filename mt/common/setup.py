import os
from pathlib import Path
from dataclasses import dataclass

# Lil helper function to create missing directories and hand the path back.
def ensure_directory(path: Path):
    path.mkdir(parents=True,exist_ok=True)
    return path

# Picks the base folder all MotionTimer user data lives under. MOTIONTIMER_DATA wins outright, otherwise
# APPDATA on Windows and the XDG data dir everywhere else.
def _resolve_data_root():
    override = os.getenv("MOTIONTIMER_DATA")
    if override:
        return Path(override)
    appdata = os.getenv("APPDATA")
    if appdata:
        return Path(appdata) / "MotionTimer"
    xdg = os.getenv("XDG_DATA_HOME")
    base = Path(xdg) if xdg else Path.home() / ".local" / "share"
    return base / "MotionTimer"

# Dataclass for accessing paths across program.
@dataclass(frozen=False)
class ProjectPaths:

    data: Path

    logs: Path
    studies: Path

    @staticmethod
    def build():
        # Folder for all user-specific data, settings and studies
        data = ensure_directory(_resolve_data_root())

        # Folders within the data folder
        logs = ensure_directory(data / "logs")
        studies = ensure_directory(data / "studies")

        return ProjectPaths(
            data = data,
            logs = logs,
            studies = studies,
        )
PATHS = ProjectPaths.build()
