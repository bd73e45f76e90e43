"""Application settings: a small settings.json next to the study data.

Missing keys are filled from defaults on load, and an unreadable file falls
back to a fresh default settings dict rather than failing startup.
"""

import json
from mt.common.logger import log
from mt.common.setup import PATHS
from mt.util.misc import now_iso


_SCHEMA_VERSION = 1

#region === Helpers and Paths ===

SETTINGS_PATH = PATHS.data / "settings.json"

# Default values for every setting the engine and session read.
_SETTINGS_DEFAULTS = {
    "refresh_interval_ms": 50,
    "show_centiseconds": True,
    "default_person_count": 1,
    "default_rating": 100,
    "default_production_qty": 0,
    "notification_history": 50,
}
# Helper to return a truly fresh, default settings dict.
def build_default_settings():
    return dict(_SETTINGS_DEFAULTS)

#endregion === Helpers and Paths ===

#region === Saving and Loading Settings ===

# Loads settings from SETTINGS_PATH, filling in defaults for anything missing or of the wrong type.
def load_settings(path=None):
    path = path or SETTINGS_PATH
    try:
        if not path.exists():
            log.info(f"No existing settings.json found at '{path}', loading default settings.")
            return build_default_settings()

        with open(path, "r", encoding="utf-8") as f:
            document = json.load(f)
        settings = document.get("settings") if isinstance(document, dict) else None
        if not isinstance(settings, dict):
            log.warning(f"Settings file '{path}' has no settings section, loading default settings.")
            return build_default_settings()

        defaulted_values = set()
        for key, default in _SETTINGS_DEFAULTS.items():
            # bool is a subclass of int, so check it first to keep True out of the numeric settings
            value = settings.get(key)
            if isinstance(default, bool):
                valid = isinstance(value, bool)
            else:
                valid = isinstance(value, type(default)) and not isinstance(value, bool)
            if not valid:
                defaulted_values.add(key)
                settings[key] = default
        if settings["refresh_interval_ms"] <= 0:
            defaulted_values.add("refresh_interval_ms")
            settings["refresh_interval_ms"] = _SETTINGS_DEFAULTS["refresh_interval_ms"]

        if defaulted_values:
            log.warning(f"Loaded settings from '{path}', but with missing values that were defaulted: {', '.join(sorted(defaulted_values))}")
        else:
            log.info(f"Successfully loaded settings from '{path}'.")
        return settings
    # Fall back to defaults in case of error, but warn in log
    except (json.JSONDecodeError, OSError, TypeError):
        log.warning(f"Ran into an error while trying to load '{path}', falling back to default settings.",exc_info=True)
        return build_default_settings()

# Write the given settings to disk.
def save_settings(settings, path=None):
    path = path or SETTINGS_PATH
    document = {
        "meta": {"schema_version": _SCHEMA_VERSION, "saved_at": now_iso()},
        "settings": settings,
    }
    with open(path, "w", encoding="utf-8") as f:
        json.dump(document, f, indent=2)
    log.info(f"Successfully saved settings to '{path}'")

#endregion === Saving and Loading Settings ===
