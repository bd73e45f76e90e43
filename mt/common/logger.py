import atexit
import logging
import os
from pathlib import Path
from logging.handlers import RotatingFileHandler
from datetime import datetime
from PySide6.QtCore import QtMsgType, qInstallMessageHandler
from mt.common.setup import PATHS

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s:%(filename)s:%(lineno)d] %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Qt message types mapped onto logging levels for the Qt bridge below.
_QT_LEVELS = {
    QtMsgType.QtDebugMsg: logging.DEBUG,
    QtMsgType.QtInfoMsg: logging.INFO,
    QtMsgType.QtWarningMsg: logging.WARNING,
    QtMsgType.QtCriticalMsg: logging.ERROR,
    QtMsgType.QtFatalMsg: logging.CRITICAL,
}

#region === Environment ===

# Runtime overrides, read the same way setup.py reads MOTIONTIMER_DATA:
#   MOTIONTIMER_LOG_LEVEL    level name or number for the file/console handlers (default DEBUG)
#   MOTIONTIMER_LOG_CONSOLE  "1"/"true"/"yes" to also log to stderr
#   MOTIONTIMER_DEBUG_RUNS   how many per-run debug logs to keep (0 disables them)
def _env_level(default):
    raw = os.getenv("MOTIONTIMER_LOG_LEVEL", "").strip()
    if not raw:
        return default
    if raw.isdigit():
        return int(raw)
    level = logging.getLevelName(raw.upper())
    return level if isinstance(level, int) else default

def _env_flag(name, default=False):
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")

def _env_int(name, default):
    try:
        return max(0, int(os.getenv(name, default)))
    except ValueError:
        return default

#endregion === Environment ===

#region === Handlers ===

# Adds a handler under a stable name unless the logger already carries one, so repeated get_logger() calls stay idempotent.
def _attach(logger, handler_name, build, level, fmt):
    if any(h.get_name() == handler_name for h in logger.handlers):
        return None
    handler = build()
    handler.setLevel(level)
    handler.setFormatter(fmt)
    handler.set_name(handler_name)
    logger.addHandler(handler)
    return handler

# Keeps only the newest `keep` per-run debug logs.
def _prune_runs(run_dir, name, keep):
    runs = sorted(run_dir.glob(f"{name}_*.log"), key=lambda p: p.stat().st_mtime, reverse=True)
    for run in runs[keep:]:
        try: run.unlink()
        except OSError: pass

#endregion === Handlers ===

def get_logger(
        name = "motiontimer",
        level = logging.INFO,
        log_dir: Path | None = None,
        max_bytes = 5 * 1024 * 1024,
        backup_count = 5,
        persistent = True,
        console = False,
        historical_debugs: int = 10
) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.propagate = False
    logger.setLevel(min(level, logging.DEBUG) if historical_debugs > 0 else level)

    log_dir = log_dir or PATHS.logs
    log_dir.mkdir(parents=True,exist_ok=True)
    fmt = logging.Formatter(LOG_FORMAT,LOG_DATE_FORMAT)

    # Rotating log across runs
    if persistent:
        _attach(logger, f"{name}:persistent", lambda: RotatingFileHandler(
            filename=log_dir / f"{name}.log",
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        ), level, fmt)

    # Just this run, overwritten at startup
    _attach(logger, f"{name}:latest", lambda: logging.FileHandler(
        filename=log_dir / "latest.log", mode="w", encoding="utf-8",
    ), level, fmt)

    # Full-detail log per run, whatever the configured level
    if historical_debugs > 0:
        run_dir = log_dir / "debug"
        run_dir.mkdir(parents=True,exist_ok=True)
        run_path = run_dir / f"{name}_{datetime.now():%Y-%m-%d_%H-%M-%S_%f}.log"
        if _attach(logger, f"{name}:historical_debug", lambda: logging.FileHandler(run_path, encoding="utf-8"), logging.DEBUG, fmt):
            _prune_runs(run_dir, name, historical_debugs)

    if console:
        _attach(logger, f"{name}:console", logging.StreamHandler, level, fmt)

    return logger

# Routes Qt's own diagnostics (QTimer misuse, object lifetime warnings and the like) into our log.
def install_qt_bridge(logger):
    qt_log = logger.getChild("qt")

    def _handler(mode, context, message):
        qt_log.log(_QT_LEVELS.get(mode, logging.WARNING), message)

    qInstallMessageHandler(_handler)
    # Hand Qt back its default handler before Python tears the logger down.
    atexit.register(qInstallMessageHandler, None)
    return _handler

log = get_logger(
    level=_env_level(logging.DEBUG),
    console=_env_flag("MOTIONTIMER_LOG_CONSOLE"),
    historical_debugs=_env_int("MOTIONTIMER_DEBUG_RUNS", 10),
)
_qt_bridge = install_qt_bridge(log)
log.info("=== INITIALIZED NEW SESSION ===")
