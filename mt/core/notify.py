"""User-visible notices.  Fire-and-forget: nothing in the engine waits on these."""

from collections import deque
from dataclasses import dataclass
from enum import Enum

from PySide6.QtCore import QObject, Signal

from mt.common.logger import log
from mt.util.misc import now_iso


class NoticeKind(Enum):
    SUCCESS = "success"
    ERROR = "error"
    INFO = "info"


@dataclass(frozen=True)
class Notice:
    kind: NoticeKind
    title: str
    message: str
    created_at: str


class Notifier(QObject):
    notified = Signal(object)   # Notice

    def __init__(self, history=50, parent=None):
        super().__init__(parent)
        self.recent = deque(maxlen=history)

    def notify(self, kind, title, message=""):
        notice = Notice(NoticeKind(kind), title, message, now_iso())
        self.recent.append(notice)
        if notice.kind is NoticeKind.ERROR:
            log.warning(f"[{title}] {message}")
        else:
            log.info(f"[{title}] {message}")
        self.notified.emit(notice)
        return notice

    def success(self, title, message=""):
        return self.notify(NoticeKind.SUCCESS, title, message)

    def error(self, title, message=""):
        return self.notify(NoticeKind.ERROR, title, message)

    def info(self, title, message=""):
        return self.notify(NoticeKind.INFO, title, message)
