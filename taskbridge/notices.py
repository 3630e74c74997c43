from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass
from typing import Optional

from .utils.time_utils import now_ms


logger = logging.getLogger("taskbridge.notices")

NOTICE_LEVELS = ("success", "info", "warning", "error")

_LOG_LEVEL = {
    "success": logging.INFO,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


@dataclass(frozen=True)
class Notice:
    id: int
    message: str
    level: str
    created_ms: int
    expires_ms: int


class Notifier:
    """Advisory notices for the user. Adding one never blocks or raises."""

    def __init__(self, *, default_ttl_ms: int = 5_000, max_notices: int = 50):
        self.default_ttl_ms = int(default_ttl_ms)
        self.max_notices = int(max_notices)
        self._lock = threading.Lock()
        self._seq = itertools.count(1)
        self._notices: list[Notice] = []

    def add(self, message: str, level: str = "info", *, ttl_ms: Optional[int] = None, at_ms: Optional[int] = None) -> Notice:
        lvl = level if level in NOTICE_LEVELS else "info"
        created = now_ms() if at_ms is None else int(at_ms)
        ttl = self.default_ttl_ms if ttl_ms is None else int(ttl_ms)
        notice = Notice(id=next(self._seq), message=str(message), level=lvl, created_ms=created, expires_ms=created + ttl)

        logger.log(_LOG_LEVEL[lvl], "[%s] %s", lvl, notice.message)
        with self._lock:
            self._notices.append(notice)
            if len(self._notices) > self.max_notices:
                del self._notices[: len(self._notices) - self.max_notices]
        return notice

    def active(self, at_ms: Optional[int] = None) -> list[Notice]:
        now = now_ms() if at_ms is None else int(at_ms)
        with self._lock:
            self._notices = [n for n in self._notices if n.expires_ms > now]
            return list(self._notices)

    def dismiss(self, notice_id: int) -> bool:
        with self._lock:
            before = len(self._notices)
            self._notices = [n for n in self._notices if n.id != int(notice_id)]
            return len(self._notices) != before
